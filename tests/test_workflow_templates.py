"""
Workflow template tests — CRUD, deployment lifecycle and business-type matching.
"""
import pytest

from backoffice.core.exceptions import TemplateNotAvailableError
from backoffice.integrations.bpm_gateway import get_bpm_engine
from backoffice.models.workflow import WorkflowNode
from backoffice.services import workflow_service as wfs
from backoffice.services import workflow_template_service as wts

STEPS = [
    {"key": "lead", "name": "Team lead", "assignee": "${managerId}"},
    {"key": "hr", "name": "HR", "assignee": "7"},
]


def _make_template(client, **overrides):
    payload = {"name": "Leave approval", "type": "leave", "steps": STEPS}
    payload.update(overrides)
    res = client.post("/api/v1/workflow/templates", json=payload)
    assert res.status_code == 201, res.get_json()
    return res.get_json()


# ═════════════════════════════════════════════════════════════════════════
# CRUD
# ═════════════════════════════════════════════════════════════════════════

class TestTemplateCRUD:
    def test_create_draft(self, client):
        tpl = _make_template(client)
        assert tpl["status"] == "draft"
        assert tpl["is_deployed"] is False
        assert tpl["template_version"] == 1
        assert tpl["process_key"].startswith("process_")
        assert [s["key"] for s in tpl["steps"]] == ["lead", "hr"]

    def test_create_defaults_to_single_step(self, client):
        tpl = _make_template(client, steps=None)
        assert tpl["steps"] == [{"key": "approval", "name": "Approval", "assignee": "${applicantId}"}]

    def test_create_requires_name(self, client):
        res = client.post("/api/v1/workflow/templates", json={"steps": STEPS})
        assert res.status_code == 422
        assert res.get_json()["details"]["name"] == "required"

    def test_create_rejects_bad_steps(self, client):
        res = client.post("/api/v1/workflow/templates", json={"name": "Bad", "steps": [{"key": "x"}]})
        assert res.status_code == 422

    def test_duplicate_process_key(self, client):
        _make_template(client, process_key="leave")
        res = client.post("/api/v1/workflow/templates", json={"name": "Other", "process_key": "leave"})
        assert res.status_code == 409

    def test_list_and_get(self, client):
        tpl = _make_template(client)
        res = client.get("/api/v1/workflow/templates")
        assert res.status_code == 200
        assert [t["id"] for t in res.get_json()] == [tpl["id"]]
        assert client.get(f"/api/v1/workflow/templates/{tpl['id']}").get_json()["name"] == "Leave approval"

    def test_get_not_found(self, client):
        res = client.get("/api/v1/workflow/templates/999")
        assert res.status_code == 404
        assert res.get_json()["code"] == "ERR_NOT_FOUND"

    def test_update_metadata_keeps_version(self, client):
        tpl = _make_template(client)
        res = client.put(f"/api/v1/workflow/templates/{tpl['id']}", json={"description": "new"})
        assert res.status_code == 200
        assert res.get_json()["description"] == "new"
        assert res.get_json()["template_version"] == 1

    def test_delete_is_soft_and_undeploys(self, client):
        tpl = _make_template(client, process_key="leave")
        client.post(f"/api/v1/workflow/templates/{tpl['id']}/deploy")

        res = client.delete(f"/api/v1/workflow/templates/{tpl['id']}")
        assert res.status_code == 200
        assert client.get(f"/api/v1/workflow/templates/{tpl['id']}").status_code == 404
        assert client.get("/api/v1/workflow/templates").get_json() == []
        assert get_bpm_engine().is_definition_active("leave") is False


# ═════════════════════════════════════════════════════════════════════════
# DEPLOYMENT
# ═════════════════════════════════════════════════════════════════════════

class TestDeployment:
    def test_deploy_and_undeploy(self, client):
        tpl = _make_template(client, process_key="leave")

        res = client.post(f"/api/v1/workflow/templates/{tpl['id']}/deploy")
        assert res.status_code == 200
        data = res.get_json()
        assert data["is_deployed"] is True
        assert data["status"] == "active"
        assert data["deployment_id"]
        assert get_bpm_engine().is_definition_active("leave")

        res = client.post(f"/api/v1/workflow/templates/{tpl['id']}/undeploy")
        assert res.status_code == 200
        assert res.get_json()["is_deployed"] is False
        assert get_bpm_engine().is_definition_active("leave") is False

    def test_undeploy_when_not_deployed(self, client):
        tpl = _make_template(client)
        res = client.post(f"/api/v1/workflow/templates/{tpl['id']}/undeploy")
        assert res.status_code == 422

    def test_changing_steps_bumps_version_and_undeploys(self, client):
        tpl = _make_template(client, process_key="leave")
        client.post(f"/api/v1/workflow/templates/{tpl['id']}/deploy")

        res = client.put(f"/api/v1/workflow/templates/{tpl['id']}", json={"steps": STEPS[:1]})
        data = res.get_json()
        assert data["template_version"] == 2
        assert data["is_deployed"] is False
        assert data["status"] == "draft"
        assert get_bpm_engine().is_definition_active("leave") is False

    def test_same_steps_keep_version(self, client):
        tpl = _make_template(client)
        res = client.put(f"/api/v1/workflow/templates/{tpl['id']}", json={"steps": STEPS})
        assert res.get_json()["template_version"] == 1

    def test_ensure_default_expense_template_is_idempotent(self, org):
        first = wts.ensure_default_expense_template()
        second = wts.ensure_default_expense_template()
        assert first["id"] == second["id"]
        assert first["process_key"] == "expenseApproval"
        assert second["is_deployed"] is True
        steps = {s["key"]: s for s in first["steps"]}
        assert steps["executive_approval"]["min_amount"] == "10000"


# ═════════════════════════════════════════════════════════════════════════
# MATCHING
# ═════════════════════════════════════════════════════════════════════════

class TestMatching:
    def test_exact_type_match(self, client):
        leave = _make_template(client, process_key="leave")
        travel = _make_template(client, name="Travel expense", type="travel", process_key="travel")
        for tpl in (leave, travel):
            client.post(f"/api/v1/workflow/templates/{tpl['id']}/deploy")

        assert wts.resolve_process_key("LEAVE") == "leave"
        assert wts.resolve_process_key("travel") == "travel"

    def test_keyword_match_for_expense(self, client):
        leave = _make_template(client, process_key="leave")
        travel = _make_template(client, name="Travel expense", type="trip", process_key="travel")
        for tpl in (leave, travel):
            client.post(f"/api/v1/workflow/templates/{tpl['id']}/deploy")

        assert wts.resolve_process_key("EXPENSE") == "travel"

    def test_fuzzy_match_on_description(self, client):
        leave = _make_template(client, process_key="leave")
        purchase = _make_template(client, name="Buying", type="misc", process_key="purchase",
                                  description="Purchase order approval")
        for tpl in (leave, purchase):
            client.post(f"/api/v1/workflow/templates/{tpl['id']}/deploy")

        assert wts.resolve_process_key("PURCHASE_ORDER") == "purchase"

    def test_any_deployed_template_as_last_resort(self, client):
        tpl = _make_template(client, process_key="leave")
        client.post(f"/api/v1/workflow/templates/{tpl['id']}/deploy")
        assert wts.resolve_process_key("CONTRACT") == "leave"

    def test_nothing_deployed(self, client):
        _make_template(client)
        assert wts.is_template_available("leave") is False
        with pytest.raises(TemplateNotAvailableError):
            wts.resolve_process_key("LEAVE")

    def test_default_step_is_assigned_to_applicant(self, client, org):
        tpl = _make_template(client, steps=None, process_key="leave")
        client.post(f"/api/v1/workflow/templates/{tpl['id']}/deploy")

        run = wfs.start_workflow("LEAVE", "LEAVE-7", org["developer"].id)
        node = WorkflowNode.query.filter_by(instance_id=run["id"]).one()
        assert str(node.assignee_id) == str(org["developer"].id)
