"""
Approval API tests — workflow run routes and the per-user approval inbox.
"""
import pytest

WF = "/api/v1/workflow"
INBOX = "/api/v1/approval"


def _as(user):
    return {"X-User-Id": str(user.id)}


def _start(client, org, business_id="LEAVE-1", amount="500"):
    res = client.post(f"{WF}/instances", json={
        "business_type": "LEAVE",
        "business_id": business_id,
        "applicant_id": org["developer"].id,
        "title": f"Leave {business_id}",
        "amount": amount,
    })
    assert res.status_code == 201, res.get_json()
    return res.get_json()


def _inbox(client, user):
    res = client.get(f"{INBOX}/pending", headers=_as(user))
    assert res.status_code == 200
    return res.get_json()["items"]


# ═════════════════════════════════════════════════════════════════════════
# WORKFLOW RUNS
# ═════════════════════════════════════════════════════════════════════════

class TestWorkflowRunsAPI:
    def test_start(self, client, org, expense_template):
        run = _start(client, org)
        assert run["status"] == "RUNNING"
        assert run["process_key"] == "expenseApproval"
        assert run["applicant_name"] == "Software Developer"

    def test_start_missing_fields(self, client):
        res = client.post(f"{WF}/instances", json={"business_type": "LEAVE"})
        assert res.status_code == 400
        assert set(res.get_json()["details"]["missing"]) == {"business_id", "applicant_id"}

    @pytest.mark.parametrize("applicant_id", ["abc", "1.5", True, -3])
    def test_start_non_integer_applicant(self, client, applicant_id):
        res = client.post(f"{WF}/instances", json={
            "business_type": "LEAVE", "business_id": "L-1", "applicant_id": applicant_id,
        })
        assert res.status_code == 400
        assert res.get_json()["code"] == "ERR_VALIDATION_INVALID"
        assert client.get(f"{WF}/instances").get_json()["total"] == 0

    def test_start_bad_variables(self, client, org):
        res = client.post(f"{WF}/instances", json={
            "business_type": "LEAVE", "business_id": "L-1",
            "applicant_id": org["developer"].id, "variables": ["x"],
        })
        assert res.status_code == 400

    def test_start_twice_conflicts(self, client, org, expense_template):
        _start(client, org)
        res = client.post(f"{WF}/instances", json={
            "business_type": "LEAVE", "business_id": "LEAVE-1", "applicant_id": org["developer"].id,
        })
        assert res.status_code == 409

    def test_start_without_templates(self, client, org):
        res = client.post(f"{WF}/instances", json={
            "business_type": "LEAVE", "business_id": "L-9", "applicant_id": org["developer"].id,
        })
        assert res.status_code == 409
        assert res.get_json()["code"] == "ERR_WORKFLOW"
        assert client.get(f"{WF}/instances").get_json()["total"] == 0

    def test_list_and_detail(self, client, org, expense_template):
        run = _start(client, org)
        _start(client, org, business_id="LEAVE-2")

        listed = client.get(f"{WF}/instances?status=running&business_type=LEAVE").get_json()
        assert listed["total"] == 2

        detail = client.get(f"{WF}/instances/{run['id']}").get_json()
        assert detail["variables"]["managerId"] == org["it.manager"].id
        assert [n["node_key"] for n in detail["nodes"]] == ["manager_approval"]

        assert client.get(f"{WF}/instances/999").status_code == 404

    def test_approve_through_run(self, client, org, expense_template):
        run = _start(client, org)
        task = _inbox(client, org["it.manager"])[0]

        res = client.post(f"{WF}/instances/{run['id']}/approve",
                          json={"task_id": task["task_id"], "comment": "ok"}, headers=_as(org["it.manager"]))
        assert res.status_code == 200
        assert res.get_json()["node"]["status"] == "COMPLETED"
        assert len(_inbox(client, org["finance.manager"])) == 1

        history = client.get(f"{WF}/instances/{run['id']}/history").get_json()
        assert history[0]["assignee_name"] == "IT Manager"
        assert history[0]["comment"] == "ok"

    def test_task_action_requires_task_id(self, client, org, expense_template):
        run = _start(client, org)
        res = client.post(f"{WF}/instances/{run['id']}/approve", json={})
        assert res.status_code == 400

    def test_task_of_another_run(self, client, org, expense_template):
        first = _start(client, org)
        _start(client, org, business_id="LEAVE-2")
        other_task = next(t for t in _inbox(client, org["it.manager"]) if t["business_id"] == "LEAVE-2")

        res = client.post(f"{WF}/instances/{first['id']}/approve", json={"task_id": other_task["task_id"]})
        assert res.status_code == 404

    def test_wrong_operator_forbidden(self, client, org, expense_template):
        run = _start(client, org)
        task = _inbox(client, org["it.manager"])[0]
        res = client.post(f"{WF}/instances/{run['id']}/approve",
                          json={"task_id": task["task_id"]}, headers=_as(org["trader"]))
        assert res.status_code == 403

    def test_reject_requires_comment(self, client, org, expense_template):
        run = _start(client, org)
        task = _inbox(client, org["it.manager"])[0]
        res = client.post(f"{WF}/instances/{run['id']}/reject", json={"task_id": task["task_id"]})
        assert res.status_code == 422
        assert res.get_json()["details"]["comment"] == "required"

    def test_return_and_returnable_nodes(self, client, org, expense_template):
        run = _start(client, org)
        first = _inbox(client, org["it.manager"])[0]
        client.post(f"{WF}/instances/{run['id']}/approve", json={"task_id": first["task_id"]})
        second = _inbox(client, org["finance.manager"])[0]

        res = client.get(f"{WF}/nodes/{second['node_id']}/returnable")
        data = res.get_json()
        assert [n["node_key"] for n in data["nodes"]] == ["manager_approval"]
        assert data["applicant_key"] == "applicant"

        res = client.post(f"{WF}/instances/{run['id']}/return", json={
            "task_id": second["task_id"], "target_node_key": "manager_approval", "comment": "check again",
        })
        assert res.status_code == 200
        assert res.get_json()["node"]["status"] == "RETURNED"
        assert len(_inbox(client, org["it.manager"])) == 1
        assert _inbox(client, org["finance.manager"]) == []

    def test_pending_and_handled_by_user(self, client, org, expense_template):
        run = _start(client, org)
        task = _inbox(client, org["it.manager"])[0]
        client.post(f"{WF}/instances/{run['id']}/approve", json={"task_id": task["task_id"]})

        assert client.get(f"{WF}/pending/{org['it.manager'].id}").get_json()["total"] == 0
        handled = client.get(f"{WF}/handled/{org['it.manager'].id}").get_json()
        assert handled["total"] == 1
        assert handled["items"][0]["status"] == "approved"

    def test_batch_approve(self, client, org, expense_template):
        _start(client, org)
        _start(client, org, business_id="LEAVE-2")
        nodes = [t["node_id"] for t in _inbox(client, org["it.manager"])]

        res = client.post(f"{WF}/batch-approve", json={
            "items": [{"node_id": nodes[0]}, {"node_id": nodes[1], "action": "reject", "comment": "no"},
                      {"node_id": 999}],
        })
        assert res.status_code == 200
        data = res.get_json()
        assert data["total"] == 3
        assert data["success_count"] == 2
        assert data["failure_ids"] == [999]

    def test_batch_with_malformed_items(self, client, org, expense_template):
        _start(client, org)
        node_id = _inbox(client, org["it.manager"])[0]["node_id"]

        res = client.post(f"{WF}/batch-approve", json={
            "items": ["x", 42, {"node_id": node_id, "action": 1}, {"node_id": node_id}],
        })
        assert res.status_code == 200
        data = res.get_json()
        assert data["total"] == 4
        assert data["success_ids"] == [node_id]
        assert data["failure_count"] == 3

    def test_batch_requires_items(self, client):
        assert client.post(f"{WF}/batch-approve", json={"items": []}).status_code == 400


# ═════════════════════════════════════════════════════════════════════════
# APPROVAL INBOX
# ═════════════════════════════════════════════════════════════════════════

class TestApprovalInboxAPI:
    @pytest.mark.parametrize("path", ["/pending", "/handled", "/statistics"])
    def test_requires_user_header(self, client, path):
        res = client.get(f"{INBOX}{path}")
        assert res.status_code == 401

    def test_pending_enriched(self, client, org, expense_template):
        _start(client, org)
        items = _inbox(client, org["it.manager"])
        assert len(items) == 1
        task = items[0]
        assert task["task_name"] == "Manager approval"
        assert task["applicant_name"] == "Software Developer"
        assert task["department"] == "IT"
        assert task["business_type"] == "LEAVE"
        assert task["amount"] == 500.0
        assert task["status"] == "pending"
        assert task["delegated"] is False

    def test_pending_filters(self, client, org, expense_template):
        _start(client, org)
        res = client.get(f"{INBOX}/pending?business_type=expense", headers=_as(org["it.manager"]))
        assert res.get_json()["total"] == 0
        res = client.get(f"{INBOX}/pending?business_type=leave", headers=_as(org["it.manager"]))
        assert res.get_json()["total"] == 1

    def test_approve_reject_and_statistics(self, client, org, expense_template):
        _start(client, org)
        _start(client, org, business_id="LEAVE-2")
        first, second = _inbox(client, org["it.manager"])

        res = client.post(f"{INBOX}/tasks/{first['task_id']}/approve", json={}, headers=_as(org["it.manager"]))
        assert res.status_code == 200
        res = client.post(f"{INBOX}/tasks/{second['task_id']}/reject",
                          json={"comment": "no budget"}, headers=_as(org["it.manager"]))
        assert res.status_code == 200
        assert res.get_json()["instance"]["status"] == "REJECTED"

        stats = client.get(f"{INBOX}/statistics", headers=_as(org["it.manager"])).get_json()
        assert stats["pending_count"] == 0
        assert stats["handled_count"] == 2
        assert stats["approved_count"] == 1
        assert stats["rejected_count"] == 1

        handled = client.get(f"{INBOX}/handled", headers=_as(org["it.manager"])).get_json()
        assert handled["total"] == 2

    def test_cannot_act_on_someone_elses_task(self, client, org, expense_template):
        _start(client, org)
        task = _inbox(client, org["it.manager"])[0]
        res = client.post(f"{INBOX}/tasks/{task['task_id']}/approve", json={}, headers=_as(org["trader"]))
        assert res.status_code == 403

    def test_return_to_applicant(self, client, org, expense_template):
        run = _start(client, org)
        task = _inbox(client, org["it.manager"])[0]
        res = client.post(f"{INBOX}/tasks/{task['task_id']}/return",
                          json={"target_node_key": "applicant", "comment": "missing dates"},
                          headers=_as(org["it.manager"]))
        assert res.status_code == 200
        assert res.get_json()["instance"]["status"] == "RETURNED"
        assert client.get(f"{WF}/instances/{run['id']}").get_json()["status"] == "RETURNED"

    def test_unknown_task(self, client, org):
        res = client.post(f"{INBOX}/tasks/nope/approve", json={}, headers=_as(org["it.manager"]))
        assert res.status_code == 404

    def test_batch(self, client, org, expense_template):
        _start(client, org)
        node_id = _inbox(client, org["it.manager"])[0]["node_id"]
        res = client.post(f"{INBOX}/batch", json={"items": [{"node_id": node_id, "action": "approve"}]},
                          headers=_as(org["it.manager"]))
        assert res.get_json()["all_success"] is True

        res = client.post(f"{INBOX}/batch", json={"items": "x"}, headers=_as(org["it.manager"]))
        assert res.status_code == 400

    def test_batch_skips_non_object_items(self, client, org, expense_template):
        _start(client, org)
        node_id = _inbox(client, org["it.manager"])[0]["node_id"]
        res = client.post(f"{INBOX}/batch", json={"items": ["x", {"node_id": node_id}]},
                          headers=_as(org["it.manager"]))
        assert res.status_code == 200
        data = res.get_json()
        assert data["success_ids"] == [node_id]
        assert data["failure_ids"] == ["items[0]"]
