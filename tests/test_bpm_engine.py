"""Tests for the embedded BPM engine and the step-chain helpers.

Coverage:
  1. normalize_steps rejects malformed chains
  2. deploy versions definitions per key and deactivates older ones
  3. start / complete walk the chain, resolving ${variable} assignees
  4. amount-gated steps are skipped below the threshold
  5. delete_process and move_activity end tasks with a reason
  6. per-user task queries (active and finished)
"""

import pytest

from backoffice.core.exceptions import ValidationError, WorkflowError
from backoffice.integrations.bpm_gateway import get_bpm_engine, normalize_steps, step_applies
from backoffice.models import db
from backoffice.models.bpm import BpmProcessDefinition

CHAIN = [
    {"key": "first", "name": "First", "assignee": "${firstId}"},
    {"key": "second", "name": "Second", "assignee": "${secondId}"},
    {"key": "big", "name": "Big amounts", "assignee": "99", "min_amount": "1000"},
]


def _start(engine, amount="10", key="chain", business_key="B-1"):
    return engine.start_process(key, business_key, {"firstId": 1, "secondId": 2, "amount": amount})


@pytest.fixture()
def engine():
    eng = get_bpm_engine()
    eng.deploy("chain", "Test chain", CHAIN)
    db.session.commit()
    return eng


# ═════════════════════════════════════════════════════════════════════════
# STEP DEFINITIONS
# ═════════════════════════════════════════════════════════════════════════

class TestNormalizeSteps:
    def test_empty_chain_rejected(self):
        with pytest.raises(ValidationError):
            normalize_steps([])

    def test_duplicate_keys_rejected(self):
        with pytest.raises(ValidationError):
            normalize_steps([
                {"key": "a", "assignee": "1"},
                {"key": "a", "assignee": "2"},
            ])

    def test_missing_assignee_rejected(self):
        with pytest.raises(ValidationError):
            normalize_steps([{"key": "a"}])

    def test_non_numeric_min_amount_rejected(self):
        with pytest.raises(ValidationError):
            normalize_steps([{"key": "a", "assignee": "1", "min_amount": "lots"}])

    def test_name_defaults_to_key(self):
        steps = normalize_steps([{"key": "review", "assignee": "${managerId}"}])
        assert steps == [{"key": "review", "name": "review", "assignee": "${managerId}"}]

    def test_step_applies_gate(self):
        gated = {"key": "x", "assignee": "1", "min_amount": "100"}
        assert step_applies(gated, {"amount": "100"})
        assert not step_applies(gated, {"amount": "99.99"})
        assert step_applies({"key": "y", "assignee": "1"}, {})


# ═════════════════════════════════════════════════════════════════════════
# DEPLOYMENT
# ═════════════════════════════════════════════════════════════════════════

class TestDeploy:
    def test_redeploy_creates_new_active_version(self, engine):
        engine.deploy("chain", "Test chain v2", CHAIN[:1])
        db.session.commit()

        versions = BpmProcessDefinition.query.filter_by(key="chain").order_by(BpmProcessDefinition.version).all()
        assert [v.version for v in versions] == [1, 2]
        assert [v.is_active for v in versions] == [False, True]

    def test_undeploy_deactivates(self, engine):
        definition = BpmProcessDefinition.query.filter_by(key="chain").first()
        engine.undeploy(definition.deployment_id)
        assert engine.is_definition_active("chain") is False

    def test_undeploy_unknown_deployment(self, engine):
        with pytest.raises(WorkflowError):
            engine.undeploy("nope")

    def test_start_without_definition_fails(self):
        with pytest.raises(WorkflowError):
            get_bpm_engine().start_process("missing", "B-1", {})


# ═════════════════════════════════════════════════════════════════════════
# EXECUTION
# ═════════════════════════════════════════════════════════════════════════

class TestExecution:
    def test_start_creates_first_task_with_resolved_assignee(self, engine):
        pid = _start(engine)
        task = engine.current_task(pid)
        assert task.task_key == "first"
        assert task.assignee == "1"
        assert task.business_key == "B-1"
        assert task.is_active

    def test_complete_walks_chain_and_skips_gated_step(self, engine):
        pid = _start(engine, amount="10")
        first = engine.current_task(pid)

        second = engine.complete_task(first.id)
        assert second.task_key == "second"
        assert second.assignee == "2"

        assert engine.complete_task(second.id) is None
        assert engine.is_process_ended(pid)

    def test_gated_step_runs_above_threshold(self, engine):
        pid = _start(engine, amount="5000")
        task = engine.complete_task(engine.current_task(pid).id)
        task = engine.complete_task(task.id)
        assert task.task_key == "big"
        assert task.assignee == "99"

    def test_complete_merges_variables(self, engine):
        pid = _start(engine)
        engine.complete_task(engine.current_task(pid).id, {"note": "ok"})
        assert engine.get_variables(pid)["note"] == "ok"

    def test_complete_inactive_task_fails(self, engine):
        pid = _start(engine)
        task = engine.current_task(pid)
        engine.complete_task(task.id)
        with pytest.raises(WorkflowError):
            engine.complete_task(task.id)

    def test_unresolvable_assignee_fails(self, engine):
        with pytest.raises(WorkflowError, match="firstId"):
            engine.start_process("chain", "B-2", {"secondId": 2})

    def test_chain_with_only_gated_steps_ends_immediately(self):
        eng = get_bpm_engine()
        eng.deploy("gated", "Gated", [{"key": "big", "assignee": "1", "min_amount": "100"}])
        pid = eng.start_process("gated", "B-3", {"amount": "5"})
        assert eng.is_process_ended(pid)
        assert eng.current_task(pid) is None

    def test_delete_process_ends_tasks_with_reason(self, engine):
        pid = _start(engine)
        task = engine.current_task(pid)
        engine.delete_process(pid, "rejected: no receipt")

        assert engine.is_process_ended(pid)
        assert engine.get_task(task.id) is None
        history = engine.historic_tasks(pid)
        assert history[0].delete_reason == "rejected: no receipt"
        assert engine.get_process(pid).delete_reason == "rejected: no receipt"

    def test_delete_ended_process_fails(self, engine):
        pid = _start(engine)
        engine.delete_process(pid, "x")
        with pytest.raises(WorkflowError):
            engine.delete_process(pid, "again")

    def test_move_activity_back(self, engine):
        pid = _start(engine)
        engine.complete_task(engine.current_task(pid).id)

        moved = engine.move_activity(pid, "second", "first")
        assert moved.task_key == "first"
        assert engine.current_task(pid).id == moved.id
        keys = [(t.task_key, t.delete_reason) for t in engine.historic_tasks(pid)]
        assert keys == [("first", None), ("second", "moved to first"), ("first", None)]

    def test_move_to_unknown_step_fails(self, engine):
        pid = _start(engine)
        with pytest.raises(WorkflowError):
            engine.move_activity(pid, "first", "nowhere")

    def test_comments(self, engine):
        pid = _start(engine)
        task = engine.current_task(pid)
        engine.add_comment(task.id, pid, "looks fine")
        assert engine.task_comments(task.id) == ["looks fine"]


class TestUserQueries:
    def test_active_and_finished_tasks_per_user(self, engine):
        pid_a = _start(engine, business_key="A")
        _start(engine, business_key="B")
        engine.complete_task(engine.current_task(pid_a).id)

        assert engine.count_tasks_for_user("1") == 1
        assert [t.business_key for t in engine.list_tasks_for_user("1")] == ["B"]
        assert engine.count_finished_tasks_for_user("1") == 1
        finished = engine.list_finished_tasks_for_user("1")
        assert finished[0].business_key == "A"
        assert finished[0].duration_ms is not None
        assert engine.count_tasks_for_user("2") == 1
