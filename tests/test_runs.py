"""Tests for agent run persistence and stage transitions."""

import pytest

from forgebox.exceptions import InvalidRunTransition, MalformedAgentOutput, RepairBudgetExhausted, RunNotFound
from forgebox.models import RunStage
from forgebox.runs import AgentRunRepository


@pytest.fixture
def runs(session_factory):
    return AgentRunRepository(session_factory)


def test_new_run_starts_planning(runs):
    run_id = runs.create("project-1", "A counter app", fragment_id="fragment-1", max_repairs=3)

    status = runs.status(run_id)

    assert status.stage == "PLANNING"
    assert status.fragment_id == "fragment-1"
    assert status.max_repairs == 3
    assert status.repair_count == 0


def test_unknown_run(runs):
    with pytest.raises(RunNotFound):
        runs.load("missing")
    with pytest.raises(RunNotFound):
        runs.transition("missing", RunStage.CODING)


def test_stages_only_move_along_allowed_edges(runs):
    run_id = runs.create("project-1", "x")

    with pytest.raises(InvalidRunTransition, match="PLANNING to DONE"):
        runs.transition(run_id, RunStage.DONE)

    runs.transition(run_id, RunStage.CODING)
    runs.transition(run_id, RunStage.VALIDATING)
    runs.transition(run_id, RunStage.DONE)

    with pytest.raises(InvalidRunTransition):
        runs.transition(run_id, RunStage.CODING)
    assert runs.load(run_id).completed_at is not None


def test_update_refuses_stage_changes(runs):
    run_id = runs.create("project-1", "x")
    with pytest.raises(ValueError, match="transition"):
        runs.update(run_id, stage=RunStage.DONE)


def test_record_repair_is_bounded(runs):
    run_id = runs.create("project-1", "x", max_repairs=1)
    runs.transition(run_id, RunStage.CODING)
    runs.transition(run_id, RunStage.VALIDATING)

    assert runs.record_repair(run_id, {"exit_code": 1}) == 1
    assert runs.load(run_id).stage == RunStage.REPAIRING

    runs.transition(run_id, RunStage.CODING)
    runs.transition(run_id, RunStage.VALIDATING)
    with pytest.raises(RepairBudgetExhausted) as exc_info:
        runs.record_repair(run_id, {"exit_code": 2})

    assert exc_info.value.last_report == {"exit_code": 2}
    assert runs.load(run_id).repair_count == 1


def test_record_repair_requires_validating(runs):
    run_id = runs.create("project-1", "x")
    with pytest.raises(InvalidRunTransition, match="not VALIDATING"):
        runs.record_repair(run_id, {})


def test_queue_and_resume(runs):
    run_id = runs.create("project-1", "x")
    runs.transition(run_id, RunStage.CODING)

    runs.queue(run_id, resume_stage=RunStage.CODING, job_id=7)

    run = runs.load(run_id)
    assert run.stage == RunStage.QUEUED
    assert run.resume_stage == RunStage.CODING
    assert run.job_id == 7
    runs.transition(run_id, RunStage.CODING)


def test_fail_stores_structured_error(runs):
    run_id = runs.create("project-1", "x")

    runs.fail(run_id, MalformedAgentOutput("planner", 3, raw_output="nope", reason="not JSON"))

    status = runs.status(run_id)
    assert status.stage == "ERROR"
    assert status.error["kind"] == "malformed_agent_output"
    assert status.error["stage"] == "planner"
    assert status.error["raw_output"] == "nope"
