from datetime import datetime, timezone

import pytest

from services.pipeline_state import (
    RUNNING_STATUSES,
    STARTABLE_STATUSES,
    TRANSITIONS,
    IllegalTransitionError,
    PipelineEvent,
    RetryPolicy,
    Stage,
    StageOutcome,
    Task,
    UnitKind,
    UnitStatus,
    sources_for,
    transition,
)


def test_transition_table_covers_documented_lifecycle():
    assert transition(UnitStatus.PENDING, PipelineEvent.START) == UnitStatus.CRAWLING
    assert transition(UnitStatus.CRAWLING, PipelineEvent.CRAWL_SUCCEEDED) == UnitStatus.ANALYZING
    assert transition(UnitStatus.ANALYZING, PipelineEvent.ANALYZE_SUCCEEDED) == UnitStatus.COMPLETED
    assert transition(UnitStatus.CRAWLING, PipelineEvent.CRAWL_RETRY) == UnitStatus.CRAWLING
    assert transition(UnitStatus.ANALYZING, PipelineEvent.ANALYZE_FAILED) == UnitStatus.FAILED
    assert transition(UnitStatus.COMPLETED, PipelineEvent.START) == UnitStatus.CRAWLING
    assert transition(UnitStatus.FAILED, PipelineEvent.START) == UnitStatus.CRAWLING


def test_terminal_statuses_have_no_outgoing_edges_besides_start():
    for (source, event) in TRANSITIONS:
        if source.is_terminal:
            assert event == PipelineEvent.START


@pytest.mark.parametrize("status", [UnitStatus.PENDING, UnitStatus.COMPLETED, UnitStatus.FAILED])
def test_stop_is_illegal_outside_running_statuses(status):
    with pytest.raises(IllegalTransitionError):
        transition(status, PipelineEvent.STOP)


def test_guard_sets_follow_table():
    assert sources_for(PipelineEvent.STOP) == RUNNING_STATUSES
    assert sources_for(PipelineEvent.START) == STARTABLE_STATUSES
    assert sources_for(PipelineEvent.ANALYZE_SUCCEEDED) == {UnitStatus.ANALYZING}


def test_retry_policy_allows_three_runs_with_doubling_delay():
    policy = RetryPolicy()
    assert [policy.should_retry(attempt) for attempt in range(3)] == [True, True, False]
    assert [policy.backoff_seconds(attempt) for attempt in range(3)] == [5, 10, 20]
    assert policy.backoff_seconds(10) == 300


def test_retry_policy_max_attempts_counts_the_first_run():
    assert RetryPolicy(max_attempts=1).should_retry(0) is False
    assert [RetryPolicy(max_attempts=2).should_retry(attempt) for attempt in range(2)] == [True, False]


def test_stage_outcome_accepts_dict_envelopes():
    assert StageOutcome.from_envelope({"success": True, "result": {"pages": 2}}) == StageOutcome.ok({"pages": 2})
    failure = StageOutcome.from_envelope({"failure": True, "retryable": True, "error_message": "timeout"})
    assert failure.success is False
    assert failure.retryable is True
    assert failure.error_message == "timeout"
    with pytest.raises(ValueError):
        StageOutcome.from_envelope({})
    with pytest.raises(TypeError):
        StageOutcome.from_envelope("ok")


def test_task_retry_and_next_stage_identity():
    task = Task(unit_kind=UnitKind.PROJECT, unit_id="p1", stage=Stage.CRAWL, config={"base_url": "https://a.test"})
    retried = task.retry()
    assert retried.attempt == 1
    assert retried.task_id != task.task_id
    assert retried.stage == Stage.CRAWL

    analyze = task.next_stage()
    assert analyze.stage == Stage.ANALYZE
    assert analyze.attempt == 0
    assert analyze.expected_status == UnitStatus.ANALYZING
    assert analyze.config == task.config
    assert analyze.task_id != task.task_id


def test_task_payload_survives_queue_serialization():
    task = Task(
        unit_kind=UnitKind.SESSION,
        unit_id="s1",
        stage=Stage.ANALYZE,
        attempt=2,
        config={"analyses": ["seo"]},
        enqueued_at=datetime(2026, 1, 2, 3, 4, 5, tzinfo=timezone.utc),
    )
    restored = Task.from_payload(task.to_payload(), cancel_requested=True)
    assert restored.task_id == task.task_id
    assert restored.unit_kind == UnitKind.SESSION
    assert restored.attempt == 2
    assert restored.enqueued_at == task.enqueued_at
    assert restored.cancel_requested is True
    assert restored.job_id == f"audit:{task.task_id}"
