import random
from datetime import timedelta

import pytest

from helpers import NOW, make_job, make_tasks, set_running
from reviewpipe import storage
from reviewpipe.errors import AnalysisError, TaskNotFound
from reviewpipe.models import COMPLETED, FAILED, QUEUED, Settings
from reviewpipe.retry import (
    FAILED_FINAL, POLICIES, REQUEUED, SKIPPED, ErrorClass, classify_error, compute_delay,
    handle_failure, retry_failed,
)

NO_JITTER = Settings(jitter=0)


@pytest.mark.parametrize("error, expected", [
    ("Request timeout after 30s", ErrorClass.TIMEOUT),
    ("network timeout", ErrorClass.TIMEOUT),
    (TimeoutError(), ErrorClass.TIMEOUT),
    ("429: rate limit exceeded", ErrorClass.API_LIMIT),
    ("JavaScript heap out of memory", ErrorClass.MEMORY),
    (ConnectionError("reset by peer"), ErrorClass.NETWORK),
    (AnalysisError("invalid data: empty batch"), ErrorClass.DATA),
    ("model returned a parse error", ErrorClass.DATA),
    ("something odd", ErrorClass.UNKNOWN),
    (None, ErrorClass.UNKNOWN),
])
def test_classify_error(error, expected):
    assert classify_error(error) == expected


def test_delay_grows_until_capped():
    policy = POLICIES[ErrorClass.NETWORK]
    delays = [compute_delay(n, policy, jitter=0) for n in range(12)]
    assert delays[:4] == [1, 2, 4, 8]
    assert delays == sorted(delays)
    assert max(delays) == 300


def test_delay_jitter_stays_within_ten_percent():
    policy = POLICIES[ErrorClass.API_LIMIT]
    rng = random.Random(7)
    for n in range(5):
        base = compute_delay(n, policy, jitter=0)
        assert base <= compute_delay(n, policy, rng=rng) <= base * 1.1


def _fail(task_id, error, **kwargs):
    set_running(task_id)
    return handle_failure(task_id, error, now=NOW, settings=NO_JITTER, **kwargs)


def test_network_failure_requeues_with_backoff():
    job = make_job()
    (task_id,) = make_tasks(job, 1, state=QUEUED)

    decision = _fail(task_id, ConnectionError("connection refused"))

    row = storage.get_task(task_id)
    assert decision.action == REQUEUED
    assert row["state"] == QUEUED
    assert row["retry_count"] == 1
    assert row["error_class"] == "network"
    assert row["error"] is None
    assert row["not_before"] == (NOW + timedelta(seconds=1)).isoformat(timespec="microseconds")


def test_three_network_failures_leave_task_queued():
    job = make_job()
    (task_id,) = make_tasks(job, 1, state=QUEUED)
    for _ in range(3):
        _fail(task_id, "network unreachable")

    row = storage.get_task(task_id)
    assert row["state"] == QUEUED
    assert row["retry_count"] == 3


def test_limit_is_min_of_task_and_class():
    job = make_job()
    (task_id,) = make_tasks(job, 1, state=QUEUED)
    # network allows 4 retries, the task 5
    actions = [_fail(task_id, "network unreachable").action for _ in range(5)]
    assert actions == [REQUEUED] * 4 + [FAILED_FINAL]

    row = storage.get_task(task_id)
    assert row["state"] == FAILED
    assert row["retry_count"] == 4
    assert row["error_class"] == "network"
    assert "network unreachable" in row["error"]
    assert row["completed_at"] is not None


def test_retry_count_never_exceeds_max_before_requeue():
    job = make_job()
    (task_id,) = make_tasks(job, 1, state=QUEUED, max_retries=1)
    for _ in range(3):
        row = storage.get_task(task_id)
        if row["state"] == FAILED:
            break
        assert row["retry_count"] <= row["max_retries"]
        _fail(task_id, "rate limit")
    assert storage.get_task(task_id)["retry_count"] == 1


def test_data_errors_get_one_retry():
    job = make_job()
    (task_id,) = make_tasks(job, 1, state=QUEUED)
    assert _fail(task_id, AnalysisError("invalid data")).action == REQUEUED
    assert _fail(task_id, AnalysisError("invalid data")).action == FAILED_FINAL


def test_force_requeues_past_limit():
    job = make_job()
    (task_id,) = make_tasks(job, 1, state=QUEUED, retry_count=5)
    assert _fail(task_id, "timeout", force=True).action == REQUEUED
    assert storage.get_task(task_id)["retry_count"] == 6


def test_terminal_and_stale_reports_are_ignored():
    job = make_job()
    done, running = make_tasks(job, 2, state=QUEUED)
    storage.transition_task(done, QUEUED, 0, {"state": COMPLETED})
    assert handle_failure(done, "timeout", now=NOW).action == SKIPPED
    assert storage.get_task(done)["state"] == COMPLETED

    set_running(running)
    stale_version = storage.get_task(running)["version"] - 1
    assert handle_failure(running, "timeout", now=NOW, version=stale_version).action == SKIPPED
    assert storage.get_task(running)["retry_count"] == 0


def test_unknown_task_raises():
    with pytest.raises(TaskNotFound):
        handle_failure("nope", "timeout")


def test_manual_retry_only_for_analyzing_jobs():
    live = make_job()
    finished = make_job(status=COMPLETED)
    (live_task,) = make_tasks(live, 1, state=FAILED, error_class="network", retry_count=1)
    (dead_task,) = make_tasks(finished, 1, state=FAILED, error_class="network", retry_count=1)

    (decision,) = retry_failed(task_id=live_task, now=NOW, settings=NO_JITTER)
    assert decision.action == REQUEUED
    assert storage.get_task(live_task)["state"] == QUEUED
    assert storage.get_task(live_task)["retry_count"] == 2

    (decision,) = retry_failed(task_id=dead_task, now=NOW, settings=NO_JITTER)
    assert decision.action == SKIPPED
    assert storage.get_task(dead_task)["state"] == FAILED


def test_manual_retry_filters_by_class_and_respects_limit():
    job = make_job()
    net, mem, spent = make_tasks(job, 3, state=FAILED, retry_count=0)
    storage.transition_task(net, FAILED, 0, {"error_class": "network"})
    storage.transition_task(mem, FAILED, 0, {"error_class": "memory"})
    storage.transition_task(spent, FAILED, 0, {"error_class": "network", "retry_count": 4})

    decisions = retry_failed(job_id=job, error_class=ErrorClass.NETWORK, now=NOW, settings=NO_JITTER)
    by_id = {d.task_id: d.action for d in decisions}
    assert by_id == {net: REQUEUED, spent: SKIPPED}
    assert storage.get_task(mem)["state"] == FAILED

    (forced,) = retry_failed(task_id=spent, force=True, now=NOW, settings=NO_JITTER)
    assert forced.action == REQUEUED
