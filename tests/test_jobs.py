import json

import pytest

from helpers import CountingAggregator, make_job, make_tasks
from reviewpipe import jobs, storage
from reviewpipe.errors import InvalidTransition, JobNotFound
from reviewpipe.models import ANALYZING, COLLECTING, COMPLETED, COMPLETING, FAILED, READY, RUNNING

RESULT = {"themes": [{"title": "Crashes", "mentions": 3, "quotes": ["it crashed"]}]}


def test_status_never_moves_backwards():
    job = make_job(status=ANALYZING)
    with pytest.raises(InvalidTransition):
        jobs.advance(job, ANALYZING, READY)
    with pytest.raises(InvalidTransition):
        jobs.advance(job, COMPLETED, FAILED)


def test_advance_is_a_compare_and_swap():
    job = make_job(status=COLLECTING)
    assert jobs.advance(job, COLLECTING, READY)
    assert not jobs.advance(job, COLLECTING, READY)
    assert jobs.get_job(job).status == READY


def test_missing_job():
    with pytest.raises(JobNotFound):
        jobs.get_job("nope")


def test_completion_runs_aggregator_once():
    job = make_job()
    make_tasks(job, 3, state=COMPLETED, result=RESULT)
    aggregator = CountingAggregator()

    assert jobs.evaluate_completion(job, aggregator) == COMPLETED
    assert jobs.evaluate_completion(job, aggregator) is None
    assert aggregator.calls == 1

    row = storage.get_job(job)
    assert row["status"] == COMPLETED
    assert row["completed_at"] is not None
    (theme,) = json.loads(row["result"])["themes"]
    assert theme["mentions"] == 9
    assert theme["batches"] == 3


def test_waits_for_active_tasks():
    job = make_job()
    done, busy = make_tasks(job, 2, state=COMPLETED, result=RESULT)
    storage.transition_task(busy, COMPLETED, 0, {"state": RUNNING})
    assert jobs.evaluate_completion(job) is None
    assert storage.get_job(job)["status"] == ANALYZING


@pytest.mark.parametrize("failed, total, expected", [
    (1, 2, COMPLETED),   # exactly half is tolerated
    (2, 3, FAILED),
    (3, 3, FAILED),
])
def test_failure_threshold(failed, total, expected):
    job = make_job()
    ids = make_tasks(job, total, state=COMPLETED, result=RESULT)
    for task_id in ids[:failed]:
        storage.transition_task(task_id, COMPLETED, 0, {"state": FAILED})

    assert jobs.evaluate_completion(job) == expected
    if expected == FAILED:
        assert storage.get_job(job)["error"] == f"{failed}/{total} tasks failed"


def test_aggregator_error_fails_job():
    job = make_job()
    make_tasks(job, 1, state=COMPLETED, result=RESULT)

    def broken(job, results):
        raise ValueError("bad merge")

    assert jobs.evaluate_completion(job, broken) == FAILED
    assert storage.get_job(job)["error"] == "aggregation failed: bad merge"


def test_completing_job_is_left_to_its_owner():
    job = make_job(status=COMPLETING)
    make_tasks(job, 1, state=COMPLETED, result=RESULT)
    assert jobs.evaluate_completion(job) is None


def test_merge_themes_folds_titles_case_insensitively():
    job = jobs.get_job(make_job(app_name="Acme"))
    merged = jobs.merge_themes(job, [
        {"themes": [{"title": "Pricing", "mentions": 2, "quotes": ["too pricey"]}]},
        {"themes": [{"title": "pricing", "mentions": 5, "quotes": ["too pricey", "costly"]},
                    {"title": "Support"}]},
        {},
    ])
    assert merged["app_name"] == "Acme"
    assert merged["batches"] == 3
    assert [t["title"] for t in merged["themes"]] == ["Pricing", "Support"]
    pricing = merged["themes"][0]
    assert pricing["mentions"] == 7
    assert pricing["quotes"] == ["too pricey", "costly"]
    assert merged["themes"][1]["mentions"] == 1
