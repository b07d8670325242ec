from datetime import datetime, timedelta, timezone

from reviewpipe import jobs, storage
from reviewpipe.models import ANALYZING, COLLECTING, PENDING, RUNNING, Task
from reviewpipe.utils import iso

NOW = datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)


def make_job(app_name="Acme", status=ANALYZING, now=NOW, **fields):
    job = jobs.create_job(app_name, now=now)
    if status != COLLECTING:
        storage.update_job_if(job.id, COLLECTING, {"status": status, "analysis_started_at": iso(now), **fields})
    return job.id


def make_tasks(job_id, n, state=PENDING, now=NOW, **overrides):
    overrides.setdefault("max_retries", 5)
    rows = []
    for i in range(n):
        task = Task(
            id=f"{job_id[:8]}-{i}",
            job_id=job_id,
            batch_index=i,
            source="app_store",
            priority=7,
            payload=[{"source": "app_store", "text": f"review {i}: the app is slow and crashes"}],
            state=state,
            created_at=now,
            updated_at=now,
            **overrides,
        )
        rows.append(task.to_row())
    storage.insert_tasks(rows)
    return [r["id"] for r in rows]


def set_running(task_id, started_at=NOW):
    row = storage.get_task(task_id)
    assert storage.transition_task(task_id, row["state"], row["version"], {
        "state": RUNNING,
        "started_at": iso(started_at),
        "dispatched_at": None,
    })


def review(text, source="app_store", days_ago=1, **extra):
    item = {"source": source, "text": text, "timestamp": iso(NOW - timedelta(days=days_ago))}
    item.update(extra)
    return item


class RecordingDispatcher:
    def __init__(self):
        self.submitted = []

    def submit(self, task_id):
        self.submitted.append(task_id)

    def drain(self):
        out, self.submitted = self.submitted, []
        return out


class CountingAggregator:
    def __init__(self):
        self.calls = 0

    def __call__(self, job, results):
        self.calls += 1
        return jobs.merge_themes(job, results)
