"""Job state machine.

Every "is this job done yet" question goes through here. Status only moves
forward (collecting -> ready -> analyzing -> completing -> completed|failed)
and every move is a compare-and-swap on the status we last saw, so two
monitors racing on the same job cannot aggregate it twice.
"""

import json
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from . import storage
from .config import load_settings
from .errors import InvalidTransition, JobNotFound
from .models import (
    ANALYZING, COLLECTING, COMPLETED, COMPLETING, FAILED, JOB_RANK,
    PENDING, QUEUED, RUNNING, Job, Settings, Task,
)
from .utils import iso, utcnow

logger = logging.getLogger(__name__)

Aggregator = Callable[[Job, List[Dict[str, Any]]], Dict[str, Any]]


@dataclass
class JobProgress:
    total: int = 0
    pending: int = 0
    queued: int = 0
    running: int = 0
    completed: int = 0
    failed: int = 0

    @property
    def active(self) -> int:
        return self.pending + self.queued + self.running

    @property
    def failed_fraction(self) -> float:
        return self.failed / self.total if self.total else 0.0


def create_job(app_name: str, job_id: Optional[str] = None, now: Optional[datetime] = None) -> Job:
    now = now or utcnow()
    job = Job(id=job_id or uuid.uuid4().hex, app_name=app_name, status=COLLECTING, created_at=now, updated_at=now)
    storage.insert_job({
        "id": job.id,
        "app_name": job.app_name,
        "status": job.status,
        "error": None,
        "stats": None,
        "result": None,
        "created_at": iso(now),
        "updated_at": iso(now),
        "analysis_started_at": None,
        "completed_at": None,
    })
    logger.info("created job %s for %s", job.id, app_name)
    return job


def get_job(job_id: str) -> Job:
    row = storage.get_job(job_id)
    if row is None:
        raise JobNotFound(job_id)
    return Job.from_row(row)


def advance(job_id: str, expected: str, new: str, fields: Optional[Dict[str, Any]] = None) -> bool:
    """Move a job forward iff it is still in `expected`. Regressions raise."""
    if JOB_RANK[new] <= JOB_RANK[expected]:
        raise InvalidTransition(f"job {job_id}: {expected} -> {new} would not move forward")
    ok = storage.update_job_if(job_id, expected, {"status": new, **(fields or {})})
    if ok:
        logger.info("job %s: %s -> %s", job_id, expected, new)
    return ok


def progress(job_id: str) -> JobProgress:
    counts = storage.counts_by_state(job_id)
    return JobProgress(
        total=sum(counts.values()),
        pending=counts.get(PENDING, 0),
        queued=counts.get(QUEUED, 0),
        running=counts.get(RUNNING, 0),
        completed=counts.get(COMPLETED, 0),
        failed=counts.get(FAILED, 0),
    )


def merge_themes(job: Job, results: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Default aggregation: fold per-batch themes together by case-insensitive title."""
    merged: Dict[str, Dict[str, Any]] = {}
    for result in results:
        for theme in result.get("themes") or []:
            title = str(theme.get("title") or theme.get("name") or "").strip()
            if not title:
                continue
            entry = merged.setdefault(title.lower(), {
                "title": title,
                "description": theme.get("description", ""),
                "mentions": 0,
                "batches": 0,
                "quotes": [],
            })
            entry["mentions"] += int(theme.get("mentions") or 1)
            entry["batches"] += 1
            for quote in theme.get("quotes") or []:
                if len(entry["quotes"]) < 5 and quote not in entry["quotes"]:
                    entry["quotes"].append(quote)
    themes = sorted(merged.values(), key=lambda t: (-t["mentions"], t["title"].lower()))
    return {"app_name": job.app_name, "batches": len(results), "themes": themes}


def evaluate_completion(
    job_id: str,
    aggregator: Optional[Aggregator] = None,
    settings: Optional[Settings] = None,
    now: Optional[datetime] = None,
) -> Optional[str]:
    """Finish an analyzing job whose tasks are all terminal.

    Returns the terminal status this call moved the job to, or None when the
    job is not ready or another caller already handled it. The aggregator
    runs only for the caller that wins analyzing -> completing.
    """
    job = get_job(job_id)
    if job.status != ANALYZING:
        return None
    p = progress(job_id)
    if p.total == 0 or p.active:
        return None

    settings = settings or load_settings()
    now = now or utcnow()
    if p.failed == p.total or p.failed_fraction > settings.failure_threshold:
        reason = f"{p.failed}/{p.total} tasks failed"
        if advance(job_id, ANALYZING, FAILED, {"error": reason, "completed_at": iso(now)}):
            logger.warning("job %s failed: %s", job_id, reason)
            return FAILED
        return None

    if not advance(job_id, ANALYZING, COMPLETING):
        return None
    results = [Task.from_row(r).result or {} for r in storage.list_tasks(job_id, [COMPLETED])]
    try:
        result = (aggregator or merge_themes)(job, results)
    except Exception as exc:
        logger.exception("aggregation failed for job %s", job_id)
        advance(job_id, COMPLETING, FAILED, {"error": f"aggregation failed: {exc}", "completed_at": iso(now)})
        return FAILED
    advance(job_id, COMPLETING, COMPLETED, {"result": json.dumps(result), "completed_at": iso(now)})
    if p.failed:
        logger.info("job %s completed with %d/%d failed batches", job_id, p.failed, p.total)
    return COMPLETED
