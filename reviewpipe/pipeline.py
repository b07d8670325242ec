"""Job intake: collect raw reviews, then cut the filtered sample into tasks."""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from pydantic import ValidationError

from . import storage
from .config import load_settings
from .errors import InvalidTransition
from .jobs import advance, create_job, get_job
from .models import ANALYZING, COLLECTING, FAILED, PENDING, READY, FilterStats, ReviewItem, Settings, Task
from .quality import filter_reviews
from .scheduler import DriveResult, drive
from .utils import iso, utcnow

logger = logging.getLogger(__name__)

__all__ = ["create_job", "collect", "ingest", "plan_batches", "start_analysis", "job_summary", "AnalysisStart"]


@dataclass
class AnalysisStart:
    job_id: str
    tasks_created: int
    stats: FilterStats
    drive: Optional[DriveResult] = None


def ingest(job_id: str, items: Iterable[Dict[str, Any]], default_source: Optional[str] = None) -> int:
    """Store raw items for a collecting job and mark it ready. Returns the number kept."""
    job = get_job(job_id)
    if job.status != COLLECTING:
        raise InvalidTransition(f"job {job_id} is {job.status}, expected {COLLECTING}")

    rows, rejected = [], 0
    for raw in items:
        raw = dict(raw)
        if default_source and not (raw.get("source") or raw.get("platform")):
            raw["source"] = default_source
        try:
            rows.append(ReviewItem.model_validate(raw).model_dump(mode="json"))
        except ValidationError as exc:
            rejected += 1
            logger.debug("rejected raw item for job %s: %s", job_id, exc.errors()[0]["msg"])
    if rejected:
        logger.warning("job %s: %d malformed items rejected", job_id, rejected)

    kept = storage.add_raw_items(job_id, rows)
    if not advance(job_id, COLLECTING, READY):
        raise InvalidTransition(f"job {job_id} left {COLLECTING} during ingest")
    logger.info("job %s ready with %d raw items", job_id, kept)
    return kept


def collect(job_id: str, scrapers: Dict[str, Any], query: str, limits: Optional[Dict[str, Any]] = None) -> int:
    """Run every scraper; one failing source does not stop the others."""
    gathered: List[Dict[str, Any]] = []
    for source, scraper in scrapers.items():
        try:
            found = scraper.scrape(query, limits or {})
        except Exception:
            logger.exception("scraper %s failed for job %s", source, job_id)
            continue
        logger.info("scraper %s returned %d items", source, len(found))
        gathered.extend(dict(f, source=f.get("source") or f.get("platform") or source) for f in found)
    return ingest(job_id, gathered)


def plan_batches(items: List[ReviewItem], settings: Settings) -> List[Tuple[str, List[ReviewItem]]]:
    """Sources with their own batch size get dedicated batches; the rest are pooled."""
    dedicated: Dict[str, List[ReviewItem]] = {}
    pooled: List[ReviewItem] = []
    for item in items:
        if item.source in settings.batch_sizes:
            dedicated.setdefault(item.source, []).append(item)
        else:
            pooled.append(item)

    batches = []
    for source, group in dedicated.items():
        size = max(settings.batch_sizes[source], 1)
        for i in range(0, len(group), size):
            batches.append((source, group[i:i + size]))
    size = max(settings.default_batch_size, 1)
    for i in range(0, len(pooled), size):
        chunk = pooled[i:i + size]
        label = "+".join(dict.fromkeys(item.source for item in chunk))
        batches.append((label, chunk))
    return batches


def start_analysis(
    job_id: str,
    dispatcher=None,
    now: Optional[datetime] = None,
    settings: Optional[Settings] = None,
) -> AnalysisStart:
    """Filter a ready job's reviews, create its tasks and kick off the first drive.

    The ready -> analyzing swap happens first, so a second caller gets
    InvalidTransition instead of a duplicate set of tasks.
    """
    settings = settings or load_settings()
    now = now or utcnow()
    job = get_job(job_id)
    if job.status != READY:
        raise InvalidTransition(f"job {job_id} is {job.status}, expected {READY}")
    if not advance(job_id, READY, ANALYZING, {"analysis_started_at": iso(now)}):
        raise InvalidTransition(f"job {job_id} was started by another caller")

    raw = storage.get_raw_items(job_id)
    selected, stats = filter_reviews(raw, job.app_name, settings, now)
    storage.update_job_if(job_id, ANALYZING, {"stats": stats.model_dump_json()})

    if not selected:
        reason = "no reviews were collected" if not raw else "no reviews survived quality filtering"
        advance(job_id, ANALYZING, FAILED, {"error": reason, "completed_at": iso(now)})
        logger.warning("job %s failed: %s", job_id, reason)
        return AnalysisStart(job_id, 0, stats)

    tasks = [
        Task(
            id=uuid.uuid4().hex,
            job_id=job_id,
            batch_index=index,
            source=label,
            priority=settings.task_priority,
            payload=[item.model_dump(mode="json") for item in batch],
            state=PENDING,
            max_retries=settings.max_retries,
            created_at=now,
            updated_at=now,
        ).to_row()
        for index, (label, batch) in enumerate(plan_batches(selected, settings))
    ]
    storage.insert_tasks(tasks)
    logger.info("job %s: %d reviews in %d batches", job_id, len(selected), len(tasks))

    result = AnalysisStart(job_id, len(tasks), stats)
    if dispatcher is not None:
        result.drive = drive(dispatcher, job_id=job_id, now=now, settings=settings)
    return result


def job_summary(job_id: str) -> Dict[str, Any]:
    job = get_job(job_id)
    return {
        "id": job.id,
        "app_name": job.app_name,
        "status": job.status,
        "error": job.error,
        "tasks": storage.counts_by_state(job_id),
        "stats": job.stats,
        "result": job.result,
    }
