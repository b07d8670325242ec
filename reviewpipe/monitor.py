"""Recovery monitor.

reconcile() is the periodic sweep that keeps the pipeline moving without any
in-memory state: it requeues or fails tasks whose runner died, clears
expired dispatch leases, re-drives waiting work, finishes jobs whose tasks are
all terminal, raises alerts and trims old rows. Every step re-reads the store
and writes through a compare-and-swap, so overlapping sweeps are harmless.
"""

import logging
import os
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Iterable, Optional

from . import jobs, storage
from .alerts import Notifier
from .config import load_settings, shutdown_requested
from .metrics import collect_metrics
from .models import ANALYZING, COMPLETED, COMPLETING, FAILED, QUEUED, RUNNING, Job, Settings, Task
from .retry import ErrorClass
from .scheduler import drive
from .utils import iso, parse_ts, seconds_ago, utcnow

logger = logging.getLogger(__name__)


@dataclass
class RecoveryResult:
    requeued: int = 0
    failed: int = 0
    leases_released: int = 0
    stale: int = 0
    dispatched: int = 0
    jobs_completed: int = 0
    jobs_failed: int = 0
    alerts: int = 0
    swept: int = 0
    errors: int = 0


def _each(rows: Iterable, label: str, result: RecoveryResult, fn: Callable):
    """Apply fn to every row; a failure on one record is logged and the sweep moves on."""
    for row in rows:
        try:
            fn(row)
        except Exception:
            result.errors += 1
            key = row["id"] if hasattr(row, "keys") else row
            logger.exception("%s failed for %s", label, key)


def recover_stuck(result: RecoveryResult, now: datetime, settings: Settings):
    def recover(row):
        task = Task.from_row(row)
        ran_for = (now - task.started_at).total_seconds() if task.started_at else 0
        if task.retry_count < task.max_retries:
            if storage.transition_task(task.id, RUNNING, task.version, {
                "state": QUEUED,
                "retry_count": task.retry_count + 1,
                "error_class": ErrorClass.TIMEOUT.value,
                "error": f"timed out after {ran_for:.0f}s in running",
                "not_before": iso(now),
                "started_at": None,
                "dispatched_at": None,
            }):
                result.requeued += 1
                logger.warning("task %s stuck for %.0fs, requeued (retry %d)", task.id, ran_for, task.retry_count + 1)
        elif storage.transition_task(task.id, RUNNING, task.version, {
            "state": FAILED,
            "error_class": ErrorClass.TIMEOUT.value,
            "error": "exceeded retries after timeout",
            "dispatched_at": None,
            "completed_at": iso(now),
        }):
            result.failed += 1
            logger.error("task %s stuck for %.0fs with no retries left, failed", task.id, ran_for)

    _each(storage.running_started_before(seconds_ago(now, settings.stuck_threshold)), "stuck recovery", result, recover)


def release_stale_leases(result: RecoveryResult, now: datetime, settings: Settings):
    def release(row):
        if storage.transition_task(row["id"], QUEUED, row["version"], {"dispatched_at": None}):
            result.leases_released += 1
            logger.info("task %s: dispatch lease from %s expired", row["id"], row["dispatched_at"])

    _each(storage.dispatched_before(seconds_ago(now, settings.dispatch_timeout)), "lease release", result, release)


def find_stale(now: datetime, settings: Settings):
    rows = storage.waiting_since_before(seconds_ago(now, settings.starvation_threshold), iso(now))
    if rows:
        logger.warning("%d tasks waiting longer than %ds", len(rows), settings.starvation_threshold)
    return rows


def drive_forward(result: RecoveryResult, dispatcher, now: datetime, settings: Settings):
    def push(job_id):
        result.dispatched += len(drive(dispatcher, job_id=job_id, now=now, settings=settings).dispatched)

    _each(storage.jobs_with_waiting_tasks(), "drive", result, push)


def finish_jobs(result: RecoveryResult, aggregator, now: datetime, settings: Settings):
    stuck_cutoff = now - timedelta(seconds=settings.stuck_threshold)

    def finish(row):
        job = Job.from_row(row)
        p = jobs.progress(job.id)
        if p.total == 0:
            started = job.analysis_started_at or job.updated_at
            if started < stuck_cutoff and jobs.advance(job.id, ANALYZING, FAILED, {
                "error": "orphaned: analysis started but no tasks were created",
                "completed_at": iso(now),
            }):
                result.jobs_failed += 1
            return
        if p.active:
            return
        outcome = jobs.evaluate_completion(job.id, aggregator, settings, now)
        if outcome == COMPLETED:
            result.jobs_completed += 1
        elif outcome == FAILED:
            result.jobs_failed += 1

    def abandon(row):
        if parse_ts(row["updated_at"]) < stuck_cutoff and jobs.advance(row["id"], COMPLETING, FAILED, {
            "error": "aggregation did not finish",
            "completed_at": iso(now),
        }):
            result.jobs_failed += 1

    _each(storage.list_jobs(ANALYZING), "completion check", result, finish)
    _each(storage.list_jobs(COMPLETING), "completing check", result, abandon)


def sweep(now: Optional[datetime] = None, settings: Optional[Settings] = None) -> int:
    settings = settings or load_settings()
    now = now or utcnow()
    removed = storage.delete_terminal_tasks(iso(now - timedelta(hours=settings.retention_hours)))
    if removed:
        logger.info("retention sweep removed %d tasks", removed)
    return removed


def reconcile(
    dispatcher=None,
    notifier: Optional[Notifier] = None,
    aggregator=None,
    now: Optional[datetime] = None,
    settings: Optional[Settings] = None,
) -> RecoveryResult:
    """One full recovery pass. Without a dispatcher nothing new is started."""
    settings = settings or load_settings()
    now = now or utcnow()
    result = RecoveryResult()

    recover_stuck(result, now, settings)
    release_stale_leases(result, now, settings)
    stale = find_stale(now, settings)
    result.stale = len(stale)
    if dispatcher is not None:
        drive_forward(result, dispatcher, now, settings)
    finish_jobs(result, aggregator, now, settings)

    if notifier is not None:
        try:
            metrics = collect_metrics(settings, now)
            metrics.stale_tasks = len(stale)
            data = {"stale_task_ids": [r["id"] for r in stale[:20]]} if stale else None
            result.alerts = len(notifier.check(metrics, now, data))
        except Exception:
            result.errors += 1
            logger.exception("alert evaluation failed")

    try:
        result.swept = sweep(now, settings)
    except Exception:
        result.errors += 1
        logger.exception("retention sweep failed")

    logger.debug("reconcile: %s", result)
    return result


def run_forever(
    dispatcher=None,
    notifier: Optional[Notifier] = None,
    aggregator=None,
    interval: Optional[float] = None,
    max_iterations: Optional[int] = None,
):
    """
    Monitor loop:
      - respects the global 'shutdown' flag
      - one reconcile() per interval; a failed pass is logged and retried next tick
      - always deregisters itself on exit
    """
    monitor_id = f"m-{uuid.uuid4().hex[:8]}"
    storage.register_worker(monitor_id, os.getpid())
    iterations = 0
    try:
        while not shutdown_requested():
            settings = load_settings()
            try:
                reconcile(dispatcher, notifier, aggregator, settings=settings)
            except Exception:
                logger.exception("reconcile pass failed")
            iterations += 1
            if max_iterations is not None and iterations >= max_iterations:
                break
            time.sleep(interval if interval is not None else settings.monitor_interval)
    except KeyboardInterrupt:
        pass
    finally:
        storage.stop_worker_record(monitor_id)
    return iterations
