import json
import logging
import os
from datetime import datetime
from typing import Optional

from . import jobs, retry, storage
from .analysis import Analyzer, load_object, validate_result
from .models import COMPLETED, QUEUED, RUNNING, Task
from .scheduler import drive
from .utils import iso, setup_logging, utcnow

logger = logging.getLogger(__name__)


def execute_task(
    task_id: str,
    analyzer: Analyzer,
    aggregator: Optional[jobs.Aggregator] = None,
    dispatcher=None,
    now: Optional[datetime] = None,
) -> Optional[str]:
    """
    Run one queued task to an outcome:
      - claims queued -> running before touching the analyzer
      - stores the result only if the claim is still ours
      - hands failures to the retry engine
      - checks whether the job is finished, then optionally chains the next drive
    Returns the task's new state, or None when nothing ran.
    """
    row = storage.get_task(task_id)
    if row is None:
        logger.warning("task %s vanished before it could run", task_id)
        return None
    task = Task.from_row(row)
    started = now or utcnow()
    if task.state != QUEUED:
        logger.debug("task %s is %s, not running it", task.id, task.state)
        return None
    if task.not_before and task.not_before > started:
        logger.debug("task %s not eligible until %s", task.id, iso(task.not_before))
        return None
    if not storage.transition_task(task.id, QUEUED, task.version, {
        "state": RUNNING,
        "started_at": iso(started),
        "dispatched_at": None,
    }):
        return None
    version = task.version + 1

    job_row = storage.get_job(task.job_id)
    app_name = job_row["app_name"] if job_row else ""
    try:
        result = validate_result(analyzer.analyze(app_name, task.payload))
    except Exception as exc:
        decision = retry.handle_failure(task.id, exc, now=now, version=version)
        outcome = decision.action
    else:
        finished = now or utcnow()
        if not storage.transition_task(task.id, RUNNING, version, {
            "state": COMPLETED,
            "result": json.dumps(result),
            "error": None,
            "completed_at": iso(finished),
        }):
            # the monitor presumed this attempt dead and moved the task on
            logger.info("task %s was reclaimed while running, discarding result", task.id)
            return None
        logger.info("task %s completed (%d themes)", task.id, len(result["themes"]))
        outcome = COMPLETED

    jobs.evaluate_completion(task.job_id, aggregator)
    if dispatcher is not None:
        drive(dispatcher, job_id=task.job_id, budget=getattr(dispatcher, "budget", None))
    return outcome


def run_safely(task_id: str, analyzer: Analyzer, **kwargs) -> Optional[str]:
    """execute_task for pool threads and child processes: errors are logged, never raised."""
    try:
        return execute_task(task_id, analyzer, **kwargs)
    except Exception:
        logger.exception("task %s: unexpected error outside the analyzer", task_id)
        return None


def run_task(task_id: str, analyzer_path: str, aggregator_path: Optional[str] = None):
    """Process entry point; the child opens its own database connection."""
    setup_logging()
    aggregator = load_object(aggregator_path) if aggregator_path else None
    logger.debug("pid %d running task %s", os.getpid(), task_id)
    run_safely(task_id, load_object(analyzer_path), aggregator=aggregator)
    storage.close_conn()
