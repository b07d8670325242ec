"""Failure classification and exponential backoff.

A failed attempt is classified from its error text, then either requeued
with a durable `not_before` timestamp or moved to terminal `failed`. There
are no in-process timers: the scheduler simply ignores queued tasks whose
`not_before` lies in the future, and the monitor re-drives them later.
"""

import logging
import random
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import List, Optional, Union

from . import storage
from .config import load_settings
from .errors import TaskNotFound
from .models import ANALYZING, FAILED, QUEUED, RUNNING, Settings, Task
from .utils import iso, utcnow

logger = logging.getLogger(__name__)


class ErrorClass(str, Enum):
    TIMEOUT = "timeout"
    API_LIMIT = "api_limit"
    MEMORY = "memory"
    NETWORK = "network"
    DATA = "data"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int
    base_delay: float  # seconds
    factor: float


POLICIES = {
    ErrorClass.TIMEOUT: RetryPolicy(max_retries=2, base_delay=5, factor=1.5),
    ErrorClass.API_LIMIT: RetryPolicy(max_retries=5, base_delay=60, factor=1.2),
    ErrorClass.MEMORY: RetryPolicy(max_retries=1, base_delay=10, factor=2.0),
    ErrorClass.NETWORK: RetryPolicy(max_retries=4, base_delay=1, factor=2.0),
    ErrorClass.DATA: RetryPolicy(max_retries=1, base_delay=5, factor=1.0),
    ErrorClass.UNKNOWN: RetryPolicy(max_retries=2, base_delay=3, factor=1.5),
}

# first match wins
_MARKERS = (
    (ErrorClass.TIMEOUT, ("timeout", "time out")),
    (ErrorClass.API_LIMIT, ("api_limit", "api limit", "rate limit")),
    (ErrorClass.MEMORY, ("memory", "heap")),
    (ErrorClass.NETWORK, ("network", "connection")),
    (ErrorClass.DATA, ("invalid data", "parse error")),
)

REQUEUED = "requeued"
FAILED_FINAL = "failed"
SKIPPED = "skipped"


@dataclass
class RetryDecision:
    task_id: str
    action: str  # requeued | failed | skipped
    error_class: Optional[ErrorClass] = None
    retry_count: int = 0
    delay: float = 0.0
    not_before: Optional[datetime] = None
    reason: str = ""


def describe_error(error: Union[BaseException, str, None]) -> str:
    if error is None:
        return ""
    if isinstance(error, BaseException):
        # the type name carries signal for bare errors, e.g. TimeoutError()
        return f"{type(error).__name__}: {error}"
    return str(error)


def classify_error(error: Union[BaseException, str, None]) -> ErrorClass:
    text = describe_error(error).lower()
    if not text:
        return ErrorClass.UNKNOWN
    for error_class, markers in _MARKERS:
        if any(m in text for m in markers):
            return error_class
    return ErrorClass.UNKNOWN


def compute_delay(
    retry_count: int,
    policy: RetryPolicy,
    max_delay: float = 300.0,
    jitter: float = 0.1,
    rng: Optional[random.Random] = None,
) -> float:
    """delay = min(base * factor**retry_count, max_delay), plus up to `jitter` of itself."""
    delay = min(policy.base_delay * policy.factor ** retry_count, max_delay)
    if jitter:
        delay += delay * jitter * (rng or random).random()
    return delay


def retry_limit(task: Task, error_class: ErrorClass) -> int:
    return min(task.max_retries, POLICIES[error_class].max_retries)


def handle_failure(
    task_id: str,
    error: Union[BaseException, str, None],
    force: bool = False,
    now: Optional[datetime] = None,
    settings: Optional[Settings] = None,
    rng: Optional[random.Random] = None,
    version: Optional[int] = None,
) -> RetryDecision:
    """Fold one failed attempt into the task's retry state.

    Only a `running` task is acted on. Anything else (already terminal, or
    requeued by the monitor while this attempt was presumed dead) is a no-op,
    which makes repeated calls for the same attempt harmless.
    Pass `version` to pin the report to the attempt that produced it.
    """
    row = storage.get_task(task_id)
    if row is None:
        raise TaskNotFound(task_id)
    task = Task.from_row(row)
    if task.state != RUNNING:
        logger.debug("task %s is %s, ignoring failure report", task.id, task.state)
        return RetryDecision(task.id, SKIPPED, retry_count=task.retry_count, reason=f"state is {task.state}")
    if version is not None and task.version != version:
        logger.info("task %s moved on to a newer attempt, ignoring stale failure", task.id)
        return RetryDecision(task.id, SKIPPED, retry_count=task.retry_count, reason="stale attempt")

    settings = settings or load_settings()
    now = now or utcnow()
    detail = describe_error(error)[:1000]
    error_class = classify_error(error)
    limit = retry_limit(task, error_class)

    if task.retry_count >= limit and not force:
        ok = storage.transition_task(task.id, RUNNING, task.version, {
            "state": FAILED,
            "error_class": error_class.value,
            "error": detail,
            "dispatched_at": None,
            "completed_at": iso(now),
        })
        if not ok:
            return RetryDecision(task.id, SKIPPED, error_class, task.retry_count, reason="lost race")
        logger.warning(
            "task %s failed permanently after %d retries (%s): %s",
            task.id, task.retry_count, error_class.value, detail,
        )
        return RetryDecision(task.id, FAILED_FINAL, error_class, task.retry_count, reason="retries exhausted")

    delay = compute_delay(task.retry_count, POLICIES[error_class], settings.max_delay, settings.jitter, rng)
    not_before = now + timedelta(seconds=delay)
    ok = storage.transition_task(task.id, RUNNING, task.version, {
        "state": QUEUED,
        "retry_count": task.retry_count + 1,
        "not_before": iso(not_before),
        "error_class": error_class.value,
        "error": None,
        "dispatched_at": None,
        "started_at": None,
    })
    if not ok:
        return RetryDecision(task.id, SKIPPED, error_class, task.retry_count, reason="lost race")
    logger.info(
        "task %s requeued (%s, retry %d/%d) in %.1fs: %s",
        task.id, error_class.value, task.retry_count + 1, limit, delay, detail,
    )
    return RetryDecision(task.id, REQUEUED, error_class, task.retry_count + 1, delay, not_before)


def retry_failed(
    task_id: Optional[str] = None,
    job_id: Optional[str] = None,
    error_class: Optional[ErrorClass] = None,
    force: bool = False,
    now: Optional[datetime] = None,
    settings: Optional[Settings] = None,
    rng: Optional[random.Random] = None,
    limit: int = 50,
) -> List[RetryDecision]:
    """Manually requeue terminal-failed tasks whose job is still analyzing."""
    settings = settings or load_settings()
    now = now or utcnow()

    if task_id:
        row = storage.get_task(task_id)
        if row is None:
            raise TaskNotFound(task_id)
        rows = [row] if row["state"] == FAILED else []
    else:
        rows = storage.list_tasks(job_id=job_id, states=[FAILED])
    tasks = sorted((Task.from_row(r) for r in rows), key=lambda t: -t.priority)[:limit]

    decisions = []
    for task in tasks:
        cls = ErrorClass(task.error_class) if task.error_class else ErrorClass.UNKNOWN
        if error_class is not None and cls != error_class:
            continue
        job = storage.get_job(task.job_id)
        if job is None or job["status"] != ANALYZING:
            decisions.append(RetryDecision(task.id, SKIPPED, cls, task.retry_count, reason="job no longer analyzing"))
            continue
        if task.retry_count >= retry_limit(task, cls) and not force:
            decisions.append(RetryDecision(task.id, SKIPPED, cls, task.retry_count, reason="retries exhausted"))
            continue
        delay = compute_delay(task.retry_count, POLICIES[cls], settings.max_delay, settings.jitter, rng)
        not_before = now + timedelta(seconds=delay)
        ok = storage.transition_task(task.id, FAILED, task.version, {
            "state": QUEUED,
            "retry_count": task.retry_count + 1,
            "not_before": iso(not_before),
            "error": None,
            "dispatched_at": None,
            "started_at": None,
            "completed_at": None,
        })
        if ok:
            logger.info("task %s manually requeued, runs after %s", task.id, iso(not_before))
            decisions.append(RetryDecision(task.id, REQUEUED, cls, task.retry_count + 1, delay, not_before))
        else:
            decisions.append(RetryDecision(task.id, SKIPPED, cls, task.retry_count, reason="lost race"))
    return decisions
