"""Batch scheduler: hands ready tasks to a dispatcher within a concurrency budget.

A task is leased by stamping `dispatched_at` in the same conditional update
that queues it, and that update only succeeds while in-flight work (running
plus leased) is under the budget. Two overlapping drive() calls therefore
cannot both fill the same free slots.
"""

import heapq
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, List, Optional

from . import storage
from .config import load_settings
from .metrics import collect_metrics, concurrency_for
from .models import QUEUED, Settings, Task
from .utils import iso, utcnow

logger = logging.getLogger(__name__)


class TaskQueue:
    """Heap of tasks: highest priority first, then earliest eligible, then oldest."""

    def __init__(self, tasks: Iterable[Task] = ()):
        self._heap = []
        for task in tasks:
            self.push(task)

    @staticmethod
    def sort_key(task: Task):
        # task.id is unique, so keys never tie and Task objects are never compared
        return (-task.priority, task.not_before or task.created_at, task.created_at, task.batch_index, task.id)

    def push(self, task: Task):
        heapq.heappush(self._heap, (self.sort_key(task), task))

    def pop(self) -> Task:
        return heapq.heappop(self._heap)[1]

    def __len__(self):
        return len(self._heap)


@dataclass
class DriveResult:
    budget: int = 0
    in_flight: int = 0
    eligible: int = 0
    dispatched: List[str] = field(default_factory=list)
    dispatch_failed: List[str] = field(default_factory=list)
    lost: int = 0


def _lease(task: Task, now: datetime, budget: int) -> bool:
    return storage.lease_task(task.id, task.state, task.version, iso(now), budget)


def _release(task: Task) -> bool:
    # version was bumped once by _lease
    return storage.transition_task(task.id, QUEUED, task.version + 1, {"dispatched_at": None})


def drive(
    dispatcher,
    job_id: Optional[str] = None,
    budget: Optional[int] = None,
    now: Optional[datetime] = None,
    settings: Optional[Settings] = None,
) -> DriveResult:
    """Lease and dispatch as many ready tasks as the free budget allows.

    A task whose dispatch raises keeps its place in `queued` with the lease
    cleared, so the next pass picks it up again. Tasks lost to a concurrent
    writer are skipped, and the pass stops early once a concurrent writer
    has used up the budget.
    """
    settings = settings or load_settings()
    now = now or utcnow()
    if budget is None:
        budget = concurrency_for(collect_metrics(settings, now), settings)

    result = DriveResult(budget=budget, in_flight=storage.count_in_flight())
    available = budget - result.in_flight
    if available <= 0:
        logger.debug("no free slots (budget %d, in flight %d)", budget, result.in_flight)
        return result

    queue = TaskQueue(Task.from_row(r) for r in storage.fetch_ready_tasks(iso(now), job_id))
    result.eligible = len(queue)
    attempts = 0
    while queue and attempts < available:
        task = queue.pop()
        if not _lease(task, now, budget):
            if storage.count_in_flight() >= budget:
                logger.debug("budget %d filled by a concurrent drive", budget)
                break
            result.lost += 1
            continue
        attempts += 1
        try:
            dispatcher.submit(task.id)
        except Exception as exc:
            logger.error("dispatch of task %s failed: %s", task.id, exc)
            _release(task)
            result.dispatch_failed.append(task.id)
            continue
        result.dispatched.append(task.id)

    if result.dispatched or result.dispatch_failed:
        logger.info(
            "dispatched %d/%d ready tasks (budget %d, in flight %d, %d dispatch failures)",
            len(result.dispatched), result.eligible, budget, result.in_flight, len(result.dispatch_failed),
        )
    return result
