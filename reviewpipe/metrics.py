from datetime import datetime
from typing import Optional

from . import storage
from .models import FAILED, PENDING, QUEUED, RUNNING, Settings, SystemMetrics
from .utils import parse_ts, seconds_ago, utcnow


def collect_metrics(settings: Settings, now: Optional[datetime] = None) -> SystemMetrics:
    """Load signals derived from the task table; nothing is cached between calls."""
    now = now or utcnow()
    counts = storage.counts_by_state()
    running = counts.get(RUNNING, 0)
    queued = counts.get(QUEUED, 0)
    pending = counts.get(PENDING, 0)

    outcomes = storage.recent_outcomes(seconds_ago(now, settings.error_rate_window))
    failed = sum(1 for r in outcomes if r["state"] == FAILED)
    error_rate = failed / len(outcomes) if outcomes else 0.0

    durations = []
    for r in outcomes:
        started, finished = parse_ts(r["started_at"]), parse_ts(r["completed_at"])
        if r["state"] != FAILED and started and finished:
            durations.append((finished - started).total_seconds())
    average = sum(durations) / len(durations) if durations else 0.0

    oldest = parse_ts(storage.oldest_running_start())
    longest = (now - oldest).total_seconds() if oldest else 0.0

    return SystemMetrics(
        running=running,
        queued=queued,
        pending=pending,
        in_flight=storage.count_in_flight(),
        queue_length=queued + pending,
        current_load=min(running / max(settings.max_concurrency, 1), 1.0),
        memory_usage=min(running * settings.memory_per_task, 1.0),
        error_rate=error_rate,
        average_processing_time=average,
        longest_running=max(longest, 0.0),
    )


def concurrency_for(metrics: SystemMetrics, settings: Settings) -> int:
    """Map load signals to a concurrency budget.

    load<0.3 and mem<0.5 -> 6, load<0.5 and mem<0.7 -> 4,
    load>0.8 or mem>0.8 -> 2, otherwise the default. A high recent error
    rate also drops the budget to 2.
    """
    load, mem = metrics.current_load, metrics.memory_usage
    if load < 0.3 and mem < 0.5:
        budget = 6
    elif load < 0.5 and mem < 0.7:
        budget = 4
    elif load > 0.8 or mem > 0.8:
        budget = 2
    else:
        budget = settings.default_concurrency
    if metrics.error_rate > settings.error_rate_threshold:
        budget = min(budget, 2)
    return max(1, min(budget, settings.max_concurrency))
