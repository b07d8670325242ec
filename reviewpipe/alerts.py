"""Alert rules evaluated against SystemMetrics, with per-rule cooldowns.

The cooldown is enforced against the stored `last_triggered`, advanced by a
compare-and-swap, so two monitors evaluating the same rule at the same
instant still emit a single alert.
"""

import json
import logging
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from rich.console import Console

from . import storage
from .models import Alert, AlertRule, SystemMetrics
from .utils import iso, parse_ts, utcnow

logger = logging.getLogger(__name__)

CONDITIONS: Dict[str, Callable[[SystemMetrics, float], bool]] = {
    "average_processing_time": lambda m, t: m.average_processing_time > t,
    "error_rate": lambda m, t: m.error_rate > t,
    "queue_length": lambda m, t: m.queue_length > t,
    "system_overload": lambda m, t: m.current_load > t or m.memory_usage > t,
    "longest_running": lambda m, t: m.longest_running > t,
    "stale_tasks": lambda m, t: m.stale_tasks > t,
}

MESSAGES: Dict[str, Callable[[SystemMetrics, float], str]] = {
    "average_processing_time": lambda m, t: f"Average processing time {m.average_processing_time:.0f}s exceeds {t:.0f}s",
    "error_rate": lambda m, t: f"Error rate {m.error_rate:.1%} exceeds {t:.1%}",
    "queue_length": lambda m, t: f"{m.queue_length} tasks waiting (threshold {t:.0f})",
    "system_overload": lambda m, t: f"Load {m.current_load:.0%}, memory {m.memory_usage:.0%} (threshold {t:.0%})",
    "longest_running": lambda m, t: f"A task has been running for {m.longest_running:.0f}s (threshold {t:.0f}s)",
    "stale_tasks": lambda m, t: f"{m.stale_tasks} tasks have been waiting too long to start",
}

DEFAULT_RULES = [
    AlertRule(id="high_processing_time", name="High processing time", condition="average_processing_time",
              severity="medium", threshold=300, cooldown=15 * 60),
    AlertRule(id="high_error_rate", name="High error rate", condition="error_rate",
              severity="high", threshold=0.15, cooldown=10 * 60),
    AlertRule(id="queue_backlog", name="Queue backlog", condition="queue_length",
              severity="medium", threshold=20, cooldown=20 * 60),
    AlertRule(id="system_overload", name="System overload", condition="system_overload",
              severity="critical", threshold=0.9, cooldown=5 * 60),
    AlertRule(id="processing_timeout", name="Processing timeout", condition="longest_running",
              severity="high", threshold=600, cooldown=30 * 60),
    AlertRule(id="stale_tasks", name="Stale tasks", condition="stale_tasks",
              severity="medium", threshold=0, cooldown=30 * 60),
]

_LOG_LEVELS = {
    "low": logging.INFO,
    "medium": logging.WARNING,
    "high": logging.ERROR,
    "critical": logging.CRITICAL,
}


def rule_row(rule: AlertRule) -> Dict[str, Any]:
    return {
        "id": rule.id,
        "name": rule.name,
        "condition": rule.condition,
        "severity": rule.severity,
        "threshold": rule.threshold,
        "channels": json.dumps(rule.channels),
        "cooldown": rule.cooldown,
        "enabled": int(rule.enabled),
        "last_triggered": iso(rule.last_triggered),
    }


def install_default_rules() -> int:
    """Insert any default rule that is missing; existing rules are left untouched."""
    added = 0
    for rule in DEFAULT_RULES:
        if storage.get_alert_rule(rule.id) is None:
            storage.upsert_alert_rule(rule_row(rule))
            added += 1
    return added


def load_rules() -> List[AlertRule]:
    install_default_rules()
    return [AlertRule.from_row(r) for r in storage.list_alert_rules()]


class Channel:
    name = ""

    def deliver(self, alert: Alert) -> bool:
        raise NotImplementedError


class LogChannel(Channel):
    name = "log"

    def deliver(self, alert: Alert) -> bool:
        logger.log(_LOG_LEVELS.get(alert.severity, logging.WARNING), "[%s] %s", alert.severity.upper(), alert.message)
        return True


class ConsoleChannel(Channel):
    name = "console"
    styles = {"low": "cyan", "medium": "yellow", "high": "red", "critical": "bold white on red"}

    def __init__(self, console: Optional[Console] = None):
        self.console = console or Console(stderr=True)

    def deliver(self, alert: Alert) -> bool:
        style = self.styles.get(alert.severity, "yellow")
        self.console.print(f"[{style}]{alert.severity.upper()}[/{style}] {alert.message}", highlight=False)
        return True


class DatabaseChannel(Channel):
    name = "database"

    def deliver(self, alert: Alert) -> bool:
        storage.insert_alert({
            "id": alert.id,
            "rule_id": alert.rule_id,
            "severity": alert.severity,
            "message": alert.message,
            "data": json.dumps(alert.data, default=str),
            "created_at": iso(alert.created_at),
        })
        return True


def default_channels() -> Dict[str, Channel]:
    return {c.name: c for c in (LogChannel(), ConsoleChannel(), DatabaseChannel())}


class Notifier:
    def __init__(self, channels: Optional[Dict[str, Channel]] = None):
        self.channels = channels if channels is not None else default_channels()

    def evaluate(
        self,
        rule: AlertRule,
        metrics: SystemMetrics,
        now: Optional[datetime] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> Optional[Alert]:
        """Emit an alert for `rule` if its condition holds and it is out of cooldown."""
        if not rule.enabled:
            return None
        condition = CONDITIONS.get(rule.condition)
        if condition is None:
            logger.warning("alert rule %s has unknown condition %r", rule.id, rule.condition)
            return None
        if not condition(metrics, rule.threshold):
            return None

        now = now or utcnow()
        row = storage.get_alert_rule(rule.id)
        if row is None:
            storage.upsert_alert_rule(rule_row(rule))
            row = storage.get_alert_rule(rule.id)
        observed = row["last_triggered"]
        last = parse_ts(observed)
        if last is not None and (now - last).total_seconds() < rule.cooldown:
            return None
        if not storage.claim_alert_trigger(rule.id, observed, iso(now)):
            return None
        rule.last_triggered = now

        alert = Alert(
            id=f"alert_{uuid.uuid4().hex[:16]}",
            rule_id=rule.id,
            severity=rule.severity,
            message=MESSAGES[rule.condition](metrics, rule.threshold),
            data={"metrics": metrics.model_dump(), **(data or {})},
            created_at=now,
        )
        self.deliver(alert, rule.channels)
        return alert

    def check(
        self,
        metrics: SystemMetrics,
        now: Optional[datetime] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> List[Alert]:
        emitted = []
        for rule in load_rules():
            try:
                alert = self.evaluate(rule, metrics, now, data)
            except Exception:
                logger.exception("evaluating alert rule %s failed", rule.id)
                continue
            if alert is not None:
                emitted.append(alert)
        return emitted

    def send_manual(
        self,
        severity: str,
        message: str,
        data: Optional[Dict[str, Any]] = None,
        channels: Optional[List[str]] = None,
    ) -> Alert:
        alert = Alert(
            id=f"manual_{uuid.uuid4().hex[:16]}",
            rule_id="manual",
            severity=severity,
            message=message,
            data=data or {},
            created_at=utcnow(),
        )
        self.deliver(alert, channels or list(self.channels))
        return alert

    def deliver(self, alert: Alert, names: List[str]) -> Dict[str, bool]:
        """Send to each named channel; one channel failing never blocks the rest."""
        delivered = {}
        for name in names:
            channel = self.channels.get(name)
            if channel is None:
                logger.warning("alert %s: no channel named %r", alert.id, name)
                delivered[name] = False
                continue
            try:
                delivered[name] = bool(channel.deliver(alert))
            except Exception:
                logger.exception("alert %s: channel %s failed", alert.id, name)
                delivered[name] = False
        return delivered
