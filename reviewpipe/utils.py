import logging
import os
from datetime import datetime, timezone, timedelta
from typing import Optional, Union

from rich.logging import RichHandler


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def iso(dt: Optional[datetime]) -> Optional[str]:
    """Fixed-width UTC ISO string so stored timestamps sort lexically."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_ts(value: Union[str, datetime, None]) -> Optional[datetime]:
    """Parse a stored or user-supplied timestamp; naive values are taken as UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        try:
            dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def seconds_ago(now: datetime, seconds: float) -> str:
    return iso(now - timedelta(seconds=seconds))


def setup_logging(level: Optional[str] = None) -> None:
    """Route stdlib logging through rich. Level defaults to $REVIEWPIPE_LOG_LEVEL or INFO."""
    if level is None:
        level = os.environ.get("REVIEWPIPE_LOG_LEVEL", "INFO")
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(name)s: %(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
        force=True,
    )
