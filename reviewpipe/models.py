import json
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from .utils import iso, parse_ts

# Task states
PENDING = "pending"
QUEUED = "queued"
RUNNING = "running"
COMPLETED = "completed"
FAILED = "failed"

TASK_STATES = (PENDING, QUEUED, RUNNING, COMPLETED, FAILED)
TERMINAL_STATES = (COMPLETED, FAILED)

# Job statuses, in the only order they may advance. COMPLETED and FAILED share the last rank.
COLLECTING = "collecting"
READY = "ready"
ANALYZING = "analyzing"
COMPLETING = "completing"

JOB_RANK = {
    COLLECTING: 0,
    READY: 1,
    ANALYZING: 2,
    COMPLETING: 3,
    COMPLETED: 4,
    FAILED: 4,
}
JOB_TERMINAL = (COMPLETED, FAILED)

SEVERITIES = ("low", "medium", "high", "critical")


def _json_field(value):
    if isinstance(value, (str, bytes)):
        return json.loads(value)
    return value


class Settings(BaseModel):
    """Policy knobs. Every field can be overridden through the config table."""

    # quality filter
    window_days: int = 90
    retain_undated: bool = True
    min_text_length: int = 10
    max_text_length: int = 5000
    fingerprint_chars: int = 200
    source_quotas: Dict[str, int] = Field(
        default_factory=lambda: {"reddit": 400, "app_store": 2000, "google_play": 2000}
    )
    default_source_quota: int = 400
    engagement_sources: List[str] = Field(default_factory=lambda: ["reddit"])
    review_terms: List[str] = Field(
        default_factory=lambda: ["good", "bad", "love", "hate", "recommend", "experience", "review", "rating"]
    )

    # batching
    batch_sizes: Dict[str, int] = Field(default_factory=lambda: {"reddit": 50})
    default_batch_size: int = 400
    task_priority: int = 7
    max_retries: int = 5

    # retry
    max_delay: float = 300.0
    jitter: float = 0.1

    # scheduling
    default_concurrency: int = 4
    max_concurrency: int = 6
    memory_per_task: float = 0.15
    error_rate_window: int = 3600
    error_rate_threshold: float = 0.15

    # recovery
    stuck_threshold: int = 600
    dispatch_timeout: int = 120
    starvation_threshold: int = 1800
    failure_threshold: float = 0.5
    monitor_interval: float = 60.0
    retention_hours: int = 48


DEFAULTS = Settings().model_dump()


class ReviewItem(BaseModel):
    """One scraped review. Accepts the scraper field names as aliases."""

    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    source: str = Field(validation_alias=AliasChoices("source", "platform"))
    text: str = Field(validation_alias=AliasChoices("text", "review_text"))
    rating: Optional[float] = None
    timestamp: Optional[datetime] = Field(
        default=None, validation_alias=AliasChoices("timestamp", "review_date")
    )
    author: Optional[str] = Field(default=None, validation_alias=AliasChoices("author", "author_name"))
    extra: Dict[str, Any] = Field(
        default_factory=dict, validation_alias=AliasChoices("extra", "additional_data")
    )

    @field_validator("id", mode="before")
    @classmethod
    def id_as_str(cls, v):
        return None if v is None else str(v)

    @field_validator("timestamp", mode="before")
    @classmethod
    def parse_timestamp(cls, v):
        # unparseable dates count as undated
        return parse_ts(v)

    @field_validator("extra", mode="before")
    @classmethod
    def default_extra(cls, v):
        return v or {}


class StageCount(BaseModel):
    total: int = 0
    by_source: Dict[str, int] = Field(default_factory=dict)


class FilterStats(BaseModel):
    original: StageCount = Field(default_factory=StageCount)
    deduplicated: StageCount = Field(default_factory=StageCount)
    time_filtered: StageCount = Field(default_factory=StageCount)
    quality_filtered: StageCount = Field(default_factory=StageCount)
    final: StageCount = Field(default_factory=StageCount)


class Task(BaseModel):
    id: str
    job_id: str
    batch_index: int
    source: str = ""
    priority: int = 0
    payload: List[Dict[str, Any]] = Field(default_factory=list)
    state: str = PENDING  # pending | queued | running | completed | failed
    retry_count: int = 0
    max_retries: int = 5
    error_class: Optional[str] = None
    error: Optional[str] = None
    not_before: Optional[datetime] = None
    dispatched_at: Optional[datetime] = None
    version: int = 0
    result: Optional[Dict[str, Any]] = None
    created_at: datetime
    updated_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @field_validator("payload", "result", mode="before")
    @classmethod
    def load_json(cls, v):
        return _json_field(v)

    @classmethod
    def from_row(cls, row) -> "Task":
        return cls.model_validate(dict(row))

    def to_row(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "job_id": self.job_id,
            "batch_index": self.batch_index,
            "source": self.source,
            "priority": self.priority,
            "payload": json.dumps(self.payload),
            "state": self.state,
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "error_class": self.error_class,
            "error": self.error,
            "not_before": iso(self.not_before),
            "dispatched_at": iso(self.dispatched_at),
            "version": self.version,
            "result": None if self.result is None else json.dumps(self.result),
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at),
            "started_at": iso(self.started_at),
            "completed_at": iso(self.completed_at),
        }


class Job(BaseModel):
    id: str
    app_name: str
    status: str = COLLECTING  # collecting | ready | analyzing | completing | completed | failed
    error: Optional[str] = None
    stats: Optional[Dict[str, Any]] = None
    result: Optional[Dict[str, Any]] = None
    created_at: datetime
    updated_at: datetime
    analysis_started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @field_validator("stats", "result", mode="before")
    @classmethod
    def load_json(cls, v):
        return _json_field(v)

    @classmethod
    def from_row(cls, row) -> "Job":
        return cls.model_validate(dict(row))

    @property
    def terminal(self) -> bool:
        return self.status in JOB_TERMINAL


class SystemMetrics(BaseModel):
    running: int = 0
    queued: int = 0
    pending: int = 0
    in_flight: int = 0
    queue_length: int = 0
    current_load: float = 0.0
    memory_usage: float = 0.0
    error_rate: float = 0.0
    average_processing_time: float = 0.0
    longest_running: float = 0.0
    stale_tasks: int = 0


class AlertRule(BaseModel):
    id: str
    name: str
    condition: str
    severity: str = "medium"
    threshold: float = 0.0
    channels: List[str] = Field(default_factory=lambda: ["log", "database"])
    cooldown: float = 600.0  # seconds
    enabled: bool = True
    last_triggered: Optional[datetime] = None

    @field_validator("channels", mode="before")
    @classmethod
    def load_json(cls, v):
        return _json_field(v)

    @field_validator("severity")
    @classmethod
    def check_severity(cls, v: str) -> str:
        if v not in SEVERITIES:
            raise ValueError(f"severity must be one of {', '.join(SEVERITIES)}")
        return v

    @classmethod
    def from_row(cls, row) -> "AlertRule":
        return cls.model_validate(dict(row))


class Alert(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    rule_id: str
    severity: str
    message: str
    data: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
