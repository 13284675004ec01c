"""Pydantic records shared by storage, runners, scheduler and the HTTP API.

Field names are snake_case in Python and camelCase on the wire, so polling
clients keep seeing `sourceUrl`, `errorMessage`, `startedAt` and friends.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

# Task lifecycle states used by storage + API responses.
TaskStatus = Literal["pending", "running", "completed", "failed"]
TaskType = Literal["job_collection", "comment_analysis", "auto_reply"]
ActivityStatus = Literal["success", "warning", "error"]
ReplyStatus = Literal["pending", "sent", "failed"]

TERMINAL_STATUSES: frozenset[str] = frozenset({"completed", "failed"})

# Allowed lifecycle moves; terminal states have no outgoing edges.
TASK_TRANSITIONS: dict[str, frozenset[str]] = {
    "pending": frozenset({"running", "completed", "failed"}),
    "running": frozenset({"completed", "failed"}),
    "completed": frozenset(),
    "failed": frozenset(),
}


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


class Record(BaseModel):
    """Base for every stored record: camelCase aliases, snake_case attributes."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Job(Record):
    id: int
    title: str
    description: str
    company: str | None = None
    location: str | None = None
    source: str
    source_url: str
    source_id: str | None = None
    keywords: list[str] = Field(default_factory=list)
    is_active: bool = True
    posted_at: datetime | None = None
    collected_at: datetime
    metadata: dict[str, Any] | None = None


class JobDraft(Record):
    """A job as produced by a source connector, before it gets an id."""

    title: str = Field(min_length=1)
    description: str
    company: str | None = None
    location: str | None = None
    source: str
    source_url: str
    source_id: str | None = None
    keywords: list[str] = Field(default_factory=list)
    is_active: bool = True
    posted_at: datetime | None = None
    metadata: dict[str, Any] | None = None


class Comment(Record):
    id: int
    job_id: int | None = None
    content: str
    author_name: str | None = None
    author_id: str | None = None
    source: str
    source_comment_id: str | None = None
    is_job_seeker: bool = False
    sentiment: str | None = None
    keywords: list[str] = Field(default_factory=list)
    analyzed_at: datetime | None = None
    created_at: datetime


class CommentDraft(Record):
    job_id: int | None = None
    content: str = Field(min_length=1)
    author_name: str | None = None
    author_id: str | None = None
    source: str
    source_comment_id: str | None = None


class Reply(Record):
    id: int
    comment_id: int
    content: str
    template_used: str | None = None
    status: ReplyStatus = "pending"
    sent_at: datetime | None = None
    error_message: str | None = None
    created_at: datetime


class ReplyDraft(Record):
    comment_id: int
    content: str = Field(min_length=1)
    template_used: str | None = None
    status: ReplyStatus = "pending"


class Task(Record):
    """Canonical task record shape returned by API/storage."""

    id: int
    name: str
    type: TaskType
    status: TaskStatus = "pending"
    source: str | None = None
    source_url: str | None = None
    config: dict[str, Any] = Field(default_factory=dict)
    progress: int = Field(default=0, ge=0, le=100)
    result: dict[str, Any] | None = None
    error_message: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    created_at: datetime

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class TaskDraft(Record):
    name: str = Field(min_length=1)
    type: TaskType
    source: str | None = None
    source_url: str | None = None
    config: dict[str, Any] = Field(default_factory=dict)


class Activity(Record):
    id: int
    type: str
    description: str
    source: str | None = None
    result: str | None = None
    status: ActivityStatus
    metadata: dict[str, Any] | None = None
    created_at: datetime


class ActivityDraft(Record):
    type: str
    description: str
    source: str | None = None
    result: str | None = None
    status: ActivityStatus
    metadata: dict[str, Any] | None = None


class Setting(Record):
    id: int
    key: str
    value: str
    category: str
    description: str | None = None
    updated_at: datetime


class SettingDraft(Record):
    key: str = Field(min_length=1)
    value: str
    category: str
    description: str | None = None


class ReplyTemplate(Record):
    id: int
    name: str
    content: str
    category: str
    is_active: bool = True
    usage_count: int = 0
    created_at: datetime
    updated_at: datetime


class ReplyTemplateDraft(Record):
    name: str = Field(min_length=1)
    content: str = Field(min_length=1)
    category: str
    is_active: bool = True


class Stats(Record):
    jobs_today: int
    comments_analyzed: int
    replies_sent: int
    active_tasks: int


class TaskDefinition(Record):
    """A recurring schedule entry owned by the scheduler."""

    id: str = Field(min_length=1)
    name: str
    operation: TaskType
    # Fixed-period recurrence; calendar-aware rules are not supported.
    interval: timedelta
    params: dict[str, Any] = Field(default_factory=dict)
    active: bool = True
    last_run: datetime | None = None
    next_run: datetime | None = None

    @field_validator("interval")
    @classmethod
    def _positive_interval(cls, value: timedelta) -> timedelta:
        if value.total_seconds() <= 0:
            raise ValueError("interval must be positive")
        return value


class StartCollectionRequest(Record):
    """Request body for POST /api/actions/start-job-collection."""

    source: str = Field(min_length=1)
    source_url: str | None = None
    config: dict[str, Any] = Field(default_factory=dict)


class AnalyzeCommentsRequest(Record):
    # Restricts analysis to the comments of one job.
    job_id: int | None = None
    config: dict[str, Any] = Field(default_factory=dict)


class ActionAccepted(Record):
    message: str
    task_id: int


class CollectionConfig(Record):
    """Per-run knobs for job collection."""

    # Accepts `max_items`, `maxItems` or `maxJobs`.
    max_items: int | None = Field(
        default=None, ge=1, validation_alias=AliasChoices("max_items", "maxItems", "maxJobs")
    )
    keywords: list[str] = Field(default_factory=list)


class AnalysisConfig(Record):
    confidence_threshold: float = Field(default=0.0, ge=0.0, le=1.0)


class AnalysisResult(Record):
    is_job_seeker: bool
    sentiment: str
    keywords: list[str] = Field(default_factory=list)
    confidence: float = Field(ge=0.0, le=1.0)


class SendResult(Record):
    success: bool
    error: str | None = None
