"""Record store contract and the in-memory backend.

Beginner terms:
- Protocol: a structural interface; any class with matching methods satisfies it.
- Draft: the input shape of a record before the store assigns id/timestamps.
- Deep copy: callers get copies so they cannot mutate stored state in place.
"""

from __future__ import annotations

import threading
from datetime import timedelta
from typing import Any, Protocol, TypeVar

from pydantic import BaseModel

from .config import (
    AUTO_REPLY_ENABLED,
    DEFAULT_TEMPLATE_CATEGORY,
    REPLY_DELAY_MAX,
    REPLY_DELAY_MIN,
    REPLY_TEMPLATE_CATEGORY,
)
from .errors import InvalidTransitionError, RecordNotFoundError
from .models import (
    TASK_TRANSITIONS,
    Activity,
    ActivityDraft,
    Comment,
    CommentDraft,
    Job,
    JobDraft,
    Reply,
    ReplyDraft,
    ReplyTemplate,
    ReplyTemplateDraft,
    Setting,
    SettingDraft,
    Stats,
    Task,
    TaskDraft,
    TaskStatus,
    utc_now,
)

TRecord = TypeVar("TRecord", bound=BaseModel)

DEFAULT_SETTINGS: tuple[SettingDraft, ...] = (
    SettingDraft(
        key="facebook_check_interval",
        value="300000",
        category="scraping",
        description="Facebook check interval in milliseconds",
    ),
    SettingDraft(
        key="linkedin_check_interval",
        value="600000",
        category="scraping",
        description="LinkedIn check interval in milliseconds",
    ),
    SettingDraft(
        key="max_comments_per_job",
        value="100",
        category="analysis",
        description="Maximum comments to analyze per job post",
    ),
    # Outbound replies stay off until an operator turns them on.
    SettingDraft(
        key=AUTO_REPLY_ENABLED,
        value="false",
        category="replies",
        description="Enable automatic replies",
    ),
    SettingDraft(
        key=REPLY_DELAY_MIN,
        value="60000",
        category="replies",
        description="Minimum delay between replies in milliseconds",
    ),
    SettingDraft(
        key=REPLY_DELAY_MAX,
        value="300000",
        category="replies",
        description="Maximum delay between replies in milliseconds",
    ),
    SettingDraft(
        key=REPLY_TEMPLATE_CATEGORY,
        value=DEFAULT_TEMPLATE_CATEGORY,
        category="replies",
        description="Template category used for replies to detected job seekers",
    ),
)

DEFAULT_TEMPLATES: tuple[ReplyTemplateDraft, ...] = (
    ReplyTemplateDraft(
        name="General job invitation",
        content=(
            "Hello, we have job openings that may match your experience. "
            "Please contact us for more details."
        ),
        category="job_invitation",
    ),
    ReplyTemplateDraft(
        name="Follow-up auto reply",
        content="Thank you for your interest. We will contact you soon about open positions.",
        category="follow_up",
    ),
)


class RecordStore(Protocol):
    # Jobs
    def create_job(self, draft: JobDraft) -> Job: ...

    def get_job(self, job_id: int) -> Job | None: ...

    def list_jobs(
        self, limit: int = 50, offset: int = 0, source: str | None = None
    ) -> list[Job]: ...

    # Comments
    def create_comment(self, draft: CommentDraft) -> Comment: ...

    def get_comment(self, comment_id: int) -> Comment | None: ...

    def list_comments(self, job_id: int | None = None, limit: int | None = None) -> list[Comment]: ...

    def update_comment(self, comment_id: int, **changes: Any) -> Comment: ...

    def list_job_seeker_comments(self) -> list[Comment]: ...

    # Replies
    def create_reply(self, draft: ReplyDraft) -> Reply: ...

    def get_reply(self, reply_id: int) -> Reply | None: ...

    def list_replies(self, comment_id: int | None = None) -> list[Reply]: ...

    def update_reply(self, reply_id: int, **changes: Any) -> Reply: ...

    def list_pending_replies(self) -> list[Reply]: ...

    # Tasks
    def create_task(self, draft: TaskDraft) -> Task: ...

    def get_task(self, task_id: int) -> Task | None: ...

    def list_tasks(self, status: TaskStatus | None = None, limit: int = 50) -> list[Task]: ...

    def update_task(self, task_id: int, **changes: Any) -> Task: ...

    def list_active_tasks(self) -> list[Task]: ...

    # Activities
    def create_activity(self, draft: ActivityDraft) -> Activity: ...

    def list_activities(self, limit: int = 50, offset: int = 0) -> list[Activity]: ...

    def list_recent_activities(self, hours: int = 24) -> list[Activity]: ...

    # Settings
    def list_settings(self, category: str | None = None) -> list[Setting]: ...

    def get_setting(self, key: str) -> Setting | None: ...

    def upsert_setting(self, draft: SettingDraft) -> Setting: ...

    # Reply templates
    def create_reply_template(self, draft: ReplyTemplateDraft) -> ReplyTemplate: ...

    def get_reply_template(self, template_id: int) -> ReplyTemplate | None: ...

    def list_reply_templates(
        self, category: str | None = None, active_only: bool = False
    ) -> list[ReplyTemplate]: ...

    def update_reply_template(self, template_id: int, **changes: Any) -> ReplyTemplate: ...

    def get_stats(self) -> Stats: ...


class InMemoryRecordStore:
    """Thread-safe in-memory record store.

    One lock serialises every read and write so runners on worker threads and
    HTTP handlers see consistent records. Nothing survives a process restart.
    """

    def __init__(self, *, seed_defaults: bool = True) -> None:
        self._lock = threading.Lock()
        self._jobs: dict[int, Job] = {}
        self._comments: dict[int, Comment] = {}
        self._replies: dict[int, Reply] = {}
        self._tasks: dict[int, Task] = {}
        self._activities: dict[int, Activity] = {}
        self._settings: dict[str, Setting] = {}
        self._templates: dict[int, ReplyTemplate] = {}
        self._counters: dict[str, int] = {}
        if seed_defaults:
            for setting in DEFAULT_SETTINGS:
                self.upsert_setting(setting)
            for template in DEFAULT_TEMPLATES:
                self.create_reply_template(template)

    # Jobs

    def create_job(self, draft: JobDraft) -> Job:
        with self._lock:
            job = Job(id=self._next_id("job"), collected_at=utc_now(), **draft.model_dump())
            self._jobs[job.id] = job
            return job.model_copy(deep=True)

    def get_job(self, job_id: int) -> Job | None:
        with self._lock:
            return _copy_or_none(self._jobs.get(job_id))

    def list_jobs(self, limit: int = 50, offset: int = 0, source: str | None = None) -> list[Job]:
        with self._lock:
            jobs = sorted(self._jobs.values(), key=lambda item: item.id, reverse=True)
            if source:
                jobs = [job for job in jobs if job.source == source]
            return [job.model_copy(deep=True) for job in jobs[offset : offset + limit]]

    # Comments

    def create_comment(self, draft: CommentDraft) -> Comment:
        with self._lock:
            comment = Comment(
                id=self._next_id("comment"), created_at=utc_now(), **draft.model_dump()
            )
            self._comments[comment.id] = comment
            return comment.model_copy(deep=True)

    def get_comment(self, comment_id: int) -> Comment | None:
        with self._lock:
            return _copy_or_none(self._comments.get(comment_id))

    def list_comments(self, job_id: int | None = None, limit: int | None = None) -> list[Comment]:
        """Return comments oldest first, optionally scoped to one job."""
        with self._lock:
            comments = [
                comment
                for _, comment in sorted(self._comments.items())
                if job_id is None or comment.job_id == job_id
            ]
            if limit is not None:
                comments = comments[:limit]
            return [comment.model_copy(deep=True) for comment in comments]

    def update_comment(self, comment_id: int, **changes: Any) -> Comment:
        with self._lock:
            current = self._comments.get(comment_id)
            if current is None:
                raise RecordNotFoundError("Comment", comment_id)
            updated = _apply_changes(current, changes)
            self._comments[comment_id] = updated
            return updated.model_copy(deep=True)

    def list_job_seeker_comments(self) -> list[Comment]:
        with self._lock:
            return [
                comment.model_copy(deep=True)
                for _, comment in sorted(self._comments.items())
                if comment.is_job_seeker
            ]

    # Replies

    def create_reply(self, draft: ReplyDraft) -> Reply:
        with self._lock:
            reply = Reply(id=self._next_id("reply"), created_at=utc_now(), **draft.model_dump())
            self._replies[reply.id] = reply
            return reply.model_copy(deep=True)

    def get_reply(self, reply_id: int) -> Reply | None:
        with self._lock:
            return _copy_or_none(self._replies.get(reply_id))

    def list_replies(self, comment_id: int | None = None) -> list[Reply]:
        with self._lock:
            return [
                reply.model_copy(deep=True)
                for _, reply in sorted(self._replies.items())
                if comment_id is None or reply.comment_id == comment_id
            ]

    def update_reply(self, reply_id: int, **changes: Any) -> Reply:
        with self._lock:
            current = self._replies.get(reply_id)
            if current is None:
                raise RecordNotFoundError("Reply", reply_id)
            updated = _apply_changes(current, changes)
            self._replies[reply_id] = updated
            return updated.model_copy(deep=True)

    def list_pending_replies(self) -> list[Reply]:
        """Return pending replies oldest first; this is the send order."""
        with self._lock:
            return [
                reply.model_copy(deep=True)
                for _, reply in sorted(self._replies.items())
                if reply.status == "pending"
            ]

    # Tasks

    def create_task(self, draft: TaskDraft) -> Task:
        with self._lock:
            task = Task(
                id=self._next_id("task"),
                status="pending",
                created_at=utc_now(),
                **draft.model_dump(),
            )
            self._tasks[task.id] = task
            return task.model_copy(deep=True)

    def get_task(self, task_id: int) -> Task | None:
        with self._lock:
            return _copy_or_none(self._tasks.get(task_id))

    def list_tasks(self, status: TaskStatus | None = None, limit: int = 50) -> list[Task]:
        with self._lock:
            tasks = sorted(self._tasks.values(), key=lambda item: item.id, reverse=True)
            if status:
                tasks = [task for task in tasks if task.status == status]
            return [task.model_copy(deep=True) for task in tasks[:limit]]

    def update_task(self, task_id: int, **changes: Any) -> Task:
        """Apply a partial update, refusing lifecycle moves that go backwards."""
        with self._lock:
            current = self._tasks.get(task_id)
            if current is None:
                raise RecordNotFoundError("Task", task_id)
            requested = changes.get("status", current.status)
            if current.is_terminal:
                raise InvalidTransitionError(task_id, current.status, requested)
            if requested != current.status and requested not in TASK_TRANSITIONS[current.status]:
                raise InvalidTransitionError(task_id, current.status, requested)
            updated = _apply_changes(current, changes)
            self._tasks[task_id] = updated
            return updated.model_copy(deep=True)

    def list_active_tasks(self) -> list[Task]:
        with self._lock:
            return [
                task.model_copy(deep=True)
                for _, task in sorted(self._tasks.items())
                if task.status in ("pending", "running")
            ]

    # Activities

    def create_activity(self, draft: ActivityDraft) -> Activity:
        with self._lock:
            activity = Activity(
                id=self._next_id("activity"), created_at=utc_now(), **draft.model_dump()
            )
            self._activities[activity.id] = activity
            return activity.model_copy(deep=True)

    def list_activities(self, limit: int = 50, offset: int = 0) -> list[Activity]:
        with self._lock:
            activities = sorted(self._activities.values(), key=lambda item: item.id, reverse=True)
            return [item.model_copy(deep=True) for item in activities[offset : offset + limit]]

    def list_recent_activities(self, hours: int = 24) -> list[Activity]:
        cutoff = utc_now() - timedelta(hours=hours)
        with self._lock:
            activities = sorted(self._activities.values(), key=lambda item: item.id, reverse=True)
            return [item.model_copy(deep=True) for item in activities if item.created_at >= cutoff]

    # Settings

    def list_settings(self, category: str | None = None) -> list[Setting]:
        with self._lock:
            return [
                setting.model_copy(deep=True)
                for setting in sorted(self._settings.values(), key=lambda item: item.id)
                if category is None or setting.category == category
            ]

    def get_setting(self, key: str) -> Setting | None:
        with self._lock:
            return _copy_or_none(self._settings.get(key))

    def upsert_setting(self, draft: SettingDraft) -> Setting:
        with self._lock:
            existing = self._settings.get(draft.key)
            setting_id = existing.id if existing else self._next_id("setting")
            setting = Setting(id=setting_id, updated_at=utc_now(), **draft.model_dump())
            self._settings[setting.key] = setting
            return setting.model_copy(deep=True)

    # Reply templates

    def create_reply_template(self, draft: ReplyTemplateDraft) -> ReplyTemplate:
        with self._lock:
            now = utc_now()
            template = ReplyTemplate(
                id=self._next_id("template"),
                usage_count=0,
                created_at=now,
                updated_at=now,
                **draft.model_dump(),
            )
            self._templates[template.id] = template
            return template.model_copy(deep=True)

    def get_reply_template(self, template_id: int) -> ReplyTemplate | None:
        with self._lock:
            return _copy_or_none(self._templates.get(template_id))

    def list_reply_templates(
        self, category: str | None = None, active_only: bool = False
    ) -> list[ReplyTemplate]:
        with self._lock:
            return [
                template.model_copy(deep=True)
                for _, template in sorted(self._templates.items())
                if (category is None or template.category == category)
                and (template.is_active or not active_only)
            ]

    def update_reply_template(self, template_id: int, **changes: Any) -> ReplyTemplate:
        with self._lock:
            current = self._templates.get(template_id)
            if current is None:
                raise RecordNotFoundError("ReplyTemplate", template_id)
            updated = _apply_changes(current, {**changes, "updated_at": utc_now()})
            self._templates[template_id] = updated
            return updated.model_copy(deep=True)

    def get_stats(self) -> Stats:
        today = utc_now().replace(hour=0, minute=0, second=0, microsecond=0)
        with self._lock:
            return Stats(
                jobs_today=sum(1 for job in self._jobs.values() if job.collected_at >= today),
                comments_analyzed=sum(
                    1 for comment in self._comments.values() if comment.analyzed_at is not None
                ),
                replies_sent=sum(1 for reply in self._replies.values() if reply.status == "sent"),
                active_tasks=sum(
                    1 for task in self._tasks.values() if task.status in ("pending", "running")
                ),
            )

    def _next_id(self, kind: str) -> int:
        value = self._counters.get(kind, 0) + 1
        self._counters[kind] = value
        return value


def _copy_or_none(record: TRecord | None) -> TRecord | None:
    return record.model_copy(deep=True) if record is not None else None


def _apply_changes(current: TRecord, changes: dict[str, Any]) -> TRecord:
    """Merge a partial update and re-validate the whole record."""
    unknown = set(changes) - set(type(current).model_fields)
    if unknown:
        raise ValueError(f"Unknown fields for {type(current).__name__}: {sorted(unknown)}")
    merged = {**current.model_dump(), **changes}
    return type(current).model_validate(merged)
