"""Operation runners: collection, analysis and reply sending.

Beginner terms used in this file:
- Single-flight: at most one run of an operation type at any moment.
- Lease: proof that the caller holds the single-flight slot; releasing it twice is harmless.
- Batch: the ordered list of items one run processes (jobs, comments, replies).
- Per-item failure: an item that raised or was rejected; it is counted, never fatal.
"""

from __future__ import annotations

import logging
import math
import random
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any, ClassVar, Generic, TypeVar

from pydantic import AliasChoices, BaseModel, Field

from .analyzer import CommentAnalyzer
from .config import (
    AUTO_REPLY_ENABLED,
    DEFAULT_REPLY_DELAY_MAX_MS,
    DEFAULT_REPLY_DELAY_MIN_MS,
    DEFAULT_TEMPLATE_CATEGORY,
    REPLY_DELAY_MAX,
    REPLY_DELAY_MIN,
    REPLY_TEMPLATE_CATEGORY,
)
from .connectors import SourceConnector, matches_keywords
from .errors import OperationBusyError, UnsupportedSourceError
from .models import (
    ActivityDraft,
    ActivityStatus,
    AnalysisConfig,
    CollectionConfig,
    Comment,
    JobDraft,
    Record,
    Reply,
    ReplyDraft,
    TaskType,
    utc_now,
)
from .sender import ReplySender
from .storage import RecordStore

logger = logging.getLogger(__name__)

TItem = TypeVar("TItem")
TParams = TypeVar("TParams", bound=BaseModel)

NOTHING_TO_DO = "nothing to do"


class SingleFlightGuard:
    """Process-local slot for one operation type."""

    def __init__(self, operation: str) -> None:
        self.operation = operation
        self._lock = threading.Lock()

    def acquire(self) -> Lease:
        """Take the slot or raise OperationBusyError without waiting."""
        if not self._lock.acquire(blocking=False):
            raise OperationBusyError(self.operation)
        return Lease(self)

    @property
    def is_busy(self) -> bool:
        return self._lock.locked()

    def _release(self) -> None:
        self._lock.release()


class Lease:
    """Held slot of a SingleFlightGuard; usable as a context manager from any thread."""

    def __init__(self, guard: SingleFlightGuard) -> None:
        self.guard = guard
        self._released = False
        self._state_lock = threading.Lock()

    @property
    def operation(self) -> str:
        return self.guard.operation

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> bool:
        with self._state_lock:
            if self._released:
                return False
            self._released = True
        self.guard._release()
        return True

    def __enter__(self) -> Lease:
        return self

    def __exit__(self, *_exc: object) -> None:
        self.release()


@dataclass
class BatchCounts:
    processed: int = 0
    succeeded: int = 0
    failed: int = 0

    def as_dict(self) -> dict[str, int]:
        return {"processed": self.processed, "succeeded": self.succeeded, "failed": self.failed}


class TaskProgress:
    """Writes one task's lifecycle: running, monotonic progress, one terminal state."""

    def __init__(self, store: RecordStore, task_id: int) -> None:
        self.store = store
        self.task_id = task_id
        self.progress = 0

    def start(self) -> None:
        self.store.update_task(self.task_id, status="running", progress=0, started_at=utc_now())

    def advance(self, done: int, total: int) -> None:
        if total <= 0:
            return
        value = min(100, math.floor(done * 100 / total))
        if value <= self.progress:
            return
        self.progress = value
        self.store.update_task(self.task_id, progress=value)

    def complete(self, result: dict[str, Any]) -> None:
        self.progress = 100
        self.store.update_task(
            self.task_id,
            status="completed",
            progress=100,
            completed_at=utc_now(),
            result=result,
            error_message=None,
        )


def error_message_for(exc: BaseException) -> str:
    return str(exc) or type(exc).__name__


def mark_task_failed(store: RecordStore, task_id: int, exc: BaseException) -> bool:
    """Force a non-terminal task to failed; returns False when it already ended."""
    task = store.get_task(task_id)
    if task is None or task.is_terminal:
        return False
    store.update_task(
        task_id,
        status="failed",
        completed_at=utc_now(),
        error_message=error_message_for(exc),
        result=None,
    )
    return True


def mark_task_skipped(store: RecordStore, task_id: int, reason: str) -> None:
    """Close a scheduled task whose operation was busy without counting it as failed."""
    store.update_task(
        task_id,
        status="completed",
        progress=100,
        completed_at=utc_now(),
        result={"skipped": True, "message": reason},
    )


def outcome_status(counts: BatchCounts) -> ActivityStatus:
    if counts.processed == 0 or counts.succeeded > 0:
        return "success"
    return "warning"


class OperationRunner(ABC, Generic[TParams]):
    """Runs one operation type to completion and records it on a Task.

    Subclasses provide `params_model` (validated before the task starts) and
    `_execute`, which returns the result payload and the summary Activity.
    """

    operation: ClassVar[TaskType]
    params_model: ClassVar[type[BaseModel]]

    def __init__(self, store: RecordStore) -> None:
        self.store = store
        self.guard = SingleFlightGuard(self.operation)

    @property
    def is_running(self) -> bool:
        return self.guard.is_busy

    def run(self, task_id: int, params: dict[str, Any] | None = None, *, lease: Lease | None = None) -> None:
        """Execute the operation for an existing pending task.

        Raises OperationBusyError when no lease is passed and another run of this
        type is in flight. Every other failure is recorded on the task.
        """
        if lease is None:
            lease = self.guard.acquire()
        elif lease.guard is not self.guard:
            raise ValueError(f"Lease for {lease.operation} cannot run {self.operation}")

        with lease:
            tracker = TaskProgress(self.store, task_id)
            raw_params = dict(params or {})
            try:
                prepared = self.params_model.model_validate(raw_params)
                tracker.start()
                logger.info(
                    "operation_run event=start operation=%s task_id=%s", self.operation, task_id
                )
                result, activity = self._execute(tracker, prepared)
                tracker.complete(result)
                self.store.create_activity(activity)
                logger.info(
                    "operation_run event=completed operation=%s task_id=%s result=%s",
                    self.operation,
                    task_id,
                    result,
                )
            except Exception as exc:  # noqa: BLE001
                self._record_failure(tracker, raw_params, exc)

    @abstractmethod
    def _execute(self, tracker: TaskProgress, params: TParams) -> tuple[dict[str, Any], ActivityDraft]: ...

    @abstractmethod
    def _failure_activity(self, params: dict[str, Any], message: str) -> ActivityDraft: ...

    def _record_failure(self, tracker: TaskProgress, params: dict[str, Any], exc: Exception) -> None:
        message = error_message_for(exc)
        logger.error(
            "operation_run event=failed operation=%s task_id=%s error=%s",
            self.operation,
            tracker.task_id,
            message,
            exc_info=exc,
        )
        try:
            mark_task_failed(self.store, tracker.task_id, exc)
        except Exception as store_exc:  # noqa: BLE001
            logger.error(
                "operation_run event=fail_record_failed task_id=%s error=%s",
                tracker.task_id,
                store_exc,
            )
        try:
            self.store.create_activity(self._failure_activity(params, message))
        except Exception as store_exc:  # noqa: BLE001
            logger.error(
                "operation_run event=activity_failed task_id=%s error=%s",
                tracker.task_id,
                store_exc,
            )

    def _process_batch(
        self,
        tracker: TaskProgress,
        items: Sequence[TItem],
        handle: Callable[[TItem], bool],
        *,
        on_error: Callable[[TItem, Exception], None] | None = None,
        before_next: Callable[[], None] | None = None,
    ) -> BatchCounts:
        """Process items in order; one item's failure never stops the batch."""
        counts = BatchCounts()
        total = len(items)
        for index, item in enumerate(items):
            if index > 0 and before_next is not None:
                before_next()
            try:
                ok = handle(item)
            except Exception as exc:  # noqa: BLE001
                ok = False
                logger.error(
                    "operation_item event=failed operation=%s task_id=%s index=%d error=%s",
                    self.operation,
                    tracker.task_id,
                    index,
                    exc,
                )
                if on_error is not None:
                    try:
                        on_error(item, exc)
                    except Exception as hook_exc:  # noqa: BLE001
                        logger.error(
                            "operation_item event=error_hook_failed operation=%s error=%s",
                            self.operation,
                            hook_exc,
                        )
            counts.processed += 1
            if ok:
                counts.succeeded += 1
            else:
                counts.failed += 1
            tracker.advance(counts.processed, total)
        return counts


class CollectionParams(Record):
    source: str = ""
    source_url: str | None = None
    config: CollectionConfig = Field(default_factory=CollectionConfig)


class AnalysisParams(Record):
    scope_id: int | None = Field(
        default=None, validation_alias=AliasChoices("scope_id", "scopeId", "job_id", "jobId")
    )
    config: AnalysisConfig = Field(default_factory=AnalysisConfig)


class ReplyParams(Record):
    pass


class CollectionRunner(OperationRunner[CollectionParams]):
    operation = "job_collection"
    params_model = CollectionParams

    def __init__(self, store: RecordStore, connectors: dict[str, SourceConnector]) -> None:
        super().__init__(store)
        self.connectors = connectors

    def _execute(
        self, tracker: TaskProgress, params: CollectionParams
    ) -> tuple[dict[str, Any], ActivityDraft]:
        source = params.source.strip().lower()
        connector = self.connectors.get(source)
        if connector is None:
            raise UnsupportedSourceError(params.source or "<missing>")

        drafts = [
            draft
            for draft in connector.fetch_jobs(params.source_url, params.config)
            if matches_keywords(draft, params.config.keywords)
        ]
        if params.config.max_items is not None:
            drafts = drafts[: params.config.max_items]

        counts = self._process_batch(tracker, drafts, self._persist_job)
        result: dict[str, Any] = {
            **counts.as_dict(),
            "jobsCollected": counts.succeeded,
            "source": source,
            "sourceUrl": params.source_url,
        }
        if counts.processed == 0:
            result["message"] = NOTHING_TO_DO
        activity = ActivityDraft(
            type="job_collected",
            description=f"Collected {counts.succeeded} jobs from {source}",
            source=source,
            result=f"{counts.succeeded} jobs collected, {counts.failed} failed",
            status=outcome_status(counts),
            metadata={"taskId": tracker.task_id, **counts.as_dict()},
        )
        return result, activity

    def _persist_job(self, draft: JobDraft) -> bool:
        job = self.store.create_job(draft)
        logger.info("job_collect event=saved job_id=%s title=%s", job.id, job.title)
        return True

    def _failure_activity(self, params: dict[str, Any], message: str) -> ActivityDraft:
        source = str(params.get("source") or "unknown")
        return ActivityDraft(
            type="error",
            description=f"Job collection failed for {source}",
            source=source,
            result="Failed",
            status="error",
            metadata={"error": message},
        )


class AnalysisRunner(OperationRunner[AnalysisParams]):
    operation = "comment_analysis"
    params_model = AnalysisParams

    def __init__(self, store: RecordStore, analyzer: CommentAnalyzer) -> None:
        super().__init__(store)
        self.analyzer = analyzer

    def _execute(
        self, tracker: TaskProgress, params: AnalysisParams
    ) -> tuple[dict[str, Any], ActivityDraft]:
        # Already analyzed comments are skipped, so re-running is cheap.
        pending = [
            comment
            for comment in self.store.list_comments(job_id=params.scope_id)
            if comment.analyzed_at is None
        ]
        category = self._template_category()
        tallies = {"jobSeekersFound": 0, "repliesCreated": 0}

        def handle(comment: Comment) -> bool:
            analysis = self.analyzer.analyze(comment.content)
            positive = (
                analysis.is_job_seeker
                and analysis.confidence >= params.config.confidence_threshold
            )
            self.store.update_comment(
                comment.id,
                is_job_seeker=positive,
                sentiment=analysis.sentiment,
                keywords=analysis.keywords,
                analyzed_at=utc_now(),
            )
            if positive:
                tallies["jobSeekersFound"] += 1
                if self._queue_reply(comment, category):
                    tallies["repliesCreated"] += 1
            return True

        counts = self._process_batch(tracker, pending, handle)
        result: dict[str, Any] = {
            **counts.as_dict(),
            "commentsAnalyzed": counts.succeeded,
            **tallies,
            "scopeId": params.scope_id,
        }
        if counts.processed == 0:
            result["message"] = NOTHING_TO_DO
        activity = ActivityDraft(
            type="comment_analyzed",
            description=(
                f"Analyzed {counts.succeeded} comments, "
                f"found {tallies['jobSeekersFound']} job seekers"
            ),
            source=_scope_label(params.scope_id),
            result=f"{counts.succeeded} comments analyzed",
            status=outcome_status(counts),
            metadata={"taskId": tracker.task_id, **counts.as_dict(), **tallies},
        )
        return result, activity

    def _template_category(self) -> str:
        setting = self.store.get_setting(REPLY_TEMPLATE_CATEGORY)
        if setting is None or not setting.value.strip():
            return DEFAULT_TEMPLATE_CATEGORY
        return setting.value.strip()

    def _queue_reply(self, comment: Comment, category: str) -> bool:
        """Create one pending reply for a job seeker unless one already exists."""
        if self.store.list_replies(comment_id=comment.id):
            logger.info("analysis event=reply_exists comment_id=%s", comment.id)
            return False
        templates = self.store.list_reply_templates(category=category, active_only=True)
        if not templates:
            logger.warning(
                "analysis event=no_template comment_id=%s category=%s", comment.id, category
            )
            return False
        template = templates[0]
        self.store.create_reply(
            ReplyDraft(comment_id=comment.id, content=template.content, template_used=template.name)
        )
        return True

    def _failure_activity(self, params: dict[str, Any], message: str) -> ActivityDraft:
        scope = next(
            (params[key] for key in ("scope_id", "scopeId", "job_id", "jobId") if params.get(key) is not None),
            None,
        )
        return ActivityDraft(
            type="error",
            description="Comment analysis failed",
            source=_scope_label(scope),
            result="Failed",
            status="error",
            metadata={"error": message},
        )


class ReplyRunner(OperationRunner[ReplyParams]):
    operation = "auto_reply"
    params_model = ReplyParams
    activity_source = "auto_reply_service"

    def __init__(
        self,
        store: RecordStore,
        sender: ReplySender,
        *,
        sleep: Callable[[float], None] = time.sleep,
        rng: random.Random | None = None,
    ) -> None:
        super().__init__(store)
        self.sender = sender
        self._sleep = sleep
        self._rng = rng or random.Random()

    def _execute(
        self, tracker: TaskProgress, params: ReplyParams
    ) -> tuple[dict[str, Any], ActivityDraft]:
        if not self._enabled():
            logger.info("auto_reply event=disabled task_id=%s", tracker.task_id)
            result = {"message": "Auto replies are disabled", "disabled": True, **BatchCounts().as_dict()}
            activity = ActivityDraft(
                type="auto_reply_disabled",
                description="Auto reply run skipped: feature disabled",
                source=self.activity_source,
                result="Disabled",
                status="warning",
                metadata={"taskId": tracker.task_id},
            )
            return result, activity

        min_ms, max_ms = self.delay_bounds()
        pending = self.store.list_pending_replies()

        def pause() -> None:
            delay_ms = self._rng.uniform(min_ms, max_ms)
            logger.debug("auto_reply event=pause delay_ms=%.0f", delay_ms)
            self._sleep(delay_ms / 1000.0)

        counts = self._process_batch(
            tracker,
            pending,
            self._send_one,
            on_error=self._mark_reply_failed,
            before_next=pause,
        )
        result: dict[str, Any] = {
            **counts.as_dict(),
            "repliesSent": counts.succeeded,
            "repliesFailed": counts.failed,
            "totalProcessed": counts.processed,
        }
        if counts.processed == 0:
            result["message"] = NOTHING_TO_DO
        activity = ActivityDraft(
            type="reply_sent",
            description=f"Sent {counts.succeeded} replies, {counts.failed} failed",
            source=self.activity_source,
            result=f"{counts.succeeded} replies sent",
            status=outcome_status(counts),
            metadata={"taskId": tracker.task_id, **counts.as_dict()},
        )
        return result, activity

    def _enabled(self) -> bool:
        # Unset means disabled: nothing is posted until an operator opts in.
        setting = self.store.get_setting(AUTO_REPLY_ENABLED)
        return setting is not None and setting.value.strip().lower() == "true"

    def delay_bounds(self) -> tuple[int, int]:
        """Pacing window in milliseconds from settings, with defaults for bad values."""
        min_ms = self._read_int(REPLY_DELAY_MIN, DEFAULT_REPLY_DELAY_MIN_MS)
        max_ms = self._read_int(REPLY_DELAY_MAX, DEFAULT_REPLY_DELAY_MAX_MS)
        if min_ms > max_ms:
            min_ms, max_ms = max_ms, min_ms
        return min_ms, max_ms

    def _read_int(self, key: str, default: int) -> int:
        setting = self.store.get_setting(key)
        if setting is None:
            return default
        try:
            value = int(setting.value)
        except ValueError:
            logger.warning("auto_reply event=bad_setting key=%s value=%r", key, setting.value)
            return default
        if value < 0:
            logger.warning("auto_reply event=bad_setting key=%s value=%r", key, setting.value)
            return default
        return value

    def _send_one(self, reply: Reply) -> bool:
        outcome = self.sender.send(reply)
        if not outcome.success:
            self.store.update_reply(
                reply.id, status="failed", error_message=outcome.error or "Unknown error"
            )
            logger.error("auto_reply event=send_failed reply_id=%s error=%s", reply.id, outcome.error)
            return False
        self.store.update_reply(reply.id, status="sent", sent_at=utc_now(), error_message=None)
        logger.info("auto_reply event=sent reply_id=%s", reply.id)
        try:
            self._bump_template_usage(reply)
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "auto_reply event=usage_update_failed reply_id=%s template=%s error=%s",
                reply.id,
                reply.template_used,
                exc,
            )
        return True

    def _bump_template_usage(self, reply: Reply) -> None:
        if not reply.template_used:
            return
        for template in self.store.list_reply_templates():
            if template.name == reply.template_used:
                self.store.update_reply_template(template.id, usage_count=template.usage_count + 1)
                return

    def _mark_reply_failed(self, reply: Reply, exc: Exception) -> None:
        self.store.update_reply(reply.id, status="failed", error_message=error_message_for(exc))

    def _failure_activity(self, params: dict[str, Any], message: str) -> ActivityDraft:
        return ActivityDraft(
            type="error",
            description="Auto reply process failed",
            source=self.activity_source,
            result="Failed",
            status="error",
            metadata={"error": message},
        )


def _scope_label(scope_id: object) -> str:
    return f"Job {scope_id}" if scope_id is not None else "All Jobs"
