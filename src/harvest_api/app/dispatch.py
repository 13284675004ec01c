"""Background launching and on-demand dispatch of operations.

Beginner terms used in this file:
- Launcher: hands a runner to a worker thread and returns immediately.
- Terminal handler: the single completion callback that guarantees a task ends
  in completed or failed, even when the worker itself crashed.
- Dispatcher: the on-demand entry point used by HTTP handlers.
"""

from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any

from .errors import OperationBusyError
from .models import TaskDraft, TaskType
from .runners import Lease, OperationRunner, error_message_for, mark_task_failed
from .storage import RecordStore

logger = logging.getLogger(__name__)


class BackgroundLauncher:
    """Runs operation runners on a worker pool without blocking the caller."""

    def __init__(self, store: RecordStore, *, max_workers: int = 4) -> None:
        self.store = store
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="harvest-runner")

    def launch(
        self,
        runner: OperationRunner[Any],
        task_id: int,
        params: dict[str, Any] | None = None,
        *,
        lease: Lease,
    ) -> Future[None]:
        try:
            future = self._pool.submit(runner.run, task_id, params, lease=lease)
        except RuntimeError as exc:
            # Pool already shut down: nothing will ever run this task.
            lease.release()
            mark_task_failed(self.store, task_id, exc)
            raise
        future.add_done_callback(lambda done: self._on_done(done, task_id, lease))
        logger.info("launch event=submitted operation=%s task_id=%s", runner.operation, task_id)
        return future

    def _on_done(self, future: Future[None], task_id: int, lease: Lease) -> None:
        """Terminal handler: attached exactly once per launched run."""
        exc = future.exception() if not future.cancelled() else RuntimeError("Run was cancelled")
        if exc is not None:
            logger.error(
                "launch event=crashed task_id=%s error=%s", task_id, error_message_for(exc)
            )
            try:
                mark_task_failed(self.store, task_id, exc)
            except Exception as store_exc:  # noqa: BLE001
                logger.error("launch event=fail_record_failed task_id=%s error=%s", task_id, store_exc)
        lease.release()

    def shutdown(self, *, wait: bool = True) -> None:
        self._pool.shutdown(wait=wait, cancel_futures=True)


class Dispatcher:
    """Starts operations on demand and returns the new task id right away.

    The single-flight slot is taken before any task is created, so a busy
    operation is reported to the caller and leaves no record behind.
    """

    def __init__(
        self,
        store: RecordStore,
        runners: dict[TaskType, OperationRunner[Any]],
        launcher: BackgroundLauncher,
    ) -> None:
        self.store = store
        self.runners = runners
        self.launcher = launcher

    def start_collection(
        self,
        source: str,
        source_url: str | None = None,
        config: dict[str, Any] | None = None,
    ) -> int:
        config = dict(config or {})
        draft = TaskDraft(
            name=f"Job Collection - {source}",
            type="job_collection",
            source=source,
            source_url=source_url,
            config=config,
        )
        params = {"source": source, "source_url": source_url, "config": config}
        return self._dispatch(draft, params)

    def start_analysis(self, scope_id: int | None = None, config: dict[str, Any] | None = None) -> int:
        config = dict(config or {})
        name = f"Comment Analysis - Job {scope_id}" if scope_id is not None else "Comment Analysis - All"
        draft = TaskDraft(
            name=name,
            type="comment_analysis",
            config={**config, "scopeId": scope_id},
        )
        return self._dispatch(draft, {"scope_id": scope_id, "config": config})

    def start_replies(self) -> int:
        draft = TaskDraft(name="Auto Reply Process", type="auto_reply")
        return self._dispatch(draft, {})

    def is_busy(self, operation: TaskType) -> bool:
        return self.runners[operation].is_running

    def _dispatch(self, draft: TaskDraft, params: dict[str, Any]) -> int:
        runner = self.runners[draft.type]
        try:
            lease = runner.guard.acquire()
        except OperationBusyError:
            logger.warning("dispatch event=busy operation=%s", draft.type)
            raise
        try:
            task = self.store.create_task(draft)
        except Exception:
            lease.release()
            raise
        logger.info("dispatch event=accepted operation=%s task_id=%s", draft.type, task.id)
        self.launcher.launch(runner, task.id, params, lease=lease)
        return task.id
