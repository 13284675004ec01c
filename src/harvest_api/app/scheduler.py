"""Recurring execution of operations on fixed intervals.

Beginner terms used in this file:
- Definition: a named recurring entry (operation + params + interval).
- Timer: one daemon thread per active definition that ticks every interval.
- Tick: one firing of a timer; it always leaves a Task record behind.
- Skipped run: a tick that found the operation busy; its Task completes with
  `{"skipped": true}` instead of running a second copy.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from datetime import timedelta
from typing import Any

from .dispatch import BackgroundLauncher
from .errors import OperationBusyError
from .models import ActivityDraft, TaskDefinition, TaskDraft, TaskType, utc_now
from .runners import OperationRunner, mark_task_skipped
from .storage import RecordStore

logger = logging.getLogger(__name__)


def default_definitions() -> list[TaskDefinition]:
    return [
        TaskDefinition(
            id="facebook_job_collection",
            name="Facebook Job Collection",
            operation="job_collection",
            interval=timedelta(minutes=30),
            params={
                "source": "facebook",
                "source_url": "https://facebook.com/groups/jobsriyadh",
                "config": {"maxJobs": 50},
            },
        ),
        TaskDefinition(
            id="linkedin_job_collection",
            name="LinkedIn Job Collection",
            operation="job_collection",
            interval=timedelta(hours=2),
            params={
                "source": "linkedin",
                "source_url": "https://linkedin.com/jobs/search",
                "config": {"maxJobs": 30},
            },
        ),
        TaskDefinition(
            id="comment_analysis",
            name="Comment Analysis",
            operation="comment_analysis",
            interval=timedelta(minutes=15),
        ),
        TaskDefinition(
            id="auto_reply",
            name="Auto Reply Processing",
            operation="auto_reply",
            interval=timedelta(minutes=10),
        ),
    ]


class _Timer:
    def __init__(self, thread: threading.Thread, stop_event: threading.Event) -> None:
        self.thread = thread
        self.stop_event = stop_event


class Scheduler:
    """Owns the recurring definitions and their timers."""

    def __init__(
        self,
        store: RecordStore,
        runners: dict[TaskType, OperationRunner[Any]],
        launcher: BackgroundLauncher,
        *,
        definitions: list[TaskDefinition] | None = None,
        housekeeping_interval_s: float = 60.0,
    ) -> None:
        self.store = store
        self.runners = runners
        self.launcher = launcher
        self.housekeeping_interval_s = housekeeping_interval_s
        self._definitions: dict[str, TaskDefinition] = {}
        for definition in default_definitions() if definitions is None else definitions:
            self._definitions[definition.id] = definition.model_copy(deep=True)
        self._timers: dict[str, _Timer] = {}
        self._housekeeping: _Timer | None = None
        self._running = False
        self._lock = threading.RLock()

    @property
    def is_running(self) -> bool:
        return self._running

    def start(self) -> bool:
        """Arm one timer per active definition; a second call is a logged no-op."""
        with self._lock:
            if self._running:
                logger.warning("scheduler event=start_ignored reason=already_running")
                return False
            self._running = True
            for definition in self._definitions.values():
                if definition.active:
                    self._arm(definition)
            self._housekeeping = self._spawn(
                "harvest-housekeeping", self.housekeeping_interval_s, self._housekeeping_tick
            )
            logger.info("scheduler event=started timers=%d", len(self._timers))
            return True

    def stop(self, *, timeout_s: float = 5.0) -> bool:
        """Disarm every timer; runs already in flight finish on their own."""
        with self._lock:
            if not self._running:
                logger.warning("scheduler event=stop_ignored reason=not_running")
                return False
            self._running = False
            timers = list(self._timers.values())
            if self._housekeeping is not None:
                timers.append(self._housekeeping)
            self._timers.clear()
            self._housekeeping = None
            for timer in timers:
                timer.stop_event.set()
        for timer in timers:
            if timer.thread is not threading.current_thread():
                timer.thread.join(timeout=timeout_s)
        logger.info("scheduler event=stopped")
        return True

    def add_task(self, definition: TaskDefinition) -> TaskDefinition:
        """Register or replace a definition; a running scheduler rearms its timer."""
        with self._lock:
            definition = definition.model_copy(deep=True)
            self._disarm(definition.id)
            self._definitions[definition.id] = definition
            if self._running and definition.active:
                self._arm(definition)
            logger.info(
                "scheduler event=task_added task_def=%s operation=%s interval_s=%s",
                definition.id,
                definition.operation,
                definition.interval.total_seconds(),
            )
            return definition.model_copy(deep=True)

    def remove_task(self, definition_id: str) -> bool:
        with self._lock:
            if definition_id not in self._definitions:
                return False
            self._disarm(definition_id)
            del self._definitions[definition_id]
            logger.info("scheduler event=task_removed task_def=%s", definition_id)
            return True

    def get_task(self, definition_id: str) -> TaskDefinition | None:
        with self._lock:
            definition = self._definitions.get(definition_id)
            return definition.model_copy(deep=True) if definition is not None else None

    def list_tasks(self) -> list[TaskDefinition]:
        with self._lock:
            return [definition.model_copy(deep=True) for definition in self._definitions.values()]

    def active_timer_ids(self) -> list[str]:
        with self._lock:
            return sorted(self._timers)

    def run_now(self, definition_id: str) -> int | None:
        """Fire one tick immediately and return the Task it created."""
        with self._lock:
            if definition_id not in self._definitions:
                raise KeyError(definition_id)
        return self._tick(definition_id)

    def _arm(self, definition: TaskDefinition) -> None:
        interval_s = definition.interval.total_seconds()
        definition.next_run = utc_now() + definition.interval
        self._timers[definition.id] = self._spawn(
            f"harvest-timer-{definition.id}",
            interval_s,
            lambda stop_event: self._tick(definition.id, stop_event),
        )

    def _disarm(self, definition_id: str) -> None:
        timer = self._timers.pop(definition_id, None)
        if timer is not None:
            timer.stop_event.set()
        definition = self._definitions.get(definition_id)
        if definition is not None:
            definition.next_run = None

    def _spawn(
        self, name: str, interval_s: float, action: Callable[[threading.Event], object]
    ) -> _Timer:
        stop_event = threading.Event()

        def loop() -> None:
            # Event.wait returns True once the timer is disarmed.
            while not stop_event.wait(interval_s):
                try:
                    action(stop_event)
                except Exception as exc:  # noqa: BLE001
                    logger.error("scheduler event=tick_failed timer=%s error=%s", name, exc, exc_info=exc)

        thread = threading.Thread(target=loop, name=name, daemon=True)
        timer = _Timer(thread, stop_event)
        thread.start()
        return timer

    def _tick(self, definition_id: str, stop_event: threading.Event | None = None) -> int | None:
        with self._lock:
            if stop_event is not None and stop_event.is_set():
                return None
            definition = self._definitions.get(definition_id)
            if definition is None:
                raise KeyError(definition_id)
            now = utc_now()
            definition.last_run = now
            definition.next_run = now + definition.interval
            params = dict(definition.params)
            task = self.store.create_task(
                TaskDraft(
                    name=f"Scheduled: {definition.name}",
                    type=definition.operation,
                    source=params.get("source"),
                    source_url=params.get("source_url"),
                    config=dict(params.get("config") or {}),
                )
            )
        runner = self.runners[definition.operation]
        try:
            lease = runner.guard.acquire()
        except OperationBusyError as exc:
            logger.info(
                "scheduler event=tick_skipped task_def=%s task_id=%s operation=%s",
                definition_id,
                task.id,
                definition.operation,
            )
            mark_task_skipped(self.store, task.id, str(exc))
            return task.id
        logger.info(
            "scheduler event=tick task_def=%s task_id=%s operation=%s",
            definition_id,
            task.id,
            definition.operation,
        )
        self.launcher.launch(runner, task.id, params, lease=lease)
        return task.id

    def _housekeeping_tick(self, _stop_event: threading.Event) -> None:
        active = self.store.list_active_tasks()
        logger.debug(
            "scheduler event=heartbeat timers=%d active_tasks=%d",
            len(self._timers),
            len(active),
        )


def scheduler_activity(started: bool, timers: int) -> ActivityDraft:
    """Activity recorded when an operator starts or stops the scheduler."""
    if started:
        return ActivityDraft(
            type="scheduler_started",
            description=f"Task scheduler started with {timers} timers",
            source="scheduler",
            result="Started",
            status="success",
        )
    return ActivityDraft(
        type="scheduler_stopped",
        description="Task scheduler stopped",
        source="scheduler",
        result="Stopped",
        status="success",
    )
