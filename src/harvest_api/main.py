"""FastAPI application wiring for the job harvest service.

Beginner terms used in this file:
- FastAPI app: the main web application object.
- app.state: shared runtime objects (store, runners, dispatcher, scheduler).
- 202 Accepted: the operation was started in the background; poll the task.
- Lifespan: startup/shutdown hook; it starts the scheduler when configured and
  shuts the worker pool down on exit.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Any

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import HTMLResponse, JSONResponse
from pydantic import Field

from .app.analyzer import CommentAnalyzer, KeywordCommentAnalyzer
from .app.config import Settings, get_settings
from .app.connectors import FacebookGraphConnector, SourceConnector, build_connector_registry
from .app.dispatch import BackgroundLauncher, Dispatcher
from .app.errors import OperationBusyError, RecordNotFoundError
from .app.logbuffer import configure_logging
from .app.models import (
    ActionAccepted,
    Activity,
    ActivityDraft,
    AnalyzeCommentsRequest,
    Comment,
    CommentDraft,
    Job,
    JobDraft,
    Record,
    Reply,
    ReplyDraft,
    ReplyTemplate,
    ReplyTemplateDraft,
    Setting,
    SettingDraft,
    StartCollectionRequest,
    Stats,
    Task,
    TaskDefinition,
    TaskDraft,
    TaskStatus,
    TaskType,
)
from .app.runners import AnalysisRunner, CollectionRunner, ReplyRunner
from .app.scheduler import Scheduler, scheduler_activity
from .app.sender import ReplySender, SimulatedReplySender
from .app.storage import InMemoryRecordStore, RecordStore
from .app.ui import render_dashboard

logger = logging.getLogger(__name__)


class ScheduleRequest(Record):
    """Body for POST /api/scheduler/tasks; the interval is given in seconds."""

    id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    operation: TaskType
    interval_seconds: float = Field(gt=0)
    params: dict[str, Any] = Field(default_factory=dict)
    active: bool = True


class SchedulerStatus(Record):
    is_running: bool
    active_timers: list[str]
    tasks: list[TaskDefinition]


def create_app(
    *,
    store: RecordStore | None = None,
    settings_override: Settings | None = None,
    connectors: dict[str, SourceConnector] | None = None,
    analyzer: CommentAnalyzer | None = None,
    sender: ReplySender | None = None,
    definitions: list[TaskDefinition] | None = None,
    reply_sleep: Callable[[float], None] | None = None,
) -> FastAPI:
    """Application factory.

    Every collaborator can be overridden so tests get a fresh, network-free app.
    """
    settings = settings_override or get_settings()
    log_buffer = configure_logging(settings.log_level, settings.recent_log_capacity)

    store = store or InMemoryRecordStore()
    if connectors is None:
        connectors = build_connector_registry(store=store, settings=settings)
    reply_kwargs: dict[str, Any] = {} if reply_sleep is None else {"sleep": reply_sleep}
    runners = {
        "job_collection": CollectionRunner(store, connectors),
        "comment_analysis": AnalysisRunner(store, analyzer or KeywordCommentAnalyzer(store)),
        "auto_reply": ReplyRunner(store, sender or SimulatedReplySender(store), **reply_kwargs),
    }
    launcher = BackgroundLauncher(store, max_workers=settings.runner_max_workers)
    dispatcher = Dispatcher(store, runners, launcher)
    scheduler = Scheduler(
        store,
        runners,
        launcher,
        definitions=definitions,
        housekeeping_interval_s=settings.scheduler_housekeeping_interval_s,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            "app event=startup env=%s scheduler_autostart=%s",
            settings.app_env,
            settings.scheduler_autostart,
        )
        if settings.scheduler_autostart:
            scheduler.start()
        yield
        if scheduler.is_running:
            scheduler.stop()
        launcher.shutdown(wait=False)

    app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)
    # Shared objects live in app.state so route handlers and tests can reach them.
    app.state.settings = settings
    app.state.store = store
    app.state.runners = runners
    app.state.launcher = launcher
    app.state.dispatcher = dispatcher
    app.state.scheduler = scheduler
    app.state.log_buffer = log_buffer

    @app.exception_handler(OperationBusyError)
    async def busy_handler(_request: Request, exc: OperationBusyError) -> JSONResponse:
        return JSONResponse(status_code=409, content={"detail": str(exc), "operation": exc.operation})

    @app.exception_handler(RecordNotFoundError)
    async def not_found_handler(_request: Request, exc: RecordNotFoundError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.get("/health")
    @app.get("/api/health")
    def health() -> dict[str, Any]:
        return {
            "status": "ok",
            "service": settings.app_name,
            "schedulerRunning": scheduler.is_running,
        }

    @app.get("/", response_class=HTMLResponse)
    def home() -> str:
        return render_dashboard(app_name=settings.app_name)

    @app.get("/api/stats", response_model=Stats)
    def stats() -> Stats:
        return store.get_stats()

    # Jobs

    @app.get("/api/jobs", response_model=list[Job])
    def list_jobs(
        limit: int = Query(default=50, ge=1, le=500),
        offset: int = Query(default=0, ge=0),
        source: str | None = None,
    ) -> list[Job]:
        return store.list_jobs(limit=limit, offset=offset, source=source)

    @app.get("/api/jobs/{job_id}", response_model=Job)
    def get_job(job_id: int) -> Job:
        job = store.get_job(job_id)
        if job is None:
            raise HTTPException(status_code=404, detail="Job not found")
        return job

    @app.post("/api/jobs", response_model=Job, status_code=201)
    def create_job(payload: JobDraft) -> Job:
        return store.create_job(payload)

    # Comments

    @app.get("/api/comments", response_model=list[Comment])
    def list_comments(
        job_id: int | None = Query(default=None, alias="jobId"),
        limit: int = Query(default=100, ge=1, le=1000),
    ) -> list[Comment]:
        return store.list_comments(job_id=job_id, limit=limit)

    @app.get("/api/comments/job-seekers", response_model=list[Comment])
    def list_job_seekers() -> list[Comment]:
        return store.list_job_seeker_comments()

    @app.post("/api/comments", response_model=Comment, status_code=201)
    def create_comment(payload: CommentDraft) -> Comment:
        if payload.job_id is not None and store.get_job(payload.job_id) is None:
            raise HTTPException(status_code=404, detail="Job not found")
        return store.create_comment(payload)

    # Replies

    @app.get("/api/replies", response_model=list[Reply])
    def list_replies(comment_id: int | None = Query(default=None, alias="commentId")) -> list[Reply]:
        return store.list_replies(comment_id=comment_id)

    @app.get("/api/replies/pending", response_model=list[Reply])
    def list_pending_replies() -> list[Reply]:
        return store.list_pending_replies()

    @app.post("/api/replies", response_model=Reply, status_code=201)
    def create_reply(payload: ReplyDraft) -> Reply:
        if store.get_comment(payload.comment_id) is None:
            raise HTTPException(status_code=404, detail="Comment not found")
        return store.create_reply(payload)

    # Tasks

    @app.get("/api/tasks", response_model=list[Task])
    def list_tasks(
        status: TaskStatus | None = None,
        limit: int = Query(default=50, ge=1, le=500),
    ) -> list[Task]:
        return store.list_tasks(status=status, limit=limit)

    @app.post("/api/tasks", response_model=Task, status_code=201)
    def create_task(payload: TaskDraft) -> Task:
        task = store.create_task(payload)
        store.create_activity(
            ActivityDraft(
                type="task_created",
                description=f"New task created: {task.name}",
                source=task.source or "system",
                result=f"Task ID: {task.id}",
                status="success",
                metadata={"taskId": task.id, "taskType": task.type},
            )
        )
        logger.info("task event=created task_id=%s type=%s", task.id, task.type)
        return task

    @app.get("/api/tasks/active", response_model=list[Task])
    def list_active_tasks() -> list[Task]:
        return store.list_active_tasks()

    @app.get("/api/tasks/{task_id}", response_model=Task)
    def get_task(task_id: int) -> Task:
        task = store.get_task(task_id)
        if task is None:
            raise HTTPException(status_code=404, detail="Task not found")
        return task

    # Activities

    @app.get("/api/activities", response_model=list[Activity])
    def list_activities(
        limit: int = Query(default=50, ge=1, le=500),
        offset: int = Query(default=0, ge=0),
    ) -> list[Activity]:
        return store.list_activities(limit=limit, offset=offset)

    @app.get("/api/activities/recent", response_model=list[Activity])
    def list_recent_activities(hours: int = Query(default=24, ge=1, le=24 * 30)) -> list[Activity]:
        return store.list_recent_activities(hours=hours)

    # Settings and templates

    @app.get("/api/settings", response_model=list[Setting])
    def list_settings(category: str | None = None) -> list[Setting]:
        return store.list_settings(category=category)

    @app.post("/api/settings", response_model=Setting)
    def upsert_setting(payload: SettingDraft) -> Setting:
        return store.upsert_setting(payload)

    @app.get("/api/reply-templates", response_model=list[ReplyTemplate])
    def list_reply_templates(category: str | None = None) -> list[ReplyTemplate]:
        return store.list_reply_templates(category=category)

    @app.post("/api/reply-templates", response_model=ReplyTemplate, status_code=201)
    def create_reply_template(payload: ReplyTemplateDraft) -> ReplyTemplate:
        return store.create_reply_template(payload)

    # Actions: start a background run and return its task id.

    @app.post("/api/actions/start-job-collection", response_model=ActionAccepted, status_code=202)
    def start_job_collection(payload: StartCollectionRequest) -> ActionAccepted:
        task_id = dispatcher.start_collection(payload.source, payload.source_url, payload.config)
        return ActionAccepted(message="Job collection started", task_id=task_id)

    @app.post("/api/actions/analyze-comments", response_model=ActionAccepted, status_code=202)
    def analyze_comments(payload: AnalyzeCommentsRequest | None = None) -> ActionAccepted:
        payload = payload or AnalyzeCommentsRequest()
        task_id = dispatcher.start_analysis(payload.job_id, payload.config)
        return ActionAccepted(message="Comment analysis started", task_id=task_id)

    @app.post("/api/actions/send-replies", response_model=ActionAccepted, status_code=202)
    def send_replies() -> ActionAccepted:
        task_id = dispatcher.start_replies()
        return ActionAccepted(message="Reply sending started", task_id=task_id)

    @app.get("/api/test/facebook")
    def check_facebook() -> JSONResponse:
        facebook = connectors.get("facebook")
        if not isinstance(facebook, FacebookGraphConnector):
            facebook = FacebookGraphConnector(store=store, settings=settings)
        outcome = facebook.check_connection()
        return JSONResponse(status_code=200 if outcome["success"] else 400, content=outcome)

    # Scheduler

    @app.get("/api/scheduler", response_model=SchedulerStatus)
    def scheduler_status() -> SchedulerStatus:
        return SchedulerStatus(
            is_running=scheduler.is_running,
            active_timers=scheduler.active_timer_ids(),
            tasks=scheduler.list_tasks(),
        )

    @app.post("/api/scheduler/start")
    def start_scheduler() -> dict[str, Any]:
        started = scheduler.start()
        if started:
            store.create_activity(scheduler_activity(True, len(scheduler.active_timer_ids())))
        return {"message": "Scheduler started" if started else "Scheduler already running", "isRunning": True}

    @app.post("/api/scheduler/stop")
    def stop_scheduler() -> dict[str, Any]:
        stopped = scheduler.stop()
        if stopped:
            store.create_activity(scheduler_activity(False, 0))
        return {"message": "Scheduler stopped" if stopped else "Scheduler not running", "isRunning": False}

    @app.post("/api/scheduler/tasks", response_model=TaskDefinition, status_code=201)
    def add_scheduled_task(payload: ScheduleRequest) -> TaskDefinition:
        definition = TaskDefinition(
            id=payload.id,
            name=payload.name,
            operation=payload.operation,
            interval=timedelta(seconds=payload.interval_seconds),
            params=payload.params,
            active=payload.active,
        )
        return scheduler.add_task(definition)

    @app.delete("/api/scheduler/tasks/{definition_id}")
    def remove_scheduled_task(definition_id: str) -> dict[str, Any]:
        if not scheduler.remove_task(definition_id):
            raise HTTPException(status_code=404, detail="Scheduled task not found")
        return {"message": "Scheduled task removed", "id": definition_id}

    # Logs

    @app.get("/api/logs")
    def recent_logs(
        limit: int = Query(default=100, ge=1, le=1000),
        level: str | None = None,
    ) -> dict[str, Any]:
        return {"logs": log_buffer.recent(limit=limit, level=level), "stats": log_buffer.stats()}

    return app


# Module-level app for `uvicorn harvest_api.main:app`.
app = create_app()
