from __future__ import annotations

import threading
import time
from collections.abc import Callable, Iterator
from datetime import timedelta

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from harvest_api.app.config import Settings
from harvest_api.app.models import (
    CollectionConfig,
    JobDraft,
    Reply,
    SendResult,
    Task,
    TaskDefinition,
)
from harvest_api.app.storage import InMemoryRecordStore
from harvest_api.main import create_app


def make_jobs(count: int, *, source: str = "linkedin") -> list[JobDraft]:
    return [
        JobDraft(
            title=f"Job {index}",
            description=f"Description for job {index}",
            source=source,
            source_url=f"https://example.test/jobs/{index}",
            source_id=f"{source}_{index}",
            keywords=["python"] if index % 2 else ["sales"],
        )
        for index in range(1, count + 1)
    ]


class StubConnector:
    """Connector double that returns a fixed list of drafts."""

    def __init__(self, name: str, jobs: list[JobDraft]) -> None:
        self.name = name
        self.jobs = jobs
        self.calls: list[tuple[str | None, CollectionConfig]] = []

    def fetch_jobs(self, source_url: str | None, config: CollectionConfig) -> list[JobDraft]:
        self.calls.append((source_url, config))
        return [job.model_copy(deep=True) for job in self.jobs]


class BlockingConnector(StubConnector):
    """Holds the run open until the test releases it."""

    def __init__(self, name: str, jobs: list[JobDraft]) -> None:
        super().__init__(name, jobs)
        self.entered = threading.Event()
        self.release = threading.Event()

    def fetch_jobs(self, source_url: str | None, config: CollectionConfig) -> list[JobDraft]:
        self.entered.set()
        self.release.wait(timeout=5)
        return super().fetch_jobs(source_url, config)


class RecordingSender:
    """Reply sender double; fails the reply ids listed in `fail_ids`."""

    def __init__(self, fail_ids: set[int] | None = None) -> None:
        self.fail_ids = fail_ids or set()
        self.sent: list[int] = []

    def send(self, reply: Reply) -> SendResult:
        self.sent.append(reply.id)
        if reply.id in self.fail_ids:
            return SendResult(success=False, error="API rate limit exceeded")
        return SendResult(success=True)


class SleepRecorder:
    def __init__(self) -> None:
        self.calls: list[float] = []

    def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


def wait_for(predicate: Callable[[], bool], *, timeout_s: float = 5.0) -> None:
    deadline = time.monotonic() + timeout_s
    while time.monotonic() < deadline:
        if predicate():
            return
        time.sleep(0.01)
    raise AssertionError("condition not met before timeout")


def wait_for_terminal(store: InMemoryRecordStore, task_id: int, *, timeout_s: float = 5.0) -> Task:
    def done() -> bool:
        task = store.get_task(task_id)
        return task is not None and task.is_terminal

    wait_for(done, timeout_s=timeout_s)
    task = store.get_task(task_id)
    assert task is not None
    return task


@pytest.fixture
def store() -> InMemoryRecordStore:
    return InMemoryRecordStore()


@pytest.fixture
def sleep_recorder() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def sender() -> RecordingSender:
    return RecordingSender()


@pytest.fixture
def test_settings() -> Settings:
    return Settings(log_level="INFO", scheduler_autostart=False, runner_max_workers=4)


@pytest.fixture
def hourly_definitions() -> list[TaskDefinition]:
    return [
        TaskDefinition(
            id="hourly_replies",
            name="Hourly replies",
            operation="auto_reply",
            interval=timedelta(hours=1),
        )
    ]


@pytest.fixture
def app(
    store: InMemoryRecordStore,
    test_settings: Settings,
    sender: RecordingSender,
    sleep_recorder: SleepRecorder,
    hourly_definitions: list[TaskDefinition],
) -> Iterator[FastAPI]:
    application = create_app(
        store=store,
        settings_override=test_settings,
        connectors={"linkedin": StubConnector("linkedin", make_jobs(3))},
        sender=sender,
        definitions=hourly_definitions,
        reply_sleep=sleep_recorder,
    )
    yield application
    if application.state.scheduler.is_running:
        application.state.scheduler.stop()
    application.state.launcher.shutdown()


@pytest.fixture
def client(app: FastAPI) -> TestClient:
    return TestClient(app)
