from __future__ import annotations

import random
import threading
from typing import Any

import pytest
from conftest import RecordingSender, SleepRecorder, StubConnector, make_jobs

from harvest_api.app.analyzer import KeywordCommentAnalyzer
from harvest_api.app.config import AUTO_REPLY_ENABLED, REPLY_DELAY_MAX, REPLY_DELAY_MIN
from harvest_api.app.errors import OperationBusyError
from harvest_api.app.models import (
    AnalysisResult,
    CommentDraft,
    JobDraft,
    Reply,
    ReplyDraft,
    SendResult,
    SettingDraft,
    Task,
    TaskDraft,
)
from harvest_api.app.runners import (
    AnalysisRunner,
    CollectionParams,
    CollectionRunner,
    OperationRunner,
    ReplyRunner,
    SingleFlightGuard,
)
from harvest_api.app.storage import InMemoryRecordStore


class ProgressRecordingStore(InMemoryRecordStore):
    """Store that remembers every progress value written to a task."""

    def __init__(self) -> None:
        super().__init__()
        self.progress_writes: list[int] = []

    def update_task(self, task_id: int, **changes: Any) -> Task:
        if "progress" in changes:
            self.progress_writes.append(changes["progress"])
        return super().update_task(task_id, **changes)


class FlakyJobStore(InMemoryRecordStore):
    def __init__(self, failing_titles: set[str]) -> None:
        super().__init__()
        self.failing_titles = failing_titles

    def create_job(self, draft: JobDraft):
        if draft.title in self.failing_titles:
            raise RuntimeError(f"could not persist {draft.title}")
        return super().create_job(draft)


class FixedAnalyzer:
    def __init__(self, confidence: float) -> None:
        self.confidence = confidence

    def analyze(self, content: str) -> AnalysisResult:
        return AnalysisResult(
            is_job_seeker=True, sentiment="positive", keywords=[], confidence=self.confidence
        )


def _new_task(store: InMemoryRecordStore, task_type: str = "job_collection") -> int:
    return store.create_task(TaskDraft(name="test run", type=task_type)).id


def _enable_replies(store: InMemoryRecordStore, *, min_ms: str = "100", max_ms: str = "200") -> None:
    store.upsert_setting(SettingDraft(key=AUTO_REPLY_ENABLED, value="true", category="replies"))
    store.upsert_setting(SettingDraft(key=REPLY_DELAY_MIN, value=min_ms, category="replies"))
    store.upsert_setting(SettingDraft(key=REPLY_DELAY_MAX, value=max_ms, category="replies"))


def _pending_replies(store: InMemoryRecordStore, count: int) -> list[Reply]:
    comment = store.create_comment(CommentDraft(content="looking for a job", source="facebook"))
    return [
        store.create_reply(
            ReplyDraft(
                comment_id=comment.id,
                content=f"reply {index}",
                template_used="General job invitation",
            )
        )
        for index in range(count)
    ]


# Single-flight guard


def test_guard_rejects_second_acquire_until_release() -> None:
    guard = SingleFlightGuard("job_collection")
    lease = guard.acquire()

    with pytest.raises(OperationBusyError, match="job_collection is already running"):
        guard.acquire()

    assert lease.release() is True
    assert lease.release() is False
    assert guard.is_busy is False
    guard.acquire().release()


def test_lease_can_be_released_from_another_thread() -> None:
    guard = SingleFlightGuard("auto_reply")
    lease = guard.acquire()

    worker = threading.Thread(target=lease.release)
    worker.start()
    worker.join(timeout=2)

    assert not guard.is_busy


def test_runner_refuses_to_run_while_busy(store: InMemoryRecordStore) -> None:
    runner = CollectionRunner(store, {"linkedin": StubConnector("linkedin", make_jobs(1))})
    task_id = _new_task(store)

    with runner.guard.acquire():
        with pytest.raises(OperationBusyError):
            runner.run(task_id, {"source": "linkedin"})

    assert store.get_task(task_id).status == "pending"
    assert store.list_jobs() == []


def test_runner_rejects_lease_from_other_operation(store: InMemoryRecordStore) -> None:
    runner = CollectionRunner(store, {})
    foreign = SingleFlightGuard("auto_reply").acquire()

    with pytest.raises(ValueError):
        runner.run(_new_task(store), {"source": "linkedin"}, lease=foreign)


def test_runner_without_failure_activity_cannot_be_built(store: InMemoryRecordStore) -> None:
    class HalfRunner(OperationRunner[CollectionParams]):
        operation = "job_collection"
        params_model = CollectionParams

        def _execute(self, tracker, params):
            return {}, None

    with pytest.raises(TypeError):
        HalfRunner(store)


# Collection


def test_collection_counts_item_failures_and_completes() -> None:
    store = FlakyJobStore({"Job 2"})
    runner = CollectionRunner(store, {"linkedin": StubConnector("linkedin", make_jobs(3))})
    task_id = _new_task(store)

    runner.run(task_id, {"source": "linkedin", "source_url": "https://linkedin.com/jobs"})

    task = store.get_task(task_id)
    assert task.status == "completed"
    assert task.progress == 100
    assert task.error_message is None
    assert task.result["processed"] == 3
    assert task.result["succeeded"] == 2
    assert task.result["failed"] == 1
    assert task.result["sourceUrl"] == "https://linkedin.com/jobs"
    assert [job.title for job in store.list_jobs()] == ["Job 3", "Job 1"]
    activities = store.list_activities()
    assert len(activities) == 1
    assert activities[0].type == "job_collected"
    assert activities[0].status == "success"
    assert not runner.is_running


def test_collection_progress_is_monotonic() -> None:
    store = ProgressRecordingStore()
    runner = CollectionRunner(store, {"linkedin": StubConnector("linkedin", make_jobs(3))})
    task_id = _new_task(store)

    runner.run(task_id, {"source": "linkedin"})

    # start, one write per item, then the completion write
    assert store.progress_writes == [0, 33, 66, 100, 100]
    assert store.progress_writes == sorted(store.progress_writes)


def test_collection_unknown_source_fails_without_persisting(store: InMemoryRecordStore) -> None:
    runner = CollectionRunner(store, {"linkedin": StubConnector("linkedin", make_jobs(2))})
    task_id = _new_task(store)

    runner.run(task_id, {"source": "myspace"})

    task = store.get_task(task_id)
    assert task.status == "failed"
    assert task.error_message == "Unsupported source: myspace"
    assert task.result is None
    assert task.completed_at is not None
    assert store.list_jobs() == []
    activities = store.list_activities()
    assert [activity.status for activity in activities] == ["error"]
    assert not runner.is_running


def test_collection_applies_keywords_and_max_items(store: InMemoryRecordStore) -> None:
    connector = StubConnector("linkedin", make_jobs(5))
    runner = CollectionRunner(store, {"linkedin": connector})
    task_id = _new_task(store)

    runner.run(task_id, {"source": "LinkedIn", "config": {"keywords": ["PYTHON"], "maxJobs": 2}})

    task = store.get_task(task_id)
    assert task.result["processed"] == 2
    assert sorted(job.title for job in store.list_jobs()) == ["Job 1", "Job 3"]
    assert connector.calls[0][1].max_items == 2


def test_collection_with_no_items_reports_nothing_to_do(store: InMemoryRecordStore) -> None:
    runner = CollectionRunner(store, {"linkedin": StubConnector("linkedin", [])})
    task_id = _new_task(store)

    runner.run(task_id, {"source": "linkedin"})

    task = store.get_task(task_id)
    assert task.status == "completed"
    assert task.progress == 100
    assert task.result["message"] == "nothing to do"
    assert task.result["processed"] == 0


def test_collection_connector_crash_marks_task_failed(store: InMemoryRecordStore) -> None:
    class BrokenConnector:
        name = "linkedin"

        def fetch_jobs(self, source_url, config):
            raise ConnectionError("upstream unavailable")

    runner = CollectionRunner(store, {"linkedin": BrokenConnector()})
    task_id = _new_task(store)

    runner.run(task_id, {"source": "linkedin"})

    task = store.get_task(task_id)
    assert task.status == "failed"
    assert task.error_message == "upstream unavailable"
    assert store.list_activities()[0].type == "error"


# Analysis


def _seed_job_comments(store: InMemoryRecordStore) -> int:
    job = store.create_job(
        JobDraft(title="Accountant", description="Hiring", source="facebook", source_url="https://f.test/1")
    )
    store.create_comment(
        CommentDraft(
            job_id=job.id,
            content="I am looking for a job, please check my cv, send cv details",
            source="facebook",
        )
    )
    store.create_comment(CommentDraft(job_id=job.id, content="Great company", source="facebook"))
    return job.id


def test_analysis_classifies_and_queues_one_reply(store: InMemoryRecordStore) -> None:
    job_id = _seed_job_comments(store)
    runner = AnalysisRunner(store, KeywordCommentAnalyzer(store))
    task_id = _new_task(store, "comment_analysis")

    runner.run(task_id, {"scope_id": job_id})

    task = store.get_task(task_id)
    assert task.status == "completed"
    assert task.result["processed"] == 2
    assert task.result["jobSeekersFound"] == 1
    assert task.result["repliesCreated"] == 1
    assert task.result["scopeId"] == job_id
    comments = store.list_comments(job_id=job_id)
    assert all(comment.analyzed_at is not None for comment in comments)
    assert [comment.is_job_seeker for comment in comments] == [True, False]
    replies = store.list_pending_replies()
    assert len(replies) == 1
    assert replies[0].template_used == "General job invitation"
    activity = store.list_activities()[0]
    assert activity.type == "comment_analyzed"
    assert activity.source == f"Job {job_id}"


def test_analysis_rerun_skips_analyzed_comments(store: InMemoryRecordStore) -> None:
    job_id = _seed_job_comments(store)
    runner = AnalysisRunner(store, KeywordCommentAnalyzer(store))
    runner.run(_new_task(store, "comment_analysis"), {"scope_id": job_id})

    second = _new_task(store, "comment_analysis")
    runner.run(second, {"jobId": job_id})

    task = store.get_task(second)
    assert task.status == "completed"
    assert task.result["processed"] == 0
    assert task.result["message"] == "nothing to do"
    assert len(store.list_replies()) == 1


def test_analysis_reuses_one_template_for_every_job_seeker(store: InMemoryRecordStore) -> None:
    job = store.create_job(
        JobDraft(title="Driver", description="Hiring", source="facebook", source_url="https://f.test/2")
    )
    for content in (
        "I am looking for a job, please check my cv, send cv details",
        "looking for a job, send cv please",
    ):
        store.create_comment(CommentDraft(job_id=job.id, content=content, source="facebook"))
    assert len(store.list_reply_templates(category="job_invitation")) == 1
    runner = AnalysisRunner(store, KeywordCommentAnalyzer(store))
    first = _new_task(store, "comment_analysis")

    runner.run(first, {"scope_id": job.id})

    assert store.get_task(first).result["repliesCreated"] == 2
    replies = store.list_replies()
    assert len(replies) == 2
    assert all(reply.status == "pending" for reply in replies)
    assert {reply.template_used for reply in replies} == {"General job invitation"}

    second = _new_task(store, "comment_analysis")
    runner.run(second, {"scope_id": job.id})

    assert store.get_task(second).result["processed"] == 0
    assert len(store.list_replies()) == 2


def test_analysis_threshold_filters_low_confidence(store: InMemoryRecordStore) -> None:
    store.create_comment(CommentDraft(content="available for work", source="facebook"))
    runner = AnalysisRunner(store, FixedAnalyzer(confidence=0.4))
    task_id = _new_task(store, "comment_analysis")

    runner.run(task_id, {"config": {"confidenceThreshold": 0.5}})

    task = store.get_task(task_id)
    assert task.result["jobSeekersFound"] == 0
    assert store.list_replies() == []
    assert store.list_activities()[0].source == "All Jobs"


def test_analysis_without_template_skips_reply(store: InMemoryRecordStore) -> None:
    store.upsert_setting(
        SettingDraft(key="auto_reply_template_category", value="missing", category="replies")
    )
    store.create_comment(CommentDraft(content="looking for a job", source="facebook"))
    runner = AnalysisRunner(store, FixedAnalyzer(confidence=0.9))
    task_id = _new_task(store, "comment_analysis")

    runner.run(task_id, {})

    task = store.get_task(task_id)
    assert task.status == "completed"
    assert task.result["jobSeekersFound"] == 1
    assert task.result["repliesCreated"] == 0


# Replies


def test_replies_disabled_never_calls_sender(
    store: InMemoryRecordStore, sender: RecordingSender, sleep_recorder: SleepRecorder
) -> None:
    _pending_replies(store, 2)
    runner = ReplyRunner(store, sender, sleep=sleep_recorder)
    task_id = _new_task(store, "auto_reply")

    runner.run(task_id)

    task = store.get_task(task_id)
    assert task.status == "completed"
    assert task.progress == 100
    assert task.result["disabled"] is True
    assert task.result["message"] == "Auto replies are disabled"
    assert sender.sent == []
    assert sleep_recorder.calls == []
    assert len(store.list_pending_replies()) == 2


def test_replies_are_paced_between_items(
    store: InMemoryRecordStore, sender: RecordingSender, sleep_recorder: SleepRecorder
) -> None:
    _enable_replies(store, min_ms="100", max_ms="200")
    _pending_replies(store, 4)
    runner = ReplyRunner(store, sender, sleep=sleep_recorder, rng=random.Random(7))
    task_id = _new_task(store, "auto_reply")

    runner.run(task_id)

    assert len(sleep_recorder.calls) == 3
    assert all(0.1 <= seconds <= 0.2 for seconds in sleep_recorder.calls)
    task = store.get_task(task_id)
    assert task.result["repliesSent"] == 4
    assert all(reply.status == "sent" and reply.sent_at for reply in store.list_replies())
    template = store.list_reply_templates(category="job_invitation")[0]
    assert template.usage_count == 4


def test_reply_failure_marks_reply_and_continues(
    store: InMemoryRecordStore, sleep_recorder: SleepRecorder
) -> None:
    _enable_replies(store)
    replies = _pending_replies(store, 3)
    sender = RecordingSender(fail_ids={replies[1].id})
    runner = ReplyRunner(store, sender, sleep=sleep_recorder)
    task_id = _new_task(store, "auto_reply")

    runner.run(task_id)

    assert sender.sent == [reply.id for reply in replies]
    failed = store.get_reply(replies[1].id)
    assert failed.status == "failed"
    assert failed.error_message == "API rate limit exceeded"
    task = store.get_task(task_id)
    assert task.result["succeeded"] == 2
    assert task.result["failed"] == 1
    assert store.list_activities()[0].status == "success"


def test_reply_sender_exception_counts_as_failure(
    store: InMemoryRecordStore, sleep_recorder: SleepRecorder
) -> None:
    class ExplodingSender:
        def send(self, reply: Reply) -> SendResult:
            raise TimeoutError("socket timeout")

    _enable_replies(store)
    replies = _pending_replies(store, 2)
    runner = ReplyRunner(store, ExplodingSender(), sleep=sleep_recorder)
    task_id = _new_task(store, "auto_reply")

    runner.run(task_id)

    task = store.get_task(task_id)
    assert task.status == "completed"
    assert task.result["failed"] == 2
    assert store.get_reply(replies[0].id).error_message == "socket timeout"
    activity = store.list_activities()[0]
    assert activity.type == "reply_sent"
    assert activity.status == "warning"


def test_sent_reply_stays_sent_when_usage_update_fails(
    sender: RecordingSender, sleep_recorder: SleepRecorder
) -> None:
    class BrokenTemplateStore(InMemoryRecordStore):
        def update_reply_template(self, template_id: int, **changes: Any):
            raise RuntimeError("template table locked")

    store = BrokenTemplateStore()
    _enable_replies(store)
    [reply] = _pending_replies(store, 1)
    runner = ReplyRunner(store, sender, sleep=sleep_recorder)
    task_id = _new_task(store, "auto_reply")

    runner.run(task_id)

    assert sender.sent == [reply.id]
    stored = store.get_reply(reply.id)
    assert stored.status == "sent"
    assert stored.sent_at is not None
    assert stored.error_message is None
    task = store.get_task(task_id)
    assert task.status == "completed"
    assert task.result["succeeded"] == 1
    assert task.result["failed"] == 0
    assert task.result["repliesSent"] == 1


def test_delay_bounds_fall_back_and_swap(store: InMemoryRecordStore) -> None:
    runner = ReplyRunner(store, RecordingSender())

    _enable_replies(store, min_ms="abc", max_ms="1000")
    assert runner.delay_bounds() == (1000, 60000)

    _enable_replies(store, min_ms="500", max_ms="100")
    assert runner.delay_bounds() == (100, 500)


def test_replies_with_nothing_pending(store: InMemoryRecordStore, sender: RecordingSender) -> None:
    _enable_replies(store)
    runner = ReplyRunner(store, sender)
    task_id = _new_task(store, "auto_reply")

    runner.run(task_id)

    task = store.get_task(task_id)
    assert task.result["message"] == "nothing to do"
    assert store.list_activities()[0].status == "success"
