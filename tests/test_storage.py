from __future__ import annotations

import pytest

from harvest_api.app.config import AUTO_REPLY_ENABLED, REPLY_TEMPLATE_CATEGORY
from harvest_api.app.errors import InvalidTransitionError, RecordNotFoundError
from harvest_api.app.models import CommentDraft, ReplyDraft, SettingDraft, TaskDraft
from harvest_api.app.storage import InMemoryRecordStore


def test_create_task_starts_pending(store: InMemoryRecordStore) -> None:
    task = store.create_task(TaskDraft(name="Job Collection - linkedin", type="job_collection"))

    assert task.status == "pending"
    assert task.progress == 0
    assert task.result is None
    assert task.error_message is None
    assert task.started_at is None


def test_task_lifecycle_rejects_backward_moves(store: InMemoryRecordStore) -> None:
    task = store.create_task(TaskDraft(name="Auto Reply Process", type="auto_reply"))
    store.update_task(task.id, status="running")
    store.update_task(task.id, status="completed", progress=100, result={"processed": 0})

    with pytest.raises(InvalidTransitionError):
        store.update_task(task.id, status="running")
    with pytest.raises(InvalidTransitionError):
        store.update_task(task.id, progress=50)

    assert store.get_task(task.id).status == "completed"


def test_running_cannot_return_to_pending(store: InMemoryRecordStore) -> None:
    task = store.create_task(TaskDraft(name="Comment Analysis - All", type="comment_analysis"))
    store.update_task(task.id, status="running")

    with pytest.raises(InvalidTransitionError, match="running to pending"):
        store.update_task(task.id, status="pending")


def test_update_missing_task_raises_not_found(store: InMemoryRecordStore) -> None:
    with pytest.raises(RecordNotFoundError, match="Task 999 does not exist"):
        store.update_task(999, status="running")


def test_update_rejects_unknown_fields(store: InMemoryRecordStore) -> None:
    task = store.create_task(TaskDraft(name="Auto Reply Process", type="auto_reply"))

    with pytest.raises(ValueError, match="Unknown fields"):
        store.update_task(task.id, colour="blue")


def test_returned_records_are_copies(store: InMemoryRecordStore) -> None:
    task = store.create_task(TaskDraft(name="Auto Reply Process", type="auto_reply", config={"a": 1}))
    task.config["a"] = 2

    assert store.get_task(task.id).config == {"a": 1}


def test_list_tasks_newest_first_and_active_filter(store: InMemoryRecordStore) -> None:
    first = store.create_task(TaskDraft(name="first", type="auto_reply"))
    second = store.create_task(TaskDraft(name="second", type="auto_reply"))
    store.update_task(first.id, status="failed", error_message="boom")

    assert [task.id for task in store.list_tasks()] == [second.id, first.id]
    assert [task.id for task in store.list_tasks(status="failed")] == [first.id]
    assert [task.id for task in store.list_active_tasks()] == [second.id]


def test_defaults_are_seeded(store: InMemoryRecordStore) -> None:
    assert store.get_setting(AUTO_REPLY_ENABLED).value == "false"
    assert store.get_setting(REPLY_TEMPLATE_CATEGORY).value == "job_invitation"
    names = [template.name for template in store.list_reply_templates(category="job_invitation")]
    assert names == ["General job invitation"]


def test_store_can_start_empty() -> None:
    empty = InMemoryRecordStore(seed_defaults=False)

    assert empty.list_settings() == []
    assert empty.list_reply_templates() == []


def test_upsert_setting_keeps_id(store: InMemoryRecordStore) -> None:
    before = store.get_setting(AUTO_REPLY_ENABLED)
    after = store.upsert_setting(
        SettingDraft(key=AUTO_REPLY_ENABLED, value="true", category="replies")
    )

    assert after.id == before.id
    assert store.get_setting(AUTO_REPLY_ENABLED).value == "true"


def test_pending_replies_oldest_first(store: InMemoryRecordStore) -> None:
    comment = store.create_comment(CommentDraft(content="hello", source="facebook"))
    first = store.create_reply(ReplyDraft(comment_id=comment.id, content="one"))
    second = store.create_reply(ReplyDraft(comment_id=comment.id, content="two"))
    store.update_reply(first.id, status="sent")

    assert [reply.id for reply in store.list_pending_replies()] == [second.id]
    assert len(store.list_replies(comment_id=comment.id)) == 2


def test_stats_counts(store: InMemoryRecordStore) -> None:
    comment = store.create_comment(CommentDraft(content="hello", source="facebook"))
    store.update_comment(comment.id, is_job_seeker=True)
    store.create_task(TaskDraft(name="Auto Reply Process", type="auto_reply"))

    stats = store.get_stats()

    assert stats.active_tasks == 1
    assert stats.comments_analyzed == 0
    assert [c.id for c in store.list_job_seeker_comments()] == [comment.id]
