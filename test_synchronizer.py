"""Tests for keeping schedule block status and task completion records in step."""

import random
from concurrent.futures import ThreadPoolExecutor

import pytest

from errors import ScheduleBlockNotFoundError, SyncInconsistentError, TaskNotFoundError
from models import ScheduleBlockCreate
from synchronizer import CompletionSynchronizer, completion_transition


def _block(task_id=None, status="scheduled", day="2025-03-03", start="09:00", end="10:00", title="Deep work"):
    return ScheduleBlockCreate(
        task_id=task_id, date=day, start_time=start, end_time=end, status=status, task_title=title,
    )


class FlakyScheduleStore:
    """Wraps a ScheduleStore and fails the Nth call to update()."""

    def __init__(self, inner, fail_on_call):
        self.inner = inner
        self.fail_on_call = fail_on_call
        self.update_calls = 0

    def update(self, block_id, changes):
        self.update_calls += 1
        if self.update_calls == self.fail_on_call:
            raise RuntimeError("schedule.db went away")
        return self.inner.update(block_id, changes)

    def __getattr__(self, name):
        return getattr(self.inner, name)


@pytest.fixture
def sync(schedule, tasks):
    return CompletionSynchronizer(schedule, tasks)


@pytest.fixture
def task(tasks):
    return tasks.create_task("Write report")


class TestTransition:

    @pytest.mark.parametrize("old,new,expected", [
        ("scheduled", "completed", "enter"),
        ("partially_completed", "completed", "enter"),
        ("completed", "scheduled", "leave"),
        ("completed", "cancelled", "leave"),
        ("scheduled", "in_progress", None),
        ("completed", "completed", None),
    ])
    def test_transition(self, old, new, expected):
        assert completion_transition(old, new) == expected


class TestUpdateBlock:

    def test_complete_then_reopen(self, sync, schedule, tasks, task):
        block = schedule.create(_block(task.id))

        done = sync.update_block(block.id, {"status": "completed"})
        assert done.completion_action == "completed"
        assert done.main_task_id == task.id
        assert tasks.get_completion(task.id) is not None
        assert tasks.get_task(task.id).is_completed is True

        reopened = sync.update_block(block.id, {"status": "scheduled"})
        assert reopened.completion_action == "uncompleted"
        assert tasks.get_completion(task.id) is None
        assert tasks.get_task(task.id).is_completed is False

    def test_already_completed_task_is_left_alone(self, sync, schedule, tasks, task):
        record = tasks.complete(task.id, "done earlier")
        block = schedule.create(_block(task.id))

        result = sync.update_block(block.id, {"status": "completed"})

        assert result.completion_action == "unchanged"
        assert tasks.get_completion(task.id).id == record.id
        assert len(tasks.list_completed()) == 1

    def test_status_change_outside_completed_does_not_touch_tasks(self, sync, schedule, tasks, task):
        block = schedule.create(_block(task.id))

        result = sync.update_block(block.id, {"status": "in_progress", "comment": "started"})

        assert result.completion_action == "unchanged"
        assert result.block.comment == "started"
        assert tasks.get_completion(task.id) is None

    def test_unlinked_block(self, sync, schedule, tasks):
        block = schedule.create(_block(None))
        result = sync.update_block(block.id, {"status": "completed"})
        assert result.block.status == "completed"
        assert result.task_id is None

    def test_grandchild_records_grandparent(self, sync, schedule, tasks):
        root = tasks.create_task("Ship v2", type="long-term")
        child = tasks.create_task("Backend", parent_id=root.id)
        grandchild = tasks.create_task("Migrations", parent_id=child.id)
        block = schedule.create(_block(grandchild.id))

        result = sync.update_block(block.id, {"status": "completed"})

        record = tasks.get_completion(grandchild.id)
        assert record.task_level == 2
        assert record.parent_task_id == child.id
        assert record.grandparent_task_id == root.id
        assert result.main_task_id == root.id

    def test_missing_block(self, sync):
        with pytest.raises(ScheduleBlockNotFoundError):
            sync.update_block(999, {"status": "completed"})

    def test_invalid_edit_rejected_before_anything_changes(self, sync, schedule, tasks, task):
        block = schedule.create(_block(task.id))
        with pytest.raises(ValueError):
            sync.update_block(block.id, {"status": "completed", "start_time": "11:00"})
        assert schedule.get(block.id).status == "scheduled"
        assert tasks.get_completion(task.id) is None


class TestCompensation:

    def test_deleted_task_rolls_block_back(self, sync, schedule, tasks, task):
        block = schedule.create(_block(task.id, status="in_progress"))
        tasks.delete_task(task.id)

        with pytest.raises(TaskNotFoundError):
            sync.update_block(block.id, {"status": "completed", "comment": "finished"})

        restored = schedule.get(block.id)
        assert restored.status == "in_progress"
        assert restored.comment is None

    def test_failed_restore_raises_sync_inconsistent(self, schedule, tasks, task):
        block = schedule.create(_block(task.id))
        tasks.delete_task(task.id)
        flaky = FlakyScheduleStore(schedule, fail_on_call=2)
        sync = CompletionSynchronizer(flaky, tasks)

        with pytest.raises(SyncInconsistentError) as excinfo:
            sync.update_block(block.id, {"status": "completed"})

        err = excinfo.value
        assert err.retry_safe is False
        assert err.context["block_id"] == block.id
        assert err.context["intended_status"] == "completed"
        assert err.context["original_status"] == "scheduled"
        assert isinstance(err.cause, TaskNotFoundError)
        # the stores really do disagree now
        assert schedule.get(block.id).status == "completed"

    def test_sync_inconsistent_body(self, schedule, tasks, task):
        block = schedule.create(_block(task.id))
        tasks.delete_task(task.id)
        sync = CompletionSynchronizer(FlakyScheduleStore(schedule, fail_on_call=2), tasks)

        with pytest.raises(SyncInconsistentError) as excinfo:
            sync.update_block(block.id, {"status": "completed"})

        body = excinfo.value.to_dict()
        assert body["error"] == "sync_inconsistent"
        assert body["retry_safe"] is False


class TestCreateAndDelete:

    def test_create_completed_completes_task(self, sync, tasks, task):
        result = sync.create_block(_block(task.id, status="completed"))
        assert result.completion_action == "completed"
        assert tasks.get_completion(task.id) is not None

    def test_create_completed_for_missing_task_is_undone(self, sync, schedule):
        with pytest.raises(TaskNotFoundError):
            sync.create_block(_block(4040, status="completed"))
        assert schedule.by_date("2025-03-03") == []

    def test_delete_leaves_completion(self, sync, schedule, tasks, task):
        block = schedule.create(_block(task.id))
        sync.update_block(block.id, {"status": "completed"})

        assert sync.delete_block(block.id) is True
        assert schedule.get(block.id) is None
        assert tasks.get_completion(task.id) is not None
        assert sync.delete_block(block.id) is False


class TestConcurrentEdits:

    def test_racing_status_edits_leave_block_and_task_agreeing(self, sync, schedule, tasks, task):
        block = schedule.create(_block(task.id))
        rng = random.Random(11)
        statuses = [rng.choice(["scheduled", "in_progress", "completed", "cancelled"]) for _ in range(200)]

        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(lambda s: sync.update_block(block.id, {"status": s}), statuses))

        final = schedule.get(block.id)
        record = tasks.get_completion(task.id)
        assert (final.status == "completed") == (record is not None)
        assert tasks.get_task(task.id).is_completed == (record is not None)
        assert len(tasks.list_completed()) <= 1

    def test_block_locks_released_after_edits(self, sync, schedule, task):
        blocks = [schedule.create(_block(task.id, start=f"0{h}:00", end=f"0{h}:30")) for h in range(1, 5)]
        for block in blocks:
            sync.update_block(block.id, {"comment": "touched"})
        sync.delete_block(blocks[0].id)

        assert len(sync._locks) == 0
