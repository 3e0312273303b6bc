"""
Completion synchronizer.

A schedule block's status lives in schedule.db; whether its task is completed
lives in tasks.db. There is no transaction spanning both, so an edit that
moves a linked block into or out of "completed" runs as a small saga:

  1. write the block edit (schedule.db, committed),
  2. create / delete the task's completion record (tasks.db),
  3. if 2 fails, write the block's previous values back,
  4. if 3 fails too, raise SyncInconsistentError: the stores now disagree
     and nothing retries automatically.

If step 3 succeeds the original error from step 2 is re-raised, so the caller
sees exactly why the edit was refused.
"""

import logging
import threading
import weakref
from typing import Any, Dict, Optional

from errors import ScheduleBlockNotFoundError, SyncInconsistentError
from models import BlockUpdateResult, ScheduleBlock, ScheduleBlockCreate
from schedule_store import ScheduleStore
from task_store import TaskStore

logger = logging.getLogger(__name__)


COMPLETED = "completed"


def completion_transition(old_status: str, new_status: str) -> Optional[str]:
    """'enter', 'leave' or None for a status change, seen from the completed state."""
    if old_status != COMPLETED and new_status == COMPLETED:
        return "enter"
    if old_status == COMPLETED and new_status != COMPLETED:
        return "leave"
    return None


class CompletionSynchronizer:

    def __init__(self, schedule: ScheduleStore, tasks: TaskStore):
        self.schedule = schedule
        self.tasks = tasks
        # a lock lives only while some edit of its block holds or waits on it
        self._locks: "weakref.WeakValueDictionary[int, threading.Lock]" = weakref.WeakValueDictionary()
        self._locks_guard = threading.Lock()

    def _block_lock(self, block_id: int) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(block_id, threading.Lock())

    # ── block lifecycle ──────────────────────────────────────────────

    def create_block(self, block: ScheduleBlockCreate) -> BlockUpdateResult:
        """
        Create a block. A linked block created directly as completed completes
        its task too; if that fails the new block is removed again.
        """
        created = self.schedule.create(block)
        if created.status != COMPLETED or created.task_id is None:
            return BlockUpdateResult(block=created, task_id=created.task_id)

        with self._block_lock(created.id):
            try:
                action = self._sync_task(created.task_id, "enter")
            except Exception as cause:
                self._undo_create(created, cause)
                raise
        return self._result(created, action)

    def update_block(self, block_id: int, changes: Dict[str, Any]) -> BlockUpdateResult:
        """Edit a block and keep its task's completion record in step with its status."""
        with self._block_lock(block_id):
            before = self.schedule.get(block_id)
            if before is None:
                raise ScheduleBlockNotFoundError(block_id)

            after = self.schedule.update(block_id, changes)

            transition = completion_transition(before.status, after.status)
            if transition is None or before.task_id is None:
                return BlockUpdateResult(block=after, task_id=before.task_id)

            try:
                action = self._sync_task(before.task_id, transition)
            except Exception as cause:
                self._compensate(before, changes, after, cause)
                raise

        return self._result(after, action)

    def delete_block(self, block_id: int) -> bool:
        """Unconditional; completion records are not touched."""
        with self._block_lock(block_id):
            return self.schedule.delete(block_id)

    # ── task side ────────────────────────────────────────────────────

    def _sync_task(self, task_id: int, transition: str) -> str:
        if transition == "enter":
            record = self.tasks.ensure_completed(task_id)
            return "completed" if record is not None else "unchanged"
        removed = self.tasks.uncomplete(task_id)
        return "uncompleted" if removed else "unchanged"

    def _result(self, block: ScheduleBlock, action: str) -> BlockUpdateResult:
        main_task_id = None
        task = self.tasks.get_task(block.task_id) if block.task_id is not None else None
        if task is not None:
            main_task_id = self.tasks.main_task_id(task)
        return BlockUpdateResult(
            block=block,
            completion_action=action,
            task_id=block.task_id,
            main_task_id=main_task_id,
        )

    # ── compensation ─────────────────────────────────────────────────

    def _compensate(
        self,
        before: ScheduleBlock,
        changes: Dict[str, Any],
        after: ScheduleBlock,
        cause: BaseException,
    ) -> None:
        restore = {field: getattr(before, field) for field in changes}
        try:
            self.schedule.update(before.id, restore)
        except Exception as compensation_error:
            logger.error(
                f"SYNC INCONSISTENT: block {before.id} stuck at status {after.status!r}, "
                f"task {before.task_id} completion update failed ({cause}) and restoring "
                f"status {before.status!r} failed ({compensation_error})"
            )
            raise SyncInconsistentError(
                block_id=before.id,
                task_id=before.task_id,
                intended_status=after.status,
                original_status=before.status,
                cause=cause,
                compensation_error=compensation_error,
            ) from compensation_error

        logger.warning(
            f"Block {before.id}: task {before.task_id} completion update failed ({cause}); "
            f"status restored to {before.status!r}"
        )

    def _undo_create(self, created: ScheduleBlock, cause: BaseException) -> None:
        try:
            self.schedule.delete(created.id)
        except Exception as compensation_error:
            logger.error(
                f"SYNC INCONSISTENT: new block {created.id} is completed but task "
                f"{created.task_id} is not ({cause}); removing the block failed ({compensation_error})"
            )
            raise SyncInconsistentError(
                block_id=created.id,
                task_id=created.task_id,
                intended_status=created.status,
                original_status="(not created)",
                cause=cause,
                compensation_error=compensation_error,
            ) from compensation_error

        logger.warning(f"Block {created.id} removed again: task {created.task_id} could not be completed ({cause})")
