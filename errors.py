from typing import Any, Dict, Optional


class PlannerError(Exception):
    """Base class for every error the ledger, intake and synchronizer raise."""

    code = "planner_error"
    status_code = 500
    retry_safe = True

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": False,
            "error": self.code,
            "detail": self.message,
            "retry_safe": self.retry_safe,
            "context": self.context,
        }


# ── missing entities ─────────────────────────────────────────────────

class NotFoundError(PlannerError):
    code = "not_found"
    status_code = 404


class CheckpointNotFoundError(NotFoundError):
    code = "checkpoint_not_found"

    def __init__(self, checkpoint_id: int):
        super().__init__(f"Checkpoint {checkpoint_id} not found", {"checkpoint_id": checkpoint_id})


class CommitNotFoundError(NotFoundError):
    code = "commit_not_found"

    def __init__(self, commit_id: int):
        super().__init__(f"Commit {commit_id} not found", {"commit_id": commit_id})


class QuestNotFoundError(NotFoundError):
    code = "quest_not_found"

    def __init__(self, quest_id: int):
        super().__init__(f"Quest {quest_id} not found", {"quest_id": quest_id})


class MilestoneNotFoundError(NotFoundError):
    code = "milestone_not_found"

    def __init__(self, milestone_id: int):
        super().__init__(f"Milestone {milestone_id} not found", {"milestone_id": milestone_id})


class TaskNotFoundError(NotFoundError):
    code = "task_not_found"

    def __init__(self, task_id: int):
        super().__init__(f"Task {task_id} not found", {"task_id": task_id})


class ScheduleBlockNotFoundError(NotFoundError):
    code = "schedule_block_not_found"

    def __init__(self, block_id: int):
        super().__init__(f"Schedule block {block_id} not found", {"block_id": block_id})


# ── caller mistakes ──────────────────────────────────────────────────

class InvalidRangeError(PlannerError):
    code = "invalid_range"
    status_code = 422
    retry_safe = False

    def __init__(self, value: Any, low: int = 0, high: int = 100):
        super().__init__(
            f"Progress value {value!r} is outside [{low}, {high}]",
            {"value": value, "low": low, "high": high},
        )


class AlreadyCompletedError(PlannerError):
    code = "already_completed"
    status_code = 409
    retry_safe = False

    def __init__(self, task_id: int):
        super().__init__(f"Task {task_id} is already completed", {"task_id": task_id})


class NotCompletedError(PlannerError):
    code = "not_completed"
    status_code = 404
    retry_safe = False

    def __init__(self, task_id: int):
        super().__init__(f"Task {task_id} is not completed", {"task_id": task_id})


# ── external assessment service ──────────────────────────────────────

class AssessmentUnavailableError(PlannerError):
    """The assessment service could not be reached or timed out. Nothing was written."""
    code = "assessment_unavailable"
    status_code = 503


class MalformedAssessmentError(PlannerError):
    """The assessment service answered with something that is not a valid assessment."""
    code = "malformed_assessment"
    status_code = 502


# ── persistence ──────────────────────────────────────────────────────

class StorageError(PlannerError):
    """A local write group failed and was rolled back in full."""
    code = "storage_error"
    status_code = 500


class SyncInconsistentError(PlannerError):
    """
    The schedule block and the task completion record disagree and the
    compensating write failed too. Needs manual reconciliation; do not retry
    blindly.
    """
    code = "sync_inconsistent"
    status_code = 500
    retry_safe = False

    def __init__(
        self,
        block_id: int,
        task_id: Optional[int],
        intended_status: str,
        original_status: str,
        cause: BaseException,
        compensation_error: BaseException,
    ):
        super().__init__(
            f"Schedule block {block_id} left at status {intended_status!r} "
            f"but task {task_id} completion update failed ({cause}); "
            f"restoring status {original_status!r} also failed ({compensation_error})",
            {
                "block_id": block_id,
                "task_id": task_id,
                "intended_status": intended_status,
                "original_status": original_status,
                "cause": str(cause),
                "compensation_error": str(compensation_error),
            },
        )
        self.cause = cause
        self.compensation_error = compensation_error
