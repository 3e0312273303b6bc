from pydantic import BaseModel, Field, field_validator, model_validator
from typing import List, Dict, Optional, Literal
from datetime import date as _date


MilestoneStatus = Literal["current", "next", "future", "completed"]
BlockStatus = Literal["scheduled", "in_progress", "partially_completed", "completed", "cancelled"]
TaskType = Literal["routine", "long-term", "short-term"]

BLOCK_STATUSES = ("scheduled", "in_progress", "partially_completed", "completed", "cancelled")

_HHMM = r"^([01]\d|2[0-3]):[0-5]\d$"


def _check_iso_date(value: str) -> str:
    try:
        _date.fromisoformat(value)
    except ValueError:
        raise ValueError(f"expected a YYYY-MM-DD date, got {value!r}")
    if len(value) != 10:
        raise ValueError(f"expected a YYYY-MM-DD date, got {value!r}")
    return value


# ── Quest hierarchy (read-side data for the ledger) ──────────────────

class Quest(BaseModel):
    id: int
    title: str
    status: str = "active"
    created_at: Optional[str] = None


class Milestone(BaseModel):
    id: int
    quest_id: int
    title: str
    completion_criteria: str = ""
    status: MilestoneStatus = "future"
    order_index: Optional[int] = None
    created_at: Optional[str] = None


class Checkpoint(BaseModel):
    """Smallest trackable unit of progress. `progress` only moves through the ledger."""
    id: int
    milestone_id: int
    title: str
    description: Optional[str] = None
    progress: int = Field(0, ge=0, le=100)
    is_completed: bool = False
    completed_at: Optional[str] = None
    order_index: Optional[int] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


# ── Commits, ledger entries, assessments ─────────────────────────────

class Commit(BaseModel):
    id: int
    quest_id: int
    milestone_id: Optional[int] = None
    commit_date: str                              # YYYY-MM-DD
    content: str
    attachments: List[str] = Field(default_factory=list)
    created_at: Optional[str] = None


class ProgressHistoryEntry(BaseModel):
    id: int
    checkpoint_id: int
    commit_id: Optional[int] = None
    previous_progress: int = Field(..., ge=0, le=100)
    new_progress: int = Field(..., ge=0, le=100)
    change_reason: Optional[str] = None
    created_at: str


class Assessment(BaseModel):
    """The external service's raw suggestion for one checkpoint, kept verbatim for audit."""
    id: int
    commit_id: int
    checkpoint_id: int
    assessed_progress: int                        # raw, unclamped
    reasoning: str
    confidence_score: Optional[float] = None
    model_version: Optional[str] = None
    created_at: str


class ProgressSource(BaseModel):
    """Attribution for a ledger write: the commit behind it and/or a reason string."""
    commit_id: Optional[int] = None
    reason: Optional[str] = None


class ProgressChange(BaseModel):
    checkpoint_id: int
    checkpoint_title: Optional[str] = None
    previous_progress: int
    new_progress: int
    completed: bool = False
    history_id: int


# ── Progress summaries ───────────────────────────────────────────────

class MilestoneProgress(BaseModel):
    milestone_id: int
    title: str
    progress: int                                 # % of checkpoints completed
    completed_checkpoints: int
    total_checkpoints: int


class QuestProgress(BaseModel):
    quest_id: int
    overall_progress: int
    completed_milestones: int
    total_milestones: int
    current_milestone: Optional[MilestoneProgress] = None


# ── Schedule blocks ──────────────────────────────────────────────────

class ScheduleBlock(BaseModel):
    id: int
    task_id: Optional[int] = None
    date: str
    start_time: str
    end_time: str
    comment: Optional[str] = None
    status: BlockStatus = "scheduled"
    task_title: str
    parent_title: Optional[str] = None
    grandparent_title: Optional[str] = None
    category_id: Optional[int] = None
    category_name: Optional[str] = None
    category_color: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


# ── Tasks and completion records ─────────────────────────────────────

class Task(BaseModel):
    id: int
    type: TaskType
    title: str
    parent_id: Optional[int] = None
    level: int = Field(0, ge=0, le=2)             # 0 = main, 1 = child, 2 = grandchild
    is_completed: bool = False
    created_at: Optional[str] = None


class CompletionRecord(BaseModel):
    """Audit record meaning "this task is done". At most one per task."""
    id: int
    task_id: int
    task_type: str
    task_title: str
    task_level: int = 0
    parent_task_id: Optional[int] = None
    grandparent_task_id: Optional[int] = None
    completion_comment: Optional[str] = None
    completed_at: str


class BlockUpdateResult(BaseModel):
    """Acknowledgement of a schedule block edit and what it did on the task side."""
    success: bool = True
    block: ScheduleBlock
    completion_action: Literal["completed", "uncompleted", "unchanged"] = "unchanged"
    task_id: Optional[int] = None
    main_task_id: Optional[int] = None


class TaskCompletionInfo(BaseModel):
    task_id: int
    is_completed: bool
    completed_at: Optional[str] = None
    completion_comment: Optional[str] = None


# ── Request bodies ───────────────────────────────────────────────────

class CommitCreate(BaseModel):
    quest_id: int
    milestone_id: Optional[int] = None
    commit_date: str = Field(..., description="YYYY-MM-DD")
    content: str
    attachments: List[str] = Field(default_factory=list)

    @field_validator("commit_date")
    @classmethod
    def _valid_date(cls, v: str) -> str:
        return _check_iso_date(v)

    @field_validator("content")
    @classmethod
    def _non_empty(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("content must not be empty")
        return v


class CommitUpdate(BaseModel):
    """Only content and attachments may change after a commit is created."""
    content: Optional[str] = None
    attachments: Optional[List[str]] = None

    @field_validator("content")
    @classmethod
    def _non_empty(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not v.strip():
            raise ValueError("content must not be empty")
        return v


class ManualProgressUpdate(BaseModel):
    # range is checked by the ledger so it can answer with InvalidRange
    progress: int
    commit_id: Optional[int] = None
    reason: Optional[str] = None


class ScheduleBlockCreate(BaseModel):
    task_id: Optional[int] = None
    date: str
    start_time: str = Field(..., pattern=_HHMM)
    end_time: str = Field(..., pattern=_HHMM)
    comment: Optional[str] = None
    status: BlockStatus = "scheduled"
    task_title: str
    parent_title: Optional[str] = None
    grandparent_title: Optional[str] = None
    category_id: Optional[int] = None
    category_name: Optional[str] = None
    category_color: Optional[str] = None

    @field_validator("date")
    @classmethod
    def _valid_date(cls, v: str) -> str:
        return _check_iso_date(v)

    @model_validator(mode="after")
    def _start_before_end(self):
        if self.start_time >= self.end_time:
            raise ValueError("start_time must be before end_time")
        return self


class ScheduleBlockBatch(BaseModel):
    """Many blocks at once, e.g. the occurrences of a recurring task."""
    blocks: List[ScheduleBlockCreate] = Field(..., min_length=1)

    @model_validator(mode="after")
    def _no_linked_completions(self):
        # completing a linked block has to go through the synchronizer
        linked = [i for i, b in enumerate(self.blocks) if b.task_id is not None and b.status == "completed"]
        if linked:
            raise ValueError(f"linked blocks cannot be created completed in a batch: {linked}")
        return self


class ScheduleBlockUpdate(BaseModel):
    """Partial edit of a block; fields left unset are not touched."""
    date: Optional[str] = None
    start_time: Optional[str] = Field(None, pattern=_HHMM)
    end_time: Optional[str] = Field(None, pattern=_HHMM)
    comment: Optional[str] = None
    status: Optional[BlockStatus] = None
    category_id: Optional[int] = None
    category_name: Optional[str] = None
    category_color: Optional[str] = None

    @field_validator("date")
    @classmethod
    def _valid_date(cls, v: Optional[str]) -> Optional[str]:
        return _check_iso_date(v) if v is not None else v

    def changes(self) -> Dict[str, object]:
        return self.model_dump(exclude_unset=True)


class CompletionCreate(BaseModel):
    task_id: int
    completion_comment: Optional[str] = None


class CompletionCommentUpdate(BaseModel):
    completion_comment: str = ""
