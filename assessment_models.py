from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import List, Literal, Optional

from models import Assessment, ProgressChange


class CheckpointBrief(BaseModel):
    """What the assessment service is told about one open checkpoint."""
    model_config = ConfigDict(populate_by_name=True)

    id: int
    title: str
    description: Optional[str] = None
    current_progress: int = Field(..., alias="currentProgress", ge=0, le=100)


class CheckpointSuggestion(BaseModel):
    """One per-checkpoint suggestion from the assessment service. Not clamped."""
    model_config = ConfigDict(populate_by_name=True)

    checkpoint_id: int = Field(..., alias="checkpointId")
    new_progress: int = Field(..., alias="newProgress", ge=0, le=100)
    reasoning: str
    confidence: Optional[float] = Field(None, ge=0.0, le=1.0)

    @field_validator("new_progress", mode="before")
    @classmethod
    def _round_fractional(cls, v):
        # models sometimes answer 42.5; anything non-numeric is left to fail validation
        if isinstance(v, float):
            return int(round(v))
        return v

    @field_validator("reasoning")
    @classmethod
    def _non_empty(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("reasoning must not be empty")
        return v


class AssessmentResult(BaseModel):
    """The full structured answer: `{"checkpoints": [...]}`."""
    checkpoints: List[CheckpointSuggestion]


class AssessmentOutcome(BaseModel):
    """
    Tagged result of one call to the assessment service. The core only ever
    sees this, never raw model output.
    """
    status: Literal["ok", "unavailable", "malformed"]
    result: Optional[AssessmentResult] = None
    detail: str = ""
    model_version: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == "ok" and self.result is not None

    @classmethod
    def success(cls, result: AssessmentResult, model_version: Optional[str] = None) -> "AssessmentOutcome":
        return cls(status="ok", result=result, model_version=model_version)

    @classmethod
    def unavailable(cls, detail: str, model_version: Optional[str] = None) -> "AssessmentOutcome":
        return cls(status="unavailable", detail=detail, model_version=model_version)

    @classmethod
    def malformed(cls, detail: str, model_version: Optional[str] = None) -> "AssessmentOutcome":
        return cls(status="malformed", detail=detail, model_version=model_version)


class AssessCommitResult(BaseModel):
    """What one assessment run did: records written, real changes, and the tally."""
    success: bool = True
    commit_id: int
    policy: str = "continue"
    assessments: List[Assessment] = Field(default_factory=list)
    progress_updates: List[ProgressChange] = Field(default_factory=list)
    assessed: int = 0        # suggestions recorded as Assessment rows
    updated: int = 0         # suggestions that moved progress
    unchanged: int = 0       # clamped to current progress (no-op)
    skipped: int = 0         # named a checkpoint that was not sent
    failed: int = 0          # rolled back under the "continue" policy
    message: str = ""
