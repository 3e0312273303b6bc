"""Shared fixtures: throwaway databases under tmp_path and a scripted assessor."""

from pathlib import Path
from typing import List

import pytest

from assessment_models import AssessmentOutcome, AssessmentResult, CheckpointBrief, CheckpointSuggestion
from checkpoint_store import CheckpointStore
from commit_store import CommitStore
from db import Database
from progress_ledger import ProgressLedger
from schedule_store import ScheduleStore
from task_store import TaskStore


class ScriptedAssessor:
    """Stands in for ProgressAssessor: returns a fixed outcome and records what it was asked."""

    model = "scripted"

    def __init__(self, outcome: AssessmentOutcome = None):
        self.outcome = outcome or AssessmentOutcome.success(AssessmentResult(checkpoints=[]), self.model)
        self.calls: List[List[CheckpointBrief]] = []

    def assess(self, commit_content: str, checkpoints: List[CheckpointBrief]) -> AssessmentOutcome:
        self.calls.append(list(checkpoints))
        return self.outcome

    def suggest(self, *suggestions) -> "ScriptedAssessor":
        """suggest((checkpoint_id, new_progress, reasoning), ...)"""
        self.outcome = AssessmentOutcome.success(
            AssessmentResult(checkpoints=[
                CheckpointSuggestion(checkpoint_id=cid, new_progress=p, reasoning=why, confidence=0.8)
                for cid, p, why in suggestions
            ]),
            self.model,
        )
        return self


@pytest.fixture
def quests_db(tmp_path: Path):
    db = Database(tmp_path / "quests.db")
    yield db
    db.close()


@pytest.fixture
def schedule_db(tmp_path: Path):
    db = Database(tmp_path / "schedule.db")
    yield db
    db.close()


@pytest.fixture
def tasks_db(tmp_path: Path):
    db = Database(tmp_path / "tasks.db")
    yield db
    db.close()


@pytest.fixture
def checkpoints(quests_db) -> CheckpointStore:
    return CheckpointStore(quests_db)


@pytest.fixture
def commits(quests_db, checkpoints) -> CommitStore:
    return CommitStore(quests_db)


@pytest.fixture
def ledger(quests_db, checkpoints, commits) -> ProgressLedger:
    return ProgressLedger(quests_db)


@pytest.fixture
def schedule(schedule_db) -> ScheduleStore:
    return ScheduleStore(schedule_db)


@pytest.fixture
def tasks(tasks_db) -> TaskStore:
    return TaskStore(tasks_db)


@pytest.fixture
def quest(checkpoints):
    """A quest whose current milestone has three open checkpoints."""
    q = checkpoints.create_quest("Learn Rust")
    m = checkpoints.create_milestone(q.id, "Ownership", status="current", order_index=1)
    checkpoints.create_milestone(q.id, "Async", status="next", order_index=2)
    cps = [
        checkpoints.add_checkpoint(m.id, "Read chapter 4", order_index=1),
        checkpoints.add_checkpoint(m.id, "Borrow checker exercises", order_index=2),
        checkpoints.add_checkpoint(m.id, "Write a linked list", order_index=3),
    ]
    return {"quest": q, "milestone": m, "checkpoints": cps}


@pytest.fixture
def assessor() -> ScriptedAssessor:
    return ScriptedAssessor()
