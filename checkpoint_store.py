import logging
import math
from typing import List, Optional, Tuple

from db import Database, now_iso
from errors import MilestoneNotFoundError, QuestNotFoundError
from models import (
    Checkpoint, Commit, Milestone, MilestoneProgress, Quest, QuestProgress,
)

logger = logging.getLogger(__name__)


def round_half_up(value: float) -> int:
    """Nearest integer, halves going up: 12.5 -> 13."""
    return math.floor(value + 0.5)


SCHEMA = """
CREATE TABLE IF NOT EXISTS quests (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    title TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'active',
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS milestones (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    quest_id INTEGER NOT NULL REFERENCES quests(id) ON DELETE CASCADE,
    title TEXT NOT NULL,
    completion_criteria TEXT NOT NULL DEFAULT '',
    status TEXT NOT NULL DEFAULT 'future'
        CHECK (status IN ('current', 'next', 'future', 'completed')),
    order_index INTEGER,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_milestones_quest ON milestones(quest_id);
CREATE INDEX IF NOT EXISTS idx_milestones_status ON milestones(status);

CREATE TABLE IF NOT EXISTS checkpoints (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    milestone_id INTEGER NOT NULL REFERENCES milestones(id) ON DELETE CASCADE,
    title TEXT NOT NULL,
    description TEXT,
    progress INTEGER NOT NULL DEFAULT 0 CHECK (progress >= 0 AND progress <= 100),
    is_completed INTEGER NOT NULL DEFAULT 0,
    completed_at TEXT,
    order_index INTEGER,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_checkpoints_milestone ON checkpoints(milestone_id);
"""


class CheckpointStore:
    """
    Quests, milestones and checkpoints in quests.db.

    This store only creates and reads. Checkpoint progress and completion are
    written exclusively by ProgressLedger.apply().
    """

    def __init__(self, db: Database):
        self.db = db
        self.db.ensure_schema(SCHEMA)

    # ── seeding ──────────────────────────────────────────────────────

    def create_quest(self, title: str, status: str = "active") -> Quest:
        with self.db.transaction() as conn:
            cur = conn.execute(
                "INSERT INTO quests (title, status, created_at) VALUES (?, ?, ?)",
                (title.strip(), status, now_iso()),
            )
            quest_id = cur.lastrowid
        return self.get_quest(quest_id)

    def create_milestone(
        self,
        quest_id: int,
        title: str,
        status: str = "future",
        completion_criteria: str = "",
        order_index: Optional[int] = None,
    ) -> Milestone:
        if self.get_quest(quest_id) is None:
            raise QuestNotFoundError(quest_id)
        with self.db.transaction() as conn:
            cur = conn.execute(
                """
                INSERT INTO milestones (quest_id, title, completion_criteria, status, order_index, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (quest_id, title.strip(), completion_criteria, status, order_index, now_iso()),
            )
            milestone_id = cur.lastrowid
        return self.get_milestone(milestone_id)

    def add_checkpoint(
        self,
        milestone_id: int,
        title: str,
        description: Optional[str] = None,
        order_index: Optional[int] = None,
    ) -> Checkpoint:
        if self.get_milestone(milestone_id) is None:
            raise MilestoneNotFoundError(milestone_id)
        stamp = now_iso()
        with self.db.transaction() as conn:
            cur = conn.execute(
                """
                INSERT INTO checkpoints (milestone_id, title, description, order_index, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (milestone_id, title.strip(), (description or "").strip() or None, order_index, stamp, stamp),
            )
            checkpoint_id = cur.lastrowid
        return self.get(checkpoint_id)

    # ── queries ──────────────────────────────────────────────────────

    def get_quest(self, quest_id: int) -> Optional[Quest]:
        with self.db.read() as conn:
            row = conn.execute("SELECT * FROM quests WHERE id = ?", (quest_id,)).fetchone()
        return Quest.model_validate(dict(row)) if row else None

    def get_milestone(self, milestone_id: int) -> Optional[Milestone]:
        with self.db.read() as conn:
            row = conn.execute("SELECT * FROM milestones WHERE id = ?", (milestone_id,)).fetchone()
        return Milestone.model_validate(dict(row)) if row else None

    def milestones_for_quest(self, quest_id: int) -> List[Milestone]:
        with self.db.read() as conn:
            rows = conn.execute(
                """
                SELECT * FROM milestones
                WHERE quest_id = ?
                ORDER BY
                    CASE status
                        WHEN 'current' THEN 1
                        WHEN 'next' THEN 2
                        WHEN 'future' THEN 3
                        WHEN 'completed' THEN 4
                    END,
                    order_index ASC, id ASC
                """,
                (quest_id,),
            ).fetchall()
        return [Milestone.model_validate(dict(r)) for r in rows]

    def current_milestone(self, quest_id: int) -> Optional[Milestone]:
        with self.db.read() as conn:
            row = conn.execute(
                """
                SELECT * FROM milestones
                WHERE quest_id = ? AND status = 'current'
                ORDER BY order_index ASC, id ASC
                LIMIT 1
                """,
                (quest_id,),
            ).fetchone()
        return Milestone.model_validate(dict(row)) if row else None

    def get(self, checkpoint_id: int) -> Optional[Checkpoint]:
        with self.db.read() as conn:
            row = conn.execute("SELECT * FROM checkpoints WHERE id = ?", (checkpoint_id,)).fetchone()
        return Checkpoint.model_validate(dict(row)) if row else None

    def by_milestone(self, milestone_id: int, open_only: bool = False) -> List[Checkpoint]:
        sql = "SELECT * FROM checkpoints WHERE milestone_id = ?"
        if open_only:
            sql += " AND is_completed = 0"
        sql += " ORDER BY order_index ASC, id ASC"
        with self.db.read() as conn:
            rows = conn.execute(sql, (milestone_id,)).fetchall()
        return [Checkpoint.model_validate(dict(r)) for r in rows]

    def open_checkpoints_for_commit(self, commit: Commit) -> List[Checkpoint]:
        """
        The checkpoints a commit is assessed against: the open checkpoints of
        the commit's own milestone, or of the quest's current milestone when
        the commit names none.
        """
        milestone_id = commit.milestone_id
        if milestone_id is None:
            current = self.current_milestone(commit.quest_id)
            if current is None:
                logger.info(f"Quest {commit.quest_id} has no current milestone")
                return []
            milestone_id = current.id
        return self.by_milestone(milestone_id, open_only=True)

    # ── progress summaries ───────────────────────────────────────────

    def _milestone_share(self, milestone_id: int) -> Tuple[MilestoneProgress, float]:
        """The summary plus the unrounded percentage behind it."""
        milestone = self.get_milestone(milestone_id)
        if milestone is None:
            raise MilestoneNotFoundError(milestone_id)
        checkpoints = self.by_milestone(milestone_id)
        done = sum(1 for cp in checkpoints if cp.is_completed)
        raw = done / len(checkpoints) * 100 if checkpoints else 0.0
        summary = MilestoneProgress(
            milestone_id=milestone_id,
            title=milestone.title,
            progress=round_half_up(raw),
            completed_checkpoints=done,
            total_checkpoints=len(checkpoints),
        )
        return summary, raw

    def milestone_progress(self, milestone_id: int) -> MilestoneProgress:
        return self._milestone_share(milestone_id)[0]

    def quest_progress(self, quest_id: int) -> QuestProgress:
        """
        Completed milestones count 100 each, the current milestone counts its
        completed-checkpoint percentage, and the sum is averaged over all
        milestones. Only the final average is rounded.
        """
        if self.get_quest(quest_id) is None:
            raise QuestNotFoundError(quest_id)

        milestones = self.milestones_for_quest(quest_id)
        completed = [m for m in milestones if m.status == "completed"]
        current = next((m for m in milestones if m.status == "current"), None)

        current_progress, current_raw = None, 0.0
        if current is not None:
            current_progress, current_raw = self._milestone_share(current.id)

        overall = 0
        if milestones:
            total = len(completed) * 100 + current_raw
            overall = round_half_up(total / len(milestones))

        return QuestProgress(
            quest_id=quest_id,
            overall_progress=overall,
            completed_milestones=len(completed),
            total_milestones=len(milestones),
            current_milestone=current_progress,
        )
