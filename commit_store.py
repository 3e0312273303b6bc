import json
import logging
import sqlite3
from typing import List, Optional

from db import Database, now_iso
from models import Assessment, Commit, CommitCreate, CommitUpdate

logger = logging.getLogger(__name__)


SCHEMA = """
CREATE TABLE IF NOT EXISTS quest_commits (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    quest_id INTEGER NOT NULL REFERENCES quests(id) ON DELETE CASCADE,
    milestone_id INTEGER REFERENCES milestones(id) ON DELETE SET NULL,
    commit_date TEXT NOT NULL,
    content TEXT NOT NULL,
    attachments TEXT,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_commits_quest ON quest_commits(quest_id);
CREATE INDEX IF NOT EXISTS idx_commits_date ON quest_commits(commit_date);

CREATE TABLE IF NOT EXISTS ai_assessments (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    commit_id INTEGER NOT NULL REFERENCES quest_commits(id) ON DELETE CASCADE,
    checkpoint_id INTEGER NOT NULL REFERENCES checkpoints(id) ON DELETE CASCADE,
    assessed_progress INTEGER NOT NULL,
    reasoning TEXT NOT NULL,
    confidence_score REAL,
    model_version TEXT,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_assessments_commit ON ai_assessments(commit_id);
CREATE INDEX IF NOT EXISTS idx_assessments_checkpoint ON ai_assessments(checkpoint_id);
"""


def _row_to_commit(row: sqlite3.Row) -> Commit:
    data = dict(row)
    data["attachments"] = json.loads(data["attachments"]) if data.get("attachments") else []
    return Commit.model_validate(data)


class CommitStore:
    """
    Daily progress commits and the assessment records made against them.
    Shares quests.db with the checkpoint store and the ledger so that an
    assessment row and the ledger write it causes can commit together.
    """

    def __init__(self, db: Database):
        self.db = db
        self.db.ensure_schema(SCHEMA)

    # ── commits ──────────────────────────────────────────────────────

    def create(self, commit: CommitCreate) -> Commit:
        with self.db.transaction() as conn:
            cur = conn.execute(
                """
                INSERT INTO quest_commits (quest_id, milestone_id, commit_date, content, attachments, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    commit.quest_id,
                    commit.milestone_id,
                    commit.commit_date,
                    commit.content,
                    json.dumps(commit.attachments) if commit.attachments else None,
                    now_iso(),
                ),
            )
            commit_id = cur.lastrowid
        logger.info(f"Commit {commit_id} created for quest {commit.quest_id} ({commit.commit_date})")
        return self.get(commit_id)

    def get(self, commit_id: int) -> Optional[Commit]:
        with self.db.read() as conn:
            row = conn.execute("SELECT * FROM quest_commits WHERE id = ?", (commit_id,)).fetchone()
        return _row_to_commit(row) if row else None

    def by_quest(self, quest_id: int, limit: Optional[int] = None, offset: int = 0) -> List[Commit]:
        sql = """
            SELECT * FROM quest_commits
            WHERE quest_id = ?
            ORDER BY commit_date DESC, created_at DESC, id DESC
        """
        params: list = [quest_id]
        if limit is not None:
            sql += " LIMIT ? OFFSET ?"
            params += [limit, offset]
        with self.db.read() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [_row_to_commit(r) for r in rows]

    def by_date_range(self, quest_id: int, start_date: str, end_date: str) -> List[Commit]:
        with self.db.read() as conn:
            rows = conn.execute(
                """
                SELECT * FROM quest_commits
                WHERE quest_id = ? AND commit_date >= ? AND commit_date <= ?
                ORDER BY commit_date DESC, created_at DESC, id DESC
                """,
                (quest_id, start_date, end_date),
            ).fetchall()
        return [_row_to_commit(r) for r in rows]

    def update(self, commit_id: int, updates: CommitUpdate) -> Optional[Commit]:
        """Edit content and/or attachments. Date and quest linkage never change."""
        fields, values = [], []
        if updates.content is not None:
            fields.append("content = ?")
            values.append(updates.content)
        if updates.attachments is not None:
            fields.append("attachments = ?")
            values.append(json.dumps(updates.attachments) if updates.attachments else None)

        if fields:
            with self.db.transaction() as conn:
                cur = conn.execute(
                    f"UPDATE quest_commits SET {', '.join(fields)} WHERE id = ?",
                    (*values, commit_id),
                )
                if cur.rowcount == 0:
                    return None
        return self.get(commit_id)

    def delete(self, commit_id: int) -> bool:
        """Administrative escape hatch; the ledger never deletes commits."""
        with self.db.transaction() as conn:
            cur = conn.execute("DELETE FROM quest_commits WHERE id = ?", (commit_id,))
        if cur.rowcount:
            logger.warning(f"Commit {commit_id} deleted")
        return cur.rowcount > 0

    # ── assessments ──────────────────────────────────────────────────

    def add_assessment(
        self,
        commit_id: int,
        checkpoint_id: int,
        assessed_progress: int,
        reasoning: str,
        confidence_score: Optional[float] = None,
        model_version: Optional[str] = None,
    ) -> Assessment:
        """Record the service's suggestion verbatim. Joins the caller's transaction if one is open."""
        with self.db.transaction() as conn:
            cur = conn.execute(
                """
                INSERT INTO ai_assessments
                    (commit_id, checkpoint_id, assessed_progress, reasoning, confidence_score, model_version, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (commit_id, checkpoint_id, assessed_progress, reasoning,
                 confidence_score, model_version, now_iso()),
            )
            row = conn.execute("SELECT * FROM ai_assessments WHERE id = ?", (cur.lastrowid,)).fetchone()
        return Assessment.model_validate(dict(row))

    def assessments_for_commit(self, commit_id: int) -> List[Assessment]:
        with self.db.read() as conn:
            rows = conn.execute(
                "SELECT * FROM ai_assessments WHERE commit_id = ? ORDER BY created_at ASC, id ASC",
                (commit_id,),
            ).fetchall()
        return [Assessment.model_validate(dict(r)) for r in rows]

    def assessments_for_checkpoint(self, checkpoint_id: int) -> List[Assessment]:
        with self.db.read() as conn:
            rows = conn.execute(
                "SELECT * FROM ai_assessments WHERE checkpoint_id = ? ORDER BY created_at DESC, id DESC",
                (checkpoint_id,),
            ).fetchall()
        return [Assessment.model_validate(dict(r)) for r in rows]
