"""
Progress ledger.

Turns candidate progress values (from assessments or manual edits) into
authoritative checkpoint progress. Every change goes through `apply`, which:

  1. rejects values outside [0, 100],
  2. clamps to max(current, value) so progress never goes down,
  3. in one transaction updates the checkpoint, appends a history entry and,
     at 100, marks the checkpoint completed.

History is append-only. Folding `new_progress` over a checkpoint's entries in
order reproduces its stored progress; `verify` checks exactly that.
"""

import logging
from typing import List, Optional

from db import Database, now_iso
from errors import CheckpointNotFoundError, InvalidRangeError
from models import ProgressChange, ProgressHistoryEntry, ProgressSource

logger = logging.getLogger(__name__)


SCHEMA = """
CREATE TABLE IF NOT EXISTS checkpoint_progress_history (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    checkpoint_id INTEGER NOT NULL REFERENCES checkpoints(id) ON DELETE CASCADE,
    commit_id INTEGER REFERENCES quest_commits(id) ON DELETE SET NULL,
    previous_progress INTEGER NOT NULL CHECK (previous_progress >= 0 AND previous_progress <= 100),
    new_progress INTEGER NOT NULL CHECK (new_progress >= 0 AND new_progress <= 100),
    change_reason TEXT,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_progress_checkpoint ON checkpoint_progress_history(checkpoint_id);
CREATE INDEX IF NOT EXISTS idx_progress_commit ON checkpoint_progress_history(commit_id);
"""

MIN_PROGRESS = 0
MAX_PROGRESS = 100


def clamp_progress(current: int, candidate: int) -> int:
    """The monotonicity clamp: never below current, never above 100."""
    return max(current, min(MAX_PROGRESS, candidate))


class ProgressLedger:

    def __init__(self, db: Database):
        self.db = db
        self.db.ensure_schema(SCHEMA)

    # ── the only write path for checkpoint progress ──────────────────

    def apply(
        self,
        checkpoint_id: int,
        raw_new_progress: int,
        source: Optional[ProgressSource] = None,
    ) -> Optional[ProgressChange]:
        """
        Move a checkpoint's progress towards `raw_new_progress`.

        Returns the ProgressChange written, or None when the clamped value
        equals the current progress (no history entry, nothing touched).

        Raises InvalidRangeError for values outside [0, 100],
        CheckpointNotFoundError for unknown checkpoints and StorageError when
        the write group fails (it is then rolled back in full). When called
        inside an open transaction on the same database it joins it.
        """
        if (
            isinstance(raw_new_progress, bool)
            or not isinstance(raw_new_progress, int)
            or not MIN_PROGRESS <= raw_new_progress <= MAX_PROGRESS
        ):
            raise InvalidRangeError(raw_new_progress, MIN_PROGRESS, MAX_PROGRESS)

        source = source or ProgressSource()

        with self.db.transaction() as conn:
            row = conn.execute(
                "SELECT id, title, progress FROM checkpoints WHERE id = ?",
                (checkpoint_id,),
            ).fetchone()
            if row is None:
                raise CheckpointNotFoundError(checkpoint_id)

            current = row["progress"]
            final = clamp_progress(current, raw_new_progress)
            if final == current:
                logger.debug(
                    f"Checkpoint {checkpoint_id}: suggestion {raw_new_progress} "
                    f"does not move progress {current}, no-op"
                )
                return None

            stamp = now_iso()
            reached_end = final == MAX_PROGRESS

            conn.execute(
                "UPDATE checkpoints SET progress = ?, updated_at = ? WHERE id = ?",
                (final, stamp, checkpoint_id),
            )
            cur = conn.execute(
                """
                INSERT INTO checkpoint_progress_history
                    (checkpoint_id, commit_id, previous_progress, new_progress, change_reason, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (checkpoint_id, source.commit_id, current, final, source.reason, stamp),
            )
            history_id = cur.lastrowid
            if reached_end:
                conn.execute(
                    "UPDATE checkpoints SET is_completed = 1, completed_at = ? WHERE id = ?",
                    (stamp, checkpoint_id),
                )

        logger.info(
            f"Checkpoint {checkpoint_id} progress {current} -> {final}"
            + (" (completed)" if reached_end else "")
        )
        return ProgressChange(
            checkpoint_id=checkpoint_id,
            checkpoint_title=row["title"],
            previous_progress=current,
            new_progress=final,
            completed=reached_end,
            history_id=history_id,
        )

    # ── queries ──────────────────────────────────────────────────────

    def get_progress(self, checkpoint_id: int) -> Optional[int]:
        with self.db.read() as conn:
            row = conn.execute("SELECT progress FROM checkpoints WHERE id = ?", (checkpoint_id,)).fetchone()
        return row["progress"] if row else None

    def history(self, checkpoint_id: int) -> List[ProgressHistoryEntry]:
        with self.db.read() as conn:
            rows = conn.execute(
                """
                SELECT * FROM checkpoint_progress_history
                WHERE checkpoint_id = ?
                ORDER BY created_at ASC, id ASC
                """,
                (checkpoint_id,),
            ).fetchall()
        return [ProgressHistoryEntry.model_validate(dict(r)) for r in rows]

    def history_for_commit(self, commit_id: int) -> List[ProgressHistoryEntry]:
        with self.db.read() as conn:
            rows = conn.execute(
                """
                SELECT * FROM checkpoint_progress_history
                WHERE commit_id = ?
                ORDER BY created_at ASC, id ASC
                """,
                (commit_id,),
            ).fetchall()
        return [ProgressHistoryEntry.model_validate(dict(r)) for r in rows]

    def replay(self, checkpoint_id: int) -> int:
        """Progress reconstructed from history alone, starting at 0."""
        progress = MIN_PROGRESS
        for entry in self.history(checkpoint_id):
            progress = entry.new_progress
        return progress

    def verify(self, checkpoint_id: int) -> List[str]:
        """
        Check one checkpoint against the ledger invariants. Returns a list of
        human-readable violations; empty means consistent.
        """
        with self.db.read() as conn:
            row = conn.execute(
                "SELECT progress, is_completed, completed_at FROM checkpoints WHERE id = ?",
                (checkpoint_id,),
            ).fetchone()
        if row is None:
            raise CheckpointNotFoundError(checkpoint_id)

        problems: List[str] = []
        entries = self.history(checkpoint_id)

        expected_previous = MIN_PROGRESS
        for entry in entries:
            if entry.previous_progress != expected_previous:
                problems.append(
                    f"entry {entry.id}: previous_progress {entry.previous_progress} "
                    f"!= {expected_previous} from the entry before it"
                )
            if entry.new_progress < entry.previous_progress:
                problems.append(
                    f"entry {entry.id}: progress decreased {entry.previous_progress} -> {entry.new_progress}"
                )
            expected_previous = entry.new_progress

        replayed = entries[-1].new_progress if entries else MIN_PROGRESS
        if replayed != row["progress"]:
            problems.append(f"replayed progress {replayed} != stored progress {row['progress']}")

        is_completed = bool(row["is_completed"])
        if is_completed != (row["progress"] == MAX_PROGRESS):
            problems.append(f"is_completed={is_completed} with progress {row['progress']}")
        if is_completed != (row["completed_at"] is not None):
            problems.append(f"is_completed={is_completed} but completed_at={row['completed_at']!r}")

        return problems
