"""
schedule_store.py
-----------------
Schedule blocks (schedule.db): time-boxed calendar entries, optionally linked
to a task, with denormalised task / parent / grandparent titles for display.

Status moves freely between the five values here; keeping a linked task's
completion record in step is the synchronizer's job, not this store's.
Overlapping blocks are allowed; `conflicts` only reports them.
"""

import logging
from datetime import date, timedelta
from typing import Any, Dict, List, Optional

from db import Database, now_iso
from errors import ScheduleBlockNotFoundError
from models import BLOCK_STATUSES, ScheduleBlock, ScheduleBlockCreate

logger = logging.getLogger(__name__)


SCHEMA = """
CREATE TABLE IF NOT EXISTS schedule_blocks (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    task_id INTEGER,
    date TEXT NOT NULL,
    start_time TEXT NOT NULL,
    end_time TEXT NOT NULL,
    comment TEXT,
    status TEXT NOT NULL DEFAULT 'scheduled',
    task_title TEXT NOT NULL,
    parent_title TEXT,
    grandparent_title TEXT,
    category_id INTEGER,
    category_name TEXT,
    category_color TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_schedule_date_range ON schedule_blocks(date, start_time, end_time);
CREATE INDEX IF NOT EXISTS idx_schedule_task ON schedule_blocks(task_id);
CREATE INDEX IF NOT EXISTS idx_schedule_status ON schedule_blocks(status);
"""

EDITABLE_FIELDS = (
    "date", "start_time", "end_time", "comment", "status",
    "category_id", "category_name", "category_color",
)


# ── time helpers ──────────────────────────────────────────────────────────────

def _to_minutes(t: str) -> int:
    """'HH:MM' -> total minutes since midnight."""
    h, m = t.strip().split(":")
    return int(h) * 60 + int(m)


def _overlaps(s1: int, e1: int, s2: int, e2: int) -> bool:
    return s1 < e2 and s2 < e1


class ScheduleStore:

    def __init__(self, db: Database):
        self.db = db
        self.db.ensure_schema(SCHEMA)

    # ── mutations ────────────────────────────────────────────────────

    @staticmethod
    def _insert(conn, block: ScheduleBlockCreate, stamp: str) -> int:
        data = block.model_dump()
        columns = list(data.keys()) + ["created_at", "updated_at"]
        values = list(data.values()) + [stamp, stamp]
        cur = conn.execute(
            f"INSERT INTO schedule_blocks ({', '.join(columns)}) "
            f"VALUES ({', '.join('?' for _ in columns)})",
            values,
        )
        return cur.lastrowid

    def create(self, block: ScheduleBlockCreate) -> ScheduleBlock:
        with self.db.transaction() as conn:
            block_id = self._insert(conn, block, now_iso())
        return self.get(block_id)

    def batch_create(self, blocks: List[ScheduleBlockCreate]) -> List[ScheduleBlock]:
        """
        Insert many blocks in one transaction, e.g. the occurrences of a
        recurring task. Either every block is stored or none is.
        """
        if not blocks:
            return []
        stamp = now_iso()
        with self.db.transaction() as conn:
            ids = [self._insert(conn, block, stamp) for block in blocks]
        logger.info(f"Created {len(ids)} schedule blocks in one batch")
        return [self.get(block_id) for block_id in ids]

    def update(self, block_id: int, changes: Dict[str, Any]) -> ScheduleBlock:
        """
        Apply a partial edit. Unknown fields raise ValueError, so do edits
        that would leave start_time at or after end_time.
        """
        unknown = set(changes) - set(EDITABLE_FIELDS)
        if unknown:
            raise ValueError(f"schedule block fields not editable: {sorted(unknown)}")
        cleared = [name for name in ("date", "start_time", "end_time", "status") if name in changes and changes[name] is None]
        if cleared:
            raise ValueError(f"schedule block fields cannot be cleared: {cleared}")
        if "status" in changes and changes["status"] not in BLOCK_STATUSES:
            raise ValueError(f"unknown schedule block status {changes['status']!r}")

        with self.db.transaction() as conn:
            row = conn.execute("SELECT * FROM schedule_blocks WHERE id = ?", (block_id,)).fetchone()
            if row is None:
                raise ScheduleBlockNotFoundError(block_id)
            if changes:
                start = changes.get("start_time", row["start_time"])
                end = changes.get("end_time", row["end_time"])
                if _to_minutes(start) >= _to_minutes(end):
                    raise ValueError("start_time must be before end_time")

                assignments = [f"{name} = ?" for name in changes] + ["updated_at = ?"]
                conn.execute(
                    f"UPDATE schedule_blocks SET {', '.join(assignments)} WHERE id = ?",
                    (*changes.values(), now_iso(), block_id),
                )
        return self.get(block_id)

    def delete(self, block_id: int) -> bool:
        """Unconditional; the linked task's completion record is left alone."""
        with self.db.transaction() as conn:
            cur = conn.execute("DELETE FROM schedule_blocks WHERE id = ?", (block_id,))
        if cur.rowcount:
            logger.info(f"Schedule block {block_id} deleted")
        return cur.rowcount > 0

    # ── queries ──────────────────────────────────────────────────────

    def get(self, block_id: int) -> Optional[ScheduleBlock]:
        with self.db.read() as conn:
            row = conn.execute("SELECT * FROM schedule_blocks WHERE id = ?", (block_id,)).fetchone()
        return ScheduleBlock.model_validate(dict(row)) if row else None

    def by_date(self, day: str) -> List[ScheduleBlock]:
        return self.by_date_range(day, day)

    def by_date_range(self, start_date: str, end_date: str) -> List[ScheduleBlock]:
        with self.db.read() as conn:
            rows = conn.execute(
                """
                SELECT * FROM schedule_blocks
                WHERE date >= ? AND date <= ?
                ORDER BY date, start_time, id
                """,
                (start_date, end_date),
            ).fetchall()
        return [ScheduleBlock.model_validate(dict(r)) for r in rows]

    def by_task(self, task_id: int) -> List[ScheduleBlock]:
        with self.db.read() as conn:
            rows = conn.execute(
                "SELECT * FROM schedule_blocks WHERE task_id = ? ORDER BY date, start_time, id",
                (task_id,),
            ).fetchall()
        return [ScheduleBlock.model_validate(dict(r)) for r in rows]

    def week(self, week_start: str) -> Dict[str, List[ScheduleBlock]]:
        """Blocks for the seven days starting at `week_start`, grouped by date."""
        end = (date.fromisoformat(week_start) + timedelta(days=6)).isoformat()
        grouped: Dict[str, List[ScheduleBlock]] = {}
        for block in self.by_date_range(week_start, end):
            grouped.setdefault(block.date, []).append(block)
        return grouped

    def past_incomplete(
        self,
        before_date: str,
        since_date: Optional[str] = None,
        limit: int = 50,
    ) -> List[ScheduleBlock]:
        """Blocks before `before_date` still not completed or cancelled, newest day first."""
        sql = "SELECT * FROM schedule_blocks WHERE date < ?"
        params: list = [before_date]
        if since_date:
            sql += " AND date >= ?"
            params.append(since_date)
        sql += """
            AND status NOT IN ('completed', 'cancelled')
            ORDER BY date DESC, start_time ASC
            LIMIT ?
        """
        params.append(limit)
        with self.db.read() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [ScheduleBlock.model_validate(dict(r)) for r in rows]

    def conflicts(
        self,
        day: str,
        start_time: str,
        end_time: str,
        exclude_id: Optional[int] = None,
    ) -> List[ScheduleBlock]:
        """Non-cancelled blocks on `day` overlapping [start_time, end_time)."""
        start, end = _to_minutes(start_time), _to_minutes(end_time)
        return [
            block for block in self.by_date(day)
            if block.status != "cancelled"
            and block.id != exclude_id
            and _overlaps(start, end, _to_minutes(block.start_time), _to_minutes(block.end_time))
        ]
