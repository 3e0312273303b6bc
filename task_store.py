import logging
from typing import Dict, List, Optional

from db import Database, now_iso
from errors import AlreadyCompletedError, TaskNotFoundError
from models import CompletionRecord, Task, TaskCompletionInfo

logger = logging.getLogger(__name__)


SCHEMA = """
CREATE TABLE IF NOT EXISTS tasks (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    type TEXT NOT NULL,
    title TEXT NOT NULL,
    parent_id INTEGER REFERENCES tasks(id) ON DELETE CASCADE,
    level INTEGER NOT NULL DEFAULT 0,
    is_completed INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_tasks_parent ON tasks(parent_id);

CREATE TABLE IF NOT EXISTS completed_tasks (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    task_id INTEGER NOT NULL UNIQUE,
    task_type TEXT NOT NULL,
    task_title TEXT NOT NULL,
    task_level INTEGER NOT NULL DEFAULT 0,
    parent_task_id INTEGER,
    grandparent_task_id INTEGER,
    completion_comment TEXT,
    completed_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_completed_tasks_parent ON completed_tasks(parent_task_id);
CREATE INDEX IF NOT EXISTS idx_completed_tasks_completed_at ON completed_tasks(completed_at);
"""

MAX_LEVEL = 2


class TaskStore:
    """
    Tasks and their completion records (tasks.db).

    A task is completed exactly when it has a completion record; the
    `tasks.is_completed` flag is a copy of that fact, always written in the
    same transaction as the record.
    """

    def __init__(self, db: Database):
        self.db = db
        self.db.ensure_schema(SCHEMA)

    # ── tasks ────────────────────────────────────────────────────────

    def create_task(self, title: str, type: str = "short-term", parent_id: Optional[int] = None) -> Task:
        level = 0
        if parent_id is not None:
            parent = self.get_task(parent_id)
            if parent is None:
                raise TaskNotFoundError(parent_id)
            level = parent.level + 1
            if level > MAX_LEVEL:
                raise ValueError(f"tasks nest at most {MAX_LEVEL} levels deep")
        with self.db.transaction() as conn:
            cur = conn.execute(
                "INSERT INTO tasks (type, title, parent_id, level, created_at) VALUES (?, ?, ?, ?, ?)",
                (type, title.strip(), parent_id, level, now_iso()),
            )
            task_id = cur.lastrowid
        return self.get_task(task_id)

    def get_task(self, task_id: int) -> Optional[Task]:
        with self.db.read() as conn:
            row = conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
        return Task.model_validate(dict(row)) if row else None

    def delete_task(self, task_id: int) -> bool:
        with self.db.transaction() as conn:
            cur = conn.execute("DELETE FROM tasks WHERE id = ?", (task_id,))
        return cur.rowcount > 0

    def main_task_id(self, task: Task) -> int:
        """Walk up the parent chain to the top-level task."""
        current = task
        seen = {current.id}
        while current.parent_id is not None:
            parent = self.get_task(current.parent_id)
            if parent is None or parent.id in seen:
                break
            seen.add(parent.id)
            current = parent
        return current.id

    # ── completion records ───────────────────────────────────────────

    def get_completion(self, task_id: int) -> Optional[CompletionRecord]:
        with self.db.read() as conn:
            row = conn.execute("SELECT * FROM completed_tasks WHERE task_id = ?", (task_id,)).fetchone()
        return CompletionRecord.model_validate(dict(row)) if row else None

    def complete(self, task_id: int, comment: Optional[str] = None) -> CompletionRecord:
        """Record a task as done. Raises AlreadyCompletedError if it already is."""
        record = self.ensure_completed(task_id, comment)
        if record is None:
            raise AlreadyCompletedError(task_id)
        return record

    def ensure_completed(self, task_id: int, comment: Optional[str] = None) -> Optional[CompletionRecord]:
        """
        Idempotent completion: returns the new record, or None when the task
        already had one. Raises TaskNotFoundError for unknown tasks.
        """
        with self.db.transaction() as conn:
            task_row = conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
            if task_row is None:
                raise TaskNotFoundError(task_id)
            if conn.execute("SELECT 1 FROM completed_tasks WHERE task_id = ?", (task_id,)).fetchone():
                return None

            task = Task.model_validate(dict(task_row))
            grandparent_id = None
            if task.level == 2 and task.parent_id is not None:
                parent_row = conn.execute(
                    "SELECT parent_id FROM tasks WHERE id = ?", (task.parent_id,)
                ).fetchone()
                if parent_row is not None:
                    grandparent_id = parent_row["parent_id"]

            cur = conn.execute(
                """
                INSERT INTO completed_tasks (
                    task_id, task_type, task_title, task_level,
                    parent_task_id, grandparent_task_id, completion_comment, completed_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    task.id, task.type, task.title, task.level,
                    task.parent_id, grandparent_id,
                    (comment or "").strip() or None, now_iso(),
                ),
            )
            conn.execute("UPDATE tasks SET is_completed = 1 WHERE id = ?", (task_id,))
            row = conn.execute("SELECT * FROM completed_tasks WHERE id = ?", (cur.lastrowid,)).fetchone()

        logger.info(f"Task {task_id} completed")
        return CompletionRecord.model_validate(dict(row))

    def uncomplete(self, task_id: int) -> bool:
        """Drop the completion record. Returns False when there was none."""
        with self.db.transaction() as conn:
            cur = conn.execute("DELETE FROM completed_tasks WHERE task_id = ?", (task_id,))
            if cur.rowcount == 0:
                return False
            conn.execute("UPDATE tasks SET is_completed = 0 WHERE id = ?", (task_id,))
        logger.info(f"Task {task_id} marked not completed")
        return True

    def update_comment(self, task_id: int, comment: str) -> bool:
        with self.db.transaction() as conn:
            cur = conn.execute(
                "UPDATE completed_tasks SET completion_comment = ? WHERE task_id = ?",
                (comment.strip() or None, task_id),
            )
        return cur.rowcount > 0

    def completion_status(self, task_ids: List[int]) -> Dict[int, TaskCompletionInfo]:
        status = {tid: TaskCompletionInfo(task_id=tid, is_completed=False) for tid in task_ids}
        if not task_ids:
            return status
        placeholders = ",".join("?" for _ in task_ids)
        with self.db.read() as conn:
            rows = conn.execute(
                f"SELECT task_id, completed_at, completion_comment FROM completed_tasks "
                f"WHERE task_id IN ({placeholders})",
                task_ids,
            ).fetchall()
        for row in rows:
            status[row["task_id"]] = TaskCompletionInfo(
                task_id=row["task_id"],
                is_completed=True,
                completed_at=row["completed_at"],
                completion_comment=row["completion_comment"],
            )
        return status

    def list_completed(
        self,
        limit: Optional[int] = None,
        offset: int = 0,
        task_type: Optional[str] = None,
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
    ) -> List[CompletionRecord]:
        sql = "SELECT * FROM completed_tasks WHERE 1=1"
        params: list = []
        if task_type:
            sql += " AND task_type = ?"
            params.append(task_type)
        if start_date:
            sql += " AND substr(completed_at, 1, 10) >= ?"
            params.append(start_date)
        if end_date:
            sql += " AND substr(completed_at, 1, 10) <= ?"
            params.append(end_date)
        sql += " ORDER BY completed_at DESC, id DESC"
        if limit is not None:
            sql += " LIMIT ? OFFSET ?"
            params += [limit, offset]
        with self.db.read() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [CompletionRecord.model_validate(dict(r)) for r in rows]
