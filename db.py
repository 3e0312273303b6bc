"""
Long-lived SQLite handles with scoped transactions.

Each transactional domain (quests, schedule, tasks) gets exactly one
`Database`, opened at start-up and passed explicitly to the stores that use
it. Every write group runs inside `transaction()`, which takes SQLite's
write lock up front (BEGIN IMMEDIATE), so read-modify-write sequences on the
same rows are serialised. A nested `transaction()` joins the outer one.
"""

import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, Optional, Union

from errors import StorageError

logger = logging.getLogger(__name__)


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


class Database:
    BUSY_TIMEOUT_MS = 5000

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        # isolation_level=None: we issue BEGIN/COMMIT ourselves
        self.conn: Optional[sqlite3.Connection] = sqlite3.connect(
            str(self.path), check_same_thread=False, isolation_level=None
        )
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA journal_mode=WAL")
        self.conn.execute(f"PRAGMA busy_timeout={self.BUSY_TIMEOUT_MS}")
        self.conn.execute("PRAGMA foreign_keys=ON")
        self._lock = threading.RLock()
        self._depth = 0
        logger.debug(f"Opened database {self.path}")

    def ensure_schema(self, schema: str) -> None:
        """Run idempotent DDL (CREATE ... IF NOT EXISTS). Must not be called inside a transaction."""
        with self._lock:
            conn = self._require_conn()
            try:
                conn.executescript(schema)
            except sqlite3.Error as e:
                raise StorageError(f"Schema setup on {self.path.name} failed: {e}") from e

    # ── scopes ───────────────────────────────────────────────────────

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """
        All-or-nothing write group. sqlite3 errors are turned into
        StorageError after the rollback; any other exception is re-raised
        unchanged after the rollback.
        """
        with self._lock:
            conn = self._require_conn()
            if self._depth > 0:
                self._depth += 1
                try:
                    yield conn
                finally:
                    self._depth -= 1
                return

            try:
                conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as e:
                raise StorageError(f"Could not start transaction on {self.path.name}: {e}") from e

            self._depth = 1
            try:
                yield conn
                conn.execute("COMMIT")
            except sqlite3.Error as e:
                self._rollback(conn)
                raise StorageError(f"Write to {self.path.name} failed and was rolled back: {e}") from e
            except BaseException:
                self._rollback(conn)
                raise
            finally:
                self._depth = 0

    @contextmanager
    def read(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            conn = self._require_conn()
            try:
                yield conn
            except sqlite3.Error as e:
                raise StorageError(f"Read from {self.path.name} failed: {e}") from e

    def close(self) -> None:
        with self._lock:
            if self.conn is not None:
                self.conn.close()
                self.conn = None
                logger.debug(f"Closed database {self.path}")

    # ── internals ────────────────────────────────────────────────────

    def _require_conn(self) -> sqlite3.Connection:
        if self.conn is None:
            raise StorageError(f"Database {self.path.name} is closed")
        return self.conn

    def _rollback(self, conn: sqlite3.Connection) -> None:
        if conn.in_transaction:
            conn.execute("ROLLBACK")
        logger.warning(f"Rolled back transaction on {self.path.name}")
