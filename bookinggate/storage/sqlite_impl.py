from __future__ import annotations

from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence

import sqlite3
import threading

from bookinggate.config import get_db_busy_timeout, get_db_path
from bookinggate.storage.base import StorageBackend


def _open(timeout: Optional[float] = None) -> sqlite3.Connection:
    db_file = Path(get_db_path())
    db_file.parent.mkdir(parents=True, exist_ok=True)
    wait = get_db_busy_timeout() if timeout is None else timeout
    conn = sqlite3.connect(str(db_file), timeout=wait, isolation_level=None)
    conn.row_factory = sqlite3.Row
    return conn


class SQLiteStorageBackend(StorageBackend):
    def __init__(self):
        self._local = threading.local()

    @property
    def name(self) -> str:
        return "sqlite"

    def _active_tx(self) -> Optional[Dict[str, Any]]:
        return getattr(self._local, "tx_state", None)

    def in_transaction(self) -> bool:
        return self._active_tx() is not None

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        active = self._active_tx()
        if active is not None:
            yield active["conn"]
            return
        conn = _open()
        try:
            yield conn
        finally:
            conn.close()

    def execute(self, query: str, params: Sequence[Any] = ()) -> int:
        with self.connect() as conn:
            cur = conn.cursor()
            cur.execute(query, tuple(params))
            return cur.rowcount

    def insert(self, query: str, params: Sequence[Any] = ()) -> int:
        with self.connect() as conn:
            cur = conn.cursor()
            cur.execute(query, tuple(params))
            return int(cur.lastrowid)

    def fetchone(self, query: str, params: Sequence[Any] = ()) -> Optional[Dict[str, Any]]:
        with self.connect() as conn:
            cur = conn.cursor()
            cur.execute(query, tuple(params))
            row = cur.fetchone()
            return dict(row) if row else None

    def fetchall(self, query: str, params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        with self.connect() as conn:
            cur = conn.cursor()
            cur.execute(query, tuple(params))
            return [dict(r) for r in cur.fetchall()]

    @contextmanager
    def transaction(self) -> Iterator["SQLiteStorageBackend"]:
        active = self._active_tx()
        if active is not None:
            active["depth"] += 1
            try:
                yield self
            finally:
                active["depth"] -= 1
            return

        conn = _open()
        # Writers serialize on the database lock taken at BEGIN.
        try:
            conn.execute("BEGIN IMMEDIATE")
        except sqlite3.Error:
            conn.close()
            raise
        self._local.tx_state = {"conn": conn, "depth": 1}
        try:
            yield self
            conn.execute("COMMIT")
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        finally:
            self._local.tx_state = None
            conn.close()


def is_lock_timeout(exc: BaseException) -> bool:
    """True when a write gave up waiting for another writer's lock."""
    if not isinstance(exc, sqlite3.OperationalError):
        return False
    lowered = str(exc).lower()
    return "locked" in lowered or "busy" in lowered
