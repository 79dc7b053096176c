from __future__ import annotations

import os
import threading
from typing import Any, Dict, Optional, Set

from bookinggate.config import get_db_path
from bookinggate.storage import get_storage_backend
from bookinggate.storage.migrations import MIGRATIONS, apply_migrations
from bookinggate.storage.sqlite_impl import _open

SCHEMA_VERSION = MIGRATIONS[-1].migration_id

_lock = threading.Lock()
_initialized: Set[str] = set()


def init_db() -> str:
    """
    Initialize the SQLite database with the current schema.
    Safe to call repeatedly; migrations are applied once per database file.
    """
    db_path = get_db_path()
    if db_path in _initialized and os.path.exists(db_path):
        return SCHEMA_VERSION
    if get_storage_backend().in_transaction():
        # Callers initialize before opening a transaction.
        return SCHEMA_VERSION

    with _lock:
        conn = _open()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                current = apply_migrations(conn)
                conn.execute("COMMIT")
            except BaseException:
                conn.execute("ROLLBACK")
                raise
        finally:
            conn.close()
        _initialized.add(db_path)
    return current


def applied_schema_version() -> Optional[str]:
    """Newest migration recorded in the database, or None before the first run."""
    row = get_storage_backend().fetchone(
        "SELECT migration_id FROM schema_migrations ORDER BY migration_id DESC LIMIT 1"
    )
    return str(row["migration_id"]) if row else None


def schema_status() -> Dict[str, Any]:
    """
    Migration history plus row counts of the append-only logs, for `bookinggate migrate`.
    """
    init_db()
    storage = get_storage_backend()
    applied = storage.fetchall(
        "SELECT migration_id, description, applied_at FROM schema_migrations ORDER BY migration_id ASC"
    )
    log_rows = {
        table: int((storage.fetchone(f"SELECT COUNT(*) AS total FROM {table}") or {}).get("total") or 0)
        for table in ("audit_entries", "decision_log", "policy_settings_versions")
    }
    return {
        "schema_version": applied_schema_version(),
        "expected_version": SCHEMA_VERSION,
        "applied": applied,
        "log_rows": log_rows,
    }
