import sqlite3

import pytest

from bookinggate.storage import get_storage_backend
from bookinggate.storage.migrations import MIGRATIONS
from bookinggate.storage.schema import SCHEMA_VERSION, applied_schema_version, init_db, schema_status


def test_forward_only_migrations_applied_once(db_path):
    assert init_db() == SCHEMA_VERSION
    assert init_db() == SCHEMA_VERSION

    conn = sqlite3.connect(db_path)
    try:
        cur = conn.cursor()
        cur.execute("SELECT migration_id FROM schema_migrations ORDER BY migration_id ASC")
        assert [row[0] for row in cur.fetchall()] == [migration.migration_id for migration in MIGRATIONS]

        cur.execute("PRAGMA table_info(policy_rules)")
        rule_cols = {row[1] for row in cur.fetchall()}
        assert {"rule_key", "scope", "scope_id", "priority", "condition_json", "warning_key"} <= rule_cols

        cur.execute("SELECT name FROM sqlite_master WHERE type = 'trigger' ORDER BY name")
        triggers = {row[0] for row in cur.fetchall()}
        assert {
            "prevent_audit_update",
            "prevent_audit_delete",
            "prevent_decision_log_update",
            "prevent_decision_log_delete",
            "prevent_policy_version_rewrite",
            "prevent_policy_version_delete",
        } <= triggers
    finally:
        conn.close()


def test_transaction_rolls_back_every_write():
    init_db()
    storage = get_storage_backend()
    with pytest.raises(RuntimeError):
        with storage.transaction() as tx:
            tx.execute(
                """
                INSERT INTO warning_templates (
                    warning_key, title, client_message, severity, is_active, created_at, updated_at
                ) VALUES ('A', 't', 'm', 'info', 1, 'now', 'now')
                """
            )
            with tx.transaction() as inner:
                inner.execute(
                    """
                    INSERT INTO warning_templates (
                        warning_key, title, client_message, severity, is_active, created_at, updated_at
                    ) VALUES ('B', 't', 'm', 'info', 1, 'now', 'now')
                    """
                )
            raise RuntimeError("abort")

    assert storage.in_transaction() is False
    assert storage.fetchall("SELECT warning_key FROM warning_templates") == []


def test_transaction_commits_on_success():
    init_db()
    storage = get_storage_backend()
    with storage.transaction() as tx:
        assert storage.in_transaction() is True
        tx.insert(
            """
            INSERT INTO warning_templates (
                warning_key, title, client_message, severity, is_active, created_at, updated_at
            ) VALUES ('A', 't', 'm', 'info', 1, 'now', 'now')
            """
        )
    assert [row["warning_key"] for row in storage.fetchall("SELECT warning_key FROM warning_templates")] == ["A"]


def test_schema_status_reports_history_and_log_sizes(db_path):
    status = schema_status()
    assert status["schema_version"] == SCHEMA_VERSION
    assert status["expected_version"] == SCHEMA_VERSION
    assert [row["migration_id"] for row in status["applied"]] == [m.migration_id for m in MIGRATIONS]
    assert status["log_rows"] == {"audit_entries": 0, "decision_log": 0, "policy_settings_versions": 0}

    conn = sqlite3.connect(db_path)
    try:
        conn.execute("DELETE FROM schema_migrations WHERE migration_id = ?", (SCHEMA_VERSION,))
        conn.commit()
    finally:
        conn.close()
    expected_current = MIGRATIONS[-2].migration_id
    assert applied_schema_version() == expected_current
