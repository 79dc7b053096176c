from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, List, Set


@dataclass(frozen=True)
class Migration:
    migration_id: str
    description: str
    apply: Callable[[Any], None]


def _create_schema_migrations_table(cursor) -> None:
    cursor.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            migration_id TEXT PRIMARY KEY,
            description TEXT NOT NULL,
            applied_at TEXT NOT NULL
        )
        """
    )


def _migration_001_policy_rules(cursor) -> None:
    cursor.execute(
        """
        CREATE TABLE IF NOT EXISTS policy_rules (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            rule_key TEXT NOT NULL,
            name TEXT NOT NULL,
            description TEXT NOT NULL DEFAULT '',
            scope TEXT NOT NULL CHECK (scope IN ('global', 'workspace', 'artist')),
            scope_id TEXT NOT NULL DEFAULT '', -- '' for global
            priority INTEGER NOT NULL DEFAULT 0,
            enabled INTEGER NOT NULL DEFAULT 1,
            condition_json TEXT NOT NULL,
            action_json TEXT NOT NULL,
            warning_key TEXT,
            explain_public TEXT NOT NULL DEFAULT '',
            explain_internal TEXT NOT NULL DEFAULT '',
            created_by TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    cursor.execute(
        "CREATE UNIQUE INDEX IF NOT EXISTS idx_policy_rules_scope_key ON policy_rules(scope, scope_id, rule_key)"
    )
    cursor.execute(
        "CREATE INDEX IF NOT EXISTS idx_policy_rules_scope_enabled ON policy_rules(scope, scope_id, enabled)"
    )


def _migration_002_warning_templates(cursor) -> None:
    cursor.execute(
        """
        CREATE TABLE IF NOT EXISTS warning_templates (
            warning_key TEXT PRIMARY KEY,
            title TEXT NOT NULL,
            client_message TEXT NOT NULL,
            severity TEXT NOT NULL DEFAULT 'warning',
            artist_note TEXT,
            is_active INTEGER NOT NULL DEFAULT 1,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )


def _migration_003_policy_settings_versions(cursor) -> None:
    cursor.execute(
        """
        CREATE TABLE IF NOT EXISTS policy_settings_versions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            scope TEXT NOT NULL CHECK (scope IN ('global', 'workspace', 'artist')),
            scope_id TEXT NOT NULL DEFAULT '',
            version INTEGER NOT NULL CHECK (version >= 1),
            is_active INTEGER NOT NULL DEFAULT 1,
            settings_json TEXT NOT NULL,
            summary_text TEXT,
            full_text TEXT,
            created_by TEXT,
            created_at TEXT NOT NULL
        )
        """
    )
    cursor.execute(
        "CREATE UNIQUE INDEX IF NOT EXISTS idx_policy_versions_scope_version "
        "ON policy_settings_versions(scope, scope_id, version)"
    )
    cursor.execute(
        "CREATE UNIQUE INDEX IF NOT EXISTS idx_policy_versions_single_active "
        "ON policy_settings_versions(scope, scope_id) WHERE is_active = 1"
    )
    # Versions are snapshots: only the active -> inactive flip is permitted.
    cursor.execute(
        """
        CREATE TRIGGER IF NOT EXISTS prevent_policy_version_rewrite
        BEFORE UPDATE ON policy_settings_versions
        WHEN NEW.settings_json IS NOT OLD.settings_json
          OR NEW.summary_text IS NOT OLD.summary_text
          OR NEW.full_text IS NOT OLD.full_text
          OR NEW.version IS NOT OLD.version
          OR NEW.scope IS NOT OLD.scope
          OR NEW.scope_id IS NOT OLD.scope_id
          OR NEW.created_at IS NOT OLD.created_at
          OR (OLD.is_active = 0 AND NEW.is_active = 1)
        BEGIN
            SELECT RAISE(FAIL, 'Policy versions are immutable: only deactivation is allowed');
        END;
        """
    )
    cursor.execute(
        """
        CREATE TRIGGER IF NOT EXISTS prevent_policy_version_delete
        BEFORE DELETE ON policy_settings_versions
        BEGIN
            SELECT RAISE(FAIL, 'Policy versions are immutable: DELETE not allowed');
        END;
        """
    )


def _migration_004_audit_entries(cursor) -> None:
    cursor.execute(
        """
        CREATE TABLE IF NOT EXISTS audit_entries (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            entity_type TEXT NOT NULL,
            entity_id TEXT NOT NULL,
            action TEXT NOT NULL CHECK (action IN ('created', 'updated', 'deleted', 'approved', 'rejected')),
            changed_by TEXT,
            changed_by_role TEXT,
            changes_diff_json TEXT NOT NULL,
            reason TEXT,
            metadata_json TEXT NOT NULL,
            occurred_at TEXT NOT NULL
        )
        """
    )
    cursor.execute(
        "CREATE INDEX IF NOT EXISTS idx_audit_entries_type_occurred ON audit_entries(entity_type, occurred_at)"
    )
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_audit_entries_occurred ON audit_entries(occurred_at)")
    cursor.execute(
        """
        CREATE TRIGGER IF NOT EXISTS prevent_audit_update
        BEFORE UPDATE ON audit_entries
        BEGIN
            SELECT RAISE(FAIL, 'Audit logs are immutable: UPDATE not allowed');
        END;
        """
    )
    cursor.execute(
        """
        CREATE TRIGGER IF NOT EXISTS prevent_audit_delete
        BEFORE DELETE ON audit_entries
        BEGIN
            SELECT RAISE(FAIL, 'Audit logs are immutable: DELETE not allowed');
        END;
        """
    )


def _migration_005_decision_log(cursor) -> None:
    cursor.execute(
        """
        CREATE TABLE IF NOT EXISTS decision_log (
            evaluation_id TEXT PRIMARY KEY,
            workspace_id TEXT,
            artist_id TEXT,
            decision TEXT NOT NULL,
            reason_code TEXT NOT NULL,
            matched_rule_id INTEGER,
            context_hash TEXT NOT NULL,
            result_json TEXT NOT NULL,
            configuration_warnings_json TEXT NOT NULL,
            created_at TEXT NOT NULL
        )
        """
    )
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_decision_log_created ON decision_log(created_at)")
    cursor.execute(
        "CREATE INDEX IF NOT EXISTS idx_decision_log_scope ON decision_log(workspace_id, artist_id, created_at)"
    )
    cursor.execute(
        """
        CREATE TRIGGER IF NOT EXISTS prevent_decision_log_update
        BEFORE UPDATE ON decision_log
        BEGIN
            SELECT RAISE(FAIL, 'Decision log is immutable: UPDATE not allowed');
        END;
        """
    )
    cursor.execute(
        """
        CREATE TRIGGER IF NOT EXISTS prevent_decision_log_delete
        BEFORE DELETE ON decision_log
        BEGIN
            SELECT RAISE(FAIL, 'Decision log is immutable: DELETE not allowed');
        END;
        """
    )


MIGRATIONS: List[Migration] = [
    Migration("20261001_001_policy_rules", "Policy rules keyed by scope", _migration_001_policy_rules),
    Migration("20261001_002_warning_templates", "Client warning template catalog", _migration_002_warning_templates),
    Migration(
        "20261001_003_policy_settings_versions",
        "Append-only policy settings versions with a single active row per scope",
        _migration_003_policy_settings_versions,
    ),
    Migration("20261001_004_audit_entries", "Immutable configuration audit log", _migration_004_audit_entries),
    Migration("20261002_005_decision_log", "Immutable booking decision log", _migration_005_decision_log),
]


def _applied_ids(cursor) -> Set[str]:
    cursor.execute("SELECT migration_id FROM schema_migrations")
    return {row[0] for row in cursor.fetchall()}


def apply_migrations(conn) -> str:
    """
    Apply all pending forward-only migrations and return the latest migration id.
    """
    cursor = conn.cursor()
    _create_schema_migrations_table(cursor)
    applied = _applied_ids(cursor)
    for migration in MIGRATIONS:
        if migration.migration_id in applied:
            continue
        migration.apply(cursor)
        cursor.execute(
            "INSERT INTO schema_migrations (migration_id, description, applied_at) VALUES (?, ?, ?)",
            (migration.migration_id, migration.description, datetime.now(timezone.utc).isoformat()),
        )
    return MIGRATIONS[-1].migration_id
