from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from bookinggate.audit.models import AuditAction
from bookinggate.audit.recorder import AuditRecorder
from bookinggate.policy.models import WarningTemplate
from bookinggate.storage import get_storage_backend
from bookinggate.storage.schema import init_db

ENTITY_TYPE = "warning_template"


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _from_row(row: Dict[str, Any]) -> WarningTemplate:
    return WarningTemplate(
        key=row["warning_key"],
        title=row["title"],
        client_message=row["client_message"],
        severity=row.get("severity") or "warning",
        artist_note=row.get("artist_note"),
        is_active=bool(row.get("is_active")),
    )


def _audit_view(template: WarningTemplate) -> Dict[str, Any]:
    return {**template.model_dump(mode="json"), "name": template.title}


def get_warning(key: str) -> Optional[WarningTemplate]:
    init_db()
    row = get_storage_backend().fetchone(
        """
        SELECT warning_key, title, client_message, severity, artist_note, is_active
        FROM warning_templates
        WHERE warning_key = ?
        """,
        (str(key or "").strip(),),
    )
    return _from_row(row) if row else None


def list_warnings(*, include_inactive: bool = True) -> List[WarningTemplate]:
    init_db()
    query = "SELECT warning_key, title, client_message, severity, artist_note, is_active FROM warning_templates"
    if not include_inactive:
        query += " WHERE is_active = 1"
    query += " ORDER BY warning_key ASC"
    return [_from_row(row) for row in get_storage_backend().fetchall(query)]


def upsert_warning(
    template: WarningTemplate,
    *,
    changed_by: Optional[str] = None,
    changed_by_role: Optional[str] = None,
    reason: Optional[str] = None,
) -> WarningTemplate:
    """Insert or replace a warning template; audited as created or updated."""
    init_db()
    storage = get_storage_backend()
    now = _utc_now()
    with storage.transaction() as tx:
        existing = tx.fetchone(
            """
            SELECT warning_key, title, client_message, severity, artist_note, is_active
            FROM warning_templates
            WHERE warning_key = ?
            """,
            (template.key,),
        )
        if existing:
            tx.execute(
                """
                UPDATE warning_templates
                SET title = ?, client_message = ?, severity = ?, artist_note = ?, is_active = ?, updated_at = ?
                WHERE warning_key = ?
                """,
                (
                    template.title,
                    template.client_message,
                    template.severity,
                    template.artist_note,
                    1 if template.is_active else 0,
                    now,
                    template.key,
                ),
            )
            before = _audit_view(_from_row(existing))
            action = AuditAction.UPDATED
        else:
            tx.execute(
                """
                INSERT INTO warning_templates (
                    warning_key, title, client_message, severity, artist_note, is_active, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    template.key,
                    template.title,
                    template.client_message,
                    template.severity,
                    template.artist_note,
                    1 if template.is_active else 0,
                    now,
                    now,
                ),
            )
            before = None
            action = AuditAction.CREATED
        AuditRecorder.record_change(
            entity_type=ENTITY_TYPE,
            entity_id=template.key,
            action=action,
            old=before,
            new=_audit_view(template),
            changed_by=changed_by,
            changed_by_role=changed_by_role,
            reason=reason,
        )
    return template
