from __future__ import annotations

import logging
from datetime import timezone
from typing import Any, Dict, Mapping, Optional

from bookinggate.audit.diff import compute_changes_diff
from bookinggate.audit.models import AuditAction, AuditEntry
from bookinggate.config import DEFAULT_ACTOR_ROLE
from bookinggate.engine_core.decision_model import DecisionResult
from bookinggate.storage import get_storage_backend
from bookinggate.storage.schema import init_db
from bookinggate.utils.canonical import canonical_json, sha256_json, sha256_text

logger = logging.getLogger(__name__)


def _context_hash(context: Optional[Mapping[str, Any]]) -> str:
    try:
        return sha256_json(dict(context or {}))
    except (TypeError, ValueError):
        # Contexts with dates, mixed-type keys or similar are hashed by their repr.
        return sha256_text(repr(context))


class AuditRecorder:
    """
    Appends configuration changes and resolved decisions to immutable storage.

    Writes go through the active storage transaction when there is one, so an
    audit row commits or rolls back together with the change it documents.
    """

    @staticmethod
    def record(entry: AuditEntry) -> AuditEntry:
        init_db()
        storage = get_storage_backend()
        occurred_at = entry.occurred_at.astimezone(timezone.utc).isoformat()
        entry_id = storage.insert(
            """
            INSERT INTO audit_entries (
                entity_type, entity_id, action, changed_by, changed_by_role,
                changes_diff_json, reason, metadata_json, occurred_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                entry.entity_type,
                entry.entity_id,
                entry.action.value,
                entry.changed_by,
                entry.changed_by_role,
                canonical_json(entry.changes_diff),
                entry.reason,
                canonical_json(entry.metadata),
                occurred_at,
            ),
        )
        return entry.model_copy(update={"id": entry_id})

    @staticmethod
    def record_change(
        *,
        entity_type: str,
        entity_id: Any,
        action: AuditAction,
        old: Optional[Mapping[str, Any]] = None,
        new: Optional[Mapping[str, Any]] = None,
        changed_by: Optional[str] = None,
        changed_by_role: Optional[str] = None,
        reason: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> AuditEntry:
        return AuditRecorder.record(
            AuditEntry(
                entity_type=entity_type,
                entity_id=str(entity_id),
                action=action,
                changed_by=changed_by,
                changed_by_role=changed_by_role or (DEFAULT_ACTOR_ROLE if changed_by else None),
                changes_diff=compute_changes_diff(action, old, new),
                reason=reason,
                metadata=dict(metadata or {}),
            )
        )

    @staticmethod
    def record_decision(
        result: DecisionResult,
        *,
        workspace_id: Optional[str] = None,
        artist_id: Optional[str] = None,
        context: Optional[Mapping[str, Any]] = None,
    ) -> DecisionResult:
        init_db()
        storage = get_storage_backend()
        payload = result.model_dump(mode="json")
        storage.execute(
            """
            INSERT INTO decision_log (
                evaluation_id, workspace_id, artist_id, decision, reason_code, matched_rule_id,
                context_hash, result_json, configuration_warnings_json, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                result.evaluation_id,
                workspace_id,
                artist_id,
                result.decision.value,
                result.reason_code,
                result.matched_rule_id,
                _context_hash(context),
                canonical_json(payload),
                canonical_json(payload.get("configuration_warnings") or []),
                result.evaluated_at.astimezone(timezone.utc).isoformat(),
            ),
        )
        if result.configuration_warnings:
            logger.warning(
                "Decision %s resolved with %d configuration warning(s): %s",
                result.evaluation_id,
                len(result.configuration_warnings),
                ", ".join(sorted({w.code for w in result.configuration_warnings})),
            )
        return result
