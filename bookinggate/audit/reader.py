from __future__ import annotations

from typing import Any, Dict, List, Optional

from bookinggate.config import AUDIT_PAGE_DEFAULT, AUDIT_PAGE_MAX
from bookinggate.storage import get_storage_backend
from bookinggate.storage.schema import init_db
from bookinggate.utils.canonical import parse_json_field


def _serialize_entry(row: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": row.get("id"),
        "entity_type": row.get("entity_type"),
        "entity_id": row.get("entity_id"),
        "action": row.get("action"),
        "changed_by": row.get("changed_by"),
        "changed_by_role": row.get("changed_by_role"),
        "changes_diff": parse_json_field(row.get("changes_diff_json"), {}),
        "reason": row.get("reason"),
        "metadata": parse_json_field(row.get("metadata_json"), {}),
        "occurred_at": row.get("occurred_at"),
    }


def _escape_like(text: str) -> str:
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class AuditReader:
    """
    Read-only access to the configuration audit log and the decision log.
    """

    @staticmethod
    def search(
        *,
        entity_type: Optional[str] = None,
        action: Optional[str] = None,
        query: Optional[str] = None,
        limit: int = AUDIT_PAGE_DEFAULT,
        offset: int = 0,
    ) -> Dict[str, Any]:
        """
        Newest first. ``query`` matches entity id, actor, reason or diff text.
        """
        init_db()
        storage = get_storage_backend()
        where: List[str] = []
        params: List[Any] = []
        if entity_type:
            where.append("entity_type = ?")
            params.append(str(entity_type).strip())
        if action:
            where.append("action = ?")
            params.append(str(action).strip().lower())
        if query and str(query).strip():
            pattern = f"%{_escape_like(str(query).strip())}%"
            where.append(
                "(entity_id LIKE ? ESCAPE '\\' OR changed_by LIKE ? ESCAPE '\\' "
                "OR reason LIKE ? ESCAPE '\\' OR changes_diff_json LIKE ? ESCAPE '\\')"
            )
            params.extend([pattern, pattern, pattern, pattern])
        clause = f"WHERE {' AND '.join(where)}" if where else ""

        bounded_limit = max(1, min(int(limit), AUDIT_PAGE_MAX))
        bounded_offset = max(0, int(offset))
        total_row = storage.fetchone(f"SELECT COUNT(*) AS total FROM audit_entries {clause}", params)
        rows = storage.fetchall(
            f"""
            SELECT id, entity_type, entity_id, action, changed_by, changed_by_role,
                   changes_diff_json, reason, metadata_json, occurred_at
            FROM audit_entries
            {clause}
            ORDER BY occurred_at DESC, id DESC
            LIMIT ? OFFSET ?
            """,
            [*params, bounded_limit, bounded_offset],
        )
        return {
            "items": [_serialize_entry(row) for row in rows],
            "total": int((total_row or {}).get("total") or 0),
            "limit": bounded_limit,
            "offset": bounded_offset,
        }

    @staticmethod
    def list_for_entity(entity_type: str, entity_id: Any) -> List[Dict[str, Any]]:
        init_db()
        rows = get_storage_backend().fetchall(
            """
            SELECT id, entity_type, entity_id, action, changed_by, changed_by_role,
                   changes_diff_json, reason, metadata_json, occurred_at
            FROM audit_entries
            WHERE entity_type = ? AND entity_id = ?
            ORDER BY occurred_at ASC, id ASC
            """,
            (entity_type, str(entity_id)),
        )
        return [_serialize_entry(row) for row in rows]

    @staticmethod
    def get_decision(evaluation_id: str) -> Optional[Dict[str, Any]]:
        init_db()
        row = get_storage_backend().fetchone(
            """
            SELECT evaluation_id, workspace_id, artist_id, decision, reason_code, matched_rule_id,
                   context_hash, result_json, configuration_warnings_json, created_at
            FROM decision_log
            WHERE evaluation_id = ?
            """,
            (str(evaluation_id),),
        )
        if not row:
            return None
        return {
            "evaluation_id": row["evaluation_id"],
            "workspace_id": row.get("workspace_id"),
            "artist_id": row.get("artist_id"),
            "decision": row["decision"],
            "reason_code": row["reason_code"],
            "matched_rule_id": row.get("matched_rule_id"),
            "context_hash": row["context_hash"],
            "result": parse_json_field(row.get("result_json"), {}),
            "configuration_warnings": parse_json_field(row.get("configuration_warnings_json"), []),
            "created_at": row["created_at"],
        }
