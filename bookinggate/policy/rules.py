from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional, Union

from pydantic import ValidationError

from bookinggate.audit.models import AuditAction
from bookinggate.audit.recorder import AuditRecorder
from bookinggate.engine_core.expression import parse_expression, to_wire
from bookinggate.engine_core.types import Scope
from bookinggate.errors import ConditionError, NotFoundError, RuleConflictError, RuleValidationError
from bookinggate.policy.models import PolicyRule, RuleAction, RuleUpdate
from bookinggate.storage import get_storage_backend
from bookinggate.storage.base import StorageBackend
from bookinggate.storage.schema import init_db
from bookinggate.storage.sqlite_impl import is_lock_timeout
from bookinggate.utils.canonical import canonical_json, parse_json_field

logger = logging.getLogger(__name__)

ENTITY_TYPE = "policy_rule"

_RULE_COLUMNS = """
    id, rule_key, name, description, scope, scope_id, priority, enabled,
    condition_json, action_json, warning_key, explain_public, explain_internal,
    created_by, created_at, updated_at
"""


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _load_condition(raw: Any, *, rule_id: Any) -> Dict[str, Any]:
    try:
        data = json.loads(raw) if isinstance(raw, str) else raw
        return {"condition": parse_expression(data), "condition_error": None}
    except (ValueError, ConditionError) as exc:
        logger.warning("Quarantining rule %s: stored condition is malformed: %s", rule_id, exc)
        return {"condition": None, "condition_error": str(exc)}


def _from_row(row: Dict[str, Any]) -> PolicyRule:
    """
    Build a rule from storage. A malformed condition does not fail the load;
    the rule comes back quarantined and never matches.
    """
    condition = _load_condition(row.get("condition_json"), rule_id=row.get("id"))
    return PolicyRule(
        id=int(row["id"]),
        rule_key=row["rule_key"],
        name=row["name"],
        description=row.get("description") or "",
        scope=Scope(row["scope"]),
        scope_id=row.get("scope_id") or None,
        priority=int(row.get("priority") or 0),
        enabled=bool(row.get("enabled")),
        condition=condition["condition"],
        condition_error=condition["condition_error"],
        action=RuleAction.model_validate(parse_json_field(row.get("action_json"), {})),
        warning_key=row.get("warning_key"),
        explain_public=row.get("explain_public") or "",
        explain_internal=row.get("explain_internal") or "",
        created_by=row.get("created_by"),
        created_at=row.get("created_at"),
        updated_at=row.get("updated_at"),
    )


def audit_view(rule: PolicyRule) -> Dict[str, Any]:
    """Flat rule fields as recorded in audit diffs."""
    return {
        "name": rule.name,
        "rule_key": rule.rule_key,
        "description": rule.description,
        "scope": rule.scope.value,
        "scope_id": rule.scope_id,
        "priority": rule.priority,
        "enabled": rule.enabled,
        "condition": to_wire(rule.condition) if rule.condition is not None else None,
        "decision": rule.action.decision.value,
        "reason_code": rule.action.reason_code,
        "next_actions": rule.action.next_actions,
        "warning_key": rule.warning_key,
        "explain_public": rule.explain_public,
        "explain_internal": rule.explain_internal,
    }


def _is_unique_violation(exc: Exception) -> bool:
    lowered = str(exc).lower()
    return "unique" in lowered


def _conflict(rule: PolicyRule) -> RuleConflictError:
    return RuleConflictError(
        f"rule_key `{rule.rule_key}` already exists at {rule.scope_ref.label()}",
        details={"rule_key": rule.rule_key, "scope": rule.scope.value, "scope_id": rule.scope_id},
    )


@contextmanager
def _write_transaction(storage: StorageBackend, target: str) -> Iterator[StorageBackend]:
    try:
        with storage.transaction() as tx:
            yield tx
    except Exception as exc:
        if is_lock_timeout(exc):
            raise RuleConflictError(
                f"timed out waiting for another rule change ({target}); retry",
                details={"target": target},
            ) from exc
        raise


def get_rule(rule_id: int) -> Optional[PolicyRule]:
    init_db()
    row = get_storage_backend().fetchone(
        f"SELECT {_RULE_COLUMNS} FROM policy_rules WHERE id = ?",
        (int(rule_id),),
    )
    return _from_row(row) if row else None


def require_rule(rule_id: int) -> PolicyRule:
    rule = get_rule(rule_id)
    if rule is None:
        raise NotFoundError(f"rule {rule_id} not found", details={"rule_id": rule_id})
    return rule


def list_rules(
    *,
    scope: Optional[Union[Scope, str]] = None,
    scope_id: Optional[str] = None,
    enabled: Optional[bool] = None,
) -> List[PolicyRule]:
    init_db()
    query = [f"SELECT {_RULE_COLUMNS} FROM policy_rules WHERE 1 = 1"]
    params: List[Any] = []
    if scope:
        query.append("AND scope = ?")
        params.append(Scope(scope).value)
    if scope_id:
        query.append("AND scope_id = ?")
        params.append(str(scope_id).strip())
    if enabled is not None:
        query.append("AND enabled = ?")
        params.append(1 if enabled else 0)
    query.append("ORDER BY id ASC")
    rows = get_storage_backend().fetchall("\n".join(query), params)
    return [_from_row(row) for row in rows]


def list_applicable_rules(*, workspace_id: Optional[str] = None, artist_id: Optional[str] = None) -> List[PolicyRule]:
    """
    Enabled rules at global scope plus the request's workspace and artist scopes.
    Ordering is left to the resolver.
    """
    init_db()
    clauses = ["(scope = 'global')"]
    params: List[Any] = []
    if workspace_id:
        clauses.append("(scope = 'workspace' AND scope_id = ?)")
        params.append(str(workspace_id).strip())
    if artist_id:
        clauses.append("(scope = 'artist' AND scope_id = ?)")
        params.append(str(artist_id).strip())
    rows = get_storage_backend().fetchall(
        f"""
        SELECT {_RULE_COLUMNS}
        FROM policy_rules
        WHERE enabled = 1 AND ({' OR '.join(clauses)})
        ORDER BY id ASC
        """,
        params,
    )
    return [_from_row(row) for row in rows]


def _insert_rule(tx, rule: PolicyRule, now: str) -> int:
    scope, scope_id = rule.scope_ref.storage_key()
    existing = tx.fetchone(
        "SELECT id FROM policy_rules WHERE scope = ? AND scope_id = ? AND rule_key = ?",
        (scope, scope_id, rule.rule_key),
    )
    if existing:
        raise _conflict(rule)
    try:
        return tx.insert(
            """
            INSERT INTO policy_rules (
                rule_key, name, description, scope, scope_id, priority, enabled,
                condition_json, action_json, warning_key, explain_public, explain_internal,
                created_by, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                rule.rule_key,
                rule.name,
                rule.description,
                scope,
                scope_id,
                int(rule.priority),
                1 if rule.enabled else 0,
                canonical_json(to_wire(rule.condition)),
                canonical_json(rule.action.model_dump(mode="json")),
                rule.warning_key,
                rule.explain_public,
                rule.explain_internal,
                rule.created_by,
                now,
                now,
            ),
        )
    except Exception as exc:
        if _is_unique_violation(exc):
            raise _conflict(rule) from exc
        raise


def create_rule(
    rule: PolicyRule,
    *,
    changed_by: Optional[str] = None,
    changed_by_role: Optional[str] = None,
    reason: Optional[str] = None,
) -> PolicyRule:
    if rule.quarantined:
        raise RuleValidationError("cannot store a rule without a valid condition")
    init_db()
    storage = get_storage_backend()
    now = _utc_now().isoformat()
    if changed_by and not rule.created_by:
        rule = rule.model_copy(update={"created_by": changed_by})
    with _write_transaction(storage, rule.rule_key) as tx:
        rule_id = _insert_rule(tx, rule, now)
        created = require_rule(rule_id)
        AuditRecorder.record_change(
            entity_type=ENTITY_TYPE,
            entity_id=rule_id,
            action=AuditAction.CREATED,
            new=audit_view(created),
            changed_by=changed_by,
            changed_by_role=changed_by_role,
            reason=reason,
        )
    logger.info("Created rule %s (%s) at %s", rule_id, rule.rule_key, rule.scope_ref.label())
    return created


def create_rules(
    rules: List[PolicyRule],
    *,
    changed_by: Optional[str] = None,
    changed_by_role: Optional[str] = None,
    reason: Optional[str] = None,
) -> List[PolicyRule]:
    """Create several rules atomically; any failure writes nothing."""
    init_db()
    storage = get_storage_backend()
    created: List[PolicyRule] = []
    with _write_transaction(storage, "rule import"):
        for rule in rules:
            created.append(
                create_rule(rule, changed_by=changed_by, changed_by_role=changed_by_role, reason=reason)
            )
    return created


def _merge(current: PolicyRule, changes: RuleUpdate) -> PolicyRule:
    data = current.model_dump()
    for field in changes.model_fields_set:
        value = getattr(changes, field)
        if value is None:
            if field == "warning_key":
                data[field] = None
                continue
            raise RuleValidationError(f"{field} cannot be cleared")
        if field == "action":
            value = value.model_dump()
        elif field == "condition":
            data["condition_error"] = None
        data[field] = value
    try:
        return PolicyRule.model_validate(data)
    except ValidationError as exc:
        raise RuleValidationError(str(exc)) from exc


def update_rule(
    rule_id: int,
    changes: Union[RuleUpdate, Dict[str, Any]],
    *,
    changed_by: Optional[str] = None,
    changed_by_role: Optional[str] = None,
    reason: Optional[str] = None,
) -> PolicyRule:
    """
    Apply a partial update. Only fields explicitly present in ``changes`` are
    touched; the audit entry records the fields whose values differ.
    """
    if not isinstance(changes, RuleUpdate):
        try:
            changes = RuleUpdate.model_validate(changes)
        except ValidationError as exc:
            raise RuleValidationError(str(exc)) from exc
    init_db()
    storage = get_storage_backend()
    with _write_transaction(storage, f"rule {rule_id}") as tx:
        current = require_rule(rule_id)
        merged = _merge(current, changes)
        tx.execute(
            """
            UPDATE policy_rules
            SET name = ?, description = ?, priority = ?, enabled = ?, condition_json = ?,
                action_json = ?, warning_key = ?, explain_public = ?, explain_internal = ?, updated_at = ?
            WHERE id = ?
            """,
            (
                merged.name,
                merged.description,
                int(merged.priority),
                1 if merged.enabled else 0,
                # A quarantined rule keeps its stored condition until one is supplied.
                canonical_json(to_wire(merged.condition)) if merged.condition is not None else _raw_condition(tx, rule_id),
                canonical_json(merged.action.model_dump(mode="json")),
                merged.warning_key,
                merged.explain_public,
                merged.explain_internal,
                _utc_now().isoformat(),
                int(rule_id),
            ),
        )
        updated = require_rule(rule_id)
        AuditRecorder.record_change(
            entity_type=ENTITY_TYPE,
            entity_id=rule_id,
            action=AuditAction.UPDATED,
            old=audit_view(current),
            new=audit_view(updated),
            changed_by=changed_by,
            changed_by_role=changed_by_role,
            reason=reason,
        )
    return updated


def _raw_condition(tx, rule_id: int) -> str:
    row = tx.fetchone("SELECT condition_json FROM policy_rules WHERE id = ?", (int(rule_id),))
    return str((row or {}).get("condition_json") or "null")


def set_rule_enabled(
    rule_id: int,
    enabled: bool,
    *,
    changed_by: Optional[str] = None,
    changed_by_role: Optional[str] = None,
    reason: Optional[str] = None,
) -> PolicyRule:
    return update_rule(
        rule_id,
        RuleUpdate(enabled=bool(enabled)),
        changed_by=changed_by,
        changed_by_role=changed_by_role,
        reason=reason,
    )


def delete_rule(
    rule_id: int,
    *,
    changed_by: Optional[str] = None,
    changed_by_role: Optional[str] = None,
    reason: Optional[str] = None,
) -> PolicyRule:
    init_db()
    storage = get_storage_backend()
    with _write_transaction(storage, f"rule {rule_id}") as tx:
        current = require_rule(rule_id)
        tx.execute("DELETE FROM policy_rules WHERE id = ?", (int(rule_id),))
        AuditRecorder.record_change(
            entity_type=ENTITY_TYPE,
            entity_id=rule_id,
            action=AuditAction.DELETED,
            old=audit_view(current),
            changed_by=changed_by,
            changed_by_role=changed_by_role,
            reason=reason,
        )
    logger.info("Deleted rule %s (%s)", rule_id, current.rule_key)
    return current
