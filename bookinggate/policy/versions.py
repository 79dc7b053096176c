from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from bookinggate.audit.models import AuditAction
from bookinggate.audit.recorder import AuditRecorder
from bookinggate.config import ENGINE_DEFAULT_SETTINGS
from bookinggate.engine_core.types import Scope
from bookinggate.errors import BookingGateError, PolicyIntegrityError, PolicyVersionConflictError
from bookinggate.policy.models import EffectivePolicy, PolicySettings, ScopeRef
from bookinggate.storage import get_storage_backend
from bookinggate.storage.schema import init_db
from bookinggate.storage.sqlite_impl import is_lock_timeout
from bookinggate.utils.canonical import canonical_json, parse_json_field

logger = logging.getLogger(__name__)

ENTITY_TYPE = "policy_settings"

_VERSION_COLUMNS = """
    id, scope, scope_id, version, is_active, settings_json, summary_text, full_text, created_by, created_at
"""


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _from_row(row: Dict[str, Any]) -> PolicySettings:
    return PolicySettings(
        id=int(row["id"]),
        scope=Scope(row["scope"]),
        scope_id=row.get("scope_id") or None,
        version=int(row["version"]),
        is_active=bool(row.get("is_active")),
        settings=parse_json_field(row.get("settings_json"), {}),
        summary_text=row.get("summary_text"),
        full_text=row.get("full_text"),
        created_by=row.get("created_by"),
        created_at=row["created_at"],
    )


def _deposit_phrase(settings: Dict[str, Any]) -> str:
    explicit = settings.get("deposit_amount_or_percent")
    if explicit:
        return str(explicit)
    if str(settings.get("deposit_type") or "").lower() == "percent":
        return f"{settings.get('deposit_percent', ENGINE_DEFAULT_SETTINGS['deposit_percent'])}%"
    return f"${settings.get('deposit_fixed', ENGINE_DEFAULT_SETTINGS['deposit_fixed'])}"


def generate_summary_text(settings: Dict[str, Any]) -> str:
    """Default client-facing summary for a settings payload."""
    merged = {**ENGINE_DEFAULT_SETTINGS, **(settings or {})}
    return (
        f"A deposit of {_deposit_phrase(merged)} secures your session and is applied to the final total.\n\n"
        f"Cancellations or reschedules require {merged['cancellation_window_hours']} hours notice.\n\n"
        "Late arrivals may reduce session time. If you are more than "
        f"{merged['late_threshold_minutes']} minutes late, the appointment may need to be rescheduled.\n\n"
        "If you have questions about healing or aftercare, contact the studio. "
        "If symptoms feel urgent or worsen, seek medical care."
    )


def _active_rows(storage, scope: ScopeRef) -> List[Dict[str, Any]]:
    scope_value, scope_id = scope.storage_key()
    return storage.fetchall(
        f"""
        SELECT {_VERSION_COLUMNS}
        FROM policy_settings_versions
        WHERE scope = ? AND scope_id = ? AND is_active = 1
        ORDER BY version DESC
        """,
        (scope_value, scope_id),
    )


def _single_active(rows: List[Dict[str, Any]], scope: ScopeRef) -> Optional[Dict[str, Any]]:
    if len(rows) > 1:
        error = PolicyIntegrityError(
            f"{len(rows)} active policy versions at {scope.label()}",
            details={"scope": scope.label(), "versions": [int(row["version"]) for row in rows]},
        )
        logger.error("Policy integrity violation: %s", error)
        raise error
    return rows[0] if rows else None


def get_active_version(scope: ScopeRef) -> Optional[PolicySettings]:
    """
    The single active version at ``scope``, or None. More than one active row
    is a data-integrity fault and raises PolicyIntegrityError.
    """
    init_db()
    row = _single_active(_active_rows(get_storage_backend(), scope), scope)
    return _from_row(row) if row else None


def list_versions(scope: ScopeRef) -> List[PolicySettings]:
    """Newest first."""
    init_db()
    scope_value, scope_id = scope.storage_key()
    rows = get_storage_backend().fetchall(
        f"""
        SELECT {_VERSION_COLUMNS}
        FROM policy_settings_versions
        WHERE scope = ? AND scope_id = ?
        ORDER BY version DESC
        """,
        (scope_value, scope_id),
    )
    return [_from_row(row) for row in rows]


def create_version(
    scope: ScopeRef,
    settings: Dict[str, Any],
    *,
    summary_text: Optional[str] = None,
    full_text: Optional[str] = None,
    created_by: Optional[str] = None,
    changed_by_role: Optional[str] = None,
    reason: Optional[str] = None,
    expected_version: Optional[int] = None,
) -> PolicySettings:
    """
    Publish a new settings version at ``scope``.

    Deactivating the previous head, inserting head + 1 and writing the audit
    entry happen in one write transaction. When ``expected_version`` is given
    and the current head differs, nothing is written and
    PolicyVersionConflictError is raised.
    """
    init_db()
    storage = get_storage_backend()
    scope_value, scope_id = scope.storage_key()
    payload = dict(settings or {})
    summary = summary_text if summary_text and summary_text.strip() else generate_summary_text(payload)

    try:
        with storage.transaction() as tx:
            head = _single_active(_active_rows(tx, scope), scope)
            max_row = tx.fetchone(
                """
                SELECT COALESCE(MAX(version), 0) AS current
                FROM policy_settings_versions
                WHERE scope = ? AND scope_id = ?
                """,
                (scope_value, scope_id),
            )
            current = int((max_row or {}).get("current") or 0)
            if expected_version is not None and int(expected_version) != current:
                raise PolicyVersionConflictError(
                    f"expected version {expected_version} at {scope.label()}, current is {current}",
                    details={"scope": scope.label(), "expected_version": expected_version, "current_version": current},
                )
            if head is not None:
                tx.execute(
                    "UPDATE policy_settings_versions SET is_active = 0 WHERE id = ?",
                    (int(head["id"]),),
                )
            new_version = current + 1
            new_id = tx.insert(
                """
                INSERT INTO policy_settings_versions (
                    scope, scope_id, version, is_active, settings_json, summary_text, full_text, created_by, created_at
                ) VALUES (?, ?, ?, 1, ?, ?, ?, ?, ?)
                """,
                (
                    scope_value,
                    scope_id,
                    new_version,
                    canonical_json(payload),
                    summary,
                    full_text,
                    created_by,
                    _utc_now(),
                ),
            )
            AuditRecorder.record_change(
                entity_type=ENTITY_TYPE,
                entity_id=new_id,
                action=AuditAction.CREATED,
                new={"scope": scope.scope.value, "scope_id": scope.scope_id, "version": new_version},
                changed_by=created_by,
                changed_by_role=changed_by_role,
                reason=reason,
                metadata={
                    "previous_version": int(head["version"]) if head else None,
                    "settings": payload,
                },
            )
            created = tx.fetchone(
                f"SELECT {_VERSION_COLUMNS} FROM policy_settings_versions WHERE id = ?",
                (new_id,),
            )
    except BookingGateError:
        raise
    except Exception as exc:
        if "unique" in str(exc).lower() or is_lock_timeout(exc):
            raise PolicyVersionConflictError(
                f"concurrent policy version write at {scope.label()}; retry",
                details={"scope": scope.label()},
            ) from exc
        raise

    logger.info("Policy version %s is now active at %s", new_version, scope.label())
    return _from_row(created)


def _scope_chain(workspace_id: Optional[str], artist_id: Optional[str]) -> List[ScopeRef]:
    chain: List[ScopeRef] = []
    if artist_id:
        chain.append(ScopeRef(scope=Scope.ARTIST, scope_id=artist_id))
    if workspace_id:
        chain.append(ScopeRef(scope=Scope.WORKSPACE, scope_id=workspace_id))
    chain.append(ScopeRef(scope=Scope.GLOBAL))
    return chain


def resolve_effective_settings(
    *,
    workspace_id: Optional[str] = None,
    artist_id: Optional[str] = None,
) -> EffectivePolicy:
    """
    The active settings governing a booking: the most specific scope with an
    active version wins; with none anywhere, the engine defaults apply.
    """
    for scope in _scope_chain(workspace_id, artist_id):
        active = get_active_version(scope)
        if active is not None:
            return EffectivePolicy(
                source=scope.scope.value,
                version=active,
                settings={**ENGINE_DEFAULT_SETTINGS, **active.settings},
                summary_text=active.summary_text or generate_summary_text(active.settings),
            )
    return EffectivePolicy(
        source="engine_default",
        settings=dict(ENGINE_DEFAULT_SETTINGS),
        summary_text=generate_summary_text(ENGINE_DEFAULT_SETTINGS),
    )
