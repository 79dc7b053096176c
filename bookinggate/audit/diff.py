from __future__ import annotations

from typing import Any, Dict, Mapping, Optional, Tuple, Union

from bookinggate.audit.models import AuditAction
from bookinggate.utils.canonical import canonical_json


# Fields worth showing for a created or deleted record.
KEY_FIELDS: Tuple[str, ...] = (
    "name",
    "rule_key",
    "decision",
    "reason_code",
    "reason",
    "scope",
    "scope_id",
    "version",
    "email",
)


def _deep_equal(left: Any, right: Any) -> bool:
    if left is right:
        return True
    try:
        return canonical_json(left) == canonical_json(right)
    except (TypeError, ValueError):
        return left == right


def _snapshot(record: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    if not record:
        return {}
    return {key: record[key] for key in KEY_FIELDS if key in record}


def compute_changes_diff(
    action: Union[AuditAction, str],
    old: Optional[Mapping[str, Any]],
    new: Optional[Mapping[str, Any]],
) -> Dict[str, Any]:
    """
    Summarize a change for the audit log.

    - updated: ``{key: {"old": ..., "new": ...}}`` for every key whose value
      differs, compared structurally.
    - created / deleted: the key fields present on the new / old record.
    - approved / rejected: the key fields of whichever record is available.
    """
    value = action.value if isinstance(action, AuditAction) else str(action)
    if value == AuditAction.UPDATED.value:
        before = dict(old or {})
        after = dict(new or {})
        diff: Dict[str, Any] = {}
        for key in sorted(set(before) | set(after)):
            if not _deep_equal(before.get(key), after.get(key)):
                diff[key] = {"old": before.get(key), "new": after.get(key)}
        return diff
    if value == AuditAction.CREATED.value:
        return _snapshot(new)
    if value == AuditAction.DELETED.value:
        return _snapshot(old)
    return _snapshot(new or old)
