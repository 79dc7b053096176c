from bookinggate.audit.diff import KEY_FIELDS, compute_changes_diff
from bookinggate.audit.models import AuditAction


def test_update_diff_contains_only_changed_keys():
    old = {"name": "Block Color", "priority": 50, "condition": {"==": [{"var": "a"}, 1]}, "enabled": True}
    new = {"name": "Block Color", "priority": 80, "condition": {"==": [{"var": "a"}, 1]}, "enabled": False}
    diff = compute_changes_diff(AuditAction.UPDATED, old, new)
    assert diff == {
        "enabled": {"old": True, "new": False},
        "priority": {"old": 50, "new": 80},
    }


def test_update_diff_compares_nested_values_structurally():
    old = {"condition": {"and": [{"==": [{"var": "a"}, 1]}]}, "next_actions": [{"type": "x"}]}
    new = {"condition": {"and": [{"==": [{"var": "a"}, 2]}]}, "next_actions": [{"type": "x"}]}
    diff = compute_changes_diff("updated", old, new)
    assert list(diff) == ["condition"]
    assert diff["condition"]["new"] == {"and": [{"==": [{"var": "a"}, 2]}]}


def test_added_and_removed_keys_show_up_in_update_diff():
    diff = compute_changes_diff(AuditAction.UPDATED, {"warning_key": "A"}, {"reason": "tidy"})
    assert diff == {
        "reason": {"old": None, "new": "tidy"},
        "warning_key": {"old": "A", "new": None},
    }


def test_created_and_deleted_snapshot_key_fields_only():
    record = {
        "name": "Block Color",
        "rule_key": "block_color",
        "decision": "BLOCK",
        "reason_code": "COLOR_NOT_OFFERED",
        "scope": "global",
        "scope_id": None,
        "priority": 100,
        "explain_internal": "not a key field",
    }
    created = compute_changes_diff(AuditAction.CREATED, None, record)
    deleted = compute_changes_diff(AuditAction.DELETED, record, None)
    assert created == deleted
    assert set(created) <= set(KEY_FIELDS)
    assert "priority" not in created
    assert created["rule_key"] == "block_color"
    assert created["scope_id"] is None
