import sqlite3

import pytest

from bookinggate.audit.reader import AuditReader
from bookinggate.errors import NotFoundError, RuleConflictError, RuleValidationError
from bookinggate.policy import rules as rule_store
from bookinggate.policy.models import PolicyRule, RuleUpdate


def _block_color(**overrides):
    data = {
        "rule_key": "block_color",
        "name": "Block Color Work",
        "priority": 100,
        "condition": {"==": [{"var": "declared.wantsColor"}, True]},
        "action": {"decision": "BLOCK", "reasonCode": "COLOR_NOT_OFFERED"},
        "explain_public": "This artist specializes in black & grey work only.",
    }
    data.update(overrides)
    return PolicyRule.model_validate(data)


def _audit_rows(db_path):
    conn = sqlite3.connect(db_path)
    try:
        return conn.execute("SELECT entity_type, entity_id, action FROM audit_entries ORDER BY id").fetchall()
    finally:
        conn.close()


def test_create_and_read_back(db_path):
    created = rule_store.create_rule(_block_color(), changed_by="owner@studio.test", changed_by_role="owner")
    assert created.id is not None
    assert created.created_by == "owner@studio.test"
    assert created.action.reason_code == "COLOR_NOT_OFFERED"

    fetched = rule_store.get_rule(created.id)
    assert fetched == created
    assert rule_store.list_rules() == [created]

    history = AuditReader.list_for_entity("policy_rule", created.id)
    assert len(history) == 1
    assert history[0]["action"] == "created"
    assert history[0]["changed_by_role"] == "owner"
    assert history[0]["changes_diff"]["rule_key"] == "block_color"
    assert history[0]["changes_diff"]["decision"] == "BLOCK"


def test_ids_follow_creation_order():
    first = rule_store.create_rule(_block_color())
    second = rule_store.create_rule(_block_color(rule_key="block_coverup"))
    assert second.id > first.id


def test_duplicate_key_in_same_scope_conflicts(db_path):
    rule_store.create_rule(_block_color())
    with pytest.raises(RuleConflictError) as excinfo:
        rule_store.create_rule(_block_color(name="Duplicate"))
    assert excinfo.value.retryable is True
    assert excinfo.value.error_code == "RULE_KEY_CONFLICT"
    # Same key at another scope is fine.
    rule_store.create_rule(_block_color(scope="artist", scope_id="art-1"))
    assert len(_audit_rows(db_path)) == 2


def test_update_records_only_changed_fields():
    rule = rule_store.create_rule(_block_color())
    updated = rule_store.update_rule(
        rule.id,
        {"priority": 120, "explain_public": "Black and grey only."},
        changed_by="manager@studio.test",
        reason="clarify wording",
    )
    assert updated.priority == 120
    assert updated.condition == rule.condition

    history = AuditReader.list_for_entity("policy_rule", rule.id)
    assert [entry["action"] for entry in history] == ["created", "updated"]
    assert history[1]["changes_diff"] == {
        "explain_public": {
            "old": "This artist specializes in black & grey work only.",
            "new": "Black and grey only.",
        },
        "priority": {"old": 100, "new": 120},
    }
    assert history[1]["reason"] == "clarify wording"


def test_update_with_malformed_condition_is_rejected_and_writes_nothing(db_path):
    rule = rule_store.create_rule(_block_color())
    with pytest.raises(RuleValidationError):
        rule_store.update_rule(rule.id, {"condition": {"regex": [{"var": "a"}, "x"]}})
    assert rule_store.get_rule(rule.id).condition == rule.condition
    assert len(_audit_rows(db_path)) == 1


def test_allow_with_warning_requires_warning_key():
    rule = rule_store.create_rule(_block_color())
    with pytest.raises(RuleValidationError):
        rule_store.update_rule(rule.id, RuleUpdate(action={"decision": "ALLOW_WITH_WARNING", "reason_code": "X"}))


def test_enable_disable_and_delete_are_audited(db_path):
    rule = rule_store.create_rule(_block_color())
    assert rule_store.set_rule_enabled(rule.id, False).enabled is False
    assert rule_store.list_applicable_rules() == []
    assert rule_store.set_rule_enabled(rule.id, True).enabled is True

    deleted = rule_store.delete_rule(rule.id, changed_by="owner@studio.test", reason="no longer needed")
    assert deleted.rule_key == "block_color"
    assert rule_store.get_rule(rule.id) is None
    with pytest.raises(NotFoundError):
        rule_store.delete_rule(rule.id)

    actions = [row[2] for row in _audit_rows(db_path)]
    assert actions == ["created", "updated", "updated", "deleted"]
    history = AuditReader.list_for_entity("policy_rule", rule.id)
    assert history[1]["changes_diff"] == {"enabled": {"old": True, "new": False}}
    assert history[3]["changes_diff"]["name"] == "Block Color Work"


def test_audit_failure_rolls_back_the_mutation(db_path, monkeypatch):
    from bookinggate.audit.recorder import AuditRecorder

    def _fail(**kwargs):
        raise RuntimeError("audit storage unavailable")

    monkeypatch.setattr(AuditRecorder, "record_change", staticmethod(_fail))
    with pytest.raises(RuntimeError):
        rule_store.create_rule(_block_color())
    assert rule_store.list_rules() == []


def test_list_applicable_rules_filters_by_scope():
    rule_store.create_rule(_block_color())
    rule_store.create_rule(_block_color(rule_key="ws_rule", scope="workspace", scope_id="ws-1"))
    rule_store.create_rule(_block_color(rule_key="other_ws", scope="workspace", scope_id="ws-2"))
    rule_store.create_rule(_block_color(rule_key="artist_rule", scope="artist", scope_id="art-1"))

    keys = {rule.rule_key for rule in rule_store.list_applicable_rules(workspace_id="ws-1", artist_id="art-1")}
    assert keys == {"block_color", "ws_rule", "artist_rule"}
    keys = {rule.rule_key for rule in rule_store.list_applicable_rules()}
    assert keys == {"block_color"}


def test_malformed_stored_condition_is_quarantined_on_load(db_path):
    rule = rule_store.create_rule(_block_color())
    conn = sqlite3.connect(db_path)
    try:
        conn.execute("UPDATE policy_rules SET condition_json = ? WHERE id = ?", ('{"regex": ["a", "b"]}', rule.id))
        conn.commit()
    finally:
        conn.close()

    loaded = rule_store.get_rule(rule.id)
    assert loaded.quarantined
    assert "regex" in loaded.condition_error

    repaired = rule_store.update_rule(rule.id, {"condition": {"==": [{"var": "declared.wantsColor"}, True]}})
    assert not repaired.quarantined


def test_write_blocked_by_another_writer_is_a_retryable_conflict(db_path, monkeypatch):
    rule_store.list_rules()
    monkeypatch.setenv("BOOKINGGATE_DB_BUSY_TIMEOUT", "0.2")
    holder = sqlite3.connect(db_path, isolation_level=None)
    holder.execute("BEGIN IMMEDIATE")
    try:
        with pytest.raises(RuleConflictError) as excinfo:
            rule_store.create_rule(_block_color())
        assert excinfo.value.retryable is True
        assert excinfo.value.error_code == "RULE_KEY_CONFLICT"
    finally:
        holder.execute("ROLLBACK")
        holder.close()

    assert rule_store.list_rules() == []
    assert _audit_rows(db_path) == []
    # The lock is gone, so the same write now succeeds.
    assert rule_store.create_rule(_block_color()).rule_key == "block_color"
