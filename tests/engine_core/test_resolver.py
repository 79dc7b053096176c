import random
from datetime import date, datetime, timezone

from bookinggate.engine_core.resolver import order_candidates, resolve
from bookinggate.engine_core.types import Decision, Literal, NaryOp, PathRef
from bookinggate.policy.models import PolicyRule


def _rule(rule_id, key, condition, decision="BLOCK", reason=None, priority=50, scope="global", scope_id=None, **extra):
    data = {
        "id": rule_id,
        "rule_key": key,
        "name": key.replace("_", " ").title(),
        "scope": scope,
        "scope_id": scope_id,
        "priority": priority,
        "condition": condition,
        "action": {"decision": decision, "reason_code": reason or key.upper()},
    }
    if decision == "ALLOW_WITH_WARNING":
        data["warning_key"] = extra.pop("warning_key", "FIRST_TATTOO")
    data.update(extra)
    return PolicyRule.model_validate(data)


BLOCK_COLOR = _rule(1, "block_color", {"==": [{"var": "declared.wantsColor"}, True]}, reason="COLOR_NOT_OFFERED", priority=100)
WARN_FIRST = _rule(
    2,
    "warn_first_tattoo",
    {"==": [{"var": "declared.firstTattoo"}, True]},
    decision="ALLOW_WITH_WARNING",
    reason="FIRST_TATTOO",
    priority=10,
)


def test_higher_priority_rule_wins():
    context = {"declared": {"wantsColor": True, "firstTattoo": True}}
    result = resolve(context, [WARN_FIRST, BLOCK_COLOR])
    assert result.decision == Decision.BLOCK
    assert result.reason_code == "COLOR_NOT_OFFERED"
    assert result.matched_rule_id == 1
    # The lower-priority rule is never evaluated once a match is found.
    assert [item.rule_key for item in result.evaluated_rules] == ["block_color"]


def test_falls_through_to_next_matching_rule():
    context = {"declared": {"wantsColor": False, "firstTattoo": True}}
    result = resolve(context, [BLOCK_COLOR, WARN_FIRST])
    assert result.decision == Decision.ALLOW_WITH_WARNING
    assert result.reason_code == "FIRST_TATTOO"
    assert result.matched_rule_id == 2
    assert [(item.rule_key, item.matched) for item in result.evaluated_rules] == [
        ("block_color", False),
        ("warn_first_tattoo", True),
    ]
    assert "declared.firstTattoo" in result.evaluated_rules[-1].match_notes


def test_no_rules_or_no_match_allows():
    empty = resolve({"anything": 1}, [])
    assert empty.decision == Decision.ALLOW
    assert empty.reason_code == "NO_RULE_MATCHED"
    assert empty.matched_rule_id is None

    unmatched = resolve({"declared": {}}, [BLOCK_COLOR, WARN_FIRST])
    assert unmatched.decision == Decision.ALLOW
    assert unmatched.reason_code == "NO_RULE_MATCHED"
    assert len(unmatched.evaluated_rules) == 2


def test_priority_ties_go_to_the_earlier_rule():
    always = {"==": [1, 1]}
    first = _rule(5, "review_first", always, decision="REVIEW", priority=20)
    second = _rule(9, "block_second", always, decision="BLOCK", priority=20)
    result = resolve({}, [second, first])
    assert result.matched_rule_id == 5
    assert result.decision == Decision.REVIEW


def test_result_does_not_depend_on_input_order():
    rules = [
        _rule(i, f"rule_{i}", {">": [{"var": "score"}, i * 10]}, priority=random.Random(i).randint(0, 5))
        for i in range(1, 9)
    ]
    context = {"score": 45}
    baseline = resolve(context, rules)
    for seed in range(10):
        shuffled = list(rules)
        random.Random(seed).shuffle(shuffled)
        result = resolve(context, shuffled)
        assert (result.decision, result.reason_code, result.matched_rule_id) == (
            baseline.decision,
            baseline.reason_code,
            baseline.matched_rule_id,
        )


def test_disabled_rules_are_ignored():
    disabled = _rule(1, "block_color", {"==": [{"var": "declared.wantsColor"}, True]}, enabled=False)
    result = resolve({"declared": {"wantsColor": True}}, [disabled])
    assert result.decision == Decision.ALLOW
    assert result.evaluated_rules == []


def test_more_specific_scope_is_evaluated_first():
    always = {"==": [1, 1]}
    global_block = _rule(1, "global_block", always, decision="BLOCK", priority=1000)
    artist_allow = _rule(2, "artist_allow", always, decision="ALLOW", priority=0, scope="artist", scope_id="art-1")
    workspace_review = _rule(3, "ws_review", always, decision="REVIEW", priority=500, scope="workspace", scope_id="ws-1")

    result = resolve({}, [global_block, artist_allow, workspace_review], workspace_id="ws-1", artist_id="art-1")
    assert result.matched_rule_key == "artist_allow"

    result = resolve({}, [global_block, artist_allow, workspace_review], workspace_id="ws-1", artist_id="art-2")
    assert result.matched_rule_key == "ws_review"

    result = resolve({}, [global_block, artist_allow, workspace_review])
    assert result.matched_rule_key == "global_block"


def test_order_candidates_filters_foreign_scopes():
    always = {"==": [1, 1]}
    rules = [
        _rule(1, "g", always),
        _rule(2, "other_ws", always, scope="workspace", scope_id="ws-9"),
        _rule(3, "mine", always, scope="workspace", scope_id="ws-1"),
    ]
    ordered = order_candidates(rules, workspace_id="ws-1", artist_id=None)
    assert [rule.rule_key for rule in ordered] == ["mine", "g"]


def test_quarantined_rule_is_skipped_with_configuration_warning():
    broken = PolicyRule(
        id=1,
        rule_key="broken",
        name="Broken",
        priority=100,
        condition=None,
        condition_error="unknown operator `regex` (at $)",
        action={"decision": "BLOCK", "reason_code": "BROKEN"},
    )
    result = resolve({"declared": {"firstTattoo": True}}, [broken, WARN_FIRST])
    assert result.decision == Decision.ALLOW_WITH_WARNING
    assert result.evaluated_rules[0].skipped == "condition_malformed"
    assert [w.code for w in result.configuration_warnings] == ["CONDITION_MALFORMED"]
    assert result.configuration_warnings[0].rule_key == "broken"


def test_next_actions_and_timestamp_come_through():
    when = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
    rule = _rule(
        1,
        "review_hands_face",
        {"in": [{"var": "inferred.placement"}, ["hands", "face", "neck"]]},
        decision="REVIEW",
        reason="VISIBLE_PLACEMENT_REVIEW",
    )
    rule = rule.model_copy(
        update={"action": rule.action.model_copy(update={"next_actions": [{"type": "request_photos"}]})}
    )
    result = resolve({"inferred": {"placement": "neck"}}, [rule], evaluated_at=when)
    assert result.next_actions == [{"type": "request_photos"}]
    assert result.evaluated_at == when
    assert result.evaluation_id.startswith("eval_")


def test_match_notes_tolerate_non_json_values():
    rule = _rule(1, "review_declared", {"var": "declared"}, decision="REVIEW")
    context = {"declared": {"firstTattoo": True, "preferredDate": date(2026, 10, 20)}}
    result = resolve(context, [rule])
    assert result.decision == Decision.REVIEW
    assert "datetime.date(2026, 10, 20)" in result.evaluated_rules[0].match_notes


def test_match_notes_tolerate_mixed_and_unencodable_keys():
    rule = _rule(1, "review_inferred", {"var": "inferred"}, decision="REVIEW")
    mixed = resolve({"inferred": {1: "a", "b": 2}}, [rule])
    assert mixed.decision == Decision.REVIEW
    assert mixed.evaluated_rules[0].match_notes.startswith("Condition matched on ")

    tuple_keys = resolve({"inferred": {("hand", 1): "left"}}, [rule])
    assert tuple_keys.decision == Decision.REVIEW
    assert "('hand', 1)" in tuple_keys.evaluated_rules[0].match_notes


def test_tuple_and_set_haystacks_resolve():
    rule = _rule(
        1,
        "review_small_realism",
        {"in": ["micro_realism", {"var": "stylesDetected.tags"}]},
        decision="REVIEW",
    )
    as_tuple = resolve({"stylesDetected": {"tags": ("micro_realism", "blackwork")}}, [rule])
    assert as_tuple.decision == Decision.REVIEW
    # Sets are not a supported haystack; the rule simply does not match.
    as_set = resolve({"stylesDetected": {"tags": {"micro_realism"}}}, [rule])
    assert as_set.decision == Decision.ALLOW


def test_unknown_operator_built_in_code_is_reported_not_raised():
    between = _rule(
        1,
        "between_sizes",
        NaryOp("between", (PathRef("inferred.sizeInchesEstimate"), Literal(1), Literal(5))),
        priority=100,
    )
    result = resolve({"inferred": {"sizeInchesEstimate": 3}}, [between, BLOCK_COLOR])
    assert result.decision == Decision.ALLOW
    assert result.evaluated_rules[0].skipped == "condition_failed"
    assert [w.code for w in result.configuration_warnings] == ["CONDITION_FAILED"]
    assert result.configuration_warnings[0].rule_key == "between_sizes"
