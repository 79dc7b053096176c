from bookinggate.engine_core.resolver import resolve
from bookinggate.engine_core.types import Decision
from bookinggate.policy import explain
from bookinggate.policy.models import PolicyRule, WarningTemplate


FIRST_TATTOO = WarningTemplate(
    key="FIRST_TATTOO",
    title="First tattoo",
    client_message="Plan for a longer consultation and eat before your session.",
    severity="info",
)


def _warn_rule(warning_key="FIRST_TATTOO"):
    return PolicyRule(
        id=7,
        rule_key="warn_first_tattoo",
        name="Warn First-Time Clients",
        condition={"==": [{"var": "declared.firstTattoo"}, True]},
        action={"decision": "ALLOW_WITH_WARNING", "reason_code": "FIRST_TATTOO"},
        warning_key=warning_key,
        explain_public="First tattoo guidance will be provided.",
        explain_internal="Template: warn_first_tattoo",
    )


def _block_rule():
    return PolicyRule(
        id=3,
        rule_key="block_color",
        name="Block Color Work",
        condition={"==": [{"var": "declared.wantsColor"}, True]},
        action={"decision": "BLOCK", "reason_code": "COLOR_NOT_OFFERED"},
        explain_public="This artist specializes in black & grey work only.",
        explain_internal="Client asked for color.",
    )


def test_texts_are_copied_verbatim():
    rule = _block_rule()
    result = resolve({"declared": {"wantsColor": True}}, [rule])
    built = explain.build(result, rule, lambda key: None)
    assert built.explain_public == "This artist specializes in black & grey work only."
    assert built.explain_internal == "Client asked for color."
    assert built.warnings == []
    assert built.configuration_warnings == []


def test_warning_template_is_resolved_for_allow_with_warning():
    rule = _warn_rule()
    result = resolve({"declared": {"firstTattoo": True}}, [rule])
    built = explain.build(result, rule, {"FIRST_TATTOO": FIRST_TATTOO}.get)
    assert [w.key for w in built.warnings] == ["FIRST_TATTOO"]
    assert built.warnings[0].client_message.startswith("Plan for a longer consultation")

    applied = explain.apply(result, built)
    assert applied.decision == Decision.ALLOW_WITH_WARNING
    assert applied.explain_public == "First tattoo guidance will be provided."
    assert applied.warnings[0].title == "First tattoo"


def test_missing_template_degrades_to_generic_warning():
    rule = _warn_rule(warning_key="NOT_IN_CATALOG")
    result = resolve({"declared": {"firstTattoo": True}}, [rule])
    built = explain.build(result, rule, lambda key: None)
    assert built.warnings == [explain.GENERIC_WARNING]
    assert [w.code for w in built.configuration_warnings] == ["WARNING_TEMPLATE_MISSING"]
    assert built.configuration_warnings[0].details == {"warning_key": "NOT_IN_CATALOG"}


def test_inactive_template_degrades_to_generic_warning():
    rule = _warn_rule()
    inactive = FIRST_TATTOO.model_copy(update={"is_active": False})
    result = resolve({"declared": {"firstTattoo": True}}, [rule])
    applied = explain.apply(result, explain.build(result, rule, lambda key: inactive))
    assert applied.warnings[0].key == "GENERIC_WARNING"
    assert [w.code for w in applied.configuration_warnings] == ["WARNING_TEMPLATE_INACTIVE"]


def test_no_rule_means_empty_explanation():
    result = resolve({}, [])
    built = explain.build(result, None, lambda key: None)
    assert built.explain_public == ""
    assert built.warnings == []
