from __future__ import annotations

import logging
from typing import Callable, List, Optional

from pydantic import BaseModel, Field

from bookinggate.engine_core.decision_model import ConfigurationWarning, DecisionResult, WarningNotice
from bookinggate.engine_core.types import Decision
from bookinggate.policy.models import PolicyRule, WarningTemplate

logger = logging.getLogger(__name__)

GENERIC_WARNING = WarningNotice(
    key="GENERIC_WARNING",
    title="Please review before booking",
    client_message="Your request needs a little extra attention. The artist will follow up with details.",
    severity="warning",
)

WarningLookup = Callable[[str], Optional[WarningTemplate]]


class Explanation(BaseModel):
    explain_public: str = ""
    explain_internal: str = ""
    warnings: List[WarningNotice] = Field(default_factory=list)
    configuration_warnings: List[ConfigurationWarning] = Field(default_factory=list)


def _notice(template: WarningTemplate) -> WarningNotice:
    return WarningNotice(
        key=template.key,
        title=template.title,
        client_message=template.client_message,
        severity=template.severity,
    )


def build(result: DecisionResult, rule: Optional[PolicyRule], get_warning: WarningLookup) -> Explanation:
    """
    Compose client-facing and artist-facing texts for a resolved decision.
    Rule texts are copied verbatim. A missing or inactive warning template
    degrades to the generic warning and is reported as a configuration warning.
    """
    if rule is None:
        return Explanation()

    explanation = Explanation(explain_public=rule.explain_public, explain_internal=rule.explain_internal)
    if result.decision != Decision.ALLOW_WITH_WARNING:
        return explanation

    key = rule.warning_key or ""
    template = get_warning(key) if key else None
    if template is not None and template.is_active:
        explanation.warnings.append(_notice(template))
        return explanation

    state = "inactive" if template is not None else "missing"
    code = f"WARNING_TEMPLATE_{state.upper()}"
    logger.warning("Rule %s (%s) references %s warning template `%s`", rule.id, rule.rule_key, state, key)
    explanation.warnings.append(GENERIC_WARNING)
    explanation.configuration_warnings.append(
        ConfigurationWarning(
            code=code,
            message=f"Warning template `{key}` is {state}; the generic warning was shown.",
            rule_id=rule.id,
            rule_key=rule.rule_key,
            details={"warning_key": key},
        )
    )
    return explanation


def apply(result: DecisionResult, explanation: Explanation) -> DecisionResult:
    return result.model_copy(
        update={
            "explain_public": explanation.explain_public,
            "explain_internal": explanation.explain_internal,
            "warnings": list(explanation.warnings),
            "configuration_warnings": [*result.configuration_warnings, *explanation.configuration_warnings],
        }
    )
