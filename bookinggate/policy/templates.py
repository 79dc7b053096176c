"""
Starter rules for common studio restrictions.

Each template expands into a rule at priority 50, global unless a scope is
given. Rule keys carry the template id, so expanding a template twice at the
same scope needs an explicit key.
"""
from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel

from bookinggate.engine_core.types import Decision, Scope
from bookinggate.errors import NotFoundError
from bookinggate.policy.models import PolicyRule, ScopeRef
from bookinggate.policy.rules import create_rule

TEMPLATE_PRIORITY = 50


class RuleTemplate(BaseModel):
    id: str
    name: str
    category: str
    condition: Dict[str, Any]
    decision: Decision
    reason_code: str
    explain: str
    warning_key: Optional[str] = None


RULE_TEMPLATES: List[RuleTemplate] = [
    RuleTemplate(
        id="block_color",
        name="Block Color Work",
        category="style",
        condition={"==": [{"var": "declared.wantsColor"}, True]},
        decision=Decision.BLOCK,
        reason_code="COLOR_NOT_OFFERED",
        explain="This artist specializes in black & grey work only.",
    ),
    RuleTemplate(
        id="block_coverup",
        name="Block Cover-ups",
        category="work_type",
        condition={"==": [{"var": "workType.value"}, "coverup"]},
        decision=Decision.BLOCK,
        reason_code="COVERUPS_NOT_OFFERED",
        explain="Cover-up projects are not currently accepted.",
    ),
    RuleTemplate(
        id="block_touchup",
        name="Block Touch-ups",
        category="work_type",
        condition={"==": [{"var": "workType.value"}, "touchup"]},
        decision=Decision.BLOCK,
        reason_code="TOUCHUPS_NOT_OFFERED",
        explain="Touch-up projects are not currently accepted.",
    ),
    RuleTemplate(
        id="review_small_realism",
        name="Review Small Micro-Realism",
        category="feasibility",
        condition={
            "and": [
                {"in": ["micro_realism", {"var": "stylesDetected.tags"}]},
                {"<": [{"var": "inferred.sizeInchesEstimate"}, 3]},
            ]
        },
        decision=Decision.REVIEW,
        reason_code="SMALL_REALISM_REVIEW",
        explain="Very small micro-realism pieces require review to ensure detail viability.",
    ),
    RuleTemplate(
        id="warn_first_tattoo",
        name="Warn First-Time Clients",
        category="client",
        condition={"==": [{"var": "declared.firstTattoo"}, True]},
        decision=Decision.ALLOW_WITH_WARNING,
        reason_code="FIRST_TATTOO",
        explain="First tattoo guidance will be provided.",
        warning_key="FIRST_TATTOO",
    ),
    RuleTemplate(
        id="review_hands_face",
        name="Review Hands/Face/Neck",
        category="placement",
        condition={"in": [{"var": "inferred.placement"}, ["hands", "hand", "fingers", "face", "neck"]]},
        decision=Decision.REVIEW,
        reason_code="VISIBLE_PLACEMENT_REVIEW",
        explain="Highly visible placements require additional consultation.",
    ),
    RuleTemplate(
        id="block_high_risk",
        name="Block High-Risk Clients",
        category="client",
        condition={">": [{"var": "clientRisk.riskScore"}, 70]},
        decision=Decision.BLOCK,
        reason_code="HIGH_RISK_CLIENT",
        explain="This booking cannot be processed at this time.",
    ),
]

_TEMPLATES_BY_ID = {template.id: template for template in RULE_TEMPLATES}


def get_template(template_id: str) -> RuleTemplate:
    template = _TEMPLATES_BY_ID.get(str(template_id or "").strip())
    if template is None:
        raise NotFoundError(f"unknown rule template `{template_id}`", details={"template_id": template_id})
    return template


def rule_from_template(
    template_id: str,
    *,
    scope: Optional[ScopeRef] = None,
    rule_key: Optional[str] = None,
    priority: int = TEMPLATE_PRIORITY,
) -> PolicyRule:
    template = get_template(template_id)
    target = scope or ScopeRef(scope=Scope.GLOBAL)
    return PolicyRule(
        rule_key=rule_key or f"rule_{template.id}",
        name=template.name,
        description=f"Auto-generated from {template.name} template",
        scope=target.scope,
        scope_id=target.scope_id,
        priority=priority,
        condition=template.condition,
        action={"decision": template.decision, "reason_code": template.reason_code},
        warning_key=template.warning_key,
        explain_public=template.explain,
        explain_internal=f"Template: {template.id}",
    )


def create_rule_from_template(
    template_id: str,
    *,
    scope: Optional[ScopeRef] = None,
    rule_key: Optional[str] = None,
    priority: int = TEMPLATE_PRIORITY,
    changed_by: Optional[str] = None,
    changed_by_role: Optional[str] = None,
) -> PolicyRule:
    rule = rule_from_template(template_id, scope=scope, rule_key=rule_key, priority=priority)
    return create_rule(
        rule,
        changed_by=changed_by,
        changed_by_role=changed_by_role,
        reason=f"created from template {template_id}",
    )
