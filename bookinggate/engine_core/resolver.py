from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, List, Optional, Sequence, Tuple

from bookinggate.engine_core.decision_model import ConfigurationWarning, DecisionResult, EvaluatedRule
from bookinggate.engine_core.evaluate import evaluate, resolve_path
from bookinggate.engine_core.expression import referenced_paths
from bookinggate.engine_core.types import ABSENT, NO_RULE_MATCHED, SCOPE_RANK, Decision, Scope
from bookinggate.policy.models import PolicyRule

logger = logging.getLogger(__name__)


def rule_applies(rule: PolicyRule, *, workspace_id: Optional[str], artist_id: Optional[str]) -> bool:
    if rule.scope == Scope.GLOBAL:
        return True
    if rule.scope == Scope.WORKSPACE:
        return bool(workspace_id) and rule.scope_id == str(workspace_id)
    if rule.scope == Scope.ARTIST:
        return bool(artist_id) and rule.scope_id == str(artist_id)
    return False


def _precedence_key(rule: PolicyRule) -> Tuple[int, int, int, str]:
    # Rules without an id (not yet persisted) sort after persisted ones.
    rule_id = rule.id if rule.id is not None else 2**63
    return (SCOPE_RANK[rule.scope], -int(rule.priority), rule_id, rule.rule_key)


def order_candidates(
    rules: Sequence[PolicyRule],
    *,
    workspace_id: Optional[str],
    artist_id: Optional[str],
) -> List[PolicyRule]:
    """
    Enabled rules that apply to the request, in evaluation order:
    artist scope, then workspace, then global; priority descending; id ascending.
    """
    applicable = [
        rule
        for rule in rules
        if rule.enabled and rule_applies(rule, workspace_id=workspace_id, artist_id=artist_id)
    ]
    return sorted(applicable, key=_precedence_key)


def _trace(rule: PolicyRule, *, matched: bool, skipped: Optional[str] = None, notes: Optional[str] = None) -> EvaluatedRule:
    return EvaluatedRule(
        rule_id=rule.id,
        rule_key=rule.rule_key,
        name=rule.name,
        scope=rule.scope,
        scope_id=rule.scope_id,
        priority=rule.priority,
        matched=matched,
        skipped=skipped,
        match_notes=notes,
    )


def _match_notes(rule: PolicyRule, context: Any) -> str:
    observed = {}
    for path in referenced_paths(rule.condition):
        value = resolve_path(context, path.split("."))
        observed[path] = None if value is ABSENT else value
    try:
        rendered = json.dumps(observed, default=repr, ensure_ascii=False, separators=(",", ":"))
    except (TypeError, ValueError):
        # Keys json cannot encode, or circular values.
        rendered = repr(observed)
    return f"Condition matched on {rendered}"


def resolve(
    context: Any,
    candidate_rules: Sequence[PolicyRule],
    *,
    workspace_id: Optional[str] = None,
    artist_id: Optional[str] = None,
    evaluated_at: Optional[datetime] = None,
) -> DecisionResult:
    """
    First-match-wins resolution over prioritized rules.

    Never raises: quarantined or failing conditions are skipped and reported as
    configuration warnings. With no match the decision is ALLOW / NO_RULE_MATCHED.
    Explanation texts and warnings are attached afterwards by the explanation builder.
    """
    ordered = order_candidates(candidate_rules, workspace_id=workspace_id, artist_id=artist_id)
    evaluated: List[EvaluatedRule] = []
    config_warnings: List[ConfigurationWarning] = []
    winner: Optional[PolicyRule] = None

    for rule in ordered:
        if rule.quarantined:
            logger.warning("Skipping quarantined rule %s (%s): %s", rule.id, rule.rule_key, rule.condition_error)
            evaluated.append(_trace(rule, matched=False, skipped="condition_malformed"))
            config_warnings.append(
                ConfigurationWarning(
                    code="CONDITION_MALFORMED",
                    message=f"Rule `{rule.rule_key}` has a malformed condition and was skipped.",
                    rule_id=rule.id,
                    rule_key=rule.rule_key,
                    details={"error": rule.condition_error or ""},
                )
            )
            continue
        try:
            matched = evaluate(rule.condition, context)
        except Exception as exc:
            logger.exception("Condition evaluation failed for rule %s (%s)", rule.id, rule.rule_key)
            evaluated.append(_trace(rule, matched=False, skipped="condition_failed"))
            config_warnings.append(
                ConfigurationWarning(
                    code="CONDITION_FAILED",
                    message=f"Rule `{rule.rule_key}` could not be evaluated and was skipped.",
                    rule_id=rule.id,
                    rule_key=rule.rule_key,
                    details={"error": str(exc)},
                )
            )
            continue
        if matched:
            evaluated.append(_trace(rule, matched=True, notes=_match_notes(rule, context)))
            winner = rule
            break
        evaluated.append(_trace(rule, matched=False))

    when = evaluated_at or datetime.now(timezone.utc)
    if winner is None:
        return DecisionResult(
            decision=Decision.ALLOW,
            reason_code=NO_RULE_MATCHED,
            evaluated_rules=evaluated,
            configuration_warnings=config_warnings,
            evaluated_at=when,
        )

    return DecisionResult(
        decision=winner.action.decision,
        reason_code=winner.action.reason_code,
        matched_rule_id=winner.id,
        matched_rule_key=winner.rule_key,
        next_actions=[dict(item) for item in winner.action.next_actions],
        evaluated_rules=evaluated,
        configuration_warnings=config_warnings,
        evaluated_at=when,
    )
