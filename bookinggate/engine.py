import logging
from typing import Any, Callable, Dict, List, Optional

from bookinggate.audit.recorder import AuditRecorder
from bookinggate.config import is_decision_recording_enabled
from bookinggate.engine_core.decision_model import ConfigurationWarning, DecisionResult
from bookinggate.engine_core.resolver import resolve
from bookinggate.engine_core.types import Decision
from bookinggate.observability.internal_metrics import incr
from bookinggate.policy import explain
from bookinggate.policy.models import DecisionRequest, PolicyRule, WarningTemplate
from bookinggate.policy.rules import list_applicable_rules
from bookinggate.policy.warnings import get_warning

logger = logging.getLogger(__name__)

ENGINE_FAILURE_REASON = "ENGINE_UNAVAILABLE"

RuleSource = Callable[..., List[PolicyRule]]
WarningSource = Callable[[str], Optional[WarningTemplate]]


class BookingPolicyEngine:
    """
    Request orchestration: load applicable rules, resolve, explain, record.

    ``decide`` never raises. If rules cannot be loaded the booking is routed to
    manual review rather than silently allowed.
    """

    def __init__(
        self,
        rule_source: Optional[RuleSource] = None,
        warning_source: Optional[WarningSource] = None,
        record_decisions: Optional[bool] = None,
    ):
        self.rule_source = rule_source or list_applicable_rules
        self.warning_source = warning_source or get_warning
        self.record_decisions = record_decisions

    def _should_record(self) -> bool:
        if self.record_decisions is not None:
            return bool(self.record_decisions)
        return is_decision_recording_enabled()

    def _safe_warning(self, key: str) -> Optional[WarningTemplate]:
        try:
            return self.warning_source(key)
        except Exception:
            logger.exception("Warning catalog lookup failed for `%s`", key)
            return None

    def _fail_safe(self, exc: Exception, stage: str) -> DecisionResult:
        return DecisionResult(
            decision=Decision.REVIEW,
            reason_code=ENGINE_FAILURE_REASON,
            explain_public="We need to review this request before it can be booked.",
            explain_internal=f"Policy rules could not be {stage}: {exc}",
            configuration_warnings=[
                ConfigurationWarning(
                    code=ENGINE_FAILURE_REASON,
                    message=f"Policy rules could not be {stage}; the request was routed to review.",
                    details={"error": str(exc)},
                )
            ],
        )

    def _resolve(self, context: Dict[str, Any], rules: List[PolicyRule], workspace_id, artist_id) -> DecisionResult:
        result = resolve(context, rules, workspace_id=workspace_id, artist_id=artist_id)
        winner = next(
            (
                rule
                for rule in rules
                if rule.rule_key == result.matched_rule_key and rule.id == result.matched_rule_id
            ),
            None,
        )
        return explain.apply(result, explain.build(result, winner, self._safe_warning))

    def decide(self, request: DecisionRequest) -> DecisionResult:
        workspace_id = request.scope.workspace_id
        artist_id = request.scope.artist_id
        context: Dict[str, Any] = request.context

        try:
            rules = self.rule_source(workspace_id=workspace_id, artist_id=artist_id)
        except Exception as exc:
            logger.exception("Failed to load rules for workspace=%s artist=%s", workspace_id, artist_id)
            incr("decision_rule_load_failures")
            result = self._fail_safe(exc, "loaded")
        else:
            try:
                result = self._resolve(context, rules, workspace_id, artist_id)
            except Exception as exc:
                logger.exception("Failed to resolve decision for workspace=%s artist=%s", workspace_id, artist_id)
                incr("decision_resolution_failures")
                result = self._fail_safe(exc, "evaluated")

        incr("decisions_total")
        incr(f"decisions_{result.decision.value.lower()}")
        if result.configuration_warnings:
            incr("decision_configuration_warnings", len(result.configuration_warnings))

        # Decisions carrying configuration warnings are always recorded.
        if self._should_record() or result.configuration_warnings:
            try:
                AuditRecorder.record_decision(
                    result,
                    workspace_id=workspace_id,
                    artist_id=artist_id,
                    context=context,
                )
            except Exception:
                logger.exception("Failed to record decision %s", result.evaluation_id)
                incr("decision_record_failures")
        return result
