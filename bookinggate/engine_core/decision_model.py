from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
import uuid

from pydantic import BaseModel, Field

from bookinggate.engine_core.types import Decision, Scope


class WarningNotice(BaseModel):
    key: Optional[str] = None
    title: str
    client_message: str
    severity: str = "warning"


class ConfigurationWarning(BaseModel):
    """A rule or catalog inconsistency found while deciding. Never fatal."""

    code: str  # CONDITION_MALFORMED / CONDITION_FAILED / WARNING_TEMPLATE_MISSING / ...
    message: str
    rule_id: Optional[int] = None
    rule_key: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)


class EvaluatedRule(BaseModel):
    rule_id: Optional[int]
    rule_key: str
    name: str
    scope: Scope
    scope_id: Optional[str] = None
    priority: int
    matched: bool
    skipped: Optional[str] = None  # why the rule could not be evaluated
    match_notes: Optional[str] = None


class DecisionResult(BaseModel):
    evaluation_id: str = Field(default_factory=lambda: f"eval_{uuid.uuid4().hex}")
    decision: Decision
    reason_code: str
    matched_rule_id: Optional[int] = None
    matched_rule_key: Optional[str] = None
    explain_public: str = ""
    explain_internal: str = ""
    warnings: List[WarningNotice] = Field(default_factory=list)
    next_actions: List[Dict[str, Any]] = Field(default_factory=list)
    evaluated_rules: List[EvaluatedRule] = Field(default_factory=list)
    configuration_warnings: List[ConfigurationWarning] = Field(default_factory=list)
    evaluated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
