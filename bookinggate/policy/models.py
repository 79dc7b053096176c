from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional, Tuple

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_serializer, field_validator, model_validator

from bookinggate.engine_core.expression import parse_expression, to_wire
from bookinggate.engine_core.types import Decision, Scope


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ScopeRef(BaseModel):
    """
    A governance level: global, or a specific workspace or artist.
    """

    scope: Scope = Scope.GLOBAL
    scope_id: Optional[str] = None

    @field_validator("scope_id", mode="before")
    @classmethod
    def _strip_scope_id(cls, value: Any) -> Optional[str]:
        if value is None:
            return None
        text = str(value).strip()
        return text or None

    @model_validator(mode="after")
    def _check_scope_id(self) -> "ScopeRef":
        if self.scope == Scope.GLOBAL:
            if self.scope_id is not None:
                raise ValueError("global scope does not take a scope_id")
        elif self.scope_id is None:
            raise ValueError(f"scope_id is required for {self.scope.value} scope")
        return self

    def storage_key(self) -> Tuple[str, str]:
        return self.scope.value, self.scope_id or ""

    def label(self) -> str:
        if self.scope == Scope.GLOBAL:
            return "global"
        return f"{self.scope.value}:{self.scope_id}"


class RuleAction(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    decision: Decision
    reason_code: str = Field(validation_alias=AliasChoices("reason_code", "reasonCode"), min_length=1)
    next_actions: List[Dict[str, Any]] = Field(
        default_factory=list,
        validation_alias=AliasChoices("next_actions", "nextActions"),
    )


class PolicyRule(BaseModel):
    """
    A declarative booking rule. Higher priority is evaluated first; ties go to
    the lower (earlier) id.
    """

    id: Optional[int] = None
    rule_key: str = Field(min_length=1)
    name: str = Field(min_length=1)
    description: str = ""
    scope: Scope = Scope.GLOBAL
    scope_id: Optional[str] = None
    priority: int = 0
    enabled: bool = True
    condition: Any = None
    # Set when a stored condition failed validation; the rule never matches.
    condition_error: Optional[str] = None
    action: RuleAction
    warning_key: Optional[str] = None
    explain_public: str = ""
    explain_internal: str = ""
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("condition", mode="before")
    @classmethod
    def _parse_condition(cls, value: Any) -> Any:
        if value is None:
            return None
        return parse_expression(value)

    @field_serializer("condition")
    def _serialize_condition(self, value: Any) -> Any:
        if value is None:
            return None
        return to_wire(value)

    @field_validator("scope_id", "warning_key", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Optional[str]:
        if value is None:
            return None
        text = str(value).strip()
        return text or None

    @model_validator(mode="after")
    def _check_rule(self) -> "PolicyRule":
        ScopeRef(scope=self.scope, scope_id=self.scope_id)
        if self.condition is None and not self.condition_error:
            raise ValueError("condition is required")
        if self.action.decision == Decision.ALLOW_WITH_WARNING and not self.warning_key:
            raise ValueError("warning_key is required when decision is ALLOW_WITH_WARNING")
        return self

    @property
    def scope_ref(self) -> ScopeRef:
        return ScopeRef(scope=self.scope, scope_id=self.scope_id)

    @property
    def quarantined(self) -> bool:
        return self.condition is None


class RuleUpdate(BaseModel):
    """Partial update of a rule; unset fields are left unchanged."""

    name: Optional[str] = None
    description: Optional[str] = None
    priority: Optional[int] = None
    enabled: Optional[bool] = None
    condition: Any = None
    action: Optional[RuleAction] = None
    warning_key: Optional[str] = None
    explain_public: Optional[str] = None
    explain_internal: Optional[str] = None

    @field_validator("condition", mode="before")
    @classmethod
    def _parse_condition(cls, value: Any) -> Any:
        if value is None:
            return None
        return parse_expression(value)


class WarningTemplate(BaseModel):
    key: str = Field(min_length=1)
    title: str
    client_message: str
    severity: Literal["info", "warning", "critical"] = "warning"
    artist_note: Optional[str] = None
    is_active: bool = True


class PolicySettings(BaseModel):
    """An immutable, numbered snapshot of deposit/cancellation/timing settings."""

    id: int
    scope: Scope
    scope_id: Optional[str] = None
    version: int
    is_active: bool
    settings: Dict[str, Any] = Field(default_factory=dict)
    summary_text: Optional[str] = None
    full_text: Optional[str] = None
    created_by: Optional[str] = None
    created_at: datetime = Field(default_factory=_utc_now)


class EffectivePolicy(BaseModel):
    """Settings governing a booking after scope fallback."""

    source: str  # artist / workspace / global / engine_default
    version: Optional[PolicySettings] = None
    settings: Dict[str, Any]
    summary_text: str


class DecisionScope(BaseModel):
    workspace_id: Optional[str] = None
    artist_id: Optional[str] = None

    @field_validator("workspace_id", "artist_id", mode="before")
    @classmethod
    def _strip_ids(cls, value: Any) -> Optional[str]:
        if value is None:
            return None
        text = str(value).strip()
        return text or None


class DecisionRequest(BaseModel):
    scope: DecisionScope = Field(default_factory=DecisionScope)
    context: Dict[str, Any] = Field(default_factory=dict)
