import json
import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from dotenv import load_dotenv
from fastapi import FastAPI, Header, HTTPException
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, Field, ValidationError

from bookinggate.audit.reader import AuditReader
from bookinggate.config import AUDIT_PAGE_DEFAULT
from bookinggate.engine import BookingPolicyEngine
from bookinggate.engine_core.types import Scope
from bookinggate.errors import (
    BookingGateError,
    ConflictError,
    NotFoundError,
    PolicyIntegrityError,
)
from bookinggate.observability.internal_metrics import incr, snapshot as metrics_snapshot
from bookinggate.policy import rules as rule_store
from bookinggate.policy import versions as version_store
from bookinggate.policy.models import DecisionRequest, PolicyRule, RuleUpdate, ScopeRef, WarningTemplate
from bookinggate.policy.templates import RULE_TEMPLATES, create_rule_from_template
from bookinggate.policy.transfer import export_rules, import_rules
from bookinggate.policy.warnings import get_warning, list_warnings, upsert_warning
from bookinggate.storage.schema import SCHEMA_VERSION, applied_schema_version

# Load env vars
load_dotenv()


class JsonLogFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, separators=(",", ":"), ensure_ascii=False)


def configure_logging() -> None:
    log_level = (os.getenv("BOOKINGGATE_LOG_LEVEL", "INFO") or "INFO").upper()
    level_value = getattr(logging, log_level, logging.INFO)
    log_format = (os.getenv("BOOKINGGATE_LOG_FORMAT", "json") or "json").strip().lower()

    root = logging.getLogger()
    root.setLevel(level_value)
    formatter: logging.Formatter
    if log_format == "json":
        formatter = JsonLogFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s")

    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(formatter)
        root.addHandler(handler)
        return

    for handler in root.handlers:
        handler.setFormatter(formatter)


configure_logging()


app = FastAPI(
    title="BookingGate Policy API",
    docs_url=None,
    redoc_url=None,
    openapi_url=None,
)
logger = logging.getLogger(__name__)
engine = BookingPolicyEngine()


class TemplateRuleRequest(BaseModel):
    template_id: str
    scope: Scope = Scope.GLOBAL
    scope_id: Optional[str] = None
    rule_key: Optional[str] = None
    priority: int = 50


class RuleImportRequest(BaseModel):
    content: str = Field(min_length=1)
    format: str = "yaml"


class PolicyVersionRequest(BaseModel):
    scope_id: Optional[str] = None
    settings: Dict[str, Any] = Field(default_factory=dict)
    summary_text: Optional[str] = None
    full_text: Optional[str] = None
    expected_version: Optional[int] = None
    reason: Optional[str] = None


class WarningTemplateRequest(BaseModel):
    title: str = Field(min_length=1)
    client_message: str = Field(min_length=1)
    severity: str = "warning"
    artist_note: Optional[str] = None
    is_active: bool = True
    reason: Optional[str] = None


def _http_error(exc: BookingGateError) -> HTTPException:
    if isinstance(exc, NotFoundError):
        status_code = 404
    elif isinstance(exc, ConflictError):
        status_code = 409
    elif isinstance(exc, PolicyIntegrityError):
        logger.error("Policy integrity violation surfaced to API: %s", exc)
        status_code = 500
    else:
        status_code = 422
    incr(f"api_errors_{status_code}")
    return HTTPException(status_code=status_code, detail=exc.to_dict())


def _scope_ref(scope: Scope, scope_id: Optional[str]) -> ScopeRef:
    try:
        return ScopeRef(scope=scope, scope_id=scope_id)
    except ValidationError as exc:
        raise HTTPException(
            status_code=422,
            detail={"error_code": "SCOPE_INVALID", "message": str(exc)},
        ) from exc


def _rule_payload(rule: PolicyRule) -> Dict[str, Any]:
    payload = rule.model_dump(mode="json")
    payload["quarantined"] = rule.quarantined
    return payload


@app.on_event("startup")
def init_storage_on_startup():
    from bookinggate.storage.schema import init_db

    init_db()


def _readiness_payload() -> tuple:
    payload = {
        "status": "ok",
        "service": "BookingGate API",
        "storage": "ok",
        "migrations": {"status": "ok", "expected": SCHEMA_VERSION, "current": None},
    }
    try:
        from bookinggate.storage.schema import init_db

        init_db()
        current = applied_schema_version()
        payload["migrations"]["current"] = current
        if str(current) != str(SCHEMA_VERSION):
            payload["status"] = "error"
            payload["migrations"]["status"] = "outdated"
            return payload, 503
    except Exception:
        logger.exception("Readiness check failed")
        payload["status"] = "error"
        payload["storage"] = "error"
        payload["migrations"]["status"] = "error"
        return payload, 503
    return payload, 200


@app.get("/healthz")
def healthz():
    return {"status": "ok", "service": "BookingGate API"}


@app.get("/readyz")
def readyz():
    payload, status_code = _readiness_payload()
    if status_code != 200:
        raise HTTPException(status_code=status_code, detail=payload)
    return payload


def _prometheus_label(value: Any) -> str:
    return str(value).replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


@app.get("/metrics", response_class=PlainTextResponse)
def metrics():
    snap = metrics_snapshot()
    lines = [
        "# HELP bookinggate_metric_total BookingGate internal counters",
        "# TYPE bookinggate_metric_total counter",
    ]
    for metric_name in sorted(snap.keys()):
        lines.append(
            f'bookinggate_metric_total{{metric="{_prometheus_label(metric_name)}"}} {int(snap[metric_name])}'
        )
    return PlainTextResponse("\n".join(lines) + "\n", media_type="text/plain; version=0.0.4; charset=utf-8")


# Decisions

@app.post("/decisions")
def decide(payload: DecisionRequest):
    result = engine.decide(payload)
    logger.info(
        "Decision %s: %s (%s) workspace=%s artist=%s",
        result.evaluation_id,
        result.decision.value,
        result.reason_code,
        payload.scope.workspace_id,
        payload.scope.artist_id,
    )
    return result.model_dump(mode="json")


@app.get("/decisions/{evaluation_id}")
def get_decision(evaluation_id: str):
    record = AuditReader.get_decision(evaluation_id)
    if not record:
        raise HTTPException(status_code=404, detail={"error_code": "NOT_FOUND", "message": "decision not found"})
    return record


# Rules. Static paths are registered before /rules/{rule_id}.

@app.get("/rules/templates")
def list_rule_templates():
    return {"templates": [template.model_dump(mode="json") for template in RULE_TEMPLATES]}


@app.post("/rules/from-template", status_code=201)
def create_rule_from_template_endpoint(
    payload: TemplateRuleRequest,
    x_actor_id: Optional[str] = Header(None),
    x_actor_role: Optional[str] = Header(None),
):
    scope = _scope_ref(payload.scope, payload.scope_id)
    try:
        rule = create_rule_from_template(
            payload.template_id,
            scope=scope,
            rule_key=payload.rule_key,
            priority=payload.priority,
            changed_by=x_actor_id,
            changed_by_role=x_actor_role,
        )
    except BookingGateError as exc:
        raise _http_error(exc) from exc
    return _rule_payload(rule)


@app.get("/rules/export", response_class=PlainTextResponse)
def export_rules_endpoint(
    format: str = "yaml",
    scope: Optional[Scope] = None,
    scope_id: Optional[str] = None,
):
    ref = _scope_ref(scope, scope_id) if scope else None
    try:
        content = export_rules(scope=ref, fmt=format)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail={"error_code": "FORMAT_INVALID", "message": str(exc)}) from exc
    media_type = "application/json" if format.lower() == "json" else "application/x-yaml"
    return PlainTextResponse(content, media_type=media_type)


@app.post("/rules/import", status_code=201)
def import_rules_endpoint(
    payload: RuleImportRequest,
    x_actor_id: Optional[str] = Header(None),
    x_actor_role: Optional[str] = Header(None),
):
    try:
        created = import_rules(
            payload.content,
            fmt=payload.format,
            changed_by=x_actor_id,
            changed_by_role=x_actor_role,
        )
    except BookingGateError as exc:
        raise _http_error(exc) from exc
    except ValueError as exc:
        raise HTTPException(status_code=422, detail={"error_code": "FORMAT_INVALID", "message": str(exc)}) from exc
    return {"imported": len(created), "rules": [_rule_payload(rule) for rule in created]}


@app.get("/rules")
def list_rules_endpoint(
    scope: Optional[Scope] = None,
    scope_id: Optional[str] = None,
    enabled: Optional[bool] = None,
):
    rules = rule_store.list_rules(scope=scope, scope_id=scope_id, enabled=enabled)
    return {"rules": [_rule_payload(rule) for rule in rules]}


@app.post("/rules", status_code=201)
def create_rule_endpoint(
    payload: PolicyRule,
    reason: Optional[str] = None,
    x_actor_id: Optional[str] = Header(None),
    x_actor_role: Optional[str] = Header(None),
):
    try:
        rule = rule_store.create_rule(
            payload.model_copy(update={"id": None, "created_at": None, "updated_at": None}),
            changed_by=x_actor_id,
            changed_by_role=x_actor_role,
            reason=reason,
        )
    except BookingGateError as exc:
        raise _http_error(exc) from exc
    return _rule_payload(rule)


@app.get("/rules/{rule_id}")
def get_rule_endpoint(rule_id: int):
    try:
        return _rule_payload(rule_store.require_rule(rule_id))
    except BookingGateError as exc:
        raise _http_error(exc) from exc


@app.patch("/rules/{rule_id}")
def update_rule_endpoint(
    rule_id: int,
    payload: RuleUpdate,
    reason: Optional[str] = None,
    x_actor_id: Optional[str] = Header(None),
    x_actor_role: Optional[str] = Header(None),
):
    try:
        rule = rule_store.update_rule(
            rule_id,
            payload,
            changed_by=x_actor_id,
            changed_by_role=x_actor_role,
            reason=reason,
        )
    except BookingGateError as exc:
        raise _http_error(exc) from exc
    return _rule_payload(rule)


@app.delete("/rules/{rule_id}")
def delete_rule_endpoint(
    rule_id: int,
    reason: Optional[str] = None,
    x_actor_id: Optional[str] = Header(None),
    x_actor_role: Optional[str] = Header(None),
):
    try:
        rule = rule_store.delete_rule(rule_id, changed_by=x_actor_id, changed_by_role=x_actor_role, reason=reason)
    except BookingGateError as exc:
        raise _http_error(exc) from exc
    return {"deleted": True, "rule": _rule_payload(rule)}


def _toggle(rule_id: int, enabled: bool, reason: Optional[str], actor: Optional[str], role: Optional[str]):
    try:
        rule = rule_store.set_rule_enabled(rule_id, enabled, changed_by=actor, changed_by_role=role, reason=reason)
    except BookingGateError as exc:
        raise _http_error(exc) from exc
    return _rule_payload(rule)


@app.post("/rules/{rule_id}/enable")
def enable_rule_endpoint(
    rule_id: int,
    reason: Optional[str] = None,
    x_actor_id: Optional[str] = Header(None),
    x_actor_role: Optional[str] = Header(None),
):
    return _toggle(rule_id, True, reason, x_actor_id, x_actor_role)


@app.post("/rules/{rule_id}/disable")
def disable_rule_endpoint(
    rule_id: int,
    reason: Optional[str] = None,
    x_actor_id: Optional[str] = Header(None),
    x_actor_role: Optional[str] = Header(None),
):
    return _toggle(rule_id, False, reason, x_actor_id, x_actor_role)


# Policy settings versions

@app.get("/policies/effective")
def effective_policy(workspace_id: Optional[str] = None, artist_id: Optional[str] = None):
    try:
        effective = version_store.resolve_effective_settings(workspace_id=workspace_id, artist_id=artist_id)
    except BookingGateError as exc:
        raise _http_error(exc) from exc
    return effective.model_dump(mode="json")


@app.post("/policies/{scope}/versions", status_code=201)
def create_policy_version(
    scope: Scope,
    payload: PolicyVersionRequest,
    x_actor_id: Optional[str] = Header(None),
    x_actor_role: Optional[str] = Header(None),
):
    ref = _scope_ref(scope, payload.scope_id)
    try:
        created = version_store.create_version(
            ref,
            payload.settings,
            summary_text=payload.summary_text,
            full_text=payload.full_text,
            created_by=x_actor_id,
            changed_by_role=x_actor_role,
            reason=payload.reason,
            expected_version=payload.expected_version,
        )
    except BookingGateError as exc:
        raise _http_error(exc) from exc
    return created.model_dump(mode="json")


@app.get("/policies/{scope}/versions")
def list_policy_versions(scope: Scope, scope_id: Optional[str] = None):
    ref = _scope_ref(scope, scope_id)
    return {"versions": [item.model_dump(mode="json") for item in version_store.list_versions(ref)]}


@app.get("/policies/{scope}/active")
def get_active_policy(scope: Scope, scope_id: Optional[str] = None):
    ref = _scope_ref(scope, scope_id)
    try:
        active = version_store.get_active_version(ref)
    except BookingGateError as exc:
        raise _http_error(exc) from exc
    if active is None:
        raise HTTPException(
            status_code=404,
            detail={"error_code": "NOT_FOUND", "message": f"no active policy version at {ref.label()}"},
        )
    return active.model_dump(mode="json")


# Audit

@app.get("/audit")
def search_audit(
    entity_type: Optional[str] = None,
    action: Optional[str] = None,
    q: Optional[str] = None,
    limit: int = AUDIT_PAGE_DEFAULT,
    offset: int = 0,
):
    return AuditReader.search(entity_type=entity_type, action=action, query=q, limit=limit, offset=offset)


# Warning catalog

@app.get("/warnings")
def list_warnings_endpoint(include_inactive: bool = True):
    return {"warnings": [item.model_dump(mode="json") for item in list_warnings(include_inactive=include_inactive)]}


@app.get("/warnings/{key}")
def get_warning_endpoint(key: str):
    template = get_warning(key)
    if template is None:
        raise HTTPException(status_code=404, detail={"error_code": "NOT_FOUND", "message": f"warning `{key}` not found"})
    return template.model_dump(mode="json")


@app.put("/warnings/{key}")
def put_warning_endpoint(
    key: str,
    payload: WarningTemplateRequest,
    x_actor_id: Optional[str] = Header(None),
    x_actor_role: Optional[str] = Header(None),
):
    try:
        template = WarningTemplate(
            key=key,
            title=payload.title,
            client_message=payload.client_message,
            severity=payload.severity,
            artist_note=payload.artist_note,
            is_active=payload.is_active,
        )
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail={"error_code": "WARNING_INVALID", "message": str(exc)}) from exc
    saved = upsert_warning(template, changed_by=x_actor_id, changed_by_role=x_actor_role, reason=payload.reason)
    return saved.model_dump(mode="json")
