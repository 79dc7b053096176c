from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional

import yaml
from pydantic import ValidationError

from bookinggate.errors import RuleValidationError
from bookinggate.policy.models import PolicyRule, ScopeRef
from bookinggate.policy.rules import create_rules, list_rules

logger = logging.getLogger(__name__)

EXPORT_FORMATS = {"yaml", "json"}
# Store-assigned fields are not part of a portable rule document.
_SERVER_FIELDS = {"id", "created_at", "updated_at", "condition_error"}


def _normalise_format(fmt: str) -> str:
    value = str(fmt or "yaml").strip().lower()
    if value == "yml":
        value = "yaml"
    if value not in EXPORT_FORMATS:
        raise ValueError(f"unsupported rule file format: {fmt}")
    return value


def _portable(rule: PolicyRule) -> Dict[str, Any]:
    data = rule.model_dump(mode="json", exclude=_SERVER_FIELDS)
    if data.get("scope_id") is None:
        data.pop("scope_id", None)
    return data


def export_rules(*, scope: Optional[ScopeRef] = None, fmt: str = "yaml") -> str:
    """
    Serialize stored rules to a YAML or JSON document ``{"rules": [...]}``.
    Quarantined rules are left out since their condition cannot be expressed.
    """
    fmt = _normalise_format(fmt)
    rules = list_rules(scope=scope.scope, scope_id=scope.scope_id) if scope else list_rules()
    skipped = [rule.rule_key for rule in rules if rule.quarantined]
    if skipped:
        logger.warning("Export skipped quarantined rules: %s", ", ".join(skipped))
    document = {"rules": [_portable(rule) for rule in rules if not rule.quarantined]}
    if fmt == "json":
        return json.dumps(document, indent=2, sort_keys=True, ensure_ascii=False)
    return yaml.safe_dump(document, sort_keys=False, allow_unicode=True)


def parse_rules_document(text: str, *, fmt: str = "yaml") -> List[PolicyRule]:
    """
    Validate every rule in a document. Raises RuleValidationError listing each
    invalid entry by index; nothing is returned unless all entries are valid.
    """
    fmt = _normalise_format(fmt)
    try:
        data = json.loads(text) if fmt == "json" else yaml.safe_load(text)
    except (ValueError, yaml.YAMLError) as exc:
        raise RuleValidationError(f"rule file is not valid {fmt}: {exc}") from exc

    if isinstance(data, dict):
        entries = data.get("rules")
    else:
        entries = data
    if not isinstance(entries, list):
        raise RuleValidationError("rule file must contain a list of rules under `rules`")

    rules: List[PolicyRule] = []
    errors: List[Dict[str, Any]] = []
    seen = set()
    for index, entry in enumerate(entries):
        if not isinstance(entry, dict):
            errors.append({"index": index, "error": "rule entry must be a mapping"})
            continue
        payload = {key: value for key, value in entry.items() if key not in _SERVER_FIELDS}
        try:
            rule = PolicyRule.model_validate(payload)
        except ValidationError as exc:
            errors.append({"index": index, "rule_key": entry.get("rule_key"), "error": str(exc)})
            continue
        identity = (rule.scope.value, rule.scope_id or "", rule.rule_key)
        if identity in seen:
            errors.append({"index": index, "rule_key": rule.rule_key, "error": "duplicate rule_key in file"})
            continue
        seen.add(identity)
        rules.append(rule)

    if errors:
        raise RuleValidationError(
            f"{len(errors)} invalid rule(s) in file; nothing was imported",
            details={"errors": errors},
        )
    return rules


def import_rules(
    text: str,
    *,
    fmt: str = "yaml",
    changed_by: Optional[str] = None,
    changed_by_role: Optional[str] = None,
) -> List[PolicyRule]:
    """All-or-nothing import: one transaction, one audit entry per created rule."""
    rules = parse_rules_document(text, fmt=fmt)
    created = create_rules(
        rules,
        changed_by=changed_by,
        changed_by_role=changed_by_role,
        reason="imported from rule file",
    )
    logger.info("Imported %d rule(s)", len(created))
    return created
