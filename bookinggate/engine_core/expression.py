"""
Wire format for condition trees.

Conditions are stored as JSONLogic-style data, e.g.
``{"and": [{"==": [{"var": "declared.firstTattoo"}, true]}, {">": [{"var": "clientRisk.riskScore"}, 70]}]}``.
``parse_expression`` turns that data into the closed ``Expression`` variant and
rejects anything outside the grammar; ``to_wire`` is its inverse.
"""
from __future__ import annotations

from typing import Any, List

from bookinggate.engine_core.types import (
    BINARY_OPERATORS,
    EXPRESSION_TYPES,
    LOGICAL_OPERATORS,
    OPERATOR_ALIASES,
    UNARY_OPERATORS,
    Expression,
    Literal,
    NaryOp,
    PathRef,
    UnaryOp,
)
from bookinggate.errors import ConditionError


_SCALAR_TYPES = (str, int, float, bool, type(None))


def _is_scalar(value: Any) -> bool:
    return isinstance(value, _SCALAR_TYPES)


def _parse_path(raw: Any, path: str) -> PathRef:
    if not isinstance(raw, str) or not raw.strip():
        raise ConditionError("var must be a non-empty dot path", path=path)
    text = raw.strip()
    if any(not part for part in text.split(".")):
        raise ConditionError(f"invalid dot path `{text}`", path=path)
    return PathRef(path=text)


def _operand_list(op: str, raw: Any, path: str) -> List[Any]:
    if not isinstance(raw, list):
        raise ConditionError(f"operator `{op}` expects a list of operands", path=path)
    return raw


def parse_expression(raw: Any, path: str = "$") -> Expression:
    """
    Validate raw condition data against the expression grammar.

    Raises ConditionError for unknown operators, wrong arity, non-scalar list
    members and unsupported value types.
    """
    if isinstance(raw, EXPRESSION_TYPES):
        return raw
    if _is_scalar(raw):
        if isinstance(raw, float) and raw != raw:
            raise ConditionError("NaN is not a valid literal", path=path)
        return Literal(raw)
    if isinstance(raw, list):
        if not all(_is_scalar(item) for item in raw):
            raise ConditionError("list literals may only contain scalar values", path=path)
        return Literal(tuple(raw))
    if not isinstance(raw, dict):
        raise ConditionError(f"unsupported node type {type(raw).__name__}", path=path)
    if len(raw) != 1:
        raise ConditionError("operator nodes must have exactly one key", path=path)

    key, value = next(iter(raw.items()))
    op = OPERATOR_ALIASES.get(str(key), str(key))
    child_path = f"{path}.{op}"

    if op == "var":
        return _parse_path(value, child_path)

    if op in UNARY_OPERATORS:
        if isinstance(value, list):
            if len(value) != 1:
                raise ConditionError(f"operator `{op}` expects exactly 1 operand, got {len(value)}", path=child_path)
            value = value[0]
        return UnaryOp(op=op, operand=parse_expression(value, f"{child_path}[0]"))

    if op in BINARY_OPERATORS:
        operands = _operand_list(op, value, child_path)
        if len(operands) != 2:
            raise ConditionError(f"operator `{op}` expects exactly 2 operands, got {len(operands)}", path=child_path)
        return NaryOp(
            op=op,
            operands=tuple(parse_expression(item, f"{child_path}[{idx}]") for idx, item in enumerate(operands)),
        )

    if op in LOGICAL_OPERATORS:
        operands = _operand_list(op, value, child_path)
        return NaryOp(
            op=op,
            operands=tuple(parse_expression(item, f"{child_path}[{idx}]") for idx, item in enumerate(operands)),
        )

    raise ConditionError(f"unknown operator `{key}`", path=path)


def to_wire(expr: Expression) -> Any:
    if isinstance(expr, Literal):
        if isinstance(expr.value, tuple):
            return list(expr.value)
        return expr.value
    if isinstance(expr, PathRef):
        return {"var": expr.path}
    if isinstance(expr, UnaryOp):
        return {expr.op: [to_wire(expr.operand)]}
    if isinstance(expr, NaryOp):
        return {expr.op: [to_wire(item) for item in expr.operands]}
    raise ConditionError(f"unsupported node type {type(expr).__name__}")


def referenced_paths(expr: Expression) -> List[str]:
    """Context paths a condition reads, in first-seen order."""
    seen: List[str] = []

    def _walk(node: Expression) -> None:
        if isinstance(node, PathRef):
            if node.path not in seen:
                seen.append(node.path)
        elif isinstance(node, UnaryOp):
            _walk(node.operand)
        elif isinstance(node, NaryOp):
            for item in node.operands:
                _walk(item)

    _walk(expr)
    return seen
