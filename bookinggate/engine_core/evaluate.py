from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Sequence

from bookinggate.engine_core.types import (
    ABSENT,
    COMPARISON_OPERATORS,
    Expression,
    Literal,
    NaryOp,
    PathRef,
    UnaryOp,
)
from bookinggate.errors import ConditionError


def resolve_path(context: Any, parts: Sequence[str]) -> Any:
    """
    Dot-path lookup into a nested mapping. List members are addressed by index.
    Anything that does not resolve, or resolves to None, is ABSENT.
    """
    current = context
    for part in parts:
        if isinstance(current, Mapping):
            if part not in current:
                return ABSENT
            current = current[part]
        elif isinstance(current, (list, tuple)) and part.isdigit():
            index = int(part)
            if index >= len(current):
                return ABSENT
            current = current[index]
        else:
            return ABSENT
    if current is None:
        return ABSENT
    return current


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _normalise(value: Any) -> Any:
    if isinstance(value, list):
        return tuple(value)
    return value


def _strict_equal(left: Any, right: Any) -> bool:
    left = _normalise(left)
    right = _normalise(right)
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool) and left == right
    if _is_number(left) and _is_number(right):
        return left == right
    if type(left) is not type(right):
        return False
    return left == right


def _compare(op: str, left: Any, right: Any) -> bool:
    if left is ABSENT or right is ABSENT:
        return False
    if op == "==":
        return _strict_equal(left, right)
    if op == "!=":
        return not _strict_equal(left, right)

    comparable = (_is_number(left) and _is_number(right)) or (isinstance(left, str) and isinstance(right, str))
    if not comparable:
        return False
    if op == "<":
        return left < right
    if op == ">":
        return left > right
    if op == "<=":
        return left <= right
    if op == ">=":
        return left >= right
    return False


def _member(needle: Any, haystack: Any) -> bool:
    if needle is ABSENT or haystack is ABSENT:
        return False
    if isinstance(haystack, (list, tuple)):
        if isinstance(needle, (list, tuple)):
            return any(_member(item, haystack) for item in needle)
        return any(_strict_equal(needle, item) for item in haystack)
    if isinstance(haystack, str) and isinstance(needle, str):
        return needle in haystack
    return False


def _value(node: Expression, context: Any) -> Any:
    if isinstance(node, Literal):
        return node.value
    if isinstance(node, PathRef):
        return resolve_path(context, node.parts)
    return evaluate(node, context)


def evaluate(tree: Expression, context: Any) -> bool:
    """
    Pure evaluation of a parsed condition tree against a read-only context.
    - No DB/network/env/clock reads.
    - Absent operands make comparisons and membership false.
    """
    if isinstance(tree, Literal):
        return bool(tree.value)
    if isinstance(tree, PathRef):
        value = resolve_path(context, tree.parts)
        return value is not ABSENT and bool(value)
    if isinstance(tree, UnaryOp):
        if tree.op == "not":
            return not evaluate(tree.operand, context)
        raise ConditionError(f"unknown unary operator `{tree.op}`")
    if isinstance(tree, NaryOp):
        if tree.op == "and":
            for child in tree.operands:
                if not evaluate(child, context):
                    return False
            return True
        if tree.op == "or":
            for child in tree.operands:
                if evaluate(child, context):
                    return True
            return False
        if len(tree.operands) != 2:
            raise ConditionError(f"operator `{tree.op}` expects exactly 2 operands, got {len(tree.operands)}")
        left = _value(tree.operands[0], context)
        right = _value(tree.operands[1], context)
        if tree.op in COMPARISON_OPERATORS:
            return _compare(tree.op, left, right)
        if tree.op == "in":
            return _member(left, right)
        raise ConditionError(f"unknown operator `{tree.op}`")
    raise ConditionError(f"unsupported node type {type(tree).__name__}")
