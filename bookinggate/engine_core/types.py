from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Tuple, Union


class Decision(str, Enum):
    ALLOW = "ALLOW"
    ALLOW_WITH_WARNING = "ALLOW_WITH_WARNING"
    REVIEW = "REVIEW"
    BLOCK = "BLOCK"


class Scope(str, Enum):
    GLOBAL = "global"
    WORKSPACE = "workspace"
    ARTIST = "artist"


# Most specific first.
SCOPE_PRECEDENCE: Tuple[Scope, ...] = (Scope.ARTIST, Scope.WORKSPACE, Scope.GLOBAL)
SCOPE_RANK = {scope: idx for idx, scope in enumerate(SCOPE_PRECEDENCE)}

NO_RULE_MATCHED = "NO_RULE_MATCHED"


class _Absent:
    """Result of a context path that does not resolve."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "ABSENT"


ABSENT = _Absent()


COMPARISON_OPERATORS = frozenset({"==", "!=", "<", ">", "<=", ">="})
BINARY_OPERATORS = COMPARISON_OPERATORS | {"in"}
LOGICAL_OPERATORS = frozenset({"and", "or"})
UNARY_OPERATORS = frozenset({"not"})
OPERATOR_ALIASES = {"!": "not"}


@dataclass(frozen=True)
class Literal:
    value: Any


@dataclass(frozen=True)
class PathRef:
    path: str

    @property
    def parts(self) -> Tuple[str, ...]:
        return tuple(self.path.split("."))


@dataclass(frozen=True)
class UnaryOp:
    op: str
    operand: "Expression"


@dataclass(frozen=True)
class NaryOp:
    op: str
    operands: Tuple["Expression", ...]


Expression = Union[Literal, PathRef, UnaryOp, NaryOp]
EXPRESSION_TYPES = (Literal, PathRef, UnaryOp, NaryOp)
