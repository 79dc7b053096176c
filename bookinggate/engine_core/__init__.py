from bookinggate.engine_core.decision_model import (
    ConfigurationWarning,
    DecisionResult,
    EvaluatedRule,
    WarningNotice,
)
from bookinggate.engine_core.evaluate import evaluate, resolve_path
from bookinggate.engine_core.expression import parse_expression, referenced_paths, to_wire
from bookinggate.engine_core.types import (
    ABSENT,
    NO_RULE_MATCHED,
    Decision,
    Expression,
    Literal,
    NaryOp,
    PathRef,
    Scope,
    UnaryOp,
)

__all__ = [
    "ABSENT",
    "ConfigurationWarning",
    "Decision",
    "DecisionResult",
    "EvaluatedRule",
    "Expression",
    "Literal",
    "NO_RULE_MATCHED",
    "NaryOp",
    "PathRef",
    "Scope",
    "UnaryOp",
    "WarningNotice",
    "evaluate",
    "parse_expression",
    "referenced_paths",
    "resolve_path",
    "to_wire",
]
