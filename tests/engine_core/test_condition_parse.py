import pytest

from bookinggate.engine_core import Literal, NaryOp, PathRef, UnaryOp, evaluate, parse_expression, referenced_paths, to_wire
from bookinggate.errors import ConditionError


def test_parse_builds_tagged_tree():
    tree = parse_expression({"and": [{"==": [{"var": "declared.firstTattoo"}, True]}, {"!": {"var": "x"}}]})
    assert isinstance(tree, NaryOp) and tree.op == "and"
    first, second = tree.operands
    assert first == NaryOp(op="==", operands=(PathRef("declared.firstTattoo"), Literal(True)))
    assert isinstance(second, UnaryOp) and second.op == "not"
    assert PathRef("a.b.c").parts == ("a", "b", "c")


@pytest.mark.parametrize(
    "raw",
    [
        {"==": [{"var": "a"}]},
        {"==": [1, 2, 3]},
        {"not": [1, 2]},
        {"and": {"var": "a"}},
        {"var": ""},
        {"var": "a..b"},
        {"==": [{"var": "a"}, [{"nested": 1}]]},
        {"==": [1, 2], "!=": [1, 2]},
        {"between": [1, 2]},
        object(),
        float("nan"),
    ],
)
def test_malformed_conditions_raise_condition_error(raw):
    with pytest.raises(ConditionError):
        parse_expression(raw)


def test_condition_error_reports_location():
    with pytest.raises(ConditionError) as excinfo:
        parse_expression({"and": [{"==": [1, 1]}, {"or": [{"nope": []}]}]})
    assert excinfo.value.path == "$.and[1].or[0]"
    assert excinfo.value.to_dict()["error_code"] == "CONDITION_MALFORMED"


def test_wire_form_is_stable_and_equivalent():
    raw = {
        "or": [
            {"in": [{"var": "inferred.placement"}, ["hands", "hand", "fingers", "face", "neck"]]},
            {"!": {"var": "declared.consented"}},
        ]
    }
    tree = parse_expression(raw)
    wire = to_wire(tree)
    assert wire == {
        "or": [
            {"in": [{"var": "inferred.placement"}, ["hands", "hand", "fingers", "face", "neck"]]},
            {"not": [{"var": "declared.consented"}]},
        ]
    }
    assert parse_expression(wire) == tree
    context = {"inferred": {"placement": "neck"}, "declared": {"consented": True}}
    assert evaluate(parse_expression(wire), context) == evaluate(tree, context) is True


def test_referenced_paths_in_first_seen_order():
    tree = parse_expression(
        {"and": [{"==": [{"var": "b"}, 1]}, {"or": [{"var": "a"}, {"==": [{"var": "b"}, 2]}]}]}
    )
    assert referenced_paths(tree) == ["b", "a"]
