import pytest

from widgetsmith.services.parameters import (
    coerce_parameters,
    coerce_value,
    initial_parameters,
    resolve_effective_parameters,
)


@pytest.mark.parametrize("value,expected", [
    (True, True),
    (False, False),
    ("true", True),
    ("1", True),
    ("yes", True),
    ("on", True),
    ("false", False),
    ("nope", False),
])
def test_bool_coercion(value, expected):
    assert coerce_value(False, value) is expected


def test_number_coercion():
    assert coerce_value(10, "2.5") == 2.5
    assert coerce_value(10, 7) == 7
    assert coerce_value(1.5, "abc") == 0
    assert coerce_value(1, "nan") == 0
    assert coerce_value(1, "inf") == 0
    assert coerce_value(1, "-Infinity") == 0
    assert coerce_value(1, float("nan")) == 0


def test_list_coercion_splits_newlines_and_drops_empty_lines():
    assert coerce_value(["a"], "x\n\ny\n") == ["x", "y"]
    assert coerce_value([], [1, "b"]) == ["1", "b"]


def test_other_defaults_become_strings():
    assert coerce_value("Europe/Berlin", 42) == "42"
    assert coerce_value(None, "x") == "x"


def test_unknown_keys_pass_through_untouched():
    schema = {"count": 1}
    assert coerce_parameters(schema, {"count": "3", "extra": {"a": 1}}) == {"count": 3.0, "extra": {"a": 1}}


def test_merge_keeps_earlier_keys():
    schema = {"a": 0, "b": "x"}
    first = resolve_effective_parameters(schema, {}, {"a": "1"})
    second = resolve_effective_parameters(schema, first, {"b": "y"})
    assert second == {"a": 1.0, "b": "y"}


def test_initial_parameters_fall_back_to_schema_defaults():
    schema = {"tz1": "Europe/Berlin", "showSeconds": True}
    assert initial_parameters(schema, {}) == schema
    assert initial_parameters(schema, {"showSeconds": "false"}) == {"showSeconds": False}
