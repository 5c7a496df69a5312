"""Tests for the Value Model."""

import pytest

from schema_engine.values import (
    ValueKind,
    copy_value,
    ensure_value,
    format_path,
    has_path,
    kind_of,
    path_lookup,
    split_path,
    values_equal,
)


class TestKindOf:
    """Tests for value classification."""

    @pytest.mark.parametrize("value,kind", [
        (None, ValueKind.NULL),
        (True, ValueKind.BOOL),
        (0, ValueKind.NUMBER),
        (1.5, ValueKind.NUMBER),
        ("x", ValueKind.STRING),
        ([1], ValueKind.LIST),
        ({"a": 1}, ValueKind.STRUCT),
    ])
    def test_kinds(self, value, kind):
        assert kind_of(value) == kind

    def test_bool_is_not_number(self):
        assert kind_of(False) == ValueKind.BOOL

    def test_unsupported_type(self):
        with pytest.raises(TypeError):
            kind_of(object())


class TestEnsureValue:
    """Tests for value checking and copying."""

    def test_returns_private_copy(self):
        original = {"a": [1, 2]}
        copied = ensure_value(original)
        copied["a"].append(3)
        assert original == {"a": [1, 2]}

    def test_tuples_become_lists(self):
        assert ensure_value({"a": (1, 2)}) == {"a": [1, 2]}

    def test_rejects_non_string_keys(self):
        with pytest.raises(ValueError, match="struct keys must be strings"):
            ensure_value({1: "x"})

    def test_rejects_nan_with_path(self):
        with pytest.raises(ValueError, match=r"a\[1\]"):
            ensure_value({"a": [1, float("nan")]})

    def test_rejects_unsupported_nested(self):
        with pytest.raises(ValueError, match="b"):
            ensure_value({"b": {1, 2}})


class TestEquality:
    """Tests for kind-aware equality."""

    def test_true_is_not_one(self):
        assert not values_equal(True, 1)

    def test_int_equals_float(self):
        assert values_equal(1, 1.0)

    def test_nested(self):
        assert values_equal({"a": [1, "x"]}, {"a": [1, "x"]})
        assert not values_equal({"a": [1]}, {"a": [1, 2]})

    def test_copy_is_deep(self):
        value = {"a": {"b": 1}}
        copied = copy_value(value)
        copied["a"]["b"] = 2
        assert value["a"]["b"] == 1


class TestPaths:
    """Tests for path navigation."""

    def test_split(self):
        assert split_path("lines[0].amount") == ["lines", 0, "amount"]
        assert split_path("a[1][2]") == ["a", 1, 2]
        assert split_path("") == []

    def test_format(self):
        assert format_path("", "a") == "a"
        assert format_path("a", "b") == "a.b"
        assert format_path("a", 3) == "a[3]"

    def test_lookup(self):
        value = {"lines": [{"amount": 5}], "note": None}
        assert path_lookup(value, "lines[0].amount") == 5
        assert path_lookup(value, "lines[1].amount") is None
        assert path_lookup(value, "missing", default="d") == "d"

    def test_present_null_differs_from_absent(self):
        value = {"note": None}
        assert has_path(value, "note")
        assert not has_path(value, "other")
        assert path_lookup(value, "note", default="d") is None
