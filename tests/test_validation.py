"""Tests for the Validation Engine."""

import time

import pytest

from schema_engine.engine.unification import make_atom, make_union
from schema_engine.engine.validation_engine import (
    ValidationEngine,
    ValidationResult,
    Violation,
    ViolationSeverity,
    validate,
)
from schema_engine.errors import UnknownReferenceError
from schema_engine.schemas.base import (
    AtomKind,
    AtomType,
    ConditionalType,
    FieldBoundRefinement,
    FieldSpec,
    FormatRefinement,
    IntegerRefinement,
    LengthRefinement,
    ListType,
    LiteralRefinement,
    PatternRefinement,
    Predicate,
    RangeRefinement,
    RefType,
    StructType,
    UnionType,
    compose,
)

NUMBER = AtomType(kind=AtomKind.NUMBER)
STRING = AtomType(kind=AtomKind.STRING)


def literal(*values):
    return make_atom(AtomKind.STRING, LiteralRefinement(values=values))


def field(expr, **kwargs):
    return FieldSpec(type=expr, **kwargs)


# =============================================================================
# Atom Tests
# =============================================================================

class TestAtoms:
    """Tests for scalar checks."""

    def test_kind_mismatch(self):
        result = validate(NUMBER, "5")
        assert len(result.violations) == 1
        assert result.violations[0].rule == "type"
        assert "expected number, got string" in result.violations[0].message

    def test_bool_is_not_number(self):
        assert not validate(NUMBER, True).accepted

    def test_one_violation_per_refinement(self):
        expr = make_atom(
            AtomKind.STRING,
            LengthRefinement(min_length=5),
            PatternRefinement(pattern="^[0-9]+$"),
        )
        result = validate(expr, "ab")
        assert sorted(v.rule for v in result.violations) == ["length", "pattern"]

    def test_integer(self):
        expr = make_atom(AtomKind.NUMBER, IntegerRefinement())
        assert validate(expr, 3).accepted
        assert validate(expr, 3.0).accepted
        assert validate(expr, 3.5).violations[0].rule == "integer"

    def test_exclusive_range(self):
        expr = make_atom(AtomKind.NUMBER, RangeRefinement(minimum=0, exclusive_minimum=True))
        assert not validate(expr, 0).accepted
        assert validate(expr, 0.1).accepted

    @pytest.mark.parametrize("fmt,good,bad", [
        ("email", "a@example.com", "not-an-email"),
        ("uuid", "6f1c3e52-1b9a-4d8e-9a55-0c3b9a2f1e10", "1234"),
        ("date", "2024-02-29", "2023-02-29"),
        ("date-time", "2024-01-01T10:00:00Z", "2024-01-01"),
        ("uri", "https://example.com/x", "example"),
    ])
    def test_formats(self, fmt, good, bad):
        expr = make_atom(AtomKind.STRING, FormatRefinement(format=fmt))
        assert validate(expr, good).accepted
        assert validate(expr, bad).violations[0].rule == "format"

    def test_literal(self):
        expr = literal("a", "b")
        assert validate(expr, "a").accepted
        result = validate(expr, "z")
        assert result.violations[0].rule == "literal"


# =============================================================================
# Struct Tests
# =============================================================================

class TestStructs:
    """Tests for struct checks, defaults and closed structs."""

    def test_closed_struct_rejects_exactly_one_field(self):
        expr = StructType(fields={"x": field(NUMBER)}, closed=True)
        result = validate(expr, {"x": 1, "y": 2})
        assert len(result.violations) == 1
        violation = result.violations[0]
        assert violation.rule == "unexpected_field"
        assert violation.path == "y"
        assert violation.severity == ViolationSeverity.DATA

    def test_open_struct_keeps_extra_fields(self):
        expr = StructType(fields={"x": field(NUMBER)})
        result = validate(expr, {"x": 1, "y": 2})
        assert result.accepted
        assert result.filled == {"x": 1, "y": 2}

    def test_required_missing(self):
        expr = StructType(fields={"x": field(NUMBER), "y": field(STRING, required=False)})
        result = validate(expr, {})
        assert [(v.path, v.rule) for v in result.violations] == [("x", "required")]

    def test_defaults_filled_into_copy(self):
        expr = StructType(fields={"note": field(STRING, required=False, has_default=True, default="n/a")})
        value = {}
        result = validate(expr, value)
        assert result.accepted
        assert result.filled == {"note": "n/a"}
        assert value == {}

    def test_required_field_with_default_is_filled(self):
        expr = StructType(fields={"count": field(NUMBER, has_default=True, default=0)})
        result = validate(expr, {})
        assert result.accepted
        assert result.filled == {"count": 0}

    def test_invalid_default_is_schema_violation(self):
        expr = StructType(fields={"count": field(NUMBER, has_default=True, default="zero")})
        result = validate(expr, {})
        assert len(result.violations) == 1
        assert result.violations[0].severity == ViolationSeverity.SCHEMA
        assert result.violations[0].message.startswith("default value is invalid")

    def test_collects_every_violation(self):
        expr = StructType(
            fields={
                "a": field(NUMBER),
                "b": field(STRING),
                "c": field(StructType(fields={"d": field(NUMBER)})),
            },
            closed=True,
        )
        result = validate(expr, {"a": "x", "c": {"d": "y"}, "z": 1})
        assert [(v.path, v.rule) for v in result.violations] == [
            ("a", "type"),
            ("b", "required"),
            ("c.d", "type"),
            ("z", "unexpected_field"),
        ]

    def test_not_a_struct(self):
        expr = StructType(fields={"x": field(NUMBER)})
        assert validate(expr, [1]).violations[0].rule == "type"

    def test_field_bound(self):
        end = make_atom(AtomKind.NUMBER, FieldBoundRefinement(op=">=", field="start"))
        expr = StructType(fields={"start": field(NUMBER), "end": field(end)})
        assert validate(expr, {"start": 1, "end": 5}).accepted
        result = validate(expr, {"start": 5, "end": 1})
        assert [(v.path, v.rule) for v in result.violations] == [("end", "field_bound")]


# =============================================================================
# Conditional Tests
# =============================================================================

class TestConditionals:
    """Tests for per-value conditional constraints."""

    @pytest.fixture
    def kinded(self):
        return StructType(
            fields={"kind": field(make_union([literal("a"), literal("b")]))},
            conditionals=(
                ConditionalType(
                    predicate=Predicate(field="kind", op="equals", value="a"),
                    then=StructType(fields={"extra": field(STRING)}),
                ),
            ),
        )

    def test_predicate_true_requires_field(self, kinded):
        result = validate(kinded, {"kind": "a"})
        assert len(result.violations) == 1
        assert result.violations[0].path == "extra"
        assert result.violations[0].rule == "required"

    def test_predicate_false_adds_nothing(self, kinded):
        assert validate(kinded, {"kind": "b"}).violations == []

    def test_same_type_different_values(self, kinded):
        engine = ValidationEngine()
        assert not engine.validate(kinded, {"kind": "a"}).accepted
        assert engine.validate(kinded, {"kind": "b"}).accepted
        assert engine.validate(kinded, {"kind": "a", "extra": "x"}).accepted

    def test_closed_struct_accepts_conditional_fields(self):
        expr = StructType(
            fields={"kind": field(STRING)},
            closed=True,
            conditionals=(
                ConditionalType(
                    predicate=Predicate(field="kind", op="equals", value="refund"),
                    then=StructType(fields={"reason": field(STRING)}),
                ),
            ),
        )
        assert validate(expr, {"kind": "refund", "reason": "late"}).accepted
        result = validate(expr, {"kind": "sale", "reason": "late"})
        assert [(v.path, v.rule) for v in result.violations] == [("reason", "unexpected_field")]

    def test_chained_conditionals(self):
        expr = StructType(
            fields={"a": field(STRING)},
            conditionals=(
                ConditionalType(
                    predicate=Predicate(field="a", op="present"),
                    then=StructType(
                        fields={"b": field(STRING, has_default=True, default="on")},
                        conditionals=(
                            ConditionalType(
                                predicate=Predicate(field="b", op="equals", value="on"),
                                then=StructType(fields={"c": field(NUMBER)}),
                            ),
                        ),
                    ),
                ),
            ),
        )
        result = validate(expr, {"a": "x", "b": "on"})
        assert [(v.path, v.rule) for v in result.violations] == [("c", "required")]

    def test_conflicting_then_is_schema_violation(self):
        expr = StructType(
            fields={"n": field(make_atom(AtomKind.NUMBER, RangeRefinement(minimum=10)))},
            conditionals=(
                ConditionalType(
                    predicate=Predicate(field="n", op="present"),
                    then=StructType(fields={"n": field(make_atom(AtomKind.NUMBER, RangeRefinement(maximum=5)))}),
                ),
            ),
        )
        result = validate(expr, {"n": 12})
        assert result.schema_violations
        assert not result.data_violations


# =============================================================================
# List and Union Tests
# =============================================================================

class TestListsAndUnions:
    """Tests for lists and unions."""

    def test_list_elements_and_counts(self):
        expr = ListType(element=NUMBER, min_items=3)
        result = validate(expr, [1, "x"])
        assert [(v.path, v.rule) for v in result.violations] == [("", "items"), ("[1]", "type")]

    def test_nested_list_paths(self):
        expr = StructType(fields={"lines": field(ListType(element=StructType(fields={"qty": field(NUMBER)})))})
        result = validate(expr, {"lines": [{"qty": 1}, {"qty": "2"}]})
        assert result.violations[0].path == "lines[1].qty"

    def test_union_single_aggregated_violation(self):
        expr = make_union([NUMBER, StructType(fields={"x": field(NUMBER)})])
        result = validate(expr, "text")
        assert len(result.violations) == 1
        assert result.violations[0].rule == "union"
        assert len(result.violations[0].context["alternatives"]) == 2

    def test_union_fills_from_matching_alternative(self):
        with_default = StructType(
            fields={"x": field(NUMBER), "y": field(NUMBER, has_default=True, default=0)},
            closed=True,
        )
        expr = make_union([STRING, with_default])
        result = validate(expr, {"x": 1})
        assert result.accepted
        assert result.filled == {"x": 1, "y": 0}


# =============================================================================
# Schema Errors and Deadlines
# =============================================================================

class TestSchemaErrors:
    """Tests for broken schemas surfacing as schema violations."""

    def test_composite_conflict(self):
        expr = compose(
            make_atom(AtomKind.NUMBER, RangeRefinement(minimum=10)),
            make_atom(AtomKind.NUMBER, RangeRefinement(maximum=5)),
        )
        result = validate(expr, 7)
        assert len(result.violations) == 1
        assert result.violations[0].severity == ViolationSeverity.SCHEMA
        assert result.violations[0].rule == "conflict"

    def test_conflicting_union_alternative(self):
        broken = compose(
            make_atom(AtomKind.NUMBER, RangeRefinement(minimum=10)),
            make_atom(AtomKind.NUMBER, RangeRefinement(maximum=5)),
        )
        expr = UnionType(alternatives=(broken, STRING))
        result = validate(expr, 7)
        assert [(v.rule, v.severity) for v in result.violations] == [
            ("conflict", ViolationSeverity.SCHEMA),
            ("union", ViolationSeverity.DATA),
        ]

    def test_conflicting_union_alternative_unused(self):
        broken = compose(
            make_atom(AtomKind.NUMBER, RangeRefinement(minimum=10)),
            make_atom(AtomKind.NUMBER, RangeRefinement(maximum=5)),
        )
        result = validate(UnionType(alternatives=(STRING, broken)), "text")
        assert result.accepted

    def test_unresolved_reference(self):
        def resolve(ref):
            raise UnknownReferenceError(f"unknown package '{ref.package}'")

        result = validate(RefType(name="X", package="nowhere"), 1, resolve=resolve)
        assert result.violations[0].rule == "unresolved_ref"
        assert result.violations[0].severity == ViolationSeverity.SCHEMA


class TestDeadline:
    """Tests for validation deadlines."""

    def test_expired_deadline_is_timeout(self):
        expr = ListType(element=NUMBER)
        engine = ValidationEngine(deadline=time.monotonic() - 1, check_interval=1)
        result = engine.validate(expr, [1, "x", 3])
        assert result.timed_out
        assert [v.severity for v in result.violations] == [ViolationSeverity.TIMEOUT]
        assert result.filled == [1, "x", 3]

    def test_future_deadline_validates_normally(self):
        engine = ValidationEngine(deadline=time.monotonic() + 60)
        result = engine.validate(ListType(element=NUMBER), [1, "x"])
        assert not result.timed_out
        assert [v.rule for v in result.violations] == ["type"]


class TestResultSerialization:
    """Tests for result and violation serialization."""

    def test_violation_to_dict(self):
        violation = Violation(path="a", rule="type", message="m", severity=ViolationSeverity.SCHEMA)
        assert violation.to_dict() == {"path": "a", "rule": "type", "message": "m", "severity": "schema"}

    def test_result_to_dict(self):
        result = ValidationResult(filled={"a": 1})
        assert result.to_dict() == {"accepted": True, "filled": {"a": 1}, "violations": []}
