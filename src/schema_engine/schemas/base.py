"""Base classes for the type expression graph.

Every package definition is parsed into an immutable tree of these models.
The graph is built once per load and shared read-only afterwards, so all
models are frozen.
"""

import functools
import json
import re
import uuid
from datetime import date, datetime
from enum import Enum
from typing import Annotated, Any, Literal, Union
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field

from schema_engine.values import ValueKind, has_path, kind_of, path_lookup, values_equal


class AtomKind(str, Enum):
    """Scalar kinds an Atom can constrain."""

    NULL = "null"
    BOOL = "bool"
    NUMBER = "number"
    STRING = "string"

    def matches(self, value: Any) -> bool:
        try:
            return kind_of(value).value == self.value
        except TypeError:
            return False


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


# =============================================================================
# Refinements
# =============================================================================

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

SUPPORTED_FORMATS = {"email", "uuid", "date", "date-time", "uri"}


@functools.lru_cache(maxsize=512)
def compile_pattern(pattern: str) -> re.Pattern[str]:
    return re.compile(pattern)


def literal_sort_key(value: Any) -> str:
    """Stable ordering key for literal values of mixed kinds."""
    return f"{kind_of(value).value}:{json.dumps(value, sort_keys=True)}"


class RangeRefinement(_Frozen):
    """Numeric bounds, either side optional."""

    rule: Literal["range"] = "range"
    minimum: int | float | None = None
    maximum: int | float | None = None
    exclusive_minimum: bool = False
    exclusive_maximum: bool = False

    def accepts(self, value: Any) -> bool:
        if self.minimum is not None:
            if value < self.minimum or (self.exclusive_minimum and value == self.minimum):
                return False
        if self.maximum is not None:
            if value > self.maximum or (self.exclusive_maximum and value == self.maximum):
                return False
        return True

    def describe(self) -> str:
        parts = []
        if self.minimum is not None:
            parts.append(f"{'>' if self.exclusive_minimum else '>='}{self.minimum}")
        if self.maximum is not None:
            parts.append(f"{'<' if self.exclusive_maximum else '<='}{self.maximum}")
        return " & ".join(parts) or "any number"


class LengthRefinement(_Frozen):
    """String length bounds."""

    rule: Literal["length"] = "length"
    min_length: int | None = None
    max_length: int | None = None

    def accepts(self, value: Any) -> bool:
        if self.min_length is not None and len(value) < self.min_length:
            return False
        if self.max_length is not None and len(value) > self.max_length:
            return False
        return True

    def describe(self) -> str:
        low = self.min_length if self.min_length is not None else 0
        high = self.max_length if self.max_length is not None else "*"
        return f"length {low}..{high}"


class PatternRefinement(_Frozen):
    """Regular expression the string must match (``re.search``)."""

    rule: Literal["pattern"] = "pattern"
    pattern: str

    def accepts(self, value: Any) -> bool:
        return compile_pattern(self.pattern).search(value) is not None

    def describe(self) -> str:
        return f"=~{self.pattern}"


class LiteralRefinement(_Frozen):
    """Closed set of allowed literal values."""

    rule: Literal["literal"] = "literal"
    values: tuple[Any, ...]

    def accepts(self, value: Any) -> bool:
        return any(values_equal(value, allowed) for allowed in self.values)

    def describe(self) -> str:
        return " | ".join(json.dumps(v) for v in self.values)


class IntegerRefinement(_Frozen):
    """The number must be whole."""

    rule: Literal["integer"] = "integer"

    def accepts(self, value: Any) -> bool:
        return isinstance(value, int) or float(value).is_integer()

    def describe(self) -> str:
        return "int"


class FormatRefinement(_Frozen):
    """Well-known string format."""

    rule: Literal["format"] = "format"
    format: str

    def accepts(self, value: Any) -> bool:
        if self.format == "email":
            return EMAIL_PATTERN.match(value) is not None
        if self.format == "uuid":
            try:
                uuid.UUID(value)
            except ValueError:
                return False
            return True
        if self.format == "date":
            try:
                date.fromisoformat(value)
            except ValueError:
                return False
            return True
        if self.format == "date-time":
            try:
                datetime.fromisoformat(value.replace("Z", "+00:00"))
            except ValueError:
                return False
            return "T" in value or " " in value
        if self.format == "uri":
            parsed = urlparse(value)
            return bool(parsed.scheme and (parsed.netloc or parsed.path))
        return True

    def describe(self) -> str:
        return f"format {self.format}"


class FieldBoundRefinement(_Frozen):
    """Numeric bound taken from a sibling field of the value being validated."""

    rule: Literal["field_bound"] = "field_bound"
    op: Literal[">=", ">", "<=", "<"]
    field: str

    def accepts(self, value: Any) -> bool:
        # Needs the enclosing struct; see accepts_in().
        return True

    def accepts_in(self, value: Any, siblings: Any) -> bool:
        bound = path_lookup(siblings, self.field)
        if not has_path(siblings, self.field) or kind_of(bound) != ValueKind.NUMBER:
            return True
        if self.op == ">=":
            return value >= bound
        if self.op == ">":
            return value > bound
        if self.op == "<=":
            return value <= bound
        return value < bound

    def describe(self) -> str:
        return f"{self.op} field {self.field}"


Refinement = Annotated[
    Union[
        RangeRefinement,
        LengthRefinement,
        PatternRefinement,
        LiteralRefinement,
        IntegerRefinement,
        FormatRefinement,
        FieldBoundRefinement,
    ],
    Field(discriminator="rule"),
]

# Refinements that only make sense for one atom kind
REFINEMENT_KINDS: dict[str, set[AtomKind]] = {
    "range": {AtomKind.NUMBER},
    "integer": {AtomKind.NUMBER},
    "field_bound": {AtomKind.NUMBER},
    "length": {AtomKind.STRING},
    "pattern": {AtomKind.STRING},
    "format": {AtomKind.STRING},
    "literal": set(AtomKind),
}


# =============================================================================
# Predicates
# =============================================================================

class Predicate(_Frozen):
    """Test on a sibling field, used to guard a Conditional."""

    field: str = Field(..., description="Path of the sibling field")
    op: Literal["equals", "not_equals", "in", "present", "absent"] = "equals"
    value: Any = None

    def holds(self, siblings: Any) -> bool:
        present = has_path(siblings, self.field)
        if self.op == "present":
            return present
        if self.op == "absent":
            return not present
        if not present:
            return False
        actual = path_lookup(siblings, self.field)
        if self.op == "equals":
            return values_equal(actual, self.value)
        if self.op == "not_equals":
            return not values_equal(actual, self.value)
        return any(values_equal(actual, candidate) for candidate in self.value)

    def describe(self) -> str:
        if self.op in ("present", "absent"):
            return f"{self.field} {self.op}"
        symbol = {"equals": "==", "not_equals": "!=", "in": "in"}[self.op]
        return f"{self.field} {symbol} {json.dumps(self.value)}"


# =============================================================================
# Type expressions
# =============================================================================

class AtomType(_Frozen):
    """Scalar kind plus refinements."""

    tag: Literal["atom"] = "atom"
    kind: AtomKind
    refinements: tuple[Refinement, ...] = ()

    def find(self, rule: str) -> list[Any]:
        return [r for r in self.refinements if r.rule == rule]


class FieldSpec(_Frozen):
    """A struct member: its type, whether it must be present, and its default."""

    type: "TypeExpr"
    required: bool = True
    has_default: bool = False
    default: Any = None
    description: str | None = None


class StructType(_Frozen):
    """Ordered fields; a closed struct rejects undeclared field names."""

    tag: Literal["struct"] = "struct"
    fields: dict[str, FieldSpec] = Field(default_factory=dict)
    closed: bool = False
    conditionals: tuple["ConditionalType", ...] = ()


class ListType(_Frozen):
    tag: Literal["list"] = "list"
    element: "TypeExpr"
    min_items: int | None = None
    max_items: int | None = None


class UnionType(_Frozen):
    """Value must satisfy at least one alternative."""

    tag: Literal["union"] = "union"
    alternatives: tuple["TypeExpr", ...]


class RefType(_Frozen):
    """Named pointer to a definition, resolved through the graph."""

    tag: Literal["ref"] = "ref"
    name: str
    package: str | None = None

    @property
    def qualified_name(self) -> str:
        return f"{self.package}.{self.name}" if self.package else self.name


class ConditionalType(_Frozen):
    """``then`` applies only when ``predicate`` holds for the value at hand."""

    tag: Literal["conditional"] = "conditional"
    predicate: Predicate
    then: "TypeExpr"


class CompositeType(_Frozen):
    """Unevaluated unification of two expressions."""

    tag: Literal["composite"] = "composite"
    left: "TypeExpr"
    right: "TypeExpr"

    def operands(self) -> list["TypeExpr"]:
        """Flatten nested composites into the list of unified operands."""
        result: list[TypeExpr] = []
        for side in (self.left, self.right):
            if isinstance(side, CompositeType):
                result.extend(side.operands())
            else:
                result.append(side)
        return result


TypeExpr = Annotated[
    Union[AtomType, StructType, ListType, UnionType, RefType, ConditionalType, CompositeType],
    Field(discriminator="tag"),
]

for _model in (FieldSpec, StructType, ListType, UnionType, ConditionalType, CompositeType):
    _model.model_rebuild()


def compose(*exprs: Any) -> Any:
    """Fold expressions left to right into Composite nodes."""
    if not exprs:
        raise ValueError("compose() needs at least one expression")
    result = exprs[0]
    for expr in exprs[1:]:
        result = CompositeType(left=result, right=expr)
    return result


def describe(expr: Any, depth: int = 2) -> str:
    """Short human-readable rendering of a type expression."""
    if isinstance(expr, AtomType):
        integer = any(r.rule == "integer" for r in expr.refinements)
        name = "int" if integer else expr.kind.value
        parts = [name] + [r.describe() for r in expr.refinements if r.rule != "integer"]
        return " & ".join(parts)
    if isinstance(expr, RefType):
        return expr.qualified_name
    if depth <= 0:
        return "{...}" if isinstance(expr, StructType) else "..."
    if isinstance(expr, StructType):
        fields = ", ".join(
            f"{name}{'' if spec.required else '?'}: {describe(spec.type, depth - 1)}"
            for name, spec in expr.fields.items()
        )
        prefix = "closed " if expr.closed else ""
        return f"{prefix}{{{fields}}}"
    if isinstance(expr, ListType):
        return f"[...{describe(expr.element, depth - 1)}]"
    if isinstance(expr, UnionType):
        return " | ".join(describe(alt, depth - 1) for alt in expr.alternatives)
    if isinstance(expr, ConditionalType):
        return f"if {expr.predicate.describe()} then {describe(expr.then, depth - 1)}"
    if isinstance(expr, CompositeType):
        return " & ".join(describe(op, depth - 1) for op in expr.operands())
    return repr(expr)
