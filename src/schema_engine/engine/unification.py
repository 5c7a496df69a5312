"""Unification Engine - combines constraints into their most specific common form.

``unify(a, b)`` returns an expression satisfied exactly by the values that
satisfy both ``a`` and ``b`` ("most restrictive wins"), or raises
``ConflictError`` when no value can satisfy both. Folding independently
authored layers with ``unify`` therefore never yields anything more
permissive than any single layer.
"""

import json
import math
from functools import reduce
from typing import Any, Callable

from schema_engine.errors import ConflictError, UnknownReferenceError
from schema_engine.schemas.base import (
    REFINEMENT_KINDS,
    AtomKind,
    AtomType,
    CompositeType,
    ConditionalType,
    FieldBoundRefinement,
    FieldSpec,
    FormatRefinement,
    IntegerRefinement,
    LengthRefinement,
    ListType,
    LiteralRefinement,
    PatternRefinement,
    RangeRefinement,
    RefType,
    StructType,
    TypeExpr,
    UnionType,
    describe,
    literal_sort_key,
)
from schema_engine.values import values_equal

Resolver = Callable[[RefType], TypeExpr]

# Guards against definitions that are nothing but references to each other.
MAX_REF_HOPS = 64
MAX_DEPTH = 100
# Recursive composites are checked this many levels deep.
MAX_CHECK_DEPTH = 16


def canonical_key(expr: Any) -> str:
    """Order-independent identity of a type expression."""
    return json.dumps(expr.model_dump(mode="json"), sort_keys=True)


# =============================================================================
# Atom normalization
# =============================================================================

def make_atom(kind: AtomKind | str, *refinements: Any) -> AtomType:
    """Build an Atom with its refinements intersected into canonical form.

    Raises:
        ConflictError: If the refinements cannot all hold at once
    """
    kind = AtomKind(kind)
    for refinement in refinements:
        if kind not in REFINEMENT_KINDS[refinement.rule]:
            raise ConflictError(
                f"{refinement.rule} refinement ({refinement.describe()}) does not apply to {kind.value}"
            )

    integer = any(r.rule == "integer" for r in refinements)
    value_range = _intersect_ranges([r for r in refinements if r.rule == "range"], integer)
    length = _intersect_lengths([r for r in refinements if r.rule == "length"])
    patterns = sorted({r.pattern for r in refinements if r.rule == "pattern"})
    formats = sorted({r.format for r in refinements if r.rule == "format"})
    bounds = sorted(
        {(r.field, r.op) for r in refinements if r.rule == "field_bound"}
    )

    result: list[Any] = []
    if integer:
        result.append(IntegerRefinement())
    if value_range is not None:
        result.append(value_range)
    if length is not None:
        result.append(length)
    result.extend(PatternRefinement(pattern=p) for p in patterns)
    result.extend(FormatRefinement(format=f) for f in formats)

    literal_sets = [r.values for r in refinements if r.rule == "literal"]
    if literal_sets:
        allowed = _intersect_literals(literal_sets)
        if not allowed:
            raise ConflictError(
                "literal sets "
                + " and ".join("{" + ", ".join(json.dumps(v) for v in s) + "}" for s in literal_sets)
                + " have no common value"
            )
        static = list(result)
        survivors = [
            v for v in allowed
            if kind.matches(v) and all(r.accepts(v) for r in static)
        ]
        if not survivors:
            raise ConflictError(
                "no literal in {" + ", ".join(json.dumps(v) for v in allowed) + "} satisfies "
                + (" & ".join(r.describe() for r in static) or kind.value)
            )
        result.append(LiteralRefinement(values=tuple(survivors)))

    result.extend(FieldBoundRefinement(field=f, op=op) for f, op in bounds)
    return AtomType(kind=kind, refinements=tuple(result))


def _intersect_ranges(ranges: list[RangeRefinement], integer: bool) -> RangeRefinement | None:
    if not ranges and not integer:
        return None
    minimum, exclusive_minimum = None, False
    maximum, exclusive_maximum = None, False
    for r in ranges:
        if r.minimum is not None:
            if minimum is None or r.minimum > minimum:
                minimum, exclusive_minimum = r.minimum, r.exclusive_minimum
            elif r.minimum == minimum:
                exclusive_minimum = exclusive_minimum or r.exclusive_minimum
        if r.maximum is not None:
            if maximum is None or r.maximum < maximum:
                maximum, exclusive_maximum = r.maximum, r.exclusive_maximum
            elif r.maximum == maximum:
                exclusive_maximum = exclusive_maximum or r.exclusive_maximum

    merged = RangeRefinement(
        minimum=minimum,
        maximum=maximum,
        exclusive_minimum=exclusive_minimum,
        exclusive_maximum=exclusive_maximum,
    )
    if minimum is not None and maximum is not None:
        if minimum > maximum or (minimum == maximum and (exclusive_minimum or exclusive_maximum)):
            raise ConflictError(f"empty range: {merged.describe()}")
        if integer:
            lowest = math.floor(minimum) + 1 if exclusive_minimum or not float(minimum).is_integer() else int(minimum)
            if not merged.accepts(lowest):
                raise ConflictError(f"no integer satisfies {merged.describe()}")
    if minimum is None and maximum is None:
        return None
    return merged


def _intersect_lengths(lengths: list[LengthRefinement]) -> LengthRefinement | None:
    if not lengths:
        return None
    mins = [r.min_length for r in lengths if r.min_length is not None]
    maxes = [r.max_length for r in lengths if r.max_length is not None]
    merged = LengthRefinement(
        min_length=max(mins) if mins else None,
        max_length=min(maxes) if maxes else None,
    )
    if merged.min_length is not None and merged.max_length is not None:
        if merged.min_length > merged.max_length:
            raise ConflictError(f"empty length range: {merged.describe()}")
    return merged


def _intersect_literals(literal_sets: list[tuple[Any, ...]]) -> list[Any]:
    first, *rest = literal_sets
    allowed = []
    for value in first:
        if any(values_equal(value, seen) for seen in allowed):
            continue
        if all(any(values_equal(value, other) for other in s) for s in rest):
            allowed.append(value)
    return sorted(allowed, key=literal_sort_key)


def make_union(alternatives: list[Any]) -> Any:
    """Build a Union in canonical form.

    Duplicates are dropped, nested unions flattened, and plain literal atoms of
    the same kind merged into one literal set. A single survivor is returned
    bare.
    """
    flat: list[Any] = []
    for alt in alternatives:
        flat.extend(alt.alternatives if isinstance(alt, UnionType) else [alt])

    literals: dict[AtomKind, list[Any]] = {}
    others: list[Any] = []
    for alt in flat:
        if (
            isinstance(alt, AtomType)
            and len(alt.refinements) == 1
            and alt.refinements[0].rule == "literal"
        ):
            literals.setdefault(alt.kind, []).extend(alt.refinements[0].values)
        else:
            others.append(alt)

    for kind, values in literals.items():
        unique: list[Any] = []
        for value in values:
            if not any(values_equal(value, seen) for seen in unique):
                unique.append(value)
        others.append(
            AtomType(
                kind=kind,
                refinements=(LiteralRefinement(values=tuple(sorted(unique, key=literal_sort_key))),),
            )
        )

    unique_alts: dict[str, Any] = {}
    for alt in others:
        unique_alts.setdefault(canonical_key(alt), alt)
    if not unique_alts:
        raise ConflictError("union has no alternatives")
    ordered = [unique_alts[key] for key in sorted(unique_alts)]
    if len(ordered) == 1:
        return ordered[0]
    return UnionType(alternatives=tuple(ordered))


def _canonical_conditionals(conditionals: tuple[ConditionalType, ...]) -> tuple[ConditionalType, ...]:
    unique: dict[str, ConditionalType] = {}
    for conditional in conditionals:
        unique.setdefault(canonical_key(conditional), conditional)
    return tuple(unique[key] for key in sorted(unique))


def _kind_name(expr: Any) -> str:
    if isinstance(expr, AtomType):
        return expr.kind.value
    return expr.tag


# =============================================================================
# Unifier
# =============================================================================

class Unifier:
    """Unifies type expressions against one graph.

    A Unifier carries the memo for Composite resolution, so it must be scoped
    to a single call (one validation, one API request) and never shared
    between concurrent callers.
    """

    def __init__(self, resolve: Resolver | None = None):
        """Initialize the unifier.

        Args:
            resolve: Callback returning the definition a RefType points at
        """
        self._resolve = resolve
        self._composites: dict[int, tuple[CompositeType, Any]] = {}
        self._in_progress: set[int] = set()
        self._active_refs: set[tuple[int, int]] = set()
        self._depth = 0

    def unify(self, a: Any, b: Any) -> Any:
        """Unify two expressions.

        Raises:
            ConflictError: If no value can satisfy both
            UnknownReferenceError: If a reference cannot be resolved
        """
        if a is b or a == b:
            return a
        self._depth += 1
        try:
            if self._depth > MAX_DEPTH:
                raise ConflictError(
                    f"unification does not terminate, check for a reference cycle through {describe(a, 1)}"
                )
            return self._unify(a, b)
        finally:
            self._depth -= 1

    def _unify(self, a: Any, b: Any) -> Any:
        # A composite met again while it is being resolved is a recursive
        # definition; leave the rest for when a value needs it.
        if isinstance(a, CompositeType):
            if id(a) in self._in_progress:
                return CompositeType(left=a, right=b)
            return self.unify(self.resolve_composite(a), b)
        if isinstance(b, CompositeType):
            if id(b) in self._in_progress:
                return CompositeType(left=a, right=b)
            return self.unify(a, self.resolve_composite(b))

        if isinstance(a, RefType) or isinstance(b, RefType):
            return self._unify_refs(a, b)

        if isinstance(a, UnionType):
            return self._unify_union(a, b)
        if isinstance(b, UnionType):
            return self._unify_union(b, a, swapped=True)

        if isinstance(a, ConditionalType):
            a = StructType(conditionals=(a,))
        if isinstance(b, ConditionalType):
            b = StructType(conditionals=(b,))

        if isinstance(a, AtomType) and isinstance(b, AtomType):
            if a.kind != b.kind:
                raise ConflictError(f"cannot unify {a.kind.value} with {b.kind.value}")
            return make_atom(a.kind, *a.refinements, *b.refinements)

        if isinstance(a, StructType) and isinstance(b, StructType):
            return self._unify_structs(a, b)

        if isinstance(a, ListType) and isinstance(b, ListType):
            return self._unify_lists(a, b)

        raise ConflictError(
            f"cannot unify {_kind_name(a)} ({describe(a, 1)}) with {_kind_name(b)} ({describe(b, 1)})"
        )

    def unify_all(self, exprs: list[Any]) -> Any:
        """Fold a list of expressions left to right."""
        return reduce(self.unify, exprs)

    def resolve_composite(self, composite: CompositeType) -> Any:
        """Evaluate a Composite node, memoized by node identity."""
        memo = self._composites.get(id(composite))
        if memo is not None:
            result = memo[1]
            if isinstance(result, ConflictError):
                raise result
            return result
        self._in_progress.add(id(composite))
        try:
            result = self.unify_all(composite.operands())
        except ConflictError as e:
            self._composites[id(composite)] = (composite, e)
            raise
        finally:
            self._in_progress.discard(id(composite))
        self._composites[id(composite)] = (composite, result)
        return result

    def deref(self, ref: RefType) -> Any:
        """Resolve a reference by one hop."""
        if self._resolve is None:
            raise UnknownReferenceError(f"no resolver to look up '{ref.qualified_name}'")
        return self._resolve(ref)

    def resolve(self, expr: Any) -> Any:
        """Peel References and Composites until a concrete node remains."""
        hops = 0
        while isinstance(expr, (RefType, CompositeType)):
            hops += 1
            if hops > MAX_REF_HOPS:
                raise ConflictError(f"reference cycle through {describe(expr, 1)}")
            if isinstance(expr, RefType):
                expr = self.deref(expr)
            else:
                expr = self.resolve_composite(expr)
        return expr

    def extend_struct(self, struct: StructType, addition: Any) -> StructType:
        """Merge a conditional's ``then`` into its enclosing struct.

        Fields added this way count as declared by the enclosing struct, so a
        closed struct accepts them.
        """
        addition = self.resolve(addition)
        if isinstance(addition, ConditionalType):
            return struct.model_copy(
                update={"conditionals": _canonical_conditionals(struct.conditionals + (addition,))}
            )
        if isinstance(addition, StructType):
            return self._unify_structs(struct, addition, extend=True)
        raise ConflictError(
            f"conditional constraint must describe struct fields, got {_kind_name(addition)}"
        )

    def check(self, expr: Any, _depth: int = 0) -> Any:
        """Evaluate every Composite nested in ``expr`` without following References.

        Used at load time so that a definition whose layers contradict each
        other is reported when the package is loaded, not when the first value
        reaches it.

        Raises:
            ConflictError: With the path of the first contradicting field
        """
        if isinstance(expr, CompositeType):
            if _depth >= MAX_CHECK_DEPTH:
                return expr
            return self.check(self.resolve_composite(expr), _depth + 1)
        if isinstance(expr, StructType):
            fields = {}
            for name, spec in expr.fields.items():
                try:
                    fields[name] = spec.model_copy(update={"type": self.check(spec.type, _depth)})
                except ConflictError as e:
                    raise e.at(name)
            conditionals = tuple(
                c.model_copy(update={"then": self.check(c.then, _depth)}) for c in expr.conditionals
            )
            return expr.model_copy(update={"fields": fields, "conditionals": conditionals})
        if isinstance(expr, ListType):
            try:
                return expr.model_copy(update={"element": self.check(expr.element, _depth)})
            except ConflictError as e:
                raise e.at("[]")
        if isinstance(expr, UnionType):
            # Only unification may drop alternatives; a declared one must hold on its own.
            alternatives = []
            for index, alt in enumerate(expr.alternatives, start=1):
                try:
                    alternatives.append(self.check(alt, _depth))
                except ConflictError as e:
                    raise ConflictError(
                        f"alternative {index} of {len(expr.alternatives)} is inconsistent: {e.message}",
                        e.location,
                        e.path,
                    )
            return make_union(alternatives)
        if isinstance(expr, ConditionalType):
            return expr.model_copy(update={"then": self.check(expr.then, _depth)})
        return expr

    def expand(self, expr: Any, _stack: tuple[str, ...] = ()) -> Any:
        """Inline every Reference and evaluate every Composite.

        A reference back into a definition that is already being expanded is
        left in place, so recursive types expand to a finite tree.
        """
        if isinstance(expr, RefType):
            name = expr.qualified_name
            if name in _stack:
                return expr
            return self.expand(self.deref(expr), _stack + (name,))
        if isinstance(expr, CompositeType):
            operands = [self.expand(op, _stack) for op in expr.operands()]
            return self.check(self.unify_all(operands))
        if isinstance(expr, StructType):
            return expr.model_copy(update={
                "fields": {
                    name: spec.model_copy(update={"type": self.expand(spec.type, _stack)})
                    for name, spec in expr.fields.items()
                },
                "conditionals": tuple(self.expand(c, _stack) for c in expr.conditionals),
            })
        if isinstance(expr, ListType):
            return expr.model_copy(update={"element": self.expand(expr.element, _stack)})
        if isinstance(expr, UnionType):
            return make_union([self.expand(alt, _stack) for alt in expr.alternatives])
        if isinstance(expr, ConditionalType):
            return expr.model_copy(update={"then": self.expand(expr.then, _stack)})
        return expr

    def _unify_refs(self, a: Any, b: Any) -> Any:
        if isinstance(a, RefType) and isinstance(b, RefType):
            if a.qualified_name == b.qualified_name:
                return a
        key = (id(a), id(b))
        if key in self._active_refs:
            # Recursive definitions: defer the rest until a value needs it.
            return CompositeType(left=a, right=b)
        self._active_refs.add(key)
        try:
            if isinstance(a, RefType):
                return self.unify(self.deref(a), b)
            return self.unify(a, self.deref(b))
        finally:
            self._active_refs.discard(key)

    def _unify_union(self, union: UnionType, other: Any, swapped: bool = False) -> Any:
        others = other.alternatives if isinstance(other, UnionType) else (other,)
        results = []
        conflicts = []
        for alt in union.alternatives:
            for candidate in others:
                try:
                    if swapped:
                        results.append(self.unify(candidate, alt))
                    else:
                        results.append(self.unify(alt, candidate))
                except ConflictError as e:
                    conflicts.append(e)
        if not results:
            detail = f" ({conflicts[0].message})" if len(conflicts) == 1 else ""
            raise ConflictError(
                f"no alternative of {describe(union, 1)} is compatible with {describe(other, 1)}{detail}"
            )
        return make_union(results)

    def _unify_lists(self, a: ListType, b: ListType) -> ListType:
        try:
            element = self.unify(a.element, b.element)
        except ConflictError as e:
            raise e.at("[]")
        mins = [n for n in (a.min_items, b.min_items) if n is not None]
        maxes = [n for n in (a.max_items, b.max_items) if n is not None]
        min_items = max(mins) if mins else None
        max_items = min(maxes) if maxes else None
        if min_items is not None and max_items is not None and min_items > max_items:
            raise ConflictError(f"empty item count range: {min_items}..{max_items}")
        return ListType(element=element, min_items=min_items, max_items=max_items)

    def _unify_structs(self, a: StructType, b: StructType, extend: bool = False) -> StructType:
        names = list(a.fields) + [name for name in b.fields if name not in a.fields]
        fields: dict[str, FieldSpec] = {}
        for name in names:
            left, right = a.fields.get(name), b.fields.get(name)
            if left is not None and right is not None:
                fields[name] = self._unify_fields(name, left, right)
                continue
            spec = left if left is not None else right
            other = b if left is not None else a
            if other.closed and not extend:
                if spec.required and not spec.has_default:
                    raise ConflictError(
                        f"field '{name}' is required by one side but not allowed by the closed struct",
                        path=name,
                    )
                # Closing wins: the field is now undeclared.
                continue
            fields[name] = spec

        closed = a.closed if extend else (a.closed or b.closed)
        return StructType(
            fields=fields,
            closed=closed,
            conditionals=_canonical_conditionals(a.conditionals + b.conditionals),
        )

    def _unify_fields(self, name: str, left: FieldSpec, right: FieldSpec) -> FieldSpec:
        try:
            field_type = self.unify(left.type, right.type)
        except ConflictError as e:
            raise e.at(name)

        if left.has_default and right.has_default and not values_equal(left.default, right.default):
            raise ConflictError(
                f"conflicting defaults {json.dumps(left.default)} and {json.dumps(right.default)}",
                path=name,
            )
        source = left if left.has_default else right
        descriptions = sorted(d for d in (left.description, right.description) if d)
        return FieldSpec(
            type=field_type,
            required=left.required or right.required,
            has_default=source.has_default,
            default=source.default,
            description=descriptions[0] if descriptions else None,
        )


def unify(a: Any, b: Any, resolve: Resolver | None = None) -> Any:
    """Convenience function to unify two expressions with a fresh Unifier."""
    return Unifier(resolve).unify(a, b)


def canonicalize(expr: Any) -> Any:
    """Rewrite an expression into canonical form.

    Two expressions that accept the same values through the same structure
    canonicalize to equal trees, which makes ``canonical_key`` usable as a
    fingerprint.
    """
    if isinstance(expr, AtomType):
        return make_atom(expr.kind, *expr.refinements)
    if isinstance(expr, UnionType):
        return make_union([canonicalize(alt) for alt in expr.alternatives])
    if isinstance(expr, StructType):
        return StructType(
            fields={
                name: spec.model_copy(update={"type": canonicalize(spec.type)})
                for name, spec in sorted(expr.fields.items())
            },
            closed=expr.closed,
            conditionals=_canonical_conditionals(
                tuple(canonicalize(c) for c in expr.conditionals)
            ),
        )
    if isinstance(expr, ListType):
        return expr.model_copy(update={"element": canonicalize(expr.element)})
    if isinstance(expr, ConditionalType):
        return expr.model_copy(update={"then": canonicalize(expr.then)})
    if isinstance(expr, CompositeType):
        return CompositeType(left=canonicalize(expr.left), right=canonicalize(expr.right))
    return expr
