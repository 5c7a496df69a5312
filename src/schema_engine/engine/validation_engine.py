"""Validation Engine - checks concrete values against resolved type expressions.

The Validation Engine ensures:
- Every failed constraint is reported, never only the first one
- Absent fields with defaults are filled into a copy of the value
- Conditional constraints are resolved per value, not baked into the type
- Broken schemas surface as ``schema`` violations, distinct from bad data
"""

import json
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from schema_engine.errors import ConflictError, UnknownReferenceError
from schema_engine.engine.unification import Resolver, Unifier, canonical_key
from schema_engine.schemas.base import (
    AtomType,
    CompositeType,
    ConditionalType,
    FieldSpec,
    ListType,
    RefType,
    StructType,
    UnionType,
    describe,
)
from schema_engine.values import copy_value, format_path, kind_of


class ViolationSeverity(str, Enum):
    """What a violation says is wrong."""

    DATA = "data"
    SCHEMA = "schema"
    TIMEOUT = "timeout"


@dataclass
class Violation:
    """A single failure of a value against a schema."""

    path: str
    rule: str
    message: str
    severity: ViolationSeverity = ViolationSeverity.DATA
    context: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "rule": self.rule,
            "message": self.message,
            "severity": self.severity.value,
        }


@dataclass
class ValidationResult:
    """Result of validating one value."""

    filled: Any
    violations: list[Violation] = field(default_factory=list)

    @property
    def accepted(self) -> bool:
        return not self.violations

    @property
    def data_violations(self) -> list[Violation]:
        return [v for v in self.violations if v.severity == ViolationSeverity.DATA]

    @property
    def schema_violations(self) -> list[Violation]:
        return [v for v in self.violations if v.severity == ViolationSeverity.SCHEMA]

    @property
    def timed_out(self) -> bool:
        return any(v.severity == ViolationSeverity.TIMEOUT for v in self.violations)

    def to_dict(self) -> dict[str, Any]:
        return {
            "accepted": self.accepted,
            "filled": self.filled,
            "violations": [v.to_dict() for v in self.violations],
        }


class _DeadlineExceeded(Exception):
    def __init__(self, path: str):
        super().__init__(path)
        self.path = path


def _join(path: str, sub: str) -> str:
    if not sub:
        return path
    if not path or sub.startswith("["):
        return f"{path}{sub}"
    return f"{path}.{sub}"


def _json(value: Any) -> str:
    return json.dumps(value, default=str)


class ValidationEngine:
    """Validates values against type expressions.

    One engine serves one validation call: it owns the memo for Composite and
    Conditional resolution, which must not leak between differently-shaped
    values validated concurrently.
    """

    def __init__(
        self,
        resolve: Resolver | None = None,
        deadline: float | None = None,
        check_interval: int = 64,
    ):
        """Initialize the engine.

        Args:
            resolve: Callback resolving references against a graph
            deadline: ``time.monotonic()`` value after which validation stops
            check_interval: Number of visited nodes between deadline checks
        """
        self._unifier = Unifier(resolve)
        self._deadline = deadline
        self._check_interval = max(1, check_interval)
        self._nodes = 0
        self._violations: list[Violation] = []
        self._extensions: dict[tuple[int, str], tuple[StructType, StructType]] = {}

    def validate(self, expr: Any, value: Any) -> ValidationResult:
        """Validate a value and return every violation plus the default-filled copy."""
        self._violations = []
        try:
            filled = self._check(expr, value, "", None)
        except _DeadlineExceeded as e:
            self._violations.append(
                Violation(
                    path=e.path,
                    rule="timeout",
                    message="validation deadline exceeded",
                    severity=ViolationSeverity.TIMEOUT,
                )
            )
            filled = copy_value(value)
        return ValidationResult(filled=filled, violations=self._violations)

    # -------------------------------------------------------------------------

    def _tick(self, path: str) -> None:
        if self._deadline is None:
            return
        self._nodes += 1
        if self._nodes == 1 or self._nodes % self._check_interval == 0:
            if time.monotonic() > self._deadline:
                raise _DeadlineExceeded(path)

    def _add(
        self,
        path: str,
        rule: str,
        message: str,
        severity: ViolationSeverity = ViolationSeverity.DATA,
        **context: Any,
    ) -> None:
        self._violations.append(
            Violation(path=path, rule=rule, message=message, severity=severity, context=context)
        )

    def _check(self, expr: Any, value: Any, path: str, siblings: Any) -> Any:
        self._tick(path)

        if isinstance(expr, (RefType, CompositeType)):
            try:
                resolved = self._unifier.resolve(expr)
            except ConflictError as e:
                self._add(
                    _join(path, e.path),
                    "conflict",
                    f"schema is inconsistent: {e.message}",
                    ViolationSeverity.SCHEMA,
                )
                return copy_value(value)
            except UnknownReferenceError as e:
                self._add(path, "unresolved_ref", str(e), ViolationSeverity.SCHEMA)
                return copy_value(value)
            return self._check(resolved, value, path, siblings)

        if isinstance(expr, ConditionalType):
            expr = StructType(conditionals=(expr,))

        if isinstance(expr, AtomType):
            return self._check_atom(expr, value, path, siblings)
        if isinstance(expr, StructType):
            return self._check_struct(expr, value, path)
        if isinstance(expr, ListType):
            return self._check_list(expr, value, path, siblings)
        if isinstance(expr, UnionType):
            return self._check_union(expr, value, path, siblings)

        self._add(path, "unsupported", f"unsupported type expression {expr!r}", ViolationSeverity.SCHEMA)
        return copy_value(value)

    def _check_atom(self, expr: AtomType, value: Any, path: str, siblings: Any) -> Any:
        if not expr.kind.matches(value):
            self._add(
                path,
                "type",
                f"expected {expr.kind.value}, got {kind_of(value).value}",
                expected=expr.kind.value,
            )
            return copy_value(value)

        for refinement in expr.refinements:
            if refinement.rule == "field_bound":
                ok = refinement.accepts_in(value, siblings)
            else:
                ok = refinement.accepts(value)
            if not ok:
                self._add(
                    path,
                    refinement.rule,
                    f"{_json(value)} does not satisfy {refinement.describe()}",
                    actual=value,
                )
        return value

    def _effective_struct(self, struct: StructType, value: dict[str, Any], path: str) -> StructType | None:
        """Apply every conditional whose predicate holds for this value."""
        applied: set[str] = set()
        current = struct
        changed = True
        while changed:
            changed = False
            for conditional in current.conditionals:
                key = canonical_key(conditional)
                if key in applied or not conditional.predicate.holds(value):
                    continue
                applied.add(key)
                memo = self._extensions.get((id(current), key))
                if memo is not None:
                    current = memo[1]
                else:
                    try:
                        extended = self._unifier.extend_struct(current, conditional.then)
                    except (ConflictError, UnknownReferenceError) as e:
                        self._add(
                            path,
                            "conflict",
                            f"schema is inconsistent when {conditional.predicate.describe()}: "
                            f"{getattr(e, 'message', e)}",
                            ViolationSeverity.SCHEMA,
                        )
                        return None
                    self._extensions[(id(current), key)] = (current, extended)
                    current = extended
                changed = True
                break
        return current

    def _check_struct(self, expr: StructType, value: Any, path: str) -> Any:
        if not isinstance(value, dict):
            self._add(path, "type", f"expected struct, got {kind_of(value).value}", expected="struct")
            return copy_value(value)

        effective = self._effective_struct(expr, value, path) if expr.conditionals else expr
        if effective is None:
            return copy_value(value)

        filled: dict[str, Any] = {}
        for name, spec in effective.fields.items():
            field_path = format_path(path, name)
            if name in value:
                filled[name] = self._check(spec.type, value[name], field_path, value)
            elif spec.has_default:
                filled[name] = self._check_default(spec, field_path, value)
            elif spec.required:
                self._add(field_path, "required", "required field is missing")

        for name, item in value.items():
            if name in effective.fields:
                continue
            if effective.closed:
                self._add(
                    format_path(path, name),
                    "unexpected_field",
                    f"field '{name}' is not allowed",
                )
            filled[name] = copy_value(item)
        return filled

    def _check_default(self, spec: FieldSpec, path: str, siblings: Any) -> Any:
        start = len(self._violations)
        filled = self._check(spec.type, copy_value(spec.default), path, siblings)
        for violation in self._violations[start:]:
            violation.severity = ViolationSeverity.SCHEMA
            violation.message = f"default value is invalid: {violation.message}"
        return filled

    def _check_list(self, expr: ListType, value: Any, path: str, siblings: Any) -> Any:
        if not isinstance(value, list):
            self._add(path, "type", f"expected list, got {kind_of(value).value}", expected="list")
            return copy_value(value)

        if expr.min_items is not None and len(value) < expr.min_items:
            self._add(path, "items", f"expected at least {expr.min_items} items, got {len(value)}")
        if expr.max_items is not None and len(value) > expr.max_items:
            self._add(path, "items", f"expected at most {expr.max_items} items, got {len(value)}")

        return [
            self._check(expr.element, item, format_path(path, index), siblings)
            for index, item in enumerate(value)
        ]

    def _check_union(self, expr: UnionType, value: Any, path: str, siblings: Any) -> Any:
        outer = self._violations
        failures: list[str] = []
        broken: list[Violation] = []
        try:
            for alternative in expr.alternatives:
                self._violations = []
                filled = self._check(alternative, value, path, siblings)
                if not self._violations:
                    return filled
                broken.extend(v for v in self._violations if v.severity == ViolationSeverity.SCHEMA)
                first = self._violations[0]
                failures.append(f"{describe(alternative, 1)}: {first.message}")
        finally:
            self._violations = outer

        # A broken alternative is a schema problem, not a mismatch of the value.
        self._violations.extend(broken)
        self._add(
            path,
            "union",
            f"value matches none of {len(expr.alternatives)} alternatives",
            alternatives=failures,
        )
        return copy_value(value)


def validate(
    expr: Any,
    value: Any,
    resolve: Resolver | None = None,
    deadline: float | None = None,
) -> ValidationResult:
    """Convenience function to validate a value with a fresh engine."""
    return ValidationEngine(resolve=resolve, deadline=deadline).validate(expr, value)
