"""Drift Resolver - classifies how base changes affect dependent packages.

Every cross-package reference recorded in the old graph is re-checked against
the new graph. The check is one-way: the dependent's own constraint at the
use site must still unify with the new base, and its defaults must still
validate.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any

import structlog

from schema_engine.engine.unification import Unifier, canonical_key, canonicalize
from schema_engine.engine.validation_engine import ValidationEngine
from schema_engine.errors import ConflictError, DriftError, Location, UnknownReferenceError
from schema_engine.packages.base import CrossReference, Graph
from schema_engine.packages.loader import definition_fingerprint
from schema_engine.schemas.base import ListType, StructType, describe
from schema_engine.values import format_path

log = structlog.get_logger(__name__)


class DriftStatus(str, Enum):
    """How a referenced base definition changed."""

    UNCHANGED = "unchanged"
    WIDENED = "widened"
    NARROWED = "narrowed"
    NARROWED_INCOMPATIBLE = "narrowed_incompatible"
    REMOVED = "removed"

    @property
    def unsafe(self) -> bool:
        return self in (DriftStatus.NARROWED_INCOMPATIBLE, DriftStatus.REMOVED)


@dataclass
class DriftReport:
    """Classification of one dependent reference."""

    package: str
    definition: str
    path: str
    reference: str
    status: DriftStatus
    changed: str = ""
    message: str = ""

    @property
    def unsafe(self) -> bool:
        return self.status.unsafe

    @property
    def location(self) -> Location:
        return Location(package=self.package, definition=self.definition)

    def to_dict(self) -> dict[str, Any]:
        return {
            "package": self.package,
            "definition": self.definition,
            "path": self.path,
            "reference": self.reference,
            "status": self.status.value,
            "changed": self.changed,
            "message": self.message,
        }


def first_difference(old: Any, new: Any, path: str = "") -> str | None:
    """Path of the first sub-constraint that differs between two expanded types."""
    if canonical_key(old) == canonical_key(new):
        return None
    if isinstance(old, StructType) and isinstance(new, StructType):
        for name in sorted(set(old.fields) | set(new.fields)):
            field_path = format_path(path, name)
            if name not in old.fields or name not in new.fields:
                return field_path
            left, right = old.fields[name], new.fields[name]
            if (left.required, left.has_default, left.default) != (right.required, right.has_default, right.default):
                return field_path
            found = first_difference(left.type, right.type, field_path)
            if found is not None:
                return found
        return path
    if isinstance(old, ListType) and isinstance(new, ListType):
        if (old.min_items, old.max_items) != (new.min_items, new.max_items):
            return path
        found = first_difference(old.element, new.element, f"{path}[]")
        return path if found is None else found
    return path


class DriftChecker:
    """Compares an old and a new Graph reference by reference."""

    def __init__(self, old: Graph, new: Graph):
        self.old = old
        self.new = new
        self._expanded: dict[str, tuple[Any, Any] | None] = {}

    def check(self) -> list[DriftReport]:
        """Classify every cross-package reference of the old graph.

        References from packages that no longer exist are skipped; there is no
        dependent left to break.
        """
        reports = []
        for reference in self.old.references:
            if reference.package not in self.new:
                continue
            reports.append(self.classify(reference))
        return reports

    def classify(self, reference: CrossReference) -> DriftReport:
        report = DriftReport(
            package=reference.package,
            definition=reference.definition,
            path=reference.path,
            reference=reference.reference,
            status=DriftStatus.UNCHANGED,
        )
        try:
            self.new.resolve(reference.target)
        except UnknownReferenceError as e:
            report.status = DriftStatus.REMOVED
            report.message = str(e)
            return report

        old_fingerprint = self.old.fingerprints.get(reference.reference)
        new_fingerprint = self.new.fingerprints.get(reference.reference)
        if new_fingerprint is None:
            new_fingerprint = definition_fingerprint(self.new, reference.target)
        if old_fingerprint == new_fingerprint:
            return report

        incompatible = self._site_conflict(reference)
        if incompatible is not None:
            report.status = DriftStatus.NARROWED_INCOMPATIBLE
            report.changed, report.message = incompatible
            return report

        expanded = self._expand(reference)
        if expanded is None:
            report.status = DriftStatus.NARROWED_INCOMPATIBLE
            report.message = "definition no longer resolves"
            return report
        old_expr, new_expr = expanded
        report.changed = first_difference(old_expr, new_expr) or ""
        try:
            merged = canonicalize(Unifier(self.new.resolve).unify(old_expr, new_expr))
        except ConflictError as e:
            report.status = DriftStatus.NARROWED_INCOMPATIBLE
            report.changed = e.path or report.changed
            report.message = f"old and new definitions have no value in common: {e.message}"
            return report

        if canonical_key(merged) == canonical_key(old_expr):
            report.status = DriftStatus.WIDENED
            report.message = f"now accepts {describe(new_expr, 1)}"
        else:
            report.status = DriftStatus.NARROWED
            report.message = "rejects values it used to accept; dependent constraints still hold"
        return report

    def _site_conflict(self, reference: CrossReference) -> tuple[str, str] | None:
        """Re-check the dependent's use site and defaults against the new graph."""
        unifier = Unifier(self.new.resolve)
        try:
            unifier.resolve(reference.site)
            unifier.check(reference.site)
        except ConflictError as e:
            return format_path(reference.path, e.path) if e.path else reference.path, e.message
        except UnknownReferenceError as e:
            return reference.path, str(e)

        for default in reference.defaults:
            result = ValidationEngine(self.new.resolve).validate(reference.site, default)
            if result.violations:
                first = result.violations[0]
                path = format_path(reference.path, first.path) if first.path else reference.path
                return path, f"default {default!r} is no longer valid: {first.message}"
        return None

    def _expand(self, reference: CrossReference) -> tuple[Any, Any] | None:
        key = reference.reference
        if key not in self._expanded:
            try:
                old_expr = canonicalize(Unifier(self.old.resolve).expand(reference.target))
                new_expr = canonicalize(Unifier(self.new.resolve).expand(reference.target))
            except (ConflictError, UnknownReferenceError):
                self._expanded[key] = None
            else:
                self._expanded[key] = (old_expr, new_expr)
        return self._expanded[key]


def check_drift(old: Graph, new: Graph, strict: bool = False) -> list[DriftReport]:
    """Classify every dependent reference of ``old`` against ``new``.

    Args:
        old: Graph the dependents were validated against
        new: Graph after the base change
        strict: Raise instead of returning when a change is unsafe

    Returns:
        One report per cross-package reference

    Raises:
        DriftError: In strict mode, if any report is unsafe
    """
    reports = DriftChecker(old, new).check()
    unsafe = [r for r in reports if r.unsafe]
    for report in reports:
        if report.status != DriftStatus.UNCHANGED:
            log.info("drift_detected", **report.to_dict())
    if unsafe and strict:
        first = unsafe[0]
        raise DriftError(
            f"{len(unsafe)} unsafe change(s); first: {first.reference} at {first.path or '<root>'} "
            f"is {first.status.value}: {first.message}",
            first.location,
            reports=reports,
        )
    return reports
