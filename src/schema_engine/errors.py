"""Error types raised by the schema engine.

Three disjoint categories:
- LoadError: a package document could not be loaded (fatal to that load only)
- ConflictError / DriftError: the constraints themselves are inconsistent
- Violation (see engine.validation_engine): a value fails a valid schema,
  reported in a result and never raised
"""

from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class Location:
    """Where in the schema corpus an error originates."""

    package: str | None = None
    definition: str | None = None
    source_file: str | None = None

    def __str__(self) -> str:
        if self.package and self.definition:
            return f"{self.package}.{self.definition}"
        if self.package:
            return self.package
        if self.definition:
            return self.definition
        return self.source_file or "<unknown>"

    def to_dict(self) -> dict[str, Any]:
        return {
            "package": self.package,
            "definition": self.definition,
            "source_file": self.source_file,
        }


class SchemaEngineError(Exception):
    """Base class for schema errors that carry a location."""

    def __init__(self, message: str, location: Location | None = None):
        super().__init__(message)
        self.message = message
        self.location = location or Location()

    def __str__(self) -> str:
        return f"{self.location}: {self.message}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": type(self).__name__,
            "message": self.message,
            "location": self.location.to_dict(),
        }


class LoadError(SchemaEngineError):
    """A package is malformed, references something unknown, or forms an import cycle."""


class ConflictError(SchemaEngineError):
    """Two constraints cannot both hold.

    ``path`` names the sub-constraint (field path inside the type) where the
    contradiction was found.
    """

    def __init__(self, message: str, location: Location | None = None, path: str = ""):
        super().__init__(message, location)
        self.path = path

    def __str__(self) -> str:
        where = f" at {self.path}" if self.path else ""
        return f"{self.location}{where}: {self.message}"

    def at(self, segment: str) -> "ConflictError":
        """Return a copy with a field name (or ``[]`` for list items) prepended to the path."""
        if not self.path or self.path.startswith("["):
            path = f"{segment}{self.path}"
        else:
            path = f"{segment}.{self.path}"
        return ConflictError(self.message, self.location, path)

    def with_location(self, location: Location) -> "ConflictError":
        return ConflictError(self.message, location, self.path)

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["path"] = self.path
        return result


class DriftError(SchemaEngineError):
    """A base package changed in a way a dependent no longer tolerates."""

    def __init__(self, message: str, location: Location | None = None, reports: list[Any] | None = None):
        super().__init__(message, location)
        self.reports = reports or []


class PackageLoadError(Exception):
    """Raised when loading packages produced one or more errors.

    Collects every error of the load so they can be reported together.
    """

    def __init__(self, errors: list[SchemaEngineError]):
        self.errors = errors
        summary = "; ".join(str(e) for e in errors[:3])
        more = f" (and {len(errors) - 3} more)" if len(errors) > 3 else ""
        super().__init__(f"{len(errors)} load error(s): {summary}{more}")


class UnknownReferenceError(LookupError):
    """A type or machine name is not defined in the graph."""


class UnknownStateError(LookupError):
    """A state is not a key of the machine's transition table."""

    def __init__(self, machine: str, state: str):
        super().__init__(f"unknown state '{state}' in machine '{machine}'")
        self.machine = machine
        self.state = state


class TransitionError(ValueError):
    """A requested transition is not allowed."""

    def __init__(self, machine: str, source: str, target: str, reason: str):
        super().__init__(f"{machine}: transition from '{source}' to '{target}' is not allowed ({reason})")
        self.machine = machine
        self.source = source
        self.target = target
        self.reason = reason
