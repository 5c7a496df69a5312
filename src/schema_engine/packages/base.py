"""Base classes for packages and the compiled graph.

A Graph is the immutable product of one load cycle: every package of the
cycle, a symbol table over all of their definitions, and the cross-package
references the drift checker tracks. Graphs are never modified after they are
built; a rebuild produces a new Graph.
"""

from dataclasses import dataclass, field
from typing import Any, Iterator

from pydantic import BaseModel, ConfigDict, Field

from schema_engine.engine.state_machine import StateMachine
from schema_engine.errors import UnknownReferenceError
from schema_engine.schemas.base import RefType, TypeExpr


class Package(BaseModel):
    """One schema document: a named set of definitions and state machines."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., description="Package name, unique within a load")
    imports: tuple[str, ...] = Field(default=(), description="Packages this one may reference")
    definitions: dict[str, TypeExpr] = Field(default_factory=dict, description="Named type expressions")
    machines: dict[str, StateMachine] = Field(default_factory=dict, description="Named state machines")
    description: str | None = Field(default=None, description="Package description")
    version: str | None = Field(default=None, description="Optional document version")
    source_file: str | None = Field(default=None, description="File the package was read from")


@dataclass(frozen=True)
class CrossReference:
    """A reference from a definition in one package to a definition in another."""

    package: str
    definition: str
    path: str
    target: RefType
    site: Any
    defaults: tuple[Any, ...] = ()

    @property
    def reference(self) -> str:
        return self.target.qualified_name


@dataclass(frozen=True)
class Graph:
    """Immutable snapshot of a loaded package set.

    ``problems`` is empty unless the graph was built leniently for a drift check.
    """

    packages: dict[str, Package]
    order: tuple[str, ...]
    references: tuple[CrossReference, ...] = ()
    fingerprints: dict[str, str] = field(default_factory=dict)
    generation: int = 0
    problems: tuple[Any, ...] = ()

    def __iter__(self) -> Iterator[Package]:
        for name in self.order:
            yield self.packages[name]

    def __contains__(self, name: str) -> bool:
        return name in self.packages

    def __len__(self) -> int:
        return len(self.packages)

    def resolve(self, ref: RefType) -> Any:
        """Return the definition a reference points at (one hop).

        Raises:
            UnknownReferenceError: If the package or definition does not exist
        """
        if ref.package is None:
            raise UnknownReferenceError(f"reference '{ref.name}' has no package")
        package = self.packages.get(ref.package)
        if package is None:
            raise UnknownReferenceError(f"unknown package '{ref.package}'")
        if ref.name not in package.definitions:
            raise UnknownReferenceError(f"'{ref.package}' has no definition '{ref.name}'")
        return package.definitions[ref.name]

    def lookup(self, type_ref: str) -> Any:
        """Find a definition by ``package.Name``, or by ``Name`` if it is unambiguous."""
        return self.resolve(self.parse_ref(type_ref))

    def parse_ref(self, type_ref: str) -> RefType:
        """Turn ``package.Name`` (or an unambiguous ``Name``) into a RefType."""
        package, _, name = type_ref.rpartition(".")
        if package:
            return RefType(name=name, package=package)
        owners = [p.name for p in self if name in p.definitions]
        if len(owners) == 1:
            return RefType(name=name, package=owners[0])
        if not owners:
            raise UnknownReferenceError(f"no package defines '{name}'")
        raise UnknownReferenceError(f"'{name}' is ambiguous, defined in: {', '.join(owners)}")

    def machine(self, machine_ref: str) -> StateMachine:
        """Find a state machine by ``package.Name``, or by ``Name`` if unambiguous."""
        package_name, _, name = machine_ref.rpartition(".")
        if package_name:
            package = self.packages.get(package_name)
            if package is None or name not in package.machines:
                raise UnknownReferenceError(f"unknown state machine '{machine_ref}'")
            return package.machines[name]
        found = [p.machines[name] for p in self if name in p.machines]
        if len(found) == 1:
            return found[0]
        if not found:
            raise UnknownReferenceError(f"unknown state machine '{machine_ref}'")
        raise UnknownReferenceError(f"state machine '{machine_ref}' is ambiguous")
