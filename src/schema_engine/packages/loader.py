"""Package Loader - turns package documents into an immutable Graph.

The loader ensures, at load time rather than evaluation time:
- Package names are unique and every import exists
- Imports form a DAG
- Every reference names an imported package and an existing definition
- No definition is an endless chain of references
- Composed definitions are free of contradictions
- Conditions and field bounds name fields their struct declares
- Field defaults satisfy their field types
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Iterator

import structlog

from schema_engine.config.settings import EngineSettings
from schema_engine.engine.unification import Unifier, canonical_key, canonicalize
from schema_engine.engine.validation_engine import ValidationEngine
from schema_engine.errors import (
    ConflictError,
    LoadError,
    Location,
    PackageLoadError,
    SchemaEngineError,
    UnknownReferenceError,
)
from schema_engine.packages.base import CrossReference, Graph, Package
from schema_engine.schemas.base import (
    AtomType,
    CompositeType,
    ConditionalType,
    FieldBoundRefinement,
    FieldSpec,
    ListType,
    RefType,
    StructType,
    UnionType,
)
from schema_engine.schemas.parser import discover_package_files, parse_package_file
from schema_engine.utils.helpers import fingerprint
from schema_engine.values import format_path, split_path

log = structlog.get_logger(__name__)


@dataclass(frozen=True)
class RefSite:
    """One reference found while walking a definition."""

    path: str
    ref: RefType
    site: Any
    defaults: tuple[Any, ...]


def iter_refs(expr: Any, path: str = "", site: Any = None, defaults: tuple[Any, ...] = ()) -> Iterator[RefSite]:
    """Yield every reference in ``expr`` with the field-level expression that uses it.

    The site of a reference is the type of the innermost field containing it
    (or the whole definition), and ``defaults`` are that field's defaults.
    """
    site = expr if site is None else site
    if isinstance(expr, RefType):
        yield RefSite(path, expr, site, defaults)
    elif isinstance(expr, CompositeType):
        for operand in expr.operands():
            yield from iter_refs(operand, path, site, defaults)
    elif isinstance(expr, StructType):
        for name, spec in expr.fields.items():
            field_defaults = (spec.default,) if spec.has_default else ()
            yield from iter_refs(spec.type, format_path(path, name), None, field_defaults)
        for conditional in expr.conditionals:
            yield from iter_refs(conditional.then, path, site, ())
    elif isinstance(expr, ListType):
        yield from iter_refs(expr.element, f"{path}[]", site, ())
    elif isinstance(expr, UnionType):
        for alternative in expr.alternatives:
            yield from iter_refs(alternative, path, site, defaults)
    elif isinstance(expr, ConditionalType):
        yield from iter_refs(expr.then, path, site, defaults)


def iter_defaults(expr: Any, path: str = "") -> Iterator[tuple[str, FieldSpec]]:
    """Yield ``(path, field)`` for every field with a default, without following references."""
    if isinstance(expr, StructType):
        for name, spec in expr.fields.items():
            field_path = format_path(path, name)
            if spec.has_default:
                yield field_path, spec
            yield from iter_defaults(spec.type, field_path)
        for conditional in expr.conditionals:
            yield from iter_defaults(conditional.then, path)
    elif isinstance(expr, ListType):
        yield from iter_defaults(expr.element, f"{path}[]")
    elif isinstance(expr, UnionType):
        for alternative in expr.alternatives:
            yield from iter_defaults(alternative, path)
    elif isinstance(expr, ConditionalType):
        yield from iter_defaults(expr.then, path)


def iter_undeclared_siblings(expr: Any, path: str = "") -> Iterator[str]:
    """Yield a message for every condition or field bound naming a field its struct does not declare.

    Fields added by a struct's conditionals count as declared. References are
    not followed, and conditions outside any struct have no scope to check.
    """
    if isinstance(expr, StructType):
        yield from _struct_siblings(expr, _declared_fields(expr), path)
    elif isinstance(expr, ListType):
        yield from iter_undeclared_siblings(expr.element, f"{path}[]")
    elif isinstance(expr, UnionType):
        for alternative in expr.alternatives:
            yield from iter_undeclared_siblings(alternative, path)
    elif isinstance(expr, ConditionalType):
        yield from iter_undeclared_siblings(expr.then, path)


def _declared_fields(struct: StructType) -> set[str]:
    names = set(struct.fields)
    for conditional in struct.conditionals:
        if isinstance(conditional.then, StructType):
            names |= _declared_fields(conditional.then)
    return names


def _struct_siblings(struct: StructType, declared: set[str], path: str) -> Iterator[str]:
    for name, spec in struct.fields.items():
        field_path = format_path(path, name)
        for bound in _field_bounds(spec.type):
            if _first_segment(bound.field) not in declared:
                yield f"bound on {field_path} names undeclared field '{bound.field}'"
        yield from iter_undeclared_siblings(spec.type, field_path)
    for conditional in struct.conditionals:
        predicate = conditional.predicate
        if _first_segment(predicate.field) not in declared:
            where = f" at {path}" if path else ""
            yield f"condition{where} names undeclared field '{predicate.field}'"
        if isinstance(conditional.then, StructType):
            yield from _struct_siblings(conditional.then, declared, path)
        else:
            yield from iter_undeclared_siblings(conditional.then, path)


def _field_bounds(expr: Any) -> Iterator[FieldBoundRefinement]:
    # Bounds inside lists and unions still read the enclosing struct.
    if isinstance(expr, AtomType):
        yield from expr.find("field_bound")
    elif isinstance(expr, ListType):
        yield from _field_bounds(expr.element)
    elif isinstance(expr, UnionType):
        for alternative in expr.alternatives:
            yield from _field_bounds(alternative)


def _first_segment(path: str) -> str | None:
    try:
        segments = split_path(path)
    except ValueError:
        return None
    return segments[0] if segments and isinstance(segments[0], str) else None


def definition_fingerprint(graph: Graph, ref: RefType) -> str:
    """Digest of a definition with every reference inlined and every composition evaluated."""
    unifier = Unifier(graph.resolve)
    try:
        expanded = canonicalize(unifier.expand(ref))
    except ConflictError as e:
        return fingerprint(f"conflict:{e.path}:{e.message}")
    except UnknownReferenceError as e:
        return fingerprint(f"unresolved:{e}")
    return fingerprint(canonical_key(expanded))


class PackageLoader:
    """Loads package documents into Graphs.

    Parsed packages are cached per file and reused while the file's mtime and
    size are unchanged, so repeated loads only re-parse what changed.
    """

    def __init__(self, settings: EngineSettings | None = None):
        """Initialize the loader.

        Args:
            settings: Engine settings (package file patterns)
        """
        self.settings = settings or EngineSettings()
        self._cache: dict[Path, tuple[tuple[int, int], Package]] = {}
        self._generation = 0

    def load(self, paths: Iterable[Path | str], lenient: bool = False) -> Graph:
        """Load every package document under ``paths``.

        Args:
            paths: Package files and/or directories
            lenient: See ``build_graph``

        Returns:
            The compiled Graph

        Raises:
            PackageLoadError: With every error found in this load
        """
        files = discover_package_files(paths, self.settings.package_patterns)
        packages, errors = self.parse_files(files)
        if errors:
            raise PackageLoadError(errors)
        return self.build_graph(packages, lenient=lenient)

    def parse_files(self, files: Iterable[Path]) -> tuple[list[Package], list[SchemaEngineError]]:
        """Parse files, reusing cached packages for unchanged files."""
        packages: list[Package] = []
        errors: list[SchemaEngineError] = []
        for path in files:
            path = Path(path)
            try:
                stat = path.stat()
            except OSError as e:
                errors.append(LoadError(f"cannot read file: {e}", Location(source_file=str(path))))
                continue
            signature = (stat.st_mtime_ns, stat.st_size)
            cached = self._cache.get(path)
            if cached is not None and cached[0] == signature:
                packages.append(cached[1])
                continue
            try:
                package = parse_package_file(path)
            except PackageLoadError as e:
                self._cache.pop(path, None)
                errors.extend(e.errors)
                continue
            self._cache[path] = (signature, package)
            log.debug(
                "package_parsed",
                package=package.name,
                source=str(path),
                definitions=len(package.definitions),
                machines=len(package.machines),
            )
            packages.append(package)
        return packages, errors

    def build_graph(self, packages: list[Package], lenient: bool = False) -> Graph:
        """Link parsed packages into a Graph.

        Args:
            packages: Parsed packages
            lenient: Keep going past unknown imports, unresolved references,
                conflicts and invalid defaults, recording them on
                ``Graph.problems``. Drift checks load the changed package set
                this way, since breaking dependents is what they look for.

        Raises:
            PackageLoadError: If names, imports or references do not check out
        """
        by_name: dict[str, Package] = {}
        fatal: list[SchemaEngineError] = []
        errors: list[SchemaEngineError] = []
        for package in packages:
            if package.name in by_name:
                other = by_name[package.name]
                fatal.append(LoadError(
                    f"duplicate package name, also defined in {other.source_file}",
                    Location(package=package.name, source_file=package.source_file),
                ))
                continue
            by_name[package.name] = package

        for package in by_name.values():
            for imported in package.imports:
                if imported == package.name:
                    fatal.append(LoadError("package imports itself", _location(package)))
                elif imported not in by_name:
                    errors.append(LoadError(f"imports unknown package '{imported}'", _location(package)))

        order, cycle_errors = _import_order(by_name)
        fatal.extend(cycle_errors)
        if fatal:
            raise PackageLoadError(fatal + errors)

        for package in by_name.values():
            errors.extend(_check_references(package, by_name))
        if errors and not lenient:
            raise PackageLoadError(errors)

        graph = Graph(packages=by_name, order=order)
        for name in order:
            errors.extend(_check_definitions(graph, by_name[name]))
        if errors and not lenient:
            raise PackageLoadError(errors)
        for error in errors:
            log.warning("load_problem_ignored", error=str(error))

        references = tuple(_cross_references(graph))
        targets = {r.reference: r.target for r in references}
        fingerprints = {
            reference: definition_fingerprint(graph, targets[reference])
            for reference in sorted(targets)
        }
        self._generation += 1
        graph = Graph(
            packages=by_name,
            order=order,
            references=references,
            fingerprints=fingerprints,
            generation=self._generation,
            problems=tuple(errors),
        )
        for package in graph:
            log.debug("package_loaded", package=package.name, source=package.source_file)
        log.info(
            "graph_built",
            packages=len(graph),
            references=len(references),
            generation=graph.generation,
        )
        return graph


def _location(package: Package, definition: str | None = None) -> Location:
    return Location(package=package.name, definition=definition, source_file=package.source_file)


def _import_order(packages: dict[str, Package]) -> tuple[tuple[str, ...], list[LoadError]]:
    """Topologically order packages, dependencies first, reporting import cycles."""
    order: list[str] = []
    state: dict[str, str] = {}
    errors: list[LoadError] = []
    reported: set[frozenset[str]] = set()

    def visit(name: str, stack: list[str]) -> None:
        if state.get(name) == "done":
            return
        if state.get(name) == "active":
            cycle = stack[stack.index(name):] + [name]
            key = frozenset(cycle)
            if key not in reported:
                reported.add(key)
                errors.append(LoadError(
                    f"import cycle: {' -> '.join(cycle)}",
                    _location(packages[name]),
                ))
            return
        state[name] = "active"
        stack.append(name)
        for imported in packages[name].imports:
            if imported in packages and imported != name:
                visit(imported, stack)
        stack.pop()
        state[name] = "done"
        order.append(name)

    for name in packages:
        visit(name, [])
    return tuple(order), errors


def _check_references(package: Package, packages: dict[str, Package]) -> list[LoadError]:
    errors = []
    for definition, expr in package.definitions.items():
        for site in iter_refs(expr):
            ref = site.ref
            where = f" at {site.path}" if site.path else ""
            if ref.package != package.name and ref.package not in package.imports:
                errors.append(LoadError(
                    f"reference '{ref.qualified_name}'{where} uses package '{ref.package}' without importing it",
                    _location(package, definition),
                ))
            elif ref.package not in packages or ref.name not in packages[ref.package].definitions:
                errors.append(LoadError(
                    f"unresolved reference '{ref.qualified_name}'{where}",
                    _location(package, definition),
                ))
    return errors


def _check_definitions(graph: Graph, package: Package) -> list[SchemaEngineError]:
    """Evaluate compositions and check defaults of every definition in a package."""
    errors: list[SchemaEngineError] = []
    for definition, expr in package.definitions.items():
        location = _location(package, definition)
        unifier = Unifier(graph.resolve)
        try:
            unifier.resolve(RefType(name=definition, package=package.name))
            checked = unifier.check(expr)
        except ConflictError as e:
            errors.append(e.with_location(location))
            continue
        except UnknownReferenceError as e:
            errors.append(LoadError(str(e), location))
            continue

        errors.extend(LoadError(message, location) for message in iter_undeclared_siblings(checked))
        for path, spec in iter_defaults(checked):
            result = ValidationEngine(graph.resolve).validate(spec.type, spec.default)
            if result.violations:
                first = result.violations[0]
                detail = f" (at {first.path})" if first.path else ""
                errors.append(LoadError(f"default at {path} is invalid: {first.message}{detail}", location))
    return errors


def _cross_references(graph: Graph) -> Iterator[CrossReference]:
    for package in graph:
        for definition, expr in package.definitions.items():
            for site in iter_refs(expr):
                if site.ref.package == package.name:
                    continue
                yield CrossReference(
                    package=package.name,
                    definition=definition,
                    path=site.path,
                    target=site.ref,
                    site=site.site,
                    defaults=site.defaults,
                )


def load_packages(
    paths: Iterable[Path | str],
    settings: EngineSettings | None = None,
    lenient: bool = False,
) -> Graph:
    """Convenience function to load packages with a fresh loader.

    Raises:
        PackageLoadError: With every error found in the load
    """
    return PackageLoader(settings).load(paths, lenient=lenient)
