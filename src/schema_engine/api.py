"""Evaluation API - the stable surface every consumer calls.

All functions take the Graph explicitly; nothing here holds state between
calls, so several graphs (old and new, for drift checks) can be used side by
side.
"""

import time
from pathlib import Path
from typing import Any, Iterable

from schema_engine.config.settings import EngineSettings
from schema_engine.engine import state_machine
from schema_engine.engine.state_machine import TransitionMatrix
from schema_engine.engine.unification import Unifier
from schema_engine.engine.validation_engine import ValidationEngine, ValidationResult
from schema_engine.errors import ConflictError, Location
from schema_engine.packages import drift, loader
from schema_engine.packages.base import Graph
from schema_engine.packages.drift import DriftReport
from schema_engine.schemas.base import RefType, describe
from schema_engine.values import ensure_value

_DEFAULTS = EngineSettings()


def load_packages(
    paths: Iterable[Path | str],
    settings: EngineSettings | None = None,
    lenient: bool = False,
) -> Graph:
    """Load package documents into a Graph.

    Args:
        paths: Package files and/or directories
        settings: Engine settings
        lenient: Tolerate broken references and conflicts (for drift checks)

    Returns:
        The compiled Graph

    Raises:
        PackageLoadError: With every LoadError/ConflictError of the load
    """
    return loader.load_packages(paths, settings, lenient=lenient)


def _ref(graph: Graph, type_ref: str | RefType) -> RefType:
    if isinstance(type_ref, RefType):
        return type_ref
    return graph.parse_ref(type_ref)


def validate(
    graph: Graph,
    type_ref: str | RefType,
    value: Any,
    deadline: float | None = None,
    timeout: float | None = None,
    settings: EngineSettings | None = None,
) -> ValidationResult:
    """Validate a value against a named type.

    Args:
        graph: Graph to resolve against
        type_ref: ``package.Name`` (or an unambiguous ``Name``)
        value: Plain Python data
        deadline: ``time.monotonic()`` value after which validation stops
        timeout: Seconds from now; ignored when ``deadline`` is given
        settings: Engine settings (default timeout, deadline check interval)

    Returns:
        ValidationResult with the default-filled copy and every violation

    Raises:
        UnknownReferenceError: If ``type_ref`` names no definition
        ValueError: If ``value`` is not plain data
    """
    settings = settings or _DEFAULTS
    ref = _ref(graph, type_ref)
    graph.resolve(ref)
    value = ensure_value(value)

    if deadline is None:
        seconds = timeout if timeout is not None else settings.default_timeout_seconds
        if seconds is not None:
            deadline = time.monotonic() + seconds

    engine = ValidationEngine(
        resolve=graph.resolve,
        deadline=deadline,
        check_interval=settings.deadline_check_interval,
    )
    return engine.validate(ref, value)


def unify(graph: Graph, type_ref_a: str | RefType, type_ref_b: str | RefType) -> Any:
    """Unify two named types.

    Returns:
        The most specific type both accept, with nested compositions evaluated

    Raises:
        ConflictError: If no value satisfies both, located at the pair
        UnknownReferenceError: If either name is unknown
    """
    left, right = _ref(graph, type_ref_a), _ref(graph, type_ref_b)
    unifier = Unifier(graph.resolve)
    try:
        return unifier.check(unifier.unify(unifier.resolve(left), unifier.resolve(right)))
    except ConflictError as e:
        location = Location(
            package=left.package,
            definition=f"{left.name} & {describe(right)}",
        )
        raise e.with_location(location)


def transitions(
    graph: Graph,
    machine: str,
    state: str,
    allow_self_loop: bool | None = None,
    settings: EngineSettings | None = None,
) -> list[str]:
    """States reachable in one step from ``state``.

    Raises:
        UnknownReferenceError: If the machine does not exist
        UnknownStateError: If the state is not in the machine
    """
    if allow_self_loop is None:
        allow_self_loop = (settings or _DEFAULTS).allow_self_loop
    return state_machine.valid_targets(graph.machine(machine), state, allow_self_loop)


def is_valid_transition(
    graph: Graph,
    machine: str,
    source: str,
    target: str,
    allow_self_loop: bool | None = None,
    settings: EngineSettings | None = None,
) -> bool:
    """Whether ``source -> target`` is allowed in the machine. Unknown states are never allowed."""
    if allow_self_loop is None:
        allow_self_loop = (settings or _DEFAULTS).allow_self_loop
    return state_machine.is_valid_transition(graph.machine(machine), source, target, allow_self_loop)


def check_transition(
    graph: Graph,
    machine: str,
    source: str,
    target: str,
    allow_self_loop: bool | None = None,
    settings: EngineSettings | None = None,
) -> None:
    """Raise unless ``source -> target`` is allowed.

    Raises:
        TransitionError: With the reason and the allowed targets
        UnknownReferenceError: If the machine does not exist
    """
    if allow_self_loop is None:
        allow_self_loop = (settings or _DEFAULTS).allow_self_loop
    state_machine.check_transition(graph.machine(machine), source, target, allow_self_loop)


def enumerate_transition_matrix(
    graph: Graph,
    machine: str,
    allow_self_loop: bool | None = None,
    settings: EngineSettings | None = None,
) -> TransitionMatrix:
    """Partition every (from, to) pair of a machine into valid and invalid."""
    if allow_self_loop is None:
        allow_self_loop = (settings or _DEFAULTS).allow_self_loop
    return state_machine.enumerate_all(graph.machine(machine), allow_self_loop)


def check_drift(old: Graph, new: Graph, strict: bool = False) -> list[DriftReport]:
    """Classify each dependent reference of ``old`` against ``new``.

    Raises:
        DriftError: In strict mode, when any change is unsafe
    """
    return drift.check_drift(old, new, strict=strict)
