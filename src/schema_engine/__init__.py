"""
Schema Engine - constraint unification, validation, state machines and packages.

Independently authored schema layers are unified ("most restrictive wins"),
values are validated against the result with every violation reported, and
changes to shared base packages are checked for drift against the packages
that depend on them.
"""

__version__ = "0.1.0"

from schema_engine.api import (
    check_drift,
    check_transition,
    enumerate_transition_matrix,
    is_valid_transition,
    load_packages,
    transitions,
    unify,
    validate,
)
from schema_engine.engine.state_machine import StateMachine, TransitionMatrix
from schema_engine.engine.validation_engine import ValidationResult, Violation, ViolationSeverity
from schema_engine.errors import (
    ConflictError,
    DriftError,
    LoadError,
    PackageLoadError,
    TransitionError,
    UnknownReferenceError,
    UnknownStateError,
)
from schema_engine.packages.base import Graph, Package
from schema_engine.packages.drift import DriftReport, DriftStatus
from schema_engine.packages.registry import GraphRegistry

__all__ = [
    "check_drift",
    "check_transition",
    "enumerate_transition_matrix",
    "is_valid_transition",
    "load_packages",
    "transitions",
    "unify",
    "validate",
    "StateMachine",
    "TransitionMatrix",
    "ValidationResult",
    "Violation",
    "ViolationSeverity",
    "ConflictError",
    "DriftError",
    "LoadError",
    "PackageLoadError",
    "TransitionError",
    "UnknownReferenceError",
    "UnknownStateError",
    "Graph",
    "Package",
    "DriftReport",
    "DriftStatus",
    "GraphRegistry",
]
