"""Engine module - evaluation core.

Contains:
- Unification Engine: combines constraints, most restrictive wins
- Validation Engine: checks values against resolved types
- State-Machine Validator: transition tables
"""

from schema_engine.engine.state_machine import StateMachine, TransitionMatrix
from schema_engine.engine.unification import Unifier, unify
from schema_engine.engine.validation_engine import (
    ValidationEngine,
    ValidationResult,
    Violation,
    ViolationSeverity,
)

__all__ = [
    "StateMachine",
    "TransitionMatrix",
    "Unifier",
    "unify",
    "ValidationEngine",
    "ValidationResult",
    "Violation",
    "ViolationSeverity",
]
