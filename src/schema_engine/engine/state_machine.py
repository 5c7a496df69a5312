"""State-Machine Validator - transition tables for entity status fields.

A machine maps each state to the states it may move to next. Terminal states
map to an empty list, which is different from a state that is not in the
table at all.
"""

from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

from schema_engine.errors import TransitionError, UnknownStateError


class StateMachine(BaseModel):
    """A named state -> allowed-next-states table."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., description="Machine name")
    transitions: dict[str, tuple[str, ...]] = Field(
        default_factory=dict,
        description="Ordered map from source state to allowed target states",
    )

    @model_validator(mode="after")
    def _targets_are_states(self) -> "StateMachine":
        for source, targets in self.transitions.items():
            unknown = [t for t in targets if t not in self.transitions]
            if unknown:
                raise ValueError(
                    f"machine '{self.name}': state '{source}' targets undeclared "
                    f"state(s) {', '.join(unknown)}"
                )
            if len(set(targets)) != len(targets):
                raise ValueError(f"machine '{self.name}': state '{source}' lists a target twice")
        return self

    @property
    def states(self) -> list[str]:
        return list(self.transitions)

    @property
    def terminal_states(self) -> list[str]:
        return [state for state, targets in self.transitions.items() if not targets]

    def has_state(self, state: str) -> bool:
        return state in self.transitions


@dataclass
class TransitionMatrix:
    """Every (from, to) pair of a machine, partitioned."""

    machine: str
    valid: list[tuple[str, str]] = field(default_factory=list)
    invalid: list[tuple[str, str]] = field(default_factory=list)
    allow_self_loop: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "machine": self.machine,
            "allow_self_loop": self.allow_self_loop,
            "valid": [{"from": s, "to": t} for s, t in self.valid],
            "invalid": [{"from": s, "to": t} for s, t in self.invalid],
        }


def valid_targets(machine: StateMachine, state: str, allow_self_loop: bool = False) -> list[str]:
    """List the states reachable from ``state`` in one step.

    Raises:
        UnknownStateError: If ``state`` is not in the table
    """
    if not machine.has_state(state):
        raise UnknownStateError(machine.name, state)
    targets = list(machine.transitions[state])
    if allow_self_loop and state not in targets:
        targets.append(state)
    return targets


def is_valid_transition(
    machine: StateMachine,
    source: str,
    target: str,
    allow_self_loop: bool = False,
) -> bool:
    """Whether ``source -> target`` is allowed.

    A source absent from the table is never valid. Self-loops are valid when
    declared, or for any known state when ``allow_self_loop`` is set.
    """
    if not machine.has_state(source):
        return False
    if target in machine.transitions[source]:
        return True
    return allow_self_loop and source == target


def check_transition(
    machine: StateMachine,
    source: str,
    target: str,
    allow_self_loop: bool = False,
) -> None:
    """Raise ``TransitionError`` unless ``source -> target`` is allowed."""
    if not machine.has_state(source):
        raise TransitionError(machine.name, source, target, f"unknown current state '{source}'")
    if not machine.has_state(target):
        raise TransitionError(machine.name, source, target, f"unknown target state '{target}'")
    if not is_valid_transition(machine, source, target, allow_self_loop):
        allowed = ", ".join(machine.transitions[source]) or "none, terminal state"
        raise TransitionError(machine.name, source, target, f"allowed: {allowed}")


def enumerate_all(machine: StateMachine, allow_self_loop: bool = False) -> TransitionMatrix:
    """Partition the cross product of all states into valid and invalid transitions.

    Pairs are listed in declaration order of the source, then of the target.
    """
    matrix = TransitionMatrix(machine=machine.name, allow_self_loop=allow_self_loop)
    for source in machine.transitions:
        for target in machine.transitions:
            if is_valid_transition(machine, source, target, allow_self_loop):
                matrix.valid.append((source, target))
            else:
                matrix.invalid.append((source, target))
    return matrix
