"""Sample Generator - example values for a named type.

Used for fixtures, documentation examples and smoke tests of downstream
consumers. Every sample is validated after it is built and carries its
violations, so a sample the generator could not make conform (a pattern it
cannot satisfy, say) is reported as invalid rather than passed off as valid.
"""

import math
import uuid
from datetime import datetime, timezone
from typing import Any

from faker import Faker

from schema_engine.engine.state_machine import TransitionMatrix
from schema_engine.engine.unification import Unifier, canonical_key
from schema_engine.engine.validation_engine import ValidationEngine
from schema_engine.errors import ConflictError
from schema_engine.generators.base import (
    DatasetType,
    GeneratedDataset,
    GeneratedRecord,
    Generator,
)
from schema_engine.packages.base import Graph
from schema_engine.schemas.base import (
    AtomKind,
    AtomType,
    CompositeType,
    ConditionalType,
    ListType,
    RefType,
    StructType,
    UnionType,
)
from schema_engine.utils.helpers import generate_seed
from schema_engine.values import kind_of, path_lookup

# Past this nesting depth optional fields are left out and lists kept minimal
MAX_DEPTH = 6
PATTERN_ATTEMPTS = 25


class SampleGenerator(Generator):
    """Generator for values conforming to a type in a graph."""

    dataset_type = DatasetType.SAMPLE

    def __init__(self, graph: Graph, seed: int | None = None):
        # Always seeded, so every dataset records how to reproduce it
        super().__init__(seed if seed is not None else generate_seed())
        self.graph = graph
        self._faker = Faker()
        self._faker.seed_instance(self._seed)
        self._unifier = Unifier(graph.resolve)

    def generate(self, source: str, count: int = 1, **options: Any) -> GeneratedDataset:
        """Generate samples of a type.

        Options:
            include_optional: Probability of including an optional field (default 0.5)
        """
        ref = self.graph.parse_ref(source)
        include_optional = options.get("include_optional", 0.5)
        records = []
        for i in range(count):
            self._unifier = Unifier(self.graph.resolve)
            try:
                value = self.sample(ref, include_optional=include_optional)
            except ConflictError as e:
                records.append(GeneratedRecord(
                    data=None,
                    valid=False,
                    violations=[{"path": e.path, "rule": "conflict", "message": e.message, "severity": "schema"}],
                    sequence_number=i,
                ))
                continue
            result = ValidationEngine(self.graph.resolve).validate(ref, value)
            records.append(GeneratedRecord(
                data=value,
                valid=result.accepted,
                violations=[v.to_dict() for v in result.violations],
                metadata={"type": ref.qualified_name},
                sequence_number=i,
            ))
        return GeneratedDataset(
            dataset_type=self.dataset_type,
            source=ref.qualified_name,
            records=records,
            seed=self._seed,
        )

    def sample(self, expr: Any, siblings: Any = None, depth: int = 0, include_optional: float = 0.5) -> Any:
        """Build one value for a type expression.

        Raises:
            ConflictError: If the type (or a composition in it) is contradictory
        """
        if isinstance(expr, (RefType, CompositeType)):
            expr = self._unifier.resolve(expr)
        if isinstance(expr, ConditionalType):
            expr = StructType(conditionals=(expr,))

        if isinstance(expr, AtomType):
            return self._sample_atom(expr, siblings)
        if isinstance(expr, StructType):
            return self._sample_struct(expr, depth, include_optional)
        if isinstance(expr, ListType):
            return self._sample_list(expr, siblings, depth, include_optional)
        if isinstance(expr, UnionType):
            alternatives = list(expr.alternatives)
            if depth >= MAX_DEPTH:
                # Prefer scalars so recursive unions bottom out
                scalars = [a for a in alternatives if isinstance(a, AtomType)]
                alternatives = scalars or alternatives
            return self.sample(self._rng.choice(alternatives), siblings, depth, include_optional)
        raise TypeError(f"cannot sample {expr!r}")

    # -------------------------------------------------------------------------

    def _sample_atom(self, expr: AtomType, siblings: Any) -> Any:
        literals = expr.find("literal")
        if literals:
            return self._rng.choice(list(literals[0].values))
        if expr.kind == AtomKind.NULL:
            return None
        if expr.kind == AtomKind.BOOL:
            return self._rng.choice([True, False])
        if expr.kind == AtomKind.NUMBER:
            return self._sample_number(expr, siblings)
        return self._sample_string(expr)

    def _sample_number(self, expr: AtomType, siblings: Any) -> int | float:
        integer = bool(expr.find("integer"))
        low, high = 0, 1000
        ranges = expr.find("range")
        if ranges:
            r = ranges[0]
            if r.minimum is not None:
                low = r.minimum
                if r.maximum is None:
                    high = low + 1000
            if r.maximum is not None:
                high = r.maximum
                if r.minimum is None:
                    low = high - 1000

        for bound in expr.find("field_bound"):
            other = path_lookup(siblings, bound.field) if isinstance(siblings, dict) else None
            if other is None or kind_of(other).value != "number":
                continue
            if bound.op in (">=", ">"):
                low = max(low, other)
                high = max(high, low + 1000)
            else:
                high = min(high, other)
                low = min(low, high - 1000)

        if integer:
            start, stop = math.ceil(low), math.floor(high)
            if start > stop:
                return start
            candidate = self._rng.randint(start, stop)
            for value in (candidate, start, start + 1, stop, stop - 1):
                if self._number_ok(expr, value, siblings):
                    return value
            return candidate

        for _ in range(5):
            candidate = round(self._rng.uniform(low, high), 2)
            if self._number_ok(expr, candidate, siblings):
                return candidate
        return (low + high) / 2

    def _number_ok(self, expr: AtomType, value: Any, siblings: Any) -> bool:
        for refinement in expr.refinements:
            if refinement.rule == "field_bound":
                if not refinement.accepts_in(value, siblings):
                    return False
            elif not refinement.accepts(value):
                return False
        return True

    def _sample_string(self, expr: AtomType) -> str:
        formats = expr.find("format")
        if formats:
            value = self._sample_format(formats[0].format)
        else:
            value = self._faker.word()

        patterns = expr.find("pattern")
        if patterns and not all(p.accepts(value) for p in patterns):
            for candidate in self._pattern_candidates():
                if all(p.accepts(candidate) for p in patterns):
                    value = candidate
                    break

        lengths = expr.find("length")
        if lengths:
            length = lengths[0]
            if length.min_length is not None and len(value) < length.min_length:
                value = value + self._faker.pystr(
                    min_chars=length.min_length - len(value),
                    max_chars=length.min_length - len(value),
                )
            if length.max_length is not None and len(value) > length.max_length:
                value = value[:length.max_length]
        return value

    def _sample_format(self, fmt: str) -> str:
        format_map = {
            "email": lambda: self._faker.email(),
            "uuid": lambda: str(uuid.UUID(int=self._rng.getrandbits(128), version=4)),
            "date": lambda: self._faker.date(),
            "date-time": lambda: self._faker.date_time(tzinfo=timezone.utc).isoformat(),
            "uri": lambda: self._faker.url(),
        }
        if fmt in format_map:
            return format_map[fmt]()
        return datetime.now(timezone.utc).isoformat()

    def _pattern_candidates(self) -> list[str]:
        candidates = [
            self._faker.currency_code(),
            self._faker.country_code(),
            self._faker.lexify("???").upper(),
            self._faker.lexify("???"),
            self._faker.numerify("###"),
            self._faker.bothify("??-###").upper(),
            self._faker.slug(),
            self._faker.user_name(),
        ]
        candidates.extend(self._faker.word() for _ in range(PATTERN_ATTEMPTS - len(candidates)))
        return candidates

    def _sample_struct(self, expr: StructType, depth: int, include_optional: float) -> dict[str, Any]:
        value: dict[str, Any] = {}
        self._fill_fields(expr, value, depth, include_optional)

        # Conditionals can add fields, and those fields can enable more conditionals.
        applied: set[str] = set()
        current = expr
        progress = True
        while progress:
            progress = False
            for conditional in current.conditionals:
                key = canonical_key(conditional)
                if key in applied or not conditional.predicate.holds(value):
                    continue
                applied.add(key)
                current = self._unifier.extend_struct(current, conditional.then)
                self._fill_fields(current, value, depth, include_optional)
                progress = True
                break
        return value

    def _fill_fields(self, expr: StructType, value: dict[str, Any], depth: int, include_optional: float) -> None:
        for name, spec in expr.fields.items():
            if name in value:
                continue
            if not spec.required or spec.has_default:
                if depth >= MAX_DEPTH or self._rng.random() >= include_optional:
                    continue
            value[name] = self.sample(spec.type, value, depth + 1, include_optional)

    def _sample_list(self, expr: ListType, siblings: Any, depth: int, include_optional: float) -> list[Any]:
        low = expr.min_items or 0
        high = expr.max_items if expr.max_items is not None else low + 3
        count = low if depth >= MAX_DEPTH else self._rng.randint(low, max(low, high))
        return [self.sample(expr.element, siblings, depth + 1, include_optional) for _ in range(count)]


def transition_cases(matrix: TransitionMatrix) -> GeneratedDataset:
    """Turn a transition matrix into labelled test cases, valid pairs first.

    Args:
        matrix: Result of enumerating a machine

    Returns:
        One record per (from, to) pair with the expected outcome
    """
    records = []
    pairs = [(pair, True) for pair in matrix.valid] + [(pair, False) for pair in matrix.invalid]
    for sequence, ((source, target), valid) in enumerate(pairs):
        records.append(GeneratedRecord(
            data={"from": source, "to": target, "expected": "allowed" if valid else "rejected"},
            metadata={"name": f"{matrix.machine}_{source}_to_{target}"},
            sequence_number=sequence,
        ))
    return GeneratedDataset(
        dataset_type=DatasetType.TRANSITIONS,
        source=matrix.machine,
        records=records,
        metadata={"allow_self_loop": matrix.allow_self_loop},
    )
