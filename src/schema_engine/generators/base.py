"""Base classes for Generators.

Generators are responsible for:
- Producing example values from resolved type expressions
- Reporting honestly whether each produced value validates
- Never changing the types they read (graphs are shared read-only)
"""

import random
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Iterator

from pydantic import BaseModel, Field


class DatasetType(str, Enum):
    """Kinds of generated datasets."""

    SAMPLE = "sample"
    TRANSITIONS = "transitions"


class GeneratedRecord(BaseModel):
    """A single generated record."""

    data: Any = Field(..., description="The generated value")
    valid: bool = Field(default=True, description="Whether the value validated")
    violations: list[dict[str, Any]] = Field(
        default_factory=list,
        description="Violations found when the value was validated",
    )
    metadata: dict[str, Any] = Field(default_factory=dict, description="Generation metadata")
    sequence_number: int = Field(default=0, description="Record sequence number")


class GeneratedDataset(BaseModel):
    """A complete generated dataset."""

    dataset_type: DatasetType = Field(..., description="Type of dataset")
    source: str = Field(..., description="Type or machine the records were generated from")
    records: list[GeneratedRecord] = Field(default_factory=list, description="Generated records")
    seed: int | None = Field(default=None, description="Random seed used")
    metadata: dict[str, Any] = Field(default_factory=dict, description="Dataset metadata")

    @property
    def total_count(self) -> int:
        return len(self.records)

    def __iter__(self) -> Iterator[GeneratedRecord]:
        return iter(self.records)

    def __len__(self) -> int:
        return len(self.records)


class Generator(ABC):
    """Abstract base class for dataset generators."""

    dataset_type: DatasetType

    def __init__(self, seed: int | None = None):
        """Initialize the generator.

        Args:
            seed: Optional random seed for deterministic generation
        """
        self._seed = seed
        self._rng = random.Random(seed)

    @property
    def seed(self) -> int | None:
        return self._seed

    @seed.setter
    def seed(self, value: int | None) -> None:
        self._seed = value
        self._rng = random.Random(value)

    @abstractmethod
    def generate(self, source: str, count: int = 1, **options: Any) -> GeneratedDataset:
        """Generate a dataset.

        Args:
            source: Name of the type or machine to generate from
            count: Number of records to generate
            **options: Generator-specific options

        Returns:
            A GeneratedDataset containing the generated records
        """
        pass

    def stream(self, source: str, count: int | None = None, **options: Any) -> Iterator[GeneratedRecord]:
        """Stream records one at a time.

        Args:
            source: Name of the type or machine to generate from
            count: Optional limit on records (None for infinite)
            **options: Generator-specific options

        Yields:
            Generated records one at a time
        """
        sequence = 0
        while count is None or sequence < count:
            dataset = self.generate(source, count=1, **options)
            for record in dataset.records:
                record.sequence_number = sequence
                yield record
            sequence += 1
