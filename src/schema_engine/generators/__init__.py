"""Generators module - example data derived from the graph.

Generators produce:
- Sample values conforming to a named type
- Labelled transition test cases from a state machine
"""

from schema_engine.generators.base import DatasetType, GeneratedDataset, GeneratedRecord, Generator
from schema_engine.generators.sample_generator import SampleGenerator, transition_cases

__all__ = [
    "DatasetType",
    "GeneratedDataset",
    "GeneratedRecord",
    "Generator",
    "SampleGenerator",
    "transition_cases",
]
