"""Utility functions for the schema engine."""

from schema_engine.utils.helpers import fingerprint, generate_seed

__all__ = [
    "generate_seed",
    "fingerprint",
]
