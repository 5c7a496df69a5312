"""Utility helper functions."""

import hashlib
import random


def generate_seed() -> int:
    """Generate a random seed value."""
    return random.randint(0, 2**31 - 1)


def fingerprint(text: str) -> str:
    """Short stable digest of a canonical rendering."""
    return hashlib.sha256(text.encode()).hexdigest()[:16]
