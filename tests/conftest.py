"""Shared fixtures for schema engine tests."""

import logging
import tempfile
import textwrap
from pathlib import Path

import pytest


@pytest.fixture(autouse=True)
def _restore_logging():
    """Restore root logger state after each test, since CLI runs reconfigure it."""
    root = logging.getLogger()
    original_handlers = root.handlers[:]
    original_level = root.level
    engine = logging.getLogger("schema_engine")
    engine_level = engine.level
    yield
    root.handlers = original_handlers
    root.setLevel(original_level)
    engine.setLevel(engine_level)


@pytest.fixture
def temp_dir():
    """Create temporary directory for package files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def write_package(temp_dir):
    """Write a package document into the temp directory and return its path."""

    def _write(filename: str, content: str, directory: Path | None = None) -> Path:
        path = (directory or temp_dir) / filename
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(textwrap.dedent(content))
        return path

    return _write
