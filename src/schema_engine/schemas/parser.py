"""Package file discovery and reading.

Provides a single entry point to find package documents under files and
directories and parse them.
"""

from pathlib import Path
from typing import Iterable

from schema_engine.errors import LoadError, Location, PackageLoadError
from schema_engine.packages.base import Package
from schema_engine.schemas.canonical import PackageDocumentParser

DEFAULT_PATTERNS = ("*.yaml", "*.yml", "*.json")

# File extensions to document format mapping
EXTENSION_FORMATS = {
    ".json": "json",
    ".yaml": "yaml",
    ".yml": "yaml",
}


def discover_package_files(
    paths: Iterable[Path | str],
    patterns: Iterable[str] = DEFAULT_PATTERNS,
) -> list[Path]:
    """Expand files and directories into the list of package documents to load.

    Directories are searched recursively for files matching ``patterns``.
    Files named explicitly are always included.

    Args:
        paths: Files and/or directories
        patterns: Glob patterns applied inside directories

    Returns:
        Sorted, de-duplicated list of files

    Raises:
        PackageLoadError: If a path does not exist
    """
    patterns = tuple(patterns)
    found: set[Path] = set()
    missing: list[LoadError] = []
    for path in paths:
        path = Path(path)
        if path.is_dir():
            for pattern in patterns:
                found.update(p for p in path.rglob(pattern) if p.is_file())
        elif path.is_file():
            found.add(path)
        else:
            missing.append(LoadError("path does not exist", Location(source_file=str(path))))
    if missing:
        raise PackageLoadError(missing)
    return sorted(found)


def detect_format(path: Path | str) -> str:
    """Return ``json`` or ``yaml`` for a package file.

    Raises:
        ValueError: If the extension is not a package document extension
    """
    suffix = Path(path).suffix.lower()
    if suffix not in EXTENSION_FORMATS:
        raise ValueError(f"Cannot detect package format for extension '{suffix}'")
    return EXTENSION_FORMATS[suffix]


def parse_package_file(path: Path | str) -> Package:
    """Parse a package document file.

    Args:
        path: Path to a ``.yaml``, ``.yml`` or ``.json`` document

    Returns:
        Parsed Package

    Raises:
        PackageLoadError: If the file cannot be read or parsed
    """
    try:
        detect_format(path)
    except ValueError as e:
        raise PackageLoadError([LoadError(str(e), Location(source_file=str(path)))])
    return PackageDocumentParser.from_file(path).parse()


def parse_package_string(content: str, source_file: str | None = None) -> Package:
    """Parse package document text (YAML, or JSON when ``source_file`` ends in .json)."""
    return PackageDocumentParser.from_string(content, source_file).parse()
