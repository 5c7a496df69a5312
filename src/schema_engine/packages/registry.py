"""Graph Registry for service mode.

Holds the active Graph. Readers take a snapshot and keep using it for the
whole call; rebuilds are serialized and end in a single reference swap, so a
reader never sees a half-built graph.
"""

import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable

import structlog

from schema_engine.config.settings import EngineSettings
from schema_engine.errors import PackageLoadError, SchemaEngineError
from schema_engine.packages.base import Graph
from schema_engine.packages.drift import DriftReport, check_drift
from schema_engine.packages.loader import PackageLoader
from schema_engine.schemas.parser import discover_package_files

log = structlog.get_logger(__name__)


@dataclass
class ReloadResult:
    """Outcome of one rebuild."""

    swapped: bool
    graph: Graph | None
    errors: list[SchemaEngineError] = field(default_factory=list)
    drift: list[DriftReport] = field(default_factory=list)


class GraphRegistry:
    """Central holder of the active graph.

    The registry ensures:
    - A failed rebuild leaves the previous good graph active
    - Only changed files are re-parsed
    - Rebuilds never run concurrently with each other
    """

    def __init__(self, paths: Iterable[Path | str], settings: EngineSettings | None = None):
        """Initialize the registry. Nothing is loaded until ``reload()``.

        Args:
            paths: Package files and/or directories to watch
            settings: Engine settings
        """
        self.paths = [Path(p) for p in paths]
        self.settings = settings or EngineSettings()
        self._loader = PackageLoader(self.settings)
        self._lock = threading.Lock()
        self._graph: Graph | None = None
        self._signatures: dict[Path, tuple[int, int]] = {}
        self.last_errors: list[SchemaEngineError] = []

    @property
    def graph(self) -> Graph | None:
        """The active graph, or None before the first successful load."""
        return self._graph

    def snapshot(self) -> Graph:
        """Return the active graph for use by one call.

        Raises:
            RuntimeError: If no graph has been loaded yet
        """
        graph = self._graph
        if graph is None:
            raise RuntimeError("No package graph loaded")
        return graph

    def reload(self) -> ReloadResult:
        """Rebuild the graph from the watched paths and swap it in on success."""
        with self._lock:
            previous = self._graph
            try:
                self._signatures = self._scan()
                graph = self._loader.load(self.paths)
            except PackageLoadError as e:
                self.last_errors = list(e.errors)
                log.warning(
                    "reload_failed",
                    errors=len(e.errors),
                    first=str(e.errors[0]) if e.errors else None,
                    kept_generation=previous.generation if previous else None,
                )
                return ReloadResult(swapped=False, graph=previous, errors=list(e.errors))

            drift = check_drift(previous, graph) if previous is not None else []
            self._graph = graph
            self.last_errors = []
            log.info(
                "graph_swapped",
                generation=graph.generation,
                packages=len(graph),
                unsafe_drift=sum(1 for r in drift if r.unsafe),
            )
            return ReloadResult(swapped=True, graph=graph, drift=drift)

    def refresh(self) -> ReloadResult | None:
        """Reload if any watched file was added, removed or modified.

        Returns:
            The reload result, or None if nothing changed
        """
        try:
            current = self._scan()
        except PackageLoadError as e:
            self.last_errors = list(e.errors)
            return ReloadResult(swapped=False, graph=self._graph, errors=list(e.errors))
        if current == self._signatures and self._graph is not None:
            return None
        return self.reload()

    def _scan(self) -> dict[Path, tuple[int, int]]:
        signatures = {}
        for path in discover_package_files(self.paths, self.settings.package_patterns):
            try:
                stat = path.stat()
            except OSError:
                # Vanished between listing and stat; the next load reports it.
                continue
            signatures[path] = (stat.st_mtime_ns, stat.st_size)
        return signatures
