"""Packages: loading, the compiled graph, service-mode registry and drift checks."""

from schema_engine.packages.base import CrossReference, Graph, Package
from schema_engine.packages.drift import DriftReport, DriftStatus, check_drift
from schema_engine.packages.loader import PackageLoader, load_packages
from schema_engine.packages.registry import GraphRegistry, ReloadResult

__all__ = [
    "CrossReference",
    "DriftReport",
    "DriftStatus",
    "Graph",
    "GraphRegistry",
    "Package",
    "PackageLoader",
    "ReloadResult",
    "check_drift",
    "load_packages",
]
