"""Configuration: engine settings and logging setup."""

from schema_engine.config.logging import configure_logging
from schema_engine.config.settings import EngineSettings, load_settings

__all__ = [
    "EngineSettings",
    "configure_logging",
    "load_settings",
]
