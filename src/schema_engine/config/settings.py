"""Engine settings.

Settings come from an optional YAML file. ``schema-engine.yaml`` in the
working directory is used when no file is given explicitly.
"""

from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

DEFAULT_SETTINGS_FILE = "schema-engine.yaml"


class EngineSettings(BaseModel):
    """Tunable behavior of loading and evaluation."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    allow_self_loop: bool = Field(
        default=False,
        description="Treat X -> X as valid for every known state",
    )
    default_timeout_seconds: float | None = Field(
        default=None,
        gt=0,
        description="Validation deadline applied when a call gives none",
    )
    deadline_check_interval: int = Field(
        default=64,
        ge=1,
        description="Nodes visited between deadline checks",
    )
    package_patterns: tuple[str, ...] = Field(
        default=("*.yaml", "*.yml", "*.json"),
        description="Glob patterns for package files inside directories",
    )
    log_json: bool = Field(default=False, description="Emit logs as JSON lines")


def load_settings(path: Path | str | None = None) -> EngineSettings:
    """Load settings from a YAML file.

    Args:
        path: Settings file. When None, ``schema-engine.yaml`` in the current
            directory is used if it exists, otherwise defaults apply.

    Returns:
        Loaded EngineSettings

    Raises:
        ValueError: If the file is not valid YAML or holds unknown/invalid keys
        FileNotFoundError: If an explicit path does not exist
    """
    if path is None:
        candidate = Path(DEFAULT_SETTINGS_FILE)
        if not candidate.is_file():
            return EngineSettings()
        path = candidate

    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Settings file not found: {path}")

    try:
        data: Any = yaml.safe_load(path.read_text()) or {}
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML in {path}: {e}")

    if not isinstance(data, dict):
        raise ValueError(f"{path}: settings must be a mapping")

    try:
        return EngineSettings(**data)
    except ValidationError as e:
        reasons = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise ValueError(f"{path}: invalid settings: {reasons}")
