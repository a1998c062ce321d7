"""Engine settings loaded from YAML.

Search order (first existing file wins):
1. Explicit path passed to ``load_settings``
2. ``./.nodegraph/engine.yaml`` (project)
3. ``~/.nodegraph/engine.yaml`` (user)
4. ``nodegraph/config/engine.yaml`` (shipped defaults)
"""

from __future__ import annotations

import logging
from pathlib import Path

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from nodegraph.core.models import ScopeRole

PACKAGE_DIR = Path(__file__).parent.parent

logger = logging.getLogger(__name__)

DEFAULT_SCOPE_ROLES: dict[str, ScopeRole] = {
    "loop_start": ScopeRole.SCOPE_START,
    "loop_end": ScopeRole.SCOPE_END,
    "try_start": ScopeRole.SCOPE_START,
    "catch_end": ScopeRole.SCOPE_END,
}


class SettingsError(Exception):
    """Settings file is unreadable or invalid."""

    pass


class EngineSettings(BaseModel):
    """Settings for the analysis engine and the CLI."""

    model_config = ConfigDict(extra="forbid")

    require_lock: bool = True  # Refuse passes when the workflow lock is not held
    log_level: str = "WARNING"
    show_stacks: bool = True  # CLI: print scope stacks in the analysis table
    scope_roles: dict[str, ScopeRole] = Field(default_factory=lambda: dict(DEFAULT_SCOPE_ROLES))

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Invalid log level: {v}")
        return level

    def role_for(self, node_type: str) -> ScopeRole:
        return self.scope_roles.get(node_type, ScopeRole.NONE)


def default_search_paths() -> list[Path]:
    return [
        Path.cwd() / ".nodegraph/engine.yaml",
        Path.home() / ".nodegraph/engine.yaml",
        PACKAGE_DIR / "config/engine.yaml",
    ]


def load_settings(path: str | Path | None = None) -> EngineSettings:
    """Load settings from the first file found.

    Args:
        path: Explicit settings file; must exist when given.

    Returns:
        Parsed settings, or defaults if no file exists.

    Raises:
        SettingsError: If the file is missing (explicit path), unreadable or invalid.
    """
    if path is not None:
        path = Path(path)
        if not path.exists():
            raise SettingsError(f"Settings file not found: {path}")
        return _load_file(path)

    for candidate in default_search_paths():
        if candidate.exists():
            return _load_file(candidate)
    return EngineSettings()


def _load_file(path: Path) -> EngineSettings:
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise SettingsError(f"Cannot load settings from '{path}': {e}") from e

    if not isinstance(data, dict):
        raise SettingsError(f"Settings file '{path}' must contain a mapping")
    # Allow either a bare mapping or one nested under "engine:"
    data = data.get("engine", data)

    try:
        settings = EngineSettings.model_validate(data)
    except ValidationError as e:
        raise SettingsError(f"Invalid settings in '{path}': {e}") from e
    logger.debug(f"Loaded settings from {path}")
    return settings
