"""
Project configuration — popcorn.config.json merged over built-in defaults.

Precedence, lowest first: defaults, file contents, caller overrides.
Keys use the camelCase names the browser extension reads; Python field
names are accepted too.
"""

import json
import logging
from pathlib import Path
from typing import Any, Optional, Union

from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger(__name__)

CONFIG_FILE_NAME = "popcorn.config.json"


class PopcornConfig(BaseModel):
    watch_dir: str = Field(default="src/frontend", alias="watchDir")
    extensions: list[str] = Field(default_factory=lambda: [".js", ".ts", ".jsx", ".tsx"])
    debounce_ms: int = Field(default=300, alias="debounceMs")
    ignore_patterns: list[str] = Field(
        default_factory=lambda: ["node_modules", ".git", "dist"], alias="ignorePatterns",
    )
    test_plans_dir: str = Field(default="test-plans", alias="testPlansDir")
    popcorn_marker: str = Field(default="// popcorn-test", alias="popcornMarker")
    bridge_port: int = Field(default=7890, alias="bridgePort")
    base_url: Optional[str] = Field(default=None, alias="baseUrl")
    poll_interval_ms: int = Field(default=500, alias="pollIntervalMs")
    demo_timeout_ms: int = Field(default=30000, alias="demoTimeoutMs")

    model_config = {"populate_by_name": True, "extra": "allow"}

    @property
    def poll_interval(self) -> float:
        return self.poll_interval_ms / 1000

    @property
    def demo_timeout(self) -> float:
        return self.demo_timeout_ms / 1000

    def to_json_dict(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


Overrides = Union[PopcornConfig, dict[str, Any], None]


def get_default_config() -> PopcornConfig:
    return PopcornConfig()


def _normalize(overrides: Overrides) -> dict[str, Any]:
    """Map overrides onto alias keys so field and alias spellings cannot collide."""
    if overrides is None:
        return {}
    if isinstance(overrides, PopcornConfig):
        return overrides.to_json_dict()
    normalized: dict[str, Any] = {}
    for key, value in overrides.items():
        field = PopcornConfig.model_fields.get(key)
        normalized[field.alias if field is not None and field.alias else key] = value
    return normalized


def load_config(overrides: Overrides = None) -> PopcornConfig:
    """Merge overrides into the defaults. Unspecified fields keep their defaults."""
    merged = {**get_default_config().to_json_dict(), **_normalize(overrides)}
    return PopcornConfig.model_validate(merged)


def config_path(project_root: Union[str, Path]) -> Path:
    return Path(project_root) / CONFIG_FILE_NAME


def load_config_from_file(project_root: Union[str, Path], overrides: Overrides = None) -> PopcornConfig:
    """Load popcorn.config.json, falling back to defaults if missing or invalid."""
    path = config_path(project_root)
    file_config: dict[str, Any] = {}
    try:
        parsed = json.loads(path.read_text(encoding="utf-8"))
        if isinstance(parsed, dict):
            file_config = parsed
        else:
            logger.debug("Ignoring %s: top level is not an object", path)
    except FileNotFoundError:
        pass
    except (OSError, ValueError) as e:
        logger.debug("Ignoring unreadable %s: %s", path, e)

    try:
        return load_config({**_normalize(file_config), **_normalize(overrides)})
    except ValidationError as e:
        logger.warning("Ignoring invalid %s: %d field error(s)", path, e.error_count())
        return load_config(overrides)


def save_config(project_root: Union[str, Path], config: Union[PopcornConfig, dict[str, Any]]) -> Path:
    path = config_path(project_root)
    data = config.to_json_dict() if isinstance(config, PopcornConfig) else config
    path.write_text(json.dumps(data, indent=2) + "\n", encoding="utf-8")
    return path
