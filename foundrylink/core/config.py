"""Configuration management for foundrylink.

Integration settings live in ~/.foundrylink.json and can be overridden per
process through FOUNDRYLINK_* environment variables. This file is distinct
from the shared settings document that the synchronizer writes into.
"""

import json
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from foundrylink.utils.log import get_logger


logger = get_logger()

DEFAULT_EXECUTABLE = "foundry"
DEFAULT_MODEL = "phi-3.5-mini"

_ENV_OVERRIDES: Dict[str, str] = {
    "FOUNDRYLINK_EXECUTABLE": "executable",
    "FOUNDRYLINK_DEFAULT_MODEL": "default_model",
    "FOUNDRYLINK_SETTINGS_PATH": "settings_path",
}


def default_settings_path() -> Path:
    return Path.home() / ".foundrylink" / "settings_store.json"


class IntegrationConfig(BaseModel):
    """Settings for the Foundry Local integration, stored in ~/.foundrylink.json"""

    model_config = {"protected_namespaces": ()}

    executable: str = DEFAULT_EXECUTABLE
    default_model: str = DEFAULT_MODEL
    settings_path: Path = Field(default_factory=default_settings_path)

    # Seconds. Every process invocation carries one of these.
    command_timeout_seconds: float = 30.0
    install_timeout_seconds: float = 900.0
    model_load_timeout_seconds: float = 600.0

    # Readiness poll after `foundry service start`.
    start_ready_timeout_seconds: float = 30.0
    ready_poll_interval_seconds: float = 0.5

    # Replaces the platform installer when set, e.g. for managed machines.
    installer_command: Optional[List[str]] = None

    @field_validator("settings_path", mode="before")
    @classmethod
    def _expand_settings_path(cls, value: Any) -> Any:
        if isinstance(value, str):
            return Path(value).expanduser()
        if isinstance(value, Path):
            return value.expanduser()
        return value

    @field_validator(
        "command_timeout_seconds",
        "install_timeout_seconds",
        "model_load_timeout_seconds",
        "start_ready_timeout_seconds",
        "ready_poll_interval_seconds",
    )
    @classmethod
    def _positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("timeouts and intervals must be positive")
        return value


class ConfigManager:
    """Loads the integration configuration from file and environment."""

    def __init__(self, config_path: Optional[Path] = None) -> None:
        self.config_path = config_path or Path.home() / ".foundrylink.json"
        self._config: Optional[IntegrationConfig] = None

    def _read_file(self) -> Dict[str, Any]:
        if not self.config_path.exists():
            logger.debug(
                "[config] Config file not found; using defaults",
                extra={"path": str(self.config_path)},
            )
            return {}
        try:
            data = json.loads(self.config_path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError, UnicodeDecodeError) as e:
            logger.warning(
                "Error loading config: %s: %s",
                type(e).__name__,
                e,
                extra={"path": str(self.config_path)},
            )
            return {}
        if not isinstance(data, dict):
            logger.warning(
                "Ignoring config that is not a JSON object",
                extra={"path": str(self.config_path)},
            )
            return {}
        return data

    def get_config(self) -> IntegrationConfig:
        """Load configuration from disk, then apply environment overrides."""
        if self._config is None:
            data = self._read_file()
            for env_var, field_name in _ENV_OVERRIDES.items():
                value = os.environ.get(env_var)
                if value:
                    data[field_name] = value
            try:
                self._config = IntegrationConfig(**data)
            except (ValueError, TypeError) as e:
                logger.warning(
                    "Invalid config values, using defaults: %s: %s",
                    type(e).__name__,
                    e,
                    extra={"path": str(self.config_path)},
                )
                self._config = IntegrationConfig()
            logger.debug(
                "[config] Loaded integration configuration",
                extra={
                    "path": str(self.config_path),
                    "executable": self._config.executable,
                    "settings_path": str(self._config.settings_path),
                },
            )
        return self._config


config_manager = ConfigManager()


def get_config() -> IntegrationConfig:
    return config_manager.get_config()
