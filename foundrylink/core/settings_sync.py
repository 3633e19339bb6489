"""Merge discovered Foundry endpoint/model data into the shared settings document.

The document is owned by the host application and written by many of its
subsystems. Each synchronization reloads it from disk, edits only the
post-processing keys this package owns, and replaces the file atomically
while holding both a process-wide lock and a cross-process file lock.
"""

from __future__ import annotations

import json
import threading
from pathlib import Path
from typing import Any, Dict, List

from pydantic import BaseModel

from foundrylink.core.errors import ConfigReadError, ConfigSchemaError, ConfigWriteError
from foundrylink.utils.file_lock import locked_path, serialize_json, write_text_atomic
from foundrylink.utils.log import get_logger


logger = get_logger()

CUSTOM_PROVIDER_ID = "custom"
CUSTOM_PROVIDER_LABEL = "Custom"
CUSTOM_MODELS_ENDPOINT = "/models"

SETTINGS_KEY = "settings"
PROVIDERS_KEY = "post_process_providers"
MODELS_KEY = "post_process_models"
PROVIDER_ID_KEY = "post_process_provider_id"

# Serializes read-modify-write within this process; the file lock covers other processes.
_write_lock = threading.Lock()


class ProviderEntry(BaseModel):
    """A post-processing provider as stored in the settings document."""

    id: str
    label: str
    base_url: str
    allow_base_url_edit: bool = False
    models_endpoint: str = CUSTOM_MODELS_ENDPOINT


def custom_provider(endpoint_url: str) -> ProviderEntry:
    return ProviderEntry(
        id=CUSTOM_PROVIDER_ID,
        label=CUSTOM_PROVIDER_LABEL,
        base_url=endpoint_url,
        allow_base_url_edit=True,
        models_endpoint=CUSTOM_MODELS_ENDPOINT,
    )


def _load_document(path: Path) -> tuple[Dict[str, Any], str]:
    try:
        raw = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise ConfigReadError(f"Failed to read settings file {path}: {exc}") from exc
    try:
        document = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ConfigReadError(f"Settings file {path} is not valid JSON: {exc}") from exc
    if not isinstance(document, dict):
        raise ConfigSchemaError(f"Settings file {path} must contain a JSON object")
    return document, raw


def _settings_section(document: Dict[str, Any]) -> Dict[str, Any]:
    settings = document.get(SETTINGS_KEY)
    if not isinstance(settings, dict):
        raise ConfigSchemaError(f"Settings document has no '{SETTINGS_KEY}' object")

    providers = settings.get(PROVIDERS_KEY)
    if not isinstance(providers, list):
        raise ConfigSchemaError(f"'{PROVIDERS_KEY}' must be an array")
    for entry in providers:
        if not isinstance(entry, dict) or not isinstance(entry.get("id"), str):
            raise ConfigSchemaError(f"Every entry in '{PROVIDERS_KEY}' must be an object with a string id")

    if not isinstance(settings.get(MODELS_KEY), dict):
        raise ConfigSchemaError(f"'{MODELS_KEY}' must be an object")

    provider_id = settings.get(PROVIDER_ID_KEY)
    if provider_id is not None and not isinstance(provider_id, str):
        raise ConfigSchemaError(f"'{PROVIDER_ID_KEY}' must be a string")
    return settings


def merge_custom_provider(providers: List[Dict[str, Any]], entry: ProviderEntry) -> List[Dict[str, Any]]:
    """Replace the custom entry in place (or append it), keeping every other entry's order."""
    replacement = entry.model_dump()
    merged: List[Dict[str, Any]] = []
    placed = False
    for provider in providers:
        if provider.get("id") != entry.id:
            merged.append(provider)
        elif not placed:
            merged.append(replacement)
            placed = True
        else:
            logger.warning(
                "[settings_sync] Dropping duplicate provider entry",
                extra={"provider_id": entry.id},
            )
    if not placed:
        merged.append(replacement)
    return merged


def apply_foundry_settings(settings: Dict[str, Any], endpoint_url: str, model_id: str) -> None:
    settings[PROVIDERS_KEY] = merge_custom_provider(settings[PROVIDERS_KEY], custom_provider(endpoint_url))
    settings[PROVIDER_ID_KEY] = CUSTOM_PROVIDER_ID
    settings[MODELS_KEY][CUSTOM_PROVIDER_ID] = model_id


class SettingsSynchronizer:
    """Writes the custom post-processing provider into the shared settings file."""

    def __init__(self, settings_path: Path) -> None:
        self.settings_path = Path(settings_path)

    def synchronize(self, endpoint_url: str, model_id: str) -> None:
        """Point the custom provider at `endpoint_url`/`model_id` and select it.

        Raises:
            ConfigReadError, ConfigSchemaError, ConfigWriteError
        """
        with _write_lock:
            try:
                with locked_path(self.settings_path):
                    self._synchronize_locked(endpoint_url, model_id)
            except OSError as exc:
                # Only the lock file can fail here; read/write errors are already typed.
                raise ConfigWriteError(
                    f"Failed to lock settings file {self.settings_path}: {exc}"
                ) from exc

    def _synchronize_locked(self, endpoint_url: str, model_id: str) -> None:
        document, original = _load_document(self.settings_path)
        settings = _settings_section(document)
        apply_foundry_settings(settings, endpoint_url, model_id)

        serialized = serialize_json(document)
        if serialized == original:
            logger.debug(
                "[settings_sync] Settings already up to date",
                extra={"path": str(self.settings_path)},
            )
            return

        try:
            write_text_atomic(self.settings_path, serialized, temp_prefix=".settings_")
        except OSError as exc:
            raise ConfigWriteError(f"Failed to write settings file {self.settings_path}: {exc}") from exc
        logger.info(
            "[settings_sync] Updated post-processing settings for Foundry",
            extra={
                "path": str(self.settings_path),
                "endpoint_url": endpoint_url,
                "model_id": model_id,
            },
        )


__all__ = [
    "CUSTOM_PROVIDER_ID",
    "ProviderEntry",
    "SettingsSynchronizer",
    "apply_foundry_settings",
    "custom_provider",
    "merge_custom_provider",
]
