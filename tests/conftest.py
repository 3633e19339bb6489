"""Pytest configuration and fixtures for all tests."""

import copy
import json
from pathlib import Path
from typing import Any, Dict, List, Sequence, Tuple, Union

import pytest

from foundrylink.core.errors import CommandNotFoundError
from foundrylink.utils.process import CommandResult


_MODEL_CATALOG = (
    "NAME                 SIZE\n"
    "--------             ----\n"
    "phi-3.5-mini         2.1GB\n"
    "qwen2.5-0.5b         0.5GB\n"
)

_SETTINGS_DOCUMENT: Dict[str, Any] = {
    "settings": {
        "audio_feedback": True,
        "bindings": {"transcribe": {"current_binding": "ctrl+space"}},
        "post_process_providers": [
            {
                "id": "openai",
                "label": "OpenAI",
                "base_url": "https://api.openai.com/v1",
                "allow_base_url_edit": False,
                "models_endpoint": "/models",
            },
            {
                "id": "custom",
                "label": "Custom",
                "base_url": "http://localhost:11434/v1",
                "allow_base_url_edit": True,
                "models_endpoint": "/models",
            },
            {
                "id": "anthropic",
                "label": "Anthropic",
                "base_url": "https://api.anthropic.com/v1",
                "allow_base_url_edit": False,
                "models_endpoint": "/models",
            },
        ],
        "post_process_models": {"openai": "gpt-4o-mini"},
        "post_process_provider_id": "openai",
    },
    "version": 3,
}

Response = Union[CommandResult, BaseException]


class FakeRunner:
    """Stands in for `run_command`, answering by exact argv.

    Unknown commands behave like a missing executable. A list of responses is
    consumed in order; its last entry repeats.
    """

    def __init__(self) -> None:
        self.responses: Dict[Tuple[str, ...], List[Response]] = {}
        self.calls: List[Tuple[Tuple[str, ...], float]] = []

    def on(self, *argv: str, stdout: str = "", stderr: str = "", returncode: int = 0) -> "FakeRunner":
        result = CommandResult(args=tuple(argv), returncode=returncode, stdout=stdout, stderr=stderr)
        self.responses.setdefault(tuple(argv), []).append(result)
        return self

    def raise_on(self, *argv: str, exc: BaseException) -> "FakeRunner":
        self.responses.setdefault(tuple(argv), []).append(exc)
        return self

    @property
    def commands(self) -> List[Tuple[str, ...]]:
        return [args for args, _ in self.calls]

    def called(self, *argv: str) -> bool:
        return tuple(argv) in self.commands

    async def __call__(self, args: Sequence[str], timeout: float) -> CommandResult:
        key = tuple(args)
        self.calls.append((key, timeout))
        queue = self.responses.get(key)
        if not queue:
            raise CommandNotFoundError(f"Could not run '{key[0]}': not found", args=key)
        response = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(response, BaseException):
            raise response
        return response


@pytest.fixture
def fake_runner() -> FakeRunner:
    """A runner that knows no commands, so Foundry looks uninstalled."""
    return FakeRunner()


@pytest.fixture
def installed_runner(fake_runner: FakeRunner) -> FakeRunner:
    """Foundry installed, service state unset, default model cached."""
    fake_runner.on("foundry", "--help", stdout="Usage: foundry [command]")
    fake_runner.on("foundry", "model", "list", stdout=_MODEL_CATALOG)
    return fake_runner


@pytest.fixture
def settings_document() -> Dict[str, Any]:
    return copy.deepcopy(_SETTINGS_DOCUMENT)


@pytest.fixture
def settings_file(tmp_path: Path, settings_document: Dict[str, Any]) -> Path:
    path = tmp_path / "settings_store.json"
    path.write_text(json.dumps(settings_document, indent=2) + "\n", encoding="utf-8")
    return path
