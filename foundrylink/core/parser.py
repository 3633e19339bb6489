"""Extraction of structured data from `foundry` CLI output.

The CLI prints unversioned free text. All pattern matching over it lives in
this module; everything else works with the structured results.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import List

from foundrylink.core.errors import EndpointNotFoundError, ModelIdNotFoundError


_LOOPBACK_MARKER = "localhost:"
_HTTP_SCHEME = "http://"
_ENDPOINT_RE = re.compile(r"(http://localhost:\d+/v\d+)")

# Heuristic: either a `name:port`-shaped token or a phi family model name.
_MODEL_ID_RE = re.compile(r"([a-zA-Z0-9_\-.]+:\d+)|(phi-[0-9.]+-[a-z]+)")
_MODEL_KEYWORDS = ("phi", "model")
_MODEL_LABEL = "Model: "

_MODEL_LIST_HEADER = "NAME"
_MODEL_LIST_SEPARATOR = "--------"


@dataclass(frozen=True)
class ParsedServiceInfo:
    endpoint_url: str
    model_id: str


def extract_endpoint(text: str) -> str:
    """Return the first `http://localhost:<port>/v<n>` URL in the output."""
    for line in text.splitlines():
        if _LOOPBACK_MARKER in line and _HTTP_SCHEME in line:
            match = _ENDPOINT_RE.search(line)
            if match:
                return match.group(1)
    raise EndpointNotFoundError("Could not find endpoint URL in Foundry service list output")


def extract_model_id(text: str) -> str:
    """Return the first model identifier found on a model-related line."""
    for line in text.splitlines():
        lowered = line.lower()
        if not any(keyword in lowered for keyword in _MODEL_KEYWORDS):
            continue
        match = _MODEL_ID_RE.search(line)
        if match:
            return match.group(0)
        if _MODEL_LABEL in line:
            candidate = line.split(_MODEL_LABEL, 1)[1].strip()
            if candidate:
                return candidate
    raise ModelIdNotFoundError(
        "Could not find model ID in Foundry service list output. "
        "Ensure a model is loaded and 'foundry service list' returns its ID."
    )


def parse_service_info(text: str) -> ParsedServiceInfo:
    return ParsedServiceInfo(endpoint_url=extract_endpoint(text), model_id=extract_model_id(text))


def parse_model_list(text: str) -> List[str]:
    """Model names from `foundry model list`: first column, headers skipped."""
    models: List[str] = []
    for line in text.splitlines():
        if not line.strip():
            continue
        if _MODEL_LIST_HEADER in line or _MODEL_LIST_SEPARATOR in line:
            continue
        name = line.split()[0]
        if name:
            models.append(name)
    return models


__all__ = [
    "ParsedServiceInfo",
    "extract_endpoint",
    "extract_model_id",
    "parse_service_info",
    "parse_model_list",
]
