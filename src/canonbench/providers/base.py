# Copyright (c) Syntropy Systems
"""Provider adapter contract, registry and response helpers."""
from __future__ import annotations

import json
from typing import TYPE_CHECKING, Optional, Protocol, cast

from pydantic import Field

from canonbench.errors import ConfigurationError
from canonbench.models.base import CanonbenchBaseModel, JSONValue, OpenConfigModel
from canonbench.models.db import TargetType

if TYPE_CHECKING:
    from collections.abc import Iterator


class ProviderTarget(CanonbenchBaseModel):
    """What the provider is asked to reproduce."""

    target_type: TargetType = Field(alias="type")
    target_id: int = Field(alias="id")
    reference: str
    canonical_raw: str = Field(alias="canonicalRaw")
    canonical_processed: str = Field(alias="canonicalProcessed")


class ProviderConfig(OpenConfigModel):
    """Adapter configuration taken from the model record.

    Adapter-specific keys are kept as extra fields.
    """

    timeout: Optional[float] = None


class ProviderResponse(CanonbenchBaseModel):
    """Raw provider output plus whatever the adapter could parse from it."""

    response_raw: str = Field(alias="responseRaw")
    parsed: Optional[dict[str, JSONValue]] = None
    parse_error: Optional[str] = Field(default=None, alias="parseError")
    extracted_text: Optional[str] = Field(default=None, alias="extractedText")

    def structured_verses(self) -> list[dict[str, JSONValue]] | None:
        """Structured ``verses`` pairs from a chapter response, if present."""
        if self.parsed is None:
            return None
        verses = self.parsed.get("verses")
        if not isinstance(verses, list):
            return None
        return [cast("dict[str, JSONValue]", v) for v in verses if isinstance(v, dict)]


class ProviderAdapter(Protocol):
    """Capability interface every provider implements.

    Adapters raise ``ProviderError`` for transport failures (including
    timeouts) and report malformed output through ``parse_error``.
    """

    def generate(self, target: ProviderTarget, config: ProviderConfig) -> ProviderResponse:
        ...


class ProviderRegistry:
    """Lookup table from provider identifier to adapter."""

    _adapters: dict[str, ProviderAdapter]

    def __init__(self, adapters: dict[str, ProviderAdapter] | None = None) -> None:
        self._adapters = {}
        for name, adapter in (adapters or {}).items():
            self.register(name, adapter)

    def register(self, name: str, adapter: ProviderAdapter) -> None:
        """Register or replace the adapter for a provider name."""
        self._adapters[name.lower()] = adapter

    def get(self, name: str) -> ProviderAdapter:
        """Return the adapter for a provider, or raise ``ConfigurationError``."""
        adapter = self._adapters.get(name.lower())
        if adapter is None:
            msg = f"No provider adapter registered for '{name}'"
            raise ConfigurationError(msg)
        return adapter

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and name.lower() in self._adapters

    def __iter__(self) -> Iterator[str]:
        return iter(sorted(self._adapters))


def strip_code_fence(text: str) -> str:
    """Remove a surrounding markdown code fence from a JSON payload."""
    payload = text.strip()
    if payload.startswith("```json"):
        payload = payload[7:]
    elif payload.startswith("```"):
        payload = payload[3:]
    if payload.endswith("```"):
        payload = payload[:-3]
    return payload.strip()


def parse_json_response(
    response_raw: str,
    target_type: TargetType,
) -> tuple[dict[str, JSONValue] | None, str | None]:
    """Parse a JSON provider response and check its basic shape.

    Returns ``(parsed, parse_error)``; exactly one is ``None``.
    """
    try:
        parsed = json.loads(strip_code_fence(response_raw))
    except json.JSONDecodeError as e:
        return None, str(e)

    if not isinstance(parsed, dict):
        return None, "Response is not a JSON object"

    data = cast("dict[str, JSONValue]", parsed)
    if target_type == "verse":
        if not isinstance(data.get("verseText"), str):
            return None, "Missing verseText field"
    elif not isinstance(data.get("verses"), list):
        return None, "Missing verses array"

    return data, None


def extract_text(parsed: dict[str, JSONValue] | None, target_type: TargetType) -> str | None:
    """Flatten a parsed response to plain text."""
    if parsed is None:
        return None

    if target_type == "verse":
        verse_text = parsed.get("verseText")
        return verse_text.strip() if isinstance(verse_text, str) else None

    verses = parsed.get("verses")
    if not isinstance(verses, list):
        return None
    texts: list[str] = []
    for verse in verses:
        if isinstance(verse, dict):
            verse_text = verse.get("verseText")
            if isinstance(verse_text, str) and verse_text.strip():
                texts.append(verse_text.strip())
    return " ".join(texts)


def normalize_empty_response(response: ProviderResponse) -> ProviderResponse:
    """Turn a blank provider reply into an explicit parse failure."""
    if response.response_raw.strip():
        return response
    return ProviderResponse(
        response_raw="[empty response]",
        parsed=None,
        parse_error="Empty response from provider.",
        extracted_text=None,
    )
