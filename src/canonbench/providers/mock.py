# Copyright (c) Syntropy Systems
"""Deterministic mock provider for offline benchmarking and tests."""
from __future__ import annotations

import json
from typing import Literal, Optional, cast

from pydantic import Field, field_validator

from canonbench.errors import ProviderError
from canonbench.models.base import CanonbenchBaseModel
from canonbench.providers.base import (
    ProviderConfig,
    ProviderResponse,
    ProviderTarget,
    extract_text,
)

MockMode = Literal["echo_raw", "echo_processed", "literal"]


class MockSettings(CanonbenchBaseModel):
    """Mock behaviour, read from the model's provider config.

    Settings may sit at the top level or under a ``mock`` key.
    """

    mode: MockMode = "echo_raw"
    literal_response: Optional[str] = Field(default=None, alias="literalResponse")
    overrides: dict[str, str] = Field(default_factory=dict)
    errors: dict[str, str] = Field(default_factory=dict)

    @field_validator("overrides", "errors", mode="before")
    @classmethod
    def _parse_string_map(cls, value: object) -> dict[str, str]:
        if not isinstance(value, dict):
            return {}
        return {
            str(key): item
            for key, item in cast("dict[object, object]", value).items()
            if isinstance(item, str)
        }

    @classmethod
    def from_config(cls, config: ProviderConfig) -> MockSettings:
        """Build settings from a provider config."""
        data = config.model_dump()
        nested = data.get("mock")
        if isinstance(nested, dict):
            data = cast("dict[str, object]", nested)
        return cls.model_validate(data)


def _split_reference(reference: str) -> tuple[str, str]:
    parts = reference.rsplit(" ", 1)
    if len(parts) == 1:
        return reference, "1"
    return parts[0], parts[1]


class MockProvider:
    """Echoes canonical text back, or a configured literal/override.

    - ``echo_raw``: canonical raw text (default)
    - ``echo_processed``: canonical processed text
    - ``literal``: ``literalResponse`` (falls back to raw text)
    - ``overrides``: per-target-id replacement text, wins over the mode
    - ``errors``: per-target-id message raised as ``ProviderError``

    Verse targets answer with the structured JSON a real provider is asked
    for. Chapter targets answer with free text so the verse parser sees the
    same shape a model reciting a chapter would produce.
    """

    def generate(self, target: ProviderTarget, config: ProviderConfig) -> ProviderResponse:
        settings = MockSettings.from_config(config)
        target_key = str(target.target_id)

        if target_key in settings.errors:
            raise ProviderError(settings.errors[target_key])

        text = self._select_text(target, settings)

        if target.target_type == "chapter":
            return ProviderResponse(
                response_raw=text,
                parsed=None,
                parse_error=None,
                extracted_text=text,
            )

        book, chapter_verse = _split_reference(target.reference)
        chapter, _, verse_number = chapter_verse.partition(":")
        parsed: dict[str, object] = {
            "book": book,
            "chapter": chapter or "1",
            "verseNumber": verse_number or "1",
            "verseText": text,
        }
        return ProviderResponse(
            response_raw=json.dumps(parsed),
            parsed=parsed,
            parse_error=None,
            extracted_text=extract_text(parsed, "verse"),
        )

    @staticmethod
    def _select_text(target: ProviderTarget, settings: MockSettings) -> str:
        override = settings.overrides.get(str(target.target_id))
        if override is not None:
            return override
        if settings.mode == "echo_processed":
            return target.canonical_processed
        if settings.mode == "literal":
            return settings.literal_response if settings.literal_response is not None else target.canonical_raw
        return target.canonical_raw
