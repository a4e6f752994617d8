# Copyright (c) Syntropy Systems
"""Shared Pydantic model helpers for canonbench."""

from __future__ import annotations

from typing import ClassVar

from pydantic import BaseModel, ConfigDict, JsonValue
from typing_extensions import TypeAlias

JSONValue: TypeAlias = JsonValue


class CanonbenchBaseModel(BaseModel):
    """Base model for stored records and payloads.

    Unknown keys are dropped and fields accept either their Python name or
    their camelCase alias.
    """

    model_config: ClassVar[ConfigDict] = ConfigDict(
        extra="ignore",
        populate_by_name=True,
        protected_namespaces=(),
    )


class OpenConfigModel(BaseModel):
    """Base model for adapter settings; keys it does not declare are kept."""

    model_config: ClassVar[ConfigDict] = ConfigDict(
        extra="allow",
        populate_by_name=True,
    )
