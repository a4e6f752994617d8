# Copyright (c) Syntropy Systems
"""Pydantic models for transform profiles and their steps."""

from __future__ import annotations

from typing import Annotated, Literal, Optional, Union, cast

from pydantic import (
    Discriminator,
    Field,
    Tag,
    TypeAdapter,
    field_validator,
)

from .base import CanonbenchBaseModel, JSONValue

ProfileScope = Literal["canonical", "model_output"]


def _string_list(value: object) -> list[str]:
    if not isinstance(value, list):
        return []
    return [item for item in cast("list[object]", value) if isinstance(item, str)]


def _string_map(value: object) -> dict[str, str]:
    if not isinstance(value, dict):
        return {}
    return {
        key: item
        for key, item in cast("dict[object, object]", value).items()
        if isinstance(key, str) and isinstance(item, str)
    }


class TagNamesParams(CanonbenchBaseModel):
    """Parameters for stripMarkupTags."""

    tag_names: list[str] = Field(default_factory=list, alias="tagNames")

    @field_validator("tag_names", mode="before")
    @classmethod
    def _parse_tag_names(cls, value: object) -> list[str]:
        return _string_list(value)


class MarkersParams(CanonbenchBaseModel):
    """Parameters for stripParagraphMarkers."""

    markers: list[str] = Field(default_factory=list)

    @field_validator("markers", mode="before")
    @classmethod
    def _parse_markers(cls, value: object) -> list[str]:
        return _string_list(value)


class PatternsParams(CanonbenchBaseModel):
    """Parameters for stripVerseNumbers and stripHeadings."""

    patterns: list[str] = Field(default_factory=list)

    @field_validator("patterns", mode="before")
    @classmethod
    def _parse_patterns(cls, value: object) -> list[str]:
        return _string_list(value)


class RegexReplaceParams(CanonbenchBaseModel):
    """Parameters for regexReplace."""

    pattern: Optional[str] = None
    replacement: str = ""

    @field_validator("pattern", mode="before")
    @classmethod
    def _parse_pattern(cls, value: object) -> Optional[str]:
        return value if isinstance(value, str) else None

    @field_validator("replacement", mode="before")
    @classmethod
    def _parse_replacement(cls, value: object) -> str:
        return value if isinstance(value, str) else ""


class ReplaceMapParams(CanonbenchBaseModel):
    """Parameters for replaceMap. Key order is application order."""

    map: dict[str, str] = Field(default_factory=dict)

    @field_validator("map", mode="before")
    @classmethod
    def _parse_map(cls, value: object) -> dict[str, str]:
        return _string_map(value)


class NoParams(CanonbenchBaseModel):
    """Steps that take no parameters."""


class _StepBase(CanonbenchBaseModel):
    order: int = 0
    enabled: bool = True
    severity: Optional[str] = None
    description: Optional[str] = None


class StripMarkupTagsStep(_StepBase):
    """Remove open/close markup tags with the given names."""

    type: Literal["stripMarkupTags"] = "stripMarkupTags"
    params: TagNamesParams = Field(default_factory=TagNamesParams)


class StripParagraphMarkersStep(_StepBase):
    """Remove literal paragraph marker substrings."""

    type: Literal["stripParagraphMarkers"] = "stripParagraphMarkers"
    params: MarkersParams = Field(default_factory=MarkersParams)


class StripVerseNumbersStep(_StepBase):
    """Remove text matching verse-number patterns."""

    type: Literal["stripVerseNumbers"] = "stripVerseNumbers"
    params: PatternsParams = Field(default_factory=PatternsParams)


class StripHeadingsStep(_StepBase):
    """Remove text matching heading patterns."""

    type: Literal["stripHeadings"] = "stripHeadings"
    params: PatternsParams = Field(default_factory=PatternsParams)


class RegexReplaceStep(_StepBase):
    """Global regex substitution."""

    type: Literal["regexReplace"] = "regexReplace"
    params: RegexReplaceParams = Field(default_factory=RegexReplaceParams)


class ReplaceMapStep(_StepBase):
    """Literal substring replacement."""

    type: Literal["replaceMap"] = "replaceMap"
    params: ReplaceMapParams = Field(default_factory=ReplaceMapParams)


class CollapseWhitespaceStep(_StepBase):
    """Fold whitespace runs to a single space."""

    type: Literal["collapseWhitespace"] = "collapseWhitespace"
    params: NoParams = Field(default_factory=NoParams)


class TrimStep(_StepBase):
    """Strip leading and trailing whitespace."""

    type: Literal["trim"] = "trim"
    params: NoParams = Field(default_factory=NoParams)


class UnknownStep(_StepBase):
    """A step type this version does not know.

    Kept so profiles written by newer versions still load. Applying it is a
    no-op; its parameters are preserved verbatim.
    """

    type: str
    params: dict[str, JSONValue] = Field(default_factory=dict)


KNOWN_STEP_TYPES = frozenset(
    {
        "stripMarkupTags",
        "stripParagraphMarkers",
        "stripVerseNumbers",
        "stripHeadings",
        "regexReplace",
        "replaceMap",
        "collapseWhitespace",
        "trim",
    }
)


def _step_tag(value: object) -> str:
    if isinstance(value, dict):
        step_type = cast("dict[str, object]", value).get("type")
    else:
        step_type = getattr(value, "type", None)
    if isinstance(step_type, str) and step_type in KNOWN_STEP_TYPES:
        return step_type
    return "unknown"


TransformStep = Annotated[
    Union[
        Annotated[StripMarkupTagsStep, Tag("stripMarkupTags")],
        Annotated[StripParagraphMarkersStep, Tag("stripParagraphMarkers")],
        Annotated[StripVerseNumbersStep, Tag("stripVerseNumbers")],
        Annotated[StripHeadingsStep, Tag("stripHeadings")],
        Annotated[RegexReplaceStep, Tag("regexReplace")],
        Annotated[ReplaceMapStep, Tag("replaceMap")],
        Annotated[CollapseWhitespaceStep, Tag("collapseWhitespace")],
        Annotated[TrimStep, Tag("trim")],
        Annotated[UnknownStep, Tag("unknown")],
    ],
    Discriminator(_step_tag),
]

_STEP_LIST_ADAPTER = TypeAdapter(list[TransformStep])


class TransformProfile(CanonbenchBaseModel):
    """A versioned, ordered pipeline of normalization steps."""

    profile_id: int = Field(alias="profileId")
    name: str = ""
    scope: ProfileScope
    version: int = 1
    bible_id: Optional[int] = Field(default=None, alias="bibleId")
    is_default: bool = Field(default=False, alias="isDefault")
    is_active: bool = Field(default=True, alias="isActive")
    description: Optional[str] = None
    steps: list[TransformStep] = Field(default_factory=list)

    @field_validator("steps", mode="before")
    @classmethod
    def _parse_steps(cls, value: object) -> object:
        if value is None:
            return []
        if isinstance(value, str):
            return _STEP_LIST_ADAPTER.validate_json(value)
        return cast("object", value)

    def ordered_steps(self) -> list[TransformStep]:
        """Steps sorted by ascending order; ties keep declaration order."""
        return sorted(self.steps, key=lambda step: step.order)

    def steps_json(self) -> str:
        """Serialize steps with their stored (camelCase) parameter names."""
        return _STEP_LIST_ADAPTER.dump_json(self.steps, by_alias=True).decode()

    def same_semantics(self, other: TransformProfile) -> bool:
        """Whether two profiles normalize text identically."""
        if self.scope != other.scope:
            return False
        return _semantic_steps(self) == _semantic_steps(other)


def _semantic_steps(profile: TransformProfile) -> list[dict[str, object]]:
    return [
        step.model_dump(by_alias=True, exclude={"description", "severity"})
        for step in profile.ordered_steps()
        if step.enabled
    ]
