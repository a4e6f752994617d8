# Copyright (c) Syntropy Systems
"""Deterministic text normalization driven by transform profiles.

Each step kind is a pure ``str -> str`` function. An invalid regular
expression makes the affected pattern a no-op and is logged once.
"""
from __future__ import annotations

import logging
import re
from functools import lru_cache
from typing import TYPE_CHECKING

from canonbench.models.transform import (
    CollapseWhitespaceStep,
    RegexReplaceStep,
    ReplaceMapStep,
    StripHeadingsStep,
    StripMarkupTagsStep,
    StripParagraphMarkersStep,
    StripVerseNumbersStep,
    TrimStep,
)

if TYPE_CHECKING:
    from collections.abc import Iterable

    from canonbench.models.transform import TransformProfile, TransformStep

logger = logging.getLogger(__name__)

_WHITESPACE = re.compile(r"\s+")


@lru_cache(maxsize=512)
def _compile(pattern: str, flags: int = 0) -> re.Pattern[str] | None:
    try:
        return re.compile(pattern, flags)
    except re.error as exc:
        logger.warning("Ignoring invalid transform pattern %r: %s", pattern, exc)
        return None


def strip_markup_tags(text: str, tag_names: Iterable[str]) -> str:
    """Remove ``<tag ...>`` and ``</tag>`` for each tag name."""
    for tag in tag_names:
        if not tag:
            continue
        regex = _compile(rf"</?{re.escape(tag)}\b[^>]*>", re.IGNORECASE)
        if regex is not None:
            text = regex.sub("", text)
    return text


def strip_literals(text: str, markers: Iterable[str]) -> str:
    """Remove each literal marker substring."""
    for marker in markers:
        if marker:
            text = text.replace(marker, "")
    return text


def strip_patterns(text: str, patterns: Iterable[str]) -> str:
    """Remove matches of each pattern, in list order."""
    for pattern in patterns:
        regex = _compile(pattern)
        if regex is not None:
            text = regex.sub("", text)
    return text


def regex_replace(text: str, pattern: str | None, replacement: str) -> str:
    """Replace every match of pattern; a missing or invalid pattern is a no-op."""
    if not pattern:
        return text
    regex = _compile(pattern)
    if regex is None:
        return text
    try:
        return regex.sub(replacement, text)
    except (re.error, IndexError) as exc:
        # Bad group reference in the replacement string
        logger.warning("Ignoring invalid replacement %r: %s", replacement, exc)
        return text


def replace_map(text: str, mapping: dict[str, str]) -> str:
    """Literal replacement for each key, in mapping order."""
    for key, value in mapping.items():
        if key:
            text = text.replace(key, value)
    return text


def collapse_whitespace(text: str) -> str:
    """Fold every whitespace run to a single space."""
    return _WHITESPACE.sub(" ", text)


def apply_step(text: str, step: TransformStep) -> str:
    """Apply a single step. Disabled and unknown steps return text unchanged."""
    if not step.enabled:
        return text

    if isinstance(step, StripMarkupTagsStep):
        return strip_markup_tags(text, step.params.tag_names)
    if isinstance(step, StripParagraphMarkersStep):
        return strip_literals(text, step.params.markers)
    if isinstance(step, (StripVerseNumbersStep, StripHeadingsStep)):
        return strip_patterns(text, step.params.patterns)
    if isinstance(step, RegexReplaceStep):
        return regex_replace(text, step.params.pattern, step.params.replacement)
    if isinstance(step, ReplaceMapStep):
        return replace_map(text, step.params.map)
    if isinstance(step, CollapseWhitespaceStep):
        return collapse_whitespace(text)
    if isinstance(step, TrimStep):
        return text.strip()
    return text


def apply_profile(text: str, profile: TransformProfile | None) -> str:
    """Run text through every enabled step of a profile in ascending order.

    ``None`` means no normalization.
    """
    if profile is None:
        return text
    for step in profile.ordered_steps():
        text = apply_step(text, step)
    return text


class TransformPipeline:
    """Callable wrapper binding a profile to ``apply_profile``."""

    profile: TransformProfile | None

    def __init__(self, profile: TransformProfile | None) -> None:
        self.profile = profile

    def apply(self, text: str) -> str:
        """Normalize text with the bound profile."""
        return apply_profile(text, self.profile)

    def __call__(self, text: str) -> str:
        return self.apply(text)

    @property
    def profile_id(self) -> int | None:
        """Id of the bound profile, if any."""
        return self.profile.profile_id if self.profile is not None else None
