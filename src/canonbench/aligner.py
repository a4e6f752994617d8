# Copyright (c) Syntropy Systems
"""Parse chapter-level provider output into verses and align them to canon.

Provider output arrives either as structured ``(verseNumber, verseText)``
pairs or as free text. Free text is scanned line by line for verse markers:

- ``1 In the beginning...`` or ``1. In the beginning...``
- ``[1] In the beginning...``
- ``Verse 1: In the beginning...`` or ``v1 In the beginning...``
- ``1: In the beginning...``

Lines without a marker continue the current verse. Text before the first
marker is kept as unmatched preamble and never scored. When no line starts
with a marker the text is rescanned for markers embedded mid-line.

Canonical verse numbers are authoritative during alignment.
"""
from __future__ import annotations

import re
import warnings
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field

from canonbench.errors import AlignmentWarning

_LINE_PATTERNS = (
    re.compile(r"^(\d{1,3})[.\s]\s*(.+)$"),
    re.compile(r"^\[(\d{1,3})\]\s*(.+)$"),
    re.compile(r"^(?:verse\s*|v)(\d{1,3})[:\s]\s*(.+)$", re.IGNORECASE),
    re.compile(r"^(\d{1,3}):\s*(.+)$"),
)

_INLINE_PATTERN = re.compile(
    r"(?:^|\s)\[?(\d{1,3})[.:\]\s]\s*([^0-9]+?)(?=\s\[?\d{1,3}[.:\]\s]|\Z)",
)


@dataclass
class ParsedVerse:
    """One verse recovered from provider output."""

    verse_number: int
    text: str
    start_offset: int = 0
    end_offset: int = 0


@dataclass
class VerseParseResult:
    """Verses found in provider output, plus what could not be placed."""

    verses: list[ParsedVerse] = field(default_factory=list)
    unmatched_text: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class CanonicalVerse:
    """The canonical side of an alignment."""

    verse_id: int
    verse_number: int
    text_processed: str
    hash_processed: str


@dataclass
class AlignedVerse:
    """A canonical verse paired with whatever the provider produced for it."""

    verse_id: int
    verse_number: int
    canonical_text: str
    canonical_hash: str
    extracted_text: str
    matched: bool


@dataclass
class AlignmentReport:
    """Exactly one ``AlignedVerse`` per canonical verse, in canonical order."""

    aligned: list[AlignedVerse] = field(default_factory=list)
    missing_verses: list[int] = field(default_factory=list)
    extra_verses: list[int] = field(default_factory=list)
    unmatched_text: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


class _VerseCollector:
    """Last-write-wins verse buffer keyed by verse number."""

    def __init__(self) -> None:
        self.by_number: dict[int, ParsedVerse] = {}
        self.warnings: list[str] = []

    def add(self, verse: ParsedVerse) -> None:
        if verse.verse_number in self.by_number:
            self.warnings.append(f"Duplicate verse number {verse.verse_number} found")
        self.by_number[verse.verse_number] = verse

    def result(self, unmatched_text: list[str] | None = None) -> VerseParseResult:
        verses = sorted(self.by_number.values(), key=lambda v: v.verse_number)
        return VerseParseResult(
            verses=verses,
            unmatched_text=unmatched_text or [],
            warnings=self.warnings,
        )


def _match_marker(line: str) -> tuple[int, str] | None:
    for pattern in _LINE_PATTERNS:
        match = pattern.match(line)
        if match:
            return int(match.group(1)), match.group(2).strip()
    return None


def parse_verses(text: str) -> VerseParseResult:
    """Line-based parse of free-text provider output."""
    collector = _VerseCollector()
    unmatched: list[str] = []
    current: ParsedVerse | None = None

    normalized = text.replace("\r\n", "\n").replace("\r", "\n")
    cursor = 0

    for line in normalized.split("\n"):
        line_start = cursor
        line_end = cursor + len(line)
        cursor = line_end + 1
        stripped = line.strip()
        if not stripped:
            continue

        marker = _match_marker(stripped)
        if marker is not None:
            if current is not None:
                collector.add(current)
            verse_number, verse_text = marker
            current = ParsedVerse(
                verse_number=verse_number,
                text=verse_text,
                start_offset=line_start,
                end_offset=line_end,
            )
        elif current is not None:
            # Multi-line verse
            current.text = f"{current.text} {stripped}"
            current.end_offset = line_end
        else:
            unmatched.append(stripped)

    if current is not None:
        collector.add(current)

    return collector.result(unmatched)


def parse_verses_inline(text: str) -> VerseParseResult:
    """Locate verse markers embedded mid-line in continuous text."""
    collector = _VerseCollector()
    for match in _INLINE_PATTERN.finditer(text):
        collector.add(
            ParsedVerse(
                verse_number=int(match.group(1)),
                text=match.group(2).strip(),
                start_offset=match.start(),
                end_offset=match.end(),
            )
        )
    return collector.result()


def parse_verses_auto(text: str) -> VerseParseResult:
    """Line-based parse, falling back to inline markers when it finds nothing."""
    line_result = parse_verses(text)
    if line_result.verses:
        return line_result

    return parse_verses_inline(text)


def parse_structured(pairs: Iterable[Mapping[str, object]]) -> VerseParseResult:
    """Use provider-structured ``verseNumber``/``verseText`` pairs directly."""
    collector = _VerseCollector()
    skipped: list[str] = []
    for pair in pairs:
        raw_number = pair.get("verseNumber")
        raw_text = pair.get("verseText")
        try:
            verse_number = int(str(raw_number).strip())
        except ValueError:
            skipped.append(f"Skipping verse with non-integer number {raw_number!r}")
            continue
        text = raw_text.strip() if isinstance(raw_text, str) else ""
        collector.add(ParsedVerse(verse_number=verse_number, text=text))
    result = collector.result()
    result.warnings = skipped + result.warnings
    return result


def align(parsed: Sequence[ParsedVerse], canonical: Sequence[CanonicalVerse]) -> AlignmentReport:
    """Pair every canonical verse with its parsed counterpart, if any."""
    report = AlignmentReport()

    parsed_by_number: dict[int, ParsedVerse] = {}
    for verse in parsed:
        parsed_by_number[verse.verse_number] = verse

    canonical_numbers = {verse.verse_number for verse in canonical}

    for number in sorted(parsed_by_number):
        if number not in canonical_numbers:
            report.extra_verses.append(number)
            report.warnings.append(f"Verse {number} found in model output but not in canonical")

    for canonical_verse in canonical:
        found = parsed_by_number.get(canonical_verse.verse_number)
        if found is None:
            report.missing_verses.append(canonical_verse.verse_number)
        report.aligned.append(
            AlignedVerse(
                verse_id=canonical_verse.verse_id,
                verse_number=canonical_verse.verse_number,
                canonical_text=canonical_verse.text_processed,
                canonical_hash=canonical_verse.hash_processed,
                extracted_text=found.text if found is not None else "",
                matched=found is not None,
            )
        )

    if report.missing_verses:
        report.warnings.append(
            "Missing verses: " + ", ".join(str(n) for n in report.missing_verses)
        )

    if report.extra_verses or report.missing_verses:
        warnings.warn(
            f"Alignment found {len(report.missing_verses)} missing and "
            f"{len(report.extra_verses)} extra verse(s)",
            AlignmentWarning,
            stacklevel=2,
        )

    return report


class VerseAligner:
    """Turn one chapter response into one candidate per canonical verse."""

    def align_response(
        self,
        canonical: Sequence[CanonicalVerse],
        *,
        structured: Iterable[Mapping[str, object]] | None = None,
        text: str | None = None,
    ) -> AlignmentReport:
        """Align structured pairs when given, otherwise parse free text."""
        if structured is not None:
            parse_result = parse_structured(structured)
        else:
            parse_result = parse_verses_auto(text or "")

        report = align(parse_result.verses, canonical)
        report.unmatched_text = parse_result.unmatched_text
        report.warnings = parse_result.warnings + report.warnings
        return report
