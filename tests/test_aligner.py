# Copyright (c) Syntropy Systems
"""Tests for verse parsing and alignment."""

import pytest

from canonbench.aligner import (
    CanonicalVerse,
    VerseAligner,
    align,
    parse_structured,
    parse_verses,
    parse_verses_auto,
)
from canonbench.errors import AlignmentWarning


def canonical_verses(*numbers: int) -> list[CanonicalVerse]:
    return [
        CanonicalVerse(
            verse_id=101000 + n,
            verse_number=n,
            text_processed=f"verse {n}",
            hash_processed=f"hash-{n}",
        )
        for n in numbers
    ]


class TestLineParsing:
    """Tests for the line-based free text parser."""

    @pytest.mark.parametrize(
        "line",
        [
            "3 And God said",
            "3. And God said",
            "[3] And God said",
            "Verse 3: And God said",
            "verse 3 And God said",
            "v3 And God said",
            "3: And God said",
        ],
    )
    def test_marker_formats(self, line: str) -> None:
        """Test every supported verse marker."""
        result = parse_verses(line)
        assert len(result.verses) == 1
        assert result.verses[0].verse_number == 3
        assert result.verses[0].text == "And God said"

    def test_multiline_verse(self) -> None:
        """Test unmarked lines continue the current verse."""
        result = parse_verses("1 In the beginning\nGod created\n2 And the earth")
        assert [v.verse_number for v in result.verses] == [1, 2]
        assert result.verses[0].text == "In the beginning God created"

    def test_preamble_is_unmatched(self) -> None:
        """Test text before the first marker is kept aside."""
        result = parse_verses("Here is Genesis 1:\n\n1 In the beginning")
        assert result.unmatched_text == ["Here is Genesis 1:"]
        assert [v.verse_number for v in result.verses] == [1]

    def test_duplicate_last_write_wins(self) -> None:
        """Test a repeated verse number overwrites and warns."""
        result = parse_verses("1 first\n1 second")
        assert len(result.verses) == 1
        assert result.verses[0].text == "second"
        assert any("Duplicate verse number 1" in w for w in result.warnings)

    def test_non_contiguous_numbers(self) -> None:
        """Test gaps in numbering are preserved."""
        result = parse_verses("1 a\n5 b\n3 c")
        assert [v.verse_number for v in result.verses] == [1, 3, 5]

    def test_crlf_line_endings(self) -> None:
        """Test Windows line endings split lines."""
        result = parse_verses("1 a\r\n2 b")
        assert [v.text for v in result.verses] == ["a", "b"]


class TestInlineFallback:
    """Tests for markers embedded mid-line."""

    def test_inline_markers(self) -> None:
        """Test continuous text with bracketed markers."""
        result = parse_verses_auto("Genesis: [1] In the beginning [2] And the earth")
        assert [v.verse_number for v in result.verses] == [1, 2]
        assert result.verses[0].text == "In the beginning"
        assert result.verses[1].text == "And the earth"

    def test_line_parse_wins_when_it_finds_verses(self) -> None:
        """Test the inline pass only runs when the line pass finds nothing."""
        result = parse_verses_auto("1 In the beginning [2] not a marker here")
        assert [v.verse_number for v in result.verses] == [1]

    def test_no_markers(self) -> None:
        """Test unnumbered text yields no verses."""
        assert parse_verses_auto("In the beginning God created").verses == []


class TestStructured:
    """Tests for provider-structured verse pairs."""

    def test_pairs_used_directly(self) -> None:
        """Test string and integer verse numbers are accepted."""
        result = parse_structured(
            [
                {"verseNumber": "1", "verseText": " In the beginning "},
                {"verseNumber": 2, "verseText": "And the earth"},
            ]
        )
        assert [(v.verse_number, v.text) for v in result.verses] == [
            (1, "In the beginning"),
            (2, "And the earth"),
        ]

    def test_non_integer_number_skipped(self) -> None:
        """Test a non-integer verse number is skipped with a warning."""
        result = parse_structured(
            [{"verseNumber": "1a", "verseText": "x"}, {"verseNumber": 2, "verseText": "y"}]
        )
        assert [v.verse_number for v in result.verses] == [2]
        assert any("non-integer" in w for w in result.warnings)


class TestAlignment:
    """Tests for aligning parsed verses to canon."""

    def test_one_result_per_canonical_verse(self) -> None:
        """Test output follows the canonical verse list."""
        parsed = parse_verses("1 a\n2 b\n3 c").verses
        report = align(parsed, canonical_verses(1, 2, 3))
        assert [a.verse_number for a in report.aligned] == [1, 2, 3]
        assert all(a.matched for a in report.aligned)
        assert report.missing_verses == []
        assert report.extra_verses == []

    def test_missing_and_extra_verses(self) -> None:
        """Test missing verses are flagged and extra ones only warned about."""
        parsed = parse_verses("1 a\n4 d").verses
        with pytest.warns(AlignmentWarning):
            report = align(parsed, canonical_verses(1, 2, 3))

        assert [a.verse_number for a in report.aligned] == [1, 2, 3]
        assert report.missing_verses == [2, 3]
        assert report.extra_verses == [4]
        missing = report.aligned[1]
        assert not missing.matched
        assert missing.extracted_text == ""
        assert any("Verse 4 found in model output" in w for w in report.warnings)

    def test_aligner_prefers_structured(self) -> None:
        """Test structured pairs win over free text."""
        report = VerseAligner().align_response(
            canonical_verses(1),
            structured=[{"verseNumber": 1, "verseText": "from json"}],
            text="1 from text",
        )
        assert report.aligned[0].extracted_text == "from json"

    def test_aligner_carries_preamble(self) -> None:
        """Test unmatched preamble is reported on the alignment."""
        report = VerseAligner().align_response(
            canonical_verses(1), text="Sure! Here it is:\n1 In the beginning"
        )
        assert report.unmatched_text == ["Sure! Here it is:"]
        assert report.aligned[0].extracted_text == "In the beginning"
