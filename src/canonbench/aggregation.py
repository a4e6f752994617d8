# Copyright (c) Syntropy Systems
"""Chapter, book and bible rollups over evaluation results.

Every pass rebuilds all three tables from scratch:

1. chapters: evaluation results grouped by (campaign, model, bible, book, chapter)
2. books: committed chapter rows grouped by (campaign, model, bible, book)
3. bibles: committed book rows grouped by (campaign, model, bible)

Each stage swaps its table inside one write transaction. A failed stage is
reported and the next stage reads whatever its input table last committed.
"""
from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from typing import Callable, Optional, TypeVar

from canonbench import db
from canonbench.errors import AggregationError
from canonbench.models.db import (
    BibleAggregateRecord,
    BookAggregateRecord,
    ChapterAggregateRecord,
    EvaluationResultRecord,
)

logger = logging.getLogger(__name__)

K = TypeVar("K")
T = TypeVar("T")


@dataclass
class AggregationResult:
    """Row counts written by each stage, plus stage errors."""

    chapters_processed: int = 0
    books_processed: int = 0
    bibles_processed: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


@dataclass(frozen=True)
class ResultSummary:
    total: int
    matches: int
    perfect_rate: float
    avg_fidelity: float


def perfect_rate(match_count: int, verse_count: int) -> float:
    """Share of exact matches, four decimals."""
    if verse_count == 0:
        return 0.0
    return round(match_count / verse_count, 4)


def _mean(values: Sequence[float]) -> float:
    return round(sum(values) / len(values), 2) if values else 0.0


def _latest(values: Iterable[Optional[str]]) -> Optional[str]:
    present = [v for v in values if v]
    return max(present) if present else None


def _group(rows: Iterable[T], key: Callable[[T], K]) -> dict[K, list[T]]:
    groups: dict[K, list[T]] = {}
    for row in rows:
        groups.setdefault(key(row), []).append(row)
    return groups


def summarize_results(results: Sequence[EvaluationResultRecord]) -> ResultSummary:
    """Totals, exact-match rate and mean fidelity for a set of results."""
    if not results:
        return ResultSummary(total=0, matches=0, perfect_rate=0.0, avg_fidelity=0.0)
    matches = sum(1 for r in results if r.hash_match)
    return ResultSummary(
        total=len(results),
        matches=matches,
        perfect_rate=perfect_rate(matches, len(results)),
        avg_fidelity=_mean([r.fidelity_score for r in results]),
    )


def chapter_rollups(results: Iterable[EvaluationResultRecord]) -> list[ChapterAggregateRecord]:
    """Group verse results into chapter rows."""
    groups = _group(
        results, lambda r: (r.campaign, r.model_id, r.bible_id, r.book_id, r.chapter_id)
    )
    rows = []
    for (campaign, model_id, bible_id, book_id, chapter_id), members in sorted(groups.items()):
        match_count = sum(1 for r in members if r.hash_match)
        rows.append(
            ChapterAggregateRecord(
                campaign=campaign,
                model_id=model_id,
                bible_id=bible_id,
                book_id=book_id,
                chapter_id=chapter_id,
                avg_fidelity=_mean([r.fidelity_score for r in members]),
                perfect_rate=perfect_rate(match_count, len(members)),
                verse_count=len(members),
                match_count=match_count,
                evaluated_at=_latest(r.evaluated_at for r in members),
            )
        )
    return rows


def book_rollups(chapters: Iterable[ChapterAggregateRecord]) -> list[BookAggregateRecord]:
    """Group chapter rows into book rows; averages are over chapter averages."""
    groups = _group(chapters, lambda r: (r.campaign, r.model_id, r.bible_id, r.book_id))
    rows = []
    for (campaign, model_id, bible_id, book_id), members in sorted(groups.items()):
        verse_count = sum(r.verse_count for r in members)
        match_count = sum(r.match_count for r in members)
        rows.append(
            BookAggregateRecord(
                campaign=campaign,
                model_id=model_id,
                bible_id=bible_id,
                book_id=book_id,
                avg_fidelity=_mean([r.avg_fidelity for r in members]),
                perfect_rate=perfect_rate(match_count, verse_count),
                chapter_count=len(members),
                verse_count=verse_count,
                match_count=match_count,
                evaluated_at=_latest(r.evaluated_at for r in members),
            )
        )
    return rows


def bible_rollups(books: Iterable[BookAggregateRecord]) -> list[BibleAggregateRecord]:
    """Group book rows into bible rows."""
    groups = _group(books, lambda r: (r.campaign, r.model_id, r.bible_id))
    rows = []
    for (campaign, model_id, bible_id), members in sorted(groups.items()):
        verse_count = sum(r.verse_count for r in members)
        match_count = sum(r.match_count for r in members)
        rows.append(
            BibleAggregateRecord(
                campaign=campaign,
                model_id=model_id,
                bible_id=bible_id,
                avg_fidelity=_mean([r.avg_fidelity for r in members]),
                perfect_rate=perfect_rate(match_count, verse_count),
                book_count=len(members),
                chapter_count=sum(r.chapter_count for r in members),
                verse_count=verse_count,
                match_count=match_count,
                evaluated_at=_latest(r.evaluated_at for r in members),
            )
        )
    return rows


class AggregationEngine:
    """Rebuilds the rollup tables from the evaluation results store."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn

    def recompute_chapters(self) -> int:
        rows = chapter_rollups(db.get_results(self.conn))
        db.replace_chapter_aggregates(self.conn, rows)
        return len(rows)

    def recompute_books(self) -> int:
        rows = book_rollups(db.get_chapter_aggregates(self.conn))
        db.replace_book_aggregates(self.conn, rows)
        return len(rows)

    def recompute_bibles(self) -> int:
        rows = bible_rollups(db.get_book_aggregates(self.conn))
        db.replace_bible_aggregates(self.conn, rows)
        return len(rows)

    def recompute_all(self) -> AggregationResult:
        """Run all three stages in order, collecting stage failures."""
        result = AggregationResult()
        stages: list[tuple[str, Callable[[], int], str]] = [
            ("chapters", self.recompute_chapters, "chapters_processed"),
            ("books", self.recompute_books, "books_processed"),
            ("bibles", self.recompute_bibles, "bibles_processed"),
        ]
        for name, stage, counter in stages:
            try:
                setattr(result, counter, stage())
            except (sqlite3.Error, AggregationError, ValueError) as e:
                logger.warning("Aggregation stage %s failed: %s", name, e)
                result.errors.append(f"{name}: {e}")

        logger.info(
            "Aggregation complete: %d chapters, %d books, %d bibles",
            result.chapters_processed,
            result.books_processed,
            result.bibles_processed,
        )
        return result
