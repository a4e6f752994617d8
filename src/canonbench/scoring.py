# Copyright (c) Syntropy Systems
"""Edit-distance fidelity scoring."""
from __future__ import annotations

import hashlib
from dataclasses import dataclass
from typing import Literal

from canonbench.models.db import DiffSummary

ScoreCategory = Literal["pass", "warning", "fail"]


@dataclass(frozen=True)
class EditStats:
    """Levenshtein distance with its classified operations."""

    distance: int
    substitutions: int
    omissions: int
    additions: int


@dataclass(frozen=True)
class Comparison:
    """Result of comparing canonical text against a candidate."""

    fidelity_score: float
    diff: DiffSummary
    distance: int


@dataclass(frozen=True)
class ScoreThresholds:
    """Lower bounds for the pass and warning categories."""

    pass_: float = 100.0
    warning: float = 95.0


def content_hash(text: str) -> str:
    """SHA-256 hex digest of UTF-8 text."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def edit_stats(source: str, target: str) -> EditStats:
    """Compute Levenshtein distance and classify each edit.

    Backtracking from the final cell prefers, on cost ties: an exact diagonal
    match, then a diagonal substitution, then an omission (character only in
    ``source``), then an addition (character only in ``target``). Diff counts
    depend on this order; the distance does not.
    """
    n = len(source)
    m = len(target)

    dp = [[0] * (m + 1) for _ in range(n + 1)]
    for i in range(n + 1):
        dp[i][0] = i
    for j in range(m + 1):
        dp[0][j] = j

    for i in range(1, n + 1):
        row = dp[i]
        prev = dp[i - 1]
        source_char = source[i - 1]
        for j in range(1, m + 1):
            if source_char == target[j - 1]:
                row[j] = prev[j - 1]
            else:
                row[j] = min(prev[j - 1], prev[j], row[j - 1]) + 1

    substitutions = 0
    omissions = 0
    additions = 0
    i = n
    j = m

    while i > 0 or j > 0:
        cost = dp[i][j]
        if i > 0 and j > 0:
            if source[i - 1] == target[j - 1] and cost == dp[i - 1][j - 1]:
                i -= 1
                j -= 1
                continue
            if cost == dp[i - 1][j - 1] + 1:
                substitutions += 1
                i -= 1
                j -= 1
                continue
        if i > 0 and cost == dp[i - 1][j] + 1:
            omissions += 1
            i -= 1
            continue
        if j > 0 and cost == dp[i][j - 1] + 1:
            additions += 1
            j -= 1
            continue
        # Unreachable for a well-formed table
        if i > 0:
            omissions += 1
            i -= 1
        else:
            additions += 1
            j -= 1

    return EditStats(
        distance=dp[n][m],
        substitutions=substitutions,
        omissions=omissions,
        additions=additions,
    )


def fidelity_from_distance(distance: int, canonical_len: int, candidate_len: int) -> float:
    """Normalize an edit distance to a 0-100 score with two decimals."""
    max_length = max(canonical_len, candidate_len)
    if max_length == 0:
        return 100.0
    ratio = max(0.0, 1 - distance / max_length)
    return round(ratio * 100, 2)


def compare(canonical: str, candidate: str) -> Comparison:
    """Score a candidate against canonical text."""
    stats = edit_stats(canonical, candidate)
    return Comparison(
        fidelity_score=fidelity_from_distance(stats.distance, len(canonical), len(candidate)),
        diff=DiffSummary(
            substitutions=stats.substitutions,
            omissions=stats.omissions,
            additions=stats.additions,
        ),
        distance=stats.distance,
    )


def hash_match(canonical_processed: str, candidate_processed: str) -> bool:
    """Exact content-hash equality of two processed strings."""
    return content_hash(canonical_processed) == content_hash(candidate_processed)


def score_category(score: float, thresholds: ScoreThresholds | None = None) -> ScoreCategory:
    """Bucket a fidelity score into pass, warning or fail."""
    thresholds = thresholds or ScoreThresholds()
    if score >= thresholds.pass_:
        return "pass"
    if score >= thresholds.warning:
        return "warning"
    return "fail"


class FidelityScorer:
    """Object facade over ``compare`` and the score thresholds."""

    thresholds: ScoreThresholds

    def __init__(self, thresholds: ScoreThresholds | None = None) -> None:
        self.thresholds = thresholds or ScoreThresholds()

    def compare(self, canonical: str, candidate: str) -> Comparison:
        """Score a candidate against canonical text."""
        return compare(canonical, candidate)

    def category(self, score: float) -> ScoreCategory:
        """Bucket a score with this scorer's thresholds."""
        return score_category(score, self.thresholds)
