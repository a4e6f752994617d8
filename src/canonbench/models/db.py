# Copyright (c) Syntropy Systems
"""Pydantic models for database records."""

from __future__ import annotations

from typing import Literal, Optional, cast

from pydantic import Field, TypeAdapter, field_validator

from .base import CanonbenchBaseModel, JSONValue

RunStatus = Literal["running", "completed", "failed", "cancelled"]
ItemStatus = Literal["pending", "running", "success", "failed"]
TargetType = Literal["chapter", "verse"]
RunScope = Literal["bible", "book", "chapter", "verse"]
LogLevel = Literal["info", "warn", "error"]

TERMINAL_RUN_STATUSES = frozenset({"completed", "failed", "cancelled"})

_LIST_INT_ADAPTER = TypeAdapter(list[int])
_DICT_INT_ADAPTER = TypeAdapter(dict[str, int])
_DICT_JSON_ADAPTER = TypeAdapter(dict[str, JSONValue])


class DiffSummary(CanonbenchBaseModel):
    """Classified edit operations between canonical and candidate text."""

    substitutions: int = 0
    omissions: int = 0
    additions: int = 0
    missing: bool = False


class RunMetrics(CanonbenchBaseModel):
    """Run-level counters."""

    total: int = 0
    success: int = 0
    failed: int = 0
    duration_ms: Optional[int] = Field(default=None, alias="durationMs")


class ErrorSummary(CanonbenchBaseModel):
    """Last item error seen by a run."""

    failed_count: int = Field(default=0, alias="failedCount")
    last_error: Optional[str] = Field(default=None, alias="lastError")
    last_error_at: Optional[str] = Field(default=None, alias="lastErrorAt")


class RunRecord(CanonbenchBaseModel):
    """Database run record."""

    run_id: str
    campaign: str
    model_id: int
    run_type: TargetType
    scope: RunScope
    scope_ids: dict[str, int] = Field(default_factory=dict)
    scope_params: dict[str, int] = Field(default_factory=dict)
    target_ids: list[int] = Field(default_factory=list)
    status: RunStatus
    cancel_requested: bool = False
    metrics: RunMetrics = Field(default_factory=RunMetrics)
    error_summary: Optional[ErrorSummary] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    created_by: Optional[str] = None

    @field_validator("scope_ids", "scope_params", mode="before")
    @classmethod
    def _parse_int_map(cls, value: object) -> dict[str, int]:
        if value is None:
            return {}
        if isinstance(value, str):
            return _DICT_INT_ADAPTER.validate_json(value)
        return cast("dict[str, int]", value)

    @field_validator("target_ids", mode="before")
    @classmethod
    def _parse_target_ids(cls, value: object) -> list[int]:
        if value is None:
            return []
        if isinstance(value, str):
            return _LIST_INT_ADAPTER.validate_json(value)
        return cast("list[int]", value)

    @field_validator("metrics", mode="before")
    @classmethod
    def _parse_metrics(cls, value: object) -> RunMetrics:
        if value is None:
            return RunMetrics()
        if isinstance(value, str):
            return RunMetrics.model_validate_json(value)
        return RunMetrics.model_validate(value)

    @field_validator("error_summary", mode="before")
    @classmethod
    def _parse_error_summary(cls, value: object) -> Optional[ErrorSummary]:
        if value is None:
            return None
        if isinstance(value, str):
            return ErrorSummary.model_validate_json(value)
        return ErrorSummary.model_validate(value)

    @property
    def is_terminal(self) -> bool:
        """Whether the run has reached a terminal status."""
        return self.status in TERMINAL_RUN_STATUSES


class RunItemRecord(CanonbenchBaseModel):
    """Database run item record (one per target)."""

    run_id: str
    target_type: TargetType
    target_id: int
    status: ItemStatus
    attempts: int = 0
    last_error: Optional[str] = None
    updated_at: Optional[str] = None


class RunLogEntry(CanonbenchBaseModel):
    """Append-only run log entry."""

    run_id: str
    seq: int
    stage: str
    level: LogLevel
    message: str
    timestamp: str


class EvaluationResultRecord(CanonbenchBaseModel):
    """Verse-level evaluation result, unique per (campaign, model, verse)."""

    campaign: str
    model_id: int
    verse_id: int
    chapter_id: int
    book_id: int
    bible_id: int
    run_id: str
    response_raw: str
    response_processed: str
    hash_raw: str
    hash_processed: str
    hash_match: bool
    fidelity_score: float
    diff: DiffSummary = Field(default_factory=DiffSummary)
    latency_ms: int = 0
    evaluated_at: str

    @field_validator("diff", mode="before")
    @classmethod
    def _parse_diff(cls, value: object) -> DiffSummary:
        if value is None:
            return DiffSummary()
        if isinstance(value, str):
            return DiffSummary.model_validate_json(value)
        return DiffSummary.model_validate(value)


class ChapterAggregateRecord(CanonbenchBaseModel):
    """Chapter rollup row."""

    campaign: str
    model_id: int
    bible_id: int
    book_id: int
    chapter_id: int
    avg_fidelity: float
    perfect_rate: float
    verse_count: int
    match_count: int
    evaluated_at: Optional[str] = None


class BookAggregateRecord(CanonbenchBaseModel):
    """Book rollup row."""

    campaign: str
    model_id: int
    bible_id: int
    book_id: int
    avg_fidelity: float
    perfect_rate: float
    chapter_count: int
    verse_count: int
    match_count: int
    evaluated_at: Optional[str] = None


class BibleAggregateRecord(CanonbenchBaseModel):
    """Bible rollup row."""

    campaign: str
    model_id: int
    bible_id: int
    avg_fidelity: float
    perfect_rate: float
    book_count: int
    chapter_count: int
    verse_count: int
    match_count: int
    evaluated_at: Optional[str] = None


class ChapterRecord(CanonbenchBaseModel):
    """Published canonical chapter."""

    chapter_id: int
    bible_id: int
    book_id: int
    chapter_number: int
    reference: str
    text_raw: str
    text_processed: str
    hash_raw: str
    hash_processed: str
    transform_profile_id: Optional[int] = None


class VerseRecord(CanonbenchBaseModel):
    """Published canonical verse."""

    verse_id: int
    chapter_id: int
    bible_id: int
    book_id: int
    verse_number: int
    reference: str
    text_raw: str
    text_processed: str
    hash_raw: str
    hash_processed: str
    transform_profile_id: Optional[int] = None


class ModelRecord(CanonbenchBaseModel):
    """A benchmarked model and its provider configuration."""

    model_id: int = Field(alias="modelId")
    provider: str
    display_name: Optional[str] = Field(default=None, alias="displayName")
    is_active: bool = Field(default=True, alias="isActive")
    config: dict[str, JSONValue] = Field(default_factory=dict)

    @field_validator("config", mode="before")
    @classmethod
    def _parse_config(cls, value: object) -> dict[str, JSONValue]:
        if value is None:
            return {}
        if isinstance(value, str):
            return _DICT_JSON_ADAPTER.validate_json(value)
        return cast("dict[str, JSONValue]", value)
