# Copyright (c) Syntropy Systems
"""Run coordination: target resolution, item execution, retry and cancellation.

A run moves ``running -> completed | failed | cancelled``. Items execute
sequentially in ascending target id order. Before each item the run's
``cancel_requested`` flag is re-read from the database, so a cancel issued
from another connection or process takes effect at the next item boundary.
Item failures are recorded on the item and never abort the loop.
"""
from __future__ import annotations

import logging
import sqlite3
import time
import uuid
from dataclasses import dataclass, field
from typing import Callable, Optional

from canonbench import db
from canonbench.aggregation import AggregationEngine
from canonbench.aligner import CanonicalVerse, VerseAligner
from canonbench.config import CanonbenchConfig
from canonbench.errors import CanonbenchError, ConfigurationError, ParseError
from canonbench.models.db import (
    DiffSummary,
    ErrorSummary,
    EvaluationResultRecord,
    LogLevel,
    ModelRecord,
    RunLogEntry,
    RunMetrics,
    RunRecord,
    TargetType,
)
from canonbench.profiles import resolve_model_output_profile
from canonbench.providers import (
    ProviderAdapter,
    ProviderConfig,
    ProviderRegistry,
    ProviderResponse,
    ProviderTarget,
    default_registry,
    normalize_empty_response,
)
from canonbench.scoring import FidelityScorer, content_hash
from canonbench.transforms import TransformPipeline

logger = logging.getLogger(__name__)

_LOG_LEVELS = {"info": logging.INFO, "warn": logging.WARNING, "error": logging.ERROR}

# Scopes each run type can expand, and the scope_ids key each one needs
_ALLOWED_SCOPES: dict[str, tuple[str, ...]] = {
    "verse": ("verse", "chapter", "book", "bible"),
    "chapter": ("chapter", "book", "bible"),
}
SCOPE_KEYS = {
    "verse": "verse_id",
    "chapter": "chapter_id",
    "book": "book_id",
    "bible": "bible_id",
}


def new_run_id() -> str:
    """Generate a fresh run id."""
    return uuid.uuid4().hex


def resolve_target_ids(
    conn: sqlite3.Connection,
    run_type: str,
    scope: str,
    scope_ids: dict[str, int],
    limit: Optional[int] = None,
    skip: Optional[int] = None,
) -> list[int]:
    """Expand a scope into ascending target ids, then apply skip/limit.

    Raises ConfigurationError for an unsupported scope, a missing scope id,
    a negative skip or limit, or an empty result.
    """
    for name, value in (("limit", limit), ("skip", skip)):
        if value is not None and value < 0:
            msg = f"{name} must be zero or greater, got {value}"
            raise ConfigurationError(msg)
    if run_type not in _ALLOWED_SCOPES:
        msg = f"Unknown run type '{run_type}'"
        raise ConfigurationError(msg)
    if scope not in _ALLOWED_SCOPES[run_type]:
        msg = f"Scope '{scope}' is not valid for {run_type} runs"
        raise ConfigurationError(msg)

    key = SCOPE_KEYS[scope]
    scope_value = scope_ids.get(key)
    if scope_value is None:
        msg = f"Scope '{scope}' requires {key}"
        raise ConfigurationError(msg)

    if run_type == "chapter":
        if scope == "chapter":
            ids = [scope_value] if db.get_chapter(conn, scope_value) else []
        elif scope == "book":
            ids = db.list_chapter_ids(conn, book_id=scope_value)
        else:
            ids = db.list_chapter_ids(conn, bible_id=scope_value)
    elif scope == "verse":
        ids = [scope_value] if db.get_verse(conn, scope_value) else []
    elif scope == "chapter":
        ids = db.list_verse_ids(conn, chapter_id=scope_value)
    elif scope == "book":
        ids = db.list_verse_ids(conn, book_id=scope_value)
    else:
        ids = db.list_verse_ids(conn, bible_id=scope_value)

    start = skip or 0
    end = start + limit if limit is not None else None
    ids = sorted(ids)[start:end]

    if not ids:
        msg = f"Scope {scope} {scope_value} resolved to no {run_type} targets"
        raise ConfigurationError(msg)
    return ids


@dataclass
class _RunContext:
    model: ModelRecord
    adapter: ProviderAdapter
    provider_config: ProviderConfig
    pipeline: TransformPipeline


@dataclass
class _LoopOutcome:
    success: int = 0
    failed: int = 0
    cancelled: bool = False
    last_error: Optional[str] = None
    last_error_at: Optional[str] = None
    processed: list[int] = field(default_factory=list)


class RunCoordinator:
    """Executes benchmark runs against one database connection.

    The connection is owned by the caller. Use one coordinator (and one
    connection) per thread.
    """

    conn: sqlite3.Connection
    registry: ProviderRegistry
    config: CanonbenchConfig

    def __init__(
        self,
        conn: sqlite3.Connection,
        registry: Optional[ProviderRegistry] = None,
        config: Optional[CanonbenchConfig] = None,
    ) -> None:
        self.conn = conn
        self.registry = registry if registry is not None else default_registry()
        self.config = config if config is not None else CanonbenchConfig()
        self.scorer = FidelityScorer()
        self.aligner = VerseAligner()

    # --- Public operations ---

    def start_run(
        self,
        model_id: int,
        run_type: TargetType,
        scope: str,
        scope_ids: dict[str, int],
        run_id: Optional[str] = None,
        campaign: Optional[str] = None,
        limit: Optional[int] = None,
        skip: Optional[int] = None,
        created_by: Optional[str] = None,
        on_created: Optional[Callable[[str], None]] = None,
    ) -> RunRecord:
        """Start (or return) a run and execute it to a terminal status.

        An existing ``run_id`` returns that run's current record without
        calling any provider or creating items. Setup problems raise
        ConfigurationError before anything is written. ``on_created`` is
        called with the run id once the run row exists and before the first
        item executes.
        """
        run_id = run_id or new_run_id()
        existing = db.get_run(self.conn, run_id)
        if existing is not None:
            logger.info("Run %s already exists (%s), not restarting", run_id, existing.status)
            return existing

        ctx = self._prepare(model_id)
        target_ids = resolve_target_ids(self.conn, run_type, scope, scope_ids, limit, skip)
        scope_params = {k: v for k, v in (("limit", limit), ("skip", skip)) if v is not None}

        created = db.create_run(
            self.conn,
            run_id=run_id,
            campaign=campaign or self.config.default_campaign,
            model_id=model_id,
            run_type=run_type,
            scope=scope,
            scope_ids=scope_ids,
            target_ids=target_ids,
            scope_params=scope_params,
            created_by=created_by,
        )
        run = db.get_run(self.conn, run_id)
        if run is None:
            msg = f"Run {run_id} vanished after creation"
            raise CanonbenchError(msg)
        if not created:
            logger.info("Run %s was created concurrently, not restarting", run_id)
            return run

        started = time.monotonic()
        self._log(run_id, "run", "info", f"Run {run_id} started.")
        try:
            self._log(run_id, "resolve_targets", "info", f"Resolved {len(target_ids)} targets.")
            db.create_run_items(self.conn, run_id, run_type, target_ids)
            self._log(run_id, "run_items", "info", f"Created {len(target_ids)} run items.")
            if on_created is not None:
                on_created(run_id)

            outcome = self._execute(run, ctx, target_ids)
            self._log_execution(run_id, outcome)
            return self._finalize(run_id, outcome, started, stage="complete")
        except Exception as e:
            self._fail_run(
                run_id, e, started, total=len(target_ids), stage="complete", include_pending=True
            )
            raise

    def retry_failed(self, run_id: str) -> RunRecord:
        """Replay only the failed items of a run, then resummarize every item.

        Safe to call any number of times; with no failed items it returns
        the run unchanged. An error escaping the replay closes the run as
        failed before it propagates.
        """
        run = db.get_run(self.conn, run_id)
        if run is None:
            msg = f"Run {run_id} not found"
            raise ConfigurationError(msg)
        if run.status == "running":
            msg = f"Run {run_id} is still running"
            raise ConfigurationError(msg)

        target_ids = [i.target_id for i in db.get_run_items(self.conn, run_id, status="failed")]
        if not target_ids:
            logger.info("Run %s has no failed items to retry", run_id)
            return run

        ctx = self._prepare(run.model_id)

        started = time.monotonic()
        db.reopen_run(self.conn, run_id)
        try:
            self._log(run_id, "retry", "info", f"Retrying {len(target_ids)} failed items.")
            outcome = self._execute(run, ctx, target_ids)
            self._log_execution(run_id, outcome)
            return self._finalize(run_id, outcome, started, stage="retry")
        except Exception as e:
            self._fail_run(run_id, e, started, total=len(run.target_ids), stage="retry")
            raise

    def request_cancel(self, run_id: str) -> bool:
        """Ask a running run to stop at its next item boundary.

        Returns True when the run is running (the flag is now set), False
        when the run already reached a terminal status.
        """
        try:
            status = db.request_cancel(self.conn, run_id)
        except ValueError as e:
            raise ConfigurationError(str(e)) from e

        if status != "running":
            logger.info("Run %s is already %s, nothing to cancel", run_id, status)
            return False

        self._log(run_id, "cancel", "info", "Cancellation requested.")
        return True

    def get_run(self, run_id: str) -> Optional[RunRecord]:
        return db.get_run(self.conn, run_id)

    def get_logs(self, run_id: str) -> list[RunLogEntry]:
        return db.get_run_logs(self.conn, run_id)

    # --- Internals ---

    def _log(self, run_id: str, stage: str, level: LogLevel, message: str) -> None:
        db.append_run_log(self.conn, run_id, stage, level, message)
        logger.log(_LOG_LEVELS[level], "[%s] %s: %s", run_id, stage, message)

    def _prepare(self, model_id: int) -> _RunContext:
        model = db.get_model(self.conn, model_id)
        if model is None:
            msg = f"Model {model_id} not found"
            raise ConfigurationError(msg)
        if not model.is_active:
            msg = f"Model {model_id} is not active"
            raise ConfigurationError(msg)

        adapter = self.registry.get(model.provider)
        profile = resolve_model_output_profile(self.conn, model_id)

        provider_config = ProviderConfig.model_validate(
            {"timeout": self.config.provider_timeout, **model.config}
        )
        return _RunContext(
            model=model,
            adapter=adapter,
            provider_config=provider_config,
            pipeline=TransformPipeline(profile),
        )

    def _execute(self, run: RunRecord, ctx: _RunContext, target_ids: list[int]) -> _LoopOutcome:
        outcome = _LoopOutcome()
        target_type = run.run_type

        for target_id in target_ids:
            if db.is_cancel_requested(self.conn, run.run_id):
                outcome.cancelled = True
                self._log(
                    run.run_id,
                    "cancel",
                    "warn",
                    f"Cancellation observed; {len(target_ids) - len(outcome.processed)} "
                    "items left pending.",
                )
                break

            outcome.processed.append(target_id)
            try:
                db.mark_item_running(self.conn, run.run_id, target_type, target_id)
                if target_type == "chapter":
                    self._evaluate_chapter(run, ctx, target_id)
                else:
                    self._evaluate_verse(run, ctx, target_id)
                db.mark_item_finished(self.conn, run.run_id, target_type, target_id)
            except Exception as e:
                message = str(e) or type(e).__name__
                outcome.failed += 1
                outcome.last_error = message
                outcome.last_error_at = db.utcnow()
                logger.warning("Run %s %s %s failed: %s", run.run_id, target_type, target_id, message)
                self._record_item_failure(run.run_id, target_type, target_id, message)
            else:
                outcome.success += 1

        return outcome

    def _record_item_failure(
        self, run_id: str, target_type: str, target_id: int, message: str
    ) -> None:
        # A rejected failure write leaves the item running; _finalize fails it
        try:
            db.mark_item_finished(self.conn, run_id, target_type, target_id, error_message=message)
        except sqlite3.Error as e:
            logger.error(
                "Run %s could not record failure of %s %s: %s", run_id, target_type, target_id, e
            )

    def _log_execution(self, run_id: str, outcome: _LoopOutcome) -> None:
        self._log(
            run_id,
            "execute",
            "error" if outcome.failed else "info",
            f"Executed {len(outcome.processed)} items: "
            f"{outcome.success} succeeded, {outcome.failed} failed.",
        )
        if outcome.failed and outcome.last_error:
            self._log(run_id, "execute", "error", f"Last error: {outcome.last_error}")

    def _fail_run(
        self,
        run_id: str,
        error: Exception,
        started: float,
        total: int,
        stage: str,
        include_pending: bool = False,
    ) -> None:
        """Close a run as failed after an error escaped execution.

        Unfinished items are marked failed so the next retry replays them.
        """
        logger.error("Run %s failed during %s: %s", run_id, stage, error)
        db.finish_run(
            self.conn,
            run_id,
            "failed",
            RunMetrics(total=total, duration_ms=_elapsed_ms(started)),
            ErrorSummary(last_error=str(error), last_error_at=db.utcnow()),
        )
        db.fail_unfinished_items(
            self.conn, run_id, f"Run failed: {error}", include_pending=include_pending
        )
        self._log(run_id, "run", "error", str(error))
        self._log(run_id, stage, "error", "Run failed.")

    def _call_provider(self, ctx: _RunContext, target: ProviderTarget) -> tuple[ProviderResponse, int]:
        started = time.monotonic()
        response = normalize_empty_response(ctx.adapter.generate(target, ctx.provider_config))
        latency_ms = _elapsed_ms(started)
        if response.parse_error:
            raise ParseError(response.parse_error)
        return response, latency_ms

    def _evaluate_verse(self, run: RunRecord, ctx: _RunContext, verse_id: int) -> None:
        verse = db.get_verse(self.conn, verse_id)
        if verse is None:
            msg = f"Verse {verse_id} not found"
            raise CanonbenchError(msg)

        response, latency_ms = self._call_provider(
            ctx,
            ProviderTarget(
                target_type="verse",
                target_id=verse_id,
                reference=verse.reference,
                canonical_raw=verse.text_raw,
                canonical_processed=verse.text_processed,
            ),
        )
        if response.extracted_text is None:
            msg = "Failed to extract text from model response."
            raise ParseError(msg)

        response_processed = ctx.pipeline(response.extracted_text)
        hash_processed = content_hash(response_processed)
        comparison = self.scorer.compare(verse.text_processed, response_processed)

        db.upsert_result(
            self.conn,
            EvaluationResultRecord(
                campaign=run.campaign,
                model_id=run.model_id,
                verse_id=verse.verse_id,
                chapter_id=verse.chapter_id,
                book_id=verse.book_id,
                bible_id=verse.bible_id,
                run_id=run.run_id,
                response_raw=response.response_raw,
                response_processed=response_processed,
                hash_raw=content_hash(response.response_raw),
                hash_processed=hash_processed,
                hash_match=hash_processed == verse.hash_processed,
                fidelity_score=comparison.fidelity_score,
                diff=comparison.diff,
                latency_ms=latency_ms,
                evaluated_at=db.utcnow(),
            ),
        )

    def _evaluate_chapter(self, run: RunRecord, ctx: _RunContext, chapter_id: int) -> None:
        chapter = db.get_chapter(self.conn, chapter_id)
        if chapter is None:
            msg = f"Chapter {chapter_id} not found"
            raise CanonbenchError(msg)
        verses = db.get_chapter_verses(self.conn, chapter_id)
        if not verses:
            msg = f"No canonical verses found for chapter {chapter_id}"
            raise CanonbenchError(msg)

        response, latency_ms = self._call_provider(
            ctx,
            ProviderTarget(
                target_type="chapter",
                target_id=chapter_id,
                reference=chapter.reference,
                canonical_raw=chapter.text_raw,
                canonical_processed=chapter.text_processed,
            ),
        )
        structured = response.structured_verses()
        if structured is None and response.extracted_text is None:
            msg = "Failed to extract text from model response."
            raise ParseError(msg)

        report = self.aligner.align_response(
            [
                CanonicalVerse(
                    verse_id=v.verse_id,
                    verse_number=v.verse_number,
                    text_processed=v.text_processed,
                    hash_processed=v.hash_processed,
                )
                for v in verses
            ],
            structured=structured,
            text=response.extracted_text,
        )
        for warning in report.warnings:
            self._log(run.run_id, "align", "warn", f"Chapter {chapter_id}: {warning}")

        latency_per_verse = round(latency_ms / len(verses))
        evaluated_at = db.utcnow()
        for aligned in report.aligned:
            verse = next(v for v in verses if v.verse_id == aligned.verse_id)
            response_processed = ctx.pipeline(aligned.extracted_text)
            hash_processed = content_hash(response_processed)
            if aligned.matched:
                comparison = self.scorer.compare(aligned.canonical_text, response_processed)
                fidelity_score = comparison.fidelity_score
                diff = comparison.diff
            else:
                fidelity_score = 0.0
                diff = DiffSummary(missing=True)

            db.upsert_result(
                self.conn,
                EvaluationResultRecord(
                    campaign=run.campaign,
                    model_id=run.model_id,
                    verse_id=aligned.verse_id,
                    chapter_id=chapter.chapter_id,
                    book_id=verse.book_id,
                    bible_id=verse.bible_id,
                    run_id=run.run_id,
                    response_raw=aligned.extracted_text,
                    response_processed=response_processed,
                    hash_raw=content_hash(aligned.extracted_text),
                    hash_processed=hash_processed,
                    hash_match=aligned.matched and hash_processed == aligned.canonical_hash,
                    fidelity_score=fidelity_score,
                    diff=diff,
                    latency_ms=latency_per_verse,
                    evaluated_at=evaluated_at,
                ),
            )

    def _finalize(
        self,
        run_id: str,
        outcome: _LoopOutcome,
        started: float,
        stage: str,
    ) -> RunRecord:
        """Derive status and metrics from the full item set and close the run."""
        db.fail_unfinished_items(self.conn, run_id, "Item outcome could not be recorded.")
        counts = db.count_run_items(self.conn, run_id)
        total = sum(counts.values())
        failed = counts["failed"]

        if outcome.cancelled:
            status = "cancelled"
        elif failed:
            status = "failed"
        elif counts["pending"]:
            # Items skipped by an earlier cancellation were never executed
            status = "cancelled"
        else:
            status = "completed"

        metrics = RunMetrics(
            total=total,
            success=counts["success"],
            failed=failed,
            duration_ms=_elapsed_ms(started),
        )
        error_summary = None
        if failed:
            previous = db.get_run(self.conn, run_id)
            last_error = outcome.last_error
            last_error_at = outcome.last_error_at
            if last_error is None and previous is not None and previous.error_summary:
                last_error = previous.error_summary.last_error
                last_error_at = previous.error_summary.last_error_at
            error_summary = ErrorSummary(
                failed_count=failed,
                last_error=last_error,
                last_error_at=last_error_at,
            )

        db.finish_run(self.conn, run_id, status, metrics, error_summary)
        self._log(
            run_id,
            stage,
            "info" if status == "completed" else "error" if status == "failed" else "warn",
            f"Run {status}: {metrics.success} succeeded, {metrics.failed} failed "
            f"of {metrics.total}.",
        )

        if status == "completed" and self.config.aggregate_on_complete:
            self._aggregate(run_id)

        run = db.get_run(self.conn, run_id)
        if run is None:
            msg = f"Run {run_id} not found"
            raise CanonbenchError(msg)
        return run

    def _aggregate(self, run_id: str) -> None:
        self._log(run_id, "aggregation", "info", "Computing aggregates...")
        try:
            result = AggregationEngine(self.conn).recompute_all()
        except (CanonbenchError, sqlite3.Error) as e:
            self._log(run_id, "aggregation", "warn", f"Aggregation failed: {e}")
            return

        self._log(
            run_id,
            "aggregation",
            "warn" if result.errors else "info",
            f"Aggregation complete: {result.chapters_processed} chapters, "
            f"{result.books_processed} books, {result.bibles_processed} bibles.",
        )
        for error in result.errors:
            self._log(run_id, "aggregation", "warn", error)


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
