# Copyright (c) Syntropy Systems
"""SQLite database layer with WAL mode and atomic operations."""
from __future__ import annotations

import json
import sqlite3
from collections.abc import Iterable, Sequence
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from canonbench.models.db import (
    BibleAggregateRecord,
    BookAggregateRecord,
    ChapterAggregateRecord,
    ChapterRecord,
    ErrorSummary,
    EvaluationResultRecord,
    ModelRecord,
    RunItemRecord,
    RunLogEntry,
    RunMetrics,
    RunRecord,
    VerseRecord,
)
from canonbench.models.transform import TransformProfile

# SQL schema for the canonbench database
SCHEMA = """
-- Canonical text (read-only once published)
CREATE TABLE IF NOT EXISTS chapters (
    chapter_id INTEGER PRIMARY KEY,
    bible_id INTEGER NOT NULL,
    book_id INTEGER NOT NULL,
    chapter_number INTEGER NOT NULL,
    reference TEXT NOT NULL,
    text_raw TEXT NOT NULL,
    text_processed TEXT NOT NULL,
    hash_raw TEXT NOT NULL,
    hash_processed TEXT NOT NULL,
    transform_profile_id INTEGER
);

CREATE TABLE IF NOT EXISTS verses (
    verse_id INTEGER PRIMARY KEY,
    chapter_id INTEGER NOT NULL REFERENCES chapters(chapter_id),
    bible_id INTEGER NOT NULL,
    book_id INTEGER NOT NULL,
    verse_number INTEGER NOT NULL,
    reference TEXT NOT NULL,
    text_raw TEXT NOT NULL,
    text_processed TEXT NOT NULL,
    hash_raw TEXT NOT NULL,
    hash_processed TEXT NOT NULL,
    transform_profile_id INTEGER
);

-- Transform profiles (one row per version, never updated in place)
CREATE TABLE IF NOT EXISTS transform_profiles (
    profile_id INTEGER NOT NULL,
    version INTEGER NOT NULL,
    name TEXT,
    scope TEXT NOT NULL,  -- canonical, model_output
    bible_id INTEGER,
    is_default INTEGER DEFAULT 0,
    is_active INTEGER DEFAULT 1,
    description TEXT,
    steps TEXT NOT NULL,  -- JSON array
    created_at TEXT,
    PRIMARY KEY (profile_id, version)
);

-- Models under benchmark
CREATE TABLE IF NOT EXISTS models (
    model_id INTEGER PRIMARY KEY,
    provider TEXT NOT NULL,
    display_name TEXT,
    is_active INTEGER DEFAULT 1,
    config TEXT  -- JSON
);

CREATE TABLE IF NOT EXISTS model_profile_map (
    model_id INTEGER PRIMARY KEY,
    profile_id INTEGER NOT NULL
);

-- Runs (one per idempotency key)
CREATE TABLE IF NOT EXISTS runs (
    run_id TEXT PRIMARY KEY,
    campaign TEXT NOT NULL,
    model_id INTEGER NOT NULL,
    run_type TEXT NOT NULL,  -- chapter, verse
    scope TEXT NOT NULL,  -- bible, book, chapter, verse
    scope_ids TEXT,  -- JSON
    scope_params TEXT,  -- JSON
    target_ids TEXT,  -- JSON array
    status TEXT DEFAULT 'running',  -- running, completed, failed, cancelled
    cancel_requested INTEGER DEFAULT 0,
    metrics TEXT,  -- JSON
    error_summary TEXT,  -- JSON
    started_at TEXT,
    completed_at TEXT,
    created_by TEXT
);

CREATE TABLE IF NOT EXISTS run_items (
    run_id TEXT NOT NULL REFERENCES runs(run_id),
    target_type TEXT NOT NULL,
    target_id INTEGER NOT NULL,
    status TEXT DEFAULT 'pending',  -- pending, running, success, failed
    attempts INTEGER DEFAULT 0,
    last_error TEXT,
    updated_at TEXT,
    PRIMARY KEY (run_id, target_type, target_id)
);

-- Append-only audit trail
CREATE TABLE IF NOT EXISTS run_logs (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    run_id TEXT NOT NULL,
    stage TEXT NOT NULL,
    level TEXT NOT NULL,  -- info, warn, error
    message TEXT NOT NULL,
    timestamp TEXT NOT NULL
);

-- Verse results (last write wins per campaign/model/verse)
CREATE TABLE IF NOT EXISTS evaluation_results (
    campaign TEXT NOT NULL,
    model_id INTEGER NOT NULL,
    verse_id INTEGER NOT NULL,
    chapter_id INTEGER NOT NULL,
    book_id INTEGER NOT NULL,
    bible_id INTEGER NOT NULL,
    run_id TEXT NOT NULL,
    response_raw TEXT NOT NULL,
    response_processed TEXT NOT NULL,
    hash_raw TEXT NOT NULL,
    hash_processed TEXT NOT NULL,
    hash_match INTEGER NOT NULL,
    fidelity_score REAL NOT NULL,
    diff TEXT,  -- JSON
    latency_ms INTEGER,
    evaluated_at TEXT NOT NULL,
    PRIMARY KEY (campaign, model_id, verse_id)
);

-- Materialized rollups (fully replaced on every aggregation pass)
CREATE TABLE IF NOT EXISTS aggregation_chapters (
    campaign TEXT NOT NULL,
    model_id INTEGER NOT NULL,
    bible_id INTEGER NOT NULL,
    book_id INTEGER NOT NULL,
    chapter_id INTEGER NOT NULL,
    avg_fidelity REAL NOT NULL,
    perfect_rate REAL NOT NULL,
    verse_count INTEGER NOT NULL,
    match_count INTEGER NOT NULL,
    evaluated_at TEXT,
    PRIMARY KEY (campaign, model_id, bible_id, book_id, chapter_id)
);

CREATE TABLE IF NOT EXISTS aggregation_books (
    campaign TEXT NOT NULL,
    model_id INTEGER NOT NULL,
    bible_id INTEGER NOT NULL,
    book_id INTEGER NOT NULL,
    avg_fidelity REAL NOT NULL,
    perfect_rate REAL NOT NULL,
    chapter_count INTEGER NOT NULL,
    verse_count INTEGER NOT NULL,
    match_count INTEGER NOT NULL,
    evaluated_at TEXT,
    PRIMARY KEY (campaign, model_id, bible_id, book_id)
);

CREATE TABLE IF NOT EXISTS aggregation_bibles (
    campaign TEXT NOT NULL,
    model_id INTEGER NOT NULL,
    bible_id INTEGER NOT NULL,
    avg_fidelity REAL NOT NULL,
    perfect_rate REAL NOT NULL,
    book_count INTEGER NOT NULL,
    chapter_count INTEGER NOT NULL,
    verse_count INTEGER NOT NULL,
    match_count INTEGER NOT NULL,
    evaluated_at TEXT,
    PRIMARY KEY (campaign, model_id, bible_id)
);

-- Indexes for performance
CREATE INDEX IF NOT EXISTS idx_chapters_book ON chapters(book_id);
CREATE INDEX IF NOT EXISTS idx_chapters_bible ON chapters(bible_id);
CREATE INDEX IF NOT EXISTS idx_verses_chapter ON verses(chapter_id);
CREATE INDEX IF NOT EXISTS idx_verses_book ON verses(book_id);
CREATE INDEX IF NOT EXISTS idx_verses_bible ON verses(bible_id);
CREATE INDEX IF NOT EXISTS idx_runs_status ON runs(status);
CREATE INDEX IF NOT EXISTS idx_run_items_status ON run_items(run_id, status);
CREATE INDEX IF NOT EXISTS idx_run_logs_run ON run_logs(run_id, seq);
CREATE INDEX IF NOT EXISTS idx_results_chapter ON evaluation_results(chapter_id);
"""


def get_connection(db_path: Path) -> sqlite3.Connection:
    """
    Get a database connection with proper settings for concurrent access.

    - isolation_level=None for explicit transaction control
    - WAL mode for concurrent readers/writers
    - busy_timeout to wait for locks instead of failing immediately
    - Row factory for dict-like access
    - check_same_thread=False so a run handle can close its own connection
    """
    conn = sqlite3.connect(
        str(db_path),
        timeout=5.0,
        isolation_level=None,
        check_same_thread=False,
    )
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA busy_timeout=5000")
    conn.row_factory = sqlite3.Row
    return conn


def init_db(db_path: Path) -> None:
    """Initialize the database with the schema."""
    conn = get_connection(db_path)
    try:
        conn.executescript(SCHEMA)
    finally:
        conn.close()


def utcnow() -> str:
    """Get current UTC time as ISO format string (millisecond precision)."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(value: str) -> datetime:
    """Parse a timestamp written by ``utcnow``."""
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def _dump(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value)


# --- Canonical Operations ---

def insert_chapter(conn: sqlite3.Connection, chapter: ChapterRecord) -> bool:
    """Publish a chapter. Returns False if the chapter id already exists."""
    cursor = conn.execute(
        """
        INSERT INTO chapters (
            chapter_id, bible_id, book_id, chapter_number, reference,
            text_raw, text_processed, hash_raw, hash_processed, transform_profile_id
        )
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(chapter_id) DO NOTHING
        """,
        (
            chapter.chapter_id,
            chapter.bible_id,
            chapter.book_id,
            chapter.chapter_number,
            chapter.reference,
            chapter.text_raw,
            chapter.text_processed,
            chapter.hash_raw,
            chapter.hash_processed,
            chapter.transform_profile_id,
        ),
    )
    return cursor.rowcount > 0


def insert_verse(conn: sqlite3.Connection, verse: VerseRecord) -> bool:
    """Publish a verse. Returns False if the verse id already exists."""
    cursor = conn.execute(
        """
        INSERT INTO verses (
            verse_id, chapter_id, bible_id, book_id, verse_number, reference,
            text_raw, text_processed, hash_raw, hash_processed, transform_profile_id
        )
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(verse_id) DO NOTHING
        """,
        (
            verse.verse_id,
            verse.chapter_id,
            verse.bible_id,
            verse.book_id,
            verse.verse_number,
            verse.reference,
            verse.text_raw,
            verse.text_processed,
            verse.hash_raw,
            verse.hash_processed,
            verse.transform_profile_id,
        ),
    )
    return cursor.rowcount > 0


def get_chapter(conn: sqlite3.Connection, chapter_id: int) -> Optional[ChapterRecord]:
    """Get a chapter by ID."""
    row = conn.execute(
        "SELECT * FROM chapters WHERE chapter_id = ?",
        (chapter_id,),
    ).fetchone()
    if row is None:
        return None
    return ChapterRecord.model_validate(dict(row))


def get_verse(conn: sqlite3.Connection, verse_id: int) -> Optional[VerseRecord]:
    """Get a verse by ID."""
    row = conn.execute(
        "SELECT * FROM verses WHERE verse_id = ?",
        (verse_id,),
    ).fetchone()
    if row is None:
        return None
    return VerseRecord.model_validate(dict(row))


def get_chapter_verses(conn: sqlite3.Connection, chapter_id: int) -> list[VerseRecord]:
    """Get a chapter's verses in verse-number order."""
    rows = conn.execute(
        "SELECT * FROM verses WHERE chapter_id = ? ORDER BY verse_number",
        (chapter_id,),
    ).fetchall()
    return [VerseRecord.model_validate(dict(row)) for row in rows]


def _list_ids(
    conn: sqlite3.Connection,
    table: str,
    id_column: str,
    filters: dict[str, Optional[int]],
) -> list[int]:
    query = f"SELECT {id_column} FROM {table} WHERE 1=1"  # noqa: S608
    params: list[Any] = []
    for column, value in filters.items():
        if value is not None:
            query += f" AND {column} = ?"
            params.append(value)
    query += f" ORDER BY {id_column}"
    return [row[0] for row in conn.execute(query, params).fetchall()]


def list_chapter_ids(
    conn: sqlite3.Connection,
    bible_id: Optional[int] = None,
    book_id: Optional[int] = None,
) -> list[int]:
    """Chapter ids under a bible and/or book, ascending."""
    return _list_ids(
        conn, "chapters", "chapter_id", {"bible_id": bible_id, "book_id": book_id}
    )


def list_verse_ids(
    conn: sqlite3.Connection,
    bible_id: Optional[int] = None,
    book_id: Optional[int] = None,
    chapter_id: Optional[int] = None,
) -> list[int]:
    """Verse ids under a bible, book and/or chapter, ascending."""
    return _list_ids(
        conn,
        "verses",
        "verse_id",
        {"bible_id": bible_id, "book_id": book_id, "chapter_id": chapter_id},
    )


# --- Profile Operations ---

def _deserialize_profile(row: sqlite3.Row) -> TransformProfile:
    data = dict(row)
    data["is_default"] = bool(data["is_default"])
    data["is_active"] = bool(data["is_active"])
    return TransformProfile.model_validate(data)


def insert_profile(conn: sqlite3.Connection, profile: TransformProfile) -> None:
    """Store one profile version. Existing versions are never overwritten."""
    conn.execute(
        """
        INSERT INTO transform_profiles (
            profile_id, version, name, scope, bible_id, is_default, is_active,
            description, steps, created_at
        )
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            profile.profile_id,
            profile.version,
            profile.name,
            profile.scope,
            profile.bible_id,
            int(profile.is_default),
            int(profile.is_active),
            profile.description,
            profile.steps_json(),
            utcnow(),
        ),
    )


def get_profile(
    conn: sqlite3.Connection,
    profile_id: int,
    version: Optional[int] = None,
) -> Optional[TransformProfile]:
    """Get a profile; the latest version unless one is given."""
    if version is None:
        row = conn.execute(
            """
            SELECT * FROM transform_profiles
            WHERE profile_id = ?
            ORDER BY version DESC LIMIT 1
            """,
            (profile_id,),
        ).fetchone()
    else:
        row = conn.execute(
            "SELECT * FROM transform_profiles WHERE profile_id = ? AND version = ?",
            (profile_id, version),
        ).fetchone()

    if row is None:
        return None
    return _deserialize_profile(row)


def list_profiles(
    conn: sqlite3.Connection,
    scope: Optional[str] = None,
) -> list[TransformProfile]:
    """Latest version of every profile, ordered by id."""
    query = """
        SELECT p.* FROM transform_profiles p
        JOIN (
            SELECT profile_id, MAX(version) AS version
            FROM transform_profiles GROUP BY profile_id
        ) latest ON latest.profile_id = p.profile_id AND latest.version = p.version
        WHERE 1=1
    """
    params: list[Any] = []
    if scope:
        query += " AND p.scope = ?"
        params.append(scope)
    query += " ORDER BY p.profile_id"
    rows = conn.execute(query, params).fetchall()
    return [_deserialize_profile(row) for row in rows]


def set_model_profile(conn: sqlite3.Connection, model_id: int, profile_id: int) -> None:
    """Map a model to its model-output profile."""
    conn.execute(
        """
        INSERT INTO model_profile_map (model_id, profile_id) VALUES (?, ?)
        ON CONFLICT(model_id) DO UPDATE SET profile_id = excluded.profile_id
        """,
        (model_id, profile_id),
    )


def get_model_profile_id(conn: sqlite3.Connection, model_id: int) -> Optional[int]:
    """Profile id mapped to a model, if any."""
    row = conn.execute(
        "SELECT profile_id FROM model_profile_map WHERE model_id = ?",
        (model_id,),
    ).fetchone()
    return row["profile_id"] if row else None


# --- Model Operations ---

def upsert_model(conn: sqlite3.Connection, model: ModelRecord) -> None:
    """Register or update a model."""
    conn.execute(
        """
        INSERT INTO models (model_id, provider, display_name, is_active, config)
        VALUES (?, ?, ?, ?, ?)
        ON CONFLICT(model_id) DO UPDATE SET
            provider = excluded.provider,
            display_name = excluded.display_name,
            is_active = excluded.is_active,
            config = excluded.config
        """,
        (
            model.model_id,
            model.provider,
            model.display_name,
            int(model.is_active),
            json.dumps(model.config),
        ),
    )


def get_model(conn: sqlite3.Connection, model_id: int) -> Optional[ModelRecord]:
    """Get a model by ID."""
    row = conn.execute(
        "SELECT * FROM models WHERE model_id = ?",
        (model_id,),
    ).fetchone()
    if row is None:
        return None
    data = dict(row)
    data["is_active"] = bool(data["is_active"])
    return ModelRecord.model_validate(data)


def list_models(conn: sqlite3.Connection) -> list[ModelRecord]:
    """Get all registered models."""
    rows = conn.execute("SELECT * FROM models ORDER BY model_id").fetchall()
    models = []
    for row in rows:
        data = dict(row)
        data["is_active"] = bool(data["is_active"])
        models.append(ModelRecord.model_validate(data))
    return models


# --- Run Operations ---

def create_run(
    conn: sqlite3.Connection,
    run_id: str,
    campaign: str,
    model_id: int,
    run_type: str,
    scope: str,
    scope_ids: dict[str, int],
    target_ids: Sequence[int],
    scope_params: Optional[dict[str, int]] = None,
    created_by: Optional[str] = None,
) -> bool:
    """
    Create a run record in the running state.

    Returns False without touching anything if the run id already exists.
    """
    cursor = conn.execute(
        """
        INSERT INTO runs (
            run_id, campaign, model_id, run_type, scope, scope_ids, scope_params,
            target_ids, status, cancel_requested, metrics, started_at, created_by
        )
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, 'running', 0, ?, ?, ?)
        ON CONFLICT(run_id) DO NOTHING
        """,
        (
            run_id,
            campaign,
            model_id,
            run_type,
            scope,
            json.dumps(scope_ids),
            json.dumps(scope_params or {}),
            json.dumps(list(target_ids)),
            RunMetrics(total=len(target_ids)).model_dump_json(by_alias=True),
            utcnow(),
            created_by,
        ),
    )
    return cursor.rowcount > 0


def _deserialize_run(row: sqlite3.Row) -> RunRecord:
    data = dict(row)
    data["cancel_requested"] = bool(data["cancel_requested"])
    return RunRecord.model_validate(data)


def get_run(conn: sqlite3.Connection, run_id: str) -> Optional[RunRecord]:
    """Get a run by ID."""
    row = conn.execute(
        "SELECT * FROM runs WHERE run_id = ?",
        (run_id,),
    ).fetchone()

    if row is None:
        return None

    return _deserialize_run(row)


def get_runs(
    conn: sqlite3.Connection,
    status: Optional[str] = None,
    campaign: Optional[str] = None,
    model_id: Optional[int] = None,
    limit: int = 50,
) -> list[RunRecord]:
    """Get runs with optional filtering, newest first."""
    query = "SELECT * FROM runs WHERE 1=1"
    params: list[Any] = []

    if status:
        query += " AND status = ?"
        params.append(status)

    if campaign:
        query += " AND campaign = ?"
        params.append(campaign)

    if model_id is not None:
        query += " AND model_id = ?"
        params.append(model_id)

    query += " ORDER BY started_at DESC, rowid DESC LIMIT ?"
    params.append(limit)

    rows = conn.execute(query, params).fetchall()
    return [_deserialize_run(row) for row in rows]


def is_cancel_requested(conn: sqlite3.Connection, run_id: str) -> bool:
    """Read the run's cancellation flag from the store."""
    row = conn.execute(
        "SELECT cancel_requested FROM runs WHERE run_id = ?",
        (run_id,),
    ).fetchone()
    return bool(row["cancel_requested"]) if row else False


def request_cancel(conn: sqlite3.Connection, run_id: str) -> str:
    """
    Request cooperative cancellation. Returns the run's status.

    Only a running run has its flag set; terminal runs are left untouched.
    """
    row = conn.execute(
        "SELECT status FROM runs WHERE run_id = ?",
        (run_id,),
    ).fetchone()

    if row is None:
        raise ValueError(f"Run {run_id} not found")

    conn.execute(
        "UPDATE runs SET cancel_requested = 1 WHERE run_id = ? AND status = 'running'",
        (run_id,),
    )
    return row["status"]


def reopen_run(conn: sqlite3.Connection, run_id: str) -> None:
    """Put a finished run back into running for a retry pass."""
    conn.execute(
        """
        UPDATE runs
        SET status = 'running', cancel_requested = 0, completed_at = NULL
        WHERE run_id = ?
        """,
        (run_id,),
    )


def finish_run(
    conn: sqlite3.Connection,
    run_id: str,
    status: str,
    metrics: RunMetrics,
    error_summary: Optional[ErrorSummary] = None,
) -> None:
    """Record a terminal status with its metrics."""
    conn.execute(
        """
        UPDATE runs
        SET status = ?, completed_at = ?, metrics = ?, error_summary = ?
        WHERE run_id = ?
        """,
        (
            status,
            utcnow(),
            metrics.model_dump_json(by_alias=True),
            error_summary.model_dump_json(by_alias=True) if error_summary else None,
            run_id,
        ),
    )


# --- Run Item Operations ---

def create_run_items(
    conn: sqlite3.Connection,
    run_id: str,
    target_type: str,
    target_ids: Iterable[int],
) -> int:
    """Create one pending item per target. Existing items are kept."""
    now = utcnow()
    try:
        conn.execute("BEGIN IMMEDIATE")
        cursor = conn.executemany(
            """
            INSERT INTO run_items (run_id, target_type, target_id, status, attempts, updated_at)
            VALUES (?, ?, ?, 'pending', 0, ?)
            ON CONFLICT(run_id, target_type, target_id) DO NOTHING
            """,
            [(run_id, target_type, target_id, now) for target_id in target_ids],
        )
        conn.execute("COMMIT")
    except Exception:
        conn.execute("ROLLBACK")
        raise
    return cursor.rowcount


def mark_item_running(
    conn: sqlite3.Connection,
    run_id: str,
    target_type: str,
    target_id: int,
) -> None:
    """Mark an item running and count the attempt."""
    conn.execute(
        """
        UPDATE run_items
        SET status = 'running', attempts = attempts + 1, updated_at = ?
        WHERE run_id = ? AND target_type = ? AND target_id = ?
        """,
        (utcnow(), run_id, target_type, target_id),
    )


def mark_item_finished(
    conn: sqlite3.Connection,
    run_id: str,
    target_type: str,
    target_id: int,
    error_message: Optional[str] = None,
) -> None:
    """Mark an item success, or failed when an error message is given."""
    status = "success" if error_message is None else "failed"
    conn.execute(
        """
        UPDATE run_items
        SET status = ?, last_error = ?, updated_at = ?
        WHERE run_id = ? AND target_type = ? AND target_id = ?
        """,
        (status, error_message, utcnow(), run_id, target_type, target_id),
    )


def fail_unfinished_items(
    conn: sqlite3.Connection,
    run_id: str,
    error_message: str,
    include_pending: bool = False,
) -> int:
    """Mark a run's running items failed, and its pending ones if asked.

    Returns the number of items changed.
    """
    statuses = ("running", "pending") if include_pending else ("running",)
    placeholders = ", ".join("?" for _ in statuses)
    cursor = conn.execute(
        f"""
        UPDATE run_items
        SET status = 'failed', last_error = ?, updated_at = ?
        WHERE run_id = ? AND status IN ({placeholders})
        """,  # noqa: S608
        (error_message, utcnow(), run_id, *statuses),
    )
    return cursor.rowcount


def get_run_items(
    conn: sqlite3.Connection,
    run_id: str,
    status: Optional[str] = None,
) -> list[RunItemRecord]:
    """Get a run's items in target order."""
    query = "SELECT * FROM run_items WHERE run_id = ?"
    params: list[Any] = [run_id]
    if status:
        query += " AND status = ?"
        params.append(status)
    query += " ORDER BY target_id"
    rows = conn.execute(query, params).fetchall()
    return [RunItemRecord.model_validate(dict(row)) for row in rows]


def count_run_items(conn: sqlite3.Connection, run_id: str) -> dict[str, int]:
    """Item counts by status for a run."""
    rows = conn.execute(
        "SELECT status, COUNT(*) AS n FROM run_items WHERE run_id = ? GROUP BY status",
        (run_id,),
    ).fetchall()
    counts = {"pending": 0, "running": 0, "success": 0, "failed": 0}
    for row in rows:
        counts[row["status"]] = row["n"]
    return counts


# --- Run Log Operations ---

def append_run_log(
    conn: sqlite3.Connection,
    run_id: str,
    stage: str,
    level: str,
    message: str,
) -> int:
    """Append an entry to a run's audit trail and return its sequence number."""
    cursor = conn.execute(
        """
        INSERT INTO run_logs (run_id, stage, level, message, timestamp)
        VALUES (?, ?, ?, ?, ?)
        """,
        (run_id, stage, level, message, utcnow()),
    )
    return cursor.lastrowid


def get_run_logs(conn: sqlite3.Connection, run_id: str) -> list[RunLogEntry]:
    """Get a run's log entries in append order."""
    rows = conn.execute(
        "SELECT * FROM run_logs WHERE run_id = ? ORDER BY seq",
        (run_id,),
    ).fetchall()
    return [RunLogEntry.model_validate(dict(row)) for row in rows]


# --- Evaluation Result Operations ---

def upsert_result(conn: sqlite3.Connection, result: EvaluationResultRecord) -> None:
    """Write a verse result; a later write for the same key replaces it."""
    conn.execute(
        """
        INSERT INTO evaluation_results (
            campaign, model_id, verse_id, chapter_id, book_id, bible_id, run_id,
            response_raw, response_processed, hash_raw, hash_processed, hash_match,
            fidelity_score, diff, latency_ms, evaluated_at
        )
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(campaign, model_id, verse_id) DO UPDATE SET
            chapter_id = excluded.chapter_id,
            book_id = excluded.book_id,
            bible_id = excluded.bible_id,
            run_id = excluded.run_id,
            response_raw = excluded.response_raw,
            response_processed = excluded.response_processed,
            hash_raw = excluded.hash_raw,
            hash_processed = excluded.hash_processed,
            hash_match = excluded.hash_match,
            fidelity_score = excluded.fidelity_score,
            diff = excluded.diff,
            latency_ms = excluded.latency_ms,
            evaluated_at = excluded.evaluated_at
        """,
        (
            result.campaign,
            result.model_id,
            result.verse_id,
            result.chapter_id,
            result.book_id,
            result.bible_id,
            result.run_id,
            result.response_raw,
            result.response_processed,
            result.hash_raw,
            result.hash_processed,
            int(result.hash_match),
            result.fidelity_score,
            result.diff.model_dump_json(),
            result.latency_ms,
            result.evaluated_at,
        ),
    )


def _deserialize_result(row: sqlite3.Row) -> EvaluationResultRecord:
    data = dict(row)
    data["hash_match"] = bool(data["hash_match"])
    return EvaluationResultRecord.model_validate(data)


def get_result(
    conn: sqlite3.Connection,
    campaign: str,
    model_id: int,
    verse_id: int,
) -> Optional[EvaluationResultRecord]:
    """Get the current result for a (campaign, model, verse) slot."""
    row = conn.execute(
        """
        SELECT * FROM evaluation_results
        WHERE campaign = ? AND model_id = ? AND verse_id = ?
        """,
        (campaign, model_id, verse_id),
    ).fetchone()
    if row is None:
        return None
    return _deserialize_result(row)


def get_results(
    conn: sqlite3.Connection,
    campaign: Optional[str] = None,
    model_id: Optional[int] = None,
    chapter_id: Optional[int] = None,
) -> list[EvaluationResultRecord]:
    """Get results with optional filtering, in verse order."""
    query = "SELECT * FROM evaluation_results WHERE 1=1"
    params: list[Any] = []
    if campaign:
        query += " AND campaign = ?"
        params.append(campaign)
    if model_id is not None:
        query += " AND model_id = ?"
        params.append(model_id)
    if chapter_id is not None:
        query += " AND chapter_id = ?"
        params.append(chapter_id)
    query += " ORDER BY campaign, model_id, verse_id"
    rows = conn.execute(query, params).fetchall()
    return [_deserialize_result(row) for row in rows]


# --- Aggregate Operations ---

def _replace_table(
    conn: sqlite3.Connection,
    table: str,
    columns: Sequence[str],
    rows: Iterable[Sequence[Any]],
) -> None:
    """Swap a table's contents in one write transaction.

    Readers on other connections see the old rows until COMMIT.
    """
    placeholders = ", ".join("?" for _ in columns)
    insert_sql = f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders})"  # noqa: S608
    try:
        conn.execute("BEGIN IMMEDIATE")
        conn.execute(f"DELETE FROM {table}")  # noqa: S608
        conn.executemany(insert_sql, list(rows))
        conn.execute("COMMIT")
    except Exception:
        conn.execute("ROLLBACK")
        raise


_CHAPTER_AGG_COLUMNS = (
    "campaign", "model_id", "bible_id", "book_id", "chapter_id",
    "avg_fidelity", "perfect_rate", "verse_count", "match_count", "evaluated_at",
)
_BOOK_AGG_COLUMNS = (
    "campaign", "model_id", "bible_id", "book_id",
    "avg_fidelity", "perfect_rate", "chapter_count", "verse_count", "match_count",
    "evaluated_at",
)
_BIBLE_AGG_COLUMNS = (
    "campaign", "model_id", "bible_id",
    "avg_fidelity", "perfect_rate", "book_count", "chapter_count", "verse_count",
    "match_count", "evaluated_at",
)


def replace_chapter_aggregates(
    conn: sqlite3.Connection,
    rows: Iterable[ChapterAggregateRecord],
) -> None:
    """Replace every chapter rollup row."""
    _replace_table(
        conn,
        "aggregation_chapters",
        _CHAPTER_AGG_COLUMNS,
        ([getattr(row, column) for column in _CHAPTER_AGG_COLUMNS] for row in rows),
    )


def replace_book_aggregates(
    conn: sqlite3.Connection,
    rows: Iterable[BookAggregateRecord],
) -> None:
    """Replace every book rollup row."""
    _replace_table(
        conn,
        "aggregation_books",
        _BOOK_AGG_COLUMNS,
        ([getattr(row, column) for column in _BOOK_AGG_COLUMNS] for row in rows),
    )


def replace_bible_aggregates(
    conn: sqlite3.Connection,
    rows: Iterable[BibleAggregateRecord],
) -> None:
    """Replace every bible rollup row."""
    _replace_table(
        conn,
        "aggregation_bibles",
        _BIBLE_AGG_COLUMNS,
        ([getattr(row, column) for column in _BIBLE_AGG_COLUMNS] for row in rows),
    )


def _filtered_select(
    conn: sqlite3.Connection,
    table: str,
    order_by: str,
    filters: dict[str, Any],
) -> list[dict[str, Any]]:
    query = f"SELECT * FROM {table} WHERE 1=1"  # noqa: S608
    params: list[Any] = []
    for column, value in filters.items():
        if value is not None:
            query += f" AND {column} = ?"
            params.append(value)
    query += f" ORDER BY {order_by}"
    return [dict(row) for row in conn.execute(query, params).fetchall()]


def get_chapter_aggregates(
    conn: sqlite3.Connection,
    campaign: Optional[str] = None,
    model_id: Optional[int] = None,
    bible_id: Optional[int] = None,
    book_id: Optional[int] = None,
) -> list[ChapterAggregateRecord]:
    """Get chapter rollup rows."""
    rows = _filtered_select(
        conn,
        "aggregation_chapters",
        "campaign, model_id, bible_id, book_id, chapter_id",
        {"campaign": campaign, "model_id": model_id, "bible_id": bible_id, "book_id": book_id},
    )
    return [ChapterAggregateRecord.model_validate(row) for row in rows]


def get_book_aggregates(
    conn: sqlite3.Connection,
    campaign: Optional[str] = None,
    model_id: Optional[int] = None,
    bible_id: Optional[int] = None,
) -> list[BookAggregateRecord]:
    """Get book rollup rows."""
    rows = _filtered_select(
        conn,
        "aggregation_books",
        "campaign, model_id, bible_id, book_id",
        {"campaign": campaign, "model_id": model_id, "bible_id": bible_id},
    )
    return [BookAggregateRecord.model_validate(row) for row in rows]


def get_bible_aggregates(
    conn: sqlite3.Connection,
    campaign: Optional[str] = None,
    model_id: Optional[int] = None,
) -> list[BibleAggregateRecord]:
    """Get bible rollup rows."""
    rows = _filtered_select(
        conn,
        "aggregation_bibles",
        "campaign, model_id, bible_id",
        {"campaign": campaign, "model_id": model_id},
    )
    return [BibleAggregateRecord.model_validate(row) for row in rows]
