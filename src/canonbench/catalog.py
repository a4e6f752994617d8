# Copyright (c) Syntropy Systems
"""Canonical text publishing and seed loading."""
from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import yaml
from pydantic import Field, ValidationError

from canonbench import db
from canonbench.errors import ConfigurationError
from canonbench.models.base import CanonbenchBaseModel
from canonbench.models.db import ChapterRecord, ModelRecord, VerseRecord
from canonbench.models.transform import TransformProfile
from canonbench.profiles import assign_model_profile, resolve_canonical_profile, save_profile
from canonbench.scoring import content_hash
from canonbench.transforms import apply_profile

logger = logging.getLogger(__name__)


def build_verse_id(book_id: int, chapter_number: int, verse_number: int) -> int:
    """Stable verse id: ``book * 100000 + chapter * 1000 + verse``."""
    return book_id * 100000 + chapter_number * 1000 + verse_number


def build_reference(reference: Optional[str], book_id: int, chapter_number: int, verse_number: int) -> str:
    """Verse reference from a chapter reference, e.g. ``Genesis 1`` -> ``Genesis 1:1``."""
    base = reference.strip() if reference else ""
    if base:
        return f"{base}:{verse_number}"
    return f"{book_id} {chapter_number}:{verse_number}"


def publish_chapter(
    conn: sqlite3.Connection,
    chapter_id: int,
    bible_id: int,
    book_id: int,
    chapter_number: int,
    reference: str,
    text_raw: str,
    profile: TransformProfile,
) -> ChapterRecord:
    """Normalize and publish a chapter.

    Published units are immutable; republishing an existing id leaves the
    stored record untouched and returns it.
    """
    text_processed = apply_profile(text_raw, profile)
    record = ChapterRecord(
        chapter_id=chapter_id,
        bible_id=bible_id,
        book_id=book_id,
        chapter_number=chapter_number,
        reference=reference,
        text_raw=text_raw,
        text_processed=text_processed,
        hash_raw=content_hash(text_raw),
        hash_processed=content_hash(text_processed),
        transform_profile_id=profile.profile_id,
    )
    if not db.insert_chapter(conn, record):
        logger.debug("Chapter %s already published", chapter_id)
        existing = db.get_chapter(conn, chapter_id)
        if existing is not None:
            return existing
    return record


def publish_verse(
    conn: sqlite3.Connection,
    chapter: ChapterRecord,
    verse_number: int,
    text_raw: str,
    profile: TransformProfile,
) -> VerseRecord:
    """Normalize and publish one verse of a published chapter."""
    verse_id = build_verse_id(chapter.book_id, chapter.chapter_number, verse_number)
    text_processed = apply_profile(text_raw, profile)
    record = VerseRecord(
        verse_id=verse_id,
        chapter_id=chapter.chapter_id,
        bible_id=chapter.bible_id,
        book_id=chapter.book_id,
        verse_number=verse_number,
        reference=build_reference(
            chapter.reference, chapter.book_id, chapter.chapter_number, verse_number
        ),
        text_raw=text_raw,
        text_processed=text_processed,
        hash_raw=content_hash(text_raw),
        hash_processed=content_hash(text_processed),
        transform_profile_id=profile.profile_id,
    )
    if not db.insert_verse(conn, record):
        logger.debug("Verse %s already published", verse_id)
        existing = db.get_verse(conn, verse_id)
        if existing is not None:
            return existing
    return record


# --- Seed files ---


class SeedVerse(CanonbenchBaseModel):
    number: int
    text: str


class SeedChapter(CanonbenchBaseModel):
    chapter_id: int = Field(alias="chapterId")
    bible_id: int = Field(alias="bibleId")
    book_id: int = Field(alias="bookId")
    chapter_number: int = Field(alias="chapterNumber")
    reference: str
    text: Optional[str] = None
    verses: list[SeedVerse] = Field(default_factory=list)

    def chapter_text(self) -> str:
        """Raw chapter text; built from numbered verse lines when not given."""
        if self.text is not None:
            return self.text
        return "\n".join(f"{verse.number} {verse.text}" for verse in self.verses)


class SeedModel(ModelRecord):
    profile_id: Optional[int] = Field(default=None, alias="profileId")


class SeedFile(CanonbenchBaseModel):
    profiles: list[TransformProfile] = Field(default_factory=list)
    models: list[SeedModel] = Field(default_factory=list)
    corpus: list[SeedChapter] = Field(default_factory=list)


@dataclass
class SeedSummary:
    """Counts of what a seed file wrote."""

    profiles: int = 0
    models: int = 0
    chapters: int = 0
    verses: int = 0


def read_seed(path: Path) -> SeedFile:
    """Parse and validate a YAML seed file."""
    try:
        with path.open() as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        msg = f"Cannot read seed file {path}: {e}"
        raise ConfigurationError(msg) from e

    try:
        return SeedFile.model_validate(data)
    except ValidationError as e:
        msg = f"Invalid seed file {path}: {e}"
        raise ConfigurationError(msg) from e


def load_seed(conn: sqlite3.Connection, seed: SeedFile) -> SeedSummary:
    """Write profiles, models and canonical text from a seed.

    Profiles go first so chapters are normalized by the canonical profile
    the same seed defines.
    """
    summary = SeedSummary()

    for profile in seed.profiles:
        save_profile(conn, profile)
        summary.profiles += 1

    for model in seed.models:
        db.upsert_model(conn, ModelRecord.model_validate(model.model_dump(exclude={"profile_id"})))
        if model.profile_id is not None:
            assign_model_profile(conn, model.model_id, model.profile_id)
        summary.models += 1

    for chapter in seed.corpus:
        profile = resolve_canonical_profile(conn, chapter.bible_id)
        record = publish_chapter(
            conn,
            chapter_id=chapter.chapter_id,
            bible_id=chapter.bible_id,
            book_id=chapter.book_id,
            chapter_number=chapter.chapter_number,
            reference=chapter.reference,
            text_raw=chapter.chapter_text(),
            profile=profile,
        )
        summary.chapters += 1
        for verse in chapter.verses:
            publish_verse(conn, record, verse.number, verse.text, profile)
            summary.verses += 1

    logger.info(
        "Seed loaded: %d profiles, %d models, %d chapters, %d verses",
        summary.profiles,
        summary.models,
        summary.chapters,
        summary.verses,
    )
    return summary
