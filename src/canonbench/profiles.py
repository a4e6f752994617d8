# Copyright (c) Syntropy Systems
"""Transform profile storage and resolution."""
from __future__ import annotations

import logging
import sqlite3
from typing import Optional

from canonbench import db
from canonbench.errors import ConfigurationError
from canonbench.models.transform import TransformProfile

logger = logging.getLogger(__name__)

DEFAULT_PROFILES = (
    TransformProfile.model_validate(
        {
            "profileId": 1,
            "name": "CANONICAL_V1",
            "scope": "canonical",
            "version": 1,
            "isDefault": True,
            "description": "Default canonical transform profile",
            "steps": [
                {
                    "order": 1,
                    "type": "stripMarkupTags",
                    "params": {
                        "tagNames": [
                            "wj", "add", "verse-span", "para", "char", "verse", "chapter",
                        ]
                    },
                },
                {"order": 2, "type": "stripParagraphMarkers", "params": {"markers": ["¶"]}},
                {"order": 3, "type": "stripVerseNumbers", "params": {"patterns": [r"^\d+\s*"]}},
                {"order": 4, "type": "collapseWhitespace"},
                {"order": 5, "type": "trim"},
            ],
        }
    ),
    TransformProfile.model_validate(
        {
            "profileId": 2,
            "name": "MODEL_OUTPUT_V1",
            "scope": "model_output",
            "version": 1,
            "isDefault": True,
            "description": "Default transform profile for model output normalization",
            "steps": [
                {"order": 1, "type": "collapseWhitespace"},
                {"order": 2, "type": "trim"},
            ],
        }
    ),
)


def ensure_default_profiles(conn: sqlite3.Connection) -> int:
    """Store the built-in profiles that are not present yet. Returns count created."""
    created = 0
    for profile in DEFAULT_PROFILES:
        if db.get_profile(conn, profile.profile_id) is None:
            db.insert_profile(conn, profile)
            created += 1
    return created


def _same_metadata(a: TransformProfile, b: TransformProfile) -> bool:
    return (
        a.name == b.name
        and a.bible_id == b.bible_id
        and a.is_default == b.is_default
        and a.is_active == b.is_active
        and a.description == b.description
    )


def save_profile(conn: sqlite3.Connection, profile: TransformProfile) -> TransformProfile:
    """Store a profile, versioning any change.

    A profile identical to the latest stored version is a no-op. Any other
    edit is written as ``latest.version + 1``; stored versions are never
    updated in place, so results computed under an older version stay
    attributable to it.
    """
    latest = db.get_profile(conn, profile.profile_id)
    if latest is None:
        db.insert_profile(conn, profile)
        return profile

    if latest.same_semantics(profile) and _same_metadata(latest, profile):
        return latest

    bumped = profile.model_copy(update={"version": latest.version + 1})
    db.insert_profile(conn, bumped)
    if not latest.same_semantics(profile):
        logger.info(
            "Profile %s steps changed: version %s -> %s",
            profile.profile_id,
            latest.version,
            bumped.version,
        )
    return bumped


def resolve_canonical_profile(
    conn: sqlite3.Connection,
    bible_id: Optional[int] = None,
) -> TransformProfile:
    """Active canonical profile for a bible.

    Prefers an active default bound to ``bible_id``, then any active default,
    then any active canonical profile; lowest id wins within each tier.
    """
    candidates = [p for p in db.list_profiles(conn, scope="canonical") if p.is_active]
    tiers = (
        [p for p in candidates if p.is_default and bible_id is not None and p.bible_id == bible_id],
        [p for p in candidates if p.is_default],
        candidates,
    )
    for tier in tiers:
        if tier:
            return tier[0]
    msg = "No active canonical transform profile found"
    raise ConfigurationError(msg)


def resolve_model_output_profile(conn: sqlite3.Connection, model_id: int) -> TransformProfile:
    """Profile used to normalize a model's output.

    The model's mapped profile is used when it exists, is active and has
    ``model_output`` scope. Otherwise the lowest-id active default
    ``model_output`` profile is used.
    """
    mapped_id = db.get_model_profile_id(conn, model_id)
    if mapped_id is not None:
        mapped = db.get_profile(conn, mapped_id)
        if mapped is not None and mapped.is_active and mapped.scope == "model_output":
            return mapped
        logger.warning(
            "Model %s is mapped to unusable profile %s, using default", model_id, mapped_id
        )

    for profile in db.list_profiles(conn, scope="model_output"):
        if profile.is_default and profile.is_active:
            return profile

    msg = f"No active model_output transform profile for model {model_id}"
    raise ConfigurationError(msg)


def assign_model_profile(conn: sqlite3.Connection, model_id: int, profile_id: int) -> None:
    """Map a model to a model_output profile."""
    profile = db.get_profile(conn, profile_id)
    if profile is None:
        msg = f"Transform profile {profile_id} not found"
        raise ConfigurationError(msg)
    if profile.scope != "model_output":
        msg = f"Transform profile {profile_id} has scope {profile.scope}, expected model_output"
        raise ConfigurationError(msg)
    db.set_model_profile(conn, model_id, profile_id)
