# Copyright (c) Syntropy Systems
"""Pytest fixtures for canonbench tests."""

import os
import sqlite3
import tempfile
from collections.abc import Generator
from pathlib import Path
from typing import Any

import pytest
import yaml

# Store original cwd at module load time
_original_cwd = Path.cwd()

GENESIS_1 = {
    1: "In the beginning God created the heaven and the earth.",
    2: (
        "And the earth was without form, and void; and darkness was upon the face "
        "of the deep. And the Spirit of God moved upon the face of the waters."
    ),
    3: "And God said, Let there be light: and there was light.",
}

GENESIS_2 = {
    1: "Thus the heavens and the earth were finished, and all the host of them.",
    2: (
        "And on the seventh day God ended his work which he had made; and he rested "
        "on the seventh day from all his work which he had made."
    ),
}

SEED: dict[str, Any] = {
    "models": [
        {"modelId": 1, "provider": "mock", "displayName": "Echo", "config": {"mode": "echo_raw"}},
        {"modelId": 2, "provider": "mock", "displayName": "Retired", "isActive": False},
        {"modelId": 3, "provider": "nonexistent", "displayName": "Unregistered"},
    ],
    "corpus": [
        {
            "chapterId": 101,
            "bibleId": 1001,
            "bookId": 1,
            "chapterNumber": 1,
            "reference": "Genesis 1",
            "verses": [{"number": n, "text": t} for n, t in GENESIS_1.items()],
        },
        {
            "chapterId": 102,
            "bibleId": 1001,
            "bookId": 1,
            "chapterNumber": 2,
            "reference": "Genesis 2",
            "verses": [{"number": n, "text": t} for n, t in GENESIS_2.items()],
        },
    ],
}


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for testing."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def bench_project(temp_dir: Path) -> Generator[Path, None, None]:
    """Create a temporary canonbench project directory."""
    from canonbench.db import get_connection, init_db
    from canonbench.profiles import ensure_default_profiles

    bench_dir = temp_dir / ".canonbench"
    bench_dir.mkdir()

    # Initialize database
    db_path = bench_dir / "canonbench.db"
    init_db(db_path)
    conn = get_connection(db_path)
    try:
        ensure_default_profiles(conn)
    finally:
        conn.close()

    # Change to temp directory
    os.chdir(temp_dir)

    yield temp_dir

    # Always return to original cwd
    os.chdir(_original_cwd)


@pytest.fixture
def db_path(bench_project: Path) -> Path:
    """Path to the test project's database."""
    return bench_project / ".canonbench" / "canonbench.db"


@pytest.fixture
def db_connection(db_path: Path) -> Generator[sqlite3.Connection, None, None]:
    """Get a database connection for the test project."""
    from canonbench.db import get_connection

    conn = get_connection(db_path)
    yield conn
    conn.close()


@pytest.fixture
def seeded_db(db_connection: sqlite3.Connection) -> sqlite3.Connection:
    """Database with three mock models and Genesis 1-2 published."""
    from canonbench.catalog import SeedFile, load_seed

    load_seed(db_connection, SeedFile.model_validate(SEED))
    return db_connection


@pytest.fixture
def seed_file(temp_dir: Path) -> Path:
    """The test seed written as YAML."""
    path = temp_dir / "seed.yaml"
    with path.open("w") as f:
        yaml.safe_dump(SEED, f)
    return path
