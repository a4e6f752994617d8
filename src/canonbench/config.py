# Copyright (c) Syntropy Systems
"""Configuration management for canonbench."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import cast

import yaml


@dataclass
class CanonbenchConfig:
    """Configuration for canonbench."""

    # Campaign tag used when a run does not name one
    default_campaign: str = "default"

    # Timeout handed to provider adapters (seconds)
    provider_timeout: int = 60

    # Rebuild rollups when a run reaches completed
    aggregate_on_complete: bool = True

    # Score category thresholds
    score_pass: float = 100.0
    score_warning: float = 95.0


def find_bench_dir(start_path: Path | None = None) -> Path | None:
    """Find the nearest .canonbench directory by walking up from start_path.

    Returns None if no .canonbench directory is found.
    """
    if start_path is None:
        start_path = Path.cwd()

    current = start_path.resolve()

    while current != current.parent:
        bench_dir = current / ".canonbench"
        if bench_dir.is_dir():
            return bench_dir
        current = current.parent

    # Check root
    bench_dir = current / ".canonbench"
    if bench_dir.is_dir():
        return bench_dir

    return None


def get_global_config_dir() -> Path:
    """Get the global canonbench config directory (~/.canonbench)."""
    return Path.home() / ".canonbench"


def load_config(bench_dir: Path | None = None) -> CanonbenchConfig:
    """Load configuration from .canonbench/config.yaml or defaults.

    Looks for config in:
    1. Provided bench_dir
    2. Nearest .canonbench directory walking up
    3. ~/.canonbench/config.yaml
    4. Defaults
    """
    config = CanonbenchConfig()

    config_path = None

    if bench_dir is not None:
        config_path = bench_dir / "config.yaml"
    else:
        found_dir = find_bench_dir()
        if found_dir is not None:
            config_path = found_dir / "config.yaml"
        else:
            global_config = get_global_config_dir() / "config.yaml"
            if global_config.exists():
                config_path = global_config

    if config_path is not None and config_path.exists():
        with config_path.open() as f:
            data = cast("dict[str, object]", yaml.safe_load(f) or {})

        default_campaign = data.get("default_campaign")
        if isinstance(default_campaign, str) and default_campaign:
            config.default_campaign = default_campaign
        provider_timeout = data.get("provider_timeout")
        if isinstance(provider_timeout, (int, float)):
            config.provider_timeout = int(provider_timeout)
        aggregate_on_complete = data.get("aggregate_on_complete")
        if isinstance(aggregate_on_complete, bool):
            config.aggregate_on_complete = aggregate_on_complete
        score_pass = data.get("score_pass")
        if isinstance(score_pass, (int, float)):
            config.score_pass = float(score_pass)
        score_warning = data.get("score_warning")
        if isinstance(score_warning, (int, float)):
            config.score_warning = float(score_warning)

    return config


def get_db_path(bench_dir: Path | None = None) -> Path:
    """Get the path to the SQLite database."""
    if bench_dir is None:
        bench_dir = find_bench_dir()

    if bench_dir is None:
        msg = "No .canonbench directory found. Run 'canonbench init' first."
        raise RuntimeError(
            msg
        )

    return bench_dir / "canonbench.db"


def require_bench_dir() -> Path:
    """Get canonbench directory or raise an error if not found."""
    bench_dir = find_bench_dir()
    if bench_dir is None:
        msg = "No .canonbench directory found. Run 'canonbench init' first."
        raise RuntimeError(
            msg
        )
    return bench_dir
