# Copyright (c) Syntropy Systems
"""canonbench init command."""

from pathlib import Path

import typer
import yaml
from rich.console import Console

from canonbench.db import get_connection, init_db
from canonbench.profiles import ensure_default_profiles

console = Console()


def init(
    path: Path = typer.Argument(
        Path(),
        help="Directory to initialize (default: current directory)",
    ),
) -> None:
    """Initialize a new canonbench project.

    Creates a .canonbench directory with configuration, database and the
    default transform profiles.
    """
    target = path.resolve()
    bench_dir = target / ".canonbench"

    if bench_dir.exists():
        console.print(f"[yellow]Already initialized:[/yellow] {bench_dir}")
        return

    bench_dir.mkdir(parents=True)

    # Create default config
    config = {
        "default_campaign": "default",
        "provider_timeout": 60,
        "aggregate_on_complete": True,
        "score_pass": 100.0,
        "score_warning": 95.0,
    }

    config_path = bench_dir / "config.yaml"
    with config_path.open("w") as f:
        yaml.dump(config, f, default_flow_style=False)

    # Initialize database
    db_path = bench_dir / "canonbench.db"
    init_db(db_path)

    conn = get_connection(db_path)
    try:
        created = ensure_default_profiles(conn)
    finally:
        conn.close()

    console.print(f"[green]Initialized canonbench project:[/green] {bench_dir}")
    console.print(f"  [dim]config:[/dim] {config_path}")
    console.print(f"  [dim]database:[/dim] {db_path}")
    console.print(f"  [dim]profiles:[/dim] {created} default profile(s)")
