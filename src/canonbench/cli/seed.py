# Copyright (c) Syntropy Systems
"""canonbench seed command."""

from pathlib import Path

import typer
from rich.console import Console

from canonbench.catalog import load_seed, read_seed
from canonbench.config import get_db_path, require_bench_dir
from canonbench.db import get_connection
from canonbench.errors import ConfigurationError

console = Console()


def seed(
    seed_file: Path = typer.Argument(
        ...,
        help="YAML file with profiles, models and corpus",
        exists=True,
        dir_okay=False,
    ),
) -> None:
    """Load transform profiles, models and canonical text from a seed file.

    Published chapters and verses are immutable; ids already present are
    left as they are.
    """
    try:
        bench_dir = require_bench_dir()
    except RuntimeError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e

    conn = get_connection(get_db_path(bench_dir))

    try:
        summary = load_seed(conn, read_seed(seed_file))
    except ConfigurationError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e
    finally:
        conn.close()

    console.print(f"[green]Seeded from[/green] {seed_file}")
    console.print(f"  [dim]profiles:[/dim] {summary.profiles}")
    console.print(f"  [dim]models:[/dim] {summary.models}")
    console.print(f"  [dim]chapters:[/dim] {summary.chapters}")
    console.print(f"  [dim]verses:[/dim] {summary.verses}")
