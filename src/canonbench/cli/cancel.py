# Copyright (c) Syntropy Systems
"""canonbench cancel command."""

import typer
from rich.console import Console

from canonbench.config import get_db_path, require_bench_dir
from canonbench.coordinator import RunCoordinator
from canonbench.db import get_connection

console = Console()


def cancel(
    run_id: str = typer.Argument(
        ...,
        help="Run ID to cancel",
    ),
) -> None:
    """Cancel a running run.

    Cancellation is cooperative: the run stops before its next item, leaving
    unprocessed items pending.
    """
    try:
        bench_dir = require_bench_dir()
    except RuntimeError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e

    conn = get_connection(get_db_path(bench_dir))

    try:
        coordinator = RunCoordinator(conn)
        run = coordinator.get_run(run_id)
        if run is None:
            console.print(f"[red]Error:[/red] Run '{run_id}' not found")
            raise typer.Exit(1)

        if run.is_terminal:
            console.print(f"[yellow]Run {run_id} is already {run.status}[/yellow]")
            return

        coordinator.request_cancel(run_id)
        console.print(f"[yellow]Cancellation requested for run {run_id}[/yellow]")
        console.print("[dim]The run stops before its next item[/dim]")
    finally:
        conn.close()
