# Copyright (c) Syntropy Systems
"""canonbench retry command."""

import typer
from rich.console import Console

from canonbench.cli.run_cmd import print_run_summary
from canonbench.config import get_db_path, load_config, require_bench_dir
from canonbench.coordinator import RunCoordinator
from canonbench.db import count_run_items, get_connection
from canonbench.errors import ConfigurationError

console = Console()


def retry(
    run_id: str = typer.Argument(
        ...,
        help="Run ID to retry",
    ),
) -> None:
    """Retry the failed items of a run.

    Only failed items are replayed; the run's status and metrics are then
    recomputed from all of its items.
    """
    try:
        bench_dir = require_bench_dir()
    except RuntimeError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e

    config = load_config(bench_dir)
    conn = get_connection(get_db_path(bench_dir))

    try:
        coordinator = RunCoordinator(conn, config=config)
        original = coordinator.get_run(run_id)
        if original is None:
            console.print(f"[red]Error:[/red] Run '{run_id}' not found")
            raise typer.Exit(1)

        failed = count_run_items(conn, run_id)["failed"]
        if failed == 0:
            console.print(f"[yellow]Run {run_id} has no failed items[/yellow]")
            return

        console.print(f"Retrying {failed} failed item(s)...")
        result = coordinator.retry_failed(run_id)
    except ConfigurationError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e
    finally:
        conn.close()

    print_run_summary(result)
