# Copyright (c) Syntropy Systems
"""canonbench run command."""
from __future__ import annotations

from typing import Optional

import typer
from rich.console import Console

from canonbench.config import get_db_path, load_config, require_bench_dir
from canonbench.coordinator import SCOPE_KEYS, RunCoordinator
from canonbench.db import get_connection
from canonbench.errors import ConfigurationError
from canonbench.models.db import RunRecord

console = Console()

STATUS_STYLES = {
    "running": "blue",
    "completed": "green",
    "failed": "red",
    "cancelled": "yellow",
}


def print_run_summary(run: RunRecord) -> None:
    """Print a run's status line and metrics."""
    style = STATUS_STYLES.get(run.status, "white")
    console.print(f"Run {run.run_id}: [{style}]{run.status}[/{style}]")
    console.print(
        f"  [dim]items:[/dim] {run.metrics.total} total, "
        f"{run.metrics.success} succeeded, {run.metrics.failed} failed"
    )
    if run.metrics.duration_ms is not None:
        console.print(f"  [dim]duration:[/dim] {run.metrics.duration_ms}ms")
    if run.error_summary and run.error_summary.last_error:
        console.print(f"  [dim]last error:[/dim] {run.error_summary.last_error}")


def run(
    model_id: int = typer.Option(
        ...,
        "--model", "-m",
        help="Model ID to benchmark",
    ),
    target_id: int = typer.Option(
        ...,
        "--id",
        help="ID of the scope to run (verse, chapter, book or bible id)",
    ),
    run_type: str = typer.Option(
        "verse",
        "--type", "-t",
        help="Target grain: verse or chapter",
    ),
    scope: str = typer.Option(
        "chapter",
        "--scope", "-s",
        help="Scope to expand: verse, chapter, book or bible",
    ),
    run_id: Optional[str] = typer.Option(
        None,
        "--run-id",
        help="Idempotency key; an existing run is returned as-is",
    ),
    campaign: Optional[str] = typer.Option(
        None,
        "--campaign", "-c",
        help="Campaign tag (default from config)",
    ),
    limit: Optional[int] = typer.Option(
        None,
        "--limit",
        min=0,
        help="Run at most this many targets",
    ),
    skip: Optional[int] = typer.Option(
        None,
        "--skip",
        min=0,
        help="Skip this many targets first",
    ),
) -> None:
    """Run a model against a scope of the canonical corpus.

    Examples:

        canonbench run --model 1 --scope chapter --id 1001001

        canonbench run --model 1 --type chapter --scope book --id 1
    """
    if run_type not in ("verse", "chapter"):
        console.print(f"[red]Error:[/red] Unknown run type '{run_type}'")
        raise typer.Exit(1)
    if scope not in SCOPE_KEYS:
        console.print(f"[red]Error:[/red] Unknown scope '{scope}'")
        raise typer.Exit(1)

    try:
        bench_dir = require_bench_dir()
    except RuntimeError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e

    config = load_config(bench_dir)
    conn = get_connection(get_db_path(bench_dir))

    try:
        coordinator = RunCoordinator(conn, config=config)
        result = coordinator.start_run(
            model_id=model_id,
            run_type=run_type,  # type: ignore[arg-type]
            scope=scope,
            scope_ids={SCOPE_KEYS[scope]: target_id},
            run_id=run_id,
            campaign=campaign,
            limit=limit,
            skip=skip,
            created_by="cli",
        )
    except ConfigurationError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e
    finally:
        conn.close()

    print_run_summary(result)
    if result.status == "failed":
        console.print(f"\n[dim]Retry failed items with:[/dim] canonbench retry {result.run_id}")
