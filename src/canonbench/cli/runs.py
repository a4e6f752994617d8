# Copyright (c) Syntropy Systems
"""canonbench runs and show commands."""
from __future__ import annotations

from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from canonbench.cli.run_cmd import STATUS_STYLES
from canonbench.config import get_db_path, require_bench_dir
from canonbench.db import get_connection, get_run, get_run_items, get_run_logs, get_runs

console = Console()

LEVEL_STYLES = {"info": "dim", "warn": "yellow", "error": "red"}


def format_duration(duration_ms: int | None) -> str:
    """Format a duration in milliseconds to human readable."""
    if duration_ms is None:
        return "-"

    if duration_ms < 1000:
        return f"{duration_ms}ms"
    total = duration_ms // 1000
    if total < 60:
        return f"{total}s"
    if total < 3600:
        m, s = divmod(total, 60)
        return f"{m}m {s}s"
    h, rem = divmod(total, 3600)
    m, s = divmod(rem, 60)
    return f"{h}h {m}m"


def runs(
    status: Optional[str] = typer.Option(
        None,
        "--status", "-s",
        help="Filter by status (running, completed, failed, cancelled)",
    ),
    campaign: Optional[str] = typer.Option(
        None,
        "--campaign", "-c",
        help="Filter by campaign",
    ),
    model_id: Optional[int] = typer.Option(
        None,
        "--model", "-m",
        help="Filter by model ID",
    ),
    last: int = typer.Option(
        20,
        "--last", "-n",
        help="Number of runs to show",
    ),
) -> None:
    """List benchmark runs, newest first."""
    try:
        bench_dir = require_bench_dir()
    except RuntimeError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e

    conn = get_connection(get_db_path(bench_dir))

    try:
        run_list = get_runs(conn, status=status, campaign=campaign, model_id=model_id, limit=last)
    finally:
        conn.close()

    if not run_list:
        console.print("[dim]No runs found[/dim]")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("ID", style="dim")
    table.add_column("Campaign")
    table.add_column("Model")
    table.add_column("Scope")
    table.add_column("Status")
    table.add_column("Items")
    table.add_column("Duration")

    for run in run_list:
        status_style = STATUS_STYLES.get(run.status, "white")
        scope_ids = ", ".join(str(v) for v in run.scope_ids.values())
        table.add_row(
            run.run_id[:8] if len(run.run_id) > 8 else run.run_id,
            run.campaign,
            str(run.model_id),
            f"{run.run_type}/{run.scope} {scope_ids}",
            f"[{status_style}]{run.status}[/{status_style}]",
            f"{run.metrics.success}/{run.metrics.total}",
            format_duration(run.metrics.duration_ms),
        )

    console.print(table)


def show(
    run_id: str = typer.Argument(
        ...,
        help="Run ID to show details for",
    ),
    items: bool = typer.Option(
        False,
        "--items",
        help="List every run item",
    ),
) -> None:
    """Show detailed information about a run.

    Displays scope, metrics, the last error and the run log.
    """
    try:
        bench_dir = require_bench_dir()
    except RuntimeError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e

    conn = get_connection(get_db_path(bench_dir))

    try:
        run = get_run(conn, run_id)

        # Try partial match if exact not found
        if run is None:
            all_runs = get_runs(conn, limit=1000)
            matches = [r for r in all_runs if r.run_id.startswith(run_id)]
            if len(matches) == 1:
                run = matches[0]
            elif len(matches) > 1:
                console.print(f"[yellow]Ambiguous ID '{run_id}', matches:[/yellow]")
                for r in matches[:5]:
                    console.print(f"  {r.run_id} ({r.campaign})")
                raise typer.Exit(1)

        logs = get_run_logs(conn, run.run_id) if run is not None else []
        run_items = get_run_items(conn, run.run_id) if run is not None and items else []
    finally:
        conn.close()

    if run is None:
        console.print(f"[red]Error:[/red] Run '{run_id}' not found")
        raise typer.Exit(1)

    status_style = STATUS_STYLES.get(run.status, "white")

    console.print(f"\n[bold]Run {run.run_id}[/bold]")
    console.print(f"  [dim]campaign:[/dim] {run.campaign}")
    console.print(f"  [dim]model:[/dim] {run.model_id}")
    console.print(f"  [dim]status:[/dim] [{status_style}]{run.status}[/{status_style}]")
    console.print(f"  [dim]type:[/dim] {run.run_type}")
    console.print(f"  [dim]scope:[/dim] {run.scope} {run.scope_ids}")
    if run.scope_params:
        console.print(f"  [dim]params:[/dim] {run.scope_params}")
    if run.cancel_requested:
        console.print("  [dim]cancel requested:[/dim] yes")
    console.print(f"  [dim]started:[/dim] {run.started_at}")
    if run.completed_at:
        console.print(f"  [dim]completed:[/dim] {run.completed_at}")

    console.print("\n[bold]Metrics[/bold]")
    console.print(f"  total: {run.metrics.total}")
    console.print(f"  success: {run.metrics.success}")
    console.print(f"  failed: {run.metrics.failed}")
    console.print(f"  duration: {format_duration(run.metrics.duration_ms)}")

    if run.error_summary and run.error_summary.last_error:
        console.print("\n[bold]Last error[/bold]")
        console.print(f"  {run.error_summary.last_error}")
        if run.error_summary.last_error_at:
            console.print(f"  [dim]at {run.error_summary.last_error_at}[/dim]")

    if logs:
        console.print(f"\n[bold]Log[/bold] ({len(logs)} entries)")
        for entry in logs:
            style = LEVEL_STYLES.get(entry.level, "white")
            console.print(
                f"  [dim]{entry.timestamp}[/dim] [{style}]{entry.level:<5}[/{style}] "
                f"{entry.stage}: {entry.message}"
            )

    if run_items:
        table = Table(show_header=True, header_style="bold")
        table.add_column("Target")
        table.add_column("Status")
        table.add_column("Attempts")
        table.add_column("Last error")
        for item in run_items:
            table.add_row(
                f"{item.target_type} {item.target_id}",
                item.status,
                str(item.attempts),
                item.last_error or "-",
            )
        console.print()
        console.print(table)

    console.print()
