# Copyright (c) Syntropy Systems
"""canonbench aggregate command."""
from __future__ import annotations

from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from canonbench.aggregation import AggregationEngine
from canonbench.config import get_db_path, require_bench_dir
from canonbench.db import get_bible_aggregates, get_book_aggregates, get_connection

console = Console()


def aggregate(
    campaign: Optional[str] = typer.Option(
        None,
        "--campaign", "-c",
        help="Only display rollups for this campaign",
    ),
    books: bool = typer.Option(
        False,
        "--books",
        help="Display book rollups instead of bible rollups",
    ),
) -> None:
    """Rebuild chapter, book and bible rollups from all results."""
    try:
        bench_dir = require_bench_dir()
    except RuntimeError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e

    conn = get_connection(get_db_path(bench_dir))

    try:
        result = AggregationEngine(conn).recompute_all()
        book_rows = get_book_aggregates(conn, campaign=campaign) if books else []
        bible_rows = get_bible_aggregates(conn, campaign=campaign) if not books else []
    finally:
        conn.close()

    console.print(
        f"[green]Aggregated[/green] {result.chapters_processed} chapters, "
        f"{result.books_processed} books, {result.bibles_processed} bibles"
    )
    for error in result.errors:
        console.print(f"[yellow]Warning:[/yellow] {error}")

    table = Table(show_header=True, header_style="bold")
    table.add_column("Campaign")
    table.add_column("Model")
    table.add_column("Bible")
    if books:
        table.add_column("Book")
    table.add_column("Avg fidelity", justify="right")
    table.add_column("Perfect rate", justify="right")
    table.add_column("Verses", justify="right")

    for row in book_rows:
        table.add_row(
            row.campaign,
            str(row.model_id),
            str(row.bible_id),
            str(row.book_id),
            f"{row.avg_fidelity:.2f}",
            f"{row.perfect_rate:.2%}",
            str(row.verse_count),
        )
    for row in bible_rows:
        table.add_row(
            row.campaign,
            str(row.model_id),
            str(row.bible_id),
            f"{row.avg_fidelity:.2f}",
            f"{row.perfect_rate:.2%}",
            str(row.verse_count),
        )

    if book_rows or bible_rows:
        console.print(table)

    if result.errors:
        raise typer.Exit(1)
