# Copyright (c) Syntropy Systems
"""canonbench score command."""

import typer
from rich.console import Console

from canonbench.config import load_config
from canonbench.scoring import FidelityScorer, ScoreThresholds, hash_match

console = Console()

CATEGORY_STYLES = {"pass": "green", "warning": "yellow", "fail": "red"}


def score(
    canonical: str = typer.Argument(..., help="Reference text"),
    candidate: str = typer.Argument(..., help="Text to score against the reference"),
) -> None:
    """Score a candidate string against a reference string.

    Both strings are compared as given, without any transform profile.
    """
    config = load_config()
    scorer = FidelityScorer(
        ScoreThresholds(pass_=config.score_pass, warning=config.score_warning)
    )
    comparison = scorer.compare(canonical, candidate)
    category = scorer.category(comparison.fidelity_score)
    style = CATEGORY_STYLES[category]

    console.print(
        f"fidelity: [{style}]{comparison.fidelity_score:.2f}[/{style}] ({category})"
    )
    console.print(f"  [dim]hash match:[/dim] {hash_match(canonical, candidate)}")
    console.print(f"  [dim]distance:[/dim] {comparison.distance}")
    console.print(f"  [dim]substitutions:[/dim] {comparison.diff.substitutions}")
    console.print(f"  [dim]omissions:[/dim] {comparison.diff.omissions}")
    console.print(f"  [dim]additions:[/dim] {comparison.diff.additions}")
