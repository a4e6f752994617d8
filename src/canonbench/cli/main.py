# Copyright (c) Syntropy Systems
"""Main CLI entry point for canonbench."""

import typer

from canonbench.cli.aggregate import aggregate
from canonbench.cli.cancel import cancel
from canonbench.cli.init_cmd import init
from canonbench.cli.retry import retry
from canonbench.cli.run_cmd import run
from canonbench.cli.runs import runs, show
from canonbench.cli.score import score
from canonbench.cli.seed import seed

app = typer.Typer(
    name="canonbench",
    help=(
        "Canonical text reproduction benchmarks. Run models against a "
        "reference corpus, score fidelity, roll up results."
    ),
    no_args_is_help=True,
    add_completion=False,
)

# Register commands
_ = app.command()(init)
_ = app.command()(seed)
_ = app.command()(run)
_ = app.command()(retry)
_ = app.command()(cancel)
_ = app.command()(runs)
_ = app.command()(show)
_ = app.command()(aggregate)
_ = app.command()(score)


if __name__ == "__main__":
    app()
