# Copyright (c) Syntropy Systems
"""Main CLI entry point for simrun."""

import logging

import typer
from rich.console import Console
from rich.logging import RichHandler

from simrun.cli.clean import clean
from simrun.cli.init_cmd import init
from simrun.cli.run import run
from simrun.cli.status import status

app = typer.Typer(
    name="simrun",
    help=(
        "Monte Carlo simulation runner. Generate, analyse, summarise; "
        "resume where you left off."
    ),
    no_args_is_help=True,
    add_completion=False,
)


@app.callback()
def main(
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Show debug logging"
    ),
) -> None:
    """Configure logging for all commands."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


# Register commands
_ = app.command()(init)
_ = app.command()(run)
_ = app.command()(status)
_ = app.command()(clean)


if __name__ == "__main__":
    app()
