# Copyright (c) Syntropy Systems
"""simrun clean command."""

from pathlib import Path
from typing import Optional

import typer
from rich.console import Console

from simrun.checkpoint import sim_clean
from simrun.config import load_config
from simrun.errors import SimRunError

console = Console()


def clean(  # noqa: PLR0913
    filename: Optional[str] = typer.Option(
        None, "--filename", "-f", help="Output name the run was started with"
    ),
    results: bool = typer.Option(False, "--results", help="Also remove per-condition results"),
    seeds: bool = typer.Option(False, "--seeds", help="Also remove saved seeds"),
    generated: bool = typer.Option(
        False, "--generated", help="Also remove saved generated data"
    ),
    output: bool = typer.Option(False, "--output", help="Also remove the final table"),
    config_file: Optional[Path] = typer.Option(
        None, "--config", "-c", help="Configuration file (default: nearest simrun.yaml)"
    ),
) -> None:
    """Remove a run's checkpoint and, on request, its other artifacts."""
    try:
        config = load_config(config_file, filename=filename)
    except SimRunError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e

    removed = sim_clean(
        config,
        checkpoint=True,
        results=results,
        seeds=seeds,
        generated=generated,
        output=output,
    )

    if not removed:
        console.print("[dim]Nothing to clean[/dim]")
        return

    for path in removed:
        console.print(f"[green]Removed[/green] {path}")
