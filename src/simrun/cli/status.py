# Copyright (c) Syntropy Systems
"""simrun status command."""

from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from simrun.checkpoint import CheckpointStore
from simrun.config import load_config
from simrun.errors import SimRunError
from simrun.models.checkpoint import CheckpointRecord

console = Console()


def status(
    filename: Optional[str] = typer.Option(
        None, "--filename", "-f", help="Output name the run was started with"
    ),
    config_file: Optional[Path] = typer.Option(
        None, "--config", "-c", help="Configuration file (default: nearest simrun.yaml)"
    ),
) -> None:
    """
    Show the progress recorded in a run's checkpoint.

    Lists every checkpointed condition with its completed replication count
    and termination reason, if any.
    """
    try:
        config = load_config(config_file, filename=filename)
        record = CheckpointStore(config).load()
    except SimRunError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e

    if record is None:
        console.print(f"[dim]No checkpoint found at {config.checkpoint_path()}[/dim]")
        return

    _show_record(record, config.replications)


def _show_record(record: CheckpointRecord, replications: int) -> None:
    """Display checkpointed conditions in a table."""
    console.print(f"[bold]Checkpoint[/bold] worker={record.worker_id}")
    console.print(f"  [dim]started:[/dim] {record.created_at}")
    console.print(f"  [dim]updated:[/dim] {record.updated_at}")

    table = Table(show_header=True, header_style="bold")
    table.add_column("ID", style="dim")
    table.add_column("Status")
    table.add_column("Replications")
    table.add_column("Errors")
    table.add_column("Warnings")
    table.add_column("Termination")

    for cid in sorted(record.conditions):
        rec = record.conditions[cid]
        if rec.termination:
            state = "[red]terminated[/red]"
        elif rec.completed:
            state = "[green]complete[/green]"
        else:
            state = "[yellow]partial[/yellow]"
        table.add_row(
            str(cid),
            state,
            f"{len(rec.results)}/{replications}",
            str(sum(rec.error_counts.values())),
            str(sum(rec.warning_counts.values())),
            rec.termination or "-",
        )

    console.print(table)
