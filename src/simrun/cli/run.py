# Copyright (c) Syntropy Systems
"""simrun run command."""
from __future__ import annotations

import importlib
import sys
from pathlib import Path
from types import ModuleType
from typing import TYPE_CHECKING, Any, Optional

import typer
from rich.console import Console
from rich.table import Table

from simrun.config import load_config
from simrun.errors import SimRunError
from simrun.orchestrator import ERROR_PREFIX, WARNING_PREFIX, run_simulation

if TYPE_CHECKING:
    import pandas as pd

    from simrun.results import Condition, ConditionResult

console = Console()

_HIDDEN_COLUMNS = {"SEED", "COMPLETED"}


def load_script(script: Path) -> ModuleType:
    """Import a simulation script so its stages are picklable by name."""
    script = script.resolve()
    if not script.is_file():
        msg = f"Simulation script not found: {script}"
        raise FileNotFoundError(msg)
    if str(script.parent) not in sys.path:
        sys.path.insert(0, str(script.parent))
    return importlib.import_module(script.stem)


def _require(module: ModuleType, name: str) -> Any:
    if not hasattr(module, name):
        msg = f"{module.__name__} must define '{name}'"
        raise AttributeError(msg)
    return getattr(module, name)


def _format(value: object) -> str:
    if value is None:
        return "-"
    if isinstance(value, float):
        return f"{value:.4g}"
    return str(value)


def _show_table(table: pd.DataFrame) -> None:
    columns = [
        c
        for c in table.columns
        if c not in _HIDDEN_COLUMNS and not c.startswith((ERROR_PREFIX, WARNING_PREFIX))
    ]
    out = Table(show_header=True, header_style="bold")
    for column in columns:
        out.add_column(str(column))
    for record in table[columns].to_dict(orient="records"):
        out.add_row(*(_format(record[c]) for c in columns))
    console.print(out)

    diagnostics = [c for c in table.columns if c.startswith((ERROR_PREFIX, WARNING_PREFIX))]
    for column in diagnostics:
        total = int(table[column].sum())
        style = "red" if column.startswith(ERROR_PREFIX) else "yellow"
        console.print(f"  [{style}]{total}x[/{style}] {column}")


def _progress(condition: Condition, result: ConditionResult) -> None:
    if result.termination:
        console.print(
            f"[red]Row {condition.ID} terminated[/red] "
            f"({result.completed}/{result.replications}): {result.termination}"
        )
    else:
        console.print(
            f"[green]Row {condition.ID} complete[/green] "
            f"({result.completed} replications, {result.elapsed:.1f}s)"
        )


def run(  # noqa: PLR0913
    script: Path = typer.Argument(
        ...,
        help="Python file defining design, generate, analyse and optionally summarise",
    ),
    replications: Optional[int] = typer.Option(
        None, "--replications", "-r", help="Replications per condition"
    ),
    max_errors: Optional[int] = typer.Option(
        None, "--max-errors", help="Consecutive failures before a condition is aborted"
    ),
    filename: Optional[str] = typer.Option(
        None, "--filename", "-f", help="Final table output (.csv, .json or pickle)"
    ),
    save: Optional[bool] = typer.Option(
        None, "--save/--no-save", help="Checkpoint so an interrupted run can resume"
    ),
    save_results: Optional[bool] = typer.Option(
        None, "--save-results", help="Write a results artifact per condition"
    ),
    save_seeds: Optional[bool] = typer.Option(
        None, "--save-seeds", help="Save the PRNG state of every replication attempt"
    ),
    load_seed: Optional[str] = typer.Option(
        None, "--load-seed", help="Replay a saved seed record"
    ),
    warnings_as_errors: Optional[bool] = typer.Option(
        None, "--warnings-as-errors", help="Redraw when analyse emits a warning"
    ),
    parallel: Optional[str] = typer.Option(
        None, "--parallel", "-p", help="Dispatch 'replications' or 'conditions' to workers"
    ),
    ncores: Optional[int] = typer.Option(
        None, "--ncores", "-n", help="Number of worker processes"
    ),
    config_file: Optional[Path] = typer.Option(
        None, "--config", "-c", help="Configuration file (default: nearest simrun.yaml)"
    ),
) -> None:
    """Run a simulation script.

    Examples:

        simrun run sim.py --replications 1000

        simrun run sim.py -r 500 --parallel replications --filename results.csv
    """
    try:
        module = load_script(script)
        config = load_config(
            config_file,
            replications=replications,
            max_errors=max_errors,
            filename=filename,
            save=save,
            save_results=save_results,
            save_seeds=save_seeds,
            load_seed=load_seed,
            warnings_as_errors=warnings_as_errors,
            parallel=parallel,
            ncores=ncores,
        )
        table = run_simulation(
            _require(module, "design"),
            _require(module, "generate"),
            _require(module, "analyse"),
            getattr(module, "summarise", None),
            config=config,
            fixed_objects=getattr(module, "fixed_objects", None),
            progress=_progress,
        )
    except (SimRunError, FileNotFoundError, AttributeError, ImportError) as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e

    _show_table(table)
    if config.filename:
        console.print(f"[dim]Results written to {config.output_path()}[/dim]")

    if table["TERMINATION"].notna().all():
        console.print("[red]Every condition was terminated[/red]")
        raise typer.Exit(1)
