# Copyright (c) Syntropy Systems
"""simrun init command."""

from pathlib import Path

import typer
import yaml
from rich.console import Console

from simrun.config import CONFIG_FILENAME, default_config_dict

console = Console()


def init(
    path: Path = typer.Argument(
        Path(),
        help="Directory to initialize (default: current directory)",
    ),
) -> None:
    """Write a default simrun.yaml configuration."""
    target = path.resolve()
    config_path = target / CONFIG_FILENAME

    if config_path.exists():
        console.print(f"[yellow]Already initialized:[/yellow] {config_path}")
        return

    target.mkdir(parents=True, exist_ok=True)
    with config_path.open("w") as f:
        yaml.dump(default_config_dict(), f, default_flow_style=False)

    console.print(f"[green]Initialized simrun project:[/green] {target}")
    console.print(f"  [dim]config:[/dim] {config_path}")
