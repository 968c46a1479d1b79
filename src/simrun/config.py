# Copyright (c) Syntropy Systems
"""Configuration management for simrun."""
from __future__ import annotations

import os
import re
import socket
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Literal, Union, cast

import yaml

from simrun.errors import ConfigError

CONFIG_FILENAME = "simrun.yaml"
CHECKPOINT_PREFIX = "SIMRUN-TEMPFILE"
DEFAULT_STEM = "simrun"

ParallelMode = Literal[False, "replications", "conditions"]

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


@dataclass
class SimConfig:
    """Run configuration for a simulation."""

    # Monte Carlo draws per condition
    replications: int = 100

    # Consecutive failed attempts before a condition is aborted
    max_errors: int = 50

    # Keep a checkpoint so an interrupted run can resume
    save: bool = False

    # Write a results-row-<ID>.pkl artifact per condition (forces save)
    save_results: bool = False

    # Final table output, never overwritten
    filename: str | None = None

    # One seed per condition; None draws fresh entropy per condition
    seed: list[int] | None = None

    save_seeds: bool = False
    load_seed: str | None = None
    warnings_as_errors: bool = False

    # Modules imported in every worker before any stage runs
    packages: list[str] = field(default_factory=list)

    parallel: ParallelMode = False
    ncores: int | None = None

    save_generate_data: bool = False

    # Rewrite the checkpoint every N replications inside a condition (0 = off)
    checkpoint_interval: int = 0

    # Raise instead of logging when a file cannot be written
    strict_io: bool = False

    out_dir: Path = field(default_factory=Path)
    worker_id: str | None = None
    save_results_dirname: str | None = None
    save_seeds_dirname: str | None = None
    save_generate_data_dirname: str | None = None

    def __post_init__(self) -> None:
        if self.parallel is True:
            self.parallel = "replications"
        if self.parallel not in (False, "replications", "conditions"):
            msg = f"parallel must be False, 'replications' or 'conditions', got {self.parallel!r}"
            raise ConfigError(msg)
        if int(self.replications) < 1:
            msg = f"replications must be a positive integer, got {self.replications!r}"
            raise ConfigError(msg)
        if int(self.max_errors) < 1:
            msg = f"max_errors must be a positive integer, got {self.max_errors!r}"
            raise ConfigError(msg)
        if self.checkpoint_interval < 0:
            msg = "checkpoint_interval must be >= 0"
            raise ConfigError(msg)
        if self.ncores is not None and self.ncores < 1:
            msg = f"ncores must be >= 1, got {self.ncores!r}"
            raise ConfigError(msg)
        self.replications = int(self.replications)
        self.max_errors = int(self.max_errors)
        self.out_dir = Path(self.out_dir)
        if self.save_results:
            self.save = True
        if self.seed is not None:
            self.seed = [int(s) for s in self.seed]

    @property
    def worker(self) -> str:
        """Filesystem-safe identity of the executing worker."""
        return self.worker_id or worker_identity()

    @property
    def stem(self) -> str:
        """Base name used for run-scoped directories."""
        if self.filename:
            return Path(self.filename).stem
        return DEFAULT_STEM

    @property
    def workers(self) -> int:
        """Number of pool workers for parallel dispatch."""
        return self.ncores or os.cpu_count() or 1

    def checkpoint_path(self) -> Path:
        """Get the path to this run's checkpoint file."""
        return self.out_dir / f"{CHECKPOINT_PREFIX}_{self.stem}_{self.worker}.pkl"

    def results_dir(self) -> Path:
        """Get the directory holding per-condition result artifacts."""
        name = self.save_results_dirname or f"{self.stem}-results_{self.worker}"
        return self.out_dir / name

    def seeds_dir(self) -> Path:
        """Get the directory holding per-replication seed records."""
        name = self.save_seeds_dirname or f"{self.stem}-seeds_{self.worker}"
        return self.out_dir / name

    def generated_dir(self) -> Path:
        """Get the directory holding persisted generated data."""
        name = self.save_generate_data_dirname or f"{self.stem}-generate-data_{self.worker}"
        return self.out_dir / name

    def output_path(self) -> Path | None:
        """Get the final table path, if a filename was configured."""
        if not self.filename:
            return None
        return self.out_dir / self.filename


def worker_identity() -> str:
    """Identify the executing host in a form usable inside file names."""
    return _UNSAFE_CHARS.sub("_", socket.gethostname()) or "localhost"


def find_config_file(start_path: Path | None = None) -> Path | None:
    """Find the nearest simrun.yaml by walking up from start_path.

    Returns None if no config file is found.
    """
    if start_path is None:
        start_path = Path.cwd()

    current = start_path.resolve()

    while current != current.parent:
        candidate = current / CONFIG_FILENAME
        if candidate.is_file():
            return candidate
        current = current.parent

    # Check root
    candidate = current / CONFIG_FILENAME
    if candidate.is_file():
        return candidate

    return None


def load_config(
    config_path: Path | None = None,
    **overrides: object,
) -> SimConfig:
    """Load configuration from simrun.yaml, then apply keyword overrides.

    Looks for config in:
    1. Provided config_path
    2. Nearest simrun.yaml walking up from the working directory
    3. Defaults
    """
    if config_path is None:
        config_path = find_config_file()

    data: dict[str, object] = {}
    if config_path is not None and config_path.exists():
        with config_path.open() as f:
            loaded = yaml.safe_load(f) or {}
        if not isinstance(loaded, dict):
            msg = f"{config_path} must contain a mapping"
            raise ConfigError(msg)
        data = cast("dict[str, object]", loaded)

    known = {f.name for f in fields(SimConfig)}
    unknown = sorted(set(data) - known)
    if unknown:
        msg = f"Unknown configuration keys in {config_path}: {', '.join(unknown)}"
        raise ConfigError(msg)

    data.update({k: v for k, v in overrides.items() if v is not None})
    if "out_dir" in data:
        data["out_dir"] = Path(cast("Union[str, Path]", data["out_dir"]))

    try:
        return SimConfig(**data)  # type: ignore[arg-type]
    except TypeError as e:
        raise ConfigError(str(e)) from e


def with_overrides(config: SimConfig, **changes: object) -> SimConfig:
    """Return a copy of config with the given fields replaced."""
    return replace(config, **changes)  # type: ignore[arg-type]


def default_config_dict() -> dict[str, object]:
    """Default values written by ``simrun init``."""
    return {
        "replications": 100,
        "max_errors": 50,
        "save": True,
        "save_results": False,
        "warnings_as_errors": False,
        "parallel": False,
        "checkpoint_interval": 0,
    }
