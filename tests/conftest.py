# Copyright (c) Syntropy Systems
"""Pytest fixtures for simrun tests."""

import os
import tempfile
from collections.abc import Generator
from pathlib import Path

import pytest

from simrun.config import SimConfig

# Store original cwd at module load time
_original_cwd = Path.cwd()


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for testing."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def sim_project(temp_dir: Path) -> Generator[Path, None, None]:
    """Create a temporary project directory and change into it."""
    os.chdir(temp_dir)

    yield temp_dir

    # Always return to original cwd
    os.chdir(_original_cwd)


@pytest.fixture
def config(sim_project: Path) -> SimConfig:
    """A small, seeded, checkpointing configuration rooted in the project."""
    return SimConfig(
        replications=20,
        max_errors=5,
        save=True,
        seed=[101, 202, 303],
        out_dir=sim_project,
        worker_id="test-worker",
    )


@pytest.fixture
def design() -> list[dict[str, object]]:
    """Three conditions varying sample size and mean."""
    return [
        {"n": 10, "mu": 0.0},
        {"n": 20, "mu": 0.5},
        {"n": 30, "mu": 1.0},
    ]
