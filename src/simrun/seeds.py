# Copyright (c) Syntropy Systems
"""Per-replication PRNG state: derivation, capture, replay and persistence."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING

import numpy as np

from simrun.models.checkpoint import SeedState

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger(__name__)


def condition_entropy(seed: int | None) -> int:
    """Root entropy for a condition's replication streams.

    A configured seed is used as is; otherwise fresh OS entropy is drawn.
    """
    if seed is not None:
        return int(seed)
    return int(np.random.SeedSequence().entropy)


def replication_rng(entropy: int, index: int) -> np.random.Generator:
    """Generator for one replication.

    Depends only on ``(entropy, index)`` so the draw for a replication is
    the same whatever order replications are dispatched in.
    """
    return np.random.default_rng(np.random.SeedSequence([entropy, index]))


def capture_seed(rng: np.random.Generator) -> SeedState:
    """Capture the current state of a generator."""
    return SeedState.from_state(rng.bit_generator.state)


def restore_seed(state: SeedState) -> np.random.Generator:
    """Build a generator positioned exactly at a captured state."""
    try:
        bit_generator_cls = getattr(np.random, state.bit_generator)
    except AttributeError:
        msg = f"Unknown bit generator in seed record: {state.bit_generator}"
        raise ValueError(msg) from None
    bit_generator = bit_generator_cls()
    bit_generator.state = state.as_dict()
    return np.random.Generator(bit_generator)


def create_unique(
    directory: Path,
    stem: str,
    suffix: str,
    write: Callable[[Path], None],
) -> Path:
    """Create ``<stem><suffix>`` in directory without overwriting.

    When the name is taken, ``<stem>-1<suffix>``, ``<stem>-2<suffix>``, ...
    are tried. The name is reserved with an exclusive create so concurrent
    writers never share a file; ``write`` then fills the reserved path.
    """
    directory.mkdir(parents=True, exist_ok=True)
    count = 0
    while True:
        name = f"{stem}{suffix}" if count == 0 else f"{stem}-{count}{suffix}"
        path = directory / name
        try:
            with path.open("x"):
                pass
        except FileExistsError:
            count += 1
            continue
        try:
            write(path)
        except BaseException:
            path.unlink(missing_ok=True)
            raise
        return path


def persist_seed(
    directory: Path,
    condition_id: int,
    index: int,
    state: SeedState,
) -> Path:
    """Write a seed record to ``design-row-<ID>/seed-<index>``."""
    payload = state.model_dump_json()
    path = create_unique(
        directory / f"design-row-{condition_id}",
        f"seed-{index}",
        "",
        lambda p: p.write_text(payload),
    )
    logger.debug("Saved seed for row %s replication %s to %s", condition_id, index, path)
    return path


def load_seed(path: Path | str) -> SeedState:
    """Read a seed record written by :func:`persist_seed`."""
    return SeedState.model_validate_json(Path(path).read_text())
