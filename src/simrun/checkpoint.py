# Copyright (c) Syntropy Systems
"""Durable run state: checkpoints, per-condition artifacts and final output."""
from __future__ import annotations

import hashlib
import json
import logging
import os
import pickle
import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any, cast

from simrun.errors import CheckpointMismatchError, PersistenceError
from simrun.models.checkpoint import CheckpointRecord
from simrun.results import collect_results
from simrun.seeds import create_unique

if TYPE_CHECKING:
    from collections.abc import Callable

    import pandas as pd

    from simrun.config import SimConfig
    from simrun.results import Condition, ConditionResult

logger = logging.getLogger(__name__)


def utcnow() -> str:
    """Get current UTC time as ISO format string."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def run_fingerprint(config: SimConfig, conditions: list[Condition]) -> str:
    """Hash the settings a checkpoint must share with the run resuming it."""
    payload = {
        "replications": config.replications,
        "max_errors": config.max_errors,
        "seed": config.seed,
        "warnings_as_errors": config.warnings_as_errors,
        "conditions": [dict(c) for c in conditions],
    }
    text = json.dumps(payload, sort_keys=True, default=str)
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def _atomic_write_bytes(path: Path, data: bytes) -> None:
    """Replace path with data so readers never see a partial file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f".{path.name}.{os.getpid()}.tmp")
    try:
        with tmp_path.open("wb") as f:
            _ = f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    finally:
        tmp_path.unlink(missing_ok=True)


class CheckpointStore:
    """Owns the checkpoint file and result artifacts of one run."""

    config: SimConfig
    path: Path

    def __init__(self, config: SimConfig) -> None:
        self.config = config
        self.path = config.checkpoint_path()

    @property
    def enabled(self) -> bool:
        """Return whether checkpointing is switched on."""
        return self.config.save

    def load(self) -> CheckpointRecord | None:
        """Read the checkpoint file, if one exists."""
        if not self.path.exists():
            return None
        try:
            with self.path.open("rb") as f:
                record = pickle.load(f)  # noqa: S301
        except (
            OSError,
            EOFError,
            ValueError,
            pickle.UnpicklingError,
            AttributeError,
            ImportError,
        ) as e:
            msg = f"Checkpoint {self.path} could not be read: {e}. Remove it with 'simrun clean'."
            raise CheckpointMismatchError(msg) from e
        if not isinstance(record, CheckpointRecord):
            msg = f"{self.path} is not a simrun checkpoint"
            raise CheckpointMismatchError(msg)
        return record

    def resume(self, fingerprint: str) -> CheckpointRecord:
        """Return the checkpoint to continue from, or a fresh one.

        Raises:
            CheckpointMismatchError: the checkpoint was written for a
                different run configuration or by a different worker

        """
        now = utcnow()
        fresh = CheckpointRecord(
            filename=self.config.filename,
            worker_id=self.config.worker,
            fingerprint=fingerprint,
            created_at=now,
            updated_at=now,
        )
        if not self.enabled:
            return fresh

        record = self.load()
        if record is None:
            return fresh

        if record.worker_id != self.config.worker or record.filename != self.config.filename:
            msg = (
                f"Checkpoint {self.path} belongs to worker {record.worker_id!r} "
                f"and output {record.filename!r}; refusing to resume."
            )
            raise CheckpointMismatchError(msg)
        if record.fingerprint != fingerprint:
            msg = (
                f"Checkpoint {self.path} was written with a different design or "
                "configuration. Remove it with 'simrun clean' to start over."
            )
            raise CheckpointMismatchError(msg)

        logger.info(
            "Resuming from %s: %d condition(s) already complete",
            self.path,
            len(record.completed_ids()),
        )
        return record

    def save(self, record: CheckpointRecord) -> None:
        """Persist the checkpoint atomically."""
        if not self.enabled:
            return
        record.updated_at = utcnow()
        self._guard(
            f"checkpoint {self.path}",
            lambda: _atomic_write_bytes(self.path, pickle.dumps(record)),
        )

    def remove(self) -> None:
        """Delete the checkpoint once the run has completed."""
        if self.path.exists():
            self.path.unlink()
            logger.debug("Removed checkpoint %s", self.path)

    def save_condition_results(
        self,
        result: ConditionResult,
        row: dict[str, Any],
    ) -> Path | None:
        """Write ``results-row-<ID>.pkl`` without replacing an earlier artifact."""
        if not self.config.save_results:
            return None
        artifact = {
            "condition": dict(result.condition),
            "results": collect_results(result.ordered()),
            "errors": dict(result.error_counts),
            "warnings": dict(result.warning_counts),
            "termination": result.termination,
            "row": row,
        }
        payload = pickle.dumps(artifact)
        return self._guard(
            f"results for row {result.condition.ID}",
            lambda: create_unique(
                self.config.results_dir(),
                f"results-row-{result.condition.ID}",
                ".pkl",
                lambda p: p.write_bytes(payload),
            ),
        )

    def write_final(self, table: pd.DataFrame) -> Path | None:
        """Write the final table to the configured filename.

        An existing file is never replaced; a numeric suffix is added
        instead.
        """
        target = self.config.output_path()
        if target is None:
            return None

        def write(path: Path) -> None:
            suffix = path.suffix.lower()
            if suffix == ".csv":
                table.to_csv(path, index=False)
            elif suffix == ".json":
                _ = table.to_json(path, orient="records", indent=2)
            else:
                table.to_pickle(path)

        path = cast(
            "Path | None",
            self._guard(
                f"final table {target}",
                lambda: create_unique(target.parent, target.stem, target.suffix, write),
                strict=True,
            ),
        )
        if path is not None and path != target:
            logger.warning("%s already exists; results written to %s", target, path)
        return path

    def _guard(
        self,
        description: str,
        write: Callable[[], Any],
        *,
        strict: bool | None = None,
    ) -> Any:
        strict = self.config.strict_io if strict is None else strict
        try:
            return write()
        except OSError as e:
            if strict:
                msg = f"Could not save {description}: {e}"
                raise PersistenceError(msg) from e
            logger.exception("Could not save %s", description)
            return None


def load_artifact(path: Path | str) -> Any:
    """Read a pickled results artifact or final table."""
    with Path(path).open("rb") as f:
        return pickle.load(f)  # noqa: S301


def sim_clean(  # noqa: PLR0913
    config: SimConfig,
    *,
    checkpoint: bool = True,
    results: bool = False,
    seeds: bool = False,
    generated: bool = False,
    output: bool = False,
) -> list[Path]:
    """Remove run artifacts on request. Returns the paths that were removed."""
    removed: list[Path] = []

    targets: list[Path] = []
    if checkpoint:
        targets.append(config.checkpoint_path())
    if results:
        targets.append(config.results_dir())
    if seeds:
        targets.append(config.seeds_dir())
    if generated:
        targets.append(config.generated_dir())
    if output and config.output_path() is not None:
        targets.append(cast("Path", config.output_path()))

    for path in targets:
        if path.is_dir():
            shutil.rmtree(path)
        elif path.exists():
            path.unlink()
        else:
            continue
        removed.append(path)
        logger.info("Removed %s", path)

    return removed
