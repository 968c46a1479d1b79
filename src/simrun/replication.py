# Copyright (c) Syntropy Systems
"""Replication controller: drives one Monte Carlo draw to a valid result.

Each replication walks an explicit state machine::

    GENERATING -> ANALYSING -> VALIDATING -> SUCCESS
                      |            |
                      +--> RETRY <-+   (redraw: back to GENERATING)
                             |
                             +--> FATAL (max_errors consecutive failures)

A failing generate stage, or an analyse stage that returns something that
is neither numeric nor structured, goes straight to FATAL.
"""
from __future__ import annotations

import enum
import importlib
import logging
import pickle
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Literal

from simrun.errors import (
    AnalysisFault,
    ConfigError,
    ConsecutiveFailureLimitExceeded,
    GenerationFault,
    InvalidResultFault,
    PersistenceError,
    TypeContractViolation,
)
from simrun.invoker import invoke_stage
from simrun.results import ReplicationResult, ResultKind, classify, invalid_entries
from simrun.seeds import capture_seed, create_unique, persist_seed, replication_rng, restore_seed

if TYPE_CHECKING:
    from collections.abc import Callable
    from pathlib import Path

    from simrun.config import SimConfig
    from simrun.errors import StageFault
    from simrun.models.checkpoint import SeedState
    from simrun.results import Condition

logger = logging.getLogger(__name__)

_loaded_packages: set[str] = set()


class State(enum.Enum):
    """States of the replication controller."""

    GENERATING = "generating"
    ANALYSING = "analysing"
    VALIDATING = "validating"
    RETRY = "retry"
    SUCCESS = "success"
    FATAL = "fatal"


@dataclass(frozen=True)
class Stages:
    """The user-supplied stage functions.

    Must be importable module-level callables when replications are
    dispatched to worker processes.
    """

    generate: Callable[..., Any]
    analyse: Callable[..., Any]
    summarise: Callable[..., Any] | None = None


@dataclass(frozen=True)
class ReplicationOptions:
    """The parts of the run configuration a replication needs in a worker."""

    max_errors: int = 50
    warnings_as_errors: bool = False
    seeds_dir: Path | None = None
    load_seed: SeedState | None = None
    generated_dir: Path | None = None
    strict_io: bool = False
    packages: tuple[str, ...] = ()

    @classmethod
    def from_config(
        cls,
        config: SimConfig,
        load_seed: SeedState | None = None,
    ) -> ReplicationOptions:
        """Build options from a run configuration."""
        return cls(
            max_errors=config.max_errors,
            warnings_as_errors=config.warnings_as_errors,
            seeds_dir=config.seeds_dir() if config.save_seeds else None,
            load_seed=load_seed,
            generated_dir=config.generated_dir() if config.save_generate_data else None,
            strict_io=config.strict_io,
            packages=tuple(config.packages),
        )


@dataclass
class ReplicationOutcome:
    """Tagged outcome of one replication."""

    status: Literal["ok", "fatal"]
    index: int
    attempts: int
    result: ReplicationResult | None = None
    fault: StageFault | None = None
    errors: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        """Return whether a valid result was produced."""
        return self.status == "ok"


def load_packages(packages: tuple[str, ...] | list[str]) -> None:
    """Import modules the stages rely on, once per process."""
    for name in packages:
        if name in _loaded_packages:
            continue
        try:
            _ = importlib.import_module(name)
        except ImportError as e:
            msg = f"Could not load package {name!r}: {e}"
            raise ConfigError(msg) from e
        _loaded_packages.add(name)


def _persist(
    description: str,
    strict: bool,  # noqa: FBT001
    write: Callable[[], Path],
) -> Path | None:
    try:
        return write()
    except OSError as e:
        if strict:
            msg = f"Could not save {description}: {e}"
            raise PersistenceError(msg) from e
        logger.exception("Could not save %s", description)
        return None


def run_replication(  # noqa: C901, PLR0912, PLR0913
    index: int,
    condition: Condition,
    stages: Stages,
    fixed_objects: Any,
    options: ReplicationOptions,
    entropy: int,
) -> ReplicationOutcome:
    """Run one replication until it yields a valid result or becomes fatal."""
    load_packages(options.packages)

    rng = replication_rng(entropy, index)
    errors: list[str] = []
    attempts = 0
    state = State.GENERATING
    data: Any = None
    value: Any = None
    kind = ResultKind.SCALAR
    warning_messages: list[str] = []
    retry_fault: StageFault | None = None
    fault: StageFault | None = None

    while True:
        if state is State.GENERATING:
            attempts += 1
            if options.load_seed is not None:
                rng = restore_seed(options.load_seed)
            if options.seeds_dir is not None:
                seeds_dir = options.seeds_dir
                seed = capture_seed(rng)
                _ = _persist(
                    f"seed for row {condition.ID} replication {index}",
                    options.strict_io,
                    lambda: persist_seed(seeds_dir, condition.ID, index, seed),
                )

            generated = invoke_stage(stages.generate, condition, fixed_objects, rng=rng)
            if generated.failed:
                msg = f"generate() threw an error. Error message was: {generated.message}"
                fault = GenerationFault(msg, condition.ID)
                state = State.FATAL
                continue

            data = generated.value
            if options.generated_dir is not None:
                target = options.generated_dir / f"design-row-{condition.ID}"
                payload = pickle.dumps(data)
                _ = _persist(
                    f"generated data for row {condition.ID} replication {index}",
                    options.strict_io,
                    lambda: create_unique(
                        target,
                        f"generate-data-{index}",
                        ".pkl",
                        lambda p: p.write_bytes(payload),
                    ),
                )
            state = State.ANALYSING

        elif state is State.ANALYSING:
            analysed = invoke_stage(
                stages.analyse,
                condition,
                data,
                fixed_objects,
                capture_warnings=True,
                rng=rng,
            )
            warning_messages = analysed.warning_messages
            if analysed.failed:
                retry_fault = AnalysisFault(analysed.message or "analyse() failed", condition.ID)
                state = State.RETRY
            elif warning_messages and options.warnings_as_errors:
                retry_fault = AnalysisFault(warning_messages[0], condition.ID)
                warning_messages = []
                state = State.RETRY
            else:
                value = analysed.value
                state = State.VALIDATING

        elif state is State.VALIDATING:
            try:
                kind = classify(value)
            except TypeContractViolation as e:
                fault = TypeContractViolation(e.message, condition.ID)
                state = State.FATAL
                continue

            invalid = invalid_entries(value, kind)
            if invalid:
                msg = (
                    "The following return NA/NaN and required redrawing: "
                    + ", ".join(invalid)
                )
                retry_fault = InvalidResultFault(msg, condition.ID)
                state = State.RETRY
            else:
                state = State.SUCCESS

        elif state is State.RETRY:
            assert retry_fault is not None  # noqa: S101
            errors.append(retry_fault.message)
            if len(errors) >= options.max_errors:
                msg = (
                    f"Row {condition.ID} in design was terminated because it had "
                    f"{options.max_errors} consecutive errors. "
                    f"Last error message was: {retry_fault.message}"
                )
                fault = ConsecutiveFailureLimitExceeded(msg, condition.ID)
                state = State.FATAL
                continue
            logger.debug(
                "Row %s replication %s redrawing after: %s",
                condition.ID,
                index,
                retry_fault.message,
            )
            state = State.GENERATING

        elif state is State.SUCCESS:
            return ReplicationOutcome(
                status="ok",
                index=index,
                attempts=attempts,
                result=ReplicationResult(
                    index=index,
                    value=value,
                    kind=kind,
                    errors=list(errors),
                    warnings=warning_messages,
                ),
            )

        else:
            return ReplicationOutcome(
                status="fatal",
                index=index,
                attempts=attempts,
                fault=fault,
                errors=list(errors),
            )
