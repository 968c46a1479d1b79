# Copyright (c) Syntropy Systems
"""Condition runner: all replications of one design row."""
from __future__ import annotations

import contextlib
import logging
import multiprocessing as mp
import time
from concurrent.futures import Executor, Future, ProcessPoolExecutor, as_completed
from typing import TYPE_CHECKING, Any

from simrun.replication import ReplicationOutcome, run_replication
from simrun.results import ConditionResult

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator

    from simrun.config import SimConfig
    from simrun.replication import ReplicationOptions, Stages
    from simrun.results import Condition, ReplicationResult

    ResultCallback = Callable[[ConditionResult, ReplicationResult], None]

logger = logging.getLogger(__name__)


@contextlib.contextmanager
def worker_pool(config: SimConfig) -> Iterator[Executor | None]:
    """Yield a process pool when the run is parallel, otherwise None.

    Workers are started with ``spawn`` so they behave the same on every
    platform; stage functions must therefore be importable.
    """
    if not config.parallel:
        yield None
        return

    with ProcessPoolExecutor(
        max_workers=config.workers,
        mp_context=mp.get_context("spawn"),
    ) as executor:
        yield executor


def _absorb(
    result: ConditionResult,
    outcome: ReplicationOutcome,
    on_result: ResultCallback | None,
) -> bool:
    """Fold one outcome into the condition result. Returns False on FATAL."""
    if outcome.ok and outcome.result is not None:
        result.add(outcome.result)
        if on_result is not None:
            on_result(result, outcome.result)
        return True

    assert outcome.fault is not None  # noqa: S101
    result.abort(outcome.fault, outcome.errors)
    logger.warning(
        "Row %s aborted after %d of %d replications: %s",
        result.condition.ID,
        result.completed,
        result.replications,
        outcome.fault.message,
    )
    return False


def run_condition(  # noqa: PLR0913
    condition: Condition,
    stages: Stages,
    fixed_objects: Any,
    options: ReplicationOptions,
    *,
    entropy: int,
    replications: int,
    state: ConditionResult | None = None,
    on_result: ResultCallback | None = None,
    executor: Executor | None = None,
) -> ConditionResult:
    """Run every missing replication of a condition.

    Args:
        condition: The design row
        stages: User stage functions
        fixed_objects: Object passed unchanged to every stage
        options: Replication settings
        entropy: Root entropy of this condition's replication streams
        replications: Target number of valid replications
        state: Partial result to resume from
        on_result: Called after each completed replication
        executor: Pool to fan replications out to; sequential when None

    Returns:
        The condition result. When a replication turns FATAL, no further
        replications are dispatched and ``termination`` holds the reason.

    """
    result = state or ConditionResult(condition=condition, replications=replications)
    pending = result.missing()
    started = time.perf_counter()

    try:
        if executor is None:
            for index in pending:
                outcome = run_replication(
                    index, condition, stages, fixed_objects, options, entropy
                )
                if not _absorb(result, outcome, on_result):
                    break
        else:
            _run_dispatched(
                result, pending, stages, fixed_objects, options, entropy, on_result, executor
            )
    finally:
        result.elapsed += time.perf_counter() - started

    return result


def _run_dispatched(  # noqa: PLR0913
    result: ConditionResult,
    pending: list[int],
    stages: Stages,
    fixed_objects: Any,
    options: ReplicationOptions,
    entropy: int,
    on_result: ResultCallback | None,
    executor: Executor,
) -> None:
    futures: list[Future[ReplicationOutcome]] = [
        executor.submit(
            run_replication,
            index,
            result.condition,
            stages,
            fixed_objects,
            options,
            entropy,
        )
        for index in pending
    ]
    try:
        for future in as_completed(futures):
            if not _absorb(result, future.result(), on_result):
                break
    finally:
        for future in futures:
            _ = future.cancel()
