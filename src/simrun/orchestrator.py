# Copyright (c) Syntropy Systems
"""Run orchestration: conditions in, final table out."""
from __future__ import annotations

import logging
from concurrent.futures import Future, as_completed
from typing import TYPE_CHECKING, Any

import pandas as pd

from simrun.checkpoint import CheckpointStore, run_fingerprint, utcnow
from simrun.condition import run_condition, worker_pool
from simrun.config import SimConfig, load_config, with_overrides
from simrun.errors import ESCALATED_FAULTS, ConfigError, SummariseFault
from simrun.invoker import invoke_stage
from simrun.models.checkpoint import CheckpointRecord, ConditionRecord
from simrun.replication import ReplicationOptions, Stages
from simrun.results import ID_COLUMN, ConditionResult, collect_results, make_conditions, summary_row
from simrun.seeds import condition_entropy, load_seed

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Mapping
    from concurrent.futures import Executor

    from simrun.errors import StageFault
    from simrun.results import Condition, ReplicationResult

    ProgressCallback = Callable[[Condition, ConditionResult], None]

logger = logging.getLogger(__name__)

ERROR_PREFIX = "ERROR: "
WARNING_PREFIX = "WARNING: "
META_COLUMNS = ("REPLICATIONS", "SIM_TIME", "SEED", "COMPLETED", "TERMINATION")


class SimulationRun:
    """One execution of a simulation design.

    Most callers use :func:`run_simulation`; the class keeps the run-level
    state (configuration, checkpoint, rows) in one place.
    """

    config: SimConfig
    conditions: list[Condition]
    stages: Stages
    fixed_objects: Any
    options: ReplicationOptions
    store: CheckpointStore
    record: CheckpointRecord
    progress: ProgressCallback | None

    def __init__(  # noqa: PLR0913
        self,
        design: pd.DataFrame | Iterable[Mapping[str, Any]],
        stages: Stages,
        config: SimConfig,
        fixed_objects: Any = None,
        progress: ProgressCallback | None = None,
    ) -> None:
        """Validate the design against the configuration and load any checkpoint."""
        self.config = config
        self.conditions = make_conditions(design)
        if config.seed is not None and len(config.seed) != len(self.conditions):
            msg = (
                f"seed must have one entry per condition "
                f"({len(self.conditions)}), got {len(config.seed)}"
            )
            raise ConfigError(msg)

        self.stages = stages
        self.fixed_objects = fixed_objects
        self.progress = progress

        seed_state = load_seed(config.load_seed) if config.load_seed else None
        self.options = ReplicationOptions.from_config(config, seed_state)
        self.store = CheckpointStore(config)
        self.record = self.store.resume(run_fingerprint(config, self.conditions))

    def _entropy(self, position: int, condition: Condition) -> int:
        existing = self.record.conditions.get(condition.ID)
        if existing is not None:
            return existing.entropy
        seed = self.config.seed[position] if self.config.seed is not None else None
        return condition_entropy(seed)

    def _state(self, condition: Condition) -> ConditionResult | None:
        existing = self.record.conditions.get(condition.ID)
        if existing is None:
            return None
        return existing.to_result(condition, self.config.replications)

    def _checkpoint_partial(self, result: ConditionResult, entropy: int) -> None:
        self.record.conditions[result.condition.ID] = ConditionRecord.from_result(
            result, entropy=entropy
        )
        self.store.save(self.record)

    def _interval_callback(
        self, entropy: int
    ) -> Callable[[ConditionResult, ReplicationResult], None] | None:
        interval = self.config.checkpoint_interval
        if not (self.config.save and interval):
            return None

        def on_result(result: ConditionResult, _: ReplicationResult) -> None:
            if result.completed % interval == 0:
                self._checkpoint_partial(result, entropy)

        return on_result

    def execute(self) -> pd.DataFrame:
        """Run all pending conditions and return the final table."""
        rows: dict[int, dict[str, Any]] = {
            cid: dict(rec.row)
            for cid, rec in self.record.conditions.items()
            if rec.completed and rec.row is not None
        }
        pending = [
            (pos, c) for pos, c in enumerate(self.conditions) if c.ID not in rows
        ]
        for condition in self.conditions:
            if condition.ID in rows:
                logger.info("Row %s restored from checkpoint", condition.ID)

        with worker_pool(self.config) as executor:
            if executor is not None and self.config.parallel == "conditions":
                self._run_conditions_parallel(pending, rows, executor)
            else:
                for position, condition in pending:
                    entropy = self._entropy(position, condition)
                    state = self._state(condition)
                    result = state or ConditionResult(
                        condition=condition, replications=self.config.replications
                    )
                    try:
                        result = run_condition(
                            condition,
                            self.stages,
                            self.fixed_objects,
                            self.options,
                            entropy=entropy,
                            replications=self.config.replications,
                            state=result,
                            on_result=self._interval_callback(entropy),
                            executor=executor,
                        )
                    except KeyboardInterrupt:
                        self._checkpoint_partial(result, entropy)
                        raise
                    rows[condition.ID] = self._complete(result, entropy)

        table = build_table([rows[c.ID] for c in self.conditions])
        _ = self.store.write_final(table)
        if self.config.save:
            self.store.remove()
        return table

    def _run_conditions_parallel(
        self,
        pending: list[tuple[int, Condition]],
        rows: dict[int, dict[str, Any]],
        executor: Executor,
    ) -> None:
        futures: dict[Future[ConditionResult], int] = {}
        for position, condition in pending:
            entropy = self._entropy(position, condition)
            # entropy is recorded up front so a resumed run reuses the stream
            self.record.conditions.setdefault(
                condition.ID, ConditionRecord(id=condition.ID, entropy=entropy)
            )
            future = executor.submit(
                run_condition,
                condition,
                self.stages,
                self.fixed_objects,
                self.options,
                entropy=entropy,
                replications=self.config.replications,
                state=self._state(condition),
            )
            futures[future] = entropy

        # conditions already running when a run-level fault arrives are still collected
        fault: StageFault | None = None
        try:
            for future in as_completed(futures):
                if future.cancelled():
                    continue
                result = future.result()
                try:
                    rows[result.condition.ID] = self._complete(result, futures[future])
                except ESCALATED_FAULTS as e:
                    if fault is None:
                        fault = e
                        for other in futures:
                            _ = other.cancel()
        finally:
            for future in futures:
                _ = future.cancel()
        if fault is not None:
            raise fault

    def _complete(self, result: ConditionResult, entropy: int) -> dict[str, Any]:
        """Summarise a finished condition, checkpoint it, escalate fatal faults."""
        condition = result.condition
        if isinstance(result.fault, ESCALATED_FAULTS):
            self._checkpoint_partial(result.resumable(), entropy)
            raise result.fault

        row = self._final_row(result, entropy)
        self.record.conditions[condition.ID] = ConditionRecord.from_result(
            result, entropy=entropy, row=row
        )
        self.store.save(self.record)
        _ = self.store.save_condition_results(result, row)

        if self.progress is not None:
            self.progress(condition, result)
        logger.info(
            "Row %s complete: %d/%d replications in %.2fs",
            condition.ID,
            result.completed,
            result.replications,
            result.elapsed,
        )
        return row

    def _final_row(self, result: ConditionResult, entropy: int) -> dict[str, Any]:
        row: dict[str, Any] = dict(result.condition)
        termination = result.termination

        if self.stages.summarise is not None and result.completed:
            collected = collect_results(result.ordered())
            summarised = invoke_stage(
                self.stages.summarise, result.condition, collected, self.fixed_objects
            )
            try:
                if summarised.failed:
                    msg = f"summarise() threw an error. Error message was: {summarised.message}"
                    raise SummariseFault(msg, result.condition.ID)
                summary = summary_row(summarised.value)
            except SummariseFault as e:
                logger.error("Row %s: %s", result.condition.ID, e.message)  # noqa: TRY400
                termination = termination or e.message
                summary = {}
            for key, value in summary.items():
                if key in row:
                    logger.warning(
                        "Row %s: summarise() column %r clashes with a design factor; dropped",
                        result.condition.ID,
                        key,
                    )
                    continue
                row[key] = value

        row["REPLICATIONS"] = result.completed
        row["SIM_TIME"] = round(result.elapsed, 6)
        row["SEED"] = entropy
        row["COMPLETED"] = utcnow()
        row["TERMINATION"] = termination
        for message, count in sorted(result.error_counts.items()):
            row[f"{ERROR_PREFIX}{message}"] = count
        for message, count in sorted(result.warning_counts.items()):
            row[f"{WARNING_PREFIX}{message}"] = count
        return row


def build_table(rows: list[dict[str, Any]]) -> pd.DataFrame:
    """Merge condition rows into the final table.

    Design and summary columns come first, then the run metadata, then the
    ``ERROR:``/``WARNING:`` frequency columns (0 where a row never saw the
    message).
    """
    table = pd.DataFrame(rows)
    diagnostics = sorted(
        c for c in table.columns if c.startswith((ERROR_PREFIX, WARNING_PREFIX))
    )
    errors = [c for c in diagnostics if c.startswith(ERROR_PREFIX)]
    warns = [c for c in diagnostics if c.startswith(WARNING_PREFIX)]
    leading = [c for c in table.columns if c not in diagnostics and c not in META_COLUMNS]
    if ID_COLUMN in leading:
        leading.remove(ID_COLUMN)
        leading.insert(0, ID_COLUMN)
    meta = [c for c in META_COLUMNS if c in table.columns]
    table = table[leading + meta + errors + warns].copy()
    if diagnostics:
        table[diagnostics] = table[diagnostics].fillna(0).astype(int)
    return table


def run_simulation(  # noqa: PLR0913
    design: pd.DataFrame | Iterable[Mapping[str, Any]],
    generate: Callable[..., Any],
    analyse: Callable[..., Any],
    summarise: Callable[..., Any] | None = None,
    *,
    config: SimConfig | None = None,
    fixed_objects: Any = None,
    progress: ProgressCallback | None = None,
    **overrides: Any,
) -> pd.DataFrame:
    """Run a Monte Carlo simulation over every condition in a design.

    Args:
        design: Conditions as a data frame or sequence of mappings; an ``ID``
            column is added when missing
        generate: ``generate(condition, fixed_objects[, rng])`` -> data
        analyse: ``analyse(condition, dat, fixed_objects[, rng])`` -> result
        summarise: ``summarise(condition, results, fixed_objects)`` -> summary
        config: Run configuration; loaded from simrun.yaml when omitted
        fixed_objects: Object passed unchanged to every stage
        progress: Called with each condition and its result as it completes
        **overrides: Configuration fields to override (e.g. ``replications=500``)

    Returns:
        The final table: one row per condition with the design factors,
        summary values, run metadata and error/warning frequencies.

    Example:
        >>> table = run_simulation(design, generate, analyse, summarise,
        ...                        replications=1000, max_errors=20)

    """
    if config is None:
        config = load_config(**overrides)
    elif overrides:
        config = with_overrides(config, **overrides)

    run = SimulationRun(
        design,
        Stages(generate=generate, analyse=analyse, summarise=summarise),
        config,
        fixed_objects=fixed_objects,
        progress=progress,
    )
    return run.execute()
