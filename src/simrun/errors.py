# Copyright (c) Syntropy Systems
"""Exception hierarchy for simrun."""
from __future__ import annotations


class SimRunError(Exception):
    """Base class for all simrun errors."""


class ConfigError(SimRunError, ValueError):
    """Invalid run configuration or design table."""


class StageFault(SimRunError):
    """A failure raised by (or about) a user-supplied stage.

    Carries the cleaned message that is used as the fault signature in
    the ``ERROR:`` frequency columns of the final table.
    """

    def __init__(self, message: str, condition_id: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.condition_id = condition_id

    def __reduce__(self) -> tuple[type[StageFault], tuple[str, int | None]]:
        return (type(self), (self.message, self.condition_id))


class GenerationFault(StageFault):
    """The generate stage raised. Always fatal."""


class AnalysisFault(StageFault):
    """The analyse stage raised or emitted a warning treated as an error."""


class InvalidResultFault(StageFault):
    """The analyse stage returned missing or undefined numeric entries."""


class TypeContractViolation(StageFault):
    """The analyse stage returned neither a number nor a structured value."""


class ConsecutiveFailureLimitExceeded(StageFault):
    """A replication slot failed ``max_errors`` times in a row."""


class SummariseFault(StageFault):
    """The summarise stage raised."""


class PersistenceError(SimRunError, OSError):
    """A checkpoint, seed or result file could not be written."""


class CheckpointMismatchError(SimRunError):
    """An existing checkpoint was produced by a different run configuration."""


# Fatal faults that abort the whole run rather than a single condition.
ESCALATED_FAULTS: tuple[type[StageFault], ...] = (
    GenerationFault,
    TypeContractViolation,
)
