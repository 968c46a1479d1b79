# Copyright (c) Syntropy Systems
"""Pydantic models for seed records and checkpoints."""

from __future__ import annotations

import json
from collections import Counter
from typing import Any

from pydantic import Field

from simrun.results import Condition, ConditionResult, ReplicationResult

from .base import ArbitraryModel, FrozenModel


class SeedState(FrozenModel):
    """Opaque, serializable state of a numpy bit generator.

    ``state`` holds the JSON text of ``BitGenerator.state``; 128-bit
    counters survive the round trip because the text is never reparsed
    into fixed-width integers.
    """

    bit_generator: str
    state: str

    @classmethod
    def from_state(cls, state: dict[str, Any]) -> SeedState:
        """Wrap a ``BitGenerator.state`` mapping."""
        return cls(bit_generator=str(state["bit_generator"]), state=json.dumps(state))

    def as_dict(self) -> dict[str, Any]:
        """Return the ``BitGenerator.state`` mapping."""
        return json.loads(self.state)


class ConditionRecord(ArbitraryModel):
    """Checkpointed progress of one condition."""

    id: int
    entropy: int
    results: dict[int, ReplicationResult] = Field(default_factory=dict)
    error_counts: dict[str, int] = Field(default_factory=dict)
    warning_counts: dict[str, int] = Field(default_factory=dict)
    completed: bool = False
    termination: str | None = None
    row: dict[str, Any] | None = None
    elapsed: float = 0.0

    @classmethod
    def from_result(
        cls,
        result: ConditionResult,
        *,
        entropy: int,
        row: dict[str, Any] | None = None,
    ) -> ConditionRecord:
        """Snapshot a condition result."""
        return cls(
            id=result.condition.ID,
            entropy=entropy,
            results=dict(result.results),
            error_counts=dict(result.error_counts),
            warning_counts=dict(result.warning_counts),
            completed=row is not None,
            termination=result.termination,
            row=row,
            elapsed=result.elapsed,
        )

    def to_result(self, condition: Condition, replications: int) -> ConditionResult:
        """Rebuild the in-memory condition result for resuming."""
        return ConditionResult(
            condition=condition,
            replications=replications,
            results=dict(self.results),
            error_counts=Counter(self.error_counts),
            warning_counts=Counter(self.warning_counts),
            termination=self.termination,
            elapsed=self.elapsed,
        )


class CheckpointRecord(ArbitraryModel):
    """Checkpoint for a whole run."""

    filename: str | None = None
    worker_id: str
    fingerprint: str
    created_at: str
    updated_at: str
    conditions: dict[int, ConditionRecord] = Field(default_factory=dict)

    def completed_ids(self) -> list[int]:
        """IDs of conditions whose final row is already known."""
        return sorted(cid for cid, rec in self.conditions.items() if rec.completed)
