# Copyright (c) Syntropy Systems
"""Tests for the condition runner."""

import pytest
from _stages import analyse_fails_on_row_2, analyse_mean, analyse_warns, generate_normal

from simrun.condition import run_condition
from simrun.errors import ConsecutiveFailureLimitExceeded
from simrun.replication import ReplicationOptions, Stages
from simrun.results import Condition, ConditionResult, ReplicationResult

ENTROPY = 777


@pytest.fixture
def stages() -> Stages:
    """Stages that always succeed."""
    return Stages(generate_normal, analyse_mean)


class TestRunCondition:
    """Tests for run_condition."""

    def test_collects_every_replication(self, stages: Stages) -> None:
        """Test that exactly the requested number of results is gathered."""
        result = run_condition(
            Condition({"ID": 1, "n": 10, "mu": 0.0}),
            stages,
            None,
            ReplicationOptions(),
            entropy=ENTROPY,
            replications=25,
        )

        assert result.completed == 25
        assert result.finished
        assert result.termination is None
        assert sorted(result.results) == list(range(1, 26))
        assert result.elapsed > 0

    def test_fatal_stops_condition(self) -> None:
        """Test that a fatal replication ends the condition with a reason."""
        result = run_condition(
            Condition({"ID": 2, "n": 10, "mu": 0.0}),
            Stages(generate_normal, analyse_fails_on_row_2),
            None,
            ReplicationOptions(max_errors=6),
            entropy=ENTROPY,
            replications=25,
        )

        assert result.completed == 0
        assert not result.finished
        assert isinstance(result.fault, ConsecutiveFailureLimitExceeded)
        assert result.termination is not None
        assert result.termination.startswith("Row 2 in design was terminated")
        assert result.error_counts["RuntimeError: estimation did not converge"] == 6

    def test_resume_runs_only_missing(self, stages: Stages) -> None:
        """Test that resuming from a partial result reproduces a full run."""
        condition = Condition({"ID": 1, "n": 10, "mu": 0.0})
        full = run_condition(
            condition, stages, None, ReplicationOptions(), entropy=ENTROPY, replications=10
        )

        partial = ConditionResult(condition=condition, replications=10)
        for index in (1, 2, 3, 7):
            partial.add(full.results[index])
        seen: list[int] = []

        resumed = run_condition(
            condition,
            stages,
            None,
            ReplicationOptions(),
            entropy=ENTROPY,
            replications=10,
            state=partial,
            on_result=lambda _result, rep: seen.append(rep.index),
        )

        assert seen == [4, 5, 6, 8, 9, 10]
        assert resumed.completed == 10
        for index in range(1, 11):
            assert resumed.results[index].value == full.results[index].value

    def test_on_result_sees_running_counts(self, stages: Stages) -> None:
        """Test that the callback receives each result as it lands."""
        completed: list[int] = []

        def record(result: ConditionResult, replication: ReplicationResult) -> None:
            completed.append(result.completed)
            assert result.results[replication.index] is replication

        _ = run_condition(
            Condition({"ID": 1, "n": 10, "mu": 0.0}),
            stages,
            None,
            ReplicationOptions(),
            entropy=ENTROPY,
            replications=5,
            on_result=record,
        )

        assert completed == [1, 2, 3, 4, 5]

    def test_warning_counts(self) -> None:
        """Test that warnings are tallied per message."""
        result = run_condition(
            Condition({"ID": 1, "n": 10, "mu": 0.0}),
            Stages(generate_normal, analyse_warns),
            None,
            ReplicationOptions(),
            entropy=ENTROPY,
            replications=8,
        )

        assert result.warning_counts == {"UserWarning: small sample": 8}
