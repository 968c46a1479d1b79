# Copyright (c) Syntropy Systems
"""Tests for the replication controller."""

import pickle
from pathlib import Path

import pytest
from _stages import (
    analyse_always_fails,
    analyse_mean,
    analyse_returns_text,
    analyse_sometimes_nan,
    analyse_warns,
    generate_fails,
    generate_normal,
)

from simrun.errors import (
    ConfigError,
    ConsecutiveFailureLimitExceeded,
    GenerationFault,
    TypeContractViolation,
)
from simrun.replication import ReplicationOptions, Stages, load_packages, run_replication
from simrun.results import Condition, ResultKind
from simrun.seeds import load_seed

ENTROPY = 20240611


@pytest.fixture
def condition() -> Condition:
    """A single small design row."""
    return Condition({"ID": 1, "n": 10, "mu": 0.0})


class TestSuccess:
    """Tests for replications that produce a valid result."""

    def test_first_attempt(self, condition: Condition) -> None:
        """Test a replication that succeeds immediately."""
        outcome = run_replication(
            1,
            condition,
            Stages(generate_normal, analyse_mean),
            None,
            ReplicationOptions(),
            ENTROPY,
        )

        assert outcome.ok
        assert outcome.attempts == 1
        assert outcome.result is not None
        assert outcome.result.index == 1
        assert outcome.result.kind is ResultKind.VECTOR
        assert outcome.result.errors == []
        assert set(outcome.result.value) == {"mean", "sd"}

    def test_deterministic(self, condition: Condition) -> None:
        """Test that the same entropy and index give the same value."""
        stages = Stages(generate_normal, analyse_mean)
        first = run_replication(3, condition, stages, None, ReplicationOptions(), ENTROPY)
        second = run_replication(3, condition, stages, None, ReplicationOptions(), ENTROPY)

        assert first.result is not None
        assert second.result is not None
        assert first.result.value == second.result.value

    def test_redraws_are_recorded(self, condition: Condition) -> None:
        """Test that invalid results are redrawn and kept in the history."""
        stages = Stages(generate_normal, analyse_sometimes_nan)
        options = ReplicationOptions(max_errors=50)
        outcomes = [
            run_replication(i, condition, stages, None, options, ENTROPY) for i in range(1, 51)
        ]

        assert all(o.ok for o in outcomes)
        redrawn = [o for o in outcomes if o.attempts > 1]
        assert redrawn
        for outcome in redrawn:
            assert outcome.result is not None
            assert len(outcome.result.errors) == outcome.attempts - 1
            assert set(outcome.result.errors) == {
                "The following return NA/NaN and required redrawing: mean"
            }

    def test_warnings_attached(self, condition: Condition) -> None:
        """Test that analyse warnings travel with the result."""
        outcome = run_replication(
            1,
            condition,
            Stages(generate_normal, analyse_warns),
            None,
            ReplicationOptions(),
            ENTROPY,
        )

        assert outcome.ok
        assert outcome.result is not None
        assert outcome.result.warnings == ["UserWarning: small sample"]


class TestFatal:
    """Tests for replications that abort their condition."""

    def test_consecutive_failure_limit(self, condition: Condition) -> None:
        """Test that exactly max_errors attempts are made."""
        outcome = run_replication(
            1,
            condition,
            Stages(generate_normal, analyse_always_fails),
            None,
            ReplicationOptions(max_errors=4),
            ENTROPY,
        )

        assert outcome.status == "fatal"
        assert outcome.attempts == 4
        assert outcome.errors == ["ValueError: boom"] * 4
        assert isinstance(outcome.fault, ConsecutiveFailureLimitExceeded)
        assert outcome.fault.message == (
            "Row 1 in design was terminated because it had 4 consecutive errors. "
            "Last error message was: ValueError: boom"
        )

    def test_warnings_as_errors(self, condition: Condition) -> None:
        """Test that warnings count as failures when requested."""
        outcome = run_replication(
            1,
            condition,
            Stages(generate_normal, analyse_warns),
            None,
            ReplicationOptions(max_errors=3, warnings_as_errors=True),
            ENTROPY,
        )

        assert outcome.status == "fatal"
        assert outcome.errors == ["UserWarning: small sample"] * 3

    def test_generation_fault_is_immediate(self, condition: Condition) -> None:
        """Test that a failing generate stage is never retried."""
        outcome = run_replication(
            1,
            condition,
            Stages(generate_fails, analyse_mean),
            None,
            ReplicationOptions(),
            ENTROPY,
        )

        assert outcome.status == "fatal"
        assert outcome.attempts == 1
        assert isinstance(outcome.fault, GenerationFault)
        assert outcome.fault.condition_id == 1
        assert outcome.fault.message.startswith("generate() threw an error.")

    def test_type_contract_violation(self, condition: Condition) -> None:
        """Test that a non-numeric analyse value is fatal."""
        outcome = run_replication(
            1,
            condition,
            Stages(generate_normal, analyse_returns_text),
            None,
            ReplicationOptions(),
            ENTROPY,
        )

        assert outcome.status == "fatal"
        assert outcome.attempts == 1
        assert isinstance(outcome.fault, TypeContractViolation)
        assert outcome.errors == []


class TestPersistence:
    """Tests for seed and generated-data files."""

    def test_seed_replay_reproduces_data(self, condition: Condition, temp_dir: Path) -> None:
        """Test that a saved seed regenerates the exact same data."""
        stages = Stages(generate_normal, analyse_mean)
        _ = run_replication(
            5,
            condition,
            stages,
            None,
            ReplicationOptions(seeds_dir=temp_dir / "seeds", generated_dir=temp_dir / "gen1"),
            ENTROPY,
        )
        state = load_seed(temp_dir / "seeds" / "design-row-1" / "seed-5")

        _ = run_replication(
            99,
            condition,
            stages,
            None,
            ReplicationOptions(load_seed=state, generated_dir=temp_dir / "gen2"),
            ENTROPY,
        )

        original = temp_dir / "gen1" / "design-row-1" / "generate-data-5.pkl"
        replayed = temp_dir / "gen2" / "design-row-1" / "generate-data-99.pkl"
        assert original.read_bytes() == replayed.read_bytes()

    def test_seed_saved_per_attempt(self, condition: Condition, temp_dir: Path) -> None:
        """Test that every generate attempt leaves a seed record."""
        _ = run_replication(
            2,
            condition,
            Stages(generate_normal, analyse_always_fails),
            None,
            ReplicationOptions(max_errors=3, seeds_dir=temp_dir),
            ENTROPY,
        )

        names = sorted(p.name for p in (temp_dir / "design-row-1").iterdir())
        assert names == ["seed-2", "seed-2-1", "seed-2-2"]

    def test_generated_data_saved(self, condition: Condition, temp_dir: Path) -> None:
        """Test that generated data is pickled per replication."""
        _ = run_replication(
            1,
            condition,
            Stages(generate_normal, analyse_mean),
            None,
            ReplicationOptions(generated_dir=temp_dir),
            ENTROPY,
        )

        data = pickle.loads((temp_dir / "design-row-1" / "generate-data-1.pkl").read_bytes())
        assert len(data) == 10


class TestLoadPackages:
    """Tests for package preloading."""

    def test_known_package(self) -> None:
        """Test that importable modules load."""
        load_packages(["json"])

    def test_missing_package(self) -> None:
        """Test that a missing module is a configuration error."""
        with pytest.raises(ConfigError, match="no_such_module_xyz"):
            load_packages(["no_such_module_xyz"])
