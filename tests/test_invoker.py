# Copyright (c) Syntropy Systems
"""Tests for fault-isolated stage invocation."""

import warnings

import numpy as np

from simrun.invoker import accepts_keyword, describe_exception, invoke_stage


def _add(a: int, b: int) -> int:
    return a + b


def _fail() -> None:
    msg = "  something broke\n    on two lines  "
    raise RuntimeError(msg)


def _warn_twice() -> str:
    warnings.warn("first", UserWarning, stacklevel=2)
    warnings.warn("second", RuntimeWarning, stacklevel=2)
    return "done"


def _warn_then_fail() -> None:
    warnings.warn("about to fail", UserWarning, stacklevel=2)
    msg = "failed"
    raise ValueError(msg)


def _draw(rng: np.random.Generator) -> float:
    return float(rng.uniform())


def _library_helper() -> int:
    warnings.warn("from helper", DeprecationWarning, stacklevel=1)
    return 1


def _calls_helper() -> int:
    return _library_helper() + 1


def _warns_here() -> None:
    warnings.warn("direct", UserWarning, stacklevel=1)


class TestInvokeStage:
    """Tests for invoke_stage."""

    def test_ok(self) -> None:
        """Test a stage that returns normally."""
        outcome = invoke_stage(_add, 2, 3)

        assert outcome.status == "ok"
        assert outcome.value == 5
        assert not outcome.failed

    def test_exception_becomes_failure(self) -> None:
        """Test that exceptions are returned, not raised."""
        outcome = invoke_stage(_fail)

        assert outcome.failed
        assert outcome.message == "RuntimeError: something broke\non two lines"
        assert isinstance(outcome.exception, RuntimeError)

    def test_warnings_captured_in_order(self) -> None:
        """Test that warnings are recorded with their category."""
        outcome = invoke_stage(_warn_twice, capture_warnings=True)

        assert outcome.status == "warned"
        assert outcome.value == "done"
        assert outcome.warning_messages == [
            "UserWarning: first",
            "RuntimeWarning: second",
        ]

    def test_warnings_suppressed_under_error_filter(self) -> None:
        """Test that capture wins over a process-wide error filter."""
        with warnings.catch_warnings():
            warnings.simplefilter("error")
            outcome = invoke_stage(_warn_twice, capture_warnings=True)

        assert outcome.status == "warned"
        assert outcome.value == "done"

    def test_warnings_kept_alongside_failure(self) -> None:
        """Test that warnings before a failure are still reported."""
        outcome = invoke_stage(_warn_then_fail, capture_warnings=True)

        assert outcome.failed
        assert outcome.message == "ValueError: failed"
        assert outcome.warning_messages == ["UserWarning: about to fail"]

    def test_foreign_warning_names_its_origin(self) -> None:
        """Test that a warning raised below the stage keeps its file and line."""
        outcome = invoke_stage(_calls_helper, capture_warnings=True)

        assert outcome.value == 2
        [text] = outcome.warning_messages
        assert text.startswith("DeprecationWarning in test_invoker.py:")
        assert text.endswith(": from helper")
        assert outcome.warnings[0].lineno == _library_helper.__code__.co_firstlineno + 1

    def test_own_warning_is_plain(self) -> None:
        """Test that a warning raised in the stage body has no origin."""
        outcome = invoke_stage(_warns_here, capture_warnings=True)

        assert outcome.warning_messages == ["UserWarning: direct"]

    def test_rng_forwarded_when_accepted(self) -> None:
        """Test that rng is passed to stages that declare it."""
        rng = np.random.default_rng(5)
        expected = float(np.random.default_rng(5).uniform())

        outcome = invoke_stage(_draw, rng=rng)

        assert outcome.value == expected

    def test_rng_not_forwarded_otherwise(self) -> None:
        """Test that stages without an rng parameter are called without it."""
        outcome = invoke_stage(_add, 1, 1, rng=np.random.default_rng(5))

        assert outcome.value == 2


class TestHelpers:
    """Tests for invoker helpers."""

    def test_describe_exception(self) -> None:
        """Test the Type: message format."""
        assert describe_exception(ValueError("bad value")) == "ValueError: bad value"
        assert describe_exception(KeyError()) == "KeyError"

    def test_accepts_keyword(self) -> None:
        """Test keyword detection including **kwargs."""

        def with_kwargs(**kwargs: object) -> None:
            pass

        assert accepts_keyword(_draw, "rng")
        assert not accepts_keyword(_add, "rng")
        assert accepts_keyword(with_kwargs, "rng")
