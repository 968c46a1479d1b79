# Copyright (c) Syntropy Systems
"""Fault-isolated invocation of user-supplied stages."""
from __future__ import annotations

import dis
import inspect
import warnings
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Literal

if TYPE_CHECKING:
    from collections.abc import Callable

StageStatus = Literal["ok", "warned", "error"]


@dataclass(frozen=True)
class CapturedWarning:
    """A warning emitted by a stage."""

    category: str
    message: str
    filename: str
    lineno: int
    # None when the warning was raised by the stage itself
    location: str | None = None

    @property
    def text(self) -> str:
        """Signature used for counting: category, origin (if foreign) and message."""
        if self.location is None:
            return f"{self.category}: {self.message}"
        return f"{self.category} in {self.location}: {self.message}"


@dataclass
class StageOutcome:
    """Result of invoking a stage: a value or a failure message, plus diagnostics."""

    status: StageStatus
    value: Any = None
    warnings: list[CapturedWarning] = field(default_factory=list)
    message: str | None = None
    exception: BaseException | None = None

    @property
    def failed(self) -> bool:
        """Return whether the stage raised."""
        return self.status == "error"

    @property
    def warning_messages(self) -> list[str]:
        """Cleaned warning texts in emission order."""
        return [w.text for w in self.warnings]


def describe_exception(exc: BaseException) -> str:
    """Format an exception as ``<Type>: <message>`` on one logical line."""
    text = clean_message(str(exc))
    name = type(exc).__name__
    return f"{name}: {text}" if text else name


def clean_message(text: str) -> str:
    """Strip surrounding whitespace and collapse indentation of continuation lines."""
    lines = [line.strip() for line in text.strip().splitlines()]
    return "\n".join(line for line in lines if line)


def accepts_keyword(stage: Callable[..., Any], name: str) -> bool:
    """Return whether stage can be called with keyword ``name``."""
    try:
        params = inspect.signature(stage).parameters
    except (TypeError, ValueError):
        return False
    if name in params:
        return params[name].kind in (
            inspect.Parameter.POSITIONAL_OR_KEYWORD,
            inspect.Parameter.KEYWORD_ONLY,
        )
    return any(p.kind is inspect.Parameter.VAR_KEYWORD for p in params.values())


def invoke_stage(
    stage: Callable[..., Any],
    *args: Any,
    capture_warnings: bool = False,
    rng: object | None = None,
) -> StageOutcome:
    """Call a stage, turning exceptions into a failed outcome.

    With ``capture_warnings`` every warning raised during the call is
    recorded and suppressed, even under ``-W error``. Warning capture
    swaps process-wide filter state, so concurrent stages must run in
    separate processes rather than threads.

    ``rng`` is forwarded only to stages that accept an ``rng`` keyword.
    """
    kwargs: dict[str, Any] = {}
    if rng is not None and accepts_keyword(stage, "rng"):
        kwargs["rng"] = rng

    if not capture_warnings:
        try:
            value = stage(*args, **kwargs)
        except Exception as e:  # noqa: BLE001
            return StageOutcome(status="error", message=describe_exception(e), exception=e)
        return StageOutcome(status="ok", value=value)

    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always")
        try:
            value = stage(*args, **kwargs)
        except Exception as e:  # noqa: BLE001
            return StageOutcome(
                status="error",
                message=describe_exception(e),
                exception=e,
                warnings=_convert(caught, stage),
            )

    captured = _convert(caught, stage)
    if captured:
        return StageOutcome(status="warned", value=value, warnings=captured)
    return StageOutcome(status="ok", value=value)


def _stage_lines(stage: Callable[..., Any]) -> tuple[str, range] | None:
    """Source file and line span of a plain-function stage."""
    code = getattr(inspect.unwrap(stage), "__code__", None)
    if code is None:
        return None
    lines = [line for _, line in dis.findlinestarts(code) if line is not None]
    last = max(lines, default=code.co_firstlineno)
    return code.co_filename, range(code.co_firstlineno, last + 1)


def _location(record: warnings.WarningMessage, own: tuple[str, range] | None) -> str | None:
    """Where a warning came from, or None when the stage raised it itself.

    A warning attributed to the stage call site (``stacklevel=2`` inside the
    stage) counts as the stage's own.
    """
    filename = str(record.filename)
    lineno = int(record.lineno)
    if filename == invoke_stage.__code__.co_filename:
        return None
    if own is not None and filename == own[0] and lineno in own[1]:
        return None
    return f"{Path(filename).name}:{lineno}"


def _convert(
    records: list[warnings.WarningMessage],
    stage: Callable[..., Any],
) -> list[CapturedWarning]:
    own = _stage_lines(stage)
    return [
        CapturedWarning(
            category=record.category.__name__,
            message=clean_message(str(record.message)),
            filename=str(record.filename),
            lineno=int(record.lineno),
            location=_location(record, own),
        )
        for record in records
    ]
