# Copyright (c) Syntropy Systems
"""Conditions, analysis results and their conversion into tables.

Analysis values are classified into a small tagged union:

- ``SCALAR``: a single real number
- ``VECTOR``: named real numbers (mapping, Series, 1-d array, one-row frame)
- ``STRUCTURED``: anything list-like or nested (lists of arrays, models, ...)

Scalar and vector results of a condition are collected into a
``pandas.DataFrame`` (one row per replication) before summarising; as soon
as one result is structured the collection is passed on as a list.
"""
from __future__ import annotations

import enum
import math
import numbers
from collections import Counter
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import numpy as np
import pandas as pd

from simrun.errors import ConfigError, SummariseFault, TypeContractViolation

if TYPE_CHECKING:
    from simrun.errors import StageFault

ID_COLUMN = "ID"


class Condition(Mapping[str, Any]):
    """One read-only row of the design table.

    Factors are available both as items (``condition["n"]``) and as
    attributes (``condition.n``). ``condition.ID`` is the unique row id.
    """

    def __init__(self, values: Mapping[str, Any]) -> None:
        if ID_COLUMN not in values:
            msg = f"condition is missing the {ID_COLUMN!r} column"
            raise ConfigError(msg)
        data = {str(k): _plain(v) for k, v in values.items()}
        data[ID_COLUMN] = int(data[ID_COLUMN])
        object.__setattr__(self, "_data", data)

    def __getitem__(self, key: str) -> Any:
        return self._data[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def __getattr__(self, name: str) -> Any:
        if name.startswith("_"):
            raise AttributeError(name)
        try:
            return self._data[name]
        except KeyError:
            raise AttributeError(name) from None

    def __setattr__(self, name: str, value: object) -> None:
        msg = "Condition is read-only"
        raise AttributeError(msg)

    def __reduce__(self) -> tuple[type[Condition], tuple[dict[str, Any]]]:
        return (Condition, (dict(self._data),))

    def __repr__(self) -> str:
        inner = ", ".join(f"{k}={v!r}" for k, v in self._data.items())
        return f"Condition({inner})"

    @property
    def ID(self) -> int:  # noqa: N802
        """Unique id of this design row."""
        return int(self._data[ID_COLUMN])

    def factors(self) -> dict[str, Any]:
        """Return the factor values without the ID."""
        return {k: v for k, v in self._data.items() if k != ID_COLUMN}


def _plain(value: object) -> object:
    """Unwrap numpy scalars so conditions pickle and compare cleanly."""
    if isinstance(value, np.generic):
        return value.item()
    return value


def make_conditions(design: pd.DataFrame | Iterable[Mapping[str, Any]]) -> list[Condition]:
    """Build conditions from a design table.

    An ``ID`` column numbered from 1 is added when the design has none.
    """
    if isinstance(design, pd.DataFrame):
        rows = design.to_dict(orient="records")
    else:
        rows = [dict(row) for row in design]

    if not rows:
        msg = "design must contain at least one condition"
        raise ConfigError(msg)

    if all(ID_COLUMN not in row for row in rows):
        rows = [{ID_COLUMN: i, **row} for i, row in enumerate(rows, start=1)]

    conditions = [Condition(row) for row in rows]
    ids = [c.ID for c in conditions]
    duplicates = sorted(k for k, n in Counter(ids).items() if n > 1)
    if duplicates:
        msg = f"design IDs must be unique, duplicated: {duplicates}"
        raise ConfigError(msg)
    return conditions


class ResultKind(enum.Enum):
    """Shape of an analysis value."""

    SCALAR = "scalar"
    VECTOR = "vector"
    STRUCTURED = "structured"


def _is_real(value: object) -> bool:
    return isinstance(value, numbers.Real)


def _is_missing(value: object) -> bool:
    if value is None:
        return True
    if isinstance(value, (float, np.floating)):
        return math.isnan(value)
    return value is pd.NA or value is pd.NaT


def _numeric_dtype(dtype: np.dtype[Any]) -> bool:
    return dtype.kind in "biuf"


def classify(value: object) -> ResultKind:
    """Classify an analysis value.

    Raises:
        TypeContractViolation: value is neither numeric nor structured

    """
    if _is_real(value):
        return ResultKind.SCALAR

    if isinstance(value, pd.DataFrame):
        if len(value) == 1 and all(_numeric_dtype(dt) for dt in value.dtypes):
            return ResultKind.VECTOR
        return ResultKind.STRUCTURED

    if isinstance(value, pd.Series):
        return ResultKind.VECTOR if _numeric_dtype(value.dtype) else ResultKind.STRUCTURED

    if isinstance(value, np.ndarray):
        if not _numeric_dtype(value.dtype):
            msg = f"analyse() returned an array of dtype {value.dtype}, expected numbers"
            raise TypeContractViolation(msg)
        if value.ndim == 0:
            return ResultKind.SCALAR
        return ResultKind.VECTOR if value.ndim == 1 else ResultKind.STRUCTURED

    if isinstance(value, Mapping):
        items = list(value.values())
        if items and all(_is_real(v) or _is_missing(v) for v in items):
            return ResultKind.VECTOR
        return ResultKind.STRUCTURED

    if isinstance(value, (list, tuple)):
        if value and all(_is_real(v) or _is_missing(v) for v in value):
            return ResultKind.VECTOR
        return ResultKind.STRUCTURED

    msg = f"analyse() did not return a list or numeric vector (got {type(value).__name__})"
    raise TypeContractViolation(msg)


def to_row(value: object) -> dict[str, Any]:
    """Flatten a scalar or vector value into named columns."""
    if isinstance(value, pd.DataFrame):
        return {str(k): v for k, v in value.iloc[0].to_dict().items()}
    if isinstance(value, pd.Series):
        if isinstance(value.index, pd.RangeIndex):
            return {f"V{i + 1}": v for i, v in enumerate(value.tolist())}
        return {str(k): v for k, v in value.to_dict().items()}
    if isinstance(value, np.ndarray):
        if value.ndim == 0:
            return {"value": value.item()}
        return {f"V{i + 1}": v for i, v in enumerate(value.tolist())}
    if isinstance(value, Mapping):
        return {str(k): v for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return {f"V{i + 1}": v for i, v in enumerate(value)}
    return {"value": value}


def invalid_entries(value: object, kind: ResultKind) -> list[str]:
    """Return the names of missing/undefined numeric entries.

    Structured values are scanned one level deep: only direct entries that
    are themselves missing are reported.
    """
    if kind is not ResultKind.STRUCTURED:
        return [name for name, v in to_row(value).items() if _is_missing(v)]

    if isinstance(value, pd.DataFrame):
        return [str(c) for c in value.columns[value.isna().any()]]
    if isinstance(value, np.ndarray):
        return ["value"] if bool(np.isnan(value).any()) else []
    if isinstance(value, Mapping):
        return [str(k) for k, v in value.items() if _is_missing(v)]
    if isinstance(value, (list, tuple)):
        return [f"[{i}]" for i, v in enumerate(value) if _is_missing(v)]
    return []


@dataclass
class ReplicationResult:
    """A valid analysis value with the diagnostics gathered while producing it."""

    index: int
    value: Any
    kind: ResultKind
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


@dataclass
class ConditionResult:
    """Results of all replications for one condition."""

    condition: Condition
    replications: int
    results: dict[int, ReplicationResult] = field(default_factory=dict)
    error_counts: Counter[str] = field(default_factory=Counter)
    warning_counts: Counter[str] = field(default_factory=Counter)
    termination: str | None = None
    fault: StageFault | None = None
    aborted_errors: list[str] = field(default_factory=list)
    elapsed: float = 0.0

    def add(self, result: ReplicationResult) -> None:
        """Store a completed replication and count its diagnostics."""
        self.results[result.index] = result
        self.error_counts.update(result.errors)
        self.warning_counts.update(result.warnings)

    def abort(self, fault: StageFault, errors: Iterable[str]) -> None:
        """Record a fatal fault and the failed attempts that led to it."""
        self.fault = fault
        self.termination = fault.message
        self.aborted_errors = list(errors)
        self.error_counts.update(self.aborted_errors)

    def resumable(self) -> ConditionResult:
        """Copy without the aborting fault, so the failed slot can run again."""
        return ConditionResult(
            condition=self.condition,
            replications=self.replications,
            results=dict(self.results),
            error_counts=self.error_counts - Counter(self.aborted_errors),
            warning_counts=Counter(self.warning_counts),
            elapsed=self.elapsed,
        )

    @property
    def completed(self) -> int:
        """Number of valid replications gathered."""
        return len(self.results)

    @property
    def finished(self) -> bool:
        """True when every replication index has a result."""
        return self.completed >= self.replications

    def missing(self) -> list[int]:
        """Replication indexes that still need to run."""
        return [i for i in range(1, self.replications + 1) if i not in self.results]

    def ordered(self) -> list[ReplicationResult]:
        """Results in replication index order."""
        return [self.results[i] for i in sorted(self.results)]


def collect_results(results: list[ReplicationResult]) -> pd.DataFrame | list[Any]:
    """Build the summarise input from results in index order."""
    if results and all(r.kind is not ResultKind.STRUCTURED for r in results):
        frame = pd.DataFrame(
            [to_row(r.value) for r in results],
            index=pd.Index([r.index for r in results], name="replication"),
        )
        return frame
    return [r.value for r in results]


def summary_row(value: object) -> dict[str, Any]:
    """Convert a summarise return value into final-table columns."""
    if value is None:
        return {}
    if isinstance(value, pd.DataFrame):
        if len(value) != 1:
            msg = f"summarise() returned a data frame with {len(value)} rows, expected 1"
            raise SummariseFault(msg)
        return {str(k): v for k, v in value.iloc[0].to_dict().items()}
    if isinstance(value, (pd.Series, np.ndarray, Mapping)) or _is_real(value):
        return to_row(value)
    if isinstance(value, (list, tuple)) and all(_is_real(v) for v in value):
        return to_row(value)
    msg = (
        "summarise() must return a named numeric vector, mapping or one-row "
        f"data frame (got {type(value).__name__})"
    )
    raise SummariseFault(msg)
