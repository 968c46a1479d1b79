# Copyright (c) Syntropy Systems
"""Shared Pydantic model helpers for simrun."""

from __future__ import annotations

from typing import ClassVar

from pydantic import BaseModel, ConfigDict


class FrozenModel(BaseModel):
    """Immutable value model."""

    model_config: ClassVar[ConfigDict] = ConfigDict(
        extra="forbid",
        frozen=True,
    )


class ArbitraryModel(BaseModel):
    """Model that may hold user objects (pickled, never JSON-dumped)."""

    model_config: ClassVar[ConfigDict] = ConfigDict(
        extra="ignore",
        arbitrary_types_allowed=True,
    )
