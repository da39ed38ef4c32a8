"""Outcome of looking up one referenced entity by id."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Union


@dataclass(frozen=True)
class Found:
    value: dict[str, Any]


@dataclass(frozen=True)
class NotFound:
    id: Any


@dataclass(frozen=True)
class Failure:
    """The upstream call for this id raised; kept apart from a plain miss."""

    id: Any
    error: str


Lookup = Union[Found, NotFound, Failure]
