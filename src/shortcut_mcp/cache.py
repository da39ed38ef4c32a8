"""
In-memory reference caches with TTL-based staleness.

Users, workflows and teams are small, bulk-listable collections that nearly
every tool result references by id. Each is held as one snapshot that is
replaced wholesale and expires as a unit.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Hashable, Iterable
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

CACHE_TTL_SECONDS = 300  # 5 minutes

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


class ReferenceCache(Generic[K, V]):
    """Snapshot of one entity collection, keyed by entity id.

    There is no incremental insert: `refill_all` swaps in a complete new
    snapshot and only then stamps its age.
    """

    def __init__(
        self,
        ttl_seconds: float = CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self._ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[K, V] = {}
        self._loaded_at: float | None = None

    def get(self, key: K) -> V | None:
        return self._entries.get(key)

    def values(self) -> list[V]:
        return list(self._entries.values())

    def refill_all(self, entries: Iterable[tuple[K, V]]) -> None:
        replacement = dict(entries)
        self._entries = replacement
        self._loaded_at = self._clock()

    def clear(self) -> None:
        self._entries = {}
        self._loaded_at = None

    @property
    def loaded_at(self) -> float | None:
        return self._loaded_at

    @property
    def is_stale(self) -> bool:
        """True when never filled or older than the TTL."""
        if self._loaded_at is None:
            return True
        return self._clock() - self._loaded_at > self._ttl_seconds

    def describe(self) -> dict[str, Any]:
        age = None if self._loaded_at is None else self._clock() - self._loaded_at
        return {
            "size": len(self._entries),
            "loadedAt": self._loaded_at,
            "ageSeconds": age,
            "stale": self.is_stale,
            "ttlSeconds": self._ttl_seconds,
        }

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries


@dataclass
class ReferenceCaches:
    """The cache-backed reference kinds, owned by the server for its lifetime."""

    users: ReferenceCache[str, dict[str, Any]] = field(default_factory=ReferenceCache)
    workflows: ReferenceCache[int, dict[str, Any]] = field(default_factory=ReferenceCache)
    teams: ReferenceCache[str, dict[str, Any]] = field(default_factory=ReferenceCache)

    KINDS = ("users", "workflows", "teams")

    def for_kind(self, kind: str) -> ReferenceCache[Any, dict[str, Any]]:
        if kind not in self.KINDS:
            raise KeyError(f"'{kind}' is not a cached reference kind")
        return getattr(self, kind)

    def describe(self) -> dict[str, Any]:
        return {kind: self.for_kind(kind).describe() for kind in self.KINDS}
