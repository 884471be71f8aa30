"""Process-wide read cache for list-style snapshot reads."""

from __future__ import annotations

import threading
import time
from typing import Callable, Generic, Optional, Tuple, TypeVar

T = TypeVar("T")


class ReadCache(Generic[T]):
    """Single-value cache: populate on miss, expire after ``ttl_seconds``.

    Only read endpoints go through it. Mutating operations call
    :meth:`invalidate`; ledger writers always read the record store directly.
    """

    def __init__(
        self,
        loader: Callable[[], T],
        *,
        ttl_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._loader = loader
        self._ttl = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._entry: Optional[Tuple[float, T]] = None
        self._generation = 0

    def get(self) -> T:
        with self._lock:
            entry = self._entry
            if entry is not None and self._clock() < entry[0]:
                return entry[1]
            generation = self._generation
        value = self._loader()
        with self._lock:
            # An invalidate() during the load means the value may already be stale.
            if generation == self._generation:
                self._entry = (self._clock() + self._ttl, value)
        return value

    def invalidate(self) -> None:
        with self._lock:
            self._generation += 1
            self._entry = None

    @property
    def is_populated(self) -> bool:
        with self._lock:
            return self._entry is not None and self._clock() < self._entry[0]


__all__ = ["ReadCache"]
