"""
Time-bounded metadata cache with single-flight misses.

One entry per key; a fresh fetch overwrites. Concurrent misses for the
same key wait on a single in-flight fetch and share its payload or its
exception. Failures are never cached.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Hashable, Optional

log = logging.getLogger(__name__)

DEFAULT_TTL = 5 * 60


@dataclass(frozen=True)
class MetadataEntry:
    key: Hashable
    payload: Any
    created: float


class _Flight:
    def __init__(self) -> None:
        self.done = threading.Event()
        self.payload: Any = None
        self.error: Optional[BaseException] = None


class InfoCache:
    def __init__(self, ttl: float = DEFAULT_TTL, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl = ttl
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: Dict[Hashable, MetadataEntry] = {}
        self._flights: Dict[Hashable, _Flight] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _fresh(self, entry: Optional[MetadataEntry], now: float) -> bool:
        return entry is not None and now - entry.created < self.ttl

    def get_or_fetch(self, key: Hashable, fetch: Callable[[], Any]) -> Any:
        with self._lock:
            entry = self._entries.get(key)
            if self._fresh(entry, self._clock()):
                log.info("Using cached info for %s", key)
                return entry.payload

            flight = self._flights.get(key)
            leader = flight is None
            if leader:
                flight = self._flights[key] = _Flight()

        if not leader:
            flight.done.wait()
            if flight.error is not None:
                raise flight.error
            return flight.payload

        try:
            payload = fetch()
        except BaseException as e:
            flight.error = e
            raise
        else:
            flight.payload = payload
            with self._lock:
                self._entries[key] = MetadataEntry(key, payload, self._clock())
                self._purge_expired()
            return payload
        finally:
            with self._lock:
                self._flights.pop(key, None)
            flight.done.set()

    def _purge_expired(self) -> None:
        """Must be called with _lock held."""
        now = self._clock()
        expired = [k for k, e in self._entries.items() if not self._fresh(e, now)]
        for k in expired:
            self._entries.pop(k, None)
