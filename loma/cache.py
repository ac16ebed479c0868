"""Query cache keyed by resource path and filter parameters.

The cache is an explicit object handed to every resource (see
:class:`loma.desk.PracticeDesk`); there is no module-level instance.

Reads go through :meth:`QueryCache.fetch`, which serves data younger than
the staleness window and otherwise runs the supplied fetcher.  Callers that
arrive while a fetch for the same key is running wait for that call instead
of issuing their own.  :meth:`QueryCache.cancel` detaches running fetches
so their results are discarded when they land; optimistic writers cancel
before writing so a slow read cannot overwrite the speculative value.
"""

from __future__ import annotations

import time
from concurrent.futures import Future
from dataclasses import dataclass
from threading import RLock
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import structlog

from loma.metrics import QUERY_CACHE_EVENTS

logger = structlog.get_logger(__name__)

QueryKey = Tuple[str, Tuple[Tuple[str, Any], ...]]
KeyOrResource = Union[QueryKey, str]
Fetcher = Callable[[], Any]

DEFAULT_STALE_SECONDS = 30.0


def query_key(resource: str, **params: Any) -> QueryKey:
    """Return the cache key for *resource* filtered by *params*.

    ``None`` parameters are dropped so ``query_key("/api/x", client=None)``
    and ``query_key("/api/x")`` address the same entry.
    """

    items = tuple(sorted((name, value) for name, value in params.items() if value is not None))
    return (resource, items)


@dataclass
class CacheSnapshot:
    """Point-in-time copy of one entry, restorable with :meth:`QueryCache.restore`."""

    key: QueryKey
    has_data: bool
    data: Any
    updated_at: float
    invalidated: bool


@dataclass
class _Entry:
    data: Any = None
    has_data: bool = False
    updated_at: float = 0.0
    invalidated: bool = False
    fetcher: Optional[Fetcher] = None
    inflight: Optional[Future] = None
    generation: int = 0


class QueryCache:
    """Process-wide store of query results with staleness and de-duplication."""

    def __init__(
        self,
        stale_seconds: float = DEFAULT_STALE_SECONDS,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.stale_seconds = float(stale_seconds)
        self._clock = clock
        self._entries: Dict[QueryKey, _Entry] = {}
        self._lock = RLock()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def fetch(
        self,
        key: QueryKey,
        fetcher: Fetcher,
        *,
        stale_seconds: Optional[float] = None,
    ) -> Any:
        """Return fresh data for *key*, running *fetcher* only when needed."""

        window = self.stale_seconds if stale_seconds is None else float(stale_seconds)
        with self._lock:
            entry = self._entries.setdefault(key, _Entry())
            entry.fetcher = fetcher
            if entry.has_data and not entry.invalidated and self._age(entry) < window:
                QUERY_CACHE_EVENTS.labels(event="hit").inc()
                return entry.data
            if entry.inflight is not None:
                future = entry.inflight
                owner = False
            else:
                future = Future()
                entry.inflight = future
                generation = entry.generation
                owner = True

        if not owner:
            QUERY_CACHE_EVENTS.labels(event="shared").inc()
            return future.result()

        QUERY_CACHE_EVENTS.labels(event="miss").inc()
        return self._run(key, entry, future, fetcher, generation)

    def _run(self, key: QueryKey, entry: _Entry, future: Future, fetcher: Fetcher, generation: int) -> Any:
        try:
            data = fetcher()
        except BaseException as exc:
            with self._lock:
                if entry.inflight is future:
                    entry.inflight = None
            future.set_exception(exc)
            raise

        with self._lock:
            if entry.inflight is future:
                entry.inflight = None
            if self._entries.get(key) is entry and entry.generation == generation:
                entry.data = data
                entry.has_data = True
                entry.updated_at = self._clock()
                entry.invalidated = False
                result = data
            else:
                QUERY_CACHE_EVENTS.labels(event="discarded").inc()
                logger.info("query_result_discarded", resource=key[0])
                current = self._entries.get(key)
                result = current.data if current is not None and current.has_data else data
        future.set_result(result)
        return result

    def get_data(self, key: QueryKey) -> Any:
        """Return the cached value for *key* without fetching."""

        with self._lock:
            entry = self._entries.get(key)
            if entry is None or not entry.has_data:
                return None
            return entry.data

    def is_stale(self, key: QueryKey) -> bool:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or not entry.has_data:
                return True
            return entry.invalidated or self._age(entry) >= self.stale_seconds

    def is_fetching(self, key: QueryKey) -> bool:
        with self._lock:
            entry = self._entries.get(key)
            return entry is not None and entry.inflight is not None

    def keys(self) -> List[QueryKey]:
        with self._lock:
            return list(self._entries)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    def set_data(self, key: QueryKey, value: Any) -> Any:
        """Replace the value for *key*.

        *value* may be a callable, in which case it receives the current
        value (``None`` when empty) and its return value is stored.
        """

        with self._lock:
            entry = self._entries.setdefault(key, _Entry())
            current = entry.data if entry.has_data else None
            new_value = value(current) if callable(value) else value
            entry.data = new_value
            entry.has_data = True
            entry.updated_at = self._clock()
            entry.invalidated = False
            return new_value

    def snapshot(self, key: QueryKey) -> CacheSnapshot:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return CacheSnapshot(key, False, None, 0.0, False)
            return CacheSnapshot(key, entry.has_data, entry.data, entry.updated_at, entry.invalidated)

    def restore(self, snapshot: CacheSnapshot) -> None:
        """Put an entry back exactly as captured by :meth:`snapshot`."""

        with self._lock:
            entry = self._entries.setdefault(snapshot.key, _Entry())
            entry.data = snapshot.data
            entry.has_data = snapshot.has_data
            entry.updated_at = snapshot.updated_at
            entry.invalidated = snapshot.invalidated

    def invalidate(self, target: KeyOrResource) -> int:
        """Mark matching entries stale; the next read refetches. Returns the count."""

        with self._lock:
            matched = self._match(target)
            for entry in matched:
                entry.invalidated = True
        if matched:
            logger.debug("query_invalidated", target=_describe(target), entries=len(matched))
        return len(matched)

    def cancel(self, target: KeyOrResource) -> int:
        """Detach running fetches for *target*; their results will be dropped."""

        cancelled = 0
        with self._lock:
            for entry in self._match(target):
                if entry.inflight is not None:
                    entry.inflight = None
                    cancelled += 1
                entry.generation += 1
        if cancelled:
            QUERY_CACHE_EVENTS.labels(event="cancelled").inc(cancelled)
        return cancelled

    def refetch(self, target: KeyOrResource) -> None:
        """Re-run the last fetcher of every matching entry immediately."""

        with self._lock:
            pending = [
                (key, entry.fetcher)
                for key, entry in self._entries.items()
                if _matches(key, target) and entry.fetcher is not None
            ]
        for key, fetcher in pending:
            self.cancel(key)
            with self._lock:
                entry = self._entries.get(key)
                if entry is not None:
                    entry.invalidated = True
            self.fetch(key, fetcher)

    def clear(self) -> None:
        """Drop every entry, including results of fetches still running."""

        with self._lock:
            self._entries.clear()
        logger.info("query_cache_cleared")

    # ------------------------------------------------------------------
    def _age(self, entry: _Entry) -> float:
        return self._clock() - entry.updated_at

    def _match(self, target: KeyOrResource) -> List[_Entry]:
        return [entry for key, entry in self._entries.items() if _matches(key, target)]


def _matches(key: QueryKey, target: KeyOrResource) -> bool:
    if isinstance(target, str):
        return key[0] == target
    return key == target


def _describe(target: KeyOrResource) -> str:
    return target if isinstance(target, str) else target[0]


__all__ = ["QueryCache", "QueryKey", "CacheSnapshot", "query_key", "DEFAULT_STALE_SECONDS"]
