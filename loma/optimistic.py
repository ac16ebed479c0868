"""Snapshot, speculative apply, then commit or revert.

The cache patch itself is the pure :func:`patch_session`; the rest of the
module sequences it around a transport call.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional

import structlog

from loma.cache import CacheSnapshot, QueryCache, QueryKey

logger = structlog.get_logger(__name__)

Updater = Callable[[Any], Any]


def patch_session(current: Any, session_id: Any, changes: Mapping[str, Any]) -> Any:
    """Return *current* with the row for *session_id* merged with *changes*.

    Lists produce a new list of new dicts; the input is never mutated.  An
    empty cache stays empty, and any other shape (including the legacy
    ``{"data": [...]}`` wrapper) is logged and passed through unchanged.
    """

    if current is None:
        return None
    if not isinstance(current, list):
        logger.warning(
            "optimistic_patch_unexpected_shape",
            shape=type(current).__name__,
            wrapped=isinstance(current, Mapping) and "data" in current,
        )
        return current

    patched: List[Any] = []
    for row in current:
        if isinstance(row, Mapping) and _same_id(row.get("id"), session_id):
            merged: Dict[str, Any] = dict(row)
            merged.update(changes)
            patched.append(merged)
        else:
            patched.append(row)
    return patched


def _same_id(left: Any, right: Any) -> bool:
    if left == right:
        return True
    return left is not None and right is not None and str(left) == str(right)


@dataclass
class OptimisticWrite:
    """What :func:`begin_optimistic` changed, enough to undo it."""

    key: QueryKey
    snapshot: CacheSnapshot
    applied: Any


def begin_optimistic(cache: QueryCache, key: QueryKey, updater: Updater) -> OptimisticWrite:
    """Cancel in-flight reads for *key*, snapshot it and apply *updater*."""

    cache.cancel(key)
    snapshot = cache.snapshot(key)
    if snapshot.has_data:
        applied = cache.set_data(key, updater)
    else:
        applied = None
    return OptimisticWrite(key=key, snapshot=snapshot, applied=applied)


def rollback(cache: QueryCache, write: OptimisticWrite) -> None:
    cache.restore(write.snapshot)
    logger.info("optimistic_write_rolled_back", resource=write.key[0])


def commit(cache: QueryCache, write: OptimisticWrite) -> None:
    """Treat the speculative value as provisional and reload from the server."""

    cache.invalidate(write.key)
    cache.refetch(write.key)


def run_optimistic(
    cache: QueryCache,
    key: QueryKey,
    updater: Updater,
    send: Callable[[], Any],
    *,
    on_rollback: Optional[Callable[[BaseException], None]] = None,
) -> Any:
    """Apply *updater*, call *send* and commit, or restore and re-raise."""

    write = begin_optimistic(cache, key, updater)
    try:
        result = send()
    except Exception as exc:
        rollback(cache, write)
        if on_rollback is not None:
            on_rollback(exc)
        raise
    commit(cache, write)
    return result


__all__ = [
    "OptimisticWrite",
    "begin_optimistic",
    "commit",
    "patch_session",
    "rollback",
    "run_optimistic",
]
