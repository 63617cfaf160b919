"""Read cache for action views with explicit invalidation.

Three kinds of entries are kept, each keyed by the viewer because row
visibility depends on the viewer's role:

  - ``("actions", "list", viewer_id, params)``
  - ``("actions", "detail", action_id, viewer_id)``
  - ``("actions", "counts", viewer_id)``

After a successful write the caller invalidates all lists, the written
action's detail entries and all counts via :meth:`QueryCache.invalidate_after_write`.
"""
from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Hashable

log = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 30.0


def list_key(viewer_id: str, params: dict[str, Any]) -> tuple:
    return ("actions", "list", viewer_id, tuple(sorted(params.items())))


def detail_key(action_id: str, viewer_id: str) -> tuple:
    return ("actions", "detail", action_id, viewer_id)


def counts_key(viewer_id: str) -> tuple:
    return ("actions", "counts", viewer_id)


class QueryCache:
    """In-process TTL cache keyed by tuples."""

    def __init__(self, ttl_seconds: float = DEFAULT_TTL_SECONDS):
        self.ttl_seconds = ttl_seconds
        self._store: dict[Hashable, tuple[Any, float]] = {}
        self._lock = threading.Lock()

    def get(self, key: Hashable) -> Any | None:
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                return None
            value, expires = entry
            if time.monotonic() > expires:
                self._store.pop(key, None)
                return None
            return value

    def set(self, key: Hashable, value: Any) -> None:
        with self._lock:
            self._store[key] = (value, time.monotonic() + self.ttl_seconds)

    def get_or_load(self, key: Hashable, loader: Callable[[], Any]) -> Any:
        cached = self.get(key)
        if cached is not None:
            return cached
        value = loader()
        self.set(key, value)
        return value

    def _drop(self, predicate: Callable[[tuple], bool]) -> int:
        with self._lock:
            doomed = [k for k in self._store if isinstance(k, tuple) and predicate(k)]
            for k in doomed:
                del self._store[k]
        return len(doomed)

    def invalidate_lists(self) -> int:
        return self._drop(lambda k: k[:2] == ("actions", "list"))

    def invalidate_detail(self, action_id: str) -> int:
        return self._drop(lambda k: k[:2] == ("actions", "detail") and k[2] == action_id)

    def invalidate_counts(self) -> int:
        return self._drop(lambda k: k[:2] == ("actions", "counts"))

    def invalidate_after_write(self, action_id: str | None) -> None:
        dropped = self.invalidate_lists() + self.invalidate_counts()
        if action_id:
            dropped += self.invalidate_detail(action_id)
        log.debug("Invalidated %d cache entries after write to %s", dropped, action_id)

    def clear(self) -> None:
        with self._lock:
            self._store.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._store)
