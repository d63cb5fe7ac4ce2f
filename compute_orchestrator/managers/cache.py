"""
In-memory compute cache.

Maps compute id -> last observed ComputeInfo. It is an optimization only:
lookups that feed a mutating decision go to the cluster instead. Entries are
copied on the way in and out so callers can never mutate cached state.

Every eviction bumps a generation counter and leaves a tombstone. A reader
that listed the cluster takes ``generation()`` before the listing and passes
it to ``put_many(..., since=...)``; ids evicted after that point are skipped,
so a slow listing cannot bring a deleted compute back.
"""

import logging
import threading
from collections import OrderedDict
from typing import Dict, List, Optional

from .types import ComputeInfo

logger = logging.getLogger(__name__)

# Oldest tombstones are forgotten past this many
MAX_TOMBSTONES = 4096


class ComputeCache:
    """Thread-safe map of compute id to ComputeInfo. The lock is never held across an await."""

    def __init__(self, max_tombstones: int = MAX_TOMBSTONES):
        self._entries: Dict[str, ComputeInfo] = {}
        self._evicted_at: "OrderedDict[str, int]" = OrderedDict()
        self._generation = 0
        self._max_tombstones = max_tombstones
        self._lock = threading.Lock()

    def generation(self) -> int:
        with self._lock:
            return self._generation

    def get(self, compute_id: str) -> Optional[ComputeInfo]:
        with self._lock:
            info = self._entries.get(compute_id)
        return info.model_copy(deep=True) if info is not None else None

    def put(self, info: ComputeInfo) -> None:
        entry = info.model_copy(deep=True)
        with self._lock:
            self._entries[entry.compute_id] = entry

    def put_many(self, infos: List[ComputeInfo], since: Optional[int] = None) -> int:
        """
        Store listed entries. Returns how many were stored.

        With ``since``, entries evicted after that generation are skipped.
        """
        entries = [info.model_copy(deep=True) for info in infos]
        stored = 0
        with self._lock:
            for entry in entries:
                if since is not None and self._evicted_at.get(entry.compute_id, 0) > since:
                    continue
                self._entries[entry.compute_id] = entry
                stored += 1

        if stored < len(entries):
            logger.debug(f"[CACHE] Skipped {len(entries) - stored} computes evicted during listing")
        return stored

    def evict(self, compute_id: str) -> None:
        with self._lock:
            removed = self._entries.pop(compute_id, None)
            self._generation += 1
            self._evicted_at.pop(compute_id, None)
            self._evicted_at[compute_id] = self._generation
            while len(self._evicted_at) > self._max_tombstones:
                self._evicted_at.popitem(last=False)
        if removed is not None:
            logger.debug(f"[CACHE] Evicted compute {compute_id}")

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def ids(self) -> List[str]:
        with self._lock:
            return list(self._entries)

    def __contains__(self, compute_id: str) -> bool:
        with self._lock:
            return compute_id in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
