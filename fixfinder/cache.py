"""Time-bounded metadata cache with request coalescing.

One ``MetadataCache`` instance is built at startup and handed to the
resolvers; nothing else keeps long-lived copies of tags, branches or results.

Each pool keeps ``{value, stored_at}`` entries valid while
``now - stored_at < ttl``. Failed loads are never stored. A miss registers a
``Future`` under the key so concurrent callers for the same key wait on the
one underlying load instead of starting their own.
"""
from __future__ import annotations

import threading
import time
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Any, Callable, Dict, Generic, Hashable, List, Optional, Protocol, TypeVar

from .logging_utils import logger
from .models import Branch, CommitRef, Tag

T = TypeVar("T")

_ALL = "__all__"


@dataclass(frozen=True)
class CacheEntry(Generic[T]):
    value: T
    stored_at: float


class TTLPool(Generic[T]):
    """A single TTL pool with an in-flight table for coalescing."""

    def __init__(self, name: str, ttl: float, *, clock: Callable[[], float] = time.monotonic):
        self.name = name
        self.ttl = ttl
        self._clock = clock
        self._entries: Dict[Hashable, CacheEntry[T]] = {}
        self._inflight: Dict[Hashable, Future] = {}
        self._lock = threading.Lock()
        self.loads = 0

    def _fresh(self, key: Hashable) -> Optional[CacheEntry[T]]:
        entry = self._entries.get(key)
        if entry is not None and self._clock() - entry.stored_at < self.ttl:
            return entry
        return None

    def get(self, key: Hashable) -> Optional[T]:
        # Warm reads skip the lock; dict lookups are atomic.
        entry = self._fresh(key)
        return entry.value if entry is not None else None

    def put(self, key: Hashable, value: T) -> None:
        with self._lock:
            self._entries[key] = CacheEntry(value, self._clock())

    def get_or_load(self, key: Hashable, loader: Callable[[], T]) -> T:
        entry = self._fresh(key)
        if entry is not None:
            return entry.value

        with self._lock:
            entry = self._fresh(key)
            if entry is not None:
                return entry.value
            fut = self._inflight.get(key)
            owner = fut is None
            if owner:
                fut = Future()
                self._inflight[key] = fut

        if not owner:
            logger.debug("cache_coalesced", pool=self.name, key=str(key))
            return fut.result()

        self.loads += 1
        try:
            value = loader()
        except BaseException as e:
            with self._lock:
                self._inflight.pop(key, None)
            fut.set_exception(e)
            raise

        with self._lock:
            self._entries[key] = CacheEntry(value, self._clock())
            self._inflight.pop(key, None)
        fut.set_result(value)
        return value

    def invalidate(self, key: Hashable) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear(self) -> int:
        with self._lock:
            n = len(self._entries)
            self._entries.clear()
            return n

    def stats(self) -> Dict[str, Any]:
        now = self._clock()
        with self._lock:
            ages = [now - e.stored_at for e in self._entries.values()]
            inflight = len(self._inflight)
        fresh = [a for a in ages if a < self.ttl]
        return {
            "entries": len(ages),
            "fresh": len(fresh),
            "expired": len(ages) - len(fresh),
            "ttlSeconds": self.ttl,
            "oldestAgeSeconds": round(max(ages), 3) if ages else None,
            "newestAgeSeconds": round(min(ages), 3) if ages else None,
            "inflight": inflight,
        }


class MetadataSource(Protocol):
    def list_tags(self) -> List[Tag]: ...

    def list_branches(self) -> List[Branch]: ...

    def get_commit(self, sha: str) -> CommitRef: ...


class MetadataCache:
    """Owns every cached entity: tags, branches, commits, membership, backports."""

    def __init__(
        self,
        source: MetadataSource,
        *,
        ttl_tags: float = 3600.0,
        ttl_branches: float = 3600.0,
        ttl_membership: float = 1800.0,
        ttl_backports: float = 1800.0,
        ttl_commits: float = 86400.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.source = source
        self.tags = TTLPool("tags", ttl_tags, clock=clock)
        self.branches = TTLPool("branches", ttl_branches, clock=clock)
        self.membership = TTLPool("membership", ttl_membership, clock=clock)
        self.backports = TTLPool("backports", ttl_backports, clock=clock)
        self.commits = TTLPool("commits", ttl_commits, clock=clock)

    @property
    def pools(self) -> List[TTLPool]:
        return [self.tags, self.branches, self.membership, self.backports, self.commits]

    # -- tag / branch lists --------------------------------------------------

    def _load_tags(self) -> List[Tag]:
        tags = list(self.source.list_tags())
        # Membership and backport results embed tags; a new tag set voids them.
        dropped = self.membership.clear() + self.backports.clear()
        logger.info("tags_refreshed", count=len(tags), dropped_results=dropped)
        return tags

    def get_tags(self) -> List[Tag]:
        return self.tags.get_or_load(_ALL, self._load_tags)

    def tags_by_name(self) -> Dict[str, Tag]:
        return {t.name: t for t in self.get_tags()}

    def get_branches(self) -> List[Branch]:
        return self.branches.get_or_load(_ALL, lambda: list(self.source.list_branches()))

    def get_stable_branches(self) -> List[Branch]:
        return [b for b in self.get_branches() if b.is_stable]

    def get_commit(self, sha: str) -> CommitRef:
        return self.commits.get_or_load(sha, lambda: self.source.get_commit(sha))

    # -- per-commit results --------------------------------------------------

    def get_membership(self, key: str):
        return self.membership.get(key)

    def put_membership(self, key: str, result) -> None:
        self.membership.put(key, result)

    def membership_or_resolve(self, key: str, resolve: Callable[[], T]) -> T:
        return self.membership.get_or_load(key, resolve)

    def get_backports(self, sha: str):
        return self.backports.get(sha)

    def put_backports(self, sha: str, result) -> None:
        self.backports.put(sha, result)

    def backports_or_resolve(self, sha: str, resolve: Callable[[], T]) -> T:
        return self.backports.get_or_load(sha, resolve)

    # -- lifecycle -----------------------------------------------------------

    def invalidate_tags(self) -> None:
        self.tags.invalidate(_ALL)
        self.branches.invalidate(_ALL)
        self.membership.clear()
        self.backports.clear()

    def clear_all(self) -> Dict[str, int]:
        cleared = {p.name: p.clear() for p in self.pools}
        logger.info("cache_cleared", **cleared)
        return cleared

    def stats(self) -> Dict[str, Any]:
        return {p.name: p.stats() for p in self.pools}
