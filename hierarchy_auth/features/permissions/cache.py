"""
Per-principal cache of resolved permissions.

Constructed explicitly and injected where needed; ``start()`` launches a
background sweeper that drops expired entries and ``stop()`` cancels it and
clears the map.
"""
import asyncio
import threading
import time
from typing import Callable, Iterable, Optional

from cachetools import TTLCache

from hierarchy_auth.core import config
from hierarchy_auth.features.permissions.resolver import ResolvedPermissions, RoleResolver
from hierarchy_auth.features.permissions.store import RoleStore
from hierarchy_auth.utils import get_logger


log = get_logger(__name__)


class PermissionCache:
    """
    Memoizes ``RoleResolver`` output per principal id.

    Entries live for ``ttl`` seconds. Unknown principals are never cached.
    Concurrent misses for the same principal may both recompute; resolution is
    deterministic so whichever write lands last is correct. A fill that raced
    with an invalidation is discarded rather than stored.
    """

    def __init__(
        self,
        role_store: RoleStore,
        resolver: Optional[RoleResolver] = None,
        ttl: float = config.PERMISSION_CACHE_TTL_SECONDS,
        sweep_interval: float = config.PERMISSION_CACHE_SWEEP_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        maxsize: int = config.PERMISSION_CACHE_MAX_ENTRIES,
    ):
        self.role_store = role_store
        self.resolver = resolver or RoleResolver()
        self.ttl = ttl
        self.sweep_interval = sweep_interval
        self._entries: TTLCache = TTLCache(maxsize=maxsize, ttl=ttl, timer=clock)
        self._lock = threading.Lock()
        self._generation = 0
        self._sweeper: Optional[asyncio.Task] = None
        self.hits = 0
        self.misses = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._sweeper is not None and not self._sweeper.done()

    async def start(self) -> None:
        if self.running:
            return
        self._sweeper = asyncio.create_task(self._sweep_forever(), name="permission-cache-sweeper")
        log.info("Permission cache started (ttl=%ss)", self.ttl)

    async def stop(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None
        self.invalidate_all()
        log.info("Permission cache stopped")

    async def _sweep_forever(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            removed = self.sweep()
            if removed:
                log.debug("Swept %d expired permission entries", removed)

    def sweep(self) -> int:
        with self._lock:
            expired = self._entries.expire()
        return len(expired)

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def peek(self, principal_id: str) -> Optional[ResolvedPermissions]:
        """Fresh cached value or None; never recomputes."""
        with self._lock:
            return self._entries.get(principal_id)

    async def get(self, principal_id: str) -> Optional[ResolvedPermissions]:
        """
        Resolved permissions for ``principal_id``.

        Returns None if the principal does not exist.
        """
        cached = self.peek(principal_id)
        if cached is not None:
            self.hits += 1
            return cached

        self.misses += 1
        with self._lock:
            generation = self._generation

        principal = await self.role_store.load_principal(principal_id)
        if principal is None:
            return None

        value = self.resolver.resolve_all(principal)
        with self._lock:
            if generation == self._generation:
                self._entries[principal_id] = value
        return value

    # ------------------------------------------------------------------
    # Invalidation
    # ------------------------------------------------------------------

    def invalidate(self, principal_id: str) -> None:
        with self._lock:
            self._generation += 1
            self._entries.pop(principal_id, None)

    def invalidate_many(self, principal_ids: Iterable[str]) -> int:
        count = 0
        with self._lock:
            self._generation += 1
            for principal_id in principal_ids:
                if self._entries.pop(principal_id, None) is not None:
                    count += 1
        return count

    def invalidate_all(self) -> None:
        with self._lock:
            self._generation += 1
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
