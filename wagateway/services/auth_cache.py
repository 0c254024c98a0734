"""
Auth token cache.

Maps tenant auth tokens to tenant ids so authenticated requests can skip a
store lookup. The cache is advisory: a miss means "ask the store", never
"token invalid". Entries expire after an idle window or an absolute age,
whichever comes first. Expiry is checked on access; a background sweep
evicts tokens that are written once and never read again.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from ..config import (
    AUTH_CACHE_IDLE_SECONDS, AUTH_CACHE_MAX_AGE_SECONDS, AUTH_CACHE_SWEEP_SECONDS
)
from ..logger import log_debug, log_error, log_info


@dataclass
class CacheEntry:
    tenant_id: int
    inserted_at: float
    last_access: float


class AuthCache:
    """Token -> tenant id with idle and absolute expiry."""

    def __init__(
        self,
        idle_ttl: float = AUTH_CACHE_IDLE_SECONDS,
        max_age: float = AUTH_CACHE_MAX_AGE_SECONDS,
        sweep_interval: float = AUTH_CACHE_SWEEP_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.idle_ttl = idle_ttl
        self.max_age = max_age
        self.sweep_interval = sweep_interval
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._sweep_task: Optional[asyncio.Task] = None

    def _expired(self, entry: CacheEntry, now: float) -> bool:
        return (
            now - entry.last_access >= self.idle_ttl
            or now - entry.inserted_at >= self.max_age
        )

    def resolve(self, token: Optional[str]) -> Optional[int]:
        """Return the cached tenant id for token, or None on miss or expiry."""
        if not token:
            return None
        entry = self._entries.get(token)
        if entry is None:
            return None

        now = self._clock()
        if self._expired(entry, now):
            del self._entries[token]
            return None

        entry.last_access = now
        return entry.tenant_id

    def put(self, token: str, tenant_id: int) -> None:
        """Insert or overwrite an entry; both expiry windows restart."""
        now = self._clock()
        self._entries[token] = CacheEntry(tenant_id=tenant_id, inserted_at=now, last_access=now)

    def invalidate(self, token: str) -> None:
        self._entries.pop(token, None)

    def invalidate_tenant(self, tenant_id: int) -> int:
        """Drop every token cached for a tenant. Returns the number removed."""
        stale = [token for token, entry in self._entries.items() if entry.tenant_id == tenant_id]
        for token in stale:
            del self._entries[token]
        return len(stale)

    def sweep(self) -> int:
        """Remove every expired entry. Returns the number removed."""
        now = self._clock()
        stale = [token for token, entry in self._entries.items() if self._expired(entry, now)]
        for token in stale:
            del self._entries[token]
        return len(stale)

    def __len__(self) -> int:
        return len(self._entries)

    async def start(self) -> None:
        """Start the background sweep task."""
        if self._sweep_task is None and self.sweep_interval > 0:
            self._sweep_task = asyncio.create_task(self._sweep_loop())
            log_info("Auth cache sweep started", action="auth_cache_sweep_started")

    async def stop(self) -> None:
        if self._sweep_task:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None

    async def _sweep_loop(self) -> None:
        while True:
            try:
                await asyncio.sleep(self.sweep_interval)
                removed = self.sweep()
                if removed:
                    log_debug("Auth cache swept", action="auth_cache_swept", removed=removed)
            except asyncio.CancelledError:
                break
            except Exception as e:
                log_error(f"Error in auth cache sweep: {e}", action="auth_cache_sweep_error")
