from __future__ import annotations

import time
from typing import Callable, Dict, Optional, Tuple

from .base import BalanceCache


class InMemoryBalanceCache(BalanceCache):
    """
    Process-local balance cache with optional TTL, for tests and
    single-instance deployments. Entries are evicted lazily on read.
    """

    def __init__(
        self,
        default_ttl_seconds: int | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store: Dict[str, Tuple[int, Optional[float]]] = {}
        self._default_ttl = default_ttl_seconds
        self._clock = clock

    async def get(self, identity_key: str) -> Optional[int]:
        entry = self._store.get(identity_key)
        if entry is None:
            return None
        credits, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            del self._store[identity_key]
            return None
        return credits

    async def set(self, identity_key: str, credits: int, ttl_seconds: int | None = None) -> None:
        ttl = ttl_seconds if ttl_seconds is not None else self._default_ttl
        expires_at = self._clock() + ttl if ttl is not None else None
        self._store[identity_key] = (credits, expires_at)
