from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional


class BalanceCache(ABC):
    """
    Read-through cache of credit balances keyed by identity key.

    Cached values are hints for balance reads only. Admission always charges
    against the store, so a stale entry can never admit an unpaid request.
    """

    @abstractmethod
    async def get(self, identity_key: str) -> Optional[int]:
        ...

    @abstractmethod
    async def set(self, identity_key: str, credits: int, ttl_seconds: int | None = None) -> None:
        ...
