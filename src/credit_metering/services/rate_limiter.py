from __future__ import annotations

import asyncio
import logging
import secrets
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from ..models.identity import clean_user_id

logger = logging.getLogger(__name__)

STALE_ENTRY_SECONDS = 10 * 60


@dataclass
class _Window:
    started_at: float
    count: int = 0
    last_request_at: Optional[float] = None


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    reason: Optional[str] = None
    request_id: Optional[str] = None


class RateLimiter:
    """
    Per (user id, request type) throttle: a fixed window cap plus a minimum
    gap between consecutive requests.

    State is process-local; multi-instance deployments get one throttle per
    instance.
    """

    def __init__(
        self,
        max_requests: int = 10,
        window_seconds: float = 60.0,
        cooldown_seconds: float = 2.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._max_requests = max_requests
        self._window = window_seconds
        self._cooldown = cooldown_seconds
        self._clock = clock
        self._entries: Dict[str, _Window] = {}
        self._cleanup_task: Optional[asyncio.Task] = None

    def check(self, user_id: Optional[str], request_type: str) -> RateLimitDecision:
        uid = clean_user_id(user_id)
        if uid is None:
            # Anonymous requests are rejected by identity resolution instead
            return RateLimitDecision(allowed=True)

        now = self._clock()
        key = f"{uid}:{request_type}"
        entry = self._entries.get(key)
        if entry is None:
            entry = self._entries[key] = _Window(started_at=now)

        if now - entry.started_at > self._window:
            entry.started_at = now
            entry.count = 0

        if entry.count >= self._max_requests:
            logger.info("Rate limit reached for %s", key)
            return RateLimitDecision(
                allowed=False,
                reason=f"Too many requests. Maximum {self._max_requests} requests per minute allowed.",
            )

        if entry.last_request_at is not None and now - entry.last_request_at < self._cooldown:
            return RateLimitDecision(
                allowed=False,
                reason="Please wait a moment before submitting another request.",
            )

        entry.count += 1
        entry.last_request_at = now
        return RateLimitDecision(allowed=True, request_id=self.generate_request_id(uid, now))

    def cleanup(self) -> int:
        """Drop entries whose window started more than ten minutes ago."""
        now = self._clock()
        stale = [k for k, e in self._entries.items() if now - e.started_at > STALE_ENTRY_SECONDS]
        for key in stale:
            del self._entries[key]
        return len(stale)

    def start_cleanup(self, interval_seconds: float = 300.0) -> None:
        """Purge stale entries every ``interval_seconds`` in the background."""
        if self._cleanup_task is None:
            self._cleanup_task = asyncio.create_task(self._cleanup_loop(interval_seconds))

    async def stop_cleanup(self) -> None:
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None

    async def _cleanup_loop(self, interval_seconds: float) -> None:
        while True:
            await asyncio.sleep(interval_seconds)
            purged = self.cleanup()
            if purged:
                logger.info("Purged %s stale rate limit entries", purged)

    @staticmethod
    def generate_request_id(user_id: str, now: float) -> str:
        return f"{user_id}-{int(now * 1000)}-{secrets.token_hex(4)}"
