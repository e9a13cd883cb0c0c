from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from ..cache.base import BalanceCache
from ..cache.memory import InMemoryBalanceCache
from ..config import Settings
from ..db.base import BaseDBManager
from ..db.memory import InMemoryDBManager
from ..generation.base import GenerationBackend
from ..generation.static import StaticGenerationBackend
from ..logging.ledger_logger import LedgerLogger
from ..models.generation import GenerationKind
from .activity_service import ActivityService
from .admission_service import AdmissionService, PollPolicy
from .credit_service import CreditService
from .rate_limiter import RateLimiter

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    """The service graph of one process, built at start-up and reused per request."""

    settings: Settings
    db: BaseDBManager
    backend: GenerationBackend
    ledger: LedgerLogger
    credits: CreditService
    activity: ActivityService
    rate_limiter: RateLimiter
    admission: AdmissionService

    async def aclose(self) -> None:
        await self.backend.aclose()
        await self.db.close()


def create_db_manager(settings: Settings) -> BaseDBManager:
    if settings.MONGO_URI:
        from ..db.mongo import MongoDBManager

        logger.info("Using MongoDB store %s", settings.MONGO_DB)
        return MongoDBManager.from_client_uri(settings.MONGO_URI, settings.MONGO_DB)
    logger.warning("CREDIT_MONGO_URI not set; using the in-memory store")
    return InMemoryDBManager()


def build_container(
    settings: Settings,
    db: Optional[BaseDBManager] = None,
    backend: Optional[GenerationBackend] = None,
    cache: Optional[BalanceCache] = None,
) -> ServiceContainer:
    if db is None:
        db = create_db_manager(settings)
    if backend is None:
        if not settings.TEST_MODE:
            raise ValueError("a generation backend is required outside test mode")
        backend = StaticGenerationBackend(settings.TEST_MODE_ASSET_URL)

    ledger = LedgerLogger(db=db, file_path=settings.LEDGER_LOG_PATH)
    credits = CreditService(
        db=db,
        ledger=ledger,
        cache=cache if cache is not None else InMemoryBalanceCache(default_ttl_seconds=60),
        starting_grant=settings.FREE_CREDITS_VALUE,
        local_ip_placeholder=settings.LOCAL_IP_PLACEHOLDER,
    )
    activity = ActivityService(db=db, local_ip_placeholder=settings.LOCAL_IP_PLACEHOLDER)
    rate_limiter = RateLimiter(
        max_requests=settings.RATE_LIMIT_MAX_REQUESTS,
        window_seconds=settings.RATE_LIMIT_WINDOW_SECONDS,
        cooldown_seconds=settings.RATE_LIMIT_COOLDOWN_SECONDS,
    )
    admission = AdmissionService(
        credit_service=credits,
        activity_service=activity,
        backend=backend,
        costs={kind: settings.credit_cost(kind) for kind in GenerationKind},
        timeout_seconds=settings.GENERATION_TIMEOUT_SECONDS,
        poll_policy=PollPolicy(
            initial_delay=settings.POLL_INITIAL_DELAY_SECONDS,
            max_delay=settings.POLL_MAX_DELAY_SECONDS,
            backoff_factor=settings.POLL_BACKOFF_FACTOR,
        ),
        max_prompt_length=settings.MAX_PROMPT_LENGTH,
        rate_limiter=rate_limiter,
        local_ip_placeholder=settings.LOCAL_IP_PLACEHOLDER,
    )
    return ServiceContainer(
        settings=settings,
        db=db,
        backend=backend,
        ledger=ledger,
        credits=credits,
        activity=activity,
        rate_limiter=rate_limiter,
        admission=admission,
    )
