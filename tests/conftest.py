from __future__ import annotations

import asyncio
from typing import Dict, List, Optional

import pytest

from credit_metering.db.memory import InMemoryDBManager
from credit_metering.errors import PersistenceError
from credit_metering.generation.base import GenerationBackend
from credit_metering.logging.ledger_logger import LedgerLogger
from credit_metering.models.activity import ActivityRecord
from credit_metering.models.generation import (
    GenerationHandle,
    GenerationKind,
    GenerationRequest,
    PollResult,
)
from credit_metering.models.ledger import LedgerEntry, LedgerEventType
from credit_metering.services.activity_service import ActivityService
from credit_metering.services.admission_service import AdmissionService, PollPolicy
from credit_metering.services.credit_service import CreditService

ASSET_URL = "https://storage.example.com/assets/cat.png"


class FakeBackend(GenerationBackend):
    """Scriptable generation backend."""

    def __init__(
        self,
        asset_url: Optional[str] = ASSET_URL,
        request_id: Optional[str] = None,
        error: Optional[Exception] = None,
        delay: float = 0.0,
        poll_results: Optional[List[PollResult]] = None,
        delivers_by_webhook: bool = False,
    ) -> None:
        self.asset_url = asset_url
        self.request_id = request_id
        self.error = error
        self.delay = delay
        self.poll_results = list(poll_results or [])
        self.delivers_by_webhook = delivers_by_webhook
        self.invocations: List[GenerationRequest] = []
        self.polls: List[str] = []

    async def invoke(self, request: GenerationRequest) -> GenerationHandle:
        self.invocations.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        if self.request_id is not None:
            return GenerationHandle(request_id=self.request_id)
        return GenerationHandle(asset_url=self.asset_url)

    async def poll_status(self, request_id: str) -> PollResult:
        self.polls.append(request_id)
        return self.poll_results.pop(0)


class FailingActivityDB(InMemoryDBManager):
    """In-memory store whose activity writes fail."""

    async def add_activity(self, record: ActivityRecord) -> ActivityRecord:
        raise PersistenceError(operation="add_activity")


class FailingLedgerDB(InMemoryDBManager):
    """In-memory store whose ledger writes fail."""

    async def add_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry:
        raise PersistenceError(operation="add_ledger_entry")


class FailingRefundDB(InMemoryDBManager):
    """In-memory store that can charge but not credit back."""

    async def increment_credits(self, *args, **kwargs) -> int:
        raise PersistenceError(operation="increment_credits")


class SlowChargeDB(InMemoryDBManager):
    """Stalls on the ledger write that follows a committed decrement."""

    def __init__(self, stall: float = 0.05) -> None:
        super().__init__()
        self.stall = stall
        self.charged = asyncio.Event()

    async def add_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry:
        if entry.event_type == LedgerEventType.DECREMENT:
            self.charged.set()
            await asyncio.sleep(self.stall)
        return await super().add_ledger_entry(entry)


class InterleavingActivityDB(InMemoryDBManager):
    """Yields to other tasks after every activity query."""

    async def find_activities(self, filters, limit=None):
        found = await super().find_activities(filters, limit)
        await asyncio.sleep(0)
        return found


COSTS: Dict[GenerationKind, int] = {
    GenerationKind.IMAGE: 1,
    GenerationKind.IMAGE_EDIT: 2,
    GenerationKind.VIDEO: 10,
}


def make_services(tmp_path, db=None, backend=None, starting_grant=30, **admission_kwargs):
    db = db or InMemoryDBManager()
    ledger = LedgerLogger(db=db, file_path=tmp_path / "ledger.log")
    credits = CreditService(db=db, ledger=ledger, starting_grant=starting_grant)
    activity = ActivityService(db=db)
    admission_kwargs.setdefault(
        "poll_policy", PollPolicy(initial_delay=0.0, max_delay=0.0, backoff_factor=1.0)
    )
    admission = AdmissionService(
        credit_service=credits,
        activity_service=activity,
        backend=backend or FakeBackend(),
        costs=COSTS,
        **admission_kwargs,
    )
    return db, credits, activity, admission


@pytest.fixture
def db() -> InMemoryDBManager:
    return InMemoryDBManager()


@pytest.fixture
def ledger(db, tmp_path) -> LedgerLogger:
    return LedgerLogger(db=db, file_path=tmp_path / "ledger.log")
