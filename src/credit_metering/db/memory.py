from __future__ import annotations

import asyncio
from collections import defaultdict
from typing import Any, Dict, Iterable, List, Mapping, Optional

from .base import BaseDBManager, Filter, date_sort_key, matches
from ..errors import RecordNotFoundError
from ..models.activity import ActivityRecord
from ..models.credits import CreditBalance, utcnow
from ..models.ledger import LedgerEntry


class InMemoryDBManager(BaseDBManager):
    """
    In-memory implementation used for tests and local development.

    Documents are kept in their serialized (stored) form so filters use the
    same field names as the document store. A per-identity lock makes each
    balance read-modify-write atomic within the process.
    """

    def __init__(self) -> None:
        self._balances: Dict[str, Dict[str, Any]] = {}
        self._activities: Dict[str, Dict[str, Any]] = {}
        self._ledger: List[LedgerEntry] = []
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._id_counter: int = 0

    def _next_id(self) -> str:
        self._id_counter += 1
        return str(self._id_counter)

    # Balances
    async def get_balance(self, identity_key: str) -> Optional[CreditBalance]:
        doc = self._balances.get(identity_key)
        return CreditBalance.model_validate(doc) if doc is not None else None

    async def find_balance(self, filters: Filter) -> Optional[CreditBalance]:
        for doc in self._balances.values():
            if matches(doc, filters):
                return CreditBalance.model_validate(doc)
        return None

    async def insert_balance_if_absent(self, balance: CreditBalance) -> bool:
        async with self._locks[balance.id]:
            if balance.id in self._balances:
                return False
            self._balances[balance.id] = balance.serialize_for_db()
            return True

    async def decrement_credits(self, identity_key: str, amount: int) -> Optional[int]:
        async with self._locks[identity_key]:
            doc = self._balances.get(identity_key)
            if doc is None:
                raise RecordNotFoundError(f"no balance for {identity_key}")
            if doc["Credits"] < amount:
                return None
            doc["Credits"] -= amount
            doc["updated_at"] = utcnow()
            return doc["Credits"]

    async def increment_credits(
        self,
        identity_key: str,
        amount: int,
        user_id: Optional[str] = None,
        user_ip: Optional[str] = None,
    ) -> int:
        async with self._locks[identity_key]:
            doc = self._balances.get(identity_key)
            if doc is None:
                doc = CreditBalance(
                    id=identity_key, user_id=user_id, user_ip=user_ip, credits=0
                ).serialize_for_db()
                self._balances[identity_key] = doc
            doc["Credits"] += amount
            doc["updated_at"] = utcnow()
            return doc["Credits"]

    # Activity
    async def add_activity(self, record: ActivityRecord) -> ActivityRecord:
        if record.id is None:
            record.id = self._next_id()
        self._activities[record.id] = record.serialize_for_db()
        return record

    async def get_activity(self, record_id: str) -> Optional[ActivityRecord]:
        doc = self._activities.get(record_id)
        return ActivityRecord.model_validate(doc) if doc is not None else None

    async def update_activity(
        self,
        record_id: str,
        changes: Mapping[str, Any],
        expected: Optional[Filter] = None,
    ) -> Optional[ActivityRecord]:
        # No await between the check and the write
        doc = self._activities.get(record_id)
        if doc is None or (expected is not None and not matches(doc, expected)):
            return None
        doc.update(changes)
        return ActivityRecord.model_validate(doc)

    async def find_activities(
        self, filters: Filter, limit: Optional[int] = None
    ) -> List[ActivityRecord]:
        docs = [d for d in self._activities.values() if matches(d, filters)]
        docs.sort(key=date_sort_key, reverse=True)
        if limit is not None:
            docs = docs[:limit]
        return [ActivityRecord.model_validate(d) for d in docs]

    async def count_activities(self, filters: Filter) -> int:
        return sum(1 for d in self._activities.values() if matches(d, filters))

    # Ledger
    async def add_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry:
        if entry.id is None:
            entry.id = self._next_id()
        self._ledger.append(entry)
        return entry

    async def get_ledger_entries(self, identity_key: str) -> Iterable[LedgerEntry]:
        return [e for e in self._ledger if e.identity_key == identity_key]
