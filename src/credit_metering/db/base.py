from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Iterable, List, Mapping, Optional

from ..models.activity import ActivityRecord
from ..models.credits import CreditBalance
from ..models.ledger import LedgerEntry

# Filters are mappings of stored field name -> value, where a value may also be
# {"$in": [...]} or {"$gte": value}. This is the subset of the MongoDB query
# language that the services use, so filters pass through to motor unchanged.
Filter = Mapping[str, Any]


class BaseDBManager(ABC):
    """
    Store-agnostic async manager interface.

    Balance mutations must be atomic per identity: ``decrement_credits`` may
    only succeed when the balance covers the amount, even when two requests
    for the same identity race.
    """

    async def close(self) -> None:
        """Release connections; called on application shutdown."""
        return None

    # Balances
    @abstractmethod
    async def get_balance(self, identity_key: str) -> Optional[CreditBalance]: ...

    @abstractmethod
    async def find_balance(self, filters: Filter) -> Optional[CreditBalance]:
        """First balance matching all filters, or None."""
        ...

    @abstractmethod
    async def insert_balance_if_absent(self, balance: CreditBalance) -> bool:
        """Insert a balance row; return False (and change nothing) if one exists."""
        ...

    @abstractmethod
    async def decrement_credits(self, identity_key: str, amount: int) -> Optional[int]:
        """
        Atomically subtract ``amount`` if the balance covers it.

        Returns the new balance, or None when the balance is insufficient.
        Raises RecordNotFoundError when the identity has no balance row.
        """
        ...

    @abstractmethod
    async def increment_credits(
        self,
        identity_key: str,
        amount: int,
        user_id: Optional[str] = None,
        user_ip: Optional[str] = None,
    ) -> int:
        """Atomically add ``amount``, creating the row if needed; return the new balance."""
        ...

    # Activity
    @abstractmethod
    async def add_activity(self, record: ActivityRecord) -> ActivityRecord: ...

    @abstractmethod
    async def get_activity(self, record_id: str) -> Optional[ActivityRecord]: ...

    @abstractmethod
    async def update_activity(
        self,
        record_id: str,
        changes: Mapping[str, Any],
        expected: Optional[Filter] = None,
    ) -> Optional[ActivityRecord]:
        """
        Set stored fields on an existing record and return it.

        With ``expected``, the update only applies while the record still
        matches that filter; the check and the write are one atomic step, so
        of two callers racing for the same record exactly one wins. Returns
        None when the record is missing or no longer matches.
        """
        ...

    @abstractmethod
    async def find_activities(
        self, filters: Filter, limit: Optional[int] = None
    ) -> List[ActivityRecord]:
        """Matching records ordered by DateTime, newest first."""
        ...

    @abstractmethod
    async def count_activities(self, filters: Filter) -> int: ...

    # Ledger
    @abstractmethod
    async def add_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry: ...

    @abstractmethod
    async def get_ledger_entries(self, identity_key: str) -> Iterable[LedgerEntry]: ...


def matches(document: Mapping[str, Any], filters: Filter) -> bool:
    """Evaluate a filter against a stored document (in-memory backends)."""
    for field, expected in filters.items():
        actual = document.get(field)
        if isinstance(expected, Mapping):
            for op, operand in expected.items():
                if op == "$in":
                    if actual not in operand:
                        return False
                elif op == "$gte":
                    if actual is None or actual < operand:
                        return False
                else:
                    raise ValueError(f"unsupported filter operator {op!r}")
        elif actual != expected:
            return False
    return True


def date_sort_key(document: Mapping[str, Any]) -> datetime:
    return document["DateTime"]
