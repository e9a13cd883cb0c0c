from __future__ import annotations

import logging
from typing import Optional

from ..cache.base import BalanceCache
from ..db.base import BaseDBManager
from ..errors import InsufficientCreditsError, MalformedRequestError
from ..logging.ledger_logger import LedgerLogger
from ..models.credits import CreditBalance
from ..models.identity import (
    ByUser,
    Identity,
    balance_lookup_plan,
    clean_user_id,
    resolve_identity,
)
from ..models.ledger import LedgerEventType
from ..utils.ip import DEFAULT_LOCAL_PLACEHOLDER

logger = logging.getLogger(__name__)


class CreditService:
    """
    Per-identity credit ledger.

    Methods are narrow and focused on correctness: every mutation is a single
    atomic store operation, logged to the ledger and written through to the
    cache.
    """

    def __init__(
        self,
        db: BaseDBManager,
        ledger: LedgerLogger,
        cache: Optional[BalanceCache] = None,
        starting_grant: int = 30,
        local_ip_placeholder: str = DEFAULT_LOCAL_PLACEHOLDER,
    ) -> None:
        self._db = db
        self._ledger = ledger
        self._cache = cache
        self._starting_grant = starting_grant
        self._local_ip_placeholder = local_ip_placeholder

    @property
    def starting_grant(self) -> int:
        return self._starting_grant

    async def get_balance(
        self, user_id: Optional[str], user_ip: Optional[str]
    ) -> Optional[int]:
        """
        Balance for a raw (user id, IP) pair, or None when there is no record
        or neither identity field is usable.
        """
        identity = resolve_identity(user_id, user_ip, self._local_ip_placeholder)
        if identity is None:
            logger.info("Balance lookup without a usable user id or IP")
            return None
        return await self.get_balance_for(identity)

    async def get_balance_for(self, identity: Identity) -> Optional[int]:
        if self._cache is not None:
            cached = await self._cache.get(identity.identity_key)
            if cached is not None:
                return cached

        for filters in balance_lookup_plan(identity):
            balance = await self._db.find_balance(filters)
            if balance is not None:
                if self._cache is not None:
                    await self._cache.set(identity.identity_key, balance.credits)
                return balance.credits
        return None

    async def current_balance(self, identity: Identity) -> Optional[int]:
        """Authoritative read of the identity's own row, bypassing the cache."""
        balance = await self._db.get_balance(identity.identity_key)
        return balance.credits if balance is not None else None

    async def decrement(
        self,
        identity: Identity,
        amount: int,
        description: str | None = None,
        correlation_id: str | None = None,
    ) -> int:
        if amount <= 0:
            raise ValueError("amount must be positive")

        key = identity.identity_key
        new_balance = await self._db.decrement_credits(key, amount)
        if new_balance is None:
            await self._ledger.log_rejection(
                identity_key=key,
                message="Insufficient credits for deduction",
                details={"requested": amount},
                correlation_id=correlation_id,
            )
            raise InsufficientCreditsError(requested=amount)

        await self._ledger.log_mutation(
            LedgerEventType.DECREMENT,
            identity_key=key,
            message="Credits deducted",
            details={
                "amount": amount,
                "new_balance": new_balance,
                "description": description or "",
            },
            correlation_id=correlation_id,
        )
        await self._write_cache(key, new_balance)
        return new_balance

    async def increment(
        self,
        identity: Identity,
        amount: int,
        description: str | None = None,
        correlation_id: str | None = None,
        event_type: LedgerEventType = LedgerEventType.INCREMENT,
    ) -> int:
        if amount <= 0:
            raise ValueError("amount must be positive")

        key = identity.identity_key
        new_balance = await self._db.increment_credits(
            key, amount, user_id=identity.user_id, user_ip=identity.user_ip
        )
        await self._ledger.log_mutation(
            event_type,
            identity_key=key,
            message="Credits refunded" if event_type == LedgerEventType.REFUND else "Credits added",
            details={
                "amount": amount,
                "new_balance": new_balance,
                "description": description or "",
            },
            correlation_id=correlation_id,
        )
        await self._write_cache(key, new_balance)
        return new_balance

    async def refund(
        self,
        identity: Identity,
        amount: int,
        description: str | None = None,
        correlation_id: str | None = None,
    ) -> int:
        """Compensating increment for a charge whose request did not produce an asset."""
        return await self.increment(
            identity,
            amount,
            description=description,
            correlation_id=correlation_id,
            event_type=LedgerEventType.REFUND,
        )

    async def provision_new_user(
        self, user_id: Optional[str], correlation_id: str | None = None
    ) -> bool:
        """
        Create the starting balance for a newly registered user.

        Idempotent: returns False and grants nothing when the user already has
        a balance row, so a replayed signup never double-credits.
        """
        uid = clean_user_id(user_id)
        if uid is None:
            raise MalformedRequestError("user id is required")

        created = await self._db.insert_balance_if_absent(
            CreditBalance(id=uid, user_id=uid, credits=self._starting_grant)
        )
        if not created:
            logger.info("User %s already provisioned", uid, extra={"correlation_id": correlation_id})
            return False

        await self._ledger.log_mutation(
            LedgerEventType.PROVISION,
            identity_key=uid,
            message="New user provisioned",
            details={"amount": self._starting_grant, "new_balance": self._starting_grant},
            correlation_id=correlation_id,
        )
        await self._write_cache(uid, self._starting_grant)
        return True

    async def ensure_balance(self, identity: Identity, correlation_id: str | None = None) -> int:
        """
        Current balance of a signed-in identity, provisioning the starting
        grant first when the user has no row yet.
        """
        balance = await self.current_balance(identity)
        if balance is not None:
            return balance
        if identity.user_id is None:
            return 0
        await self.provision_new_user(identity.user_id, correlation_id=correlation_id)
        balance = await self.current_balance(identity)
        return balance if balance is not None else 0

    async def add_purchased_credits(
        self, user_id: str, amount: int, correlation_id: str | None = None
    ) -> int:
        """Credit a completed purchase to a user's balance."""
        uid = clean_user_id(user_id)
        if uid is None:
            raise MalformedRequestError("user id is required")
        return await self.increment(
            ByUser(id=uid),
            amount,
            description="Credit purchase",
            correlation_id=correlation_id,
        )

    async def _write_cache(self, identity_key: str, balance: int) -> None:
        if self._cache is not None:
            await self._cache.set(identity_key, balance)
