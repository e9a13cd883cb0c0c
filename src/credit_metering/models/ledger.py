from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Optional

from pydantic import Field

from .base import DBSerializableModel
from .credits import utcnow


class LedgerEventType(str, Enum):
    PROVISION = "provision"
    INCREMENT = "increment"
    DECREMENT = "decrement"
    REFUND = "refund"
    REJECTION = "rejection"


class LedgerEntry(DBSerializableModel):
    """
    Structured record of one balance mutation (or refused mutation), persisted
    to the store and mirrored to the JSONL ledger file.
    """

    collection_name: ClassVar[str] = "CreditLedger"
    indexes: ClassVar[tuple] = ((("identity_key", 1), ("created_at", -1)),)

    id: Optional[str] = Field(default=None)
    event_type: LedgerEventType
    identity_key: Optional[str] = None
    correlation_id: Optional[str] = Field(
        default=None,
        description="Correlation id for tracing a logical operation across components.",
    )
    message: str
    details: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
