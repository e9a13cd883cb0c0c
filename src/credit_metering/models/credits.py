from __future__ import annotations

from datetime import datetime, timezone
from typing import ClassVar, Optional

from pydantic import Field

from .base import DBSerializableModel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CreditBalance(DBSerializableModel):
    """
    Current credit balance of one identity (a user id, or a normalized IP for
    anonymous visitors). One document per identity, keyed by the identity key.
    """

    collection_name: ClassVar[str] = "UserCredits"
    indexes: ClassVar[tuple] = ((("UserId", 1),), (("UserIp", 1),), (("UserId", 1), ("UserIp", 1)))

    id: str = Field(description="Identity key: user id when known, else normalized IP.")
    user_id: Optional[str] = Field(default=None, alias="UserId")
    user_ip: Optional[str] = Field(default=None, alias="UserIp")
    credits: int = Field(default=0, ge=0, alias="Credits")
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
