from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import ClassVar, Optional

from pydantic import Field

from .base import DBSerializableModel
from .credits import utcnow


class AssetType(str, Enum):
    IMAGE = "img"
    VIDEO = "vid"
    EDIT = "edt"
    UPLOAD = "upl"
    QUEUED = "que"
    ERROR = "err"


# Asset types that consumed credits and count against a monthly quota.
# Failed requests are refunded and therefore excluded.
CHARGEABLE_ASSET_TYPES = (AssetType.IMAGE, AssetType.VIDEO, AssetType.EDIT, AssetType.QUEUED)

ERROR_MARKER_PREFIX = "error: "


def error_marker(reason: str) -> str:
    """Placeholder stored in CreatedAssetUrl when no asset was produced."""
    return f"{ERROR_MARKER_PREFIX}{reason}"


class ActivityRecord(DBSerializableModel):
    """
    Append-only audit entry for one request outcome.

    CountedAssetPreviousState / CountedAssetState carry the credit balance
    before and after the action. For queued generations CreatedAssetUrl holds
    the external request id until the completion webhook corrects it.
    """

    collection_name: ClassVar[str] = "UserActivity"
    indexes: ClassVar[tuple] = (
        (("UserId", 1), ("DateTime", -1)),
        (("UserIp", 1), ("DateTime", -1)),
        (("CreatedAssetUrl", 1), ("AssetType", 1)),
    )

    id: Optional[str] = Field(default=None)
    asset_source: str = Field(default="", alias="AssetSource")
    asset_type: AssetType = Field(alias="AssetType")
    counted_asset_previous_state: int = Field(alias="CountedAssetPreviousState")
    counted_asset_state: int = Field(alias="CountedAssetState")
    created_asset_url: str = Field(default="", alias="CreatedAssetUrl")
    date_time: datetime = Field(default_factory=utcnow, alias="DateTime")
    prompt: str = Field(default="", alias="Prompt")
    subscription_tier: int = Field(default=0, ge=0, le=3, alias="SubscriptionTier")
    user_id: Optional[str] = Field(default=None, alias="UserId")
    user_ip: Optional[str] = Field(default=None, alias="UserIp")

    @property
    def failed(self) -> bool:
        return self.asset_type == AssetType.ERROR or self.created_asset_url.startswith(
            ERROR_MARKER_PREFIX
        )
