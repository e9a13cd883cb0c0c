from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class SubscriptionTier(BaseModel):
    """
    Derived subscription level; never stored.
    """

    model_config = ConfigDict(frozen=True)

    monthly_subscriber: bool = False
    subscription_tier: int = Field(default=0, ge=0, le=3)
    max_requests_per_month: int = Field(
        default=0,
        ge=0,
        description="Monthly cap on chargeable requests; 0 means no cap is enforced.",
    )


FREE_TIER = SubscriptionTier()
