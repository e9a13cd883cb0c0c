"""
Subscription tier resolution.

Billing data arrives from upstream as JSON-encoded string tokens, e.g. the
product name ``"Image Creator"`` including its surrounding double quotes.
``clean_billing_token`` strips that encoding at the ingestion boundary, and
``resolve_subscription_tier`` then compares plain tokens by exact equality.
"""
from __future__ import annotations

from typing import Dict, Optional

from ..models.subscription import FREE_TIER, SubscriptionTier

ACTIVE_STATUS = "active"

TIERS: Dict[str, SubscriptionTier] = {
    "Image Creator": SubscriptionTier(
        monthly_subscriber=True, subscription_tier=1, max_requests_per_month=200
    ),
    "Video Creator": SubscriptionTier(
        monthly_subscriber=True, subscription_tier=2, max_requests_per_month=200
    ),
    "HQ Video Creator": SubscriptionTier(
        monthly_subscriber=True, subscription_tier=3, max_requests_per_month=220
    ),
}


def clean_billing_token(value: Optional[str]) -> Optional[str]:
    """Strip whitespace and one layer of JSON string quoting from a billing token."""
    if value is None:
        return None
    value = value.strip()
    if len(value) >= 2 and value[0] == value[-1] == '"':
        value = value[1:-1]
    return value


def resolve_subscription_tier(
    product_name: Optional[str], subscription_status: Optional[str]
) -> SubscriptionTier:
    """
    Map a (product, status) pair to its tier. Unknown pairs fall back to the
    free tier with no monthly cap; this never raises.
    """
    if subscription_status != ACTIVE_STATUS or product_name is None:
        return FREE_TIER
    return TIERS.get(product_name, FREE_TIER)


def resolve_raw_subscription_tier(
    product_name: Optional[str], subscription_status: Optional[str]
) -> SubscriptionTier:
    """Resolve tokens exactly as they arrive from the billing provider."""
    return resolve_subscription_tier(
        clean_billing_token(product_name), clean_billing_token(subscription_status)
    )
