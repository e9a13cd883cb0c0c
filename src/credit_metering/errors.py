"""
Error taxonomy for admission and metering.

Business-rule rejections carry precise, user-facing messages; infrastructure
failures carry opaque ones. Every error knows the HTTP status it maps to.
"""
from __future__ import annotations

from typing import Any, Dict, Optional

CREDIT_LIMIT_EXCEEDED_MESSAGE = "Credit limit exceeded. Purchase credits on the PRICING page."
SIGN_IN_REQUIRED_MESSAGE = "User ID is required. Please sign in for free credits."
GENERATION_FAILED_MESSAGE = "Generation failed. Please try again."
PERSISTENCE_UNAVAILABLE_MESSAGE = "Service temporarily unavailable."


class CreditMeteringError(Exception):
    status_code: int = 500
    code: str = "INTERNAL_ERROR"
    default_message: str = "An unknown error occurred"

    def __init__(self, message: Optional[str] = None, **details: Any) -> None:
        self.message = message or self.default_message
        self.details: Dict[str, Any] = details
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.message, "code": self.code}


class IdentityError(CreditMeteringError):
    status_code = 401
    code = "SIGN_IN_REQUIRED"
    default_message = SIGN_IN_REQUIRED_MESSAGE


class MalformedRequestError(CreditMeteringError):
    status_code = 400
    code = "MALFORMED_REQUEST"
    default_message = "User IP is required"


class InsufficientCreditsError(CreditMeteringError):
    """Raised with a fixed message that clients match to show the upsell UI."""

    status_code = 402
    code = "INSUFFICIENT_CREDITS"
    default_message = CREDIT_LIMIT_EXCEEDED_MESSAGE

    def __init__(self, **details: Any) -> None:
        super().__init__(CREDIT_LIMIT_EXCEEDED_MESSAGE, **details)


class QuotaExceededError(CreditMeteringError):
    status_code = 429
    code = "MONTHLY_QUOTA_EXCEEDED"
    default_message = "Monthly request limit for your subscription has been reached."


class RateLimitedError(CreditMeteringError):
    status_code = 429
    code = "RATE_LIMITED"
    default_message = "Please wait a moment before submitting another request."


class ExternalServiceError(CreditMeteringError):
    status_code = 502
    code = "GENERATION_FAILED"
    default_message = GENERATION_FAILED_MESSAGE


class PersistenceError(CreditMeteringError):
    status_code = 503
    code = "PERSISTENCE_UNAVAILABLE"
    default_message = PERSISTENCE_UNAVAILABLE_MESSAGE


class ActivityWriteError(PersistenceError):
    code = "ACTIVITY_WRITE_FAILED"


class RecordNotFoundError(CreditMeteringError):
    status_code = 404
    code = "NOT_FOUND"
    default_message = "Record not found"
