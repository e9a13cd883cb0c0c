from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, model_validator

from .activity import AssetType


class GenerationKind(str, Enum):
    IMAGE = "image"
    IMAGE_EDIT = "image-edit"
    VIDEO = "video"

    @property
    def asset_type(self) -> AssetType:
        return _ASSET_TYPES[self]


_ASSET_TYPES = {
    GenerationKind.IMAGE: AssetType.IMAGE,
    GenerationKind.IMAGE_EDIT: AssetType.EDIT,
    GenerationKind.VIDEO: AssetType.VIDEO,
}


class GenerationRequest(BaseModel):
    kind: GenerationKind
    prompt: str = ""
    source_url: Optional[str] = Field(
        default=None, description="Input image for edits and image-to-video."
    )
    parameters: Dict[str, Any] = Field(default_factory=dict)


class GenerationHandle(BaseModel):
    """
    What a backend returns from ``invoke``: either the finished asset URL or
    the external request id of an asynchronous job.
    """

    asset_url: Optional[str] = None
    request_id: Optional[str] = None

    @model_validator(mode="after")
    def _one_of(self) -> "GenerationHandle":
        if not self.asset_url and not self.request_id:
            raise ValueError("handle needs an asset_url or a request_id")
        return self


class PollState(str, Enum):
    COMPLETED = "completed"
    PENDING = "pending"
    FAILED = "failed"


class PollResult(BaseModel):
    state: PollState
    asset_url: Optional[str] = None
    error: Optional[str] = None


IN_QUEUE = "InQueue"


class AdmissionResult(BaseModel):
    """Outcome returned to the caller of a chargeable request."""

    result: str = Field(description="Asset URL, or 'InQueue' for webhook-delivered jobs.")
    credits: int
    activity_id: Optional[str] = None
    request_id: Optional[str] = None
