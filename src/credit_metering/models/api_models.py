from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class GenerationBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    prompt: str = ""
    image_url: Optional[str] = Field(default=None, alias="imageUrl")
    duration: Optional[str] = None
    aspect_ratio: Optional[str] = Field(default=None, alias="aspectRatio")
    loop: Optional[str] = None
    motion: Optional[str] = None

    def parameters(self) -> Dict[str, Any]:
        return self.model_dump(
            include={"duration", "aspect_ratio", "loop", "motion"}, exclude_none=True
        )


class UploadActivityBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    image_url: Optional[str] = Field(default=None, alias="imageUrl")


class CreditBalanceResponse(BaseModel):
    credits: Optional[int]


class NewUserRecord(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str


class NewUserWebhook(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: Optional[str] = None
    table: Optional[str] = None
    record: Optional[NewUserRecord] = None


class CreditPurchaseRecord(BaseModel):
    model_config = ConfigDict(extra="ignore")

    user_id: str
    credits_purchased: int = Field(gt=0)


class CreditSyncWebhook(BaseModel):
    model_config = ConfigDict(extra="ignore")

    record: Optional[CreditPurchaseRecord] = None


class GenerationWebhook(BaseModel):
    """Completion callback for a queued generation job."""

    model_config = ConfigDict(extra="ignore")

    request_id: str
    status: str
    error: Optional[Any] = None
    payload: Dict[str, Any] = Field(default_factory=dict)

    def asset_url(self) -> Optional[str]:
        images: List[Dict[str, Any]] = self.payload.get("images") or []
        if images and images[0].get("url"):
            return images[0]["url"]
        video = self.payload.get("video") or {}
        return video.get("url")


class ReceivedResponse(BaseModel):
    received: bool
