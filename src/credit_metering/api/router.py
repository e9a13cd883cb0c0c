from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Query, Request

from ..errors import MalformedRequestError, RecordNotFoundError
from ..models.activity import ActivityRecord, AssetType
from ..models.api_models import (
    CreditBalanceResponse,
    CreditSyncWebhook,
    GenerationBody,
    GenerationWebhook,
    NewUserWebhook,
    ReceivedResponse,
    UploadActivityBody,
)
from ..models.generation import AdmissionResult, GenerationKind, GenerationRequest
from ..models.identity import resolve_identity
from ..services.container import ServiceContainer

logger = logging.getLogger(__name__)

router = APIRouter()


def get_services(request: Request) -> ServiceContainer:
    return request.app.state.services


def correlation_id_of(request: Request) -> Optional[str]:
    return getattr(request.state, "correlation_id", None)


async def _admit(
    kind: GenerationKind,
    body: GenerationBody,
    request: Request,
    services: ServiceContainer,
    user_id: Optional[str],
    user_ip: Optional[str],
    product_name: Optional[str],
    subscription_status: Optional[str],
) -> AdmissionResult:
    logger.info("%s request from user %s", kind.value, user_id)
    return await services.admission.admit(
        user_id,
        user_ip,
        GenerationRequest(
            kind=kind,
            prompt=body.prompt,
            source_url=body.image_url,
            parameters=body.parameters(),
        ),
        product_name=product_name,
        subscription_status=subscription_status,
        correlation_id=correlation_id_of(request),
    )


@router.post("/image", response_model=AdmissionResult)
async def generate_image(
    body: GenerationBody,
    request: Request,
    services: ServiceContainer = Depends(get_services),
    x_user_id: Optional[str] = Header(default=None),
    x_forwarded_for: Optional[str] = Header(default=None),
    x_product_name: Optional[str] = Header(default=None),
    x_subscription_status: Optional[str] = Header(default=None),
) -> AdmissionResult:
    return await _admit(
        GenerationKind.IMAGE, body, request, services,
        x_user_id, x_forwarded_for, x_product_name, x_subscription_status,
    )


@router.post("/image-edit", response_model=AdmissionResult)
async def edit_image(
    body: GenerationBody,
    request: Request,
    services: ServiceContainer = Depends(get_services),
    x_user_id: Optional[str] = Header(default=None),
    x_forwarded_for: Optional[str] = Header(default=None),
    x_product_name: Optional[str] = Header(default=None),
    x_subscription_status: Optional[str] = Header(default=None),
) -> AdmissionResult:
    return await _admit(
        GenerationKind.IMAGE_EDIT, body, request, services,
        x_user_id, x_forwarded_for, x_product_name, x_subscription_status,
    )


@router.post("/video", response_model=AdmissionResult)
async def generate_video(
    body: GenerationBody,
    request: Request,
    services: ServiceContainer = Depends(get_services),
    x_user_id: Optional[str] = Header(default=None),
    x_forwarded_for: Optional[str] = Header(default=None),
    x_product_name: Optional[str] = Header(default=None),
    x_subscription_status: Optional[str] = Header(default=None),
) -> AdmissionResult:
    return await _admit(
        GenerationKind.VIDEO, body, request, services,
        x_user_id, x_forwarded_for, x_product_name, x_subscription_status,
    )


@router.post("/upload-activity")
async def save_upload_activity(
    body: UploadActivityBody,
    services: ServiceContainer = Depends(get_services),
    x_user_id: Optional[str] = Header(default=None),
    x_forwarded_for: Optional[str] = Header(default=None),
) -> dict:
    await services.admission.record_upload(x_user_id, x_forwarded_for, body.image_url)
    return {"success": True, "url": body.image_url}


@router.get("/credits", response_model=CreditBalanceResponse)
async def get_user_credits(
    services: ServiceContainer = Depends(get_services),
    user_id: Optional[str] = Query(default=None, alias="userId"),
    user_ip: Optional[str] = Query(default=None, alias="userIp"),
) -> CreditBalanceResponse:
    if not user_id and not user_ip:
        raise MalformedRequestError("Missing required parameters")
    credits = await services.credits.get_balance(user_id, user_ip)
    return CreditBalanceResponse(credits=credits)


@router.get("/activity/latest", response_model=ActivityRecord)
async def get_latest_activity(
    services: ServiceContainer = Depends(get_services),
    user_id: Optional[str] = Query(default=None, alias="userId"),
    user_ip: Optional[str] = Query(default=None, alias="userIp"),
    asset_type: Optional[AssetType] = Query(default=None, alias="assetType"),
) -> ActivityRecord:
    identity = resolve_identity(user_id, user_ip, services.settings.LOCAL_IP_PLACEHOLDER)
    if identity is None:
        raise MalformedRequestError("Missing required parameters")
    record = await services.activity.find_latest_by_identity(identity, asset_type)
    if record is None:
        raise RecordNotFoundError("No activity found")
    return record


@router.get("/activity/request/{request_id}", response_model=ActivityRecord)
async def get_activity_by_request_id(
    request_id: str, services: ServiceContainer = Depends(get_services)
) -> ActivityRecord:
    record = await services.activity.find_by_external_request_id(request_id)
    if record is None:
        raise RecordNotFoundError(f"No queued request {request_id}")
    return record


@router.post("/newuser", response_model=ReceivedResponse)
async def new_user(
    payload: NewUserWebhook,
    request: Request,
    services: ServiceContainer = Depends(get_services),
) -> ReceivedResponse:
    if payload.record is None:
        return ReceivedResponse(received=False)
    logger.info("New user record id: %s", payload.record.id)
    await services.credits.provision_new_user(
        payload.record.id, correlation_id=correlation_id_of(request)
    )
    return ReceivedResponse(received=True)


@router.post("/creditsync", response_model=ReceivedResponse)
async def credit_sync(
    payload: CreditSyncWebhook,
    request: Request,
    services: ServiceContainer = Depends(get_services),
) -> ReceivedResponse:
    if payload.record is None:
        return ReceivedResponse(received=False)
    await services.credits.add_purchased_credits(
        payload.record.user_id,
        payload.record.credits_purchased,
        correlation_id=correlation_id_of(request),
    )
    return ReceivedResponse(received=True)


async def _reconcile(
    kind: GenerationKind, payload: GenerationWebhook, request: Request, services: ServiceContainer
) -> dict:
    if payload.status == "OK" and payload.error is None:
        asset_url = payload.asset_url()
        if not asset_url:
            raise MalformedRequestError("Invalid data received")
        await services.admission.complete_queued(
            payload.request_id, kind, asset_url, correlation_id=correlation_id_of(request)
        )
    elif payload.status == "ERROR":
        await services.admission.complete_queued(
            payload.request_id,
            kind,
            None,
            error=str(payload.error or "generation failed"),
            correlation_id=correlation_id_of(request),
        )
    else:
        raise MalformedRequestError("Invalid data received")
    return {"message": "Data received successfully"}


@router.post("/webhooks/image")
async def image_result(
    payload: GenerationWebhook,
    request: Request,
    services: ServiceContainer = Depends(get_services),
) -> dict:
    return await _reconcile(GenerationKind.IMAGE, payload, request, services)


@router.post("/webhooks/video")
async def video_result(
    payload: GenerationWebhook,
    request: Request,
    services: ServiceContainer = Depends(get_services),
) -> dict:
    return await _reconcile(GenerationKind.VIDEO, payload, request, services)


@router.get("/health")
async def health() -> dict:
    return {"status": "ok"}
