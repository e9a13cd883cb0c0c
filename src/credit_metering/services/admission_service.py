"""
Admission control for chargeable generation requests.

Per request: resolve the identity, apply throttle and monthly quota, check
and provisionally charge the balance, invoke the generation backend under a
time bound, then either keep the charge and record the asset, or refund it
and record the failure.

Once the charge has committed, every exit path (success, backend failure,
timeout, caller cancellation) either records the asset or refunds.

Identical requests are not deduplicated: every admitted call is charged,
including client retries.
"""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import AsyncIterator, Callable, Dict, Mapping, Optional

from ..errors import (
    ActivityWriteError,
    CreditMeteringError,
    ExternalServiceError,
    IdentityError,
    InsufficientCreditsError,
    MalformedRequestError,
    PersistenceError,
    QuotaExceededError,
    RateLimitedError,
    RecordNotFoundError,
)
from ..generation.base import GenerationBackend
from ..models.activity import ActivityRecord, AssetType, error_marker
from ..models.credits import utcnow
from ..models.generation import (
    IN_QUEUE,
    AdmissionResult,
    GenerationKind,
    GenerationRequest,
    PollState,
)
from ..models.identity import Both, ByIp, ByUser, Identity, clean_user_id, clean_user_ip
from ..models.subscription import SubscriptionTier
from ..utils.ip import DEFAULT_LOCAL_PLACEHOLDER
from .activity_service import ActivityService
from .credit_service import CreditService
from .rate_limiter import RateLimiter
from .tier_service import resolve_raw_subscription_tier

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PollPolicy:
    initial_delay: float = 1.0
    max_delay: float = 15.0
    backoff_factor: float = 2.0


@dataclass(frozen=True)
class _Generated:
    asset_url: Optional[str] = None
    request_id: Optional[str] = None


def month_start(now: datetime) -> datetime:
    return now.astimezone(timezone.utc).replace(day=1, hour=0, minute=0, second=0, microsecond=0)


class AdmissionService:
    def __init__(
        self,
        credit_service: CreditService,
        activity_service: ActivityService,
        backend: GenerationBackend,
        costs: Mapping[GenerationKind, int],
        timeout_seconds: float = 300.0,
        poll_policy: PollPolicy = PollPolicy(),
        max_prompt_length: int = 1500,
        rate_limiter: Optional[RateLimiter] = None,
        local_ip_placeholder: str = DEFAULT_LOCAL_PLACEHOLDER,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._credits = credit_service
        self._activity = activity_service
        self._backend = backend
        self._costs = dict(costs)
        self._timeout = timeout_seconds
        self._poll = poll_policy
        self._max_prompt_length = max_prompt_length
        self._rate_limiter = rate_limiter
        self._local_ip_placeholder = local_ip_placeholder
        self._clock = clock
        # Subscriber requests admitted under the monthly cap but not yet recorded
        self._quota_lock = asyncio.Lock()
        self._quota_in_flight: Dict[str, int] = {}

    def cost_of(self, kind: GenerationKind) -> int:
        return self._costs[kind]

    def resolve_identity(self, user_id: Optional[str], user_ip: Optional[str]) -> Identity:
        """
        A chargeable request needs a genuine user id and a usable client IP.
        The balance is keyed by the user id.
        """
        uid = clean_user_id(user_id)
        if uid is None:
            raise IdentityError()
        ip = clean_user_ip(user_ip, self._local_ip_placeholder)
        if ip is None:
            raise MalformedRequestError("User IP is required")
        return Both(id=uid, normalized_ip=ip)

    async def admit(
        self,
        user_id: Optional[str],
        user_ip: Optional[str],
        request: GenerationRequest,
        product_name: Optional[str] = None,
        subscription_status: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> AdmissionResult:
        identity = self.resolve_identity(user_id, user_ip)
        self._validate(request)

        if self._rate_limiter is not None:
            decision = self._rate_limiter.check(identity.user_id, request.kind.value)
            if not decision.allowed:
                raise RateLimitedError(decision.reason)
            correlation_id = correlation_id or decision.request_id

        tier = resolve_raw_subscription_tier(product_name, subscription_status)
        async with self._quota_slot(identity, tier):
            return await self._charge_and_generate(identity, request, tier, correlation_id)

    async def record_upload(
        self, user_id: Optional[str], user_ip: Optional[str], image_url: Optional[str]
    ) -> str:
        """Record a non-chargeable upload for a signed-in user."""
        identity = self.resolve_identity(user_id, user_ip)
        if not image_url:
            raise MalformedRequestError("Image URL is required")
        balance = await self._credits.current_balance(identity)
        return await self._activity.record_upload(identity, image_url, balance or 0)

    async def complete_queued(
        self,
        request_id: str,
        kind: GenerationKind,
        asset_url: Optional[str],
        error: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> ActivityRecord:
        """
        Reconcile a webhook-delivered completion with its queued record.

        Success corrects the record in place. Failure claims the record as an
        error and refunds the charge. The claim is a conditional update on the
        record still being queued, so of several callbacks for the same job
        (repeated or concurrent) only one is applied and the rest are
        reported as not found.
        """
        record = await self._activity.find_by_external_request_id(request_id)
        if record is None or record.id is None:
            raise RecordNotFoundError(f"No queued request {request_id}")

        if asset_url and not error:
            completed = await self._activity.mark_completed(record.id, kind.asset_type, asset_url)
            if completed is None:
                raise RecordNotFoundError(f"No queued request {request_id}")
            logger.info("Queued request %s completed", request_id)
            return completed

        claimed = await self._activity.mark_failed(record.id, error or "generation failed")
        if claimed is None:
            raise RecordNotFoundError(f"No queued request {request_id}")

        identity = _identity_of(claimed)
        charged = claimed.counted_asset_previous_state - claimed.counted_asset_state
        if identity is None or charged <= 0:
            return claimed
        restored = await self._credits.refund(
            identity, charged, description=f"failed {kind.value}", correlation_id=correlation_id
        )
        logger.info("Queued request %s failed, refunded %s", request_id, charged)
        updated = await self._activity.note_restored_balance(claimed.id, restored)  # type: ignore[arg-type]
        return updated or claimed

    def _validate(self, request: GenerationRequest) -> None:
        if len(request.prompt) > self._max_prompt_length:
            raise MalformedRequestError(
                f"Prompt is too long. Maximum length is {self._max_prompt_length} characters.",
                prompt_length=len(request.prompt),
            )
        if request.kind == GenerationKind.IMAGE_EDIT and not request.source_url:
            raise MalformedRequestError("Image URL is required")

    @asynccontextmanager
    async def _quota_slot(self, identity: Identity, tier: SubscriptionTier) -> AsyncIterator[None]:
        """
        Hold one of the subscriber's monthly slots until the request has been
        recorded. Requests still in flight count against the cap, so
        concurrent requests in this process cannot overrun it.
        """
        if not tier.monthly_subscriber or tier.max_requests_per_month <= 0:
            yield
            return

        key = identity.identity_key
        async with self._quota_lock:
            used = await self._activity.count_chargeable_since(
                identity, month_start(self._clock())
            )
            in_flight = self._quota_in_flight.get(key, 0)
            if used + in_flight >= tier.max_requests_per_month:
                raise QuotaExceededError(
                    used=used, in_flight=in_flight, limit=tier.max_requests_per_month
                )
            self._quota_in_flight[key] = in_flight + 1
        try:
            yield
        finally:
            self._quota_in_flight[key] -= 1
            if not self._quota_in_flight[key]:
                del self._quota_in_flight[key]

    async def _charge_and_generate(
        self,
        identity: Identity,
        request: GenerationRequest,
        tier: SubscriptionTier,
        correlation_id: Optional[str],
    ) -> AdmissionResult:
        cost = self.cost_of(request.kind)
        balance = await self._credits.ensure_balance(identity, correlation_id=correlation_id)
        logger.info(
            "Check credit count: %s (cost %s)",
            balance,
            cost,
            extra={"identity_key": identity.identity_key, "correlation_id": correlation_id},
        )
        if balance < cost:
            logger.info(
                "Credit limit exceeded - user has %s credits but needs %s",
                balance,
                cost,
                extra={"identity_key": identity.identity_key},
            )
            raise InsufficientCreditsError(balance=balance, cost=cost)

        new_balance = await self._charge(identity, request, tier, cost, correlation_id)
        previous_balance = new_balance + cost

        try:
            generated = await asyncio.wait_for(self._generate(request), self._timeout)
        except asyncio.CancelledError:
            await asyncio.shield(
                self._rollback(
                    identity, request, tier, cost, previous_balance, "cancelled", correlation_id
                )
            )
            raise
        except asyncio.TimeoutError as exc:
            logger.warning(
                "Generation timed out after %ss",
                self._timeout,
                extra={"identity_key": identity.identity_key, "correlation_id": correlation_id},
            )
            await self._rollback(
                identity, request, tier, cost, previous_balance, "timeout", correlation_id
            )
            raise ExternalServiceError(kind=request.kind.value, reason="timeout") from exc
        except Exception as exc:
            logger.warning(
                "Generation failed: %s",
                exc,
                exc_info=True,
                extra={"identity_key": identity.identity_key, "correlation_id": correlation_id},
            )
            await self._rollback(
                identity, request, tier, cost, previous_balance, _reason(exc), correlation_id
            )
            raise ExternalServiceError(kind=request.kind.value, reason=_reason(exc)) from exc

        queued = generated.asset_url is None
        activity_id = await self._record_quietly(
            ActivityRecord(
                asset_source=request.source_url or "",
                asset_type=AssetType.QUEUED if queued else request.kind.asset_type,
                counted_asset_previous_state=previous_balance,
                counted_asset_state=new_balance,
                created_asset_url=generated.request_id if queued else generated.asset_url,
                prompt=request.prompt,
                subscription_tier=tier.subscription_tier,
                user_id=identity.user_id,
                user_ip=identity.user_ip,
            ),
            correlation_id,
        )
        return AdmissionResult(
            result=IN_QUEUE if queued else generated.asset_url,  # type: ignore[arg-type]
            credits=new_balance,
            activity_id=activity_id,
            request_id=generated.request_id,
        )

    async def _charge(
        self,
        identity: Identity,
        request: GenerationRequest,
        tier: SubscriptionTier,
        cost: int,
        correlation_id: Optional[str],
    ) -> int:
        # Charge before calling out; a concurrent request that got there first
        # makes this raise InsufficientCreditsError with nothing to undo.
        charge = asyncio.ensure_future(
            self._credits.decrement(
                identity, cost, description=request.kind.value, correlation_id=correlation_id
            )
        )
        try:
            return await asyncio.shield(charge)
        except asyncio.CancelledError:
            # The decrement may still commit after the caller has gone away
            await asyncio.shield(
                self._release_abandoned_charge(charge, identity, request, tier, cost, correlation_id)
            )
            raise

    async def _release_abandoned_charge(
        self,
        charge: "asyncio.Future[int]",
        identity: Identity,
        request: GenerationRequest,
        tier: SubscriptionTier,
        cost: int,
        correlation_id: Optional[str],
    ) -> None:
        try:
            new_balance = await charge
        except CreditMeteringError as exc:
            logger.info(
                "Abandoned request was not charged: %s",
                exc.code,
                extra={"identity_key": identity.identity_key, "correlation_id": correlation_id},
            )
            return
        await self._rollback(
            identity, request, tier, cost, new_balance + cost, "cancelled", correlation_id
        )

    async def _generate(self, request: GenerationRequest) -> _Generated:
        handle = await self._backend.invoke(request)
        if handle.asset_url:
            return _Generated(asset_url=handle.asset_url, request_id=handle.request_id)
        if self._backend.delivers_by_webhook:
            return _Generated(request_id=handle.request_id)
        return _Generated(
            asset_url=await self._poll_until_done(handle.request_id),  # type: ignore[arg-type]
            request_id=handle.request_id,
        )

    async def _poll_until_done(self, request_id: str) -> str:
        delay = self._poll.initial_delay
        while True:
            status = await self._backend.poll_status(request_id)
            if status.state == PollState.COMPLETED:
                if not status.asset_url:
                    raise ExternalServiceError(reason="completed without an asset")
                return status.asset_url
            if status.state == PollState.FAILED:
                raise ExternalServiceError(reason=status.error or "failed")
            await asyncio.sleep(delay)
            delay = min(delay * self._poll.backoff_factor, self._poll.max_delay)

    async def _rollback(
        self,
        identity: Identity,
        request: GenerationRequest,
        tier: SubscriptionTier,
        cost: int,
        previous_balance: int,
        reason: str,
        correlation_id: Optional[str],
    ) -> None:
        try:
            restored = await self._credits.refund(
                identity, cost, description=f"failed {request.kind.value}", correlation_id=correlation_id
            )
        except PersistenceError:
            # The error record keeps the charged balance, which marks the refund as owed
            logger.exception(
                "Refund failed; %s credits still owed",
                cost,
                extra={
                    "identity_key": identity.identity_key,
                    "correlation_id": correlation_id,
                    "reason": reason,
                },
            )
            restored = previous_balance - cost
        await self._record_quietly(
            ActivityRecord(
                asset_source=request.source_url or "",
                asset_type=AssetType.ERROR,
                counted_asset_previous_state=previous_balance,
                counted_asset_state=restored,
                created_asset_url=error_marker(reason),
                prompt=request.prompt,
                subscription_tier=tier.subscription_tier,
                user_id=identity.user_id,
                user_ip=identity.user_ip,
            ),
            correlation_id,
        )

    async def _record_quietly(
        self, activity: ActivityRecord, correlation_id: Optional[str]
    ) -> Optional[str]:
        # The asset (or the refund) already happened; a lost audit entry must
        # not change what the caller gets back.
        try:
            return await self._activity.record(activity)
        except ActivityWriteError:
            logger.exception(
                "Activity record lost",
                extra={
                    "user_id": activity.user_id,
                    "asset_type": activity.asset_type,
                    "correlation_id": correlation_id,
                },
            )
            return None


def _identity_of(record: ActivityRecord) -> Optional[Identity]:
    if record.user_id:
        return ByUser(id=record.user_id)
    if record.user_ip:
        return ByIp(normalized_ip=record.user_ip)
    return None


def _reason(exc: BaseException) -> str:
    if isinstance(exc, ExternalServiceError):
        return str(exc.details.get("reason") or exc.message)
    return str(exc) or type(exc).__name__
