from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import pytest

from credit_metering.errors import (
    CREDIT_LIMIT_EXCEEDED_MESSAGE,
    ExternalServiceError,
    IdentityError,
    InsufficientCreditsError,
    MalformedRequestError,
    QuotaExceededError,
    RateLimitedError,
    RecordNotFoundError,
)
from credit_metering.models.activity import ActivityRecord, AssetType
from credit_metering.models.generation import (
    IN_QUEUE,
    AdmissionResult,
    GenerationKind,
    GenerationRequest,
    PollResult,
    PollState,
)
from credit_metering.models.identity import ByUser
from credit_metering.services.admission_service import month_start
from credit_metering.services.rate_limiter import RateLimiter

from conftest import (
    ASSET_URL,
    FailingActivityDB,
    FailingLedgerDB,
    FailingRefundDB,
    FakeBackend,
    InterleavingActivityDB,
    SlowChargeDB,
    make_services,
)

IMAGE = GenerationRequest(kind=GenerationKind.IMAGE, prompt="a cat")
VIDEO = GenerationRequest(kind=GenerationKind.VIDEO, prompt="a cat running")


async def _balance(db, key="user-1"):
    balance = await db.get_balance(key)
    return balance.credits if balance is not None else None


async def _activities(db, **filters):
    return await db.find_activities(filters)


@pytest.mark.asyncio
async def test_admitted_image_request_charges_and_records(tmp_path):
    db, _, _, admission = make_services(tmp_path)

    result = await admission.admit("user-1", "192.168.1.42", IMAGE)

    assert result.result == ASSET_URL
    assert result.credits == 29
    assert set(result.model_dump()) == {"result", "credits", "activity_id", "request_id"}
    assert await _balance(db) == 29

    [record] = await _activities(db)
    assert record.id == result.activity_id
    assert record.asset_type == AssetType.IMAGE
    assert record.counted_asset_previous_state == 30
    assert record.counted_asset_state == 29
    assert record.created_asset_url == ASSET_URL
    assert record.user_id == "user-1"
    assert record.user_ip == "192.168.1.0"
    assert record.prompt == "a cat"


@pytest.mark.asyncio
async def test_anonymous_request_is_rejected_without_a_balance(tmp_path):
    backend = FakeBackend()
    db, _, _, admission = make_services(tmp_path, backend=backend)

    with pytest.raises(IdentityError):
        await admission.admit(None, "10.1.2.99", IMAGE)

    assert await _balance(db, "10.1.2.0") is None
    assert await _activities(db) == []
    assert backend.invocations == []


@pytest.mark.asyncio
async def test_missing_ip_is_a_malformed_request(tmp_path):
    db, _, _, admission = make_services(tmp_path)

    with pytest.raises(MalformedRequestError):
        await admission.admit("user-1", "unknown", IMAGE)

    assert await _balance(db) is None


@pytest.mark.asyncio
async def test_insufficient_balance_is_rejected_without_mutation(tmp_path):
    backend = FakeBackend()
    db, _, _, admission = make_services(tmp_path, backend=backend, starting_grant=5)

    with pytest.raises(InsufficientCreditsError) as exc_info:
        await admission.admit("user-1", "192.168.1.42", VIDEO)

    assert exc_info.value.message == CREDIT_LIMIT_EXCEEDED_MESSAGE
    assert await _balance(db) == 5
    assert await _activities(db) == []
    assert backend.invocations == []


@pytest.mark.asyncio
async def test_balance_equal_to_cost_is_admitted(tmp_path):
    db, _, _, admission = make_services(tmp_path, starting_grant=10)

    result = await admission.admit("user-1", "192.168.1.42", VIDEO)

    assert result.credits == 0
    assert await _balance(db) == 0


@pytest.mark.asyncio
async def test_timeout_refunds_and_records_error(tmp_path):
    db, _, _, admission = make_services(
        tmp_path, backend=FakeBackend(delay=1.0), timeout_seconds=0.05
    )

    with pytest.raises(ExternalServiceError):
        await admission.admit("user-1", "192.168.1.42", IMAGE)

    assert await _balance(db) == 30
    [record] = await _activities(db)
    assert record.asset_type == AssetType.ERROR
    assert record.created_asset_url == "error: timeout"
    assert record.counted_asset_previous_state == 30
    assert record.counted_asset_state == 30
    assert record.failed


@pytest.mark.asyncio
async def test_backend_error_refunds(tmp_path):
    db, _, _, admission = make_services(
        tmp_path, backend=FakeBackend(error=RuntimeError("upstream 500"))
    )

    with pytest.raises(ExternalServiceError) as exc_info:
        await admission.admit("user-1", "192.168.1.42", VIDEO)

    assert exc_info.value.details["reason"] == "upstream 500"
    assert await _balance(db) == 30
    [record] = await _activities(db)
    assert record.created_asset_url == "error: upstream 500"


@pytest.mark.asyncio
async def test_polls_until_the_job_completes(tmp_path):
    backend = FakeBackend(
        request_id="req-1",
        poll_results=[
            PollResult(state=PollState.PENDING),
            PollResult(state=PollState.PENDING),
            PollResult(state=PollState.COMPLETED, asset_url=ASSET_URL),
        ],
    )
    db, _, _, admission = make_services(tmp_path, backend=backend)

    result = await admission.admit("user-1", "192.168.1.42", VIDEO)

    assert result.result == ASSET_URL
    assert result.request_id == "req-1"
    assert backend.polls == ["req-1", "req-1", "req-1"]
    assert await _balance(db) == 20
    [record] = await _activities(db)
    assert record.asset_type == AssetType.VIDEO


@pytest.mark.asyncio
async def test_failed_poll_refunds(tmp_path):
    backend = FakeBackend(
        request_id="req-1",
        poll_results=[PollResult(state=PollState.FAILED, error="content policy")],
    )
    db, _, _, admission = make_services(tmp_path, backend=backend)

    with pytest.raises(ExternalServiceError):
        await admission.admit("user-1", "192.168.1.42", VIDEO)

    assert await _balance(db) == 30
    [record] = await _activities(db)
    assert record.created_asset_url == "error: content policy"


@pytest.mark.asyncio
async def test_cancelled_request_is_refunded(tmp_path):
    backend = FakeBackend(delay=10.0)
    db, _, _, admission = make_services(tmp_path, backend=backend)

    task = asyncio.create_task(admission.admit("user-1", "192.168.1.42", IMAGE))
    while not backend.invocations:
        await asyncio.sleep(0)
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task

    assert await _balance(db) == 30
    [record] = await _activities(db)
    assert record.created_asset_url == "error: cancelled"


@pytest.mark.asyncio
async def test_lost_audit_record_still_returns_the_asset(tmp_path):
    db, _, _, admission = make_services(tmp_path, db=FailingActivityDB())

    result = await admission.admit("user-1", "192.168.1.42", IMAGE)

    assert result.result == ASSET_URL
    assert result.activity_id is None
    assert await _balance(db) == 29


@pytest.mark.asyncio
async def test_prompt_length_is_enforced(tmp_path):
    backend = FakeBackend()
    db, _, _, admission = make_services(tmp_path, backend=backend, max_prompt_length=10)

    with pytest.raises(MalformedRequestError) as exc_info:
        await admission.admit(
            "user-1", "192.168.1.42", GenerationRequest(kind=GenerationKind.IMAGE, prompt="x" * 11)
        )

    assert "Maximum length is 10" in exc_info.value.message
    assert await _balance(db) is None
    assert backend.invocations == []


@pytest.mark.asyncio
async def test_edit_requires_source_image(tmp_path):
    _, _, _, admission = make_services(tmp_path)

    with pytest.raises(MalformedRequestError):
        await admission.admit(
            "user-1", "192.168.1.42", GenerationRequest(kind=GenerationKind.IMAGE_EDIT, prompt="hat")
        )

    result = await admission.admit(
        "user-1",
        "192.168.1.42",
        GenerationRequest(
            kind=GenerationKind.IMAGE_EDIT, prompt="hat", source_url="https://x/in.png"
        ),
    )
    assert result.credits == 28


@pytest.mark.asyncio
async def test_rate_limited_request_is_not_charged(tmp_path):
    clock = iter([1000.0, 1000.5])
    limiter = RateLimiter(clock=lambda: next(clock))
    db, _, _, admission = make_services(tmp_path, rate_limiter=limiter)

    await admission.admit("user-1", "192.168.1.42", IMAGE)
    with pytest.raises(RateLimitedError):
        await admission.admit("user-1", "192.168.1.42", IMAGE)

    assert await _balance(db) == 29


@pytest.mark.asyncio
async def test_monthly_quota_is_enforced_for_subscribers(tmp_path):
    now = datetime(2024, 5, 20, 12, 0, tzinfo=timezone.utc)
    db, _, _, admission = make_services(tmp_path, clock=lambda: now)
    for _ in range(200):
        await db.add_activity(
            ActivityRecord(
                asset_type=AssetType.IMAGE,
                counted_asset_previous_state=30,
                counted_asset_state=30,
                user_id="user-1",
                date_time=now,
            )
        )

    with pytest.raises(QuotaExceededError):
        await admission.admit(
            "user-1",
            "192.168.1.42",
            IMAGE,
            product_name='"Image Creator"',
            subscription_status='"active"',
        )

    # Free tier has no monthly cap
    result = await admission.admit("user-1", "192.168.1.42", IMAGE)
    assert result.credits == 29


@pytest.mark.asyncio
async def test_subscription_tier_is_recorded(tmp_path):
    db, _, _, admission = make_services(tmp_path)

    await admission.admit(
        "user-1", "192.168.1.42", VIDEO, product_name="Video Creator", subscription_status="active"
    )

    [record] = await _activities(db)
    assert record.subscription_tier == 2


def test_month_start():
    assert month_start(datetime(2024, 5, 20, 12, 30, tzinfo=timezone.utc)) == datetime(
        2024, 5, 1, tzinfo=timezone.utc
    )


@pytest.mark.asyncio
async def test_webhook_delivered_job_is_queued_then_completed(tmp_path):
    backend = FakeBackend(request_id="req-1", delivers_by_webhook=True)
    db, _, activity, admission = make_services(tmp_path, backend=backend)

    result = await admission.admit("user-1", "192.168.1.42", IMAGE)

    assert result.result == IN_QUEUE
    assert result.request_id == "req-1"
    assert result.credits == 29
    queued = await activity.find_by_external_request_id("req-1")
    assert queued.asset_type == AssetType.QUEUED

    completed = await admission.complete_queued("req-1", GenerationKind.IMAGE, ASSET_URL)

    assert completed.asset_type == AssetType.IMAGE
    assert completed.created_asset_url == ASSET_URL
    assert await _balance(db) == 29
    with pytest.raises(RecordNotFoundError):
        await admission.complete_queued("req-1", GenerationKind.IMAGE, ASSET_URL)


@pytest.mark.asyncio
async def test_failed_webhook_job_is_refunded_once(tmp_path):
    backend = FakeBackend(request_id="req-1", delivers_by_webhook=True)
    db, _, _, admission = make_services(tmp_path, backend=backend)
    await admission.admit("user-1", "192.168.1.42", VIDEO)
    assert await _balance(db) == 20

    failed = await admission.complete_queued(
        "req-1", GenerationKind.VIDEO, None, error="nsfw content"
    )

    assert failed.failed
    assert failed.created_asset_url == "error: nsfw content"
    assert failed.counted_asset_state == 30
    assert await _balance(db) == 30

    with pytest.raises(RecordNotFoundError):
        await admission.complete_queued("req-1", GenerationKind.VIDEO, None, error="nsfw content")
    assert await _balance(db) == 30


@pytest.mark.asyncio
async def test_record_upload_does_not_charge(tmp_path):
    db, credits, _, admission = make_services(tmp_path)
    await credits.provision_new_user("user-1")

    record_id = await admission.record_upload("user-1", "192.168.1.42", "https://x/up.png")

    record = await db.get_activity(record_id)
    assert record.asset_type == AssetType.UPLOAD
    assert record.counted_asset_state == 30
    assert await credits.current_balance(ByUser(id="user-1")) == 30


@pytest.mark.asyncio
async def test_requests_are_charged_every_time(tmp_path):
    db, _, _, admission = make_services(tmp_path)

    for _ in range(3):
        await admission.admit("user-1", "192.168.1.42", IMAGE)

    assert await _balance(db) == 27
    assert len(await _activities(db)) == 3


@pytest.mark.asyncio
async def test_lost_ledger_entry_does_not_undo_a_committed_charge(tmp_path):
    db, _, _, admission = make_services(tmp_path, db=FailingLedgerDB())

    result = await admission.admit("user-1", "192.168.1.42", IMAGE)

    assert result.result == ASSET_URL
    assert result.credits == 29
    assert await _balance(db) == 29
    [record] = await _activities(db)
    assert record.counted_asset_previous_state == 30
    assert record.counted_asset_state == 29


@pytest.mark.asyncio
async def test_failed_request_is_refunded_when_ledger_writes_fail(tmp_path):
    backend = FakeBackend(error=RuntimeError("upstream down"))
    db, _, _, admission = make_services(tmp_path, db=FailingLedgerDB(), backend=backend)

    with pytest.raises(ExternalServiceError):
        await admission.admit("user-1", "192.168.1.42", IMAGE)

    assert await _balance(db) == 30


@pytest.mark.asyncio
async def test_cancel_while_charging_is_refunded(tmp_path):
    db = SlowChargeDB()
    backend = FakeBackend()
    _, _, _, admission = make_services(tmp_path, db=db, backend=backend)

    task = asyncio.create_task(admission.admit("user-1", "192.168.1.42", IMAGE))
    await db.charged.wait()
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task

    assert await _balance(db) == 30
    assert backend.invocations == []
    [record] = await _activities(db)
    assert record.asset_type == AssetType.ERROR
    assert record.created_asset_url == "error: cancelled"


@pytest.mark.asyncio
async def test_concurrent_failure_callbacks_refund_once(tmp_path):
    db = InterleavingActivityDB()
    backend = FakeBackend(request_id="req-1", delivers_by_webhook=True)
    _, _, _, admission = make_services(tmp_path, db=db, backend=backend)
    await admission.admit("user-1", "192.168.1.42", VIDEO)
    assert await _balance(db) == 20

    outcomes = await asyncio.gather(
        admission.complete_queued("req-1", GenerationKind.VIDEO, None, error="nsfw"),
        admission.complete_queued("req-1", GenerationKind.VIDEO, None, error="nsfw"),
        return_exceptions=True,
    )

    assert sum(isinstance(o, ActivityRecord) for o in outcomes) == 1
    assert sum(isinstance(o, RecordNotFoundError) for o in outcomes) == 1
    assert await _balance(db) == 30


@pytest.mark.asyncio
async def test_failed_refund_still_records_the_failure(tmp_path):
    backend = FakeBackend(error=RuntimeError("upstream down"))
    db, _, _, admission = make_services(tmp_path, db=FailingRefundDB(), backend=backend)

    with pytest.raises(ExternalServiceError):
        await admission.admit("user-1", "192.168.1.42", IMAGE)

    assert await _balance(db) == 29
    [record] = await _activities(db)
    assert record.asset_type == AssetType.ERROR
    assert record.created_asset_url == "error: upstream down"
    # The refund is still owed
    assert record.counted_asset_previous_state == 30
    assert record.counted_asset_state == 29


@pytest.mark.asyncio
async def test_concurrent_subscriber_requests_cannot_overrun_the_monthly_cap(tmp_path):
    now = datetime(2024, 5, 20, 12, 0, tzinfo=timezone.utc)
    db, _, _, admission = make_services(
        tmp_path, backend=FakeBackend(delay=0.05), clock=lambda: now
    )
    for _ in range(199):
        await db.add_activity(
            ActivityRecord(
                asset_type=AssetType.IMAGE,
                counted_asset_previous_state=30,
                counted_asset_state=30,
                user_id="user-1",
                date_time=now,
            )
        )

    def subscriber_request():
        return admission.admit(
            "user-1",
            "192.168.1.42",
            IMAGE,
            product_name="Image Creator",
            subscription_status="active",
        )

    outcomes = await asyncio.gather(
        *(subscriber_request() for _ in range(3)), return_exceptions=True
    )

    assert sum(isinstance(o, AdmissionResult) for o in outcomes) == 1
    assert sum(isinstance(o, QuotaExceededError) for o in outcomes) == 2
    assert await _balance(db) == 29

    with pytest.raises(QuotaExceededError):
        await subscriber_request()
