from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from ..db.base import BaseDBManager
from ..errors import ActivityWriteError, PersistenceError
from ..models.activity import (
    CHARGEABLE_ASSET_TYPES,
    ActivityRecord,
    AssetType,
    error_marker,
)
from ..models.identity import Identity, activity_filter, clean_user_ip
from ..utils.ip import DEFAULT_LOCAL_PLACEHOLDER

logger = logging.getLogger(__name__)

_QUEUED = {"AssetType": AssetType.QUEUED.value}


class ActivityService:
    """
    Append-only activity log: one record per request outcome.

    The stored UserIp is always the subnet-grouped form; raw client addresses
    never reach the store through this service.
    """

    def __init__(
        self, db: BaseDBManager, local_ip_placeholder: str = DEFAULT_LOCAL_PLACEHOLDER
    ) -> None:
        self._db = db
        self._local_ip_placeholder = local_ip_placeholder

    async def record(self, activity: ActivityRecord) -> str:
        """
        Append a record and return its id.

        Raises ActivityWriteError when the store rejects the write; callers
        decide whether the lost audit entry is fatal.
        """
        if activity.id is not None:
            raise ValueError("activity records are append-only; id must be unset")

        activity = activity.model_copy(
            update={"user_ip": clean_user_ip(activity.user_ip, self._local_ip_placeholder)}
        )
        try:
            saved = await self._db.add_activity(activity)
        except PersistenceError as exc:
            logger.error(
                "Error saving activity",
                exc_info=True,
                extra={"user_id": activity.user_id, "asset_type": activity.asset_type},
            )
            raise ActivityWriteError("Error saving activity, check prompt log.") from exc
        logger.info("Saved %s: %s", ActivityRecord.collection_name, saved.id)
        return saved.id  # type: ignore[return-value]

    async def record_upload(
        self, identity: Identity, image_url: str, balance: int
    ) -> str:
        """Log a non-chargeable upload; the balance is carried through unchanged."""
        return await self.record(
            ActivityRecord(
                asset_type=AssetType.UPLOAD,
                counted_asset_previous_state=balance,
                counted_asset_state=balance,
                created_asset_url=image_url,
                user_id=identity.user_id,
                user_ip=identity.user_ip,
            )
        )

    async def get(self, record_id: str) -> Optional[ActivityRecord]:
        return await self._db.get_activity(record_id)

    async def find_latest_by_identity(
        self, identity: Identity, asset_type: AssetType | str | None = None
    ) -> Optional[ActivityRecord]:
        filters: Dict[str, Any] = dict(activity_filter(identity))
        if asset_type is not None:
            filters["AssetType"] = AssetType(asset_type).value
        found = await self._db.find_activities(filters, limit=1)
        return found[0] if found else None

    async def find_by_external_request_id(self, request_id: str) -> Optional[ActivityRecord]:
        """The queued record created for an asynchronous generation job."""
        if not request_id:
            return None
        found = await self._db.find_activities(
            {"CreatedAssetUrl": request_id, "AssetType": AssetType.QUEUED.value}, limit=1
        )
        return found[0] if found else None

    async def count_chargeable_since(self, identity: Identity, since: datetime) -> int:
        filters: Dict[str, Any] = dict(activity_filter(identity))
        filters["AssetType"] = {"$in": [t.value for t in CHARGEABLE_ASSET_TYPES]}
        filters["DateTime"] = {"$gte": since}
        return await self._db.count_activities(filters)

    async def mark_completed(
        self, record_id: str, asset_type: AssetType, asset_url: str
    ) -> Optional[ActivityRecord]:
        """
        Correct a queued record once its asset has been delivered. Returns
        None when the record is no longer queued.
        """
        return await self._db.update_activity(
            record_id,
            {"AssetType": AssetType(asset_type).value, "CreatedAssetUrl": asset_url},
            expected=_QUEUED,
        )

    async def mark_failed(self, record_id: str, reason: str) -> Optional[ActivityRecord]:
        """
        Claim a queued record as failed. Only one caller can win the claim;
        the others get None and must not refund.
        """
        return await self._db.update_activity(
            record_id,
            {"AssetType": AssetType.ERROR.value, "CreatedAssetUrl": error_marker(reason)},
            expected=_QUEUED,
        )

    async def note_restored_balance(
        self, record_id: str, restored_balance: int
    ) -> Optional[ActivityRecord]:
        return await self._db.update_activity(record_id, {"CountedAssetState": restored_balance})
