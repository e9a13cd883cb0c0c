from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Optional

from ..db.base import BaseDBManager
from ..errors import PersistenceError
from ..models.ledger import LedgerEntry, LedgerEventType

logger = logging.getLogger(__name__)


class LedgerLogger:
    """
    Structured ledger of balance mutations, written to the store and to a file.

    File logging is append-only, line-delimited JSON for easier ingestion by
    log aggregators. DB logging uses the `LedgerEntry` model and the configured
    `BaseDBManager`. Every entry is also emitted on the module logger.
    """

    def __init__(self, db: BaseDBManager, file_path: Optional[Path] = None) -> None:
        self._db = db
        self._file_path = file_path
        if self._file_path is not None:
            self._file_path.parent.mkdir(parents=True, exist_ok=True)

    async def log_mutation(
        self,
        event_type: LedgerEventType,
        identity_key: str,
        message: str,
        details: dict[str, Any],
        correlation_id: Optional[str] = None,
    ) -> LedgerEntry:
        return await self._log(
            event_type,
            identity_key=identity_key,
            message=message,
            details=details,
            correlation_id=correlation_id,
        )

    async def log_rejection(
        self,
        identity_key: str,
        message: str,
        details: dict[str, Any],
        correlation_id: Optional[str] = None,
    ) -> LedgerEntry:
        return await self._log(
            LedgerEventType.REJECTION,
            identity_key=identity_key,
            message=message,
            details=details,
            correlation_id=correlation_id,
        )

    async def _log(
        self,
        event_type: LedgerEventType,
        identity_key: Optional[str],
        message: str,
        details: dict[str, Any],
        correlation_id: Optional[str],
    ) -> LedgerEntry:
        entry = LedgerEntry(
            event_type=event_type,
            identity_key=identity_key,
            message=message,
            details=details,
            correlation_id=correlation_id,
        )

        logger.info(
            "%s: %s",
            message,
            details,
            extra={
                "identity_key": identity_key,
                "correlation_id": correlation_id,
                "ledger_event": entry.event_type,
            },
        )

        # Entries describe mutations that have already committed; a lost entry
        # is logged and never undoes or fails the mutation itself.
        try:
            await self._db.add_ledger_entry(entry)
        except PersistenceError:
            logger.error(
                "Could not persist ledger entry",
                exc_info=True,
                extra={
                    "identity_key": identity_key,
                    "correlation_id": correlation_id,
                    "ledger_event": entry.event_type,
                    "ledger_details": details,
                },
            )

        # The file mirror never fails the main flow.
        if self._file_path is not None:
            try:
                line = json.dumps(entry.serialize_for_db(), default=str)
                with self._file_path.open("a", encoding="utf-8") as f:
                    f.write(line + "\n")
            except OSError:
                logger.warning("Could not append to ledger file %s", self._file_path, exc_info=True)
        return entry
