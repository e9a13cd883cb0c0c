from __future__ import annotations

from functools import wraps
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Type, TypeVar
from uuid import uuid4

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from .base import BaseDBManager, Filter
from ..errors import PersistenceError, RecordNotFoundError
from ..models.activity import ActivityRecord
from ..models.base import DBSerializableModel
from ..models.credits import CreditBalance, utcnow
from ..models.ledger import LedgerEntry


TModel = TypeVar("TModel", bound=DBSerializableModel)
T = TypeVar("T")


def _store_errors(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
    """Translate driver failures into PersistenceError."""

    @wraps(func)
    async def wrapper(*args: Any, **kwargs: Any) -> T:
        try:
            return await func(*args, **kwargs)
        except PyMongoError as exc:
            raise PersistenceError(operation=func.__name__) from exc

    return wrapper


class MongoDBManager(BaseDBManager):
    """
    MongoDB implementation of BaseDBManager using motor (async driver).

    IDs are stored as string `_id` fields and mirrored in the `id` attribute
    of each model. Balance mutations use single-document atomic updates
    (`find_one_and_update` with `$inc`), and a decrement carries a
    `Credits >= amount` guard so concurrent requests cannot overdraw.
    """

    def __init__(self, database: AsyncIOMotorDatabase, client: Optional[AsyncIOMotorClient] = None) -> None:
        self._db = database
        self._client = client

    @classmethod
    def from_client_uri(cls, uri: str, db_name: str) -> "MongoDBManager":
        client = AsyncIOMotorClient(uri)
        return cls(client[db_name], client=client)

    async def close(self) -> None:
        if self._client is not None:
            self._client.close()

    @_store_errors
    async def ensure_indexes(self) -> None:
        for model in (CreditBalance, ActivityRecord, LedgerEntry):
            col = self._db[model.collection_name]
            for index in model.indexes:
                await col.create_index(list(index))

    # Helper utilities
    @staticmethod
    def _prepare_insert(model: TModel) -> Dict[str, Any]:
        data = model.serialize_for_db()
        model_id = getattr(model, "id", None)
        if not model_id:
            model_id = uuid4().hex
            setattr(model, "id", model_id)
            data["id"] = model_id
        data["_id"] = model_id
        return data

    @staticmethod
    def _decode(model_cls: Type[TModel], doc: Optional[Mapping[str, Any]]) -> Optional[TModel]:
        if doc is None:
            return None
        data = dict(doc)
        if "_id" in data and "id" not in data:
            data["id"] = str(data["_id"])
        data.pop("_id", None)
        return model_cls.model_validate(data)

    # Balances
    @_store_errors
    async def get_balance(self, identity_key: str) -> Optional[CreditBalance]:
        doc = await self._db[CreditBalance.collection_name].find_one({"_id": identity_key})
        return self._decode(CreditBalance, doc)

    @_store_errors
    async def find_balance(self, filters: Filter) -> Optional[CreditBalance]:
        doc = await self._db[CreditBalance.collection_name].find_one(dict(filters))
        return self._decode(CreditBalance, doc)

    @_store_errors
    async def insert_balance_if_absent(self, balance: CreditBalance) -> bool:
        try:
            await self._db[CreditBalance.collection_name].insert_one(self._prepare_insert(balance))
        except DuplicateKeyError:
            return False
        return True

    @_store_errors
    async def decrement_credits(self, identity_key: str, amount: int) -> Optional[int]:
        col = self._db[CreditBalance.collection_name]
        doc = await col.find_one_and_update(
            {"_id": identity_key, "Credits": {"$gte": amount}},
            {"$inc": {"Credits": -amount}, "$set": {"updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        if doc is not None:
            return int(doc["Credits"])
        if await col.count_documents({"_id": identity_key}, limit=1) == 0:
            raise RecordNotFoundError(f"no balance for {identity_key}")
        return None

    @_store_errors
    async def increment_credits(
        self,
        identity_key: str,
        amount: int,
        user_id: Optional[str] = None,
        user_ip: Optional[str] = None,
    ) -> int:
        now = utcnow()
        on_insert: Dict[str, Any] = {"id": identity_key, "created_at": now}
        if user_id is not None:
            on_insert["UserId"] = user_id
        if user_ip is not None:
            on_insert["UserIp"] = user_ip
        doc = await self._db[CreditBalance.collection_name].find_one_and_update(
            {"_id": identity_key},
            {"$inc": {"Credits": amount}, "$set": {"updated_at": now}, "$setOnInsert": on_insert},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        return int(doc["Credits"])

    # Activity
    @_store_errors
    async def add_activity(self, record: ActivityRecord) -> ActivityRecord:
        await self._db[ActivityRecord.collection_name].insert_one(self._prepare_insert(record))
        return record

    @_store_errors
    async def get_activity(self, record_id: str) -> Optional[ActivityRecord]:
        doc = await self._db[ActivityRecord.collection_name].find_one({"_id": record_id})
        return self._decode(ActivityRecord, doc)

    @_store_errors
    async def update_activity(
        self,
        record_id: str,
        changes: Mapping[str, Any],
        expected: Optional[Filter] = None,
    ) -> Optional[ActivityRecord]:
        doc = await self._db[ActivityRecord.collection_name].find_one_and_update(
            {**dict(expected or {}), "_id": record_id},
            {"$set": dict(changes)},
            return_document=ReturnDocument.AFTER,
        )
        return self._decode(ActivityRecord, doc)

    @_store_errors
    async def find_activities(
        self, filters: Filter, limit: Optional[int] = None
    ) -> List[ActivityRecord]:
        cursor = self._db[ActivityRecord.collection_name].find(dict(filters)).sort("DateTime", DESCENDING)
        if limit is not None:
            cursor = cursor.limit(limit)
        docs = await cursor.to_list(length=limit)
        return [self._decode(ActivityRecord, d) for d in docs]  # type: ignore[misc]

    @_store_errors
    async def count_activities(self, filters: Filter) -> int:
        return await self._db[ActivityRecord.collection_name].count_documents(dict(filters))

    # Ledger
    @_store_errors
    async def add_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry:
        await self._db[LedgerEntry.collection_name].insert_one(self._prepare_insert(entry))
        return entry

    @_store_errors
    async def get_ledger_entries(self, identity_key: str) -> Iterable[LedgerEntry]:
        cursor = self._db[LedgerEntry.collection_name].find({"identity_key": identity_key}).sort("created_at", 1)
        docs = await cursor.to_list(length=None)
        return [self._decode(LedgerEntry, d) for d in docs]  # type: ignore[misc]
