from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, Mapping, Optional, Sequence, Type, TypeVar
from uuid import uuid4

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from .base import BaseDBManager
from ..errors import PersistenceError
from ..models.base import DBSerializableModel
from ..models.subscription import AccountSubscription, SubscriptionStatus
from ..models.usage import UsageEvent, UsageEventType


TModel = TypeVar("TModel", bound=DBSerializableModel)


class MongoDBManager(BaseDBManager):
    """
    MongoDB implementation of BaseDBManager using motor (async driver).

    Subscription documents are keyed by ``_id = user_id``; the compare-and-set
    is a single ``find_one_and_update`` filtered on ``version``, which MongoDB
    applies atomically per document.
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

    async def ensure_indexes(self) -> None:
        try:
            subs = self._db[AccountSubscription.collection_name]
            await subs.create_index("external_customer_ref", unique=True, sparse=True)
            await subs.create_index([("status", ASCENDING), ("period_end", ASCENDING)])
            events = self._db[UsageEvent.collection_name]
            await events.create_index(
                [("user_id", ASCENDING), ("period_start", ASCENDING), ("created_at", ASCENDING)]
            )
        except PyMongoError as exc:
            raise PersistenceError(str(exc), operation="ensure_indexes") from exc

    # Helper utilities
    @staticmethod
    def _to_bson(value: Any) -> Any:
        if isinstance(value, Enum):
            return value.value
        return value

    @staticmethod
    def _decode(model_cls: Type[TModel], doc: Optional[Mapping[str, Any]]) -> Optional[TModel]:
        if doc is None:
            return None
        data = dict(doc)
        _id = data.pop("_id", None)
        if "id" in model_cls.model_fields and "id" not in data and _id is not None:
            data["id"] = str(_id)
        return model_cls.model_validate(data)

    def _subscription_doc(self, subscription: AccountSubscription) -> Dict[str, Any]:
        data = {k: self._to_bson(v) for k, v in subscription.serialize_for_db().items()}
        data["_id"] = subscription.user_id
        return data

    # Ledger Store
    async def get_subscription(self, user_id: str) -> Optional[AccountSubscription]:
        col = self._db[AccountSubscription.collection_name]
        try:
            doc = await col.find_one({"_id": user_id})
        except PyMongoError as exc:
            raise PersistenceError(str(exc), operation="get_subscription") from exc
        return self._decode(AccountSubscription, doc)

    async def insert_subscription(self, subscription: AccountSubscription) -> AccountSubscription:
        col = self._db[AccountSubscription.collection_name]
        try:
            await col.insert_one(self._subscription_doc(subscription))
            return subscription
        except DuplicateKeyError:
            existing = await self.get_subscription(subscription.user_id)
            if existing is None:
                # Duplicate on the customer ref index rather than the account id
                raise PersistenceError(
                    "external customer ref already linked to another account",
                    operation="insert_subscription",
                )
            return existing
        except PyMongoError as exc:
            raise PersistenceError(str(exc), operation="insert_subscription") from exc

    async def compare_and_set_subscription(
        self,
        user_id: str,
        expected_version: int,
        changes: Mapping[str, Any],
    ) -> Optional[AccountSubscription]:
        col = self._db[AccountSubscription.collection_name]
        to_set = {k: self._to_bson(v) for k, v in changes.items() if v is not None}
        to_unset = {k: "" for k, v in changes.items() if v is None}
        to_set["version"] = expected_version + 1
        update: Dict[str, Any] = {"$set": to_set}
        if to_unset:
            update["$unset"] = to_unset
        try:
            doc = await col.find_one_and_update(
                {"_id": user_id, "version": expected_version},
                update,
                return_document=ReturnDocument.AFTER,
            )
        except PyMongoError as exc:
            raise PersistenceError(str(exc), operation="compare_and_set_subscription") from exc
        return self._decode(AccountSubscription, doc)

    async def find_subscription_by_customer_ref(
        self, customer_ref: str
    ) -> Optional[AccountSubscription]:
        col = self._db[AccountSubscription.collection_name]
        try:
            doc = await col.find_one({"external_customer_ref": customer_ref})
        except PyMongoError as exc:
            raise PersistenceError(str(exc), operation="find_subscription_by_customer_ref") from exc
        return self._decode(AccountSubscription, doc)

    async def list_subscriptions(
        self,
        status: Optional[SubscriptionStatus] = None,
        period_ends_before: Optional[datetime] = None,
    ) -> Iterable[AccountSubscription]:
        col = self._db[AccountSubscription.collection_name]
        query: Dict[str, Any] = {}
        if status is not None:
            query["status"] = status.value
        if period_ends_before is not None:
            query["period_end"] = {"$lte": period_ends_before}
        try:
            docs = await col.find(query).to_list(length=None)
        except PyMongoError as exc:
            raise PersistenceError(str(exc), operation="list_subscriptions") from exc
        return [self._decode(AccountSubscription, d) for d in docs if d is not None]  # type: ignore[misc]

    # Usage Log
    async def add_usage_event(self, event: UsageEvent) -> UsageEvent:
        col = self._db[UsageEvent.collection_name]
        if not event.id:
            event.id = uuid4().hex
        data = {k: self._to_bson(v) for k, v in event.serialize_for_db().items()}
        data["_id"] = event.id
        try:
            await col.insert_one(data)
        except PyMongoError as exc:
            raise PersistenceError(str(exc), operation="add_usage_event") from exc
        return event

    async def get_usage_events(
        self,
        user_id: str,
        period_start: Optional[datetime] = None,
        event_types: Optional[Sequence[UsageEventType]] = None,
        limit: Optional[int] = None,
        newest_first: bool = False,
    ) -> Iterable[UsageEvent]:
        col = self._db[UsageEvent.collection_name]
        query: Dict[str, Any] = {"user_id": user_id}
        if period_start is not None:
            query["period_start"] = period_start
        if event_types is not None:
            query["event_type"] = {"$in": [t.value for t in event_types]}
        cursor = col.find(query).sort("created_at", DESCENDING if newest_first else ASCENDING)
        if limit is not None:
            cursor = cursor.limit(limit)
        try:
            docs = await cursor.to_list(length=limit)
        except PyMongoError as exc:
            raise PersistenceError(str(exc), operation="get_usage_events") from exc
        return [self._decode(UsageEvent, d) for d in docs if d is not None]  # type: ignore[misc]
