"""MongoDB-backed block store.

One document per ``(entity_type, entity_value)``, enforced by a unique
compound index. Blocking is a ``replace_one(..., upsert=True)`` so repeated
blocks replace the existing record instead of accumulating duplicates.

Any driver failure (including server selection and operation timeouts) is
re-raised as ``StoreUnavailableError``.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from pymongo import ASCENDING, DESCENDING, AsyncMongoClient
from pymongo.errors import PyMongoError

from gatekeeper.adapters.block_store.base import AbstractBlockStore
from gatekeeper.core.config import MongoSettings
from gatekeeper.core.errors import StoreUnavailableError
from gatekeeper.schemas.blocks import BlockRecord

logger = logging.getLogger(__name__)

IndexSpec = tuple[list[tuple[str, int]], dict[str, Any]]

BLOCK_INDEX_SPECS: list[IndexSpec] = [
    (
        [("entity_type", ASCENDING), ("entity_value", ASCENDING)],
        {"name": "blocked_entities_identity_unique", "unique": True},
    ),
    ([("blocked_at", DESCENDING)], {"name": "blocked_entities_blocked_at_desc"}),
    (
        [("is_permanent", ASCENDING), ("unblock_at", ASCENDING)],
        {"name": "blocked_entities_expiry"},
    ),
]


def _active_filter(now: datetime) -> dict[str, Any]:
    return {"$or": [{"is_permanent": True}, {"unblock_at": {"$gt": now}}]}


class MongoBlockStore(AbstractBlockStore):
    """Block records in a MongoDB collection."""

    def __init__(self, client: AsyncMongoClient, *, database: str, collection: str) -> None:
        self._client = client
        self._collection = client[database][collection]

    @classmethod
    def from_settings(cls, mongo_settings: MongoSettings) -> "MongoBlockStore":
        """Build a store with bounded selection and operation timeouts."""

        client: AsyncMongoClient = AsyncMongoClient(
            mongo_settings.uri,
            serverSelectionTimeoutMS=mongo_settings.timeout_ms,
            timeoutMS=mongo_settings.timeout_ms,
            tz_aware=True,
        )
        return cls(
            client,
            database=mongo_settings.database,
            collection=mongo_settings.block_collection,
        )

    def _unavailable(self, operation: str, exc: Exception) -> StoreUnavailableError:
        return StoreUnavailableError(
            code="block_store_unavailable",
            message=f"MongoDB {operation} failed: {exc}",
            details={"store": "mongodb", "operation": operation},
        )

    async def ensure_indexes(self) -> None:
        """Create the identity, recency and expiry indexes if missing."""

        try:
            for keys, options in BLOCK_INDEX_SPECS:
                await self._collection.create_index(keys, **options)
        except PyMongoError as exc:
            raise self._unavailable("create_index", exc) from exc

    async def find_active(
        self, entity_type: str, entity_value: str, now: datetime
    ) -> BlockRecord | None:
        query = {"entity_type": entity_type, "entity_value": entity_value, **_active_filter(now)}
        try:
            document = await self._collection.find_one(query)
        except PyMongoError as exc:
            raise self._unavailable("find_one", exc) from exc
        return BlockRecord.from_document(document) if document else None

    async def upsert(self, record: BlockRecord) -> BlockRecord:
        try:
            await self._collection.replace_one(
                {"entity_type": record.entity_type, "entity_value": record.entity_value},
                record.to_document(),
                upsert=True,
            )
        except PyMongoError as exc:
            raise self._unavailable("replace_one", exc) from exc
        return record

    async def delete(self, entity_type: str, entity_value: str) -> bool:
        try:
            result = await self._collection.delete_one(
                {"entity_type": entity_type, "entity_value": entity_value}
            )
        except PyMongoError as exc:
            raise self._unavailable("delete_one", exc) from exc
        return result.deleted_count > 0

    async def delete_expired(self, now: datetime) -> int:
        try:
            result = await self._collection.delete_many(
                {"is_permanent": False, "unblock_at": {"$lt": now}}
            )
        except PyMongoError as exc:
            raise self._unavailable("delete_many", exc) from exc
        return result.deleted_count

    async def list_active(
        self, now: datetime, *, limit: int, skip: int
    ) -> tuple[list[BlockRecord], int]:
        query = _active_filter(now)
        try:
            cursor = self._collection.find(query).sort("blocked_at", DESCENDING).skip(skip).limit(limit)
            documents = await cursor.to_list()
            total = await self._collection.count_documents(query)
        except PyMongoError as exc:
            raise self._unavailable("find", exc) from exc
        return [BlockRecord.from_document(document) for document in documents], total

    async def ping(self) -> bool:
        try:
            await self._client.admin.command("ping")
            return True
        except PyMongoError as exc:
            logger.warning(
                "block_store.ping_failed",
                extra={"store": "mongodb", "error_type": type(exc).__name__},
            )
            return False

    async def close(self) -> None:
        await self._client.close()
