from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

import structlog
from pymongo import ASCENDING, AsyncMongoClient, ReturnDocument
from pymongo.errors import DuplicateKeyError

from repositories.store import SECONDARY_INDEXES, UNIQUE_INDEXES, DuplicateRecordError

logger = structlog.get_logger(__name__)


def _index_name(collection: str, key: tuple[str, ...], unique: bool) -> str:
    suffix = "_unique" if unique else ""
    return f"idx_{collection}_{'_'.join(key)}{suffix}"


class MongoDocumentStore:
    """``DocumentStore`` on MongoDB through PyMongo's native async client.

    Multi-document transactions need a replica set; the webhook ledger relies
    on them to commit the ledger row and the state change together.
    """

    def __init__(self, client: AsyncMongoClient, db_name: str) -> None:
        self._client = client
        self._db = client[db_name]

    @classmethod
    def from_url(cls, mongo_url: str, db_name: str) -> "MongoDocumentStore":
        client: AsyncMongoClient = AsyncMongoClient(mongo_url, serverSelectionTimeoutMS=2000, tz_aware=True)
        return cls(client, db_name)

    async def close(self) -> None:
        await self._client.close()

    async def ping(self) -> None:
        await self._client.admin.command("ping")

    async def ensure_indexes(self) -> None:
        for collection, keys in UNIQUE_INDEXES.items():
            for key in keys:
                await self._db[collection].create_index(
                    [(field, ASCENDING) for field in key],
                    name=_index_name(collection, key, unique=True),
                    unique=True,
                    partialFilterExpression={field: {"$type": "string"} for field in key},
                )
        for collection, keys in SECONDARY_INDEXES.items():
            for key in keys:
                await self._db[collection].create_index(
                    [(field, ASCENDING) for field in key],
                    name=_index_name(collection, key, unique=False),
                )
        logger.info("mongo_indexes_ready", collections=sorted(set(UNIQUE_INDEXES) | set(SECONDARY_INDEXES)))

    async def insert(self, collection: str, document: dict[str, Any], *, session: Any = None) -> dict[str, Any]:
        stored = dict(document)
        try:
            await self._db[collection].insert_one(stored, session=session)
        except DuplicateKeyError as err:
            raise DuplicateRecordError(collection, tuple((err.details or {}).get("keyValue", {}).keys())) from err
        return stored

    async def find_one(
        self,
        collection: str,
        filter: dict[str, Any],
        *,
        session: Any = None,
    ) -> dict[str, Any] | None:
        return await self._db[collection].find_one(filter, session=session)

    async def find(
        self,
        collection: str,
        filter: dict[str, Any],
        *,
        sort: list[tuple[str, int]] | None = None,
        limit: int = 0,
        session: Any = None,
    ) -> list[dict[str, Any]]:
        cursor = self._db[collection].find(filter, session=session)
        if sort:
            cursor = cursor.sort(sort)
        if limit:
            cursor = cursor.limit(limit)
        return await cursor.to_list(length=None)

    async def compare_and_set(
        self,
        collection: str,
        filter: dict[str, Any],
        *,
        set_fields: dict[str, Any] | None = None,
        inc_fields: dict[str, int] | None = None,
        session: Any = None,
    ) -> dict[str, Any] | None:
        update: dict[str, Any] = {}
        if set_fields:
            update["$set"] = set_fields
        if inc_fields:
            update["$inc"] = inc_fields
        try:
            return await self._db[collection].find_one_and_update(
                filter,
                update,
                return_document=ReturnDocument.AFTER,
                session=session,
            )
        except DuplicateKeyError as err:
            raise DuplicateRecordError(collection, tuple((err.details or {}).get("keyValue", {}).keys())) from err

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[Any]:
        async with self._client.start_session() as session:
            async with await session.start_transaction():
                yield session
