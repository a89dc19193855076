"""
Document store adapter for MongoDB built on the PyMongo async client.
"""

import logging
from typing import Any, Dict, List, Optional

from pymongo import AsyncMongoClient
from pymongo.errors import PyMongoError

from ...core.exceptions import AdapterError, UnsupportedOperationError
from .base import DatabaseAdapter, DatabaseType


class MongoAdapter(DatabaseAdapter):
    """
    Adapter for MongoDB.

    ``execute(operation, collection, payload)`` understands the operations
    createCollection, dropCollection, insert, update, delete and
    createIndex. ``query(collection, filter, options)`` accepts the options
    sort, limit, skip and projection.
    """

    type = DatabaseType.MONGODB

    def __init__(
        self,
        database_url: Optional[str] = None,
        database_name: Optional[str] = None,
        client: Optional[AsyncMongoClient] = None,
        logger: Optional[logging.Logger] = None,
    ):
        """
        Initialize the adapter.

        Args:
            database_url: MongoDB connection URL
            database_name: Database to use (defaults to the one named in the URL)
            client: Existing client to use instead of creating one
            logger: Logger instance for database operations
        """
        if client is None:
            if database_url is None:
                raise AdapterError("Either database_url or client is required", adapter_type="mongodb")
            client = AsyncMongoClient(database_url, tz_aware=True)

        self.client = client
        self.database = client[database_name] if database_name else client.get_default_database()
        self.logger = logger or logging.getLogger(__name__)

        self._operations = {
            "createCollection": self._create_collection,
            "dropCollection": self._drop_collection,
            "insert": self._insert,
            "update": self._update,
            "delete": self._delete,
            "createIndex": self._create_index,
        }

    async def execute(self, operation: str, collection: str, payload: Optional[Dict[str, Any]] = None) -> Any:
        """
        Execute a write operation against a collection.

        Args:
            operation: Operation name
            collection: Collection name
            payload: Operation-specific arguments

        Returns:
            Operation result (inserted id(s) or affected document count)
        """
        handler = self._operations.get(operation)
        if handler is None:
            raise UnsupportedOperationError(
                f"Unsupported document operation: {operation}",
                adapter_type=self.type.value,
                context={"supported": sorted(self._operations)},
            )

        try:
            return await handler(collection, payload or {})
        except PyMongoError as e:
            self.logger.error(f"Document operation {operation} on {collection} failed: {e}")
            raise AdapterError(
                f"Document operation {operation} failed: {e}",
                adapter_type=self.type.value,
                context={"collection": collection, "operation": operation},
                cause=e,
            ) from e

    async def query(
        self,
        collection: str,
        filter: Optional[Dict[str, Any]] = None,
        options: Optional[Dict[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        """
        Find documents in a collection.

        Args:
            collection: Collection name
            filter: Query filter
            options: sort (mapping of field to 1/-1), limit, skip, projection

        Returns:
            Matching documents
        """
        options = options or {}

        try:
            cursor = self.database[collection].find(filter or {}, options.get("projection"))
            if options.get("sort"):
                cursor = cursor.sort(list(options["sort"].items()))
            if options.get("skip"):
                cursor = cursor.skip(options["skip"])
            if options.get("limit"):
                cursor = cursor.limit(options["limit"])
            return await cursor.to_list()
        except PyMongoError as e:
            self.logger.error(f"Query on {collection} failed: {e}")
            raise AdapterError(
                f"Document query failed: {e}",
                adapter_type=self.type.value,
                context={"collection": collection},
                cause=e,
            ) from e

    async def close(self) -> None:
        """Close the client."""
        await self.client.close()
        self.logger.debug("Document adapter client closed")

    async def _create_collection(self, collection: str, payload: Dict[str, Any]) -> None:
        await self.database.create_collection(collection, **payload)

    async def _drop_collection(self, collection: str, payload: Dict[str, Any]) -> None:
        await self.database.drop_collection(collection)

    async def _insert(self, collection: str, payload: Any) -> Any:
        if isinstance(payload, list):
            result = await self.database[collection].insert_many(payload)
            return result.inserted_ids
        result = await self.database[collection].insert_one(payload)
        return result.inserted_id

    async def _update(self, collection: str, payload: Dict[str, Any]) -> int:
        target = self.database[collection]
        if payload.get("many", False):
            result = await target.update_many(payload.get("filter", {}), payload["update"], upsert=payload.get("upsert", False))
        else:
            result = await target.update_one(payload.get("filter", {}), payload["update"], upsert=payload.get("upsert", False))
        return result.modified_count

    async def _delete(self, collection: str, payload: Dict[str, Any]) -> int:
        target = self.database[collection]
        if payload.get("many", True):
            result = await target.delete_many(payload.get("filter", {}))
        else:
            result = await target.delete_one(payload.get("filter", {}))
        return result.deleted_count

    async def _create_index(self, collection: str, payload: Dict[str, Any]) -> str:
        keys = payload["keys"]
        if isinstance(keys, dict):
            keys = list(keys.items())
        options = {key: value for key, value in payload.items() if key != "keys"}
        return await self.database[collection].create_index(keys, **options)
