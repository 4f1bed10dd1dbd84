from __future__ import annotations

import logging

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorCollection
from pymongo.errors import PyMongoError

from app.core.config import settings
from app.core.errors import PersistenceError

logger = logging.getLogger(__name__)


class DatabaseManager:
    """Singleton MongoDB connection manager backing the Link and Organization stores.

    Use the module-level ``db`` instance; do not instantiate directly.

    Lifecycle::

        await db.connect()   # call once at startup
        ...
        await db.disconnect()  # call once at shutdown
    """

    _instance: DatabaseManager | None = None
    _client: AsyncIOMotorClient | None = None

    def __new__(cls) -> DatabaseManager:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    @property
    def is_connected(self) -> bool:
        return self._client is not None

    async def connect(self) -> None:
        """Open the Motor client and verify connectivity with a ping."""
        self._client = AsyncIOMotorClient(
            settings.mongo_uri,
            maxPoolSize=settings.mongo_max_pool_size,
        )
        await self.ping()
        logger.info("Connected to MongoDB at %s (db=%s).", settings.mongo_uri, settings.mongo_db)

    async def ping(self) -> None:
        """Round-trip to the server; raises ``PersistenceError`` when unreachable."""
        if self._client is None:
            raise PersistenceError("DatabaseManager is not connected.")
        try:
            await self._client.admin.command("ping")
        except PyMongoError as exc:
            raise PersistenceError(f"MongoDB ping failed: {exc}") from exc

    async def disconnect(self) -> None:
        """Close the Motor client and release all pooled connections."""
        if self._client is not None:
            self._client.close()
            self._client = None
            logger.info("Disconnected from MongoDB.")

    def get_collection(self, name: str) -> AsyncIOMotorCollection:
        """Return a Motor collection by name from the configured database."""
        if self._client is None:
            raise PersistenceError(
                "DatabaseManager is not connected. Call connect() first."
            )
        return self._client[settings.mongo_db][name]


#: Module-level singleton; import and use this everywhere.
db: DatabaseManager = DatabaseManager()
