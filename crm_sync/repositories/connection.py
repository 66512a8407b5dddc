"""
MongoDB Connection Management
Singleton Motor client with connection pooling, transactions and lifecycle management.
"""
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncContextManager, Callable, Optional

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase

from ..config import settings
from ..models.entities import ENTITY_ANCHORS, EVENT_STORES
from ..utils.observability import logger
from .memory import InMemoryDatabase


@dataclass
class StorageContext:
    """
    Explicit storage handle passed to every component at construction.

    Attributes:
        database: Motor database or InMemoryDatabase
        transaction: Factory returning an async context manager that yields
            the session to pass to each write (None when transactions are off)
    """
    database: Any
    transaction: Callable[[], AsyncContextManager[Any]]

    @classmethod
    def in_memory(cls, name: str = "crm_sync") -> "StorageContext":
        database = InMemoryDatabase(name)
        return cls(database=database, transaction=database.transaction)


class DatabaseManager:
    """
    Singleton MongoDB client manager with async Motor.
    Handles connection lifecycle, pooling, and graceful shutdown.
    """

    _instance: Optional["DatabaseManager"] = None
    _client: Optional[AsyncIOMotorClient] = None
    _database: Optional[AsyncIOMotorDatabase] = None

    def __new__(cls) -> "DatabaseManager":
        """Enforce singleton pattern."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    async def connect(self) -> None:
        """
        Initialize MongoDB connection with configured pool settings.
        Idempotent - safe to call multiple times.
        """
        if self._client:
            try:
                await self._client.admin.command("ping")
                logger.debug("Reusing healthy MongoDB connection")
                return
            except Exception:
                logger.warning("Event loop closed or connection lost. Rebuilding client...")
                self._client = None
                self._database = None

        logger.info(
            "Connecting to MongoDB",
            extra={
                "database": settings.mongodb_database,
                "max_pool_size": settings.mongodb_max_pool_size,
                "transactions": settings.mongodb_use_transactions,
                "environment": settings.environment
            }
        )
        self._client = AsyncIOMotorClient(
            settings.mongodb_uri,
            maxPoolSize=settings.mongodb_max_pool_size,
            minPoolSize=settings.mongodb_min_pool_size,
            serverSelectionTimeoutMS=settings.mongodb_server_selection_timeout_ms,
            tz_aware=True,
        )

        self._database = self._client[settings.mongodb_database]

    async def disconnect(self) -> None:
        """
        Close MongoDB connection and cleanup resources.
        Idempotent - safe to call multiple times.
        """
        if self._client is None:
            logger.debug("MongoDB client already disconnected")
            return

        logger.info("Closing MongoDB connection")
        self._client.close()
        self._client = None
        self._database = None
        logger.info("MongoDB connection closed")

    @property
    def database(self) -> AsyncIOMotorDatabase:
        """
        Get the database instance.
        Raises RuntimeError if not connected.
        """
        if self._database is None:
            raise RuntimeError(
                "Database not connected. Call await db_manager.connect() first."
            )
        return self._database

    @property
    def client(self) -> AsyncIOMotorClient:
        """
        Get the Motor client instance.
        Raises RuntimeError if not connected.
        """
        if self._client is None:
            raise RuntimeError(
                "Database client not connected. Call await db_manager.connect() first."
            )
        return self._client

    @asynccontextmanager
    async def transaction(self):
        """
        Run a block inside one multi-document transaction.

        Yields the session to pass to every write in the block. When
        transactions are disabled (standalone servers) yields None and
        writes apply individually.
        """
        if not settings.mongodb_use_transactions:
            yield None
            return

        async with await self.client.start_session() as session:
            async with session.start_transaction():
                yield session

    def storage(self) -> StorageContext:
        return StorageContext(database=self.database, transaction=self.transaction)

    async def create_indexes(self) -> None:
        """
        Create all required indexes for optimal query performance.
        Should be called during application startup.
        """
        await create_indexes(self.database)


async def create_indexes(db: Any) -> None:
    """Create queue, metrics, projection and event-store indexes on `db`."""
    logger.info("Creating MongoDB indexes")

    # Queue: dedup anchor, claim order, lease recovery, retention
    await db.webhook_queue.create_index(
        [("event_id", 1), ("tenant_id", 1)],
        unique=True,
        name="idx_event_tenant_unique"
    )
    await db.webhook_queue.create_index(
        [("queue_type", 1), ("status", 1), ("next_retry_at", 1), ("priority", 1), ("received_at", 1)],
        name="idx_claim_order"
    )
    await db.webhook_queue.create_index(
        [("status", 1), ("processing_started_at", 1)],
        name="idx_processing_lease"
    )
    await db.webhook_queue.create_index(
        [("status", 1), ("completed_at", 1)],
        name="idx_completed_retention"
    )

    # Metric samples
    await db.webhook_metrics.create_index(
        [("queue_type", 1), ("completed_at", -1)],
        name="idx_queue_completed"
    )
    await db.webhook_metrics.create_index("received_at", name="idx_received_at")

    # Projections
    for collection, (anchor, tenant_field) in ENTITY_ANCHORS.items():
        keys = [(anchor, 1)] + ([(tenant_field, 1)] if tenant_field else [])
        await db[collection].create_index(keys, unique=True, name=f"idx_{anchor}_unique")

    await db.users.create_index([("email", 1), ("location_id", 1)], name="idx_user_email_location")
    await db.invoices.create_index([("opportunity_id", 1), ("location_id", 1)], name="idx_invoice_project")
    await db.sync_progress.create_index("location_id", name="idx_sync_location")

    # Insert-once event stores
    for collection in EVENT_STORES:
        await db[collection].create_index("webhook_id", unique=True, name="idx_webhook_id_unique")

    await db.webhook_discovery.create_index("event_type", unique=True, name="idx_event_type_unique")

    logger.info("MongoDB indexes created successfully")


# Singleton instance
db_manager = DatabaseManager()


async def get_database() -> AsyncIOMotorDatabase:
    """
    Dependency injection helper for repositories.
    Returns the connected database instance.
    """
    return db_manager.database
