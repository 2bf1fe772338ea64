"""Database connections and utilities."""

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from typing import Optional
import logging

from connector_service.core.config import Settings, get_settings

logger = logging.getLogger(__name__)


class Database:
    """Database connection manager."""

    client: Optional[AsyncIOMotorClient] = None
    db: Optional[AsyncIOMotorDatabase] = None

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    async def connect(self):
        """Connect to MongoDB."""
        try:
            self.client = AsyncIOMotorClient(self.settings.mongodb_url, tz_aware=True)
            self.db = self.client[self.settings.mongodb_db_name]

            # Test connection
            await self.client.admin.command("ping")
            logger.info("Connected to MongoDB")
        except Exception as e:
            logger.error(f"Failed to connect to MongoDB: {e}")
            raise

    async def disconnect(self):
        """Disconnect from MongoDB."""
        if self.client:
            self.client.close()
            logger.info("Disconnected from MongoDB")

    async def ping(self) -> bool:
        if self.client is None:
            return False
        await self.client.admin.command("ping")
        return True

    def get_collection(self, name: str):
        """Get a collection."""
        if self.db is None:
            raise RuntimeError("Database not connected")
        return self.db[COLLECTIONS[name]]


# Collection names
COLLECTIONS = {
    "connections": "integration_connections",
    "calendar_syncs": "calendar_syncs",
    "webhook_subscriptions": "webhook_subscriptions",
    "webhook_events": "webhook_events",
    "webhook_quarantine": "webhook_quarantine",
}
