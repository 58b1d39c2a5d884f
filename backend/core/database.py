"""Database connection manager."""

import logging
from typing import Optional

from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import ASCENDING, DESCENDING

from backend.core.config import settings

logger = logging.getLogger(__name__)

# Collection names
USERS_COLLECTION = "users"
THREADS_COLLECTION = "email_threads"
EMAILS_COLLECTION = "emails"
ATTACHMENTS_COLLECTION = "email_attachments"
THREAD_LABELS_COLLECTION = "email_thread_labels"
EMAIL_LABELS_COLLECTION = "email_labels"


async def ensure_indexes(db) -> None:
    """Create the unique keys the cache relies on for idempotent upserts."""
    await db[USERS_COLLECTION].create_index([("email", ASCENDING)], unique=True)
    await db[THREADS_COLLECTION].create_index(
        [("user_id", ASCENDING), ("external_id", ASCENDING)], unique=True
    )
    await db[THREADS_COLLECTION].create_index([("user_id", ASCENDING), ("timestamp", DESCENDING)])
    await db[EMAILS_COLLECTION].create_index(
        [("user_id", ASCENDING), ("external_id", ASCENDING)], unique=True
    )
    await db[EMAILS_COLLECTION].create_index([("thread_id", ASCENDING), ("timestamp", DESCENDING)])
    await db[ATTACHMENTS_COLLECTION].create_index(
        [("email_id", ASCENDING), ("external_id", ASCENDING)], unique=True
    )
    await db[THREAD_LABELS_COLLECTION].create_index(
        [("thread_id", ASCENDING), ("label", ASCENDING)], unique=True
    )
    await db[EMAIL_LABELS_COLLECTION].create_index(
        [("email_id", ASCENDING), ("label", ASCENDING)], unique=True
    )
    logger.info("Mail cache indexes ensured")


class DatabaseManager:
    """Async MongoDB connection manager."""

    def __init__(self, uri: Optional[str] = None, database: Optional[str] = None):
        self._uri = uri or settings.mongodb_uri
        self._database = database or settings.mongodb_database
        self.client: Optional[AsyncIOMotorClient] = None
        self.db = None

    async def connect(self):
        """Establish database connection and make sure indexes exist."""
        try:
            if self.client is None:
                self.client = AsyncIOMotorClient(self._uri)
                await self.client.admin.command("ping")

            self.db = self.client[self._database]
            await ensure_indexes(self.db)

            logger.info(f"Connected to MongoDB: {self._database}")

        except Exception as e:
            logger.error(f"Failed to connect to MongoDB: {e}")
            raise

    async def disconnect(self):
        """Close database connection."""
        if self.client:
            self.client.close()
            self.client = None
            logger.info("MongoDB connection closed")
