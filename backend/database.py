from motor.motor_asyncio import AsyncIOMotorClient
from dotenv import load_dotenv
import os
import logging
from pathlib import Path
from contextlib import asynccontextmanager

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

logger = logging.getLogger(__name__)

SERVER_SELECTION_TIMEOUT_MS = int(os.getenv("MONGO_SERVER_SELECTION_TIMEOUT_MS", "5000"))

# (collection, keys, options)
NOTIFICATION_INDEXES = [
    # Jobs: sweeper scans undispatched jobs by status and age
    ("notificationJobs", "id", {"unique": True}),
    ("notificationJobs", [("status", 1), ("created_at", 1)], {}),
    ("notificationTemplates", "id", {"unique": True}),
    ("userNotificationPreferences", "uid", {"unique": True}),
    # Ledger: deterministic id, webhook lookup by provider message id
    ("deliveries", "id", {"unique": True}),
    ("deliveries", "jobId", {}),
    ("deliveries", "providerMessageId", {"sparse": True}),
    ("notification_outbox", "delivery_id", {"unique": True}),
    ("notification_outbox", [("status", 1), ("next_run_at", 1)], {}),
    ("user_notifications", "id", {"unique": True}),
    ("user_notifications", [("uid", 1), ("createdAt", -1)], {}),
    # Chat identity linking
    ("zalo_link_codes", "code", {"unique": True}),
    ("zalo_link_codes", "uid", {}),
    ("zalo_oa_users", "externalId", {"unique": True}),
    ("zalo_oa_users", "uid", {"sparse": True}),
    ("viber_users", "externalId", {"unique": True}),
    ("audit_logs", [("resource_type", 1), ("resource_id", 1), ("timestamp", -1)], {}),
    ("audit_logs", [("action", 1), ("timestamp", -1)], {}),
]


async def _open(label: str):
    """Connect and ping. Returns (client, db)."""
    db_name = os.environ['DB_NAME']
    client = AsyncIOMotorClient(os.environ['MONGO_URL'], serverSelectionTimeoutMS=SERVER_SELECTION_TIMEOUT_MS)
    db = client[db_name]
    await db.command("ping")
    logger.info(f"{label} connected to MongoDB: {db_name}")
    return client, db


class Database:
    client: AsyncIOMotorClient = None
    db = None

    async def connect(self):
        try:
            self.client, self.db = await _open("API")
            await self.ensure_indexes()
        except Exception as e:
            logger.error(f"Failed to connect to MongoDB: {e}")
            raise

    async def close(self):
        if self.client:
            self.client.close()
            logger.info("MongoDB connection closed")

    def get_db(self):
        return self.db

    async def ensure_indexes(self):
        for collection, keys, options in NOTIFICATION_INDEXES:
            await self.db[collection].create_index(keys, **options)
        logger.info(f"MongoDB indexes verified ({len(NOTIFICATION_INDEXES)})")


# Global database instance
database = Database()


@asynccontextmanager
async def get_db_context():
    """Connection for standalone scripts (seed, one-off replays).

        async with get_db_context() as db:
            await db.deliveries.find_one(...)
    """
    client = None
    try:
        client, db = await _open("Script")
        yield db
    finally:
        if client:
            client.close()
            logger.info("Script MongoDB connection closed")
