import logging

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from splitbill.core.config import settings

logger = logging.getLogger(__name__)

class MongoDatabase:
    """MongoDB connection manager."""

    client: AsyncIOMotorClient = None
    db: AsyncIOMotorDatabase = None

mongodb = MongoDatabase()

async def connect_to_mongo():
    """Connect to MongoDB."""
    mongodb.client = AsyncIOMotorClient(settings.MONGODB_URL, tz_aware=True)
    mongodb.db = mongodb.client[settings.DATABASE_NAME]

    await create_indexes(mongodb.db)
    logger.info("Connected to MongoDB: %s", settings.DATABASE_NAME)

async def close_mongo_connection():
    """Disconnect from MongoDB."""
    if mongodb.client is not None:
        mongodb.client.close()
    logger.info("Disconnected from MongoDB")

async def create_indexes(db: AsyncIOMotorDatabase):
    """Create database indexes."""
    # At most one non-terminal session per originating cart
    await db["split_sessions"].create_index(
        "cart_ref",
        unique=True,
        partialFilterExpression={"status": "active"},
        name="uniq_active_cart"
    )
    await db["split_sessions"].create_index("participants.identifier_lower")
    await db["split_sessions"].create_index([("status", 1), ("expires_at", 1)])

    # Materialization key is the order idempotency key
    await db["orders"].create_index("materialization_key", unique=True, sparse=True)
    await db["orders"].create_index([("cafeteria_id", 1), ("created_at", 1)])

    await db["order_receipts"].create_index("order_id", unique=True)
