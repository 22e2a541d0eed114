import logging

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING

from finledger.core.config import settings

logger = logging.getLogger(__name__)


class MongoDatabase:
    """MongoDB connection manager."""

    client: AsyncIOMotorClient = None
    db: AsyncIOMotorDatabase = None


mongodb = MongoDatabase()


async def connect_to_mongo():
    """Connect to MongoDB."""
    mongodb.client = AsyncIOMotorClient(settings.MONGODB_URI)
    mongodb.db = mongodb.client[settings.MONGODB_DB]

    await create_indexes(mongodb.db)
    logger.info("Connected to MongoDB", extra={"database": settings.MONGODB_DB})


async def disconnect_from_mongo():
    """Disconnect from MongoDB."""
    if mongodb.client is not None:
        mongodb.client.close()
    mongodb.client = None
    mongodb.db = None
    logger.info("Disconnected from MongoDB")


async def create_indexes(db: AsyncIOMotorDatabase):
    """Create database indexes."""
    # Incomes
    await db["incomes"].create_index([("owner_id", ASCENDING), ("date", DESCENDING)])
    await db["incomes"].create_index("recurring_income_id")
    # At most one generated income per template and period
    await db["incomes"].create_index(
        [("recurring_income_id", ASCENDING), ("period.year", ASCENDING), ("period.month", ASCENDING)],
        unique=True,
        partialFilterExpression={"is_auto_created": True},
    )
    await db["income_usages"].create_index([("owner_id", ASCENDING), ("income_id", ASCENDING)])
    await db["income_usages"].create_index("deposit_transaction_id")

    # Deposits
    await db["deposits"].create_index([("owner_id", ASCENDING), ("status", ASCENDING)])
    await db["deposit_transactions"].create_index(
        [("owner_id", ASCENDING), ("deposit_id", ASCENDING), ("transaction_date", DESCENDING)]
    )

    # Credits and debts
    await db["credits"].create_index([("owner_id", ASCENDING), ("status", ASCENDING)])
    await db["credit_payments"].create_index([("credit_id", ASCENDING), ("payment_date", DESCENDING)])
    await db["debts"].create_index([("owner_id", ASCENDING), ("status", ASCENDING)])

    # Expenses
    await db["expenses"].create_index([("owner_id", ASCENDING), ("date", DESCENDING)])
    await db["monthly_expenses"].create_index([("owner_id", ASCENDING), ("due_date", DESCENDING)])

    # Rent
    await db["rent_properties"].create_index([("owner_id", ASCENDING), ("status", ASCENDING)])
    await db["rent_payments"].create_index([("property_id", ASCENDING), ("payment_date", DESCENDING)])

    # Recurring templates
    await db["recurring_incomes"].create_index([("owner_id", ASCENDING), ("is_active", ASCENDING)])

    # Intent log
    await db["ledger_actions"].create_index([("status", ASCENDING), ("created_at", ASCENDING)])


def get_db() -> AsyncIOMotorDatabase:
    """Get database instance."""
    return mongodb.db
