import logging
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING, TEXT, IndexModel

from bookhive import config

logger = logging.getLogger(__name__)

client: AsyncIOMotorClient = None


async def init_db():
    global client
    logger.info(f"Connecting to MongoDB database '{config.MONGODB_DB_NAME}'")
    client = AsyncIOMotorClient(config.MONGODB_URL, tz_aware=True)


async def close_db_connection():
    global client
    if client:
        client.close()
        client = None
        logger.info("MongoDB connection closed")


def get_database() -> AsyncIOMotorDatabase:
    return client[config.MONGODB_DB_NAME]


async def ensure_indexes(db: AsyncIOMotorDatabase):
    await db.books.create_indexes(
        [
            IndexModel([("isbn", ASCENDING)], unique=True),
            IndexModel([("genre", ASCENDING)]),
            IndexModel([("available", ASCENDING)]),
            IndexModel([("title", TEXT), ("author", TEXT)]),
        ]
    )
    await db.borrows.create_indexes(
        [
            IndexModel([("book", ASCENDING)]),
            IndexModel([("due_date", ASCENDING)]),
            IndexModel([("created_at", DESCENDING)]),
        ]
    )
    logger.info("Collection indexes ensured")


async def run_in_transaction(db: AsyncIOMotorDatabase, operation):
    """Run ``operation(session)`` inside a transaction when enabled.

    Without transactions the operation receives ``None`` as its session.
    """
    if not config.MONGODB_USE_TRANSACTIONS:
        return await operation(None)
    async with await db.client.start_session() as session:
        return await session.with_transaction(operation)
