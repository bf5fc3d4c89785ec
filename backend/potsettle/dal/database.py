"""MongoDB database connection management using Motor async driver.

Includes connection lifecycle and index management for the sessions,
players and transactions collections.
"""

import logging
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING

from potsettle.config import settings

logger = logging.getLogger("potsettle.dal.database")

# Global database client and database instances
_client: AsyncIOMotorClient | None = None
_database: AsyncIOMotorDatabase | None = None


async def connect_to_mongo() -> None:
    """Establish connection to MongoDB.

    Called during FastAPI application startup.
    """
    global _client, _database

    _client = AsyncIOMotorClient(
        settings.MONGO_URL,
        serverSelectionTimeoutMS=5000
    )
    _database = _client[settings.DATABASE_NAME]

    await _client.admin.command("ping")
    logger.info("Connected to MongoDB: %s", settings.DATABASE_NAME)


async def close_mongo_connection() -> None:
    """Close MongoDB connection.

    Called during FastAPI application shutdown.
    """
    global _client

    if _client:
        _client.close()
        logger.info("Closed MongoDB connection")


def get_database() -> AsyncIOMotorDatabase:
    """Get the MongoDB database instance.

    Returns:
        AsyncIOMotorDatabase: The database instance.

    Raises:
        RuntimeError: If database is not initialized.
    """
    if _database is None:
        raise RuntimeError(
            "Database not initialized. Call connect_to_mongo() first."
        )
    return _database


async def ensure_indexes(db: AsyncIOMotorDatabase) -> None:
    """Create all collection indexes. Idempotent.

    Args:
        db: The Motor database instance to create indexes on.
    """
    logger.info("Ensuring indexes for all collections...")

    # --- sessions ---
    await db.sessions.create_index(
        [("status", ASCENDING), ("created_at", DESCENDING)],
        name="idx_status_created",
    )

    # --- players ---
    # Player names are unique within a session (case-insensitive check is
    # done by the validator; this guards exact duplicates).
    await db.players.create_index(
        [("session_id", ASCENDING), ("name", ASCENDING)],
        unique=True,
        name="uq_session_player_name",
    )
    await db.players.create_index(
        [("session_id", ASCENDING), ("status", ASCENDING)],
        name="idx_session_status",
    )

    # --- transactions ---
    await db.transactions.create_index(
        [("session_id", ASCENDING), ("created_at", ASCENDING)],
        name="idx_session_created",
    )
    await db.transactions.create_index(
        [("session_id", ASCENDING), ("player_id", ASCENDING)],
        name="idx_session_player",
    )

    logger.info("All indexes ensured successfully.")
