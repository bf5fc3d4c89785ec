"""Session Data Access Layer -- MongoDB operations for the sessions collection."""

import logging
from datetime import datetime
from typing import Optional

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorDatabase

from potsettle.models.common import SessionStatus
from potsettle.models.session import Session

logger = logging.getLogger("potsettle.dal.sessions")

COLLECTION = "sessions"


class SessionDAL:
    """Data access layer for the sessions collection."""

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._collection = db[COLLECTION]

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    async def create(self, session: Session) -> Session:
        """Insert a new session and return it with its generated id."""
        result = await self._collection.insert_one(session.to_mongo_dict())
        session.id = str(result.inserted_id)
        logger.info("Created session %s (%s)", session.id, session.name)
        return session

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    async def get_by_id(self, session_id: str) -> Optional[Session]:
        """Find a session by its ``_id``.

        Returns:
            A Session instance, or None if not found or the id is malformed.
        """
        if not ObjectId.is_valid(session_id):
            return None
        doc = await self._collection.find_one({"_id": ObjectId(session_id)})
        if doc is None:
            return None
        return Session.from_mongo(doc)

    # ------------------------------------------------------------------
    # Update
    # ------------------------------------------------------------------

    async def update_status(
        self,
        session_id: str,
        new_status: SessionStatus,
        timestamp_field: Optional[str] = None,
        timestamp: Optional[datetime] = None,
    ) -> bool:
        """Set the session status, optionally stamping a lifecycle timestamp."""
        if not ObjectId.is_valid(session_id):
            return False
        fields: dict = {"status": str(new_status)}
        if timestamp_field and timestamp:
            fields[timestamp_field] = timestamp
        result = await self._collection.update_one(
            {"_id": ObjectId(session_id)},
            {"$set": fields},
        )
        if result.modified_count > 0:
            logger.info("Session %s status -> %s", session_id, new_status)
        return result.modified_count > 0

    async def increment_pot(self, session_id: str, delta_cents: int) -> bool:
        """Atomically add ``delta_cents`` to the pot.

        A negative delta only applies while the pot holds at least that
        much, so the stored pot can never go below zero.

        Returns:
            True if the pot was updated, False if the guard refused it.
        """
        if not ObjectId.is_valid(session_id):
            return False
        query: dict = {"_id": ObjectId(session_id)}
        if delta_cents < 0:
            query["total_pot_cents"] = {"$gte": -delta_cents}
        result = await self._collection.update_one(
            query,
            {"$inc": {"total_pot_cents": delta_cents}},
        )
        return result.modified_count > 0
