"""Player Data Access Layer -- MongoDB operations for the players collection.

Money totals are stored as integer cents and incremented atomically.
"""

import logging
from datetime import datetime
from typing import Optional

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorDatabase

from potsettle.models.common import PlayerStatus
from potsettle.models.player import PlayerLedgerEntry

logger = logging.getLogger("potsettle.dal.players")

COLLECTION = "players"


class PlayerDAL:
    """Data access layer for the players collection."""

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._collection = db[COLLECTION]

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    async def create(self, player: PlayerLedgerEntry) -> PlayerLedgerEntry:
        """Insert a new player and return it with its generated id."""
        result = await self._collection.insert_one(player.to_mongo_dict())
        player.id = str(result.inserted_id)
        logger.info(
            "Created player %s (name=%s) in session %s",
            player.id,
            player.name,
            player.session_id,
        )
        return player

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    async def get_by_id(self, player_id: str) -> Optional[PlayerLedgerEntry]:
        if not ObjectId.is_valid(player_id):
            return None
        doc = await self._collection.find_one({"_id": ObjectId(player_id)})
        if doc is None:
            return None
        return PlayerLedgerEntry.from_mongo(doc)

    async def get_by_session(self, session_id: str) -> list[PlayerLedgerEntry]:
        """List every player of a session in join order, any status."""
        cursor = self._collection.find({"session_id": session_id}).sort("joined_at", 1)
        players: list[PlayerLedgerEntry] = []
        async for doc in cursor:
            players.append(PlayerLedgerEntry.from_mongo(doc))
        return players

    async def count_by_session(self, session_id: str) -> int:
        return await self._collection.count_documents({"session_id": session_id})

    # ------------------------------------------------------------------
    # Ledger updates
    # ------------------------------------------------------------------

    async def record_buy_in(self, player_id: str, amount_cents: int) -> bool:
        """Atomically add a buy-in to an active player's total."""
        if not ObjectId.is_valid(player_id):
            return False
        result = await self._collection.update_one(
            {"_id": ObjectId(player_id), "status": str(PlayerStatus.ACTIVE)},
            {"$inc": {"total_buy_ins_cents": amount_cents}},
        )
        return result.modified_count > 0

    async def record_cash_out(
        self,
        player_id: str,
        amount_cents: int,
        cash_out_completely: bool,
        timestamp: datetime,
    ) -> bool:
        """Atomically add a cash-out, marking the player cashed out if complete."""
        if not ObjectId.is_valid(player_id):
            return False
        update: dict = {"$inc": {"total_cash_outs_cents": amount_cents}}
        if cash_out_completely:
            update["$set"] = {
                "status": str(PlayerStatus.CASHED_OUT),
                "cashed_out_at": timestamp,
            }
        result = await self._collection.update_one(
            {"_id": ObjectId(player_id), "status": str(PlayerStatus.ACTIVE)},
            update,
        )
        if result.modified_count > 0 and cash_out_completely:
            logger.info("Player %s cashed out", player_id)
        return result.modified_count > 0

    async def reverse_buy_in(self, player_id: str, amount_cents: int) -> bool:
        """Take back a buy-in from an active player still holding the chips."""
        if not ObjectId.is_valid(player_id):
            return False
        result = await self._collection.update_one(
            {
                "_id": ObjectId(player_id),
                "status": str(PlayerStatus.ACTIVE),
                "total_buy_ins_cents": {"$gte": amount_cents},
            },
            {"$inc": {"total_buy_ins_cents": -amount_cents}},
        )
        return result.modified_count > 0

    async def reverse_cash_out(self, player_id: str, amount_cents: int) -> bool:
        """Take back a cash-out and put the player back in the game."""
        if not ObjectId.is_valid(player_id):
            return False
        result = await self._collection.update_one(
            {
                "_id": ObjectId(player_id),
                "total_cash_outs_cents": {"$gte": amount_cents},
            },
            {
                "$inc": {"total_cash_outs_cents": -amount_cents},
                "$set": {"status": str(PlayerStatus.ACTIVE), "cashed_out_at": None},
            },
        )
        if result.modified_count > 0:
            logger.info("Player %s reactivated by undo", player_id)
        return result.modified_count > 0
