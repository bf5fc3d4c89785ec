"""Transaction Data Access Layer -- ledger of accepted transactions.

Undone transactions are voided in place, never deleted.
"""

import logging
from datetime import datetime
from typing import Optional

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorDatabase

from potsettle.models.transaction import Transaction

logger = logging.getLogger("potsettle.dal.transactions")

COLLECTION = "transactions"


class TransactionDAL:
    """Data access layer for the transactions collection."""

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._collection = db[COLLECTION]

    async def create(self, transaction: Transaction) -> Transaction:
        result = await self._collection.insert_one(transaction.to_mongo_dict())
        transaction.id = str(result.inserted_id)
        logger.info(
            "Recorded %s of %s for player %s in session %s",
            transaction.type,
            transaction.amount,
            transaction.player_id,
            transaction.session_id,
        )
        return transaction

    async def get_by_session(self, session_id: str) -> list[Transaction]:
        """Return a session's transactions in the order they were recorded."""
        cursor = self._collection.find({"session_id": session_id}).sort("created_at", 1)
        transactions: list[Transaction] = []
        async for doc in cursor:
            transactions.append(Transaction.from_mongo(doc))
        return transactions

    async def get_by_id(self, transaction_id: str) -> Optional[Transaction]:
        if not ObjectId.is_valid(transaction_id):
            return None
        doc = await self._collection.find_one({"_id": ObjectId(transaction_id)})
        if doc is None:
            return None
        return Transaction.from_mongo(doc)

    async def void(
        self, transaction_id: str, reason: Optional[str], timestamp: datetime
    ) -> bool:
        """Mark a transaction voided unless it already is.

        Returns:
            True if this call voided it, False if it was already voided.
        """
        if not ObjectId.is_valid(transaction_id):
            return False
        result = await self._collection.update_one(
            {"_id": ObjectId(transaction_id), "is_voided": {"$ne": True}},
            {"$set": {"is_voided": True, "voided_at": timestamp, "void_reason": reason}},
        )
        if result.modified_count > 0:
            logger.info("Voided transaction %s (%s)", transaction_id, reason)
        return result.modified_count > 0

    async def restore(self, transaction_id: str) -> bool:
        """Clear a void that could not be carried through."""
        if not ObjectId.is_valid(transaction_id):
            return False
        result = await self._collection.update_one(
            {"_id": ObjectId(transaction_id)},
            {"$set": {"is_voided": False, "voided_at": None, "void_reason": None}},
        )
        return result.modified_count > 0
