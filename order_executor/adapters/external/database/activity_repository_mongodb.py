# order_executor/adapters/external/database/activity_repository_mongodb.py

import time
from datetime import datetime, timezone
from typing import Optional

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorDatabase

from ....core.domain.entities.activity_entity import ActivityEntity
from ....core.repositories.activity_repository import ActivityRepository


class ActivityRepositoryMongoDB(ActivityRepository):
    """
    Append-only audit trail of realized on-chain effects.
    """

    COLLECTION = "activities"

    def __init__(self, db: AsyncIOMotorDatabase):
        self._col = db[self.COLLECTION]

    async def ensure_indexes(self) -> None:
        await self._col.create_index([("order", 1), ("created_at", -1)], name="ix_order_created_at")
        await self._col.create_index([("wallet", 1), ("created_at", -1)], name="ix_wallet_created_at")
        await self._col.create_index([("tx_hash", 1), ("type", 1)], name="ix_tx_hash_type")

    async def insert(self, activity: ActivityEntity) -> str:
        now_ms = int(time.time() * 1000)
        doc = activity.model_dump(mode="json", exclude={"id"})
        doc["created_at"] = now_ms
        doc["created_at_iso"] = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
        res = await self._col.insert_one(doc)
        return str(res.inserted_id)

    async def get(self, activity_id: str) -> Optional[ActivityEntity]:
        key = ObjectId(activity_id) if ObjectId.is_valid(activity_id) else activity_id
        doc = await self._col.find_one({"_id": key})
        return ActivityEntity.model_validate(doc) if doc else None

    async def update_usd(
        self,
        activity_id: str,
        *,
        pay_in_usd: Optional[int] = None,
        receive_in_usd: Optional[int] = None,
        fee_in_usd: Optional[int] = None,
    ) -> None:
        fields = {}
        if pay_in_usd is not None:
            fields["pay_token.amount_in_usd"] = str(pay_in_usd)
        if receive_in_usd is not None:
            fields["receive_token.amount_in_usd"] = str(receive_in_usd)
        if fee_in_usd is not None:
            fields["tx_fee.fee_in_usd"] = str(fee_in_usd)
        if not fields:
            return
        fields["updated_at"] = int(time.time() * 1000)
        key = ObjectId(activity_id) if ObjectId.is_valid(activity_id) else activity_id
        await self._col.update_one({"_id": key}, {"$set": fields})
