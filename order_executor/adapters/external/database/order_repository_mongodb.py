# order_executor/adapters/external/database/order_repository_mongodb.py

import logging
import time
from typing import Any, Dict, List, Optional

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pydantic import ValidationError
from pymongo import ReturnDocument

from ....core.domain.entities.order_entity import OrderEntity, OrderUpdate
from ....core.domain.enums.order_enums import OrderMessage, OrderStatus, OrderType
from ....core.repositories.order_repository import OrderRepository


def _oid(value: Any) -> Any:
    if isinstance(value, ObjectId):
        return value
    if isinstance(value, str) and ObjectId.is_valid(value):
        return ObjectId(value)
    return value


class OrderRepositoryMongoDB(OrderRepository):
    """
    Orders live in 'orders'; wallets and users are read from their own
    collections to populate a claimed order.

    The claim_* methods are the mutual-exclusion primitive: one
    find_one_and_update matching status + is_busy=False + retry budget.
    """

    COLLECTION = "orders"
    WALLETS = "wallets"
    USERS = "users"

    def __init__(self, db: AsyncIOMotorDatabase):
        self._col = db[self.COLLECTION]
        self._wallets = db[self.WALLETS]
        self._users = db[self.USERS]
        self._logger = logging.getLogger(self.__class__.__name__)

    async def ensure_indexes(self) -> None:
        await self._col.create_index(
            [("order_status", 1), ("is_active", 1), ("is_busy", 1)],
            name="ix_status_active_busy",
        )
        await self._col.create_index(
            [("order_asset.order_token.address", 1), ("chain_id", 1)],
            name="ix_order_token_chain",
        )
        await self._col.create_index(
            [("name", 1), ("strategy", 1), ("order_status", 1)],
            name="ix_name_strategy_status",
        )

    async def _populate(self, doc: Optional[Dict]) -> Optional[OrderEntity]:
        if doc is None:
            return None
        wallet = await self._wallets.find_one({"_id": _oid(doc.get("wallet"))}) if doc.get("wallet") else None
        user = await self._users.find_one({"_id": _oid(doc.get("user"))}) if doc.get("user") else None
        return OrderEntity.model_validate({**doc, "wallet_info": wallet, "user_info": user})

    async def get(self, order_id: str) -> Optional[OrderEntity]:
        doc = await self._col.find_one({"_id": _oid(order_id)})
        return await self._populate(doc)

    async def _claim(self, match: Dict, message: OrderMessage) -> Optional[OrderEntity]:
        now_ms = int(time.time() * 1000)
        doc = await self._col.find_one_and_update(
            match,
            {
                "$set": {
                    "order_status": OrderStatus.PROCESSING.value,
                    "is_busy": True,
                    "message": message.value,
                    "updated_at": now_ms,
                },
                "$inc": {"additional.retry": 1},
            },
            return_document=ReturnDocument.AFTER,
        )
        return await self._populate(doc)

    @staticmethod
    def _retry_budget(max_retry: int) -> Dict:
        return {
            "$or": [
                {"additional.retry": {"$lt": max_retry}},
                {"additional.retry": {"$exists": False}},
            ]
        }

    async def claim_for_open(self, order_id: str, max_retry: int) -> Optional[OrderEntity]:
        return await self._claim(
            {
                "_id": _oid(order_id),
                "order_status": OrderStatus.PENDING.value,
                "is_busy": False,
                **self._retry_budget(max_retry),
            },
            OrderMessage.PROCESSING_ORDER,
        )

    async def claim_for_close(self, order_id: str, max_retry: int) -> Optional[OrderEntity]:
        return await self._claim(
            {
                "_id": _oid(order_id),
                "order_status": {"$in": [OrderStatus.PENDING.value, OrderStatus.OPENED.value]},
                "is_busy": False,
                **self._retry_budget(max_retry),
            },
            OrderMessage.PROCESSING_ORDER,
        )

    async def claim_for_process(self, order_id: str, max_retry: int) -> Optional[OrderEntity]:
        return await self._claim(
            {
                "_id": _oid(order_id),
                "order_status": OrderStatus.PROCESSING.value,
                "is_busy": False,
                "additional.in_processing": {"$ne": None},
                **self._retry_budget(max_retry),
            },
            OrderMessage.RESUMING_ORDER,
        )

    async def update(self, order_id: str, update: OrderUpdate) -> None:
        fields = update.to_set_document()
        if not fields:
            return
        fields["updated_at"] = int(time.time() * 1000)
        await self._col.update_one({"_id": _oid(order_id)}, {"$set": fields})

    async def find_accumulated_siblings(self, order: OrderEntity) -> List[OrderEntity]:
        cursor = self._col.find(
            {
                "_id": {"$ne": _oid(order.id)},
                "name": order.name,
                "strategy": order.strategy,
                "order_status": OrderStatus.OPENED.value,
                "is_active": True,
                "is_busy": False,
                "order_type": OrderType.SELL.value,
            }
        )
        docs = await cursor.to_list(length=None)
        return [OrderEntity.model_validate(d) for d in docs]

    async def group_active_orders(self) -> List[Dict]:
        pipeline = [
            {
                "$match": {
                    "is_active": True,
                    "is_busy": False,
                    "order_status": {
                        "$in": [OrderStatus.PENDING.value, OrderStatus.OPENED.value, OrderStatus.PROCESSING.value]
                    },
                    "order_asset.order_token.address": {"$exists": True, "$ne": None},
                    "chain_id": {"$exists": True, "$ne": None},
                }
            },
            {
                "$group": {
                    "_id": {"token": "$order_asset.order_token.address", "chain_id": "$chain_id"},
                    "orders": {"$push": "$$ROOT"},
                    "count": {"$sum": 1},
                }
            },
            {"$sort": {"count": -1}},
        ]
        groups: List[Dict] = []
        async for row in self._col.aggregate(pipeline):
            orders: List[OrderEntity] = []
            for d in row.get("orders", []):
                try:
                    orders.append(OrderEntity.model_validate(d))
                except ValidationError as exc:
                    self._logger.warning("skipping malformed order %s: %s", d.get("_id"), exc)
            if not orders:
                continue
            groups.append(
                {
                    "token": row["_id"]["token"],
                    "chain_id": row["_id"]["chain_id"],
                    "has_technical": any(o.is_technical for o in orders),
                    "orders": orders,
                }
            )
        return groups
