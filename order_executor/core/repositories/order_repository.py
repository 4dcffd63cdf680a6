from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from ..domain.entities.order_entity import OrderEntity, OrderUpdate


class OrderRepository(ABC):

    @abstractmethod
    async def ensure_indexes(self) -> None:
        raise NotImplementedError

    @abstractmethod
    async def get(self, order_id: str) -> Optional[OrderEntity]:
        raise NotImplementedError

    @abstractmethod
    async def claim_for_open(self, order_id: str, max_retry: int) -> Optional[OrderEntity]:
        """
        Atomically move a PENDING, non-busy order with retry budget left to
        PROCESSING/busy and bump its retry counter.

        Returns the claimed order with wallet/user populated, or None when no
        document matched (already claimed elsewhere or not eligible).
        """
        raise NotImplementedError

    @abstractmethod
    async def claim_for_close(self, order_id: str, max_retry: int) -> Optional[OrderEntity]:
        """
        Same as claim_for_open, matching PENDING or OPENED orders.
        """
        raise NotImplementedError

    @abstractmethod
    async def claim_for_process(self, order_id: str, max_retry: int) -> Optional[OrderEntity]:
        """
        Claim a PROCESSING, non-busy order that carries a checkpoint.
        """
        raise NotImplementedError

    @abstractmethod
    async def update(self, order_id: str, update: OrderUpdate) -> None:
        raise NotImplementedError

    @abstractmethod
    async def find_accumulated_siblings(self, order: OrderEntity) -> List[OrderEntity]:
        """
        OPENED, active, non-busy SELL orders sharing name and strategy with `order`
        (excluding `order` itself).
        """
        raise NotImplementedError

    @abstractmethod
    async def group_active_orders(self) -> List[Dict]:
        """
        Active, non-busy PENDING/OPENED/PROCESSING orders grouped by (order token, chain).

        Each group: {"token": str, "chain_id": int, "has_technical": bool,
                     "orders": List[OrderEntity]}
        """
        raise NotImplementedError
