from abc import ABC, abstractmethod
from typing import Optional

from ..domain.entities.activity_entity import ActivityEntity


class ActivityRepository(ABC):

    @abstractmethod
    async def ensure_indexes(self) -> None:
        raise NotImplementedError

    @abstractmethod
    async def insert(self, activity: ActivityEntity) -> str:
        """
        Persist a new activity and return its id.
        """
        raise NotImplementedError

    @abstractmethod
    async def get(self, activity_id: str) -> Optional[ActivityEntity]:
        raise NotImplementedError

    @abstractmethod
    async def update_usd(
        self,
        activity_id: str,
        *,
        pay_in_usd: Optional[int] = None,
        receive_in_usd: Optional[int] = None,
        fee_in_usd: Optional[int] = None,
    ) -> None:
        """
        Backfill USD valuation fields only; every other field is immutable.
        """
        raise NotImplementedError
