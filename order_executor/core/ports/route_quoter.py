from abc import ABC, abstractmethod

from ..domain.entities.execution_entity import SwapRoute


class RouteQuoter(ABC):
    """
    One request to one aggregator. Raising is fine here, the route aggregator
    catches and classifies per aggregator.
    """

    @abstractmethod
    async def quote(
        self,
        aggregator: str,
        chain_id: int,
        token_in: str,
        token_out: str,
        amount_in: int,
        slippage_bps: int,
        user_address: str,
    ) -> SwapRoute:
        raise NotImplementedError
