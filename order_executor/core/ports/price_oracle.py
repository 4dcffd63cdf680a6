from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional


class PriceOracle(ABC):

    @abstractmethod
    async def token_prices(self, tokens: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """
        [{"address", "networkId"}] -> [{"address", "networkId", "priceUsd"}]
        """
        raise NotImplementedError

    @abstractmethod
    async def filter_tokens(self, token_keys: List[str], limit: int = 200) -> List[Dict[str, Any]]:
        """
        Market snapshots for "<address>:<chainId>" keys:
        [{"token": {...}, "pair": {...}, "priceUSD", "liquidity", "holders", ...}]
        """
        raise NotImplementedError

    @abstractmethod
    async def multi_timeframe_candles(
        self,
        pair_address: str,
        chain_id: int,
        quote_token: str,
        resolutions: List[str],
        created_at: Optional[int],
        limit: int = 500,
    ) -> Dict[str, Dict[str, Any]]:
        """
        resolution -> {"success", "opens", "highs", "lows", "closes", "volumes", "times"}
        """
        raise NotImplementedError
