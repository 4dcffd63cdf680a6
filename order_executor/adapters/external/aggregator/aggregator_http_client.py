import logging
from typing import Any, Dict, Optional

import httpx

from ....core.domain.constants import CHAIN_CONFIG, SOL_MINT, SOLANA_SYSTEM_PROGRAM, is_native, is_solana
from ....core.domain.entities.execution_entity import SwapRoute
from ....core.ports.route_quoter import RouteQuoter


class AggregatorHttpClient(RouteQuoter):
    """
    Thin async HTTP wrapper around the swap-route router.

    EVM:    {base_url}/{chain}/{aggregator}/swap               -> ready tx (to/from/data/value)
    Solana: {base_url}/solana/{aggregator}/swap-instruction    -> instructions + lookup tables

    No route selection here, only raw HTTP; non-200 and malformed payloads raise.
    """

    def __init__(
        self,
        base_url: str,
        timeout_sec: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout_sec
        self._transport = transport
        self._logger = logging.getLogger(self.__class__.__name__)

    async def _get(self, url: str, params: Dict[str, Any]) -> Dict[str, Any]:
        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            r = await client.get(url, params=params)
            if r.status_code != 200:
                self._logger.warning("route non-200 %s: %s %s", url, r.status_code, r.text[:300])
            r.raise_for_status()
            return r.json()

    @staticmethod
    def solana_mint(token: str, aggregator: str) -> str:
        """Native SOL is addressed as wrapped SOL on jupiter and as the system program elsewhere."""
        if not is_native(token):
            return token
        return SOL_MINT if aggregator == "jupiter" else SOLANA_SYSTEM_PROGRAM

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
        if is_solana(chain_id):
            return await self._quote_solana(aggregator, token_in, token_out, amount_in, slippage_bps, user_address)

        url = f"{self._base_url}/{CHAIN_CONFIG[chain_id].name.lower()}/{aggregator}/swap"
        data = await self._get(
            url,
            {
                "amountIn": str(amount_in),
                "feeBps": 0,
                "slippageBps": slippage_bps,
                "tokenIn": token_in,
                "tokenOut": token_out,
                "userAddress": user_address,
            },
        )
        if not data or data.get("amountOut") is None or not data.get("to"):
            raise ValueError(f"Invalid response from aggregator {aggregator}")
        return SwapRoute(
            aggregator=aggregator,
            amount_out=int(data["amountOut"]),
            tx_data={
                "to": data["to"],
                "from": data.get("from") or user_address,
                "data": data.get("data") or "0x",
                "value": data.get("value") or 0,
            },
        )

    async def _quote_solana(
        self,
        aggregator: str,
        token_in: str,
        token_out: str,
        amount_in: int,
        slippage_bps: int,
        user_address: str,
    ) -> SwapRoute:
        url = f"{self._base_url}/solana/{aggregator}/swap-instruction"
        data = await self._get(
            url,
            {
                "amountIn": str(amount_in),
                "slippageBps": slippage_bps,
                "feeBps": 0,
                "tokenIn": self.solana_mint(token_in, aggregator),
                "tokenOut": self.solana_mint(token_out, aggregator),
                "userAddress": user_address,
            },
        )
        if not data or data.get("amountOut") is None or not data.get("instructions"):
            raise ValueError(f"Invalid response from aggregator {aggregator}")
        return SwapRoute(
            aggregator=aggregator,
            amount_out=int(data["amountOut"]),
            instructions=list(data["instructions"]),
            address_lookup_tables=list(data.get("addressLookupTable") or []),
        )
