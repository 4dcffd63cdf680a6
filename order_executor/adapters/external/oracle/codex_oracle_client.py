import logging
import time
from typing import Any, Dict, List, Optional

import httpx

from ....core.ports.price_oracle import PriceOracle

TOKEN_PRICES_QUERY = """query GetTokenPrice($inputs: [GetPriceInput]) {
  getTokenPrices(inputs: $inputs) {
    priceUsd
    address
    networkId
    poolAddress
    timestamp
  }
}"""

FILTER_TOKENS_QUERY = """query FilterTokens(
  $filters: TokenFilters
  $statsType: TokenPairStatisticsType
  $tokens: [String]
  $rankings: [TokenRanking]
  $limit: Int
  $offset: Int
) {
  filterTokens(
    filters: $filters
    statsType: $statsType
    tokens: $tokens
    rankings: $rankings
    limit: $limit
    offset: $offset
  ) {
    results {
      change1
      change4
      change12
      change24
      createdAt
      fdv
      holders
      liquidity
      marketCap
      priceUSD
      quoteToken
      volume1
      volume24
      pair {
        address
        id
        networkId
        token0
        token1
      }
      token {
        address
        decimals
        id
        name
        networkId
        symbol
      }
    }
    count
    page
  }
}"""

_BARS_FIELDS = """{
        s
        o
        h
        l
        c
        t
        volume
        buyVolume
        sellVolume
        transactions
        traders
      }"""

ONE_YEAR_SEC = 31_536_000


def _floats(values: Optional[List[Any]]) -> List[float]:
    return [float(v or 0) for v in (values or [])]


class CodexOracleClient(PriceOracle):
    """
    GraphQL client for the token/market data oracle.

    All calls POST {query, variables} to one endpoint with the API key in the
    `authorization` header. Failures raise; callers decide what "no data" means.
    """

    def __init__(
        self,
        url: str,
        api_key: str,
        timeout_sec: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._url = url
        self._headers = {"Content-Type": "application/json", "authorization": api_key}
        self._timeout = timeout_sec
        self._transport = transport
        self._logger = logging.getLogger(self.__class__.__name__)

    async def _post(self, query: str, variables: Dict[str, Any]) -> Dict[str, Any]:
        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            r = await client.post(self._url, json={"query": query, "variables": variables}, headers=self._headers)
            if r.status_code != 200:
                self._logger.warning("oracle non-200 %s: %s %s", self._url, r.status_code, r.text[:300])
            r.raise_for_status()
            body = r.json()
        if body.get("errors"):
            raise ValueError(f"oracle query failed: {body['errors']}")
        data = body.get("data")
        if data is None:
            raise ValueError("Invalid response from oracle: no data")
        return data

    async def token_prices(self, tokens: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        if not tokens:
            return []
        data = await self._post(TOKEN_PRICES_QUERY, {"inputs": tokens})
        return [p for p in (data.get("getTokenPrices") or []) if p]

    async def filter_tokens(self, token_keys: List[str], limit: int = 200) -> List[Dict[str, Any]]:
        if not token_keys:
            return []
        data = await self._post(
            FILTER_TOKENS_QUERY,
            {
                "tokens": token_keys,
                "rankings": [{"attribute": "volume24", "direction": "DESC"}],
                "filters": {"change24": {}},
                "limit": int(limit),
            },
        )
        return list(((data.get("filterTokens") or {}).get("results")) or [])

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
        One GraphQL request with an aliased getBars per resolution (res_0, res_1, ...).
        A resolution with no bars comes back as {"success": False, ...empty series}.
        """
        if not pair_address or not chain_id or not quote_token or not resolutions:
            raise ValueError("Missing required parameters for multi-timeframe fetch")

        to = int(time.time())
        frm = max(to - ONE_YEAR_SEC, int(created_at or 0))
        definitions = [
            "$symbol: String!",
            "$to: Int!",
            "$from: Int!",
            "$countback: Int",
            "$currencyCode: String",
            "$quoteToken: QuoteToken",
            "$statsType: TokenPairStatisticsType",
            "$removeLeadingNullValues: Boolean",
            "$removeEmptyBars: Boolean",
        ]
        variables: Dict[str, Any] = {
            "symbol": f"{pair_address}:{chain_id}",
            "to": to,
            "from": frm,
            "countback": int(limit),
            "currencyCode": "USD",
            "quoteToken": quote_token,
            "statsType": "FILTERED",
            "removeLeadingNullValues": True,
            "removeEmptyBars": True,
        }
        blocks = []
        for i, resolution in enumerate(resolutions):
            definitions.append(f"$resolution_{i}: String!")
            variables[f"resolution_{i}"] = resolution
            blocks.append(
                f"""res_{i}: getBars(
        symbol: $symbol
        countback: $countback
        from: $from
        to: $to
        resolution: $resolution_{i}
        currencyCode: $currencyCode
        quoteToken: $quoteToken
        statsType: $statsType
        removeLeadingNullValues: $removeLeadingNullValues
        removeEmptyBars: $removeEmptyBars
      ) {_BARS_FIELDS}"""
            )
        query = f"query GetMultiTimeframeBars({', '.join(definitions)}) {{\n      {' '.join(blocks)}\n    }}"

        data = await self._post(query, variables)
        result: Dict[str, Dict[str, Any]] = {}
        for i, resolution in enumerate(resolutions):
            bars = data.get(f"res_{i}") or {}
            if not bars.get("t"):
                result[resolution] = {
                    "success": False,
                    "opens": [], "highs": [], "lows": [], "closes": [], "volumes": [], "times": [],
                }
                continue
            result[resolution] = {
                "success": True,
                "opens": _floats(bars.get("o")),
                "highs": _floats(bars.get("h")),
                "lows": _floats(bars.get("l")),
                "closes": _floats(bars.get("c")),
                "volumes": _floats(bars.get("volume")),
                "times": [int(t) * 1000 for t in bars["t"]],
                "buy_volumes": _floats(bars.get("buyVolume")),
                "sell_volumes": _floats(bars.get("sellVolume")),
                "transactions": _floats(bars.get("transactions")),
                "traders": _floats(bars.get("traders")),
            }
        return result
