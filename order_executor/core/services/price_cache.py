import logging
from typing import Dict, Iterable, List, Mapping, Optional

from ..domain.constants import CHAIN_CONFIG, COLLATERAL_TOKENS, PRECISION_DECIMALS, is_native
from ..ports.price_oracle import PriceOracle
from .number_utils import safe_parse_units


class PriceCache:
    """
    USD prices (30-decimal fixed point) of collateral tokens, keyed "<chainId>:<address_lower>".

    Refreshed periodically by the supervisor; the native asset of a chain is
    looked up under its wrapped-native address. Missing entries read as 0.
    """

    def __init__(self, oracle: PriceOracle, logger: Optional[logging.Logger] = None):
        self._oracle = oracle
        self._logger = logger or logging.getLogger(self.__class__.__name__)
        self._prices: Dict[str, int] = {}

    @staticmethod
    def key(chain_id: int, address: str) -> str:
        return f"{chain_id}:{(address or '').lower()}"

    def _resolve(self, chain_id: int, address: str) -> str:
        if is_native(address):
            return CHAIN_CONFIG[chain_id].native.address
        return address

    def get(self, chain_id: int, address: str) -> int:
        return self._prices.get(self.key(chain_id, self._resolve(chain_id, address)), 0)

    def set(self, chain_id: int, address: str, price: int) -> None:
        if price and price > 0:
            self._prices[self.key(chain_id, self._resolve(chain_id, address))] = int(price)

    def native_price(self, chain_id: int) -> int:
        return self.get(chain_id, CHAIN_CONFIG[chain_id].native.address)

    async def fetch_prices(self, chain_id: int, addresses: Iterable[str]) -> Dict[str, int]:
        """
        Ask the oracle directly for `addresses` on `chain_id`. Result is keyed by
        the requested address (lowercased); prices obtained also land in the cache.
        Oracle errors propagate.
        """
        requested = list(addresses)
        query: List[Dict] = []
        for addr in requested:
            resolved = self._resolve(chain_id, addr)
            query.append({"address": resolved, "networkId": chain_id})
        if not query:
            return {}

        rows = await self._oracle.token_prices(query)
        by_address: Dict[str, int] = {}
        for row in rows or []:
            if not row:
                continue
            price = safe_parse_units(row.get("priceUsd"), PRECISION_DECIMALS)
            addr = (row.get("address") or "").lower()
            if addr and price > 0:
                by_address[addr] = price
                self._prices[self.key(chain_id, addr)] = price

        out: Dict[str, int] = {}
        for addr in requested:
            out[addr.lower()] = by_address.get(self._resolve(chain_id, addr).lower(), 0)
        return out

    async def refresh(self, tokens: Optional[Mapping[int, List[str]]] = None) -> int:
        """
        Refresh every configured collateral price. One chain failing does not
        stop the others. Returns the number of prices updated.
        """
        tokens = tokens if tokens is not None else COLLATERAL_TOKENS
        updated = 0
        for chain_id, addresses in tokens.items():
            try:
                prices = await self.fetch_prices(chain_id, addresses)
            except Exception as exc:
                self._logger.warning("collateral price refresh failed for chain %s: %s", chain_id, exc)
                continue
            updated += sum(1 for p in prices.values() if p > 0)
        self._logger.info("collateral prices refreshed: %s", updated)
        return updated

    def snapshot(self) -> Dict[str, int]:
        return dict(self._prices)
