import logging
from typing import Dict, Iterable, Optional

from ....core.ports.chain_adapter import ChainAdapter, ChainAdapterProvider


class ChainAdapterRegistry(ChainAdapterProvider):
    """
    chain_id -> ChainAdapter, resolved once at startup.
    """

    def __init__(self, adapters: Iterable[ChainAdapter] = (), logger: Optional[logging.Logger] = None):
        self._adapters: Dict[int, ChainAdapter] = {}
        self._logger = logger or logging.getLogger(self.__class__.__name__)
        for adapter in adapters:
            self.register(adapter)

    def register(self, adapter: ChainAdapter) -> None:
        self._adapters[int(adapter.chain_id)] = adapter
        self._logger.info("chain adapter registered: %s (%s)", adapter.chain_id, adapter.__class__.__name__)

    def get(self, chain_id: int) -> ChainAdapter:
        adapter = self._adapters.get(int(chain_id))
        if adapter is None:
            raise KeyError(f"No chain adapter configured for chain_id={chain_id}")
        return adapter

    def chain_ids(self):
        return sorted(self._adapters)

    async def close(self) -> None:
        for adapter in self._adapters.values():
            close = getattr(adapter, "close", None)
            if close is not None:
                await close()
