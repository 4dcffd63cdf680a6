import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, Optional

TWO_DAYS_SEC = 2 * 24 * 60 * 60

NonceFetcher = Callable[[], Awaitable[int]]


@dataclass
class _NonceSlot:
    next_nonce: Optional[int] = None
    last_used_at: float = 0.0
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class NonceTracker:
    """
    Process-local nonce allocator, one slot per (chain, address).

    The first allocation reads the pending transaction count from the chain;
    later ones hand out consecutive numbers so concurrent sends from the same
    wallet do not collide. `reset()` drops the local counter so the next
    allocation re-reads the chain (used after a nonce error or a failed broadcast).

    Idle slots expire after `ttl_sec`; above `max_size` the oldest 10% are evicted.
    """

    def __init__(
        self,
        ttl_sec: float = TWO_DAYS_SEC,
        max_size: int = 300,
        clock: Callable[[], float] = time.monotonic,
        logger: Optional[logging.Logger] = None,
    ):
        self._ttl = ttl_sec
        self._max_size = max(1, int(max_size))
        self._clock = clock
        self._slots: Dict[str, _NonceSlot] = {}
        self._logger = logger or logging.getLogger(self.__class__.__name__)

    @staticmethod
    def key(chain_id: int, address: str) -> str:
        return f"{chain_id}:{address.lower()}"

    def __len__(self) -> int:
        return len(self._slots)

    def _slot(self, chain_id: int, address: str) -> _NonceSlot:
        k = self.key(chain_id, address)
        slot = self._slots.get(k)
        if slot is None:
            slot = _NonceSlot(last_used_at=self._clock())
            self._slots[k] = slot
            self.cleanup()
        return slot

    async def next_nonce(self, chain_id: int, address: str, fetch: NonceFetcher) -> int:
        slot = self._slot(chain_id, address)
        async with slot.lock:
            if slot.next_nonce is None:
                slot.next_nonce = int(await fetch())
            nonce = slot.next_nonce
            slot.next_nonce = nonce + 1
            slot.last_used_at = self._clock()
            return nonce

    def reset(self, chain_id: int, address: str) -> None:
        slot = self._slots.get(self.key(chain_id, address))
        if slot is not None:
            slot.next_nonce = None
            self._logger.debug("nonce reset for %s", self.key(chain_id, address))

    def cleanup(self) -> None:
        now = self._clock()
        for k in [k for k, s in self._slots.items() if now - s.last_used_at > self._ttl and not s.lock.locked()]:
            del self._slots[k]

        while len(self._slots) > self._max_size:
            oldest = sorted(self._slots.items(), key=lambda kv: kv[1].last_used_at)
            victims = [k for k, s in oldest if not s.lock.locked()][: max(1, len(oldest) // 10)]
            if not victims:
                break
            for k in victims:
                del self._slots[k]
