import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Iterable, Iterator, List, Optional, Tuple

from ..errors.exceptions import InsufficientFundsError, WalletGuardError
from .retry import simple_retry

# (chain_id, wallet_address, token_address) -> on-chain balance in base units
BalanceFetcher = Callable[[int, str, str], Awaitable[int]]

Reservation = Tuple[int, str, int]   # (chain_id, token_address, amount)


@dataclass
class TokenLedger:
    """
    Per (chain, token) slice of a wallet's ledger.

    `balance_state` is the `current_state` value at the time `balance` was read;
    once `invalidate()` bumps `current_state` the cached balance is stale and
    may not be used as a fallback when a refresh fails.
    """
    token: str                      # original casing, Solana mints are case-sensitive
    pending: int = 0
    balance: Optional[int] = None
    balance_state: int = -1
    current_state: int = 0
    last_used_at: float = 0.0

    @property
    def is_fresh(self) -> bool:
        return self.balance is not None and self.balance_state == self.current_state


class WalletGuard:
    """
    In-memory ledger of on-chain balance vs. in-flight ("pending") spend for one wallet.

    Every mutation of `pending` is a plain synchronous update with no await in
    between the check and the write, so concurrent coroutines reserving the same
    key can never interleave inside it.
    """

    def __init__(
        self,
        address: str,
        balance_fetcher: BalanceFetcher,
        *,
        retry: int = 3,
        retry_delay_sec: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
        logger: Optional[logging.Logger] = None,
    ):
        self.address = address
        self._fetch = balance_fetcher
        self._retry = retry
        self._retry_delay = retry_delay_sec
        self._clock = clock
        self._logger = logger or logging.getLogger(self.__class__.__name__)
        self._ledgers: Dict[str, TokenLedger] = {}

    @staticmethod
    def key(chain_id: int, token: str) -> str:
        return f"{chain_id}:{(token or '').lower()}"

    def _ledger(self, chain_id: int, token: str) -> TokenLedger:
        k = self.key(chain_id, token)
        led = self._ledgers.get(k)
        if led is None:
            led = TokenLedger(token=token, last_used_at=self._clock())
            self._ledgers[k] = led
        return led

    # ---------- reads ----------

    def pending(self, chain_id: int, token: str) -> int:
        led = self._ledgers.get(self.key(chain_id, token))
        return led.pending if led else 0

    def cached_balance(self, chain_id: int, token: str) -> Optional[int]:
        led = self._ledgers.get(self.key(chain_id, token))
        return led.balance if led else None

    async def refresh_balance(self, chain_id: int, token: str) -> int:
        """
        Re-read the on-chain balance (bounded retry). If every attempt fails, the
        cached value is returned only while it is still fresh; otherwise
        WalletGuardError is raised.
        """
        led = self._ledger(chain_id, token)
        state_at_start = led.current_state
        try:
            balance = await simple_retry(
                lambda: self._fetch(chain_id, self.address, led.token),
                retry=self._retry,
                delay_sec=self._retry_delay,
            )
        except Exception as exc:
            if led.is_fresh:
                self._logger.warning(
                    "balance refresh failed for %s %s, using cached value: %s",
                    self.address, self.key(chain_id, token), exc,
                )
                return int(led.balance)
            raise WalletGuardError(
                f"Unable to read balance for {self.address} {self.key(chain_id, token)}: {exc}"
            ) from exc

        led.balance = int(balance)
        led.balance_state = state_at_start
        led.last_used_at = self._clock()
        return led.balance

    async def check_sufficient_funds(self, chain_id: int, token: str, amount_required: int) -> bool:
        balance = await self.refresh_balance(chain_id, token)
        led = self._ledger(chain_id, token)
        available = balance - led.pending
        ok = available >= int(amount_required)
        if not ok:
            self._logger.info(
                "insufficient funds %s %s: required=%s balance=%s pending=%s",
                self.address, self.key(chain_id, token), amount_required, balance, led.pending,
            )
        return ok

    # ---------- reservations ----------

    def add_pending_spend(self, chain_id: int, token: str, amount: int) -> None:
        """
        Reserve `amount` against the last observed balance. Fails closed: with no
        observed balance, or when the effective balance would go negative,
        nothing is reserved and an error is raised.
        """
        amount = int(amount)
        if amount < 0:
            raise ValueError("amount must be non-negative")
        led = self._ledger(chain_id, token)
        if led.balance is None:
            raise WalletGuardError(
                f"No observed balance for {self.address} {self.key(chain_id, token)}", retryable=True
            )
        available = led.balance - led.pending
        if available < amount:
            raise InsufficientFundsError(chain_id, token, amount, max(available, 0))
        led.pending += amount
        led.last_used_at = self._clock()

    def remove_pending_spend(self, chain_id: int, token: str, amount: int) -> None:
        led = self._ledger(chain_id, token)
        led.pending = max(0, led.pending - int(amount))
        led.last_used_at = self._clock()

    def invalidate(self, chain_id: int, token: str) -> None:
        """Mark the cached balance stale, e.g. after a transaction touched it."""
        self._ledger(chain_id, token).current_state += 1

    @contextmanager
    def reservation(self, reservations: Iterable[Reservation]) -> Iterator[List[Reservation]]:
        """
        Reserve every (chain_id, token, amount) for the duration of the block.

        Whatever was reserved is released on every exit path, and the touched
        balances are invalidated because the wrapped operation may have moved funds.
        """
        held: List[Reservation] = []
        try:
            for chain_id, token, amount in reservations:
                if int(amount) <= 0:
                    continue
                self.add_pending_spend(chain_id, token, amount)
                held.append((chain_id, token, int(amount)))
            yield held
        finally:
            for chain_id, token, amount in held:
                self.remove_pending_spend(chain_id, token, amount)
                self.invalidate(chain_id, token)

    # ---------- eviction ----------

    def has_reservations(self) -> bool:
        return any(led.pending > 0 for led in self._ledgers.values())

    def last_used_at(self) -> float:
        if not self._ledgers:
            return 0.0
        return max(led.last_used_at for led in self._ledgers.values())


class WalletGuardRegistry:
    """
    Process-wide owner of WalletGuard instances, keyed by lowercased address.
    Built once by the supervisor and injected wherever guards are needed.
    """

    def __init__(
        self,
        balance_fetcher: BalanceFetcher,
        *,
        ttl_sec: float = 24 * 60 * 60,
        retry: int = 3,
        retry_delay_sec: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
        logger: Optional[logging.Logger] = None,
    ):
        self._fetch = balance_fetcher
        self._ttl = ttl_sec
        self._retry = retry
        self._retry_delay = retry_delay_sec
        self._clock = clock
        self._logger = logger or logging.getLogger(self.__class__.__name__)
        self._guards: Dict[str, Tuple[WalletGuard, float]] = {}

    def get(self, address: str) -> WalletGuard:
        k = (address or "").lower()
        entry = self._guards.get(k)
        if entry is None:
            guard = WalletGuard(
                address,
                self._fetch,
                retry=self._retry,
                retry_delay_sec=self._retry_delay,
                clock=self._clock,
            )
        else:
            guard = entry[0]
        self._guards[k] = (guard, self._clock())
        return guard

    def evict_idle(self) -> int:
        """
        Drop guards idle past the TTL. A guard holding any reservation is kept
        no matter how old it is.
        """
        now = self._clock()
        evicted = 0
        for k, (guard, touched_at) in list(self._guards.items()):
            last = max(touched_at, guard.last_used_at())
            if now - last > self._ttl and not guard.has_reservations():
                del self._guards[k]
                evicted += 1
        if evicted:
            self._logger.info("evicted %s idle wallet guards", evicted)
        return evicted

    def __len__(self) -> int:
        return len(self._guards)

    def __contains__(self, address: str) -> bool:
        return (address or "").lower() in self._guards
