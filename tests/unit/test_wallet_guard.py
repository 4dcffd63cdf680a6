"""
Unit tests for WalletGuard / WalletGuardRegistry: reservation accounting,
fail-closed behaviour, stale-balance fallback and idle eviction.
"""
from unittest.mock import AsyncMock

import pytest

from order_executor.core.errors.exceptions import InsufficientFundsError, WalletGuardError
from order_executor.core.services.wallet_guard import WalletGuard, WalletGuardRegistry

CHAIN = 43114
TOKEN = "0x" + "cd" * 20
WALLET = "0x" + "ab" * 20


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def fetcher():
    return AsyncMock(return_value=1_000)


@pytest.fixture
def guard(fetcher):
    return WalletGuard(WALLET, fetcher, retry=1, retry_delay_sec=0)


# =============================================================================
# Reservations
# =============================================================================


@pytest.mark.asyncio
async def test_add_then_remove_restores_pending(guard):
    await guard.refresh_balance(CHAIN, TOKEN)

    guard.add_pending_spend(CHAIN, TOKEN, 300)
    assert guard.pending(CHAIN, TOKEN) == 300
    guard.remove_pending_spend(CHAIN, TOKEN, 300)

    assert guard.pending(CHAIN, TOKEN) == 0


@pytest.mark.asyncio
async def test_remove_beyond_reserved_floors_at_zero(guard):
    await guard.refresh_balance(CHAIN, TOKEN)
    guard.add_pending_spend(CHAIN, TOKEN, 100)

    guard.remove_pending_spend(CHAIN, TOKEN, 100)
    guard.remove_pending_spend(CHAIN, TOKEN, 100)

    assert guard.pending(CHAIN, TOKEN) == 0


@pytest.mark.asyncio
async def test_reservation_never_exceeds_balance(guard):
    await guard.refresh_balance(CHAIN, TOKEN)
    guard.add_pending_spend(CHAIN, TOKEN, 800)

    with pytest.raises(InsufficientFundsError):
        guard.add_pending_spend(CHAIN, TOKEN, 201)

    assert guard.pending(CHAIN, TOKEN) == 800


def test_reservation_without_observed_balance_fails_closed(guard):
    with pytest.raises(WalletGuardError):
        guard.add_pending_spend(CHAIN, TOKEN, 1)

    assert guard.pending(CHAIN, TOKEN) == 0


@pytest.mark.asyncio
async def test_pending_spend_reduces_available_funds(guard):
    await guard.refresh_balance(CHAIN, TOKEN)
    guard.add_pending_spend(CHAIN, TOKEN, 600)

    assert await guard.check_sufficient_funds(CHAIN, TOKEN, 400) is True
    assert await guard.check_sufficient_funds(CHAIN, TOKEN, 401) is False


@pytest.mark.asyncio
async def test_reservation_block_releases_on_exception(guard):
    await guard.refresh_balance(CHAIN, TOKEN)

    with pytest.raises(RuntimeError):
        with guard.reservation([(CHAIN, TOKEN, 500)]):
            assert guard.pending(CHAIN, TOKEN) == 500
            raise RuntimeError("swap blew up")

    assert guard.pending(CHAIN, TOKEN) == 0


@pytest.mark.asyncio
async def test_partial_reservation_is_rolled_back(guard):
    await guard.refresh_balance(CHAIN, TOKEN)
    other = "0x" + "ef" * 20

    with pytest.raises(WalletGuardError):
        with guard.reservation([(CHAIN, TOKEN, 500), (CHAIN, other, 1)]):
            pass

    assert guard.pending(CHAIN, TOKEN) == 0


@pytest.mark.asyncio
async def test_keys_are_case_insensitive(guard):
    await guard.refresh_balance(CHAIN, TOKEN.upper().replace("0X", "0x"))
    guard.add_pending_spend(CHAIN, TOKEN, 10)

    assert guard.pending(CHAIN, TOKEN.upper()) == 10


# =============================================================================
# Balance refresh
# =============================================================================


@pytest.mark.asyncio
async def test_fresh_cached_balance_used_when_refresh_fails(guard, fetcher):
    await guard.refresh_balance(CHAIN, TOKEN)
    fetcher.side_effect = ConnectionError("rpc down")

    assert await guard.refresh_balance(CHAIN, TOKEN) == 1_000


@pytest.mark.asyncio
async def test_invalidated_balance_is_not_a_fallback(guard, fetcher):
    await guard.refresh_balance(CHAIN, TOKEN)
    guard.invalidate(CHAIN, TOKEN)
    fetcher.side_effect = ConnectionError("rpc down")

    with pytest.raises(WalletGuardError):
        await guard.refresh_balance(CHAIN, TOKEN)


# =============================================================================
# Registry
# =============================================================================


def test_registry_returns_same_guard_per_address(fetcher):
    registry = WalletGuardRegistry(fetcher)

    assert registry.get(WALLET) is registry.get(WALLET.upper().replace("0X", "0x"))
    assert len(registry) == 1


@pytest.mark.asyncio
async def test_idle_guards_are_evicted(fetcher):
    clock = FakeClock()
    registry = WalletGuardRegistry(fetcher, ttl_sec=60, clock=clock)
    registry.get(WALLET)

    clock.now += 61

    assert registry.evict_idle() == 1
    assert WALLET not in registry


@pytest.mark.asyncio
async def test_guard_with_reservation_survives_eviction(fetcher):
    clock = FakeClock()
    registry = WalletGuardRegistry(fetcher, ttl_sec=60, retry=1, retry_delay_sec=0, clock=clock)
    guard = registry.get(WALLET)
    await guard.refresh_balance(CHAIN, TOKEN)
    guard.add_pending_spend(CHAIN, TOKEN, 1)

    clock.now += 3600

    assert registry.evict_idle() == 0
    assert WALLET in registry
