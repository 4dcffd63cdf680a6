"""
Unit tests for TradeFeeService and PriceCache.
"""
import pytest

from order_executor.core.domain.constants import NATIVE_TOKEN_ADDRESS, Chains
from order_executor.core.domain.entities.order_entity import OrderEntity, TokenInfo
from order_executor.core.domain.enums.order_enums import ActivityType
from order_executor.core.errors.exceptions import ExecutionError, TransactionRevertedError, TxPendingError

P = 10**30
CHAIN = Chains.AVALANCHE
USDC = "0xB97EF9Ef8734C71904D8002F8b6Bc66Dd9c48a6E"

# =============================================================================
# Fee rate
# =============================================================================


@pytest.mark.parametrize(
    "status,priority,bps",
    [("user", 1, 10), ("user", 2, 15), ("admin", 2, 0), ("ADMIN", 1, 0), (None, 1, 10)],
)
def test_fee_bps(harness, status, priority, bps):
    assert harness.fees.fee_bps(status, priority) == bps


def test_fee_amount_rounds_down(harness):
    assert harness.fees.fee_amount(9_999, 10) == 9
    assert harness.fees.fee_amount(100_000_000, 0) == 0


def test_collector_per_chain_family(harness):
    assert harness.fees.collector(CHAIN) == "0x" + "fe" * 20
    assert harness.fees.collector(Chains.SOLANA) == ""


# =============================================================================
# Withdrawal
# =============================================================================


@pytest.fixture
def order(harness, order_factory):
    return OrderEntity.model_validate(order_factory())


@pytest.fixture
def usdc():
    return TokenInfo(address=USDC, decimals=6, symbol="USDC")


@pytest.mark.asyncio
async def test_withdraw_records_trade_fee_activity(harness, order, usdc):
    result = await harness.fees.withdraw(order, object(), usdc, 1_000_000, native_price_usd=20 * P, token_price_usd=P)

    assert result.execution is True
    assert result.signature == "0xfee1"
    assert result.value_in_usd == P
    assert result.fee_in_usd == 500 * 20 * P // 10**18
    activity = harness.activities.items[result.activity_id]
    assert activity.type == ActivityType.TRADE_FEE
    assert activity.pay_token.amount == 1_000_000


@pytest.mark.asyncio
async def test_withdraw_transfer_failure_is_not_executed(harness, order, usdc):
    harness.adapter.transfer_error = ExecutionError("rpc down", label="TRANSFER_FAILED")

    result = await harness.fees.withdraw(order, object(), usdc, 1_000_000)

    assert result.execution is False
    assert result.error == "rpc down"
    assert harness.activities.items == {}


@pytest.mark.asyncio
async def test_withdraw_unconfirmed_transfer_returns_signature(harness, order, usdc):
    harness.adapter.transfer_pending = True
    sent = []

    async def remember(signature):
        sent.append(signature)

    result = await harness.fees.withdraw(order, object(), usdc, 1_000_000, on_broadcast=remember)

    assert result.execution is False
    assert result.pending is True
    assert result.signature == "0xfee1"
    assert sent == ["0xfee1"]
    assert harness.activities.items == {}


@pytest.mark.asyncio
async def test_withdraw_confirms_earlier_transfer_without_sending(harness, order, usdc):
    result = await harness.fees.withdraw(order, object(), usdc, 1_000_000, pending_signature="0xearlier")

    assert result.execution is True
    assert result.signature == "0xearlier"
    assert harness.adapter.confirms == ["0xearlier"]
    assert harness.adapter.transfers == []


@pytest.mark.asyncio
async def test_withdraw_still_unknown_transfer_stays_pending(harness, order, usdc):
    harness.adapter.confirm_error = TxPendingError("0xearlier")

    result = await harness.fees.withdraw(order, object(), usdc, 1_000_000, pending_signature="0xearlier")

    assert result.execution is False
    assert result.pending is True
    assert result.signature == "0xearlier"
    assert harness.adapter.transfers == []


@pytest.mark.asyncio
async def test_withdraw_resends_reverted_transfer(harness, order, usdc):
    harness.adapter.confirm_error = TransactionRevertedError("0xearlier")

    result = await harness.fees.withdraw(order, object(), usdc, 1_000_000, pending_signature="0xearlier")

    assert result.execution is True
    assert result.signature == "0xfee1"
    assert len(harness.adapter.transfers) == 1


@pytest.mark.asyncio
async def test_withdraw_activity_failure_still_counts_as_executed(harness, order, usdc):
    harness.activities.fail_inserts = True

    result = await harness.fees.withdraw(order, object(), usdc, 1_000_000, native_price_usd=20 * P, token_price_usd=P)

    assert result.execution is True
    assert result.activity_id is None
    assert "activity write failed" in result.error


@pytest.mark.asyncio
async def test_withdraw_looks_up_missing_prices(harness, order, usdc):
    harness.oracle.prices = {harness.native_address.lower(): "30", USDC.lower(): "1"}

    result = await harness.fees.withdraw(order, object(), usdc, 1_000_000)

    assert result.value_in_usd == P
    assert harness.oracle.price_calls == 1


# =============================================================================
# PriceCache
# =============================================================================


def test_native_resolves_to_wrapped_native(harness):
    assert harness.price_cache.get(CHAIN, NATIVE_TOKEN_ADDRESS) == 20 * P
    assert harness.price_cache.native_price(CHAIN) == 20 * P


def test_unknown_price_reads_zero(harness):
    assert harness.price_cache.get(CHAIN, "0x" + "77" * 20) == 0


@pytest.mark.asyncio
async def test_refresh_survives_failing_chain(harness):
    harness.oracle.prices = {USDC.lower(): "0.999"}

    async def flaky(tokens):
        if tokens[0]["networkId"] == Chains.ETHEREUM:
            raise ConnectionError("oracle down")
        return [{"address": t["address"], "priceUsd": harness.oracle.prices.get(t["address"].lower())} for t in tokens]

    harness.oracle.token_prices = flaky
    updated = await harness.price_cache.refresh({Chains.ETHEREUM: ["0xabc"], CHAIN: [USDC]})

    assert updated == 1
    assert harness.price_cache.get(CHAIN, USDC) == 999 * 10**27
