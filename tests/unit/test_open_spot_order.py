"""
Unit tests for the buy leg (OpenSpotOrderUseCase).

Runs the full claim -> fund check -> swap -> checkpoint -> trade fee ->
accounting path against in-memory stores and a scripted chain adapter.
"""
import asyncio
from unittest.mock import AsyncMock

import pytest

from order_executor.core.domain.constants import NATIVE_TOKEN_ADDRESS, Chains
from order_executor.core.domain.entities.execution_entity import SwapResult
from order_executor.core.domain.enums.order_enums import ActivityType, SwapErrorLabel
from order_executor.core.errors.exceptions import ExecutionError, WalletGuardError
from order_executor.core.services.number_utils import convert_to_usd
from order_executor.core.usecases.open_spot_order_use_case import OpenSpotOrderUseCase

P = 10**30
CHAIN = Chains.AVALANCHE
USDC = "0xB97EF9Ef8734C71904D8002F8b6Bc66Dd9c48a6E"
TOKEN = "0x" + "cd" * 20
WALLET = "0x" + "ab" * 20

# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def open_use_case(harness):
    return harness.build(OpenSpotOrderUseCase, max_retry=3)


@pytest.fixture
def pending_order(harness, order_factory):
    harness.orders.add(order_factory())
    harness.adapter.swap_result = SwapResult.ok("0xswap", 5 * 10**18, 2_000_000)
    return "order-1"


def _doc(harness, order_id="order-1"):
    return harness.orders.docs[order_id]


# =============================================================================
# Happy path
# =============================================================================


@pytest.mark.asyncio
async def test_pending_buy_order_ends_opened(harness, open_use_case, pending_order, snapshot):
    await open_use_case.execute(pending_order, snapshot)

    doc = _doc(harness)
    assert doc["order_status"] == "OPENED"
    assert doc["order_type"] == "SELL"
    assert doc["message"] == "ORDER_OPENED"
    assert doc["is_busy"] is False
    assert doc["is_active"] is True
    assert doc["additional"]["in_processing"] is None
    assert doc["additional"]["retry"] == 0
    assert int(doc["amount"]["token_amount"]) == 5 * 10**18


@pytest.mark.asyncio
async def test_buy_activity_matches_swap_result(harness, open_use_case, pending_order, snapshot):
    await open_use_case.execute(pending_order, snapshot)

    buys = harness.activities.of_type(ActivityType.BUY)
    assert len(buys) == 1
    buy = buys[0]
    assert buy.tx_hash == "0xswap"
    assert buy.pay_token.address == USDC
    assert buy.pay_token.amount == 100_000_000
    assert buy.receive_token.address == TOKEN
    assert buy.receive_token.amount == 5 * 10**18
    assert buy.tx_fee.fee_amount == 2_000_000
    assert buy.pay_token.amount_in_usd == 100 * P


@pytest.mark.asyncio
async def test_trade_fee_transferred_in_collateral(harness, open_use_case, pending_order, snapshot):
    await open_use_case.execute(pending_order, snapshot)

    assert harness.adapter.transfers == [(USDC, 100_000, "0x" + "fe" * 20)]
    fees = harness.activities.of_type(ActivityType.TRADE_FEE)
    assert len(fees) == 1
    assert fees[0].pay_token.amount == 100_000
    assert fees[0].receiver == "0x" + "fe" * 20


@pytest.mark.asyncio
async def test_position_cost_includes_trade_and_network_fees(harness, open_use_case, pending_order, snapshot):
    await open_use_case.execute(pending_order, snapshot)

    doc = _doc(harness)
    assert int(doc["execution_fee"]["pay_in_usd"]) == convert_to_usd(100_100_000, 6, P)
    assert int(doc["execution_fee"]["fee_in_usd"]) == convert_to_usd(2_000_500, 18, 20 * P)
    assert int(doc["exit"]["take_profit"]["take_profit_price"]) > 0


@pytest.mark.asyncio
async def test_reservation_held_during_swap_and_released_after(harness, open_use_case, pending_order, snapshot):
    await open_use_case.execute(pending_order, snapshot)

    guard = harness.guards.get(WALLET)
    assert harness.adapter.pending_during_swap == [100_100_000]
    assert guard.pending(CHAIN, USDC) == 0
    assert guard.pending(CHAIN, NATIVE_TOKEN_ADDRESS) == 0


# =============================================================================
# Claim exclusivity
# =============================================================================


@pytest.mark.asyncio
async def test_concurrent_open_claims_once(harness, open_use_case, pending_order, snapshot):
    await asyncio.gather(
        open_use_case.execute(pending_order, snapshot),
        open_use_case.execute(pending_order, snapshot),
    )

    assert len(harness.adapter.swaps) == 1
    assert len(harness.activities.of_type(ActivityType.BUY)) == 1


@pytest.mark.asyncio
async def test_busy_order_is_not_claimed(harness, open_use_case, order_factory):
    harness.orders.add(order_factory(is_busy=True))

    await open_use_case.execute("order-1")

    assert harness.adapter.swaps == []
    assert _doc(harness)["order_status"] == "PENDING"


# =============================================================================
# Pre-swap failures
# =============================================================================


@pytest.mark.asyncio
async def test_invalid_order_fails(harness, open_use_case, order_factory):
    harness.orders.add(order_factory(amount={"order_size": 0}))

    await open_use_case.execute("order-1")

    doc = _doc(harness)
    assert doc["order_status"] == "FAILED"
    assert doc["message"] == "INVALID_ORDER"
    assert doc["is_busy"] is False
    assert harness.adapter.swaps == []


@pytest.mark.asyncio
async def test_signer_failure_fails_order(harness, open_use_case, pending_order):
    harness.signers.fail = True

    await open_use_case.execute(pending_order)

    doc = _doc(harness)
    assert doc["order_status"] == "FAILED"
    assert doc["message"] == "SIGNER_FAILED"
    assert harness.adapter.swaps == []


@pytest.mark.asyncio
async def test_insufficient_collateral_including_fee(harness, open_use_case, pending_order):
    # covers the order size but not the 0.1% trade fee on top
    harness.adapter.balances[USDC.lower()] = 100_000_000

    await open_use_case.execute(pending_order)

    doc = _doc(harness)
    assert doc["order_status"] == "FAILED"
    assert doc["message"] == "INSUFFICIENT_FUND"
    assert harness.adapter.swaps == []


@pytest.mark.asyncio
async def test_unreadable_balance_requeues_order(harness, open_use_case, pending_order):
    harness.adapter.get_balance = AsyncMock(side_effect=ConnectionError("rpc down"))

    await open_use_case.execute(pending_order)

    doc = _doc(harness)
    assert doc["order_status"] == "PENDING"
    assert doc["message"] == "WALLET_FAILED"
    assert doc["is_busy"] is False


# =============================================================================
# Swap failures
# =============================================================================


@pytest.mark.asyncio
async def test_retryable_swap_failure_requeues(harness, open_use_case, pending_order):
    harness.adapter.swap_result = SwapResult.failed(SwapErrorLabel.TX_FAILED, "timeout", True)

    await open_use_case.execute(pending_order)

    doc = _doc(harness)
    assert doc["order_status"] == "PENDING"
    assert doc["message"] == "TX_FAILED"
    assert doc["additional"]["retry"] == 1
    assert harness.guards.get(WALLET).pending(CHAIN, USDC) == 0


@pytest.mark.asyncio
async def test_retry_budget_exhaustion_fails(harness, open_use_case, order_factory):
    harness.orders.add(order_factory(additional={"retry": 2}))
    harness.adapter.swap_result = SwapResult.failed(SwapErrorLabel.TX_FAILED, "timeout", True)

    await open_use_case.execute("order-1")

    doc = _doc(harness)
    assert doc["order_status"] == "FAILED"
    assert doc["message"] == "RETRY_EXHAUSTED"


@pytest.mark.asyncio
async def test_permanent_swap_failure_fails(harness, open_use_case, pending_order):
    harness.adapter.swap_result = SwapResult.failed(SwapErrorLabel.NO_ROUTE_FOUND, "no route", False)

    await open_use_case.execute(pending_order)

    doc = _doc(harness)
    assert doc["order_status"] == "FAILED"
    assert doc["message"] == "NO_ROUTE_FOUND"
    assert harness.activities.items == {}


# =============================================================================
# Post-swap parking
# =============================================================================


@pytest.mark.asyncio
async def test_missing_receipt_amounts_park_order(harness, open_use_case, pending_order, snapshot):
    harness.adapter.swap_result = SwapResult.ok("0xswap", None, None)
    harness.adapter.tx_info_error = ConnectionError("rpc down")

    await open_use_case.execute(pending_order, snapshot)

    doc = _doc(harness)
    assert doc["order_status"] == "PROCESSING"
    assert doc["message"] == "TX_PROCESSING_FAILED"
    assert doc["is_busy"] is False
    assert doc["additional"]["in_processing"]["phase"] == "AWAITING_TX_INFO"
    assert doc["additional"]["in_processing"]["signature"] == "0xswap"


@pytest.mark.asyncio
async def test_failed_trade_fee_parks_after_recording_trade(harness, open_use_case, pending_order, snapshot):
    harness.adapter.transfer_error = ExecutionError("rpc down", label="TRANSFER_FAILED", retryable=True)

    await open_use_case.execute(pending_order, snapshot)

    doc = _doc(harness)
    checkpoint = doc["additional"]["in_processing"]
    assert doc["order_status"] == "PROCESSING"
    assert doc["message"] == "TRADE_FEE_EXECUTED_FAILED"
    assert checkpoint["phase"] == "AWAITING_FEE_COLLECTION"
    assert checkpoint["activity_id"] == "act-1"
    assert checkpoint["trade_fee"]["executed"] is False
    assert len(harness.activities.of_type(ActivityType.BUY)) == 1


@pytest.mark.asyncio
async def test_missing_token_price_parks_for_price_data(harness, open_use_case, pending_order):
    await open_use_case.execute(pending_order, None)

    doc = _doc(harness)
    checkpoint = doc["additional"]["in_processing"]
    assert doc["order_status"] == "PROCESSING"
    assert doc["message"] == "PRICE_NOT_FETCHED"
    assert checkpoint["phase"] == "AWAITING_PRICE_DATA"
    assert checkpoint["oracle_calculation"] is False
    assert checkpoint["trade_fee"]["executed"] is True


# =============================================================================
# Unconfirmed transactions
# =============================================================================


@pytest.mark.asyncio
async def test_unconfirmed_swap_parks_with_signature(harness, open_use_case, pending_order, snapshot):
    harness.adapter.swap_result = SwapResult.pending_tx("0xslow", "receipt not found after 120s")

    await open_use_case.execute(pending_order, snapshot)

    doc = _doc(harness)
    checkpoint = doc["additional"]["in_processing"]
    assert doc["order_status"] == "PROCESSING"
    assert doc["message"] == "TX_PENDING"
    assert doc["is_busy"] is False
    assert checkpoint["phase"] == "AWAITING_TX_INFO"
    assert checkpoint["signature"] == "0xslow"
    assert int(checkpoint["trade_fee"]["amount"]) == 100_000
    assert harness.activities.items == {}
    assert harness.adapter.transfers == []


@pytest.mark.asyncio
async def test_swap_signature_saved_on_broadcast(harness, open_use_case, pending_order):
    seen = {}

    async def swap(token_in, token_out, amount_in, slippage_bps, signer, on_broadcast=None):
        await on_broadcast("0xearly")
        seen.update(_doc(harness)["additional"]["in_processing"])
        raise RuntimeError("worker killed")

    harness.adapter.swap = swap

    await open_use_case.execute(pending_order)

    doc = _doc(harness)
    assert seen["phase"] == "AWAITING_TX_INFO"
    assert seen["signature"] == "0xearly"
    assert doc["order_status"] == "PROCESSING"
    assert doc["message"] == "UNEXPECTED_ERROR"
    assert doc["additional"]["in_processing"]["signature"] == "0xearly"


@pytest.mark.asyncio
async def test_failed_swap_after_broadcast_drops_checkpoint(harness, open_use_case, pending_order):
    harness.adapter.swap_result = SwapResult(
        success=False, signature="0xreverted", error_label=SwapErrorLabel.TX_FAILED, error="reverted"
    )

    await open_use_case.execute(pending_order)

    doc = _doc(harness)
    assert harness.adapter.broadcasts == ["0xreverted"]
    assert doc["order_status"] == "FAILED"
    assert doc["message"] == "TX_FAILED"
    assert doc["additional"]["in_processing"] is None


@pytest.mark.asyncio
async def test_unconfirmed_trade_fee_keeps_its_signature(harness, open_use_case, pending_order, snapshot):
    harness.adapter.transfer_pending = True

    await open_use_case.execute(pending_order, snapshot)

    doc = _doc(harness)
    checkpoint = doc["additional"]["in_processing"]
    assert doc["order_status"] == "PROCESSING"
    assert doc["message"] == "TX_PENDING"
    assert checkpoint["phase"] == "AWAITING_FEE_COLLECTION"
    assert checkpoint["trade_fee"]["signature"] == "0xfee1"
    assert checkpoint["trade_fee"]["executed"] is False
    assert harness.activities.of_type(ActivityType.TRADE_FEE) == []


# =============================================================================
# Wallet errors and the retry budget
# =============================================================================


@pytest.mark.asyncio
async def test_unreadable_balance_on_last_attempt_fails(harness, open_use_case, order_factory):
    harness.orders.add(order_factory(additional={"retry": 2}))
    harness.adapter.get_balance = AsyncMock(side_effect=ConnectionError("rpc down"))

    await open_use_case.execute("order-1")

    doc = _doc(harness)
    assert doc["order_status"] == "FAILED"
    assert doc["message"] == "RETRY_EXHAUSTED"
    assert doc["is_busy"] is False


@pytest.mark.asyncio
async def test_lock_failure_on_last_attempt_fails(harness, open_use_case, order_factory, monkeypatch):
    harness.orders.add(order_factory(additional={"retry": 2}))
    guard = harness.guards.get(WALLET)

    def broken_reservation(reservations):
        raise WalletGuardError("lock unavailable")

    monkeypatch.setattr(guard, "reservation", broken_reservation)

    await open_use_case.execute("order-1")

    doc = _doc(harness)
    assert doc["order_status"] == "FAILED"
    assert doc["message"] == "RETRY_EXHAUSTED"
    assert harness.adapter.swaps == []
