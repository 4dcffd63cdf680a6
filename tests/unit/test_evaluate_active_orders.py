"""
Unit tests for the order listener: entry/exit predicates and one dispatch pass.
"""
import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from order_executor.core.domain.entities.order_entity import OrderEntity
from order_executor.core.usecases.evaluate_active_orders_use_case import EvaluateActiveOrdersUseCase

P = 10**30

# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def evaluator():
    evaluator = MagicMock()
    evaluator.evaluate.return_value = True
    return evaluator


@pytest.fixture
def executors():
    return {name: MagicMock(execute=AsyncMock()) for name in ("open", "close", "process")}


@pytest.fixture
def listener(harness, evaluator, executors):
    return EvaluateActiveOrdersUseCase(
        harness.orders,
        harness.oracle,
        evaluator,
        executors["open"],
        executors["close"],
        executors["process"],
        price_cache=harness.price_cache,
    )


@pytest.fixture
def sell_order(order_factory):
    def _make(**exit_overrides):
        exit_ = {"take_profit": {"take_profit_price": str(22 * P)}, **exit_overrides}
        return OrderEntity.model_validate(
            order_factory(order_status="OPENED", order_type="SELL", exit=exit_)
        )

    return _make


# =============================================================================
# should_buy / should_sell
# =============================================================================


def test_buys_below_price_threshold(listener, order_factory, snapshot):
    order = OrderEntity.model_validate(order_factory())

    assert listener.should_buy(order, snapshot) is True
    assert listener.should_buy(order, {**snapshot, "priceUSD": "26"}) is False


def test_buy_without_price_logic_never_triggers(listener, order_factory, snapshot):
    order = OrderEntity.model_validate(order_factory(entry={"price_logic": None}))

    assert listener.should_buy(order, snapshot) is False


def test_technical_entry_needs_candles(listener, evaluator, order_factory, snapshot):
    order = OrderEntity.model_validate(
        order_factory(entry={"is_technical_entry": True, "technical_logic": {"id": "RSI"}})
    )

    assert listener.should_buy(order, snapshot, None) is False
    assert listener.should_buy(order, snapshot, {"1": {"success": True}}) is True
    evaluator.evaluate.assert_called_once()


def test_technical_evaluation_error_is_false(listener, evaluator, order_factory, snapshot):
    evaluator.evaluate.side_effect = ValueError("bad tree")
    order = OrderEntity.model_validate(
        order_factory(entry={"is_technical_entry": True, "technical_logic": {"id": "RSI"}})
    )

    assert listener.should_buy(order, snapshot, {"1": {"success": True}}) is False


def test_sells_above_take_profit(listener, sell_order, snapshot):
    order = sell_order()

    assert listener.should_sell(order, {**snapshot, "priceUSD": "23"}) is True
    assert listener.should_sell(order, snapshot) is False


def test_sells_below_active_stop_loss(listener, sell_order, snapshot):
    order = sell_order(stop_loss={"is_active": True, "stop_loss_price": str(15 * P)})

    assert listener.should_sell(order, {**snapshot, "priceUSD": "14"}) is True


def test_inactive_stop_loss_is_ignored(listener, sell_order, snapshot):
    order = sell_order(stop_loss={"is_active": False, "stop_loss_price": str(15 * P)})

    assert listener.should_sell(order, {**snapshot, "priceUSD": "14"}) is False


# =============================================================================
# execute_once
# =============================================================================


@pytest.mark.asyncio
async def test_pass_dispatches_matching_use_cases(harness, listener, executors, order_factory, snapshot):
    harness.orders.add(order_factory("buy-1"))
    harness.orders.add(
        order_factory(
            "sell-1",
            order_status="OPENED",
            order_type="SELL",
            exit={"take_profit": {"take_profit_price": str(30 * P)}},
        )
    )
    harness.orders.add(order_factory("stuck-1", order_status="PROCESSING"))
    harness.oracle.snapshots = [snapshot]

    dispatched = await listener.execute_once()

    assert dispatched == 3
    executors["open"].execute.assert_awaited_once_with("buy-1", snapshot)
    executors["process"].execute.assert_awaited_once_with("stuck-1", snapshot)
    executors["close"].execute.assert_not_awaited()


@pytest.mark.asyncio
async def test_busy_and_inactive_orders_are_skipped(harness, listener, executors, order_factory, snapshot):
    harness.orders.add(order_factory("busy-1", is_busy=True))
    harness.orders.add(order_factory("off-1", is_active=False))
    harness.oracle.snapshots = [snapshot]

    assert await listener.execute_once() == 0
    executors["open"].execute.assert_not_awaited()


@pytest.mark.asyncio
async def test_pass_without_market_data_dispatches_nothing(harness, listener, executors, order_factory):
    harness.orders.add(order_factory("buy-1"))

    assert await listener.execute_once() == 0
    executors["open"].execute.assert_not_awaited()


@pytest.mark.asyncio
async def test_one_failing_order_does_not_abort_the_pass(harness, listener, executors, order_factory, snapshot):
    harness.orders.add(order_factory("buy-1"))
    harness.orders.add(order_factory("buy-2"))
    harness.oracle.snapshots = [snapshot]
    executors["open"].execute.side_effect = [RuntimeError("boom"), None]

    assert await listener.execute_once() == 2
    assert executors["open"].execute.await_count == 2


@pytest.mark.asyncio
async def test_technical_orders_get_candles(harness, listener, evaluator, executors, order_factory, snapshot):
    harness.orders.add(
        order_factory("tech-1", entry={"is_technical_entry": True, "technical_logic": {"id": "RSI"}})
    )
    harness.oracle.snapshots = [snapshot]
    harness.oracle.candles = {"1": {"success": True, "closes": [1.0]}, "60": {"success": True, "closes": [1.0]}}

    await listener.execute_once()

    candles = evaluator.evaluate.call_args[0][2]
    assert set(candles) == {"1", "60"}
    executors["open"].execute.assert_awaited_once_with("tech-1", snapshot)


@pytest.mark.asyncio
async def test_token_groups_run_side_by_side(harness, listener, executors, order_factory, snapshot):
    other = "0x" + "ef" * 20
    chain_id = snapshot["token"]["networkId"]
    harness.orders.add(order_factory("buy-1"))
    harness.orders.add(
        order_factory("buy-2", order_asset={"order_token": {"address": other, "decimals": 18, "symbol": "OTH"}})
    )
    harness.oracle.snapshots = [
        snapshot,
        {**snapshot, "token": {"id": f"{other}:{chain_id}", "address": other, "networkId": chain_id}},
    ]
    started = {"buy-1": asyncio.Event(), "buy-2": asyncio.Event()}

    async def execute(order_id, market):
        # each buy waits until the other group's buy has started too
        started[order_id].set()
        await asyncio.gather(*(event.wait() for event in started.values()))

    executors["open"].execute.side_effect = execute

    assert await asyncio.wait_for(listener.execute_once(), timeout=2) == 2
    assert executors["open"].execute.await_count == 2


@pytest.mark.asyncio
async def test_overlapping_pass_is_skipped(listener):
    listener._running = True

    assert await listener.execute_once() == 0
