"""
Unit tests for RouteAggregator fan-out, ranking and failure propagation.
"""
import asyncio

import httpx
import pytest

from order_executor.core.domain.entities.execution_entity import SwapRoute
from order_executor.core.errors.exceptions import NoRouteError
from order_executor.core.ports.route_quoter import RouteQuoter
from order_executor.core.services.route_aggregator import RouteAggregator


class ScriptedQuoter(RouteQuoter):
    """Per-aggregator outcome: an amount_out, an exception, or a delay."""

    def __init__(self, outcomes):
        self.outcomes = outcomes
        self.calls = []

    async def quote(self, aggregator, chain_id, token_in, token_out, amount_in, slippage_bps, user_address):
        self.calls.append(aggregator)
        outcome = self.outcomes[aggregator]
        if isinstance(outcome, Exception):
            raise outcome
        if isinstance(outcome, tuple):
            delay, amount = outcome
            await asyncio.sleep(delay)
            outcome = amount
        return SwapRoute(aggregator=aggregator, amount_out=outcome, tx_data={"to": "0x" + "11" * 20})


async def _best(aggregator: RouteAggregator):
    return await aggregator.best_routes(43114, "0xin", "0xout", 1_000, 500, "0x" + "ab" * 20)


# =============================================================================
# Ranking
# =============================================================================


@pytest.mark.asyncio
async def test_best_route_first_despite_one_failure():
    quoter = ScriptedQuoter({"okx": 100, "joe": 250, "odos": 80, "kyber": RuntimeError("boom")})
    aggregator = RouteAggregator(quoter, ["okx", "joe", "odos", "kyber"])

    routes = await _best(aggregator)

    assert [r.amount_out for r in routes] == [250, 100, 80]
    assert routes[0].aggregator == "joe"
    assert sorted(quoter.calls) == ["joe", "kyber", "odos", "okx"]


@pytest.mark.asyncio
async def test_ties_keep_configured_order():
    quoter = ScriptedQuoter({"okx": 100, "joe": 100})

    routes = await _best(RouteAggregator(quoter, ["okx", "joe"]))

    assert [r.aggregator for r in routes] == ["okx", "joe"]


@pytest.mark.asyncio
async def test_zero_amount_routes_are_dropped():
    quoter = ScriptedQuoter({"okx": 0, "joe": 42})

    routes = await _best(RouteAggregator(quoter, ["okx", "joe"]))

    assert [r.aggregator for r in routes] == ["joe"]


@pytest.mark.asyncio
async def test_slow_aggregator_is_cut_off_by_timeout():
    quoter = ScriptedQuoter({"okx": (5, 999), "joe": 42})

    routes = await _best(RouteAggregator(quoter, ["okx", "joe"], timeout_sec=0.05))

    assert [r.aggregator for r in routes] == ["joe"]


# =============================================================================
# Failures
# =============================================================================


@pytest.mark.asyncio
async def test_all_failing_propagates_last_retryable_flag():
    request = httpx.Request("GET", "https://router.example/swap")
    quoter = ScriptedQuoter({"okx": ValueError("invalid token"), "joe": httpx.ConnectError("down", request=request)})

    with pytest.raises(NoRouteError) as exc_info:
        await _best(RouteAggregator(quoter, ["okx", "joe"]))

    assert exc_info.value.retryable is True


@pytest.mark.asyncio
async def test_all_failing_with_permanent_last_error_is_not_retryable():
    request = httpx.Request("GET", "https://router.example/swap")
    quoter = ScriptedQuoter({"okx": httpx.ConnectError("down", request=request), "joe": ValueError("invalid token")})

    with pytest.raises(NoRouteError) as exc_info:
        await _best(RouteAggregator(quoter, ["okx", "joe"]))

    assert exc_info.value.retryable is False


@pytest.mark.asyncio
async def test_no_aggregators_configured():
    with pytest.raises(NoRouteError) as exc_info:
        await _best(RouteAggregator(ScriptedQuoter({}), []))

    assert exc_info.value.retryable is False
