import asyncio
import logging
from typing import List, Optional, Sequence, Tuple

from ..domain.entities.execution_entity import SwapRoute
from ..errors.error_classifier import ClassifiedError, ErrorKind, ErrorSource, classify
from ..errors.exceptions import NoRouteError
from ..ports.route_quoter import RouteQuoter


class RouteAggregator:
    """
    Fans one quote request out to every configured aggregator of a chain family.

    - each aggregator is caught independently, one failure never fails the call
    - a wall-clock timeout bounds the whole fan-out; whatever settled in time is used
    - valid routes (amount_out > 0) are sorted best-first, ties keep configured order
    - no valid route -> NoRouteError carrying the last aggregator error's retryability
    """

    def __init__(
        self,
        quoter: RouteQuoter,
        aggregators: Sequence[str],
        timeout_sec: float = 10.0,
        logger: Optional[logging.Logger] = None,
    ):
        self._quoter = quoter
        self._aggregators = list(aggregators)
        self._timeout = timeout_sec
        self._logger = logger or logging.getLogger(self.__class__.__name__)

    async def _quote_one(
        self,
        aggregator: str,
        chain_id: int,
        token_in: str,
        token_out: str,
        amount_in: int,
        slippage_bps: int,
        user_address: str,
    ) -> Tuple[Optional[SwapRoute], Optional[ClassifiedError]]:
        try:
            route = await self._quoter.quote(
                aggregator, chain_id, token_in, token_out, amount_in, slippage_bps, user_address
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            err = classify(exc, ErrorSource.HTTP)
            self._logger.warning("quote failed on %s (chain=%s): %s", aggregator, chain_id, err.message)
            return None, err

        if route is None or int(route.amount_out or 0) <= 0:
            return None, ClassifiedError(
                f"{aggregator} returned no output amount", ErrorKind.ROUTE_UNAVAILABLE, True, "NO_ROUTE_FOUND"
            )
        return route, None

    async def best_routes(
        self,
        chain_id: int,
        token_in: str,
        token_out: str,
        amount_in: int,
        slippage_bps: int,
        user_address: str,
    ) -> List[SwapRoute]:
        if not self._aggregators:
            raise NoRouteError("No aggregator configured", retryable=False)

        tasks = [
            asyncio.create_task(
                self._quote_one(agg, chain_id, token_in, token_out, amount_in, slippage_bps, user_address)
            )
            for agg in self._aggregators
        ]
        done, pending = await asyncio.wait(tasks, timeout=self._timeout)
        for t in pending:
            t.cancel()

        routes: List[SwapRoute] = []
        last_error: Optional[ClassifiedError] = None
        for agg, task in zip(self._aggregators, tasks):
            if task not in done:
                last_error = ClassifiedError(
                    f"{agg} timed out after {self._timeout}s", ErrorKind.NETWORK_TRANSIENT, True, "TIMEOUT"
                )
                continue
            route, err = task.result()
            if route is not None:
                routes.append(route)
            elif err is not None:
                last_error = err

        if not routes:
            message = last_error.message if last_error else "No route found"
            retryable = last_error.retryable if last_error else False
            raise NoRouteError(message, retryable=retryable, code=last_error.code if last_error else None)

        # sorted() is stable: equal amounts keep configured aggregator order
        routes = sorted(routes, key=lambda r: int(r.amount_out), reverse=True)
        self._logger.debug(
            "chain=%s %s->%s best=%s amount_out=%s (%s routes)",
            chain_id, token_in, token_out, routes[0].aggregator, routes[0].amount_out, len(routes),
        )
        return routes
