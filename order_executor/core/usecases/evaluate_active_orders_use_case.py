import asyncio
import logging
from typing import Dict, List, Optional

from ..domain.constants import PRECISION_DECIMALS
from ..domain.entities.order_entity import OrderEntity
from ..domain.enums.order_enums import OrderStatus, OrderType
from ..ports.condition_evaluator import ConditionEvaluator
from ..ports.price_oracle import PriceOracle
from ..repositories.order_repository import OrderRepository
from ..services.number_utils import safe_parse_units
from ..services.price_cache import PriceCache
from .close_open_order_use_case import CloseOpenOrderUseCase
from .open_spot_order_use_case import OpenSpotOrderUseCase
from .process_order_use_case import ProcessOrderUseCase

CANDLE_RESOLUTIONS = ["1", "60"]
CANDLE_LIMIT = 500


class EvaluateActiveOrdersUseCase:
    """
    One tick of the order listener.

    Groups active orders by (order token, chain), pulls one market snapshot per
    group, evaluates entry/exit conditions and dispatches the matching
    execution use case. Fan-out is bounded by a semaphore; one order failing
    never aborts the tick, and a tick started while another runs is skipped.
    """

    def __init__(
        self,
        order_repo: OrderRepository,
        oracle: PriceOracle,
        condition_evaluator: ConditionEvaluator,
        open_order: OpenSpotOrderUseCase,
        close_order: CloseOpenOrderUseCase,
        process_order: ProcessOrderUseCase,
        price_cache: Optional[PriceCache] = None,
        concurrency: int = 8,
        logger: Optional[logging.Logger] = None,
    ):
        self._orders = order_repo
        self._oracle = oracle
        self._conditions = condition_evaluator
        self._open = open_order
        self._close = close_order
        self._process = process_order
        self._prices = price_cache
        self._sem = asyncio.Semaphore(max(1, int(concurrency)))
        self._logger = logger or logging.getLogger(self.__class__.__name__)
        self._running = False

    # ---------- conditions ----------

    @staticmethod
    def _price(snapshot: Dict) -> int:
        return safe_parse_units(snapshot.get("priceUSD") or "0", PRECISION_DECIMALS)

    def should_buy(self, order: OrderEntity, snapshot: Dict, candles: Optional[Dict] = None) -> bool:
        entry = order.entry
        if entry.is_technical_entry and entry.technical_logic:
            if not candles:
                return False
            try:
                return bool(self._conditions.evaluate(entry.technical_logic, snapshot, candles))
            except Exception as exc:
                self._logger.warning("TECHNICAL_ANALYSIS_ERROR order=%s: %s", order.id, exc)
                return False

        logic = entry.price_logic
        if not entry.is_technical_entry and logic is not None and logic.id == "price" and logic.threshold > 0:
            return self._price(snapshot) < logic.threshold
        return False

    def should_sell(self, order: OrderEntity, snapshot: Dict, candles: Optional[Dict] = None) -> bool:
        exit_ = order.exit
        if exit_.is_technical_exit and exit_.technical_logic:
            if not candles:
                return False
            try:
                return bool(self._conditions.evaluate(exit_.technical_logic, snapshot, candles))
            except Exception as exc:
                self._logger.warning("TECHNICAL_ANALYSIS_ERROR order=%s: %s", order.id, exc)
                return False

        if exit_.is_technical_exit:
            return False

        price = self._price(snapshot)
        tp = exit_.take_profit.take_profit_price
        if tp > 0 and price > tp:
            return True

        sl = exit_.stop_loss
        if sl.is_active and sl.stop_loss_price > 0 and price < sl.stop_loss_price:
            return True
        return False

    # ---------- dispatch ----------

    async def _execute_if_ready(self, order: OrderEntity, snapshot: Dict, candles: Optional[Dict]) -> None:
        async with self._sem:
            try:
                if order.order_status == OrderStatus.PROCESSING:
                    await self._process.execute(order.id, snapshot)
                    return
                if order.order_type == OrderType.BUY and order.order_status == OrderStatus.PENDING:
                    if self.should_buy(order, snapshot, candles):
                        await self._open.execute(order.id, snapshot)
                    return
                if order.order_type == OrderType.SELL and order.order_status in (OrderStatus.PENDING, OrderStatus.OPENED):
                    if self.should_sell(order, snapshot, candles):
                        await self._close.execute(order.id, snapshot)
            except Exception as exc:
                self._logger.exception("order %s dispatch failed: %s", order.id, exc)

    async def _candles_for(self, snapshot: Dict) -> Optional[Dict]:
        pair = snapshot.get("pair") or {}
        token = snapshot.get("token") or {}
        try:
            candles = await self._oracle.multi_timeframe_candles(
                pair_address=pair.get("address"),
                chain_id=token.get("networkId"),
                quote_token=snapshot.get("quoteToken"),
                resolutions=CANDLE_RESOLUTIONS,
                created_at=snapshot.get("createdAt"),
                limit=CANDLE_LIMIT,
            )
        except Exception as exc:
            self._logger.warning("candle fetch failed for %s: %s", token.get("id"), exc)
            return None
        if not candles or not all(candles.get(r) for r in CANDLE_RESOLUTIONS):
            return None
        return candles

    async def _dispatch_group(self, orders: List[OrderEntity], snapshot: Dict) -> int:
        technical = [o for o in orders if o.is_technical]
        general = [o for o in orders if not o.is_technical]

        tasks = []
        if technical:
            candles = await self._candles_for(snapshot)
            if candles is not None:
                tasks.extend(self._execute_if_ready(o, snapshot, candles) for o in technical)
        tasks.extend(self._execute_if_ready(o, snapshot, None) for o in general)

        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        return len(tasks)

    async def _load_market(self, groups: List[Dict]) -> Dict[str, Dict]:
        keys = [f"{g['token']}:{g['chain_id']}" for g in groups]
        try:
            rows = await self._oracle.filter_tokens(keys, limit=len(keys))
        except Exception as exc:
            self._logger.error("ORACLE_DATA_FAILED_ON_LISTENING: %s", exc)
            return {}
        market: Dict[str, Dict] = {}
        for row in rows or []:
            token_id = ((row or {}).get("token") or {}).get("id")
            if token_id:
                market[token_id.lower()] = row
        return market

    async def execute_once(self) -> int:
        """
        Run one listener pass. Returns the number of orders dispatched.
        """
        if self._running:
            self._logger.debug("listener tick still running, skipping")
            return 0
        self._running = True
        try:
            if self._prices is not None and not self._prices.snapshot():
                self._logger.error("COLLATERAL_PRICE_NOT_FETCHED_ON_LISTENING")

            try:
                groups = await self._orders.group_active_orders()
            except Exception as exc:
                self._logger.error("MONGODB_ERROR_ON_TOKEN_LISTENING: %s", exc)
                return 0
            if not groups:
                return 0

            market = await self._load_market(groups)
            if not market:
                return 0

            runs = []
            for group in groups:
                key = f"{group['token']}:{group['chain_id']}".lower()
                snapshot = market.get(key)
                if snapshot is None:
                    self._logger.warning("LISTENING:TOKEN_DATA_NOT_FOUND %s", key)
                    continue
                runs.append(self._dispatch_group(group.get("orders") or [], snapshot))

            # groups run side by side; the semaphore bounds executions across all of them
            counts = await asyncio.gather(*runs, return_exceptions=True)
            return sum(c for c in counts if isinstance(c, int))
        finally:
            self._running = False
