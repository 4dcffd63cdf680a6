import logging
from dataclasses import dataclass
from typing import List, Optional

from ..domain.constants import (
    ACCUMULATE_STRATEGY,
    BASIS_POINT_DIVISOR,
    DEFAULT_STOP_LOSS_PERCENTAGE,
    DEFAULT_TAKE_PROFIT_PERCENTAGE,
)
from ..domain.entities.order_entity import OrderEntity, OrderUpdate
from ..domain.enums.order_enums import OrderMessage, OrderStatus, OrderType
from ..repositories.order_repository import OrderRepository
from .number_utils import expand_decimals


@dataclass
class ExitLevels:
    total_cost_usd: int
    total_tokens: int
    profit_usd: int
    take_profit_price: int
    save_usd: int
    stop_loss_price: int


def compute_exit_levels(
    total_cost_usd: int,
    total_tokens: int,
    token_decimals: int,
    take_profit_percentage: int,
    stop_loss_active: bool,
    stop_loss_percentage: int,
) -> ExitLevels:
    """
    TP/SL prices (30-decimal USD per whole token) for a cost basis spread over
    `total_tokens` base units.
    """
    dec = expand_decimals(1, token_decimals)

    tp = int(take_profit_percentage or DEFAULT_TAKE_PROFIT_PERCENTAGE)
    profit_usd = total_cost_usd * tp // BASIS_POINT_DIVISOR
    tp_price = (profit_usd + total_cost_usd) * dec // total_tokens if total_tokens > 0 else 0

    save_usd = 0
    sl_price = 0
    if stop_loss_active:
        sl = int(stop_loss_percentage or DEFAULT_STOP_LOSS_PERCENTAGE)
        save_usd = total_cost_usd * (BASIS_POINT_DIVISOR - sl) // BASIS_POINT_DIVISOR
        sl_price = save_usd * dec // total_tokens if total_tokens > 0 else 0

    return ExitLevels(
        total_cost_usd=total_cost_usd,
        total_tokens=total_tokens,
        profit_usd=profit_usd,
        take_profit_price=tp_price,
        save_usd=save_usd,
        stop_loss_price=sl_price,
    )


class PositionService:
    """
    Turns a filled buy into an OPENED position.

    For accumulating strategies (grid / dca) every OPENED sibling with the same
    name and strategy is folded into one cost basis, and the shared TP/SL prices
    are written back to each sibling.
    """

    def __init__(self, order_repo: OrderRepository, logger: Optional[logging.Logger] = None):
        self._orders = order_repo
        self._logger = logger or logging.getLogger(self.__class__.__name__)

    async def convert_open_order(
        self,
        order: OrderEntity,
        *,
        fee_in_usd: int,
        pay_in_usd: int,
        total_received: int,
        token_price_usd: int,
    ) -> OrderUpdate:
        token_decimals = order.order_asset.order_token.decimals if order.order_asset.order_token else 18
        dec = expand_decimals(1, token_decimals or 18)

        total_cost = int(fee_in_usd) + int(pay_in_usd)
        total_tokens = int(total_received)

        entry_price = (int(pay_in_usd) * dec // total_tokens) if total_tokens > 0 else 0
        if entry_price == 0:
            entry_price = int(token_price_usd)

        siblings: List[OrderEntity] = []
        if order.strategy in ACCUMULATE_STRATEGY:
            siblings = await self._orders.find_accumulated_siblings(order)
            for s in siblings:
                total_cost += int(s.execution_fee.pay_in_usd) + int(s.execution_fee.fee_in_usd)
                total_tokens += int(s.amount.token_amount)

        levels = compute_exit_levels(
            total_cost,
            total_tokens,
            token_decimals or 18,
            order.exit.take_profit.take_profit_percentage,
            order.exit.stop_loss.is_active,
            order.exit.stop_loss.stop_loss_percentage,
        )

        update = OrderUpdate(
            status=OrderStatus.OPENED,
            message=OrderMessage.ORDER_OPENED.value,
            type=OrderType.SELL,
            profit_usd=levels.profit_usd,
            save_usd=levels.save_usd,
            take_profit_price=levels.take_profit_price,
            stop_loss_price=levels.stop_loss_price,
            token_amount=int(total_received),
            fee_in_usd=int(fee_in_usd),
            pay_in_usd=int(pay_in_usd),
            retry=0,
            entry_price=entry_price,
            is_busy=False,
            is_active=True,
            clear_checkpoint=True,
        )
        await self._orders.update(order.id, update)

        for s in siblings:
            amt = int(s.amount.token_amount)
            try:
                await self._orders.update(
                    s.id,
                    OrderUpdate(
                        take_profit_price=levels.take_profit_price,
                        stop_loss_price=levels.stop_loss_price,
                        profit_usd=levels.take_profit_price * amt // dec,
                        save_usd=levels.stop_loss_price * amt // dec,
                    ),
                )
            except Exception as exc:
                self._logger.error("ORDER_ACCUMULATION_UPDATE_FAILED order=%s: %s", s.id, exc)

        self._logger.info(
            "order %s opened: tokens=%s entry=%s tp=%s sl=%s siblings=%s",
            order.id, total_received, entry_price, levels.take_profit_price, levels.stop_loss_price, len(siblings),
        )
        return update
