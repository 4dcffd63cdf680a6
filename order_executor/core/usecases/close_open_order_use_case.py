from typing import Dict, Optional

from ..domain.entities.checkpoint_entity import AwaitingTxInfo, TradeFeeState
from ..domain.entities.order_entity import OrderEntity
from ..domain.enums.order_enums import OrderMessage, OrderStatus, ProcessType
from ..errors.exceptions import InsufficientFundsError, WalletGuardError
from .order_execution_base import OrderExecutionBase


class CloseOpenOrderUseCase(OrderExecutionBase):
    """
    Sell leg: order token -> output token.

    Mirrors the buy leg; the trade fee is taken from the received output token
    once the realized amount is known, and the final accounting books the
    realized PnL then either closes the order or restarts it as a BUY (re-entrance).
    """

    def _invalid_reason(self, order: OrderEntity) -> Optional[str]:
        reason = self._common_invalid_reason(order)
        if reason:
            return reason
        assets = order.order_asset
        if assets.order_token is None or not assets.order_token.address:
            return "order token missing"
        if assets.output_token is None or not assets.output_token.address:
            return "output token missing"
        if order.amount.token_amount <= 0:
            return "token amount must be positive"
        return None

    async def execute(self, order_id: str, token_snapshot: Optional[Dict] = None) -> None:
        order = await self._orders.claim_for_close(order_id, self._max_retry)
        if order is None:
            self._logger.warning("order %s not claimable for close (busy or not eligible)", order_id)
            return
        try:
            await self._close(order, token_snapshot)
        except Exception as exc:
            self._logger.exception("OPEN_ORDER_CLOSE_UNEXPECTED_ERROR order=%s: %s", order_id, exc)
            await self._park_unexpected(order.id)

    async def _close(self, order: OrderEntity, snapshot: Optional[Dict]) -> None:
        reason = self._invalid_reason(order)
        if reason:
            self._logger.error("INVALID_ORDER order=%s: %s", order.id, reason)
            await self._release(order.id, OrderMessage.INVALID_ORDER.value, OrderStatus.FAILED)
            return

        try:
            signer = self._get_signer(order)
        except Exception as exc:
            self._logger.error("SIGNER_FAILED order=%s: %s", order.id, exc)
            await self._release(order.id, OrderMessage.SIGNER_FAILED.value, OrderStatus.FAILED)
            return

        chain_id = order.chain_id
        token_in = order.order_asset.order_token.address
        token_out = order.order_asset.output_token.address
        amount_in = order.amount.token_amount
        adapter = self._adapters.get(chain_id)
        network_fee = await adapter.estimate_network_fee()

        guard = self._guards.get(order.wallet_info.address)
        try:
            has_funds = await self._has_funds(guard, chain_id, token_in, amount_in, network_fee)
        except Exception as exc:
            self._logger.error("FUNDS_CHECK_FAILED order=%s: %s", order.id, exc)
            await self._requeue_or_fail(order, OrderMessage.WALLET_FAILED.value, OrderStatus.OPENED)
            return

        if not has_funds:
            self._logger.warning("INSUFFICIENT_FUND order=%s", order.id)
            await self._release(order.id, OrderMessage.INSUFFICIENT_FUND.value, OrderStatus.FAILED)
            return

        reservations = self._reservations(chain_id, token_in, amount_in, network_fee)
        hook = self._broadcast_hook(order.id, ProcessType.CLOSE, TradeFeeState())
        try:
            with guard.reservation(reservations):
                result = await adapter.swap(token_in, token_out, amount_in, order.slippage, signer, on_broadcast=hook)
        except InsufficientFundsError as exc:
            self._logger.warning("INSUFFICIENT_FUND order=%s: %s", order.id, exc)
            await self._release(order.id, OrderMessage.INSUFFICIENT_FUND.value, OrderStatus.FAILED)
            return
        except WalletGuardError as exc:
            self._logger.error("FUND_LOCK_FAILED order=%s: %s", order.id, exc)
            await self._requeue_or_fail(order, OrderMessage.WALLET_FAILED.value, OrderStatus.OPENED)
            return

        if result.pending or not result.success or not result.signature:
            await self._handle_failed_swap(order, result, OrderStatus.OPENED, TradeFeeState())
            return

        self._logger.info("sell swap settled order=%s sig=%s", order.id, result.signature)
        trade_fee = TradeFeeState()
        if result.total_received:
            bps = self._fees.fee_bps(order.user_info.status, order.priority)
            trade_fee = TradeFeeState(amount=self._fees.fee_amount(result.total_received, bps))

        checkpoint = AwaitingTxInfo(
            process_type=ProcessType.CLOSE,
            signature=result.signature,
            amount_out=result.total_received,
            tx_fee=result.fee,
            trade_fee=trade_fee,
        )
        await self._save_checkpoint(order.id, checkpoint)
        await self._advance(order, checkpoint, signer, snapshot)
