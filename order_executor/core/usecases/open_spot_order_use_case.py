from typing import Dict, Optional

from ..domain.constants import CHAIN_CONFIG
from ..domain.entities.checkpoint_entity import AwaitingTxInfo, TradeFeeState
from ..domain.entities.order_entity import OrderEntity
from ..domain.enums.order_enums import OrderMessage, OrderStatus, ProcessType
from ..errors.exceptions import InsufficientFundsError, WalletGuardError
from .order_execution_base import OrderExecutionBase


class OpenSpotOrderUseCase(OrderExecutionBase):
    """
    Buy leg: collateral -> order token.

    claim -> validate -> fee/network-fee -> fund check -> reserve -> swap
    (reservation always released) -> checkpoint -> tx info / activity ->
    trade fee -> prices -> OPENED.

    Safe to fire-and-forget: a duplicate call loses the atomic claim and returns.
    """

    def _invalid_reason(self, order: OrderEntity) -> Optional[str]:
        reason = self._common_invalid_reason(order)
        if reason:
            return reason
        assets = order.order_asset
        if not CHAIN_CONFIG[order.chain_id].native.address:
            return "wrapped native missing"
        if assets.collateral_token is None or not assets.collateral_token.address:
            return "collateral token missing"
        if assets.order_token is None or not assets.order_token.address:
            return "order token missing"
        if order.amount.order_size <= 0:
            return "order size must be positive"
        return None

    async def execute(self, order_id: str, token_snapshot: Optional[Dict] = None) -> None:
        order = await self._orders.claim_for_open(order_id, self._max_retry)
        if order is None:
            self._logger.warning("order %s not claimable for open (busy or not eligible)", order_id)
            return
        try:
            await self._open(order, token_snapshot)
        except Exception as exc:
            self._logger.exception("PENDING_SPOT_ORDER_UNEXPECTED_ERROR order=%s: %s", order_id, exc)
            await self._park_unexpected(order.id)

    async def _open(self, order: OrderEntity, snapshot: Optional[Dict]) -> None:
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
        token_in = order.order_asset.collateral_token.address
        token_out = order.order_asset.order_token.address
        amount_in = order.amount.order_size
        adapter = self._adapters.get(chain_id)

        bps = self._fees.fee_bps(order.user_info.status, order.priority)
        trade_fee_amount = self._fees.fee_amount(amount_in, bps)
        total_collateral = amount_in + trade_fee_amount
        network_fee = await adapter.estimate_network_fee()

        guard = self._guards.get(order.wallet_info.address)
        try:
            has_funds = await self._has_funds(guard, chain_id, token_in, total_collateral, network_fee)
        except Exception as exc:
            self._logger.error("FUNDS_CHECK_FAILED order=%s wallet=%s: %s", order.id, order.wallet, exc)
            await self._requeue_or_fail(order, OrderMessage.WALLET_FAILED.value, OrderStatus.PENDING)
            return

        if not has_funds:
            self._logger.warning("INSUFFICIENT_FUND order=%s", order.id)
            await self._release(order.id, OrderMessage.INSUFFICIENT_FUND.value, OrderStatus.FAILED)
            return

        reservations = self._reservations(chain_id, token_in, total_collateral, network_fee)
        trade_fee = TradeFeeState(amount=trade_fee_amount)
        hook = self._broadcast_hook(order.id, ProcessType.OPEN, trade_fee)
        try:
            with guard.reservation(reservations):
                result = await adapter.swap(token_in, token_out, amount_in, order.slippage, signer, on_broadcast=hook)
        except InsufficientFundsError as exc:
            self._logger.warning("INSUFFICIENT_FUND order=%s: %s", order.id, exc)
            await self._release(order.id, OrderMessage.INSUFFICIENT_FUND.value, OrderStatus.FAILED)
            return
        except WalletGuardError as exc:
            self._logger.error("FUND_LOCK_FAILED order=%s: %s", order.id, exc)
            await self._requeue_or_fail(order, OrderMessage.WALLET_FAILED.value, OrderStatus.PENDING)
            return

        if result.pending or not result.success or not result.signature:
            await self._handle_failed_swap(order, result, OrderStatus.PENDING, trade_fee)
            return

        self._logger.info("buy swap settled order=%s sig=%s", order.id, result.signature)
        checkpoint = AwaitingTxInfo(
            process_type=ProcessType.OPEN,
            signature=result.signature,
            amount_out=result.total_received,
            tx_fee=result.fee,
            trade_fee=trade_fee,
        )
        await self._save_checkpoint(order.id, checkpoint)
        await self._advance(order, checkpoint, signer, snapshot)
