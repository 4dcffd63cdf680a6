from typing import Dict, Optional

from ..domain.enums.order_enums import OrderMessage, OrderStatus
from .order_execution_base import OrderExecutionBase


class ProcessOrderUseCase(OrderExecutionBase):
    """
    Resumes an order parked in PROCESSING with a checkpoint.

    The primary swap is never re-submitted; only the phases still pending on
    the checkpoint run. Bounded by the resume retry budget enforced at claim time.
    """

    async def execute(self, order_id: str, token_snapshot: Optional[Dict] = None) -> None:
        order = await self._orders.claim_for_process(order_id, self._max_resume_retry)
        if order is None:
            self._logger.warning("order %s not claimable for resume (busy or not eligible)", order_id)
            return
        try:
            await self._resume(order, token_snapshot)
        except Exception as exc:
            self._logger.exception("PROCESS_ORDER_UNEXPECTED_ERROR order=%s: %s", order_id, exc)
            await self._park_unexpected(order.id)

    async def _resume(self, order, snapshot: Optional[Dict]) -> None:
        checkpoint = order.checkpoint
        if checkpoint is None:
            await self._release(order.id, OrderMessage.UNEXPECTED_ERROR.value, OrderStatus.PROCESSING)
            return

        reason = self._common_invalid_reason(order)
        if reason:
            # funds already moved, keep it parked for a human
            self._logger.error("INVALID_ORDER order=%s (resume): %s", order.id, reason)
            await self._park(order.id, checkpoint, OrderMessage.INVALID_ORDER)
            return

        try:
            signer = self._get_signer(order)
        except Exception as exc:
            self._logger.error("SIGNER_FAILED order=%s (resume): %s", order.id, exc)
            await self._park(order.id, checkpoint, OrderMessage.SIGNER_FAILED)
            return

        self._logger.info("resuming order %s from %s", order.id, checkpoint.phase)
        await self._advance(order, checkpoint, signer, snapshot)
