import logging
from typing import Any, Optional, Sequence

from ..domain.constants import BASIS_POINT_DIVISOR, CHAIN_CONFIG, is_native, is_solana
from ..domain.entities.activity_entity import ActivityEntity, ActivityToken, ActivityTxFee
from ..domain.entities.execution_entity import TradeFeeResult
from ..domain.entities.order_entity import OrderEntity, TokenInfo
from ..domain.enums.order_enums import ActivityType
from ..errors.exceptions import TransactionRevertedError, TxPendingError
from ..ports.chain_adapter import BroadcastHook, ChainAdapterProvider
from ..repositories.activity_repository import ActivityRepository
from .number_utils import convert_to_usd
from .price_cache import PriceCache


class TradeFeeService:
    """
    Protocol trade fee: rate computation and the withdrawal sub-transfer to the
    chain family's collector, recorded as its own TRADE_FEE activity.
    """

    def __init__(
        self,
        adapters: ChainAdapterProvider,
        activity_repo: ActivityRepository,
        price_cache: PriceCache,
        *,
        trade_fee_bps: int = 10,
        priority_fee_bps: int = 5,
        exempt_statuses: Sequence[str] = ("admin",),
        evm_collector: str = "",
        solana_collector: str = "",
        logger: Optional[logging.Logger] = None,
    ):
        self._adapters = adapters
        self._activities = activity_repo
        self._prices = price_cache
        self._trade_fee_bps = int(trade_fee_bps)
        self._priority_fee_bps = int(priority_fee_bps)
        self._exempt = {s.lower() for s in exempt_statuses}
        self._evm_collector = evm_collector
        self._solana_collector = solana_collector
        self._logger = logger or logging.getLogger(self.__class__.__name__)

    def fee_bps(self, user_status: Optional[str], priority: int) -> int:
        if (user_status or "").lower() in self._exempt:
            return 0
        bps = self._trade_fee_bps
        if int(priority or 0) == 2:
            bps += self._priority_fee_bps
        return bps

    @staticmethod
    def fee_amount(amount: int, bps: int) -> int:
        return int(amount) * int(bps) // BASIS_POINT_DIVISOR

    def collector(self, chain_id: int) -> str:
        return self._solana_collector if is_solana(chain_id) else self._evm_collector

    async def _resolve_prices(
        self, chain_id: int, token: TokenInfo, native_price_usd: int, token_price_usd: int
    ) -> tuple[int, int]:
        native_addr = CHAIN_CONFIG[chain_id].native.address
        token_is_native = is_native(token.address) or token.address.lower() == native_addr.lower()
        if token_is_native and native_price_usd > 0:
            token_price_usd = native_price_usd
        if native_price_usd > 0 and token_price_usd > 0:
            return native_price_usd, token_price_usd

        addresses = [native_addr] if token_is_native else [native_addr, token.address]
        fetched = await self._prices.fetch_prices(chain_id, addresses)
        native_price_usd = native_price_usd or fetched.get(native_addr.lower(), 0)
        if token_is_native:
            token_price_usd = native_price_usd
        else:
            token_price_usd = token_price_usd or fetched.get(token.address.lower(), 0)
        return native_price_usd, token_price_usd

    def _pending(self, result: TradeFeeResult, order: OrderEntity, signature: str, error: str) -> TradeFeeResult:
        result.pending = True
        result.signature = signature
        result.error = error or "Transfer tx pending"
        self._logger.warning("trade fee tx %s pending for order %s: %s", signature, order.id, result.error)
        return result

    async def withdraw(
        self,
        order: OrderEntity,
        signer: Any,
        token: TokenInfo,
        amount: int,
        *,
        native_price_usd: int = 0,
        token_price_usd: int = 0,
        activity_type: ActivityType = ActivityType.TRADE_FEE,
        pending_signature: Optional[str] = None,
        on_broadcast: Optional[BroadcastHook] = None,
    ) -> TradeFeeResult:
        """
        Transfer `amount` of `token` to the fee collector.

        `execution=True` means the transfer landed; a failure afterwards (USD
        valuation, activity write) only leaves `error` / missing `activity_id`
        and must never lead to a second transfer.

        With `pending_signature` (a transfer sent earlier whose outcome was not
        known) that transfer is confirmed instead; only a reverted one is sent again.
        `pending=True` hands back the signature of a transfer that is out but unconfirmed.
        """
        chain_id = order.chain_id
        result = TradeFeeResult(amount=int(amount))
        receiver = self.collector(chain_id)
        adapter = self._adapters.get(chain_id)

        tx = None
        if pending_signature:
            try:
                tx = await adapter.confirm_transfer(pending_signature)
            except TransactionRevertedError as exc:
                self._logger.warning(
                    "trade fee tx %s reverted for order %s, sending again: %s", pending_signature, order.id, exc
                )
            except Exception as exc:
                return self._pending(result, order, pending_signature, str(exc))

        if tx is None:
            try:
                tx = await adapter.transfer(token.address, int(amount), receiver, signer, on_broadcast=on_broadcast)
            except TxPendingError as exc:
                return self._pending(result, order, exc.tx_hash, exc.message)
            except Exception as exc:
                result.error = str(exc) or "Transfer tx failed"
                self._logger.warning("trade fee transfer failed for order %s: %s", order.id, result.error)
                return result

        result.execution = True
        result.signature = tx.signature
        result.tx_fee_amount = int(tx.fee)

        try:
            native_price_usd, token_price_usd = await self._resolve_prices(
                chain_id, token, native_price_usd, token_price_usd
            )
        except Exception as exc:
            self._logger.error("ACTIVITY_PRICE_FETCHING_FAILED order=%s: %s", order.id, exc)

        native_decimals = CHAIN_CONFIG[chain_id].native.decimals
        result.fee_in_usd = convert_to_usd(result.tx_fee_amount, native_decimals, native_price_usd)
        result.value_in_usd = convert_to_usd(result.amount, token.decimals, token_price_usd)

        activity = ActivityEntity(
            order=order.id,
            wallet=order.wallet,
            user=order.user,
            type=activity_type,
            chain_id=chain_id,
            tx_hash=tx.signature,
            index_token=token.address,
            pay_token=ActivityToken(
                **token.model_dump(exclude={"amount", "amount_in_usd"}),
                amount=result.amount,
                amount_in_usd=result.value_in_usd,
            ),
            tx_fee=ActivityTxFee(fee_amount=result.tx_fee_amount, fee_in_usd=result.fee_in_usd),
            receiver=receiver,
        )
        try:
            result.activity_id = await self._activities.insert(activity)
        except Exception as exc:
            result.error = f"activity write failed: {exc}"
            self._logger.exception("trade fee activity write failed for order %s", order.id)
        return result
