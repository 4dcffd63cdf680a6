import asyncio
import logging
from typing import Any, Dict, List, Optional

from ..domain.constants import CHAIN_CONFIG, NATIVE_TOKEN_ADDRESS, PRECISION_DECIMALS, is_native
from ..domain.entities.activity_entity import ActivityEntity, ActivityToken, ActivityTxFee
from ..domain.entities.checkpoint_entity import (
    AwaitingFeeCollection,
    AwaitingPriceData,
    AwaitingTxInfo,
    ReadyToFinalize,
    TradeFeeState,
)
from ..domain.entities.execution_entity import SwapResult
from ..domain.entities.order_entity import OrderEntity, OrderUpdate, TokenInfo
from ..domain.enums.order_enums import (
    ActivityType,
    OrderMessage,
    OrderStatus,
    OrderType,
    ProcessType,
    SwapErrorLabel,
)
from ..errors.exceptions import TransactionRevertedError, TxPendingError
from ..ports.chain_adapter import BroadcastHook, ChainAdapterProvider
from ..ports.signer_provider import SignerProvider
from ..repositories.activity_repository import ActivityRepository
from ..repositories.order_repository import OrderRepository
from ..services.number_utils import convert_to_usd, safe_parse_units
from ..services.position_service import PositionService
from ..services.price_cache import PriceCache
from ..services.trade_fee_service import TradeFeeService
from ..services.wallet_guard import Reservation, WalletGuard, WalletGuardRegistry


class OrderExecutionBase:
    """
    Shared machinery of the open / close / resume use cases.

    Once a swap has settled on-chain the order is driven through the checkpoint
    phases by `_advance()`:

        AwaitingTxInfo -> AwaitingFeeCollection -> AwaitingPriceData -> ReadyToFinalize

    Every transition is persisted while the order is still busy. A phase that
    cannot complete parks the order in PROCESSING (not busy, checkpoint kept)
    for ProcessOrderUseCase to pick up; the swap itself is never re-submitted.
    """

    def __init__(
        self,
        order_repo: OrderRepository,
        activity_repo: ActivityRepository,
        adapters: ChainAdapterProvider,
        wallet_guards: WalletGuardRegistry,
        signer_provider: SignerProvider,
        price_cache: PriceCache,
        trade_fee_service: TradeFeeService,
        position_service: PositionService,
        logger: Optional[logging.Logger] = None,
        max_retry: int = 3,
        max_resume_retry: int = 10,
    ):
        self._orders = order_repo
        self._activities = activity_repo
        self._adapters = adapters
        self._guards = wallet_guards
        self._signers = signer_provider
        self._prices = price_cache
        self._fees = trade_fee_service
        self._positions = position_service
        self._logger = logger or logging.getLogger(self.__class__.__name__)
        self._max_retry = max_retry
        self._max_resume_retry = max_resume_retry

    # ---------- state writes ----------

    async def _release(
        self, order_id: str, message: str, status: Optional[OrderStatus] = None, clear_checkpoint: bool = False
    ) -> None:
        await self._orders.update(
            order_id, OrderUpdate(status=status, message=message, is_busy=False, clear_checkpoint=clear_checkpoint)
        )

    async def _save_checkpoint(self, order_id: str, checkpoint) -> None:
        await self._orders.update(order_id, OrderUpdate(checkpoint=checkpoint))

    async def _park(self, order_id: str, checkpoint, message: OrderMessage) -> None:
        self._logger.error("%s order=%s phase=%s", message.value, order_id, checkpoint.phase)
        await self._orders.update(
            order_id,
            OrderUpdate(
                status=OrderStatus.PROCESSING,
                message=message.value,
                is_active=True,
                is_busy=False,
                checkpoint=checkpoint,
            ),
        )

    async def _park_unexpected(self, order_id: str) -> None:
        # checkpoint (if any) stays whatever was last persisted
        try:
            await self._orders.update(
                order_id,
                OrderUpdate(
                    status=OrderStatus.PROCESSING,
                    message=OrderMessage.UNEXPECTED_ERROR.value,
                    is_busy=False,
                ),
            )
        except Exception as exc:
            self._logger.error("ORDER_UPDATE_AFTER_ERROR_FAILED order=%s: %s", order_id, exc)

    # ---------- pre-swap helpers ----------

    def _get_signer(self, order: OrderEntity) -> Any:
        wallet = order.wallet_info
        return self._signers.get_signer(wallet.encrypted_wallet_key, wallet.network)

    def _common_invalid_reason(self, order: OrderEntity) -> Optional[str]:
        if order.chain_id not in CHAIN_CONFIG:
            return f"unsupported chain {order.chain_id}"
        wallet = order.wallet_info
        if wallet is None or not wallet.address:
            return "wallet missing"
        if not wallet.encrypted_wallet_key:
            return "wallet key missing"
        if wallet.network is None:
            return "wallet network missing"
        if order.user_info is None:
            return "user missing"
        return None

    async def _has_funds(
        self, guard: WalletGuard, chain_id: int, token_in: str, amount: int, network_fee: int
    ) -> bool:
        if is_native(token_in):
            return await guard.check_sufficient_funds(chain_id, NATIVE_TOKEN_ADDRESS, amount + network_fee)
        native_ok, token_ok = await asyncio.gather(
            guard.check_sufficient_funds(chain_id, NATIVE_TOKEN_ADDRESS, network_fee),
            guard.check_sufficient_funds(chain_id, token_in, amount),
        )
        return native_ok and token_ok

    @staticmethod
    def _reservations(chain_id: int, token_in: str, amount: int, network_fee: int) -> List[Reservation]:
        if is_native(token_in):
            return [(chain_id, NATIVE_TOKEN_ADDRESS, amount + network_fee)]
        return [(chain_id, NATIVE_TOKEN_ADDRESS, network_fee), (chain_id, token_in, amount)]

    def _failed_swap_status(self, order: OrderEntity, retryable: bool, requeue: OrderStatus) -> OrderStatus:
        if retryable and order.additional.retry < self._max_retry:
            return requeue
        return OrderStatus.FAILED

    async def _requeue_or_fail(
        self, order: OrderEntity, message: str, requeue: OrderStatus, clear_checkpoint: bool = False
    ) -> None:
        """Hand a retryable failure back to `requeue` while the retry budget lasts."""
        status = self._failed_swap_status(order, True, requeue)
        if status == OrderStatus.FAILED:
            message = OrderMessage.RETRY_EXHAUSTED.value
        await self._release(order.id, message, status, clear_checkpoint)

    async def _handle_failed_swap(
        self, order: OrderEntity, result: SwapResult, requeue: OrderStatus, trade_fee: TradeFeeState
    ) -> None:
        process_type = ProcessType.OPEN if requeue == OrderStatus.PENDING else ProcessType.CLOSE
        if result.pending and result.signature:
            # broadcast but unconfirmed: track it, never re-submit
            self._logger.warning("TX_PENDING order=%s sig=%s: %s", order.id, result.signature, result.error)
            checkpoint = AwaitingTxInfo(process_type=process_type, signature=result.signature, trade_fee=trade_fee)
            await self._park(order.id, checkpoint, OrderMessage.TX_PENDING)
            return

        label = result.error_label.value if result.error_label else SwapErrorLabel.TX_FAILED.value
        self._logger.error(
            "ORDER_%s_TRANSACTION_FAILED order=%s label=%s: %s",
            "BUY" if process_type == ProcessType.OPEN else "SELL", order.id, label, result.error,
        )
        if result.retryable:
            await self._requeue_or_fail(order, label, requeue, clear_checkpoint=True)
        else:
            await self._release(order.id, label, OrderStatus.FAILED, clear_checkpoint=True)

    def _broadcast_hook(self, order_id: str, process_type: ProcessType, trade_fee: TradeFeeState) -> BroadcastHook:
        """Persist the swap signature the moment the node accepts it."""
        async def _remember(signature: str) -> None:
            await self._save_checkpoint(
                order_id, AwaitingTxInfo(process_type=process_type, signature=signature, trade_fee=trade_fee)
            )

        return _remember

    # ---------- token roles ----------

    @staticmethod
    def _counter_token(order: OrderEntity, process_type: ProcessType) -> TokenInfo:
        """Collateral on OPEN, output token on CLOSE; this is also the trade-fee token."""
        assets = order.order_asset
        return assets.collateral_token if process_type == ProcessType.OPEN else assets.output_token

    @staticmethod
    def _received_token(order: OrderEntity, process_type: ProcessType) -> TokenInfo:
        assets = order.order_asset
        return assets.order_token if process_type == ProcessType.OPEN else assets.output_token

    @staticmethod
    def _amount_in(order: OrderEntity, process_type: ProcessType) -> int:
        return order.amount.order_size if process_type == ProcessType.OPEN else order.amount.token_amount

    @staticmethod
    def _native_decimals(chain_id: int) -> int:
        return CHAIN_CONFIG[chain_id].native.decimals

    # ---------- prices ----------

    async def _fill_prices(self, order: OrderEntity, cp, snapshot: Optional[Dict], use_oracle: bool):
        """
        Fill whatever prices are still 0 on the checkpoint: native from the
        collateral cache, order token from the market snapshot, counter token
        from the cache. With `use_oracle` the oracle is asked for what is still missing.
        """
        chain_id = order.chain_id
        native_addr = CHAIN_CONFIG[chain_id].native.address
        order_token = order.order_asset.order_token
        counter = self._counter_token(order, cp.process_type)

        native_price = cp.native_price_usd or self._prices.native_price(chain_id)
        token_price = cp.token_price_usd
        if not token_price and snapshot:
            token_price = safe_parse_units(snapshot.get("priceUSD"), PRECISION_DECIMALS)
        counter_price = cp.counter_price_usd
        if not counter_price:
            counter_price = native_price if is_native(counter.address) else self._prices.get(chain_id, counter.address)

        if use_oracle and not (native_price and token_price and counter_price):
            wanted = []
            if not native_price:
                wanted.append(native_addr)
            if not token_price:
                wanted.append(order_token.address)
            if not counter_price and not is_native(counter.address):
                wanted.append(counter.address)
            try:
                fetched = await self._prices.fetch_prices(chain_id, wanted)
                native_price = native_price or fetched.get(native_addr.lower(), 0)
                token_price = token_price or fetched.get(order_token.address.lower(), 0)
                if not counter_price:
                    counter_price = native_price if is_native(counter.address) else fetched.get(counter.address.lower(), 0)
            except Exception as exc:
                self._logger.warning("price lookup failed for order %s: %s", order.id, exc)

        return cp.model_copy(
            update={
                "native_price_usd": int(native_price or 0),
                "token_price_usd": int(token_price or 0),
                "counter_price_usd": int(counter_price or 0),
            }
        )

    # ---------- activity ----------

    @staticmethod
    def _activity_token(token: TokenInfo, amount: int, price: int) -> ActivityToken:
        return ActivityToken(
            **token.model_dump(exclude={"amount", "amount_in_usd"}),
            amount=int(amount),
            amount_in_usd=convert_to_usd(int(amount), token.decimals, price),
        )

    def _trade_activity_usd(self, order: OrderEntity, cp) -> Dict[str, int]:
        order_token = order.order_asset.order_token
        counter = self._counter_token(order, cp.process_type)
        amount_in = self._amount_in(order, cp.process_type)
        tx_fee_usd = convert_to_usd(int(cp.tx_fee or 0), self._native_decimals(order.chain_id), cp.native_price_usd)
        if cp.process_type == ProcessType.OPEN:
            pay = convert_to_usd(amount_in, counter.decimals, cp.counter_price_usd)
            receive = convert_to_usd(int(cp.amount_out or 0), order_token.decimals, cp.token_price_usd)
        else:
            pay = convert_to_usd(amount_in, order_token.decimals, cp.token_price_usd)
            receive = convert_to_usd(int(cp.amount_out or 0), counter.decimals, cp.counter_price_usd)
        return {"pay": pay, "receive": receive, "fee": tx_fee_usd}

    async def _record_trade_activity(self, order: OrderEntity, cp) -> str:
        order_token = order.order_asset.order_token
        counter = self._counter_token(order, cp.process_type)
        amount_in = self._amount_in(order, cp.process_type)
        usd = self._trade_activity_usd(order, cp)

        if cp.process_type == ProcessType.OPEN:
            pay_token = self._activity_token(counter, amount_in, cp.counter_price_usd)
            receive_token = self._activity_token(order_token, int(cp.amount_out), cp.token_price_usd)
            activity_type = ActivityType.BUY
        else:
            pay_token = self._activity_token(order_token, amount_in, cp.token_price_usd)
            receive_token = self._activity_token(counter, int(cp.amount_out), cp.counter_price_usd)
            activity_type = ActivityType.SELL

        activity = ActivityEntity(
            order=order.id,
            wallet=order.wallet,
            user=order.user,
            type=activity_type,
            chain_id=order.chain_id,
            tx_hash=cp.signature,
            index_token=order_token.address,
            pay_token=pay_token,
            receive_token=receive_token,
            tx_fee=ActivityTxFee(fee_amount=int(cp.tx_fee), fee_in_usd=usd["fee"]),
        )
        return await self._activities.insert(activity)

    async def _backfill_activities(self, order: OrderEntity, cp) -> None:
        try:
            if cp.activity_id:
                usd = self._trade_activity_usd(order, cp)
                await self._activities.update_usd(
                    cp.activity_id, pay_in_usd=usd["pay"], receive_in_usd=usd["receive"], fee_in_usd=usd["fee"]
                )
            fee = cp.trade_fee
            if fee.activity_id and fee.executed:
                counter = self._counter_token(order, cp.process_type)
                await self._activities.update_usd(
                    fee.activity_id,
                    pay_in_usd=convert_to_usd(fee.amount, counter.decimals, cp.counter_price_usd),
                    fee_in_usd=convert_to_usd(
                        fee.tx_fee_amount, self._native_decimals(order.chain_id), cp.native_price_usd
                    ),
                )
        except Exception as exc:
            self._logger.error("ACTIVITY_BACKFILL_FAILED order=%s: %s", order.id, exc)

    # ---------- phases ----------

    async def _advance(self, order: OrderEntity, cp, signer: Any, snapshot: Optional[Dict]) -> None:
        if isinstance(cp, AwaitingTxInfo):
            cp = await self._capture_tx_info(order, cp, snapshot)
            if cp is None:
                return
        if isinstance(cp, AwaitingFeeCollection):
            cp = await self._collect_trade_fee(order, cp, signer)
            if cp is None:
                return
        if isinstance(cp, AwaitingPriceData):
            cp = await self._complete_prices(order, cp, snapshot)
            if cp is None:
                return
        if isinstance(cp, ReadyToFinalize):
            await self._finalize(order, cp)
            return
        raise TypeError(f"unknown checkpoint phase: {cp!r}")

    async def _capture_tx_info(
        self, order: OrderEntity, cp: AwaitingTxInfo, snapshot: Optional[Dict]
    ) -> Optional[AwaitingFeeCollection]:
        amount_out = int(cp.amount_out or 0)
        tx_fee = int(cp.tx_fee or 0)

        message = OrderMessage.TX_PROCESSING_FAILED
        if amount_out <= 0 or tx_fee <= 0:
            received = self._received_token(order, cp.process_type)
            try:
                info = await self._adapters.get(order.chain_id).get_tx_info(
                    cp.signature, order.wallet_info.address, received.address
                )
                amount_out = amount_out if amount_out > 0 else int(info.total_received)
                tx_fee = tx_fee if tx_fee > 0 else int(info.fee)
            except TransactionRevertedError as exc:
                # same outcome as a revert seen while sending
                self._logger.error("TX_FAILED order=%s sig=%s reverted: %s", order.id, cp.signature, exc.message)
                await self._release(order.id, SwapErrorLabel.TX_FAILED.value, OrderStatus.FAILED, clear_checkpoint=True)
                return None
            except TxPendingError as exc:
                message = OrderMessage.TX_PENDING
                self._logger.warning("tx still pending order=%s sig=%s: %s", order.id, cp.signature, exc.message)
            except Exception as exc:
                self._logger.warning("tx info lookup failed order=%s sig=%s: %s", order.id, cp.signature, exc)

        if amount_out <= 0 or tx_fee <= 0:
            await self._park(
                order.id,
                cp.model_copy(update={"amount_out": amount_out or None, "tx_fee": tx_fee or None}),
                message,
            )
            return None

        fee = cp.trade_fee
        if cp.process_type == ProcessType.CLOSE and not fee.executed and fee.amount <= 0:
            bps = self._fees.fee_bps(order.user_info.status if order.user_info else None, order.priority)
            fee = fee.model_copy(update={"amount": self._fees.fee_amount(amount_out, bps)})

        cp = cp.model_copy(update={"amount_out": amount_out, "tx_fee": tx_fee, "trade_fee": fee})
        if cp.activity_id is None:
            cp = await self._fill_prices(order, cp, snapshot, use_oracle=False)
            activity_id = await self._record_trade_activity(order, cp)
            cp = cp.model_copy(update={"activity_id": activity_id, "oracle_calculation": cp.has_prices})

        nxt = cp.to_phase(AwaitingFeeCollection)
        await self._save_checkpoint(order.id, nxt)
        return nxt

    async def _collect_trade_fee(
        self, order: OrderEntity, cp: AwaitingFeeCollection, signer: Any
    ) -> Optional[AwaitingPriceData]:
        fee = cp.trade_fee
        if not fee.settled:
            token = self._counter_token(order, cp.process_type)

            async def _remember(signature: str) -> None:
                sent = fee.model_copy(update={"signature": signature})
                await self._save_checkpoint(order.id, cp.model_copy(update={"trade_fee": sent}))

            result = await self._fees.withdraw(
                order,
                signer,
                token,
                fee.amount,
                native_price_usd=cp.native_price_usd,
                token_price_usd=cp.counter_price_usd,
                pending_signature=fee.signature,
                on_broadcast=_remember,
            )
            if not result.execution:
                # a pending transfer keeps its signature for the next run to confirm
                cp = cp.model_copy(update={"trade_fee": fee.model_copy(update={"signature": result.signature})})
                message = OrderMessage.TX_PENDING if result.pending else OrderMessage.TRADE_FEE_EXECUTED_FAILED
                await self._park(order.id, cp, message)
                return None
            fee = TradeFeeState(
                amount=result.amount,
                executed=True,
                signature=result.signature,
                activity_id=result.activity_id,
                tx_fee_amount=result.tx_fee_amount,
                fee_in_usd=result.fee_in_usd,
                value_in_usd=result.value_in_usd,
            )

        nxt = cp.to_phase(AwaitingPriceData, trade_fee=fee.model_dump())
        await self._save_checkpoint(order.id, nxt)
        return nxt

    async def _complete_prices(
        self, order: OrderEntity, cp: AwaitingPriceData, snapshot: Optional[Dict]
    ) -> Optional[ReadyToFinalize]:
        cp = await self._fill_prices(order, cp, snapshot, use_oracle=True)
        if not cp.has_prices:
            await self._park(order.id, cp, OrderMessage.PRICE_NOT_FETCHED)
            return None
        nxt = cp.to_phase(ReadyToFinalize)
        await self._save_checkpoint(order.id, nxt)
        return nxt

    # ---------- accounting ----------

    async def _finalize(self, order: OrderEntity, cp: ReadyToFinalize) -> None:
        if not cp.oracle_calculation:
            await self._backfill_activities(order, cp)

        chain_id = order.chain_id
        fee = cp.trade_fee
        fee_amount = fee.amount if fee.executed else 0
        fee_in_usd = convert_to_usd(cp.tx_fee + fee.tx_fee_amount, self._native_decimals(chain_id), cp.native_price_usd)

        if cp.process_type == ProcessType.OPEN:
            collateral = order.order_asset.collateral_token
            pay_in_usd = convert_to_usd(order.amount.order_size + fee_amount, collateral.decimals, cp.counter_price_usd)
            await self._finalize_open(order, cp, fee_in_usd, pay_in_usd)
        else:
            output = order.order_asset.output_token
            receive_in_usd = convert_to_usd(cp.amount_out - fee_amount, output.decimals, cp.counter_price_usd)
            cost = order.execution_fee.fee_in_usd + order.execution_fee.pay_in_usd
            realized_pnl = receive_in_usd - (fee_in_usd + cost)
            await self._finalize_close(order, cp, realized_pnl)

    async def _finalize_open(self, order: OrderEntity, cp: ReadyToFinalize, fee_in_usd: int, pay_in_usd: int) -> None:
        if order.exit.is_technical_exit:
            decimals = order.order_asset.order_token.decimals
            entry_price = pay_in_usd * (10 ** decimals) // cp.amount_out if cp.amount_out else 0
            await self._orders.update(
                order.id,
                OrderUpdate(
                    status=OrderStatus.OPENED,
                    message=OrderMessage.ORDER_OPENED.value,
                    type=OrderType.SELL,
                    token_amount=cp.amount_out,
                    fee_in_usd=fee_in_usd,
                    pay_in_usd=pay_in_usd,
                    entry_price=entry_price or cp.token_price_usd,
                    retry=0,
                    is_busy=False,
                    is_active=True,
                    clear_checkpoint=True,
                ),
            )
            self._logger.info("order %s opened (technical exit), tokens=%s", order.id, cp.amount_out)
            return

        await self._positions.convert_open_order(
            order,
            fee_in_usd=fee_in_usd,
            pay_in_usd=pay_in_usd,
            total_received=cp.amount_out,
            token_price_usd=cp.token_price_usd,
        )

    async def _finalize_close(self, order: OrderEntity, cp: ReadyToFinalize, realized_pnl: int) -> None:
        reentry = order.re_entrance
        rotation = order.additional.rotation
        restart = reentry.is_re_entrance and (reentry.re_entrance_limit == 0 or rotation < reentry.re_entrance_limit)

        update = OrderUpdate(
            exit_price=cp.token_price_usd,
            realized_pnl=realized_pnl,
            profit_usd=0,
            save_usd=0,
            take_profit_price=0,
            stop_loss_price=0,
            retry=0,
            is_busy=False,
            clear_checkpoint=True,
        )
        if restart:
            update.status = OrderStatus.PENDING
            update.type = OrderType.BUY
            update.message = OrderMessage.ORDER_RESTART.value
            update.rotation = rotation + 1
            update.is_active = True
        else:
            update.status = OrderStatus.CLOSED
            update.message = OrderMessage.ORDER_CLOSED.value
            update.is_active = False

        await self._orders.update(order.id, update)
        self._logger.info(
            "order %s %s: pnl=%s exit_price=%s",
            order.id, update.message, realized_pnl, cp.token_price_usd,
        )
