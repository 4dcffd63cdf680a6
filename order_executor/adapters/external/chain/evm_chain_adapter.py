import asyncio
import logging
from typing import Any, Dict, List, Optional, Tuple

from eth_abi import encode as abi_encode
from web3 import AsyncWeb3, Web3
from web3.exceptions import TimeExhausted, TransactionNotFound

from ....core.domain.constants import (
    BASIS_POINT_DIVISOR,
    CHAIN_CONFIG,
    DEFAULT_SWAP_GAS_UNITS,
    ERC20_TRANSFER_TOPIC,
    JOE_AGGREGATOR_ROUTER,
    ORDER_GAS_BUFFER,
    is_native,
)
from ....core.domain.entities.execution_entity import SwapResult, SwapRoute, TransferResult, TxInfo
from ....core.domain.enums.order_enums import SwapErrorLabel
from ....core.errors.error_classifier import ErrorKind, ErrorSource, classify
from ....core.errors.exceptions import (
    ExecutionError,
    InsufficientFundsError,
    NoRouteError,
    TransactionRevertedError,
    TxPendingError,
)
from ....core.ports.chain_adapter import BroadcastHook, ChainAdapter
from ....core.services.retry import simple_retry
from ....core.services.route_aggregator import RouteAggregator
from .nonce_tracker import NonceTracker
from .utils import address_topic, notify_broadcast, to_int, to_json_safe

MAX_UINT256 = 2**256 - 1

ERC20_ABI = [
    {
        "name": "balanceOf",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "owner", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "name": "allowance",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "owner", "type": "address"}, {"name": "spender", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
]

# 4-byte selectors of the two state-changing ERC20 calls we send
APPROVE_SELECTOR = bytes.fromhex("095ea7b3")
TRANSFER_SELECTOR = bytes.fromhex("a9059cbb")


def erc20_call_data(selector: bytes, address: str, amount: int) -> str:
    return Web3.to_hex(selector + abi_encode(["address", "uint256"], [Web3.to_checksum_address(address), int(amount)]))


class EvmChainAdapter(ChainAdapter):
    """
    ChainAdapter for one EVM chain.

    Swap flow:
    1. best routes from the aggregators (best amount_out first)
    2. infinite approval of the input token to the aggregator router when needed
    3. first route whose gas estimate passes wins; buffered fee must fit the chain's gas range
    4. sign once + broadcast with bounded retries, one nonce refresh-and-resend
    5. receipt wait; an unknown outcome comes back as a pending result with the hash
    6. realized amount / fee parsed back from the receipt
    """

    def __init__(
        self,
        chain_id: int,
        rpc_url: str,
        route_aggregator: RouteAggregator,
        nonce_tracker: NonceTracker,
        *,
        approve_spender: str = JOE_AGGREGATOR_ROUTER,
        send_retry: int = 2,
        retry_delay_sec: float = 1.0,
        receipt_timeout_sec: float = 120.0,
        w3: Optional[AsyncWeb3] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.chain_id = chain_id
        self.config = CHAIN_CONFIG[chain_id]
        self.w3 = w3 or AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(rpc_url))
        self._routes = route_aggregator
        self._nonces = nonce_tracker
        self._spender = Web3.to_checksum_address(approve_spender)
        self._send_retry = send_retry
        self._retry_delay = retry_delay_sec
        self._receipt_timeout = receipt_timeout_sec
        self._logger = logger or logging.getLogger(f"{self.__class__.__name__}[{chain_id}]")

    # ---------- reads ----------

    def signer_address(self, signer: Any) -> str:
        return signer.address

    def _erc20(self, token: str):
        return self.w3.eth.contract(address=Web3.to_checksum_address(token), abi=ERC20_ABI)

    async def get_balance(self, address: str, token: str) -> int:
        owner = Web3.to_checksum_address(address)
        if is_native(token):
            return int(await self.w3.eth.get_balance(owner))
        return int(await self._erc20(token).functions.balanceOf(owner).call())

    async def _allowance(self, owner: str, token: str) -> int:
        return int(await self._erc20(token).functions.allowance(Web3.to_checksum_address(owner), self._spender).call())

    async def estimate_network_fee(self) -> int:
        gas_price = int(await self.w3.eth.gas_price)
        return gas_price * DEFAULT_SWAP_GAS_UNITS * ORDER_GAS_BUFFER // BASIS_POINT_DIVISOR

    # ---------- send pipeline ----------

    async def _fetch_nonce(self, address: str) -> int:
        return int(await self.w3.eth.get_transaction_count(Web3.to_checksum_address(address), "pending"))

    async def _prepare(self, tx: Dict, signer: Any, gas_price: Optional[int] = None) -> Dict:
        """
        Fill from/chainId/gasPrice/gas. Gas limit is the node estimate padded
        like every other tx we send (x1.25 + 10k).
        """
        tx = dict(tx)
        tx["from"] = Web3.to_checksum_address(signer.address)
        tx["to"] = Web3.to_checksum_address(tx["to"])
        tx["value"] = to_int(tx.get("value"))
        tx["chainId"] = self.chain_id
        if "gasPrice" not in tx:
            tx["gasPrice"] = gas_price if gas_price is not None else int(await self.w3.eth.gas_price)
        if "gas" not in tx:
            tx["gas"] = int(int(await self.w3.eth.estimate_gas(tx)) * 1.25) + 10_000
        return tx

    async def _sign(self, tx: Dict, signer: Any):
        nonce = await self._nonces.next_nonce(self.chain_id, signer.address, lambda: self._fetch_nonce(signer.address))
        try:
            return signer.sign_transaction({**tx, "nonce": nonce})
        except Exception:
            self._nonces.reset(self.chain_id, signer.address)
            raise

    async def _broadcast(self, tx: Dict, signer: Any, label: SwapErrorLabel) -> str:
        """
        Sign once and push the signed bytes until the node accepts them.

        Transient failures resend the same bytes, so at most one copy can be
        mined. A rejected nonce on the first push is refreshed and re-signed
        once; a nonce error after a transient failure means the earlier push
        already reached the node.
        """
        address = signer.address
        signed = await self._sign(tx, signer)
        resigned = False
        attempts = 0
        while True:
            try:
                return Web3.to_hex(await self.w3.eth.send_raw_transaction(signed.raw_transaction))
            except Exception as exc:
                err = classify(exc, ErrorSource.EVM_RPC)
                if err.kind == ErrorKind.NONCE_RACE and attempts > 0:
                    self._logger.warning("tx from %s already known to the node after retry", address)
                    return Web3.to_hex(signed.hash)
                if err.kind == ErrorKind.NONCE_RACE and not resigned:
                    resigned = True
                    self._logger.warning("nonce rejected for %s, refreshing and resending once", address)
                    self._nonces.reset(self.chain_id, address)
                    signed = await self._sign(tx, signer)
                    continue
                if err.retryable and err.kind != ErrorKind.NONCE_RACE and attempts < self._send_retry:
                    attempts += 1
                    self._logger.warning("send failed (%s), retry %s/%s", err.message, attempts, self._send_retry)
                    await asyncio.sleep(self._retry_delay)
                    continue
                # nothing reached the chain, the nonce is free again
                self._nonces.reset(self.chain_id, address)
                if err.kind == ErrorKind.NONCE_RACE:
                    label = SwapErrorLabel.TX_NONCE_FAILED
                raise ExecutionError(
                    err.message, label=label.value, kind=err.kind, retryable=err.retryable, code=err.code
                ) from exc

    async def wait_for_receipt(self, tx_hash: str) -> Dict:
        """
        Receipt of a broadcast tx. Only the receipt poll is retried; a timeout
        or a poll that keeps failing hands the hash back as TxPendingError.
        """
        attempts = 0
        while True:
            try:
                rcpt = to_json_safe(
                    await self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self._receipt_timeout)
                )
                break
            except TimeExhausted as exc:
                raise TxPendingError(
                    tx_hash, f"Receipt for {tx_hash} not found after {self._receipt_timeout}s"
                ) from exc
            except Exception as exc:
                attempts += 1
                if attempts > self._send_retry:
                    raise TxPendingError(tx_hash, f"Receipt for {tx_hash} unavailable: {exc}") from exc
                self._logger.warning("receipt poll for %s failed (%s), retry %s/%s", tx_hash, exc, attempts, self._send_retry)
                await asyncio.sleep(self._retry_delay)
        if to_int(rcpt.get("status")) == 0:
            raise TransactionRevertedError(
                tx_hash=tx_hash,
                receipt=rcpt,
                msg="Transaction reverted (status=0). Possibly out-of-gas or require() failed",
            )
        return rcpt

    async def send_with_retry(
        self,
        tx: Dict,
        signer: Any,
        label: SwapErrorLabel = SwapErrorLabel.TX_FAILED,
        on_broadcast: Optional[BroadcastHook] = None,
    ) -> Dict:
        """
        Broadcast, then wait for the receipt. Send failures surface as
        ExecutionError(label) with the classifier's retryability; once a hash
        exists the tx is never signed again and an unknown outcome raises
        TxPendingError carrying that hash.
        """
        tx_hash = await self._broadcast(tx, signer, label)
        await notify_broadcast(on_broadcast, tx_hash, self._logger)
        try:
            return await self.wait_for_receipt(tx_hash)
        except TransactionRevertedError as exc:
            raise ExecutionError(
                exc.message, label=label.value, kind=exc.kind, retryable=False, code=exc.code
            ) from exc

    @staticmethod
    def _receipt_fee(rcpt: Dict) -> int:
        return to_int(rcpt.get("gasUsed")) * to_int(rcpt.get("effectiveGasPrice") or rcpt.get("gasPrice"))

    # ---------- receipts ----------

    async def parse_received(self, receipt: Dict, receiver: str, token_out: str) -> TxInfo:
        """
        Realized amount of `token_out` that reached `receiver` in a mined tx.

        Native output: balance delta across the block plus the gas this tx
        burned (the receiver is the payer). Token output: the ERC20 Transfer
        log of `token_out` whose `to` topic is the receiver.
        """
        rcpt = to_json_safe(receipt)
        gas_used = to_int(rcpt.get("gasUsed"))
        gas_price = to_int(rcpt.get("effectiveGasPrice") or rcpt.get("gasPrice"))
        fee = gas_used * gas_price

        if is_native(token_out):
            owner = Web3.to_checksum_address(receiver)
            block = to_int(rcpt.get("blockNumber"))

            async def _balances() -> Tuple[int, int]:
                before, after = await asyncio.gather(
                    self.w3.eth.get_balance(owner, block_identifier=block - 1),
                    self.w3.eth.get_balance(owner, block_identifier=block),
                )
                return int(before), int(after)

            before, after = await simple_retry(_balances, retry=3)
            return TxInfo(total_received=max(0, after - before + fee), fee=fee)

        token = token_out.lower()
        to_topic = address_topic(receiver)
        total = 0
        for log in rcpt.get("logs") or []:
            topics = [str(t).lower() for t in (log.get("topics") or [])]
            if (
                str(log.get("address", "")).lower() == token
                and len(topics) > 2
                and topics[0] == ERC20_TRANSFER_TOPIC
                and topics[2] == to_topic
            ):
                total = to_int(log.get("data"))
                break
        return TxInfo(total_received=total, fee=fee)

    async def get_tx_info(self, signature: str, receiver: str, token_out: str) -> TxInfo:
        receipt = to_json_safe(await self.w3.eth.get_transaction_receipt(signature))
        if to_int(receipt.get("status")) == 0:
            raise TransactionRevertedError(tx_hash=signature, receipt=receipt)
        return await self.parse_received(receipt, receiver, token_out)

    # ---------- swap ----------

    async def _ensure_allowance(self, token_in: str, amount_in: int, signer: Any) -> int:
        """
        Approve the router for MaxUint256 when the allowance is short.
        Returns the network fee paid for the approval (0 when none was needed).
        """
        owner = signer.address
        balance, allowance = await asyncio.gather(self.get_balance(owner, token_in), self._allowance(owner, token_in))
        if balance < amount_in:
            raise InsufficientFundsError(self.chain_id, token_in, amount_in, balance)
        if allowance >= amount_in:
            return 0

        self._logger.info("approving %s for router %s", token_in, self._spender)
        tx = await self._prepare(
            {"to": token_in, "value": 0, "data": erc20_call_data(APPROVE_SELECTOR, self._spender, MAX_UINT256)},
            signer,
        )
        rcpt = await self.send_with_retry(tx, signer, SwapErrorLabel.APPROVE_FAILED)
        return self._receipt_fee(rcpt)

    @staticmethod
    def _route_tx(route: SwapRoute, sender: str) -> Dict:
        data = route.tx_data
        return {
            "from": Web3.to_checksum_address(sender),
            "to": Web3.to_checksum_address(data["to"]),
            "data": data.get("data") or "0x",
            "value": to_int(data.get("value")),
        }

    async def _pick_route(self, routes: List[SwapRoute], sender: str, gas_price: int) -> Tuple[SwapRoute, Dict, int]:
        """
        First route (best-first order) whose gas estimate succeeds. A nonce race
        or a transient RPC failure gets one more try on the same route; anything
        else moves on to the next route.
        """
        last_error: Optional[str] = None
        for route in routes:
            tx = self._route_tx(route, sender)
            for attempt in range(2):
                try:
                    gas = int(await self.w3.eth.estimate_gas({**tx, "gasPrice": gas_price}))
                    return route, tx, gas
                except Exception as exc:
                    err = classify(exc, ErrorSource.EVM_RPC)
                    last_error = err.message
                    if attempt == 0 and err.kind == ErrorKind.NONCE_RACE:
                        self._nonces.reset(self.chain_id, sender)
                        continue
                    if attempt == 0 and err.retryable:
                        await asyncio.sleep(self._retry_delay)
                        continue
                    self._logger.info("route %s rejected by estimate: %s", route.aggregator, err.message)
                    break
        raise ExecutionError(
            f"No valid swap route found: {last_error}" if last_error else "No valid swap route found",
            label=SwapErrorLabel.NO_ROUTE_FOUND.value,
            kind=ErrorKind.ROUTE_UNAVAILABLE,
            retryable=False,
        )

    async def swap(
        self,
        token_in: str,
        token_out: str,
        amount_in: int,
        slippage_bps: int,
        signer: Any,
        on_broadcast: Optional[BroadcastHook] = None,
    ) -> SwapResult:
        sender = signer.address
        try:
            routes = await self._routes.best_routes(
                self.chain_id, token_in, token_out, amount_in, slippage_bps, sender
            )
        except NoRouteError as exc:
            self._logger.warning("ROUTE_ORACLE_FAILED %s -> %s: %s", token_in, token_out, exc.message)
            return SwapResult.failed(SwapErrorLabel.ROUTE_ORACLE_FAILED, exc.message, exc.retryable)

        approve_fee = 0
        if not is_native(token_in):
            try:
                approve_fee = await self._ensure_allowance(token_in, amount_in, signer)
            except InsufficientFundsError:
                return SwapResult.failed(SwapErrorLabel.APPROVE_FAILED, "Insufficient balance", False)
            except TxPendingError as exc:
                # only the approval is in flight, the swap itself was not sent
                self._logger.warning("APPROVE_FAILED %s: %s", token_in, exc.message)
                return SwapResult.failed(SwapErrorLabel.APPROVE_FAILED, exc.message, True)
            except Exception as exc:
                err = classify(exc, ErrorSource.EVM_RPC)
                self._logger.error("APPROVE_FAILED %s: %s", token_in, err.message)
                return SwapResult.failed(SwapErrorLabel.APPROVE_FAILED, err.message, err.retryable)

        try:
            gas_price = int(await self.w3.eth.gas_price)
            route, tx, gas = await self._pick_route(routes, sender, gas_price)

            buffered_fee = gas * gas_price * ORDER_GAS_BUFFER // BASIS_POINT_DIVISOR
            if buffered_fee > self.config.default_gas_range:
                return SwapResult.failed(
                    SwapErrorLabel.GAS_LIMIT_EXCEEDED,
                    f"Network fee {buffered_fee} above limit {self.config.default_gas_range}",
                    True,
                )

            tx["gas"] = gas * ORDER_GAS_BUFFER // BASIS_POINT_DIVISOR
            tx["gasPrice"] = gas_price
            tx["chainId"] = self.chain_id
            self._logger.info(
                "swapping %s %s -> %s via %s (quoted out=%s)", amount_in, token_in, token_out, route.aggregator, route.amount_out
            )
            rcpt = await self.send_with_retry(tx, signer, SwapErrorLabel.TX_FAILED, on_broadcast)
        except TxPendingError as exc:
            self._logger.warning("TX_PENDING %s -> %s: %s", token_in, token_out, exc.message)
            return SwapResult.pending_tx(exc.tx_hash, exc.message)
        except ExecutionError as exc:
            label = SwapErrorLabel(exc.label) if exc.label in SwapErrorLabel.__members__ else SwapErrorLabel.SWAP_FAILED
            self._logger.error("%s %s -> %s: %s", label.value, token_in, token_out, exc.message)
            return SwapResult.failed(label, exc.message, exc.retryable)
        except Exception as exc:
            err = classify(exc, ErrorSource.EVM_RPC)
            self._logger.exception("SWAP_FAILED %s -> %s: %s", token_in, token_out, err.message)
            return SwapResult.failed(SwapErrorLabel.SWAP_FAILED, err.message, err.retryable)

        tx_hash = rcpt.get("transactionHash")
        try:
            info = await self.parse_received(rcpt, sender, token_out)
        except Exception as exc:
            # swap is mined; amounts are re-read later from the checkpoint
            self._logger.warning("receipt parse failed for %s: %s", tx_hash, exc)
            return SwapResult.ok(tx_hash, None, None)
        return SwapResult.ok(tx_hash, info.total_received, info.fee + approve_fee)

    # ---------- transfer ----------

    async def transfer(
        self, token: str, amount: int, to: str, signer: Any, on_broadcast: Optional[BroadcastHook] = None
    ) -> TransferResult:
        if is_native(token):
            tx = {"to": to, "value": int(amount), "data": "0x"}
        else:
            tx = {"to": token, "value": 0, "data": erc20_call_data(TRANSFER_SELECTOR, to, amount)}

        try:
            prepared = await self._prepare(tx, signer)
            rcpt = await self.send_with_retry(prepared, signer, SwapErrorLabel.TRANSFER_FAILED, on_broadcast)
        except TxPendingError:
            raise
        except ExecutionError as exc:
            raise ExecutionError(
                exc.message,
                label=SwapErrorLabel.TRANSFER_FAILED.value,
                kind=exc.kind,
                retryable=exc.retryable,
                code=exc.code,
            ) from exc
        except Exception as exc:
            err = classify(exc, ErrorSource.EVM_RPC)
            raise ExecutionError(
                err.message,
                label=SwapErrorLabel.TRANSFER_FAILED.value,
                kind=err.kind,
                retryable=err.retryable,
                code=err.code,
            ) from exc

        return TransferResult(signature=rcpt.get("transactionHash"), fee=self._receipt_fee(rcpt))

    async def confirm_transfer(self, signature: str) -> TransferResult:
        try:
            rcpt = to_json_safe(await self.w3.eth.get_transaction_receipt(signature))
        except TransactionNotFound as exc:
            raise TxPendingError(signature, f"Receipt for {signature} not found") from exc
        if to_int(rcpt.get("status")) == 0:
            raise TransactionRevertedError(tx_hash=signature, receipt=rcpt)
        return TransferResult(signature=signature, fee=self._receipt_fee(rcpt))
