import asyncio
import base64
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Confirmed, Processed
from solana.rpc.types import TxOpts
from solders import system_program
from solders.address_lookup_table_account import AddressLookupTable, AddressLookupTableAccount
from solders.instruction import AccountMeta, Instruction
from solders.message import MessageV0
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import VersionedTransaction
from solders.transaction_status import TransactionConfirmationStatus
from spl.token import instructions as spl_token
from spl.token.constants import TOKEN_PROGRAM_ID

from ....core.domain.constants import (
    BASIS_POINT_DIVISOR,
    CHAIN_CONFIG,
    DEFAULT_COMPUTE_UNIT,
    DEFAULT_SOLANA_PRIORITY_FEE,
    ORDER_GAS_BUFFER,
    SOL_MINT,
    SOLANA_BASE_FEE,
    SOLANA_SYSTEM_PROGRAM,
    Chains,
    is_native,
)
from ....core.domain.entities.execution_entity import SwapResult, SwapRoute, TransferResult, TxInfo
from ....core.domain.enums.order_enums import SwapErrorLabel
from ....core.errors.error_classifier import ErrorKind, ErrorSource, classify
from ....core.errors.exceptions import ExecutionError, NoRouteError, TransactionRevertedError, TxPendingError
from ....core.ports.chain_adapter import BroadcastHook, ChainAdapter
from ....core.services.retry import simple_retry
from ....core.services.route_aggregator import RouteAggregator
from .utils import notify_broadcast

_DONE = (TransactionConfirmationStatus.Confirmed, TransactionConfirmationStatus.Finalized)


def solana_network_fee(compute_units: int) -> int:
    """Buffered fee in lamports: base signature fee + priority fee for `compute_units`."""
    expected = SOLANA_BASE_FEE + compute_units * DEFAULT_SOLANA_PRIORITY_FEE // 1_000_000
    return expected * ORDER_GAS_BUFFER // BASIS_POINT_DIVISOR


def _is_native_mint(token: str) -> bool:
    return is_native(token) or token in (SOL_MINT, SOLANA_SYSTEM_PROGRAM)


def parse_received_amount(tx: Optional[Dict], payer: str, token_out: str) -> TxInfo:
    """
    Realized amount of `token_out` received by `payer` from a `getTransaction`
    payload (RPC JSON shape).

    Native: the payer's lamport delta plus the fee it paid, floored at 0.
    SPL: post - pre token balance of the (mint, owner=payer) entry, floored at 0.
    A missing transaction or meta yields zeros.
    """
    if not tx:
        return TxInfo(total_received=0, fee=0)
    meta = tx.get("meta") or (tx.get("transaction") or {}).get("meta")
    if not meta:
        return TxInfo(total_received=0, fee=0)
    fee = int(meta.get("fee") or 0)

    if _is_native_mint(token_out):
        inner = tx.get("transaction") or {}
        message = inner.get("message") or (inner.get("transaction") or {}).get("message") or {}
        keys = [k if isinstance(k, str) else k.get("pubkey") for k in message.get("accountKeys") or []]
        if payer not in keys:
            return TxInfo(total_received=0, fee=fee)
        idx = keys.index(payer)
        pre = (meta.get("preBalances") or [])
        post = (meta.get("postBalances") or [])
        before = int(pre[idx]) if idx < len(pre) else 0
        after = int(post[idx]) if idx < len(post) else 0
        return TxInfo(total_received=max(0, after - before + fee), fee=fee)

    def _amount(rows: List[Dict]) -> int:
        for row in rows or []:
            if row.get("mint") == token_out and row.get("owner") == payer:
                return int(((row.get("uiTokenAmount") or {}).get("amount")) or 0)
        return 0

    received = _amount(meta.get("postTokenBalances")) - _amount(meta.get("preTokenBalances"))
    return TxInfo(total_received=max(0, received), fee=fee)


@dataclass
class _Draft:
    """Unsigned swap/transfer: enough to recompile with a fresh blockhash."""
    instructions: List[Instruction]
    lookup_tables: List[AddressLookupTableAccount] = field(default_factory=list)
    label: str = ""


class SolanaChainAdapter(ChainAdapter):
    """
    ChainAdapter for Solana.

    Aggregators return raw instructions + lookup tables; routes are compiled
    into a v0 transaction, simulated best-first, and the first clean simulation
    is sent. Blockhash expiry during send recompiles and re-signs.
    """

    def __init__(
        self,
        rpc_url: str,
        route_aggregator: RouteAggregator,
        *,
        send_retry: int = 3,
        retry_delay_sec: float = 1.0,
        confirm_timeout_sec: float = 60.0,
        confirm_poll_sec: float = 1.0,
        client: Optional[AsyncClient] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.chain_id = Chains.SOLANA
        self.config = CHAIN_CONFIG[Chains.SOLANA]
        self.client = client or AsyncClient(rpc_url, commitment=Confirmed)
        self._routes = route_aggregator
        self._send_retry = max(1, int(send_retry))
        self._retry_delay = retry_delay_sec
        self._confirm_timeout = confirm_timeout_sec
        self._confirm_poll = confirm_poll_sec
        self._logger = logger or logging.getLogger(self.__class__.__name__)

    async def close(self) -> None:
        await self.client.close()

    # ---------- reads ----------

    def signer_address(self, signer: Any) -> str:
        return str(signer.pubkey())

    async def get_balance(self, address: str, token: str) -> int:
        owner = Pubkey.from_string(address)
        if _is_native_mint(token):
            resp = await self.client.get_balance(owner, commitment=Confirmed)
            return int(resp.value)

        ata = spl_token.get_associated_token_address(owner, Pubkey.from_string(token))
        info = await self.client.get_account_info(ata, commitment=Confirmed)
        if info.value is None:
            return 0
        resp = await self.client.get_token_account_balance(ata, commitment=Confirmed)
        return int(resp.value.amount)

    async def estimate_network_fee(self) -> int:
        return solana_network_fee(DEFAULT_COMPUTE_UNIT)

    async def _fetch_transaction(self, signature: str) -> Optional[Dict]:
        resp = await self.client.get_transaction(
            Signature.from_string(signature),
            encoding="json",
            commitment=Confirmed,
            max_supported_transaction_version=0,
        )
        if resp.value is None:
            return None
        return json.loads(resp.value.to_json())

    async def get_tx_info(self, signature: str, receiver: str, token_out: str) -> TxInfo:
        tx = await simple_retry(lambda: self._fetch_transaction(signature), retry=3)
        if tx is None:
            raise TxPendingError(signature, f"Transaction {signature} not found")
        meta = tx.get("meta") or (tx.get("transaction") or {}).get("meta") or {}
        if meta.get("err") is not None:
            raise TransactionRevertedError(tx_hash=signature, msg=f"Transaction {signature} failed: {meta['err']}")
        return parse_received_amount(tx, receiver, token_out)

    # ---------- build / simulate / send ----------

    @staticmethod
    def _instruction(raw: Dict) -> Instruction:
        return Instruction(
            Pubkey.from_string(raw["programId"]),
            base64.b64decode(raw.get("data") or ""),
            [
                AccountMeta(Pubkey.from_string(a["address"]), bool(a.get("isSigner")), bool(a.get("isWritable")))
                for a in raw.get("accounts") or []
            ],
        )

    async def _lookup_tables(self, addresses: List[str]) -> List[AddressLookupTableAccount]:
        tables: List[AddressLookupTableAccount] = []
        for addr in addresses:
            key = Pubkey.from_string(addr)
            resp = await self.client.get_account_info(key, commitment=Processed)
            if resp.value is None:
                raise ExecutionError(f"Address lookup table not found: {addr}", kind=ErrorKind.VALIDATION)
            table = AddressLookupTable.deserialize(bytes(resp.value.data))
            tables.append(AddressLookupTableAccount(key, list(table.addresses)))
        return tables

    async def _draft_for_route(self, route: SwapRoute) -> _Draft:
        return _Draft(
            instructions=[self._instruction(ix) for ix in route.instructions],
            lookup_tables=await self._lookup_tables(route.address_lookup_tables),
            label=route.aggregator,
        )

    async def _compile(self, draft: _Draft, signer: Any) -> VersionedTransaction:
        blockhash = (await self.client.get_latest_blockhash(commitment=Confirmed)).value.blockhash
        message = MessageV0.try_compile(signer.pubkey(), draft.instructions, draft.lookup_tables, blockhash)
        return VersionedTransaction(message, [signer])

    async def _simulate(self, tx: VersionedTransaction):
        resp = await self.client.simulate_transaction(tx, sig_verify=True, commitment=Processed)
        return resp.value

    async def _pick_route(self, routes: List[SwapRoute], signer: Any):
        """
        First route (best-first) that simulates without error. A transient RPC
        failure gets one more try on the same route.
        """
        last_error: Optional[str] = None
        for route in routes:
            for attempt in range(2):
                try:
                    draft = await self._draft_for_route(route)
                    tx = await self._compile(draft, signer)
                    sim = await self._simulate(tx)
                    if sim.err is None:
                        return draft, tx, int(sim.units_consumed or DEFAULT_COMPUTE_UNIT)
                    last_error = str(sim.err)
                    self._logger.info("route %s failed simulation: %s", route.aggregator, sim.err)
                    break
                except Exception as exc:
                    err = classify(exc, ErrorSource.SOLANA_RPC)
                    last_error = err.message
                    if attempt == 0 and err.retryable:
                        await asyncio.sleep(self._retry_delay)
                        continue
                    self._logger.info("route %s rejected: %s", route.aggregator, err.message)
                    break
        raise ExecutionError(
            f"Transaction simulation failed for all routes: {last_error}" if last_error
            else "Transaction simulation failed for all routes",
            label=SwapErrorLabel.SIMULATION_FAILED.value,
            kind=ErrorKind.SIMULATION_REVERT,
            retryable=True,
            code="SIMULATION_FAILED",
        )

    async def _status(self, signature: Signature):
        resp = await self.client.get_signature_statuses([signature], search_transaction_history=True)
        return resp.value[0] if resp.value else None

    async def _confirm(self, signature: Signature, label: SwapErrorLabel) -> None:
        """
        Poll the signature until confirmed. Poll errors are retried until the
        deadline; an unknown outcome raises TxPendingError with the signature.
        """
        deadline = time.monotonic() + self._confirm_timeout
        while True:
            try:
                status = await self._status(signature)
            except Exception as exc:
                self._logger.warning("status poll for %s failed: %s", signature, exc)
                status = None
            if status is not None:
                if status.err is not None:
                    raise ExecutionError(
                        f"Transaction {signature} failed: {status.err}",
                        label=label.value,
                        kind=ErrorKind.TRANSACTION,
                        retryable=False,
                        code="TX_FAILED",
                    )
                if status.confirmation_status in _DONE:
                    return
            if time.monotonic() > deadline:
                raise TxPendingError(str(signature), f"Transaction {signature} not confirmed after {self._confirm_timeout}s")
            await asyncio.sleep(self._confirm_poll)

    async def _landed(self, tx: VersionedTransaction) -> bool:
        try:
            return await self._status(tx.signatures[0]) is not None
        except Exception as exc:
            self._logger.warning("status lookup for %s failed: %s", tx.signatures[0], exc)
            # unknown: treat as possibly sent
            return True

    async def _broadcast(
        self, draft: _Draft, tx: VersionedTransaction, signer: Any, label: SwapErrorLabel
    ) -> Signature:
        """
        Up to `send_retry` attempts with linear backoff for retryable errors.
        An expired blockhash recompiles and re-signs, unless the previous
        signature is already known to the cluster.
        """
        for attempt in range(1, self._send_retry + 1):
            try:
                resp = await self.client.send_raw_transaction(
                    bytes(tx), opts=TxOpts(skip_preflight=False, preflight_commitment=Processed)
                )
                return resp.value
            except Exception as exc:
                err = classify(exc, ErrorSource.SOLANA_RPC)
                self._logger.error("[SOLANA_RETRY_ATTEMPT_FAILED:%s] %s", draft.label or label.value, err.message)
                if not err.retryable or attempt >= self._send_retry:
                    raise ExecutionError(
                        err.message, label=label.value, kind=err.kind, retryable=err.retryable, code=err.code
                    ) from exc
                await asyncio.sleep(self._retry_delay * attempt)
                if err.kind == ErrorKind.BLOCKHASH_RACE:
                    if attempt > 1 and await self._landed(tx):
                        return tx.signatures[0]
                    tx = await self._compile(draft, signer)
        raise RuntimeError("unreachable")

    async def send_with_retry(
        self,
        draft: _Draft,
        tx: VersionedTransaction,
        signer: Any,
        label: SwapErrorLabel = SwapErrorLabel.TX_FAILED,
        on_broadcast: Optional[BroadcastHook] = None,
    ) -> str:
        """
        Broadcast, then confirm. Once a signature exists the transaction is never
        recompiled; an unknown outcome raises TxPendingError carrying it.
        """
        signature = await self._broadcast(draft, tx, signer, label)
        await notify_broadcast(on_broadcast, str(signature), self._logger)
        await self._confirm(signature, label)
        return str(signature)

    # ---------- swap ----------

    async def swap(
        self,
        token_in: str,
        token_out: str,
        amount_in: int,
        slippage_bps: int,
        signer: Any,
        on_broadcast: Optional[BroadcastHook] = None,
    ) -> SwapResult:
        wallet = self.signer_address(signer)
        try:
            routes = await self._routes.best_routes(
                self.chain_id, token_in, token_out, amount_in, slippage_bps, wallet
            )
        except NoRouteError as exc:
            self._logger.warning("ROUTE_ORACLE_FAILED %s -> %s: %s", token_in, token_out, exc.message)
            return SwapResult.failed(SwapErrorLabel.ROUTE_ORACLE_FAILED, exc.message, exc.retryable)

        try:
            draft, tx, compute_units = await self._pick_route(routes, signer)
            self._logger.info(
                "swapping %s %s -> %s via %s (cu=%s, fee<=%s)",
                amount_in, token_in, token_out, draft.label, compute_units, solana_network_fee(compute_units),
            )
            signature = await self.send_with_retry(draft, tx, signer, SwapErrorLabel.TX_FAILED, on_broadcast)
        except TxPendingError as exc:
            self._logger.warning("TX_PENDING %s -> %s: %s", token_in, token_out, exc.message)
            return SwapResult.pending_tx(exc.tx_hash, exc.message)
        except ExecutionError as exc:
            label = SwapErrorLabel(exc.label) if exc.label in SwapErrorLabel.__members__ else SwapErrorLabel.SWAP_FAILED
            self._logger.error("%s %s -> %s: %s", label.value, token_in, token_out, exc.message)
            return SwapResult.failed(label, exc.message, exc.retryable)
        except Exception as exc:
            err = classify(exc, ErrorSource.SOLANA_RPC)
            self._logger.exception("SWAP_FAILED %s -> %s: %s", token_in, token_out, err.message)
            return SwapResult.failed(SwapErrorLabel.SWAP_FAILED, err.message, err.retryable)

        try:
            info = await self.get_tx_info(signature, wallet, token_out)
        except Exception as exc:
            # swap is confirmed; amounts are re-read later from the checkpoint
            self._logger.warning("tx parse failed for %s: %s", signature, exc)
            return SwapResult.ok(signature, None, None)
        return SwapResult.ok(signature, info.total_received, info.fee)

    # ---------- transfer ----------

    async def _transfer_instructions(self, token: str, amount: int, to: str, signer: Any) -> List[Instruction]:
        payer = signer.pubkey()
        receiver = Pubkey.from_string(to)
        if _is_native_mint(token):
            return [
                system_program.transfer(
                    system_program.TransferParams(from_pubkey=payer, to_pubkey=receiver, lamports=int(amount))
                )
            ]

        mint = Pubkey.from_string(token)
        source = spl_token.get_associated_token_address(payer, mint)
        dest = spl_token.get_associated_token_address(receiver, mint)
        instructions: List[Instruction] = []
        if (await self.client.get_account_info(dest, commitment=Confirmed)).value is None:
            instructions.append(spl_token.create_associated_token_account(payer=payer, owner=receiver, mint=mint))
        instructions.append(
            spl_token.transfer(
                spl_token.TransferParams(
                    program_id=TOKEN_PROGRAM_ID, source=source, dest=dest, owner=payer, amount=int(amount)
                )
            )
        )
        return instructions

    async def _transfer_fee(self, signature: str) -> int:
        try:
            tx_json = await self._fetch_transaction(signature)
            return int(((tx_json or {}).get("meta") or {}).get("fee") or 0)
        except Exception as exc:
            self._logger.warning("fee lookup failed for %s: %s", signature, exc)
            return 0

    async def transfer(
        self, token: str, amount: int, to: str, signer: Any, on_broadcast: Optional[BroadcastHook] = None
    ) -> TransferResult:
        try:
            draft = _Draft(instructions=await self._transfer_instructions(token, amount, to, signer), label="transfer")
            tx = await self._compile(draft, signer)
            sim = await self._simulate(tx)
            if sim.err is not None:
                raise ExecutionError(
                    f"SIMULATION_FAILED: {sim.err}", kind=ErrorKind.SIMULATION_REVERT, code="SIMULATION_FAILED"
                )
            signature = await self.send_with_retry(draft, tx, signer, SwapErrorLabel.TRANSFER_FAILED, on_broadcast)
        except TxPendingError:
            raise
        except Exception as exc:
            err = classify(exc, ErrorSource.SOLANA_RPC)
            raise ExecutionError(
                err.message,
                label=SwapErrorLabel.TRANSFER_FAILED.value,
                kind=err.kind,
                retryable=err.retryable,
                code=err.code,
            ) from exc

        return TransferResult(signature=signature, fee=await self._transfer_fee(signature))

    async def confirm_transfer(self, signature: str) -> TransferResult:
        status = await self._status(Signature.from_string(signature))
        if status is not None and status.err is not None:
            raise TransactionRevertedError(tx_hash=signature, msg=f"Transaction {signature} failed: {status.err}")
        if status is None or status.confirmation_status not in _DONE:
            raise TxPendingError(signature, f"Transaction {signature} not confirmed yet")
        return TransferResult(signature=signature, fee=await self._transfer_fee(signature))
