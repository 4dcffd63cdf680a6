from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Optional

from ..domain.entities.execution_entity import SwapResult, TransferResult, TxInfo

# called with the tx hash / signature as soon as the node accepted it
BroadcastHook = Callable[[str], Awaitable[None]]


class ChainAdapter(ABC):
    """
    Capability interface of one chain family (EVM or Solana).

    `signer` is whatever the SignerProvider returned for the wallet network:
    an eth-account LocalAccount on EVM chains, a solders Keypair on Solana.
    """

    chain_id: int

    @abstractmethod
    def signer_address(self, signer: Any) -> str:
        raise NotImplementedError

    @abstractmethod
    async def get_balance(self, address: str, token: str) -> int:
        raise NotImplementedError

    @abstractmethod
    async def estimate_network_fee(self) -> int:
        """
        Buffered network fee of one swap, in native base units.
        """
        raise NotImplementedError

    @abstractmethod
    async def swap(
        self,
        token_in: str,
        token_out: str,
        amount_in: int,
        slippage_bps: int,
        signer: Any,
        on_broadcast: Optional[BroadcastHook] = None,
    ) -> SwapResult:
        """
        Quote, submit and settle one swap. Never raises: every failure comes
        back as SwapResult.failed(label, error, retryable), and a broadcast
        whose confirmation is unknown as SwapResult.pending_tx(signature, error).
        """
        raise NotImplementedError

    @abstractmethod
    async def transfer(
        self, token: str, amount: int, to: str, signer: Any, on_broadcast: Optional[BroadcastHook] = None
    ) -> TransferResult:
        """
        Native or token transfer. Raises ExecutionError(label=TRANSFER_FAILED) on
        failure and TxPendingError once broadcast but unconfirmed.
        """
        raise NotImplementedError

    @abstractmethod
    async def confirm_transfer(self, signature: str) -> TransferResult:
        """
        Outcome of a transfer sent earlier. Raises TxPendingError while it is
        unknown and TransactionRevertedError when it failed on-chain.
        """
        raise NotImplementedError

    @abstractmethod
    async def get_tx_info(self, signature: str, receiver: str, token_out: str) -> TxInfo:
        """
        Realized amount of `token_out` received by `receiver` and the network fee
        paid, read back from a confirmed transaction. Raises
        TransactionRevertedError for a transaction that failed on-chain.
        """
        raise NotImplementedError


class ChainAdapterProvider(ABC):
    """
    Selects the ChainAdapter of a chain id once, so callers never branch on chain family.
    """

    @abstractmethod
    def get(self, chain_id: int) -> ChainAdapter:
        raise NotImplementedError

    async def balance_of(self, chain_id: int, address: str, token: str) -> int:
        return await self.get(chain_id).get_balance(address, token)
