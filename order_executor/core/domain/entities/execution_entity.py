# order_executor/core/domain/entities/execution_entity.py

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .common import BigInt
from ..enums.order_enums import SwapErrorLabel


class SwapRoute(BaseModel):
    """
    One aggregator quote.

    EVM routes carry a ready transaction in `tx_data` (to/from/data/value);
    Solana routes carry raw instructions plus address lookup tables.
    """
    aggregator: str
    amount_out: BigInt
    tx_data: Dict[str, Any] = Field(default_factory=dict)
    instructions: List[Dict[str, Any]] = Field(default_factory=list)
    address_lookup_tables: List[str] = Field(default_factory=list)


class SwapResult(BaseModel):
    """
    Tagged outcome of ChainAdapter.swap(). Adapters never raise to the caller;
    a failed swap carries a label and whether it is worth retrying.

    `pending` means the swap was broadcast but not confirmed: `signature` is set
    and the swap must be tracked, never re-submitted.
    """
    success: bool
    pending: bool = False
    signature: Optional[str] = None
    total_received: Optional[BigInt] = None
    fee: Optional[BigInt] = None

    error_label: Optional[SwapErrorLabel] = None
    error: Optional[str] = None
    retryable: bool = False

    @classmethod
    def ok(cls, signature: str, total_received: Optional[int], fee: Optional[int]) -> "SwapResult":
        return cls(success=True, signature=signature, total_received=total_received, fee=fee)

    @classmethod
    def failed(cls, label: SwapErrorLabel, error: str, retryable: bool = False) -> "SwapResult":
        return cls(success=False, error_label=label, error=error, retryable=retryable)

    @classmethod
    def pending_tx(cls, signature: str, error: str) -> "SwapResult":
        return cls(
            success=False, pending=True, signature=signature, error_label=SwapErrorLabel.TX_PENDING, error=error
        )


class TransferResult(BaseModel):
    signature: str
    fee: BigInt = 0


class TxInfo(BaseModel):
    """Realized receive amount / network fee of a confirmed transaction."""
    total_received: BigInt = 0
    fee: BigInt = 0


class TradeFeeResult(BaseModel):
    """
    Outcome of a trade-fee withdrawal. `execution` is True once the transfer
    itself landed, even if USD valuation or the activity write failed afterwards.
    `pending` with a `signature` means the transfer is out but unconfirmed.
    """
    execution: bool = False
    pending: bool = False
    signature: Optional[str] = None
    activity_id: Optional[str] = None
    amount: BigInt = 0
    tx_fee_amount: BigInt = 0
    fee_in_usd: BigInt = 0
    value_in_usd: BigInt = 0
    error: Optional[str] = None
