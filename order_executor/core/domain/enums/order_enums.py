# order_executor/core/domain/enums/order_enums.py

from enum import Enum


class OrderStatus(str, Enum):
    """
    Lifecycle of an order.

    PENDING -> PROCESSING -> OPENED | FAILED
    OPENED  -> PROCESSING -> CLOSED | PENDING (re-entrance) | FAILED

    PROCESSING is also where an order parks when the swap already happened
    on-chain but accounting could not be completed yet (see checkpoint).
    """
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    OPENED = "OPENED"
    FAILED = "FAILED"
    CLOSED = "CLOSED"
    STOPPED = "STOPPED"


class OrderType(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


class OrderCategory(str, Enum):
    SPOT = "spot"
    PERPETUAL = "perpetual"


class ProcessType(str, Enum):
    """Which leg a checkpoint belongs to."""
    OPEN = "OPEN"
    CLOSE = "CLOSE"


class ActivityType(str, Enum):
    BUY = "BUY"
    SELL = "SELL"
    TRANSFER = "TRANSFER"
    TRADE_FEE = "TRADE_FEE"


class ActivityStatus(str, Enum):
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class OrderMessage(str, Enum):
    """
    Machine-readable reason codes persisted in `order.message`.
    """
    PROCESSING_ORDER = "PROCESSING_ORDER"
    RESUMING_ORDER = "RESUMING_ORDER"
    ORDER_OPENED = "ORDER_OPENED"
    ORDER_CLOSED = "ORDER_CLOSED"
    ORDER_RESTART = "ORDER_RESTART"

    INVALID_ORDER = "INVALID_ORDER"
    SIGNER_FAILED = "SIGNER_FAILED"
    WALLET_FAILED = "WALLET_FAILED"
    INSUFFICIENT_FUND = "INSUFFICIENT_FUND"

    TX_PENDING = "TX_PENDING"
    TX_PROCESSING_FAILED = "TX_PROCESSING_FAILED"
    TRADE_FEE_EXECUTED_FAILED = "TRADE_FEE_EXECUTED_FAILED"
    PRICE_NOT_FETCHED = "PRICE_NOT_FETCHED"
    RETRY_EXHAUSTED = "RETRY_EXHAUSTED"
    UNEXPECTED_ERROR = "UNEXPECTED_ERROR"


class SwapErrorLabel(str, Enum):
    """
    Failure labels a chain adapter attaches to a failed swap / transfer.
    """
    ROUTE_ORACLE_FAILED = "ROUTE_ORACLE_FAILED"
    NO_ROUTE_FOUND = "NO_ROUTE_FOUND"
    APPROVE_FAILED = "APPROVE_FAILED"
    TX_NONCE_FAILED = "TX_NONCE_FAILED"
    SIMULATION_FAILED = "SIMULATION_FAILED"
    TX_FAILED = "TX_FAILED"
    TX_PENDING = "TX_PENDING"
    SWAP_FAILED = "SWAP_FAILED"
    GAS_LIMIT_EXCEEDED = "GAS_LIMIT_EXCEEDED"
    TRANSFER_FAILED = "TRANSFER_FAILED"


class CheckpointPhase(str, Enum):
    """
    Resume phases of a checkpointed order, in the order they are completed.
    """
    AWAITING_TX_INFO = "AWAITING_TX_INFO"
    AWAITING_FEE_COLLECTION = "AWAITING_FEE_COLLECTION"
    AWAITING_PRICE_DATA = "AWAITING_PRICE_DATA"
    READY_TO_FINALIZE = "READY_TO_FINALIZE"


class WalletNetwork(str, Enum):
    EVM = "EVM"
    SVM = "SVM"
