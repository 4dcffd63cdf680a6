from typing import Optional

from .error_classifier import ErrorKind


class ExecutionError(Exception):
    """
    Base error for the execution engine.

    Carries an already-decided classification so that `classify()` passes it
    through untouched instead of string-matching the message again.
    """
    def __init__(
        self,
        message: str,
        *,
        label: Optional[str] = None,
        kind: ErrorKind = ErrorKind.UNKNOWN,
        retryable: bool = False,
        code: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.label = label
        self.kind = kind
        self.retryable = retryable
        self.code = code


class NoRouteError(ExecutionError):
    """
    Raised by the route aggregator when no aggregator produced a usable quote.
    `retryable` mirrors the last per-aggregator failure.
    """
    def __init__(self, message: str, retryable: bool = False, code: Optional[str] = None):
        super().__init__(
            message or "No route found",
            label="NO_ROUTE_FOUND",
            kind=ErrorKind.ROUTE_UNAVAILABLE,
            retryable=retryable,
            code=code,
        )


class InsufficientFundsError(ExecutionError):
    """
    Raised when a reservation would push the effective balance below zero.
    Nothing was reserved.
    """
    def __init__(self, chain_id: int, token: str, required: int, available: int):
        super().__init__(
            f"Insufficient funds for {chain_id}:{token} (required={required}, available={available})",
            kind=ErrorKind.INSUFFICIENT_FUNDS,
            retryable=False,
            code="INSUFFICIENT_FUNDS",
        )
        self.chain_id = chain_id
        self.token = token
        self.required = required
        self.available = available


class WalletGuardError(ExecutionError):
    """
    Raised when the wallet balance could not be read and no fresh cached
    value exists to fall back on.
    """
    def __init__(self, message: str, retryable: bool = True):
        super().__init__(message, kind=ErrorKind.NETWORK_TRANSIENT, retryable=retryable, code="WALLET_FAILED")


class SignerError(ExecutionError):
    """Raised when the wallet key material cannot be turned into a signer."""
    def __init__(self, message: str):
        super().__init__(message, kind=ErrorKind.VALIDATION, retryable=False, code="SIGNER_FAILED")


class TransactionRevertedError(ExecutionError):
    """
    Raised when the tx was actually sent on-chain, mined, and status == 0.
    Gas was paid, the chain executed and reverted.
    """
    def __init__(self, tx_hash: str, receipt: Optional[dict] = None, msg: str = "Transaction reverted"):
        super().__init__(msg, kind=ErrorKind.SIMULATION_REVERT, retryable=False, code="CALL_EXCEPTION")
        self.tx_hash = tx_hash
        self.receipt = receipt


class TxPendingError(ExecutionError):
    """
    Raised when a transaction was broadcast but its outcome is not known yet.
    `tx_hash` is the only handle on it: callers must never sign it again.
    """
    def __init__(self, tx_hash: str, message: Optional[str] = None):
        super().__init__(
            message or f"Transaction {tx_hash} still pending",
            label="TX_PENDING",
            kind=ErrorKind.TRANSACTION,
            retryable=False,
            code="TX_PENDING",
        )
        self.tx_hash = tx_hash
