# order_executor/core/errors/error_classifier.py

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, List, Optional

import httpx
from pymongo import errors as mongo_errors
from solana.exceptions import SolanaRpcException
from web3 import exceptions as web3_exceptions


class ErrorKind(str, Enum):
    VALIDATION = "VALIDATION"
    INSUFFICIENT_FUNDS = "INSUFFICIENT_FUNDS"
    ROUTE_UNAVAILABLE = "ROUTE_UNAVAILABLE"
    NONCE_RACE = "NONCE_RACE"
    BLOCKHASH_RACE = "BLOCKHASH_RACE"
    SIMULATION_REVERT = "SIMULATION_REVERT"
    NETWORK_TRANSIENT = "NETWORK_TRANSIENT"
    PRICE_UNAVAILABLE = "PRICE_UNAVAILABLE"
    TRANSACTION = "TRANSACTION"
    USER_REJECTION = "USER_REJECTION"
    DATABASE = "DATABASE"
    UNEXPECTED = "UNEXPECTED"
    UNKNOWN = "UNKNOWN"


class ErrorSource(str, Enum):
    EVM_RPC = "EVM_RPC"
    SOLANA_RPC = "SOLANA_RPC"
    HTTP = "HTTP"
    STORE = "STORE"
    GENERIC = "GENERIC"


@dataclass(frozen=True)
class ClassifiedError:
    message: str
    kind: ErrorKind
    retryable: bool
    code: Optional[str] = None


# ---------- EVM ----------

EVM_PERMANENT_CODES = {
    "INSUFFICIENT_FUNDS",
    "BAD_DATA",
    "INVALID_ARGUMENT",
    "UNCONFIGURED_NAME",
    "CALL_EXCEPTION",
    "TRANSACTION_REPLACED",
    "ACTION_REJECTED",
}
EVM_RETRYABLE_CODES = {"TIMEOUT", "NETWORK_ERROR", "SERVER_ERROR", "UNPREDICTABLE_GAS_LIMIT"}

EVM_MESSAGES = {
    "INSUFFICIENT_FUNDS": "Insufficient funds for transaction.",
    "ACTION_REJECTED": "Transaction rejected by user.",
    "INVALID_ARGUMENT": "Invalid data provided.",
    "NETWORK_ERROR": "Temporary network issue. Please try again.",
    "TIMEOUT": "Request timed out. Please try again.",
    "CALL_EXCEPTION": "Transaction reverted. Check contract inputs.",
    "TRANSACTION_REPLACED": "Transaction replaced by another.",
    "UNPREDICTABLE_GAS_LIMIT": "Gas limit estimation failed. Try setting manually.",
    "NONCE_EXPIRED": "Nonce already used. Refreshing signer nonce.",
}

# substring -> code, checked in order against the lowercased message
_EVM_MESSAGE_HINTS = [
    ("nonce too low", "NONCE_EXPIRED"),
    ("nonce has already been used", "NONCE_EXPIRED"),
    ("replacement transaction underpriced", "NONCE_EXPIRED"),
    ("already known", "NONCE_EXPIRED"),
    ("insufficient funds", "INSUFFICIENT_FUNDS"),
    ("execution reverted", "CALL_EXCEPTION"),
    ("gas required exceeds", "UNPREDICTABLE_GAS_LIMIT"),
    ("cannot estimate gas", "UNPREDICTABLE_GAS_LIMIT"),
    ("user rejected", "ACTION_REJECTED"),
    ("timed out", "TIMEOUT"),
    ("timeout", "TIMEOUT"),
    ("connection", "NETWORK_ERROR"),
    ("bad gateway", "SERVER_ERROR"),
    ("service unavailable", "SERVER_ERROR"),
    ("internal server error", "SERVER_ERROR"),
]

# ---------- Solana ----------

SOLANA_RETRYABLE_NAMES = {
    "BlockhashNotFound",
    "Network request failed",
    "TimeoutError",
    "Server error",
    "Service unavailable",
}
SOLANA_RETRYABLE_STATUS = {429, 500, 502, 503, 504}

# ---------- HTTP ----------

HTTP_PERMANENT_STATUS = {400, 401, 403, 404, 405, 406, 409, 410, 415, 422}
HTTP_RETRYABLE_STATUS = {408, 429, 500, 502, 503, 504}

HTTP_MESSAGES = {
    400: "Invalid request. Please check your data.",
    401: "Authentication failed.",
    403: "Permission denied.",
    404: "Resource not found.",
    409: "Data conflict detected.",
    429: "Too many requests. Please try again later.",
    500: "Server error occurred. Please try again.",
    503: "Service temporarily unavailable.",
}

# ---------- Store ----------

STORE_RETRYABLE_CODES = {6, 7, 89, 91, 9001, 10107, 13475, 11600, 11602}
STORE_PERMANENT_CODES = {11000, 11001, 121, 2, 8, 14, 20, 13, 211}


def _message_of(err: Any) -> str:
    if isinstance(err, str):
        return err
    msg = str(err) if err is not None else ""
    return msg or err.__class__.__name__


def _fallback(message: str, code: Optional[str] = None) -> ClassifiedError:
    """
    Classify by message keywords when nothing more specific is known.
    """
    lower = message.lower()
    if "network" in lower or "connection" in lower or "timeout" in lower:
        return ClassifiedError(message, ErrorKind.NETWORK_TRANSIENT, True, code or "NETWORK_ERROR")
    if "validation" in lower or "invalid" in lower:
        return ClassifiedError(message, ErrorKind.VALIDATION, False, code)
    if "transaction" in lower or "gas" in lower or "fee" in lower:
        return ClassifiedError(message, ErrorKind.TRANSACTION, False, code)
    return ClassifiedError(message, ErrorKind.UNKNOWN, False, code or "UNKNOWN_ERROR")


def _is_transport_error(err: Any) -> bool:
    return isinstance(
        err,
        (httpx.TransportError, asyncio.TimeoutError, TimeoutError, ConnectionError),
    )


def _pre_classified(err: Any) -> Optional[ClassifiedError]:
    # errors raised by our own code already carry a decision
    kind = getattr(err, "kind", None)
    if isinstance(kind, ErrorKind):
        return ClassifiedError(
            message=getattr(err, "message", None) or _message_of(err),
            kind=kind,
            retryable=bool(getattr(err, "retryable", False)),
            code=getattr(err, "code", None),
        )
    return None


def _evm_code(err: Any) -> Optional[str]:
    code = getattr(err, "code", None)
    if isinstance(code, str) and (code in EVM_PERMANENT_CODES or code in EVM_RETRYABLE_CODES or code == "NONCE_EXPIRED"):
        return code

    if isinstance(err, web3_exceptions.ContractLogicError):
        return "CALL_EXCEPTION"
    if isinstance(err, web3_exceptions.TimeExhausted):
        return "TIMEOUT"
    if _is_transport_error(err):
        return "TIMEOUT" if isinstance(err, (asyncio.TimeoutError, TimeoutError, httpx.TimeoutException)) else "NETWORK_ERROR"

    # RPC error payloads: {"code": -32000, "message": "nonce too low"}
    raw = ""
    if isinstance(err, web3_exceptions.Web3RPCError):
        raw = str(getattr(err, "rpc_response", "") or "")
    args = getattr(err, "args", ())
    if args and isinstance(args[0], dict):
        raw = str(args[0].get("message", "")) + " " + raw
    haystack = (raw + " " + _message_of(err)).lower()
    for needle, hinted in _EVM_MESSAGE_HINTS:
        if needle in haystack:
            return hinted
    return None


def classify_evm(err: Any) -> ClassifiedError:
    code = _evm_code(err)
    if code is None:
        base = _fallback(_message_of(err))
        if base.retryable:
            return base
        return ClassifiedError(_message_of(err) or "Unexpected EVM error.", ErrorKind.UNKNOWN, False, "UNKNOWN_ERROR")

    message = EVM_MESSAGES.get(code) or _message_of(err)
    if code == "NONCE_EXPIRED":
        return ClassifiedError(message, ErrorKind.NONCE_RACE, True, code)
    if code in EVM_RETRYABLE_CODES:
        return ClassifiedError(message, ErrorKind.NETWORK_TRANSIENT, True, code)
    if code == "INSUFFICIENT_FUNDS":
        return ClassifiedError(message, ErrorKind.INSUFFICIENT_FUNDS, False, code)
    if code == "ACTION_REJECTED":
        return ClassifiedError(message, ErrorKind.USER_REJECTION, False, code)
    if code == "CALL_EXCEPTION":
        return ClassifiedError(message, ErrorKind.SIMULATION_REVERT, False, code)
    if code in ("BAD_DATA", "INVALID_ARGUMENT", "UNCONFIGURED_NAME"):
        return ClassifiedError(message, ErrorKind.VALIDATION, False, code)
    return ClassifiedError(message, ErrorKind.TRANSACTION, False, code)


def _solana_logs(err: Any) -> List[str]:
    logs = getattr(err, "logs", None)
    if logs:
        return [str(x) for x in logs]
    # solana-py RPCException(SendTransactionPreflightFailureMessage(...))
    args = getattr(err, "args", ())
    if args:
        data = getattr(args[0], "data", None)
        nested = getattr(data, "logs", None)
        if nested:
            return [str(x) for x in nested]
    return []


def _solana_status(err: Any) -> Optional[int]:
    if isinstance(err, SolanaRpcException):
        cause = err.__cause__ or err.__context__
        if isinstance(cause, httpx.HTTPStatusError):
            return cause.response.status_code
    for attr in ("status_code", "code"):
        value = getattr(err, attr, None)
        if isinstance(value, int):
            return value
    return None


def _first_failure(logs: Iterable[str]) -> Optional[str]:
    for line in logs:
        if "Error:" in line or "failed:" in line:
            return line
    return None


def classify_solana(err: Any) -> ClassifiedError:
    message = _message_of(err)
    logs = _solana_logs(err)
    name = err.__class__.__name__

    is_simulation = (
        name in ("SendTransactionError", "SimulationError")
        or "simulation failed" in message.lower()
        or "SendTransactionPreflightFailure" in message
        or getattr(err, "code", None) == "SIMULATION_FAILED"
    )
    if is_simulation:
        if any("Blockhash not found" in line for line in logs) or "Blockhash not found" in message:
            return ClassifiedError(
                "Blockhash expired or not found. Retrying...", ErrorKind.BLOCKHASH_RACE, True, "BLOCKHASH_NOT_FOUND"
            )
        failure = _first_failure(logs)
        return ClassifiedError(
            f"Simulation failed: {failure}" if failure else (message or "Transaction simulation failed"),
            ErrorKind.SIMULATION_REVERT,
            False,
            "SIMULATION_FAILED",
        )

    if "Blockhash not found" in message or "BlockhashNotFound" in message or name == "BlockhashNotFound":
        return ClassifiedError("Blockhash expired. Retrying...", ErrorKind.BLOCKHASH_RACE, True, "BLOCKHASH_NOT_FOUND")

    if name == "WalletSignTransactionError" or "User rejected" in message:
        return ClassifiedError("User rejected the transaction.", ErrorKind.USER_REJECTION, False, "ACTION_REJECTED")

    status = _solana_status(err)
    if (
        name in SOLANA_RETRYABLE_NAMES
        or any(n in message for n in SOLANA_RETRYABLE_NAMES)
        or (status is not None and status in SOLANA_RETRYABLE_STATUS)
        or "429" in message
        or isinstance(err, SolanaRpcException)
        or _is_transport_error(err)
    ):
        return ClassifiedError(
            "Solana network congestion or timeout. Retrying...", ErrorKind.NETWORK_TRANSIENT, True, "NETWORK_ERROR"
        )

    base = _fallback(message)
    if base.retryable:
        return base
    return ClassifiedError(message, ErrorKind.UNKNOWN, False, "UNKNOWN_SOLANA_ERROR")


def classify_http(err: Any) -> ClassifiedError:
    if isinstance(err, httpx.HTTPStatusError):
        status = err.response.status_code
        message = HTTP_MESSAGES.get(status) or _message_of(err)
        if status in HTTP_RETRYABLE_STATUS or status >= 500:
            return ClassifiedError(message, ErrorKind.NETWORK_TRANSIENT, True, str(status))
        if status in HTTP_PERMANENT_STATUS or 400 <= status < 500:
            return ClassifiedError(message, ErrorKind.VALIDATION, False, str(status))
        return ClassifiedError(message, ErrorKind.UNKNOWN, False, str(status))

    if _is_transport_error(err):
        return ClassifiedError(
            "Network connection issue.", ErrorKind.NETWORK_TRANSIENT, True, "NETWORK_ERROR"
        )

    base = _fallback(_message_of(err))
    if base.retryable:
        return base
    return ClassifiedError(_message_of(err) or "Unexpected HTTP error.", ErrorKind.UNKNOWN, False, "UNKNOWN_ERROR")


def classify_store(err: Any) -> ClassifiedError:
    if isinstance(err, (mongo_errors.AutoReconnect, mongo_errors.ConnectionFailure, mongo_errors.NetworkTimeout)):
        return ClassifiedError(
            "Temporary database issue. Retrying operation.", ErrorKind.DATABASE, True, "NETWORK_ERROR"
        )

    code = getattr(err, "code", None)
    if isinstance(err, mongo_errors.PyMongoError) and isinstance(code, int):
        if code in STORE_RETRYABLE_CODES:
            return ClassifiedError(
                "Temporary database issue. Retrying operation.", ErrorKind.DATABASE, True, str(code)
            )
        if code in STORE_PERMANENT_CODES:
            if code in (11000, 11001):
                return ClassifiedError(
                    "Duplicate entry found. This record already exists.", ErrorKind.VALIDATION, False, str(code)
                )
            if code == 121:
                return ClassifiedError(
                    "Invalid input data. Please check your submission.", ErrorKind.VALIDATION, False, str(code)
                )
            return ClassifiedError(_message_of(err), ErrorKind.DATABASE, False, str(code))

    base = _fallback(_message_of(err))
    if base.retryable:
        return ClassifiedError(base.message, ErrorKind.DATABASE, True, base.code)
    return ClassifiedError("Unexpected MongoDB error occurred.", ErrorKind.UNKNOWN, False, str(code) if code else None)


_BY_SOURCE = {
    ErrorSource.EVM_RPC: classify_evm,
    ErrorSource.SOLANA_RPC: classify_solana,
    ErrorSource.HTTP: classify_http,
    ErrorSource.STORE: classify_store,
}


def classify(err: Any, source: ErrorSource = ErrorSource.GENERIC) -> ClassifiedError:
    """
    Map any raised object into {message, kind, retryable, code}.

    Never raises: anything that goes wrong while inspecting the error degrades
    to an UNKNOWN, non-retryable classification.
    """
    try:
        pre = _pre_classified(err)
        if pre is not None:
            return pre
        handler = _BY_SOURCE.get(source)
        if handler is not None:
            return handler(err)
        return _fallback(_message_of(err))
    except Exception:
        return ClassifiedError(_safe_str(err), ErrorKind.UNKNOWN, False, "UNKNOWN_ERROR")


def _safe_str(err: Any) -> str:
    try:
        return str(err)
    except Exception:
        return "unprintable error"
