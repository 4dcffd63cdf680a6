import logging
from collections.abc import Mapping
from typing import Any

from hexbytes import HexBytes
from web3 import Web3


def to_json_safe(obj: Any) -> Any:
    """
    Recursively convert web3 / HexBytes-heavy structures into plain
    JSON-serializable primitives (dict, list, str, int, float, bool, None).

    - HexBytes / bytes -> "0x..." str
    - AttributeDict / dict -> {k: to_json_safe(v)}
    - list/tuple -> [to_json_safe(v), ...]
    - everything else -> unchanged if natively serializable, else str(obj)
    """
    if isinstance(obj, HexBytes):
        return Web3.to_hex(obj)

    if isinstance(obj, (bytes, bytearray)):
        return "0x" + bytes(obj).hex()

    if isinstance(obj, (str, int, float, bool)) or obj is None:
        return obj

    if isinstance(obj, Mapping):
        return {str(k): to_json_safe(v) for (k, v) in obj.items()}

    if isinstance(obj, (list, tuple, set)):
        return [to_json_safe(v) for v in obj]

    return str(obj)


def address_topic(address: str) -> str:
    """Left-pad a 20-byte address to the 32-byte form used in indexed log topics."""
    return "0x" + address.lower().removeprefix("0x").rjust(64, "0")


def to_int(value: Any) -> int:
    """Quantity from an RPC payload: int, decimal string or 0x-hex string."""
    if value is None:
        return 0
    if isinstance(value, int):
        return value
    if isinstance(value, (bytes, bytearray)):
        return int.from_bytes(value, "big")
    text = str(value).strip()
    if not text or text == "0x":
        return 0
    return int(text, 16) if text.lower().startswith("0x") else int(text)


async def notify_broadcast(hook, signature: str, logger: logging.Logger) -> None:
    """Run an on_broadcast hook; its failure must not turn a sent tx into a send error."""
    if hook is None:
        return
    try:
        await hook(signature)
    except Exception as exc:
        logger.error("BROADCAST_HOOK_FAILED sig=%s: %s", signature, exc)
