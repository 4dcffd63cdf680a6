from decimal import ROUND_DOWN, Decimal, InvalidOperation, localcontext
from typing import Any

from ..domain.constants import PRECISION_DECIMALS


def expand_decimals(n: int, decimals: int) -> int:
    return int(n) * (10 ** int(decimals))


def convert_to_usd(token_amount: int, token_decimals: int, price: int) -> int:
    """
    token base units * 30-decimal price -> 30-decimal USD.
    """
    if not token_amount or not price:
        return 0
    return int(token_amount) * int(price) // expand_decimals(1, token_decimals)


def safe_parse_units(value: Any, decimals: int = PRECISION_DECIMALS) -> int:
    """
    Parse a human decimal (e.g. oracle "priceUSD": "0.000123456") into an
    integer with `decimals` digits, truncating the excess precision.
    Anything unparsable maps to 0.
    """
    if value is None or value == "":
        return 0
    try:
        d = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return 0
    if not d.is_finite() or d < 0:
        return 0
    with localcontext() as ctx:
        ctx.prec = 120
        scaled = (d * (Decimal(10) ** int(decimals))).quantize(Decimal(1), rounding=ROUND_DOWN)
    return int(scaled)
