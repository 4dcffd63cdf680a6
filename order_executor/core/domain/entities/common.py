# order_executor/core/domain/entities/common.py

from typing import Annotated, Any

from pydantic import BeforeValidator, PlainSerializer


def _to_int(v: Any) -> int:
    if v is None or v == "":
        return 0
    if isinstance(v, bool):
        raise ValueError("bool is not an amount")
    if isinstance(v, int):
        return v
    if isinstance(v, float):
        return int(v)
    return int(str(v).strip())


def _to_str_id(v: Any) -> Any:
    # ObjectId / dict refs -> plain str
    if v is None:
        return None
    if isinstance(v, dict) and "_id" in v:
        return str(v["_id"])
    return str(v)


# Arbitrary-precision integer persisted as a decimal string (token base units,
# 30-decimal USD values, fixed-point prices).
BigInt = Annotated[int, BeforeValidator(_to_int), PlainSerializer(lambda v: str(v), return_type=str)]

DocId = Annotated[str, BeforeValidator(_to_str_id)]
