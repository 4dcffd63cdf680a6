# order_executor/core/domain/entities/checkpoint_entity.py

from typing import Annotated, Literal, Optional, Type, TypeVar, Union

from pydantic import BaseModel, Field, TypeAdapter

from .common import BigInt, DocId
from ..enums.order_enums import CheckpointPhase, ProcessType


class TradeFeeState(BaseModel):
    """
    Progress of the protocol trade-fee transfer attached to a swap.
    `amount` is in the fee token's base units (collateral on buys, output token on sells).
    """
    amount: BigInt = 0
    executed: bool = False
    signature: Optional[str] = None
    activity_id: Optional[DocId] = None
    tx_fee_amount: BigInt = 0
    fee_in_usd: BigInt = 0
    value_in_usd: BigInt = 0

    @property
    def settled(self) -> bool:
        return self.executed or self.amount <= 0


_C = TypeVar("_C", bound="_CheckpointBase")


class _CheckpointBase(BaseModel):
    """
    Fields shared by every resume phase.

    Prices are 30-decimal fixed point, 0 means "not sampled yet".
    `counter_price_usd` is the collateral token price on OPEN and the output token price on CLOSE.
    """
    process_type: ProcessType
    signature: str
    activity_id: Optional[DocId] = None

    amount_out: Optional[BigInt] = None
    tx_fee: Optional[BigInt] = None

    native_price_usd: BigInt = 0
    token_price_usd: BigInt = 0
    counter_price_usd: BigInt = 0

    # False until the trade activity was written with full USD valuation
    oracle_calculation: bool = False
    trade_fee: TradeFeeState = Field(default_factory=TradeFeeState)

    def to_phase(self, phase_cls: Type[_C], **changes) -> _C:
        data = self.model_dump(exclude={"phase"})
        data.update(changes)
        return phase_cls.model_validate(data)

    @property
    def has_prices(self) -> bool:
        return self.native_price_usd > 0 and self.token_price_usd > 0 and self.counter_price_usd > 0


class AwaitingTxInfo(_CheckpointBase):
    """Swap broadcast; realized receive amount / fee not captured yet."""
    phase: Literal["AWAITING_TX_INFO"] = CheckpointPhase.AWAITING_TX_INFO.value


class AwaitingFeeCollection(_CheckpointBase):
    """Swap settled; protocol trade fee still to be transferred."""
    phase: Literal["AWAITING_FEE_COLLECTION"] = CheckpointPhase.AWAITING_FEE_COLLECTION.value
    amount_out: BigInt
    tx_fee: BigInt


class AwaitingPriceData(_CheckpointBase):
    """Swap and fee settled; USD prices still missing."""
    phase: Literal["AWAITING_PRICE_DATA"] = CheckpointPhase.AWAITING_PRICE_DATA.value
    amount_out: BigInt
    tx_fee: BigInt


class ReadyToFinalize(_CheckpointBase):
    """Everything captured; only the order/activity accounting is left."""
    phase: Literal["READY_TO_FINALIZE"] = CheckpointPhase.READY_TO_FINALIZE.value
    amount_out: BigInt
    tx_fee: BigInt


Checkpoint = Annotated[
    Union[AwaitingTxInfo, AwaitingFeeCollection, AwaitingPriceData, ReadyToFinalize],
    Field(discriminator="phase"),
]

CheckpointAdapter: TypeAdapter = TypeAdapter(Checkpoint)
