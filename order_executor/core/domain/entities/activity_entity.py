# order_executor/core/domain/entities/activity_entity.py

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from .common import BigInt, DocId
from .order_entity import TokenInfo
from ..enums.order_enums import ActivityStatus, ActivityType


class ActivityToken(TokenInfo):
    amount: BigInt = 0
    amount_in_usd: BigInt = 0


class ActivityTxFee(BaseModel):
    fee_amount: BigInt = 0
    fee_in_usd: BigInt = 0


class ActivityEntity(BaseModel):
    """
    Immutable audit record of one realized on-chain effect (trade, transfer, fee).
    Only the *_in_usd fields are ever updated after insert (price backfill).
    """
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: Optional[DocId] = Field(default=None, alias="_id")
    order: Optional[DocId] = None
    wallet: Optional[DocId] = None
    user: Optional[DocId] = None

    type: ActivityType
    status: ActivityStatus = ActivityStatus.SUCCESS
    chain_id: int
    tx_hash: str
    index_token: Optional[str] = None

    pay_token: Optional[ActivityToken] = None
    receive_token: Optional[ActivityToken] = None
    tx_fee: ActivityTxFee = Field(default_factory=ActivityTxFee)
    receiver: Optional[str] = None
