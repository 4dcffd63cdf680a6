# order_executor/core/domain/entities/order_entity.py

from typing import Any, ClassVar, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from .checkpoint_entity import Checkpoint
from .common import BigInt, DocId
from .wallet_entity import UserEntity, WalletEntity
from ..constants import DEFAULT_SLIPPAGE_BPS, DEFAULT_TAKE_PROFIT_PERCENTAGE
from ..enums.order_enums import OrderCategory, OrderStatus, OrderType


class TokenInfo(BaseModel):
    model_config = ConfigDict(extra="allow")

    address: str
    decimals: int = 18
    symbol: Optional[str] = None
    name: Optional[str] = None
    is_native: bool = False
    is_wrapped_native: bool = False


class OrderAsset(BaseModel):
    collateral_token: Optional[TokenInfo] = None   # spent on entry
    order_token: Optional[TokenInfo] = None        # position token
    output_token: Optional[TokenInfo] = None       # received on exit


class OrderAmount(BaseModel):
    order_size: BigInt = 0
    token_amount: BigInt = 0


class PriceLogic(BaseModel):
    id: Optional[str] = None
    threshold: BigInt = 0   # 30-decimal USD


class OrderEntry(BaseModel):
    is_technical_entry: bool = False
    technical_logic: Optional[Any] = None
    price_logic: Optional[PriceLogic] = None


class TakeProfit(BaseModel):
    take_profit_price: BigInt = 0
    take_profit_percentage: int = DEFAULT_TAKE_PROFIT_PERCENTAGE
    profit: BigInt = 0


class StopLoss(BaseModel):
    stop_loss_price: BigInt = 0
    stop_loss_percentage: int = 0
    save: BigInt = 0
    is_active: bool = False


class OrderExit(BaseModel):
    is_technical_exit: bool = False
    technical_logic: Optional[Any] = None
    take_profit: TakeProfit = Field(default_factory=TakeProfit)
    stop_loss: StopLoss = Field(default_factory=StopLoss)


class ReEntrance(BaseModel):
    is_re_entrance: bool = False
    re_entrance_limit: int = 0   # 0 = unlimited


class ExecutionFee(BaseModel):
    fee_in_usd: BigInt = 0
    pay_in_usd: BigInt = 0


class OrderAdditional(BaseModel):
    model_config = ConfigDict(extra="allow")

    retry: int = 0
    rotation: int = 0
    entry_price: BigInt = 0
    exit_price: BigInt = 0
    realized_pnl: BigInt = 0
    in_processing: Optional[Checkpoint] = None


class OrderEntity(BaseModel):
    """
    In-memory view of a document of the 'orders' collection.

    `wallet_info` / `user_info` are populated by the repository when an order is
    claimed for execution; they are never written back.
    """
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: DocId = Field(alias="_id")
    user: Optional[DocId] = None
    wallet: Optional[DocId] = None

    name: str = ""
    category: OrderCategory = OrderCategory.SPOT
    strategy: str = ""
    chain_id: int
    priority: int = 1
    slippage: int = DEFAULT_SLIPPAGE_BPS

    order_asset: OrderAsset = Field(default_factory=OrderAsset)
    amount: OrderAmount = Field(default_factory=OrderAmount)
    entry: OrderEntry = Field(default_factory=OrderEntry)
    exit: OrderExit = Field(default_factory=OrderExit)

    order_status: OrderStatus = OrderStatus.PENDING
    order_type: OrderType = OrderType.BUY
    message: str = ""
    is_busy: bool = False
    is_active: bool = True

    re_entrance: ReEntrance = Field(default_factory=ReEntrance)
    execution_fee: ExecutionFee = Field(default_factory=ExecutionFee)
    additional: OrderAdditional = Field(default_factory=OrderAdditional)

    wallet_info: Optional[WalletEntity] = Field(default=None, exclude=True)
    user_info: Optional[UserEntity] = Field(default=None, exclude=True)

    @property
    def checkpoint(self):
        return self.additional.in_processing

    @property
    def is_technical(self) -> bool:
        return bool(self.entry.is_technical_entry or self.exit.is_technical_exit)


class OrderUpdate(BaseModel):
    """
    Partial update applied to an order. Only fields that are set are written,
    mapped to their nested document paths by the repository.
    """
    status: Optional[OrderStatus] = None
    type: Optional[OrderType] = None
    message: Optional[str] = None
    is_busy: Optional[bool] = None
    is_active: Optional[bool] = None

    token_amount: Optional[BigInt] = None
    take_profit_price: Optional[BigInt] = None
    profit_usd: Optional[BigInt] = None
    stop_loss_price: Optional[BigInt] = None
    save_usd: Optional[BigInt] = None
    fee_in_usd: Optional[BigInt] = None
    pay_in_usd: Optional[BigInt] = None
    entry_price: Optional[BigInt] = None
    exit_price: Optional[BigInt] = None
    realized_pnl: Optional[BigInt] = None

    retry: Optional[int] = None
    rotation: Optional[int] = None

    # clear_checkpoint=True writes null, otherwise `checkpoint` (if given) is stored
    checkpoint: Optional[Checkpoint] = None
    clear_checkpoint: bool = False

    FIELD_MAP: ClassVar[Dict[str, str]] = {
        "status": "order_status",
        "type": "order_type",
        "message": "message",
        "is_busy": "is_busy",
        "is_active": "is_active",
        "token_amount": "amount.token_amount",
        "take_profit_price": "exit.take_profit.take_profit_price",
        "profit_usd": "exit.take_profit.profit",
        "stop_loss_price": "exit.stop_loss.stop_loss_price",
        "save_usd": "exit.stop_loss.save",
        "fee_in_usd": "execution_fee.fee_in_usd",
        "pay_in_usd": "execution_fee.pay_in_usd",
        "entry_price": "additional.entry_price",
        "exit_price": "additional.exit_price",
        "realized_pnl": "additional.realized_pnl",
        "retry": "additional.retry",
        "rotation": "additional.rotation",
    }

    def to_set_document(self) -> Dict[str, Any]:
        dumped = self.model_dump(mode="json", exclude_none=True, exclude={"checkpoint", "clear_checkpoint"})
        out: Dict[str, Any] = {}
        for key, value in dumped.items():
            path = self.FIELD_MAP.get(key)
            if path is not None:
                out[path] = value
        if self.clear_checkpoint:
            out["additional.in_processing"] = None
        elif self.checkpoint is not None:
            out["additional.in_processing"] = self.checkpoint.model_dump(mode="json")
        return out

