# order_executor/core/domain/entities/wallet_entity.py

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from .common import DocId
from ..enums.order_enums import WalletNetwork


class WalletEntity(BaseModel):
    """
    Custodial wallet attached to an order. The private key is stored encrypted
    ("salt.iv.cipher" hex) and only decrypted by the signer provider.
    """
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: DocId = Field(alias="_id")
    address: str
    encrypted_wallet_key: Optional[str] = None
    network: Optional[WalletNetwork] = None
    user: Optional[DocId] = None


class UserEntity(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: DocId = Field(alias="_id")
    status: Optional[str] = None
