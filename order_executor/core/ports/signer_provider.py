from abc import ABC, abstractmethod
from typing import Any, Optional

from ..domain.enums.order_enums import WalletNetwork


class SignerProvider(ABC):

    @abstractmethod
    def get_signer(self, encrypted_key: str, network: Optional[WalletNetwork]) -> Any:
        """
        Decrypt wallet key material into a signing handle. Raises SignerError.
        """
        raise NotImplementedError
