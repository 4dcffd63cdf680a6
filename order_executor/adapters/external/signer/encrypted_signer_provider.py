import logging
import os
from typing import Any, Optional

import base58
from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt
from eth_account import Account
from solders.keypair import Keypair

from ....core.domain.enums.order_enums import WalletNetwork
from ....core.errors.exceptions import SignerError
from ....core.ports.signer_provider import SignerProvider

SUPPORTED_ALGORITHMS = ("aes-256-cbc",)


def _derive_key(password: str, salt: bytes) -> bytes:
    # same parameters as node's scryptSync(password, salt, 32)
    return Scrypt(salt=salt, length=32, n=2**14, r=8, p=1).derive(password.encode("utf-8"))


def encrypt_text(text: str, password: str) -> str:
    """
    Encrypt `text` into the "salt.iv.cipher" hex format stored on wallet documents.
    """
    salt = os.urandom(16)
    iv = os.urandom(16)
    padder = padding.PKCS7(128).padder()
    data = padder.update(text.encode("utf-8")) + padder.finalize()
    encryptor = Cipher(algorithms.AES(_derive_key(password, salt)), modes.CBC(iv)).encryptor()
    encrypted = encryptor.update(data) + encryptor.finalize()
    return f"{salt.hex()}.{iv.hex()}.{encrypted.hex()}"


def decrypt_text(encrypted_text: str, password: str) -> str:
    parts = (encrypted_text or "").split(".")
    if len(parts) != 3:
        raise ValueError("Invalid encrypted text format to decrypt")
    salt, iv, encrypted = (bytes.fromhex(p) for p in parts)
    decryptor = Cipher(algorithms.AES(_derive_key(password, salt)), modes.CBC(iv)).decryptor()
    data = decryptor.update(encrypted) + decryptor.finalize()
    unpadder = padding.PKCS7(128).unpadder()
    return (unpadder.update(data) + unpadder.finalize()).decode("utf-8")


class EncryptedSignerProvider(SignerProvider):
    """
    Turns a wallet's encrypted key into a signer:
    - EVM: eth-account LocalAccount (hex private key)
    - SVM: solders Keypair (base58 secret key)
    """

    def __init__(self, password: str, algorithm: str = "aes-256-cbc", logger: Optional[logging.Logger] = None):
        if algorithm.lower() not in SUPPORTED_ALGORITHMS:
            raise ValueError(f"Unsupported wallet key algorithm: {algorithm}")
        self._password = password
        self._logger = logger or logging.getLogger(self.__class__.__name__)

    def get_signer(self, encrypted_key: str, network: Optional[WalletNetwork]) -> Any:
        if not encrypted_key:
            raise SignerError("Wallet key missing")
        if not self._password:
            raise SignerError("Wallet key password not configured")
        try:
            secret = decrypt_text(encrypted_key, self._password).strip()
        except Exception as exc:
            raise SignerError(f"Wallet key could not be decrypted: {exc.__class__.__name__}") from exc

        try:
            if network == WalletNetwork.SVM:
                return Keypair.from_bytes(base58.b58decode(secret))
            return Account.from_key(secret)
        except Exception as exc:
            raise SignerError(f"Invalid {network.value if network else 'EVM'} key material") from exc
