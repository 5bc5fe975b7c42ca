"""
Encryption Utilities
Symmetric encryption for provider access tokens at rest
"""
from __future__ import annotations

from cryptography.fernet import Fernet, InvalidToken

from inboxflow.shared.exceptions import CryptoError
from inboxflow.shared.infrastructure.observability.logger import get_logger

logger = get_logger(__name__)


class EncryptionManager:
    """
    Encrypts and decrypts tenant secrets with Fernet (AES-128-CBC + HMAC).

    Ciphertexts are stored in ``whatsapp_credentials.access_token_ciphertext``
    and decrypted only at the point of use by the dispatcher.

    Attributes:
        cipher: Fernet cipher instance
    """

    def __init__(self, master_key: str | None = None) -> None:
        """
        Args:
            master_key: urlsafe base64-encoded 32-byte key (generated if None)
        """
        if master_key is None:
            master_key = Fernet.generate_key().decode()
            logger.warning("encryption_key_generated", detail="ciphertexts will not survive a restart")
        try:
            self.cipher = Fernet(master_key.encode())
        except ValueError as e:
            raise CryptoError("ENCRYPTION_KEY is not a valid Fernet key") from e

    def encrypt(self, plaintext: str | bytes) -> str:
        if isinstance(plaintext, str):
            plaintext = plaintext.encode("utf-8")
        return self.cipher.encrypt(plaintext).decode("utf-8")

    def decrypt(self, ciphertext: str) -> str:
        try:
            return self.cipher.decrypt(ciphertext.encode("utf-8")).decode("utf-8")
        except InvalidToken as e:
            logger.error("decryption_failed")
            raise CryptoError("Ciphertext could not be decrypted") from e
