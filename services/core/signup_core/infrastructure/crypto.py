"""Fernet encryption for the secret vault.

Usage:
    key = CryptoService.generate_key()  # store in ENCRYPTION_KEY
    crypto = CryptoService(key)
    token = crypto.encrypt('{"email": "parent@example.com"}')
"""

from cryptography.fernet import Fernet, InvalidToken


class InvalidKeyError(Exception):
    """Raised when an invalid encryption key is provided."""


class DecryptionError(Exception):
    """Raised when a ciphertext cannot be decrypted with the configured key."""


class CryptoService:
    """Symmetric encryption of vault secrets."""

    def __init__(self, key: str):
        """Initialize with a Fernet key.

        Raises:
            InvalidKeyError: If the key is empty or malformed.
        """
        if not key:
            raise InvalidKeyError("Encryption key cannot be empty")

        try:
            self._fernet = Fernet(key.encode() if isinstance(key, str) else key)
        except (ValueError, TypeError) as e:
            raise InvalidKeyError(f"Invalid encryption key: {e}") from e

    @staticmethod
    def generate_key() -> str:
        return Fernet.generate_key().decode()

    def encrypt(self, plaintext: str) -> str:
        return self._fernet.encrypt(plaintext.encode("utf-8")).decode("utf-8")

    def decrypt(self, ciphertext: str) -> str:
        """Decrypt a token produced by ``encrypt``.

        Raises:
            DecryptionError: If the token is corrupt or was made with another key.
        """
        try:
            return self._fernet.decrypt(ciphertext.encode("utf-8")).decode("utf-8")
        except (InvalidToken, ValueError) as e:
            raise DecryptionError(f"Failed to decrypt secret: {e}") from e
