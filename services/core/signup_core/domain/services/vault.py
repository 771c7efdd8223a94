"""Secret vault for parent credentials, child profiles and payment methods.

Adapters never see raw secrets in ``ProviderContext``. Callers store a
secret once and pass its opaque reference (``vault:<kind>:<token>``) in
``ctx.metadata["vault"]`` or ``ctx.child_token``; adapters resolve the
reference only at the moment they need the value.

Usage:
    vault = VaultService(db_session, CryptoService(settings.encryption_key))
    ref = vault.store_secret("user-1", "login", {"email": "a@b.c", "password": "pw"})
    creds = vault.resolve_json(ref)
"""

import json
import secrets
from typing import Any, Optional, Union

from sqlalchemy.orm import Session

from signup_core.domain.models import VaultSecret, utcnow
from signup_core.infrastructure.crypto import CryptoService

REF_PREFIX = "vault"


class VaultError(Exception):
    """Base exception for vault operations."""


class SecretNotFoundError(VaultError):
    """Raised when a reference does not point at a stored secret."""


class VaultService:
    """Stores encrypted secrets and resolves references back to plaintext."""

    def __init__(self, db: Session, crypto: CryptoService):
        self.db = db
        self.crypto = crypto

    @staticmethod
    def _serialize(secret: Union[str, dict[str, Any]]) -> str:
        return secret if isinstance(secret, str) else json.dumps(secret, sort_keys=True)

    def store_secret(
        self,
        user_id: str,
        kind: str,
        secret: Union[str, dict[str, Any]],
    ) -> str:
        """Encrypt and store a secret.

        Args:
            user_id: Owner of the secret.
            kind: Secret category (login, child_profile, payment_method).
            secret: Plaintext string, or a dict stored as JSON.

        Returns:
            The opaque reference to hand to adapters.
        """
        ref = f"{REF_PREFIX}:{kind}:{secrets.token_urlsafe(18)}"
        record = VaultSecret(
            ref=ref,
            user_id=user_id,
            kind=kind,
            secret_encrypted=self.crypto.encrypt(self._serialize(secret)),
        )
        self.db.add(record)
        self.db.flush()
        return ref

    def _get(self, ref: str) -> VaultSecret:
        record = self.db.query(VaultSecret).filter(VaultSecret.ref == ref).first()
        if record is None:
            raise SecretNotFoundError(f"No secret stored under {ref!r}")
        return record

    def exists(self, ref: Optional[str]) -> bool:
        if not ref:
            return False
        return self.db.query(VaultSecret.id).filter(VaultSecret.ref == ref).first() is not None

    def resolve(self, ref: str) -> str:
        """Decrypt the secret behind ``ref``.

        Raises:
            SecretNotFoundError: If nothing is stored under ``ref``.
            DecryptionError: If the stored ciphertext cannot be decrypted.
        """
        return self.crypto.decrypt(self._get(ref).secret_encrypted)

    def resolve_json(self, ref: str) -> dict[str, Any]:
        """Decrypt a secret that was stored as a dict."""
        value = json.loads(self.resolve(ref))
        if not isinstance(value, dict):
            raise VaultError(f"Secret {ref!r} is not a JSON object")
        return value

    def rotate(self, ref: str, secret: Union[str, dict[str, Any]]) -> None:
        """Replace the secret behind an existing reference."""
        record = self._get(ref)
        record.secret_encrypted = self.crypto.encrypt(self._serialize(secret))
        record.rotated_at = utcnow()
        self.db.flush()

    def delete(self, ref: str) -> bool:
        deleted = self.db.query(VaultSecret).filter(VaultSecret.ref == ref).delete(
            synchronize_session=False
        )
        self.db.flush()
        return deleted > 0
