"""Unit tests for the secret vault."""

import pytest

from signup_core.domain.models import VaultSecret
from signup_core.domain.services.vault import SecretNotFoundError, VaultError, VaultService
from signup_core.infrastructure.crypto import CryptoService, DecryptionError

LOGIN = {"email": "parent@example.com", "password": "hunter2"}


@pytest.fixture
def vault(db_session, test_settings):
    return VaultService(db_session, CryptoService(test_settings.encryption_key))


class TestStoreAndResolve:
    """Tests for storing and resolving secrets."""

    def test_reference_is_opaque(self, vault, db_session):
        ref = vault.store_secret("parent-1", "login", LOGIN)

        assert ref.startswith("vault:login:")
        assert "parent@example.com" not in ref
        record = db_session.query(VaultSecret).filter(VaultSecret.ref == ref).one()
        assert "hunter2" not in record.secret_encrypted
        assert record.user_id == "parent-1"

    def test_resolve_json(self, vault):
        ref = vault.store_secret("parent-1", "login", LOGIN)

        assert vault.resolve_json(ref) == LOGIN

    def test_resolve_plain_string(self, vault):
        ref = vault.store_secret("parent-1", "child_profile", "child-token-abc")

        assert vault.resolve(ref) == "child-token-abc"

    def test_resolve_json_rejects_non_object(self, vault):
        ref = vault.store_secret("parent-1", "child_profile", '["a", "b"]')

        with pytest.raises(VaultError, match="not a JSON object"):
            vault.resolve_json(ref)

    def test_references_are_unique(self, vault):
        assert vault.store_secret("p", "login", LOGIN) != vault.store_secret("p", "login", LOGIN)

    def test_unknown_reference(self, vault):
        with pytest.raises(SecretNotFoundError):
            vault.resolve("vault:login:missing")

    def test_exists(self, vault):
        ref = vault.store_secret("parent-1", "login", LOGIN)

        assert vault.exists(ref) is True
        assert vault.exists("vault:login:missing") is False
        assert vault.exists(None) is False

    def test_different_key_cannot_resolve(self, db_session, vault):
        ref = vault.store_secret("parent-1", "login", LOGIN)
        other = VaultService(db_session, CryptoService(CryptoService.generate_key()))

        with pytest.raises(DecryptionError):
            other.resolve(ref)


class TestRotateAndDelete:
    """Tests for rotation and deletion."""

    def test_rotate_keeps_reference(self, vault, db_session):
        ref = vault.store_secret("parent-1", "login", LOGIN)

        vault.rotate(ref, {**LOGIN, "password": "correct-horse"})

        assert vault.resolve_json(ref)["password"] == "correct-horse"
        record = db_session.query(VaultSecret).filter(VaultSecret.ref == ref).one()
        assert record.rotated_at is not None

    def test_rotate_unknown(self, vault):
        with pytest.raises(SecretNotFoundError):
            vault.rotate("vault:login:missing", "x")

    def test_delete(self, vault):
        ref = vault.store_secret("parent-1", "payment_method", {"card_token": "tok_1"})

        assert vault.delete(ref) is True
        assert vault.exists(ref) is False
        assert vault.delete(ref) is False
