# tutor_gateway/crypto.py
"""Encryption of upstream provider credentials.

Keys come from a ``KeyProvider``. The first key encrypts, every key can
decrypt, so rotation is:

1. set the new secret as ``ENCRYPTION_KEY`` and move the old one into
   ``PREVIOUS_ENCRYPTION_KEYS``;
2. run ``tutor-gateway rotate-credentials`` to re-encrypt stored credentials
   under the new key;
3. remove the old key from ``PREVIOUS_ENCRYPTION_KEYS``.

A secret manager can be plugged in by implementing ``keys()``.
"""
import base64
from typing import Protocol
from cryptography.fernet import Fernet, InvalidToken, MultiFernet
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from tutor_gateway.config import settings


class KeyProvider(Protocol):
    def keys(self) -> list[str]:
        """Return secrets, primary first."""
        ...


class EnvKeyProvider:
    """Reads ENCRYPTION_KEY and PREVIOUS_ENCRYPTION_KEYS from settings."""

    def keys(self) -> list[str]:
        if not settings.encryption_key:
            raise ValueError("ENCRYPTION_KEY not set")
        previous = [k.strip() for k in settings.previous_encryption_keys.split(",") if k.strip()]
        return [settings.encryption_key, *previous]


class StaticKeyProvider:
    def __init__(self, *secrets: str):
        if not secrets:
            raise ValueError("At least one key is required")
        self._secrets = list(secrets)

    def keys(self) -> list[str]:
        return list(self._secrets)


def _derive_fernet(secret: str) -> Fernet:
    """Derive a Fernet instance from a secret string."""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=b"tutor-gateway-credential-salt",
        iterations=100000,
    )
    key = base64.urlsafe_b64encode(kdf.derive(secret.encode()))
    return Fernet(key)


class CredentialCipher:
    def __init__(self, key_provider: KeyProvider | None = None):
        self._key_provider = key_provider or EnvKeyProvider()

    def _fernet(self) -> MultiFernet:
        return MultiFernet([_derive_fernet(secret) for secret in self._key_provider.keys()])

    def encrypt(self, plaintext: str) -> str:
        if not plaintext:
            raise ValueError("Cannot encrypt an empty credential")
        return self._fernet().encrypt(plaintext.encode()).decode()

    def decrypt(self, ciphertext: str) -> str:
        """Decrypt a stored credential.

        Raises ValueError if the token is empty or no configured key accepts it.
        """
        if not ciphertext:
            raise ValueError("Cannot decrypt an empty credential")
        try:
            return self._fernet().decrypt(ciphertext.encode()).decode()
        except InvalidToken as e:
            raise ValueError("Credential could not be decrypted with any configured key") from e

    def rotate(self, ciphertext: str) -> str:
        """Re-encrypt a credential under the primary key."""
        try:
            return self._fernet().rotate(ciphertext.encode()).decode()
        except InvalidToken as e:
            raise ValueError("Credential could not be decrypted with any configured key") from e


def encrypt_credential(plaintext: str) -> str:
    """Encrypt an upstream credential for storage."""
    return CredentialCipher().encrypt(plaintext)


def decrypt_credential(ciphertext: str) -> str:
    """Decrypt an upstream credential."""
    return CredentialCipher().decrypt(ciphertext)


def mask_credential(plaintext: str) -> str:
    """Mask a credential for display, keeping the first and last 4 characters."""
    if not plaintext:
        return ""
    if len(plaintext) <= 8:
        return "****"
    return f"{plaintext[:4]}****{plaintext[-4:]}"
