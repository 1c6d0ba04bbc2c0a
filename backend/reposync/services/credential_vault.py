"""
Credential vault for secrets stored at rest.

Access tokens and webhook secrets are encrypted with Fernet (AES-128-CBC +
HMAC-SHA256) before they are written and decrypted on read. The Fernet key is
derived from the configured secret with PBKDF2 so operators can supply any
passphrase.
"""

import base64
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from reposync.core.settings import get_settings
from reposync.exceptions.repository_exceptions import DecryptionError
from logconfig.logger import get_logger

logger = get_logger()

KDF_SALT = b"reposync-credential-vault"
KDF_ITERATIONS = 100_000


def derive_key(secret: str) -> bytes:
    """Derive a urlsafe base64 Fernet key from an arbitrary secret."""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA512(),
        length=32,
        salt=KDF_SALT,
        iterations=KDF_ITERATIONS,
    )
    return base64.urlsafe_b64encode(kdf.derive(secret.encode("utf-8")))


class CredentialVault:
    """Symmetric encrypt/decrypt of secrets. Holds no state beyond the key."""

    def __init__(self, secret: Optional[str] = None):
        secret = secret or get_settings().encryption_secret
        self._fernet = Fernet(derive_key(secret))

    def encrypt(self, plaintext: str) -> str:
        if not plaintext:
            raise ValueError("Cannot encrypt an empty value")
        return self._fernet.encrypt(plaintext.encode("utf-8")).decode("ascii")

    def decrypt(self, ciphertext: str) -> str:
        """
        Decrypt a value produced by :meth:`encrypt`.

        Raises:
            DecryptionError: If the ciphertext is corrupt, was tampered with,
                or was produced under a different key
        """
        if not ciphertext:
            raise DecryptionError("Ciphertext is empty")
        try:
            return self._fernet.decrypt(ciphertext.encode("ascii")).decode("utf-8")
        except (InvalidToken, UnicodeError) as e:
            raise DecryptionError(original_exception=e)

    def decrypt_or_none(self, ciphertext: Optional[str], field: str = "credential") -> Optional[str]:
        """Decrypt, treating a missing or undecryptable value as absent."""
        if not ciphertext:
            return None
        try:
            return self.decrypt(ciphertext)
        except DecryptionError:
            logger.warning(f"Stored {field} could not be decrypted; treating it as absent")
            return None
