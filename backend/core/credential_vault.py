"""
Encryption at rest for mailbox OAuth tokens.

The users collection never holds a raw access or refresh token; both are
sealed together into one Fernet token whose key is derived (PBKDF2/SHA256)
from a master secret in the environment.
"""

import base64
import json
import logging
import os
from typing import Any, Dict, Optional, Tuple

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

logger = logging.getLogger(__name__)


class CredentialVaultError(Exception):
    """Base exception for credential vault operations."""
    pass


class EncryptionError(CredentialVaultError):
    pass


class DecryptionError(CredentialVaultError):
    pass


class CredentialVault:
    """
    Seals and opens OAuth token bundles.

    Usage:
        vault = CredentialVault("master-secret")
        sealed = vault.seal_tokens("ya29...", "1//0g...")
        access_token, refresh_token = vault.open_tokens(sealed)
    """

    MASTER_KEY_ENV = "CREDENTIAL_VAULT_KEY"
    SALT_ENV = "CREDENTIAL_VAULT_SALT"
    DEFAULT_SALT = "mailsync-token-vault-salt"
    KDF_ITERATIONS = 100_000

    def __init__(self, master_key: Optional[str] = None, salt: Optional[str] = None):
        key = master_key or os.environ.get(self.MASTER_KEY_ENV)
        if not key:
            logger.warning(
                f"No {self.MASTER_KEY_ENV} set, using an ephemeral key. "
                "Stored tokens will not survive a restart."
            )
            key = Fernet.generate_key().decode()

        salt = salt or os.environ.get(self.SALT_ENV) or self.DEFAULT_SALT
        self._cipher = Fernet(self._derive_key(key, salt.encode()))

    def _derive_key(self, secret: str, salt: bytes) -> bytes:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt,
            iterations=self.KDF_ITERATIONS,
        )
        return base64.urlsafe_b64encode(kdf.derive(secret.encode()))

    def encrypt(self, data: Dict[str, Any]) -> str:
        """Encrypt a JSON-serializable dict into a Fernet token string."""
        try:
            return self._cipher.encrypt(json.dumps(data, default=str).encode()).decode()
        except Exception as e:
            logger.error(f"Encryption failed: {e}")
            raise EncryptionError(f"Failed to encrypt credentials: {e}")

    def decrypt(self, token: str) -> Dict[str, Any]:
        """
        Decrypt a token produced by ``encrypt``.

        Raises:
            DecryptionError: Wrong key, tampered data or a non-JSON payload
        """
        try:
            return json.loads(self._cipher.decrypt(token.encode()).decode())
        except InvalidToken:
            logger.error("Decryption failed: invalid token (wrong key or corrupted data)")
            raise DecryptionError("Failed to decrypt: invalid key or corrupted data")
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise DecryptionError(f"Failed to decrypt: invalid payload ({e})")

    def seal_tokens(self, access_token: str, refresh_token: Optional[str] = None) -> str:
        return self.encrypt({"access_token": access_token, "refresh_token": refresh_token})

    def open_tokens(self, sealed: str) -> Tuple[str, Optional[str]]:
        data = self.decrypt(sealed)
        return data.get("access_token", ""), data.get("refresh_token")


_vault: Optional[CredentialVault] = None


def get_vault() -> CredentialVault:
    """Get the process-wide vault."""
    global _vault
    if _vault is None:
        _vault = CredentialVault()
    return _vault
