"""
Secret Manager Service.

This module provides encryption and decryption for credential values
stored in the ai_credentials table.

Uses Fernet symmetric encryption (AES-128-CBC with HMAC-SHA256).
Only the secret fields of a credential value are encrypted; identifiers
such as access_key_id stay readable so admins can tell keys apart.
"""

import base64
from typing import Any, Dict, Optional

from cryptography.fernet import Fernet, InvalidToken

from aihub.core.config import settings


# Credential value fields stored as ciphertext
ENCRYPTED_FIELDS = ("api_key", "secret_access_key")


class SecretManagerError(Exception):
    """Exception raised by SecretManager operations."""
    pass


class SecretManager:
    """
    Manages encryption and decryption of credential values.

    The encryption key is loaded from GATEWAY_SECRET_ENCRYPTION_KEY unless
    one is passed explicitly.

    Usage:
        manager = SecretManager()
        stored = manager.encrypt_credential({"api_key": "sk-..."})
        plain = manager.decrypt_credential(stored)
    """

    def __init__(self, key: Optional[str] = None):
        key = key or settings.secret.encryption_key
        if not key:
            raise SecretManagerError(
                "Missing encryption key. Set GATEWAY_SECRET_ENCRYPTION_KEY environment variable."
            )

        # Key can be a raw 32-char string or a Fernet key (urlsafe base64 of 32 bytes)
        if len(key) == 32:
            key = base64.urlsafe_b64encode(key.encode()).decode()

        try:
            self._fernet = Fernet(key.encode())
        except (ValueError, TypeError) as e:
            raise SecretManagerError(f"Invalid encryption key format: {e}")

    def encrypt(self, plaintext: str) -> str:
        """Encrypt a plaintext string into base64 ciphertext."""
        return self._fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, ciphertext: str) -> str:
        """
        Decrypt a ciphertext string.

        Raises:
            SecretManagerError: If the token is invalid or the key is wrong
        """
        try:
            return self._fernet.decrypt(ciphertext.encode()).decode()
        except InvalidToken:
            raise SecretManagerError("Decryption failed: Invalid token or wrong key")

    def encrypt_credential(self, value: Dict[str, Any]) -> Dict[str, Any]:
        """Encrypt the secret fields of a credential value."""
        return {
            k: self.encrypt(v) if k in ENCRYPTED_FIELDS and v else v
            for k, v in value.items()
        }

    def decrypt_credential(self, value: Dict[str, Any]) -> Dict[str, Any]:
        """Decrypt the secret fields of a stored credential value."""
        return {
            k: self.decrypt(v) if k in ENCRYPTED_FIELDS and v else v
            for k, v in value.items()
        }

    @classmethod
    def generate_key(cls) -> str:
        """Generate a new Fernet-compatible encryption key."""
        return Fernet.generate_key().decode()



def mask_credential_value(value: Optional[str]) -> str:
    """Show only the first and last four characters of a secret."""
    if not value or len(value) < 8:
        return "***"
    return f"{value[:4]}{'*' * min(16, len(value) - 8)}{value[-4:]}"
