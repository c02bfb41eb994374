"""Encryption of signed device tokens at rest.

Tokens in the persisted model are stored as ``enc:<fernet token>``. The key
comes from ``KANTINE_ENCRYPTION_KEY`` or from a key file next to the model,
which is generated on first use.
"""

import os
from pathlib import Path
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from .errors import KantineError

ENCRYPTED_PREFIX = "enc:"


class EncryptionError(KantineError):
    """Raised when encryption/decryption operations fail."""
    pass


class TokenCipher:
    """Encrypts and decrypts token strings with Fernet."""

    def __init__(self, key_file: Path, encryption_key: Optional[bytes] = None) -> None:
        """Initialize the cipher.

        Args:
            key_file: Location of the generated key when no key is given and
                ``KANTINE_ENCRYPTION_KEY`` is unset.
            encryption_key: Optional Fernet key.

        Raises:
            EncryptionError: If the key is invalid or cannot be created.
        """
        self.key_file = Path(key_file)
        key = encryption_key or self._get_or_create_key()
        try:
            self.cipher = Fernet(key)
        except (ValueError, TypeError) as e:
            raise EncryptionError(f"Invalid encryption key: {e}")

    def _get_or_create_key(self) -> bytes:
        """Get encryption key from environment or key file, creating one if needed.

        Returns:
            Encryption key as bytes.

        Raises:
            EncryptionError: If the key file cannot be read or written.
        """
        env_key = os.environ.get('KANTINE_ENCRYPTION_KEY')
        if env_key:
            return env_key.encode()

        if self.key_file.exists():
            try:
                return self.key_file.read_bytes().strip()
            except OSError as e:
                raise EncryptionError(f"Failed to read encryption key file: {e}")

        try:
            key = Fernet.generate_key()
            self.key_file.parent.mkdir(parents=True, exist_ok=True)
            self.key_file.write_bytes(key)
            os.chmod(self.key_file, 0o600)
            return key
        except OSError as e:
            raise EncryptionError(f"Failed to generate encryption key: {e}")

    def is_encrypted(self, value: Optional[str]) -> bool:
        return isinstance(value, str) and value.startswith(ENCRYPTED_PREFIX)

    def encrypt_value(self, value: Optional[str]) -> Optional[str]:
        """Encrypt ``value``. None and already-encrypted values pass through."""
        if value is None or self.is_encrypted(value):
            return value
        if not isinstance(value, str):
            raise EncryptionError("Value must be a string")
        return ENCRYPTED_PREFIX + self.cipher.encrypt(value.encode('utf-8')).decode('ascii')

    def decrypt_value(self, value: Optional[str]) -> Optional[str]:
        """Decrypt ``value``. None and plaintext values pass through.

        Raises:
            EncryptionError: If the value was encrypted with another key or
                is damaged.
        """
        if not self.is_encrypted(value):
            return value
        try:
            return self.cipher.decrypt(value[len(ENCRYPTED_PREFIX):].encode('ascii')).decode('utf-8')
        except (InvalidToken, ValueError) as e:
            raise EncryptionError(f"Failed to decrypt value: {e.__class__.__name__}")
