"""Encryption service for securing cached Keka credentials."""

import sys
from typing import Optional
from cryptography.fernet import Fernet, InvalidToken
from app.config import settings


class EncryptionService:
    """Service for encrypting and decrypting sensitive data."""

    def __init__(self, key: Optional[str] = None):
        """Initialize encryption service.

        Args:
            key: Fernet key (defaults to settings.encryption_key).
        """
        self._key = key or settings.encryption_key
        self._validate_encryption_key()
        self._fernet = Fernet(self._key.encode())

    def _validate_encryption_key(self) -> None:
        """Validate that encryption key is properly configured.

        Raises:
            SystemExit: If encryption key is missing or invalid.
        """
        if not self._key:
            print("ERROR: ENCRYPTION_KEY environment variable is not set.", file=sys.stderr)
            print("The service cannot cache Keka tokens without a valid encryption key.", file=sys.stderr)
            print("Generate a key with: python -c \"from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())\"", file=sys.stderr)
            sys.exit(1)

        try:
            Fernet(self._key.encode())
        except Exception as e:
            print(f"ERROR: Invalid ENCRYPTION_KEY format: {e}", file=sys.stderr)
            print("Generate a valid key with: python -c \"from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())\"", file=sys.stderr)
            sys.exit(1)

    def encrypt(self, plaintext: str) -> str:
        """Encrypt plaintext string.

        Args:
            plaintext: The string to encrypt.

        Returns:
            The encrypted string (base64 encoded).
        """
        return self._fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, ciphertext: str) -> str:
        """Decrypt ciphertext string.

        Args:
            ciphertext: The encrypted string (base64 encoded).

        Returns:
            The decrypted plaintext string.

        Raises:
            InvalidToken: If the ciphertext is invalid or corrupted.
        """
        return self._fernet.decrypt(ciphertext.encode()).decode()

    def try_decrypt(self, ciphertext: str) -> Optional[str]:
        """Decrypt ciphertext, returning None if it was not produced with this key."""
        try:
            return self.decrypt(ciphertext)
        except InvalidToken:
            return None
