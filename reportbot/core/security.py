"""Fernet encryption / decryption of repository access tokens."""

from __future__ import annotations

from cryptography.fernet import Fernet, InvalidToken

from reportbot.core.errors import CredentialError


class CredentialCipher:
    """Authenticated symmetric cipher for stored credentials."""

    def __init__(self, key: str):
        if not key:
            raise CredentialError("security.credential_key is not set")
        try:
            self._fernet = Fernet(key.encode() if isinstance(key, str) else key)
        except (ValueError, TypeError) as e:
            raise CredentialError(f"Invalid credential key: {e}") from e

    @staticmethod
    def generate_key() -> str:
        return Fernet.generate_key().decode()

    def encrypt(self, plaintext: str) -> str:
        return self._fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, ciphertext: str) -> str:
        try:
            return self._fernet.decrypt(ciphertext.encode()).decode()
        except (InvalidToken, ValueError) as e:
            raise CredentialError("Stored access token could not be decrypted") from e
