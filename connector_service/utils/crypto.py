"""Cryptographic utilities for token encryption."""

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
import base64


def generate_key(password: str, salt: bytes) -> bytes:
    """Generate encryption key from password."""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt,
        iterations=100000,
    )
    return base64.urlsafe_b64encode(kdf.derive(password.encode()))


class TokenCipher:
    """Encrypts OAuth tokens at rest.

    The key is derived once from the configured password and salt so that
    values written by one process can be read by another.
    """

    def __init__(self, encryption_key: str, salt: str):
        self._fernet = Fernet(generate_key(encryption_key, salt.encode()))

    def encrypt(self, token: str) -> str:
        return self._fernet.encrypt(token.encode()).decode()

    def decrypt(self, encrypted_token: str) -> str:
        try:
            return self._fernet.decrypt(encrypted_token.encode()).decode()
        except InvalidToken as e:
            raise ValueError("Stored token could not be decrypted") from e
