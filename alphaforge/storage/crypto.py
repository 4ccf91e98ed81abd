"""Encryption at rest for broker secrets and session tokens."""

from __future__ import annotations

from typing import Optional, Protocol

from cryptography.fernet import Fernet, InvalidToken

from alphaforge.exceptions import InvalidSession


class CredentialCipher(Protocol):
    def encrypt(self, plaintext: str) -> str: ...

    def decrypt(self, ciphertext: str) -> str: ...


class FernetCipher:
    """Fernet (AES-128-CBC + HMAC) cipher keyed by a urlsafe base64 key."""

    def __init__(self, key: str | bytes):
        if isinstance(key, str):
            key = key.encode("ascii")
        self._fernet = Fernet(key)

    @staticmethod
    def generate_key() -> str:
        return Fernet.generate_key().decode("ascii")

    def encrypt(self, plaintext: str) -> str:
        return self._fernet.encrypt(plaintext.encode("utf-8")).decode("ascii")

    def decrypt(self, ciphertext: str) -> str:
        try:
            return self._fernet.decrypt(ciphertext.encode("ascii")).decode("utf-8")
        except InvalidToken as exc:
            raise InvalidSession("Stored broker credentials could not be decrypted") from exc


def encrypt_optional(cipher: CredentialCipher, value: Optional[str]) -> Optional[str]:
    return cipher.encrypt(value) if value is not None else None


def decrypt_optional(cipher: CredentialCipher, value: Optional[str]) -> Optional[str]:
    return cipher.decrypt(value) if value is not None else None
