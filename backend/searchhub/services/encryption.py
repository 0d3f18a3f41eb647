from __future__ import annotations

from cryptography.fernet import Fernet, InvalidToken

from searchhub.settings import settings


def _get_fernet() -> Fernet | None:
    if not settings.fernet_key:
        return None
    return Fernet(settings.fernet_key.encode() if isinstance(settings.fernet_key, str) else settings.fernet_key)


def encrypt_optional(value: str | None) -> str | None:
    if value is None:
        return None
    f = _get_fernet()
    if f is None:
        return value
    return f.encrypt(value.encode("utf-8")).decode("utf-8")


def decrypt_optional(value: str | None) -> str | None:
    if value is None:
        return None
    f = _get_fernet()
    if f is None:
        return value
    try:
        return f.decrypt(value.encode("utf-8")).decode("utf-8")
    except InvalidToken:
        # Tokens written before a key was configured (or under a rotated key) are read back as plaintext.
        return value


def is_encrypted(value: str | None) -> bool:
    f = _get_fernet()
    if f is None or not value:
        return False
    try:
        f.decrypt(value.encode("utf-8"))
    except InvalidToken:
        return False
    return True
