"""Password hashing built on passlib's bcrypt handler."""

from __future__ import annotations

from passlib.context import CryptContext

BCRYPT_ROUNDS = 10

_pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=BCRYPT_ROUNDS)


def hash_password(password: str) -> str:
    """Return a salted bcrypt digest for ``password``."""

    if not password:
        raise ValueError("Password must not be empty")
    if "\x00" in password:
        raise ValueError("Password must not contain NUL characters")
    return _pwd_context.hash(password)


def verify_password(password: str, hashed: str | None) -> bool:
    """Return ``True`` when ``password`` matches ``hashed``.

    Malformed or missing digests never match.
    """

    if not password or not hashed:
        return False
    try:
        return _pwd_context.verify(password, hashed)
    except (ValueError, TypeError):
        return False


__all__ = ["BCRYPT_ROUNDS", "hash_password", "verify_password"]
