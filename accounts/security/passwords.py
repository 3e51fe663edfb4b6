"""Password hashing helpers backed by bcrypt."""

from __future__ import annotations

from functools import lru_cache

import bcrypt

# bcrypt only considers the first 72 bytes of the input
_BCRYPT_MAX_BYTES = 72


def _encode(plaintext: str) -> bytes:
    return plaintext.encode("utf-8")[:_BCRYPT_MAX_BYTES]


def hash_password(plaintext: str) -> str:
    """Hash a password with a fresh bcrypt salt."""
    return bcrypt.hashpw(_encode(plaintext), bcrypt.gensalt()).decode("utf-8")


def verify_password(plaintext: str, hashed: str | None) -> bool:
    """Return ``True`` when ``plaintext`` matches ``hashed``.

    Malformed or missing hashes verify as ``False`` instead of raising.
    """
    if not plaintext or not hashed:
        return False
    try:
        return bcrypt.checkpw(_encode(plaintext), hashed.encode("utf-8"))
    except ValueError:
        return False


@lru_cache(maxsize=1)
def dummy_password_hash() -> str:
    """A valid hash no account owns, checked when a login names an unknown user."""
    return hash_password("no-account-has-this-password")
