"""Utilities for issuing and validating application JWTs and security tokens."""

from __future__ import annotations

import hashlib
import time
from typing import Any

import jwt


def generate_security_token(secret: str, salt: str | int | None = None) -> str:
    """Return the SHA-256 hex digest of ``secret`` salted with a timestamp.

    Parameters
    ----------
    secret:
        Process-wide signing secret.
    salt:
        Optional salt; defaults to the current time in nanoseconds.
    """
    if salt is None:
        salt = time.time_ns()
    return hashlib.sha256(f"{secret}{salt}".encode("utf-8")).hexdigest()


def sign_token(
    claims: dict[str, Any],
    *,
    secret: str,
    issuer: str,
    ttl_seconds: int,
) -> str:
    """Sign ``claims`` as an HS256 JWT valid for ``ttl_seconds``.

    Parameters
    ----------
    claims:
        Custom claims to embed alongside the registered ``iss``/``iat``/``exp``.
    secret:
        HMAC signing secret.
    issuer:
        Value for the ``iss`` claim, checked again on verification.
    ttl_seconds:
        Lifetime of the token.

    Returns
    -------
    str
        The encoded JWT.
    """

    now = int(time.time())
    payload: dict[str, Any] = {
        **claims,
        "iss": issuer,
        "iat": now,
        "exp": now + ttl_seconds,
    }
    # PyJWT returns str for HS256 even in PyJWT>=2
    return jwt.encode(payload, secret, algorithm="HS256")


def verify_token(token: str, *, secret: str, issuer: str) -> dict[str, Any]:
    """Decode and verify a JWT returning its payload.

    Raises
    ------
    jwt.PyJWTError
        Propagated when the token is invalid, expired, or signed by another issuer.
    """

    return jwt.decode(
        token,
        secret,
        algorithms=["HS256"],
        issuer=issuer,
        options={"require": ["exp", "iat", "iss"]},
    )
