"""Signed bearer tokens bound to an account's current security token."""

from __future__ import annotations

import binascii
import hmac
from base64 import b64decode, b64encode
from dataclasses import dataclass
from typing import Any, Protocol

import jwt

from .account import Account
from .errors import AccountNotFound, SecurityTokenMismatch, TokenExpired, TokenInvalid
from .token_lifecycle import TokenLifecycle
from ..security.tokens import sign_token, verify_token

SESSION_TOKEN_TYPE = "session"


class _Finder(Protocol):
    def find_by_id(self, account_id: str) -> Account | None: ...


@dataclass(slots=True)
class DecodedBearer:
    account: Account
    security_token: str


class BearerTokenCodec:
    """Encode and decode the short-lived tokens used in activation and reset links.

    Each bearer token embeds the account's current security token, so rotating
    the security token invalidates every bearer token issued before it.
    Login session tokens are signed with the same secret but carry identity
    claims and a ``typ`` marker, so a link token is never accepted as a session.
    """

    def __init__(
        self,
        repository: _Finder,
        lifecycle: TokenLifecycle,
        *,
        secret: str,
        issuer: str,
        ttl_seconds: int = 86400,
        session_ttl_seconds: int = 86400,
    ) -> None:
        self._repository = repository
        self._lifecycle = lifecycle
        self._secret = secret
        self._issuer = issuer
        self._ttl_seconds = ttl_seconds
        self._session_ttl_seconds = session_ttl_seconds

    def encode(self, account: Account, security_token: str | None = None) -> str:
        if security_token is None:
            security_token = self._lifecycle.current_token(account).token
        claims = {
            "email": b64encode(account.email.encode("utf-8")).decode("ascii"),
            "securityToken": security_token,
            "id": account.account_id,
        }
        return sign_token(
            claims, secret=self._secret, issuer=self._issuer, ttl_seconds=self._ttl_seconds
        )

    def decode(self, token: str) -> DecodedBearer:
        """Verify ``token`` and resolve it against the account's current security token.

        Raises
        ------
        TokenExpired
            The signature is valid but the token lifetime has elapsed.
        TokenInvalid
            Signature, issuer, or claim structure is wrong.
        AccountNotFound
            The embedded account id no longer resolves.
        SecurityTokenMismatch
            The embedded email or security token is not the account's current one.
        """
        claims = self._verify(token)
        account_id = claims.get("id")
        encoded_email = claims.get("email")
        security_token = claims.get("securityToken")
        if not account_id or not encoded_email or not security_token:
            raise TokenInvalid("Token expired or not valid")

        account = self._repository.find_by_id(str(account_id))
        if account is None:
            raise AccountNotFound("User not found")

        try:
            email = b64decode(encoded_email, validate=True).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError) as exc:
            raise TokenInvalid("Token expired or not valid") from exc

        current = self._lifecycle.current_token(account)
        if email != account.email or not hmac.compare_digest(
            current.token, str(security_token)
        ):
            raise SecurityTokenMismatch("Token expired or invalid")
        return DecodedBearer(account=account, security_token=current.token)

    def issue_session_token(self, account: Account) -> str:
        """Sign the identity claims handed to a client after login."""
        claims: dict[str, Any] = {
            "name": account.name,
            "username": account.username,
            "id": account.account_id,
            "typ": SESSION_TOKEN_TYPE,
        }
        if account.is_admin:
            claims["is_admin"] = True
        return sign_token(
            claims,
            secret=self._secret,
            issuer=self._issuer,
            ttl_seconds=self._session_ttl_seconds,
        )

    def verify_session_token(self, token: str) -> dict[str, Any]:
        """Check signature, expiry and token type; no account lookup is performed."""
        claims = self._verify(token)
        if claims.get("typ") != SESSION_TOKEN_TYPE or not claims.get("id"):
            raise TokenInvalid("Failed to authenticate token")
        return claims

    def _verify(self, token: str) -> dict[str, Any]:
        try:
            return verify_token(token, secret=self._secret, issuer=self._issuer)
        except jwt.ExpiredSignatureError as exc:
            raise TokenExpired("Token expired or not valid", error=type(exc).__name__) from exc
        except jwt.PyJWTError as exc:
            raise TokenInvalid("Token expired or not valid", error=type(exc).__name__) from exc
