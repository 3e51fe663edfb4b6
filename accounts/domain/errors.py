"""Error taxonomy raised by the account domain and mapped to HTTP by the API layer."""

from __future__ import annotations


class AccountError(Exception):
    """Base class for account workflow failures."""

    status_code: int = 400

    def __init__(self, message: str, *, error: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.error = error


class ValidationError(AccountError):
    """Malformed or missing input."""


class PasswordPolicyViolation(ValidationError):
    """Password too short or confirmation mismatch."""


class MissingToken(ValidationError):
    """No bearer token supplied to a token-consuming flow."""


class DuplicateAccount(AccountError):
    """Username uniqueness violated."""

    status_code = 409


class NotFound(AccountError):
    status_code = 404


class AccountNotFound(NotFound):
    """No account matches the requested identity."""


class TokenInvalid(AccountError):
    """Bearer token failed signature, claim, or structural checks."""


class TokenExpired(TokenInvalid):
    pass


class SecurityTokenMismatch(TokenInvalid):
    """Bearer token refers to a security token that is no longer current."""


class AuthFailure(AccountError):
    """Bad credentials."""

    status_code = 401


class AccountInactive(AuthFailure):
    status_code = 403


class CurrentPasswordIncorrect(AuthFailure):
    status_code = 400


class Forbidden(AccountError):
    status_code = 403


class RateLimited(AccountError):
    """Too many attempts for the same key inside the limiter window."""

    status_code = 429


class PersistenceError(AccountError):
    """Opaque document store failure."""

    status_code = 500
