from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from ..security.passwords import hash_password, verify_password


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class TokenRecord:
    """Security token issued to a single account."""

    token: str
    issue_date: datetime
    expiry: datetime
    used: bool = False

    def is_current(self, now: datetime) -> bool:
        return not self.used and self.expiry > now


@dataclass(slots=True)
class Account:
    """Aggregate root for a registered user and its security tokens."""

    account_id: str
    username: str
    email: str
    firstname: str = ""
    lastname: str = ""
    company: str | None = None
    password_hash: str | None = None
    active: bool = False
    is_admin: bool = False
    registration_date: datetime = field(default_factory=utcnow)
    last_login: datetime | None = None
    tokens: list[TokenRecord] = field(default_factory=list)
    user_settings: dict[str, Any] = field(default_factory=dict)

    @property
    def name(self) -> str:
        return f"{self.firstname} {self.lastname}".strip()

    def set_password(self, plaintext: str) -> None:
        """Replace the stored credential with a fresh hash of ``plaintext``."""
        self.password_hash = hash_password(plaintext)

    def check_password(self, plaintext: str) -> bool:
        return verify_password(plaintext, self.password_hash)
