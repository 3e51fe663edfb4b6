"""Domain-level request contracts shared by multiple layers."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from .account import Account


@dataclass(slots=True)
class RegisterInput:
    """Self-service registration payload."""

    email: str
    firstname: str
    lastname: str
    password: str
    conf_password: str
    company: str | None = None


@dataclass(slots=True)
class ResetPasswordInput:
    token: str
    new_password: str
    conf_new_password: str


@dataclass(slots=True)
class ChangePasswordInput:
    account_id: str
    old_password: str
    password: str
    conf_password: str


@dataclass(slots=True)
class UpdateProfileInput:
    """Fields an account holder may change on their own profile.

    ``None`` leaves the stored value untouched.
    """

    firstname: str | None = None
    lastname: str | None = None
    email: str | None = None
    company: str | None = None
    user_settings: dict[str, Any] | None = None


@dataclass(slots=True)
class AdminCreateInput:
    """Account creation by an administrator; activation state is caller-chosen."""

    email: str
    firstname: str
    lastname: str
    password: str
    conf_password: str
    company: str | None = None
    active: bool = False
    is_admin: bool = False


@dataclass(slots=True)
class AdminUpdateInput:
    firstname: str | None = None
    lastname: str | None = None
    email: str | None = None
    company: str | None = None
    active: bool | None = None
    is_admin: bool | None = None
    password: str | None = None
    conf_password: str | None = None
    user_settings: dict[str, Any] | None = None


@dataclass(slots=True)
class LoginResult:
    token: str
    account: Account


@dataclass(slots=True)
class AccountPage:
    """One page of an admin account listing."""

    items: list[Account] = field(default_factory=list)
    count: int = 0
    pages: int = 0
    limit: int = 20
    page: int = 1
