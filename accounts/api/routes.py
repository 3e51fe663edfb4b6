"""HTTP route definitions for the account service."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Header, Request
from pydantic import BaseModel, Field

from ..config import get_settings
from ..domain.account import Account
from ..domain.contracts import (
    AdminCreateInput,
    AdminUpdateInput,
    ChangePasswordInput,
    RegisterInput,
    ResetPasswordInput,
    UpdateProfileInput,
)
from ..domain.errors import AccountError, Forbidden, NotFound, RateLimited
from ..domain.service import AccountService
from ..security.rate_limiter import SlidingWindowRateLimiter
from ..security.redis_rate_limiter import RedisSlidingWindowRateLimiter

logger = logging.getLogger(__name__)

settings = get_settings()

public_router = APIRouter()
router = APIRouter()


class ProfileResponse(BaseModel):
    """Self-service projection of an `Account`; credentials, tokens and audit dates are never included."""

    id: str
    username: str
    email: str
    firstname: str
    lastname: str
    company: str | None = None
    active: bool
    is_admin: bool
    user_settings: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_domain(cls, account: Account) -> "ProfileResponse":
        return cls(
            id=account.account_id,
            username=account.username,
            email=account.email,
            firstname=account.firstname,
            lastname=account.lastname,
            company=account.company,
            active=account.active,
            is_admin=account.is_admin,
            user_settings=account.user_settings,
        )


class AccountResponse(ProfileResponse):
    """Outward projection of an `Account` for registration and administration."""

    registration_date: datetime
    last_login: datetime | None = None

    @classmethod
    def from_domain(cls, account: Account) -> "AccountResponse":
        """Build a response model from the domain aggregate."""
        profile = ProfileResponse.from_domain(account).model_dump()
        return cls(
            **profile,
            registration_date=account.registration_date,
            last_login=account.last_login,
        )


class MessageResponse(BaseModel):
    message: str


class RegisterResponse(BaseModel):
    message: str
    user: AccountResponse


class AuthenticateRequest(BaseModel):
    username: str = ""
    password: str = ""


class AuthenticateResponse(BaseModel):
    token: str


class RegisterRequest(BaseModel):
    """Registration payload; field checks happen in the service to keep error messages uniform."""

    email: str | None = None
    firstname: str | None = None
    lastname: str | None = None
    company: str | None = None
    password: str | None = None
    conf_password: str | None = None


class TokenRequest(BaseModel):
    token: str | None = None


class ForgotPasswordRequest(BaseModel):
    email: str | None = None


class ResetPasswordRequest(BaseModel):
    token: str | None = None
    new_password: str | None = None
    conf_new_password: str | None = None


class VerifyTokenResponse(BaseModel):
    id: str


class UserListResponse(BaseModel):
    """Envelope for a page of the admin account listing."""

    items: list[AccountResponse] = Field(alias="list")
    count: int
    pages: int
    limit: int
    page: int

    model_config = {"populate_by_name": True}


class CreateUserRequest(BaseModel):
    email: str | None = None
    firstname: str | None = None
    lastname: str | None = None
    company: str | None = None
    password: str | None = None
    conf_password: str | None = None
    active: bool = False
    is_admin: bool = Field(default=False, validation_alias="isAdmin")

    model_config = {"populate_by_name": True}


class PatchUserRequest(BaseModel):
    email: str | None = None
    firstname: str | None = None
    lastname: str | None = None
    company: str | None = None
    active: bool | None = None
    is_admin: bool | None = None
    password: str | None = None
    conf_password: str | None = None
    user_settings: dict[str, Any] | None = None


class PatchMeRequest(BaseModel):
    """Self-service profile edit; unknown and read-only fields are dropped."""

    email: str | None = None
    firstname: str | None = None
    lastname: str | None = None
    company: str | None = None
    user_settings: dict[str, Any] | None = None


class UpdatePasswordRequest(BaseModel):
    old_password: str | None = None
    password: str | None = None
    conf_password: str | None = None


def _build_rate_limiter() -> SlidingWindowRateLimiter | RedisSlidingWindowRateLimiter:
    """Instantiate the configured rate limiter backend, preferring Redis when available."""
    if settings.rate_limit_backend == "redis" and settings.redis_url:
        try:
            import redis

            client = redis.from_url(settings.redis_url)
            # ensure connectivity early to fail fast and fall back
            client.ping()
            logger.info("rate limiter configured for redis backend at %s", settings.redis_url)
            return RedisSlidingWindowRateLimiter(
                client,
                max_requests=settings.rate_limit_requests,
                window_seconds=settings.rate_limit_window_seconds,
            )
        except Exception as exc:  # pragma: no cover - redis optional in dev
            logger.warning("redis rate limiter unavailable, falling back to in-memory: %s", exc)

    logger.info("rate limiter using in-memory backend")
    return SlidingWindowRateLimiter(
        max_requests=settings.rate_limit_requests,
        window_seconds=settings.rate_limit_window_seconds,
    )


rate_limiter = _build_rate_limiter()


def _enforce_rate_limit(key: str) -> None:
    if not rate_limiter.allow(key):
        raise RateLimited("Too many requests, please try again later")


def get_service(request: Request) -> AccountService:
    """Resolve the `AccountService` stored on the FastAPI application state."""
    service: AccountService = request.app.state.account_service
    return service


async def extract_token(
    request: Request,
    authorization: str | None = Header(default=None),
) -> str | None:
    """Read a bearer token from the Authorization header, query string, or JSON body."""
    if authorization:
        scheme, _, value = authorization.partition(" ")
        return value.strip() if scheme.lower() == "bearer" and value else authorization.strip()
    token = request.query_params.get("token")
    if token:
        return token
    if request.headers.get("content-type", "").startswith("application/json"):
        try:
            body = await request.json()
        except ValueError:
            return None
        if isinstance(body, dict) and isinstance(body.get("token"), str):
            return body["token"]
    return None


def get_claims(
    token: str | None = Depends(extract_token),
    service: AccountService = Depends(get_service),
) -> dict[str, Any]:
    """Authenticate the caller from its session token."""
    if not token:
        raise Forbidden("Token not provided")
    try:
        return service.verify_session(token)
    except AccountError as exc:
        raise Forbidden("Failed to authenticate token", error=exc.error) from exc


def require_admin(
    claims: dict[str, Any] = Depends(get_claims),
    service: AccountService = Depends(get_service),
) -> dict[str, Any]:
    """Allow the call only when the authenticated account is an administrator."""
    service.require_admin(str(claims["id"]))
    return claims


# -- public routes --------------------------------------------------------------------


@public_router.post("/authenticate", response_model=AuthenticateResponse)
def authenticate(
    payload: AuthenticateRequest,
    service: AccountService = Depends(get_service),
) -> AuthenticateResponse:
    """Exchange username and password for a session token."""
    key = f"authenticate:{payload.username.lower()}"
    _enforce_rate_limit(key)
    result = service.authenticate(payload.username, payload.password)
    rate_limiter.reset(key)
    return AuthenticateResponse(token=result.token)


@public_router.post("/authenticate/admin", response_model=AuthenticateResponse)
def authenticate_admin(
    payload: AuthenticateRequest,
    service: AccountService = Depends(get_service),
) -> AuthenticateResponse:
    """Same as `/authenticate` but only administrators may log in."""
    key = f"authenticate:{payload.username.lower()}"
    _enforce_rate_limit(key)
    result = service.authenticate(payload.username, payload.password, admin_only=True)
    rate_limiter.reset(key)
    return AuthenticateResponse(token=result.token)


@public_router.post("/register", response_model=RegisterResponse)
def register(
    request: Request,
    payload: RegisterRequest,
    service: AccountService = Depends(get_service),
) -> RegisterResponse:
    client = request.client.host if request.client else "unknown"
    _enforce_rate_limit(f"register:{client}")
    account = service.register(
        RegisterInput(
            email=payload.email or "",
            firstname=payload.firstname or "",
            lastname=payload.lastname or "",
            password=payload.password or "",
            conf_password=payload.conf_password or "",
            company=payload.company,
        )
    )
    return RegisterResponse(message="User created!", user=AccountResponse.from_domain(account))


@public_router.post("/activate", response_model=MessageResponse)
def activate(
    payload: TokenRequest,
    service: AccountService = Depends(get_service),
) -> MessageResponse:
    service.activate(payload.token)
    return MessageResponse(message="User successfully activated")


@public_router.post("/password/forgot", response_model=MessageResponse)
def forgot_password(
    payload: ForgotPasswordRequest,
    service: AccountService = Depends(get_service),
) -> MessageResponse:
    _enforce_rate_limit(f"forgot:{(payload.email or '').strip().lower()}")
    service.forgot_password(payload.email)
    return MessageResponse(message="Reset password email sent")


@public_router.post("/password/reset", response_model=MessageResponse)
def reset_password(
    payload: ResetPasswordRequest,
    service: AccountService = Depends(get_service),
) -> MessageResponse:
    service.reset_password(
        ResetPasswordInput(
            token=payload.token or "",
            new_password=payload.new_password or "",
            conf_new_password=payload.conf_new_password or "",
        )
    )
    return MessageResponse(message="Password has been reset")


# -- authenticated routes -------------------------------------------------------------


@router.get("/logout", response_model=MessageResponse)
def logout(claims: dict[str, Any] = Depends(get_claims)) -> MessageResponse:
    # session tokens are stateless; the client discards its copy
    logger.info("account %s logged out", claims["id"])
    return MessageResponse(message="Logged out")


@router.api_route("/verifytoken", methods=["GET", "POST"], response_model=VerifyTokenResponse)
def verify_token(
    token: str | None = Depends(extract_token),
    service: AccountService = Depends(get_service),
) -> VerifyTokenResponse:
    if not token:
        raise NotFound("You don't have a valid token")
    claims = service.verify_session(token)
    return VerifyTokenResponse(id=str(claims["id"]))


@router.get("/users", response_model=UserListResponse)
def list_users(
    page: int | None = None,
    limit: int | None = None,
    _: dict[str, Any] = Depends(require_admin),
    service: AccountService = Depends(get_service),
) -> UserListResponse:
    """Return a page of accounts sorted by email."""
    result = service.list_accounts(page=page, limit=limit)
    return UserListResponse(
        items=[AccountResponse.from_domain(account) for account in result.items],
        count=result.count,
        pages=result.pages,
        limit=result.limit,
        page=result.page,
    )


@router.post("/users", response_model=AccountResponse)
def create_user(
    payload: CreateUserRequest,
    _: dict[str, Any] = Depends(require_admin),
    service: AccountService = Depends(get_service),
) -> AccountResponse:
    account = service.create_account(
        AdminCreateInput(
            email=payload.email or "",
            firstname=payload.firstname or "",
            lastname=payload.lastname or "",
            password=payload.password or "",
            conf_password=payload.conf_password or "",
            company=payload.company,
            active=payload.active,
            is_admin=payload.is_admin,
        )
    )
    return AccountResponse.from_domain(account)


@router.get("/users/{user_id}", response_model=AccountResponse)
def get_user(
    user_id: str,
    _: dict[str, Any] = Depends(require_admin),
    service: AccountService = Depends(get_service),
) -> AccountResponse:
    return AccountResponse.from_domain(service.get_account(user_id))


@router.patch("/users/{user_id}", response_model=AccountResponse)
def patch_user(
    user_id: str,
    payload: PatchUserRequest,
    _: dict[str, Any] = Depends(require_admin),
    service: AccountService = Depends(get_service),
) -> AccountResponse:
    account = service.update_account(user_id, AdminUpdateInput(**payload.model_dump()))
    return AccountResponse.from_domain(account)


@router.delete("/users/{user_id}", response_model=MessageResponse)
def delete_user(
    user_id: str,
    _: dict[str, Any] = Depends(require_admin),
    service: AccountService = Depends(get_service),
) -> MessageResponse:
    service.delete_account(user_id)
    return MessageResponse(message="User deleted successfully")


@router.get("/me", response_model=ProfileResponse)
def get_me(
    claims: dict[str, Any] = Depends(get_claims),
    service: AccountService = Depends(get_service),
) -> ProfileResponse:
    return ProfileResponse.from_domain(service.get_me(str(claims["id"])))


@router.patch("/me", response_model=ProfileResponse)
def patch_me(
    payload: PatchMeRequest,
    claims: dict[str, Any] = Depends(get_claims),
    service: AccountService = Depends(get_service),
) -> ProfileResponse:
    account = service.update_me(str(claims["id"]), UpdateProfileInput(**payload.model_dump()))
    return ProfileResponse.from_domain(account)


@router.patch("/me/updatepwd", response_model=MessageResponse)
def update_password(
    payload: UpdatePasswordRequest,
    claims: dict[str, Any] = Depends(get_claims),
    service: AccountService = Depends(get_service),
) -> MessageResponse:
    service.change_password(
        ChangePasswordInput(
            account_id=str(claims["id"]),
            old_password=payload.old_password or "",
            password=payload.password or "",
            conf_password=payload.conf_password or "",
        )
    )
    return MessageResponse(message="The password has been updated")
