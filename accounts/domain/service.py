"""Account service orchestrating registration, activation, password flows, and administration."""

from __future__ import annotations

import logging
import math
from datetime import datetime
from typing import Callable

from email_validator import EmailNotValidError, validate_email

from .account import Account, utcnow
from .bearer import BearerTokenCodec
from .contracts import (
    AccountPage,
    AdminCreateInput,
    AdminUpdateInput,
    ChangePasswordInput,
    LoginResult,
    RegisterInput,
    ResetPasswordInput,
    UpdateProfileInput,
)
from .errors import (
    AccountInactive,
    AccountNotFound,
    AuthFailure,
    CurrentPasswordIncorrect,
    DuplicateAccount,
    Forbidden,
    MissingToken,
    PasswordPolicyViolation,
    ValidationError,
)
from .token_lifecycle import TokenLifecycle
from ..config import Settings
from ..mailer import Mailer
from ..repository import AccountRepository, new_account_id
from ..security.passwords import dummy_password_hash, verify_password

logger = logging.getLogger(__name__)

_BAD_CREDENTIALS = "Sorry. The details you entered are incorrect"


class AccountService:
    """Account workflows backed by a document repository."""

    def __init__(
        self,
        repository: AccountRepository,
        lifecycle: TokenLifecycle,
        codec: BearerTokenCodec,
        mailer: Mailer,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        """Store dependencies used to orchestrate persistence, tokens, and notifications."""
        self._repository = repository
        self._lifecycle = lifecycle
        self._codec = codec
        self._mailer = mailer
        self._settings = settings
        self._clock = clock

    # -- registration and activation -------------------------------------------------

    def register(self, payload: RegisterInput) -> Account:
        """Create an inactive account with one seeded security token and mail the activation link."""
        email = self._validate_email(payload.email)
        firstname = (payload.firstname or "").strip()
        if not firstname:
            raise ValidationError("Firstname Required")
        lastname = (payload.lastname or "").strip()
        if not lastname:
            raise ValidationError("Lastname Required")
        password = payload.password or ""
        if len(password) < self._settings.min_password_length:
            raise PasswordPolicyViolation(
                "Password is too short, must be at least "
                f"{self._settings.min_password_length} characters long"
            )
        self._require_confirmation(password, payload.conf_password)

        account = Account(
            account_id=new_account_id(),
            username=email,
            email=email,
            firstname=firstname,
            lastname=lastname,
            company=payload.company,
            active=False,
            registration_date=self._clock(),
        )
        account.set_password(password)
        seeded = self._lifecycle.seed_token(account)
        try:
            self._repository.save(account)
        except DuplicateAccount as exc:
            raise DuplicateAccount("A user with that email already exists", error=exc.error) from exc

        logger.info("account %s registered", account.account_id)
        self._send_activation(account, seeded.token)
        return account

    def activate(self, token: str | None) -> Account:
        """Consume an activation bearer token and mark the account active."""
        if not token:
            raise MissingToken("No token has been passed")
        decoded = self._codec.decode(token)
        account = decoded.account
        account.active = True
        self._lifecycle.mark_used(account, decoded.security_token)
        self._repository.save(account)
        logger.info("account %s activated", account.account_id)
        return account

    # -- password flows --------------------------------------------------------------

    def forgot_password(self, email: str | None) -> None:
        """Rotate the account's security token and mail a reset link bound to it."""
        address = self._validate_email(email, message="Email is not valid")
        account = self._repository.find_one({"email": address})
        if account is None:
            raise AccountNotFound("The email passed does not exist")
        record = self._lifecycle.issue_token(account)
        logger.info("password reset requested for account %s", account.account_id)
        token = self._codec.encode(account, record.token)
        self._notify(self._mailer.send_reset_email, account, token)

    def reset_password(self, payload: ResetPasswordInput) -> Account:
        if not payload.token:
            raise MissingToken("No token has been passed")
        decoded = self._codec.decode(payload.token)
        self._require_confirmation(payload.new_password, payload.conf_new_password)
        account = decoded.account
        account.set_password(payload.new_password)
        self._lifecycle.mark_used(account, decoded.security_token)
        self._repository.save(account)
        logger.info("password reset completed for account %s", account.account_id)
        return account

    def change_password(self, payload: ChangePasswordInput) -> Account:
        """Self-service credential change guarded by the current password."""
        account = self._load(payload.account_id)
        if not account.check_password(payload.old_password or ""):
            raise CurrentPasswordIncorrect("The current password is not correct")
        password = payload.password or ""
        if (
            password != payload.conf_password
            or len(password) < self._settings.min_changed_password_length
        ):
            raise PasswordPolicyViolation(
                "The two passwords do not match or one of them is too short"
            )
        account.set_password(password)
        self._repository.save(account)
        return account

    # -- authentication --------------------------------------------------------------

    def authenticate(self, username: str, password: str, *, admin_only: bool = False) -> LoginResult:
        """Check credentials and return a session token.

        Unknown users and wrong passwords fail identically. Inactive accounts
        get their activation email resent and fail with ``AccountInactive``.
        """
        query: dict[str, object] = {"username": username or ""}
        if admin_only:
            query["is_admin"] = True
        account = self._repository.find_one(query)
        if account is None:
            # keep the response time independent of whether the username exists
            verify_password(password or "", dummy_password_hash())
            raise AuthFailure(_BAD_CREDENTIALS)
        if not account.check_password(password or ""):
            raise AuthFailure(_BAD_CREDENTIALS)
        if not account.active:
            self._send_activation(account)
            raise AccountInactive(
                "The email address used must first be verified before you can login, "
                "a verification email has been resent"
            )
        account.last_login = self._clock()
        self._repository.save(account)
        return LoginResult(token=self._codec.issue_session_token(account), account=account)

    def verify_session(self, token: str) -> dict[str, object]:
        """Return the claims of a signed session or bearer token."""
        return self._codec.verify_session_token(token)

    # -- self service ----------------------------------------------------------------

    def get_me(self, account_id: str) -> Account:
        return self._load(account_id)

    def update_me(self, account_id: str, payload: UpdateProfileInput) -> Account:
        """Apply profile edits; identity flags and credentials are not writable here."""
        account = self._load(account_id)
        if payload.email is not None:
            account.email = self._validate_email(payload.email)
        if payload.firstname is not None:
            account.firstname = payload.firstname.strip()
        if payload.lastname is not None:
            account.lastname = payload.lastname.strip()
        if payload.company is not None:
            account.company = payload.company
        if payload.user_settings is not None:
            account.user_settings = dict(payload.user_settings)
        return self._repository.save(account)

    # -- administration --------------------------------------------------------------

    def require_admin(self, account_id: str) -> Account:
        account = self._repository.find_by_id(account_id)
        if account is None:
            raise AccountNotFound("User not found")
        if not account.is_admin:
            raise Forbidden("You don't have the permissions to execute this call")
        return account

    def create_account(self, payload: AdminCreateInput) -> Account:
        """Create an account in any activation state without seeding a token."""
        email = self._validate_email(payload.email)
        password = payload.password or ""
        if len(password) < self._settings.min_password_length:
            raise PasswordPolicyViolation(
                "Password is too short, must be at least "
                f"{self._settings.min_password_length} characters long"
            )
        self._require_confirmation(password, payload.conf_password)
        account = Account(
            account_id=new_account_id(),
            username=email,
            email=email,
            firstname=(payload.firstname or "").strip(),
            lastname=(payload.lastname or "").strip(),
            company=payload.company or "",
            active=payload.active,
            is_admin=payload.is_admin,
            registration_date=self._clock(),
        )
        account.set_password(password)
        self._repository.save(account)
        logger.info("account %s created by admin", account.account_id)
        return account

    def get_account(self, account_id: str) -> Account:
        return self._load(account_id)

    def list_accounts(self, page: int | None = None, limit: int | None = None) -> AccountPage:
        """Return one page of accounts sorted by email, without their tokens."""
        limit = limit if limit and limit > 0 else self._settings.default_page_size
        limit = min(limit, self._settings.max_page_size)
        page = page if page and page > 0 else 1
        count = self._repository.count_documents({})
        items = self._repository.find(
            {},
            sort="email",
            exclude=("tokens",),
            limit=limit,
            skip=limit * (page - 1),
        )
        return AccountPage(
            items=items,
            count=count,
            pages=math.ceil(count / limit),
            limit=limit,
            page=page,
        )

    def list_admins(self) -> list[Account]:
        return self._repository.find({"is_admin": True, "active": True}, sort="email")

    def update_account(self, account_id: str, payload: AdminUpdateInput) -> Account:
        """Admin edit; username and tokens are immutable, password needs confirmation."""
        account = self._load(account_id)
        if payload.password:
            self._require_confirmation(payload.password, payload.conf_password)
            account.set_password(payload.password)
        if payload.email is not None:
            account.email = self._validate_email(payload.email)
        for name in ("firstname", "lastname", "company", "active", "is_admin"):
            value = getattr(payload, name)
            if value is not None:
                setattr(account, name, value)
        if payload.user_settings is not None:
            account.user_settings = dict(payload.user_settings)
        self._repository.save(account)
        logger.info("account %s updated by admin", account.account_id)
        return account

    def delete_account(self, account_id: str) -> None:
        if not self._repository.delete_one({"_id": account_id}):
            raise AccountNotFound("Could not find the user")
        logger.info("account %s deleted", account_id)

    # -- helpers ---------------------------------------------------------------------

    def _load(self, account_id: str) -> Account:
        account = self._repository.find_by_id(account_id)
        if account is None:
            raise AccountNotFound("Could not find the user")
        return account

    def _validate_email(self, email: str | None, *, message: str = "The email is not valid") -> str:
        address = (email or "").strip()
        if not address:
            raise ValidationError(message)
        try:
            validate_email(address, check_deliverability=False)
        except EmailNotValidError as exc:
            raise ValidationError(message, error=str(exc)) from exc
        return address

    @staticmethod
    def _require_confirmation(password: str | None, confirmation: str | None) -> None:
        if not password or not confirmation or password != confirmation:
            raise PasswordPolicyViolation("Passwords do not match")

    def _send_activation(self, account: Account, security_token: str | None = None) -> None:
        token = self._codec.encode(account, security_token)
        self._notify(self._mailer.send_activation_email, account, token)

    def _notify(self, send: Callable[[Account, str], None], account: Account, token: str) -> None:
        try:
            send(account, token)
        except Exception as exc:  # notifications never fail the calling workflow
            logger.warning("notification for account %s failed: %s", account.account_id, exc)
