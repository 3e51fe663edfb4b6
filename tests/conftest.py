from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from accounts.api import routes
from accounts.api.errors import register_error_handlers
from accounts.config import Settings
from accounts.domain.account import Account
from accounts.domain.errors import DuplicateAccount
from accounts.main import build_account_service
from accounts.repository import from_document, to_document


class FakeRepository:
    """In-memory document store mimicking the Postgres JSONB repository."""

    def __init__(self) -> None:
        self.documents: dict[str, dict[str, Any]] = {}
        self.saves = 0

    @staticmethod
    def _matches(document: dict[str, Any], filter: dict[str, Any]) -> bool:
        return all(document.get(key) == value for key, value in filter.items())

    def find_by_id(self, account_id: str) -> Account | None:
        document = self.documents.get(account_id)
        return from_document(document) if document else None

    def find_one(self, filter: dict[str, Any]) -> Account | None:
        for document in self.documents.values():
            if self._matches(document, filter):
                return from_document(document)
        return None

    def find(
        self,
        filter: dict[str, Any],
        *,
        sort: str | None = None,
        exclude: Iterable[str] = (),
        limit: int | None = None,
        skip: int = 0,
    ) -> list[Account]:
        results = [doc for doc in self.documents.values() if self._matches(doc, filter)]
        if sort:
            key = sort.lstrip("+-")
            results.sort(key=lambda doc: (doc.get(key) or "", doc["_id"]), reverse=sort.startswith("-"))
        results = results[skip:]
        if limit is not None:
            results = results[:limit]
        excluded = tuple(exclude)
        return [from_document(doc, excluded) for doc in results]

    def count_documents(self, filter: dict[str, Any]) -> int:
        return sum(1 for doc in self.documents.values() if self._matches(doc, filter))

    def save(self, account: Account) -> Account:
        for account_id, document in self.documents.items():
            if account_id != account.account_id and document["username"] == account.username:
                raise DuplicateAccount("A user with that username already exists")
        self.documents[account.account_id] = to_document(account)
        self.saves += 1
        return account

    def delete_one(self, filter: dict[str, Any]) -> int:
        for account_id, document in list(self.documents.items()):
            if self._matches(document, filter):
                del self.documents[account_id]
                return 1
        return 0


@dataclass
class FakeMailer:
    activations: list[tuple[str, str]] = field(default_factory=list)
    resets: list[tuple[str, str]] = field(default_factory=list)
    fail: bool = False

    def send_activation_email(self, account: Account, bearer_token: str) -> None:
        if self.fail:
            raise ConnectionError("smtp unavailable")
        self.activations.append((account.email, bearer_token))

    def send_reset_email(self, account: Account, bearer_token: str) -> None:
        if self.fail:
            raise ConnectionError("smtp unavailable")
        self.resets.append((account.email, bearer_token))


class MutableClock:
    """Clock whose current instant tests can move forward."""

    def __init__(self) -> None:
        self.now = datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def settings() -> Settings:
    return Settings(security_secret="test-secret", jwt_issuer="accounts.test", mail_disabled=True)


@pytest.fixture
def repository() -> FakeRepository:
    return FakeRepository()


@pytest.fixture
def mailer() -> FakeMailer:
    return FakeMailer()


@pytest.fixture
def service(repository, mailer, settings):
    return build_account_service(repository, mailer, settings)


def make_account(repository: FakeRepository, email: str, **overrides: Any) -> Account:
    """Store an account directly, bypassing the service; password hashing is opt-in."""
    password = overrides.pop("password", None)
    account = Account(
        account_id=overrides.pop("account_id", email.replace("@", "-at-")),
        username=email,
        email=email,
        firstname=overrides.pop("firstname", "Jane"),
        lastname=overrides.pop("lastname", "Doe"),
        **overrides,
    )
    if password:
        account.set_password(password)
    repository.save(account)
    return account


@pytest.fixture
def api_client(service):
    """Provide a FastAPI test client with isolated state."""
    app = FastAPI()
    register_error_handlers(app)
    app.include_router(routes.public_router, prefix="/api")
    app.include_router(routes.router, prefix="/api")
    app.state.account_service = service

    original_limiter = routes.rate_limiter
    routes.rate_limiter = routes.SlidingWindowRateLimiter(max_requests=5, window_seconds=60)

    with TestClient(app) as client:
        yield client, service

    routes.rate_limiter = original_limiter


@pytest.fixture
def account_factory(repository):
    def factory(email: str, **overrides: Any) -> Account:
        return make_account(repository, email, **overrides)

    return factory


@pytest.fixture
def clock() -> MutableClock:
    return MutableClock()
