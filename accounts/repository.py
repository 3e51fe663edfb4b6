"""Document repository for account data stored as JSONB in Postgres."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Any, Iterable, Protocol, Sequence

import psycopg
from psycopg import errors as pg_errors
from psycopg.rows import tuple_row
from psycopg.types.json import Jsonb
from psycopg_pool import ConnectionPool

from .domain.account import Account, TokenRecord
from .domain.errors import DuplicateAccount, PersistenceError

logger = logging.getLogger(__name__)

# Top-level document keys that may be used for sorting.
SORTABLE_FIELDS = frozenset({"email", "username", "lastname", "firstname", "registration_date"})

_SCHEMA_SQL = (
    """
    CREATE TABLE IF NOT EXISTS accounts (
        account_id TEXT PRIMARY KEY,
        document JSONB NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS accounts_username_key
    ON accounts ((document->>'username'))
    """,
    """
    CREATE INDEX IF NOT EXISTS accounts_document_idx
    ON accounts USING GIN (document jsonb_path_ops)
    """,
)


class AccountRepository(Protocol):
    """Key/document operations the account domain depends on."""

    def find_by_id(self, account_id: str) -> Account | None: ...

    def find_one(self, filter: dict[str, Any]) -> Account | None: ...

    def find(
        self,
        filter: dict[str, Any],
        *,
        sort: str | None = None,
        exclude: Iterable[str] = (),
        limit: int | None = None,
        skip: int = 0,
    ) -> list[Account]: ...

    def count_documents(self, filter: dict[str, Any]) -> int: ...

    def save(self, account: Account) -> Account: ...

    def delete_one(self, filter: dict[str, Any]) -> int: ...


def new_account_id() -> str:
    return uuid.uuid4().hex


def _dt(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse_dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def to_document(account: Account) -> dict[str, Any]:
    """Serialise an account into its stored JSON document."""
    return {
        "_id": account.account_id,
        "username": account.username,
        "email": account.email,
        "firstname": account.firstname,
        "lastname": account.lastname,
        "company": account.company,
        "password": account.password_hash,
        "active": account.active,
        "is_admin": account.is_admin,
        "registration_date": _dt(account.registration_date),
        "last_login": _dt(account.last_login),
        "tokens": [
            {
                "token": record.token,
                "issue_date": _dt(record.issue_date),
                "expiry": _dt(record.expiry),
                "used": record.used,
            }
            for record in account.tokens
        ],
        "user_settings": account.user_settings,
    }


def from_document(document: dict[str, Any], exclude: Iterable[str] = ()) -> Account:
    """Build an ``Account`` from a stored document, leaving excluded fields at defaults."""
    excluded = set(exclude)
    doc = {key: value for key, value in document.items() if key not in excluded}
    account = Account(
        account_id=doc["_id"],
        username=doc["username"],
        email=doc["email"],
        firstname=doc.get("firstname") or "",
        lastname=doc.get("lastname") or "",
        company=doc.get("company"),
        password_hash=doc.get("password"),
        active=bool(doc.get("active", False)),
        is_admin=bool(doc.get("is_admin", False)),
        last_login=_parse_dt(doc.get("last_login")),
        tokens=[
            TokenRecord(
                token=item["token"],
                issue_date=_parse_dt(item["issue_date"]),
                expiry=_parse_dt(item["expiry"]),
                used=bool(item.get("used", False)),
            )
            for item in doc.get("tokens") or []
        ],
        user_settings=doc.get("user_settings") or {},
    )
    registered = _parse_dt(doc.get("registration_date"))
    if registered is not None:
        account.registration_date = registered
    return account


class PostgresAccountRepository:
    """Postgres-backed account persistence using one JSONB document per account.

    Equality filters are evaluated with JSONB containment. Writes replace the
    whole document, so concurrent writers to one account are last-write-wins.
    """

    def __init__(self, pool: ConnectionPool) -> None:
        """Store the connection pool used for all database interactions."""
        self._pool = pool

    def ensure_schema(self) -> None:
        """Create the accounts table and its indexes when missing."""
        with self._pool.connection() as conn:
            with conn.cursor() as cur:
                for statement in _SCHEMA_SQL:
                    cur.execute(statement)
            conn.commit()

    def find_by_id(self, account_id: str) -> Account | None:
        """Fetch an account by primary key or return ``None``."""
        row = self._fetch_one(
            "SELECT document FROM accounts WHERE account_id = %s",
            (account_id,),
        )
        return from_document(row[0]) if row else None

    def find_one(self, filter: dict[str, Any]) -> Account | None:
        row = self._fetch_one(
            "SELECT document FROM accounts WHERE document @> %s LIMIT 1",
            (Jsonb(filter),),
        )
        return from_document(row[0]) if row else None

    def find(
        self,
        filter: dict[str, Any],
        *,
        sort: str | None = None,
        exclude: Iterable[str] = (),
        limit: int | None = None,
        skip: int = 0,
    ) -> list[Account]:
        """Return matching accounts.

        ``sort`` names a top-level document key, optionally prefixed with
        ``-`` for descending order.
        """
        query = "SELECT document FROM accounts WHERE document @> %s"
        params: list[Any] = [Jsonb(filter)]
        if sort:
            direction = "DESC" if sort.startswith("-") else "ASC"
            key = sort.lstrip("+-")
            if key not in SORTABLE_FIELDS:
                raise ValueError(f"unsupported sort field: {key}")
            query += f" ORDER BY document->>'{key}' {direction}, account_id"
        if limit is not None:
            query += " LIMIT %s"
            params.append(limit)
        if skip:
            query += " OFFSET %s"
            params.append(skip)

        excluded = tuple(exclude)
        rows = self._fetch_all(query, params)
        return [from_document(row[0], excluded) for row in rows]

    def count_documents(self, filter: dict[str, Any]) -> int:
        row = self._fetch_one(
            "SELECT COUNT(*) FROM accounts WHERE document @> %s",
            (Jsonb(filter),),
        )
        return int(row[0]) if row else 0

    def save(self, account: Account) -> Account:
        """Insert or replace the account document."""
        try:
            with self._pool.connection() as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        """
                        INSERT INTO accounts (account_id, document, updated_at)
                        VALUES (%s, %s, NOW())
                        ON CONFLICT (account_id)
                        DO UPDATE SET document = EXCLUDED.document, updated_at = NOW()
                        """,
                        (account.account_id, Jsonb(to_document(account))),
                    )
                conn.commit()
        except pg_errors.UniqueViolation as exc:
            raise DuplicateAccount(
                "A user with that username already exists", error=type(exc).__name__
            ) from exc
        except psycopg.Error as exc:
            logger.error("failed to save account %s: %s", account.account_id, exc)
            raise PersistenceError("Could not save the user details", error=str(exc)) from exc
        return account

    def delete_one(self, filter: dict[str, Any]) -> int:
        """Delete the first matching document and return the number removed."""
        try:
            with self._pool.connection() as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        """
                        DELETE FROM accounts
                        WHERE account_id = (
                            SELECT account_id FROM accounts WHERE document @> %s LIMIT 1
                        )
                        """,
                        (Jsonb(filter),),
                    )
                    deleted = cur.rowcount
                conn.commit()
        except psycopg.Error as exc:
            raise PersistenceError("Could not delete the user", error=str(exc)) from exc
        return deleted

    def _fetch_one(self, query: str, params: Sequence[Any]) -> tuple | None:
        try:
            with self._pool.connection() as conn:
                with conn.cursor(row_factory=tuple_row) as cur:
                    cur.execute(query, params)
                    return cur.fetchone()
        except psycopg.Error as exc:
            raise PersistenceError("Could not read from the document store", error=str(exc)) from exc

    def _fetch_all(self, query: str, params: Sequence[Any]) -> list[tuple]:
        try:
            with self._pool.connection() as conn:
                with conn.cursor(row_factory=tuple_row) as cur:
                    cur.execute(query, params)
                    return cur.fetchall()
        except psycopg.Error as exc:
            raise PersistenceError("Could not read from the document store", error=str(exc)) from exc
