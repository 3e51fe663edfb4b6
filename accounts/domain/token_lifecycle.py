"""Issue, look up, rotate, and consume the security tokens held on an account."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable, Protocol

from .account import Account, TokenRecord, utcnow
from ..security.tokens import generate_security_token

logger = logging.getLogger(__name__)


class _Saver(Protocol):
    def save(self, account: Account) -> Account: ...


class TokenLifecycle:
    """Operations over the ordered token collection of a single account.

    At most one token is current (``not used and expiry > now``) once any of
    these operations completes. Writes are read-modify-write on the whole
    account document with no version check.
    """

    def __init__(
        self,
        repository: _Saver,
        *,
        secret: str,
        ttl: timedelta = timedelta(days=1),
        backdate: timedelta = timedelta(hours=1),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._repository = repository
        self._secret = secret
        self._ttl = ttl
        self._backdate = backdate
        self._clock = clock

    def _new_record(self, now: datetime) -> TokenRecord:
        return TokenRecord(
            token=generate_security_token(self._secret),
            issue_date=now,
            expiry=now + self._ttl,
        )

    def find_current(self, account: Account) -> TokenRecord | None:
        """Return the first current token without rotating."""
        now = self._clock()
        for record in account.tokens:
            if record.is_current(now):
                return record
        return None

    def current_token(self, account: Account) -> TokenRecord:
        """Return the current token, issuing a new one when none qualifies."""
        for _ in range(2):
            record = self.find_current(account)
            if record is not None:
                return record
            self.issue_token(account)
        raise RuntimeError("freshly issued security token is not current")

    def seed_token(self, account: Account) -> TokenRecord:
        """Attach the first token to an unsaved account."""
        record = self._new_record(self._clock())
        account.tokens = [record]
        return record

    def issue_token(self, account: Account) -> TokenRecord:
        """Invalidate every existing token, append a fresh one, and persist."""
        now = self._clock()
        for existing in account.tokens:
            existing.used = True
            existing.expiry = now - self._backdate
        record = self._new_record(now)
        account.tokens.append(record)
        self._repository.save(account)
        logger.info("security token rotated for account %s", account.account_id)
        return record

    def mark_used(self, account: Account, token_value: str) -> list[TokenRecord]:
        """Flag ``token_value`` as consumed; unknown values are ignored."""
        for record in account.tokens:
            if record.token == token_value:
                record.used = True
        return account.tokens
