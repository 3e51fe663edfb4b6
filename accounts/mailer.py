"""Outbound account notifications delivered over SMTP."""

from __future__ import annotations

import logging
import smtplib
from concurrent.futures import Future, ThreadPoolExecutor
from email.message import EmailMessage
from typing import Protocol

from .config import Settings
from .domain.account import Account

logger = logging.getLogger(__name__)


class Mailer(Protocol):
    """Notification hooks invoked by the account service; must not raise."""

    def send_activation_email(self, account: Account, bearer_token: str) -> None: ...

    def send_reset_email(self, account: Account, bearer_token: str) -> None: ...


class SmtpMailer:
    """Fire-and-forget SMTP mailer running deliveries on a small thread pool."""

    def __init__(self, settings: Settings, *, max_workers: int = 2) -> None:
        self._settings = settings
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="mailer")

    def send_activation_email(self, account: Account, bearer_token: str) -> None:
        link = f"https://{self._settings.public_domain}/activation/{bearer_token}"
        body = (
            f"Hi {account.firstname},\n\n"
            "in order to activate your account we need to check that your email is valid.\n"
            f"Open the link below to activate your account:\n\n{link}\n\n"
            "If you did not register, no further action is required on your part.\n"
        )
        self._dispatch(account.email, "Activate your account", body)

    def send_reset_email(self, account: Account, bearer_token: str) -> None:
        link = f"https://{self._settings.public_domain}/reset-pwd/{bearer_token}"
        body = (
            f"Hi {account.firstname},\n\n"
            "you received this email because you requested to reset your password.\n"
            f"Open the link below to choose a new one:\n\n{link}\n\n"
            "If you did not request it, please ignore this email.\n"
        )
        self._dispatch(account.email, "Password reset", body)

    def shutdown(self) -> None:
        self._executor.shutdown(wait=True)

    def _dispatch(self, to: str, subject: str, body: str) -> None:
        if self._settings.mail_disabled:
            logger.info("mail disabled, skipping %r to %s", subject, to)
            return
        message = EmailMessage()
        message["From"] = self._settings.mail_from
        message["To"] = to
        message["Subject"] = subject
        message.set_content(body)
        future = self._executor.submit(self._deliver, message)
        future.add_done_callback(self._log_failure)

    def _deliver(self, message: EmailMessage) -> None:
        with smtplib.SMTP(host=self._settings.smtp_host, port=self._settings.smtp_port) as conn:
            conn.send_message(message)

    @staticmethod
    def _log_failure(future: Future) -> None:
        exc = future.exception()
        if exc is not None:
            logger.warning("mail delivery failed: %s", exc)
