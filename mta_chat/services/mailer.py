"""Operator notifications over an SMTP relay."""

from __future__ import annotations

import logging
import smtplib
from email.message import EmailMessage

from mta_chat.errors import UpstreamUnavailable
from mta_chat.services.metrics import metrics

logger = logging.getLogger(__name__)


class SmtpNotifier:
    """Sends plain-text mails to a single operator address."""

    def __init__(
        self,
        host: str | None,
        port: int = 465,
        *,
        user: str | None = None,
        password: str | None = None,
        sender: str | None = None,
        recipient: str | None = None,
        use_ssl: bool = True,
        timeout: float = 15.0,
        sender_name: str = "MadeToAutomate Bot",
    ) -> None:
        self._host = host
        self._port = port
        self._user = user
        self._password = password
        self._sender = sender or user
        self._recipient = recipient
        self._use_ssl = use_ssl
        self._timeout = timeout
        self._sender_name = sender_name

    @property
    def configured(self) -> bool:
        return bool(self._host and self._sender and self._recipient)

    def _build_message(self, subject: str, body: str) -> EmailMessage:
        message = EmailMessage()
        message["From"] = f'"{self._sender_name}" <{self._sender}>'
        message["To"] = self._recipient
        message["Subject"] = subject
        message.set_content(body)
        return message

    def _connect(self) -> smtplib.SMTP:
        if self._use_ssl:
            return smtplib.SMTP_SSL(self._host, self._port, timeout=self._timeout)
        server = smtplib.SMTP(self._host, self._port, timeout=self._timeout)
        server.starttls()
        return server

    def send(self, subject: str, body: str) -> None:
        """Send one mail to the operator.

        Raises:
            UpstreamUnavailable: the relay is not configured or refused the mail.
        """
        if not self.configured:
            raise UpstreamUnavailable("smtp", "mail relay is not configured")

        message = self._build_message(subject, body)
        try:
            with metrics.track("smtp", "send_message"), self._connect() as server:
                if self._user and self._password:
                    server.login(self._user, self._password)
                server.send_message(message)
        except (smtplib.SMTPException, OSError) as exc:
            raise UpstreamUnavailable("smtp", f"{type(exc).__name__}: {exc}") from exc

        logger.info("Mail %r sent to %s", subject, self._recipient)
