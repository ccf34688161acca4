"""Booking intake: validate a requested appointment, log consent, notify.

A booking here is a *request*: the operator receives a mail and confirms
with the visitor personally.  Mail delivery is best-effort; the visitor
is told someone will be in touch even when the relay is down, and the
failure is logged for the operator to chase.
"""

from __future__ import annotations

import logging
import re

from mta_chat.errors import UpstreamUnavailable, ValidationError
from mta_chat.services.consent_log import ConsentLog, ConsentRecord
from mta_chat.services.mailer import SmtpNotifier
from mta_chat.services.metrics import metrics

logger = logging.getLogger(__name__)

NOTIFICATION_SUBJECT = "New Discovery Call Booking"

# RFC 5322-ish pattern; covers the vast majority of real-world emails
# without requiring an external dependency.
_EMAIL_RE = re.compile(
    r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+"
    r"@[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?"
    r"(?:\.[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?)+$"
)


def validate_email(email: str | None) -> str | None:
    """Return an error message if *email* looks invalid, else ``None``."""
    if not email or not email.strip():
        return "No email address was provided."
    email = email.strip()
    if not _EMAIL_RE.match(email):
        return f'"{email}" does not look like a valid email address.'
    return None


def _notification_body(
    name: str, email: str, start_time: str, marketing_consent: bool,
) -> str:
    return (
        "New Discovery Call Booking Request:\n\n"
        f"Name: {name}\n"
        f"Email: {email}\n"
        f"Marketing Consent: {'Agreed' if marketing_consent else 'Declined'}\n"
        f"Requested Time: {start_time}\n"
    )


class BookingIntake:
    def __init__(self, notifier: SmtpNotifier, consent_log: ConsentLog) -> None:
        self._notifier = notifier
        self._consent_log = consent_log

    def submit(
        self,
        name: str | None,
        email: str | None,
        start_time: str | None,
        marketing_consent: bool | None = None,
    ) -> str:
        """Accept a booking request and return the confirmation text.

        Raises:
            ValidationError: name, email or start time is missing, or the
                email is malformed.  Nothing is logged or mailed then.
        """
        name = (name or "").strip()
        email = (email or "").strip()
        start_time = (start_time or "").strip()
        if not name or not email or not start_time:
            raise ValidationError("Missing booking info")
        email_error = validate_email(email)
        if email_error:
            raise ValidationError(email_error)

        consent = marketing_consent is True
        try:
            self._consent_log.append(
                ConsentRecord.create(name, email, consent, start_time),
            )
        except OSError:
            logger.exception("Could not write consent record for %s", email)

        try:
            self._notifier.send(
                NOTIFICATION_SUBJECT,
                _notification_body(name, email, start_time, consent),
            )
        except UpstreamUnavailable as exc:
            metrics.record_event("BookingNotificationFailed")
            logger.error("Booking notification for %s not delivered: %s", email, exc)
        else:
            metrics.record_event("BookingSubmitted")

        return (
            f"Thanks {name}! Someone from our team will contact you shortly "
            "to confirm the appointment."
        )
