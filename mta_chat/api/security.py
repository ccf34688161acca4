"""Static shared-secret checks: widget license keys and the admin token."""

from __future__ import annotations

import hmac
import logging
from collections.abc import Iterable

from mta_chat.errors import AuthorizationError

logger = logging.getLogger(__name__)


def _same_secret(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


class LicenseGate:
    """Rejects ``/chat`` calls without a known license key when enforced."""

    def __init__(self, enabled: bool = False, keys: Iterable[str] = ()) -> None:
        self.enabled = enabled
        self._keys = frozenset(k for k in keys if k)
        if enabled and not self._keys:
            logger.warning("License enforcement is on but no LICENSE_KEYS are set")

    def check(self, key: str | None) -> None:
        """Raise ``AuthorizationError`` (402) unless *key* is acceptable."""
        if not self.enabled:
            return
        if not key or not any(_same_secret(key, known) for known in self._keys):
            raise AuthorizationError("A valid license key is required.", status_code=402)


def check_admin_token(expected: str | None, provided: str | None) -> None:
    """Raise ``AuthorizationError`` (403) unless *provided* matches *expected*.

    With no admin token configured the admin surface stays closed.
    """
    if not expected or not provided or not _same_secret(expected, provided):
        raise AuthorizationError("Forbidden", status_code=403)
