"""Error taxonomy shared by the chat, booking and admin surfaces."""

from __future__ import annotations


class ValidationError(Exception):
    """A booking request is missing required fields or carries bad values."""


class UpstreamUnavailable(Exception):
    """An external capability (LLM, mail relay, scheduler) failed.

    Always absorbed by the caller: the chat surface substitutes a fallback
    reply, slot lookups fall back to synthetic times and booking intake
    acknowledges the visitor regardless.
    """

    def __init__(self, service: str, message: str):
        self.service = service
        super().__init__(f"{service}: {message}")


class AuthorizationError(Exception):
    """A license key or admin token did not match."""

    def __init__(self, message: str, status_code: int = 403):
        self.status_code = status_code
        super().__init__(message)
