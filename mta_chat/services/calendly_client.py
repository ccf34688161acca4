"""Read-only HTTP client for the Calendly API v2.

Only the availability side of the API is used: the widget proposes times
and a human confirms the appointment afterwards, so nothing is ever
written to Calendly.

Calendly API docs: https://developer.calendly.com/api-docs/
All requests require a Personal Access Token passed as a Bearer token.
"""

from __future__ import annotations

import logging
import time
from typing import Any

import httpx

from mta_chat.config import (
    CALENDLY_BASE_URL,
    CALENDLY_MAX_RETRIES,
    CALENDLY_TIMEOUT_SECONDS,
)

logger = logging.getLogger(__name__)

INITIAL_BACKOFF_SECONDS = 1.0


class CalendlyAPIError(Exception):
    """Raised when a Calendly API call fails after all attempts."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class CalendlyClient:
    """Thin wrapper around the Calendly REST API v2.

    ``max_retries`` is the total number of attempts per request.  The
    default of one attempt keeps a slow scheduler from stalling a chat
    turn; the visitor's next message is the retry.
    """

    def __init__(
        self,
        token: str,
        base_url: str | None = None,
        *,
        timeout: float = CALENDLY_TIMEOUT_SECONDS,
        max_retries: int = CALENDLY_MAX_RETRIES,
    ):
        self._base_url = base_url or CALENDLY_BASE_URL
        self._max_retries = max(1, max_retries)
        self._client = httpx.Client(
            base_url=self._base_url,
            headers={
                "Authorization": f"Bearer {token}",
                "Content-Type": "application/json",
            },
            timeout=timeout,
        )
        # Never changes for a given token, fetched lazily once
        self._user_uri: str | None = None

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Execute an HTTP request, retrying timeouts and 5xx with backoff."""
        last_error: Exception | None = None
        for attempt in range(1, self._max_retries + 1):
            try:
                response = self._client.request(method, path, params=params)
                if response.status_code >= 400:
                    kind = "Server" if response.status_code >= 500 else "Client"
                    raise CalendlyAPIError(
                        f"{kind} error {response.status_code}: {response.text}",
                        status_code=response.status_code,
                    )
                try:
                    return response.json()
                except ValueError as exc:
                    raise CalendlyAPIError(f"Malformed JSON payload: {exc}") from exc

            except (httpx.TimeoutException, httpx.ConnectError) as exc:
                last_error = exc
                logger.warning(
                    "Calendly API attempt %d/%d failed (%s)",
                    attempt, self._max_retries, type(exc).__name__,
                )
            except CalendlyAPIError as exc:
                if exc.status_code and exc.status_code >= 500:
                    last_error = exc
                    logger.warning(
                        "Calendly API server error on attempt %d/%d",
                        attempt, self._max_retries,
                    )
                else:
                    raise  # 4xx and malformed payloads are not retried

            if attempt < self._max_retries:
                time.sleep(INITIAL_BACKOFF_SECONDS * (2 ** (attempt - 1)))

        raise CalendlyAPIError(
            f"Calendly API request failed after {self._max_retries} attempt(s): {last_error}"
        )

    def get_current_user_uri(self) -> str:
        """Return the URI of the authenticated Calendly user (cached)."""
        if self._user_uri is None:
            data = self._request("GET", "/users/me")
            self._user_uri = data["resource"]["uri"]
        return self._user_uri

    def get_event_types(self) -> list[dict[str, Any]]:
        """List the active event types of the current user."""
        user_uri = self.get_current_user_uri()
        data = self._request(
            "GET", "/event_types", params={"user": user_uri, "active": "true"},
        )
        return data.get("collection", [])

    def get_available_times(
        self,
        event_type_uri: str,
        start_time: str,
        end_time: str,
    ) -> list[dict[str, Any]]:
        """Get available time slots for an event type.

        Calendly caps the window at 7 days and requires ``start_time`` to be
        in the future.

        Args:
            event_type_uri: The URI of the event type.
            start_time: ISO 8601 start datetime (e.g. "2026-02-15T00:00:00Z").
            end_time: ISO 8601 end datetime.

        Returns:
            Slot dicts with ``start_time``, ``status`` and ``scheduling_url``.
        """
        data = self._request(
            "GET",
            "/event_type_available_times",
            params={
                "event_type": event_type_uri,
                "start_time": start_time,
                "end_time": end_time,
            },
        )
        return data.get("collection", [])

    def close(self) -> None:
        self._client.close()
