"""Booking slot providers.

Providers are tried in order by ``SlotService``; each returns a list of
slots or ``None`` when it cannot help right now.  ``SyntheticSlotProvider``
never fails and always sits at the end of the chain, so a booking offer
always carries proposed times.
"""

from __future__ import annotations

import logging
import random
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Protocol
from zoneinfo import ZoneInfo

import httpx

from mta_chat.services.calendly_client import CalendlyAPIError, CalendlyClient
from mta_chat.services.metrics import metrics

logger = logging.getLogger(__name__)

DEFAULT_SLOT_COUNT = 3
# Upper bound when slots are listed for the visitor to pick from.
MAX_SLOT_COUNT = 12
AVAILABILITY_WINDOW = timedelta(days=7)


@dataclass(frozen=True)
class BookingSlot:
    start: datetime
    scheduling_url: str | None = None


class SlotProvider(Protocol):
    name: str

    def fetch(self, limit: int) -> list[BookingSlot] | None: ...


class CalendlySlotProvider:
    """Real availability from the Calendly event type the tenant books into."""

    name = "calendly"

    def __init__(
        self,
        client: CalendlyClient | None,
        *,
        event_type_uri: str | None = None,
        display_tz: str = "Europe/Berlin",
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self._client = client
        self._event_type_uri = event_type_uri
        self._tz = ZoneInfo(display_tz)
        self._clock = clock

    def _resolve_event_type_uri(self) -> str | None:
        if self._event_type_uri is None:
            event_types = self._client.get_event_types()
            if not event_types:
                logger.warning("Calendly account has no active event types")
                return None
            self._event_type_uri = event_types[0]["uri"]
            logger.info("Using Calendly event type %s", self._event_type_uri)
        return self._event_type_uri

    def _query(self, limit: int) -> list[BookingSlot]:
        event_type_uri = self._resolve_event_type_uri()
        if event_type_uri is None:
            return []

        # Calendly rejects a start_time in the past
        start = self._clock().astimezone(UTC) + timedelta(minutes=1)
        end = start + AVAILABILITY_WINDOW - timedelta(minutes=2)
        raw = self._client.get_available_times(
            event_type_uri,
            start.strftime("%Y-%m-%dT%H:%M:%SZ"),
            end.strftime("%Y-%m-%dT%H:%M:%SZ"),
        )

        slots = [
            BookingSlot(
                start=datetime.fromisoformat(item["start_time"].replace("Z", "+00:00"))
                .astimezone(self._tz),
                scheduling_url=item.get("scheduling_url"),
            )
            for item in raw
            if item.get("status", "available") == "available"
        ]
        slots.sort(key=lambda slot: slot.start)
        return slots[:limit]

    def fetch(self, limit: int) -> list[BookingSlot] | None:
        if self._client is None:
            return None
        try:
            with metrics.track("calendly", "available_times"):
                slots = self._query(limit)
        except (CalendlyAPIError, httpx.HTTPError) as exc:
            logger.warning("Calendly availability unavailable: %s", exc)
            return None
        except (KeyError, TypeError, ValueError, AttributeError) as exc:
            logger.warning("Calendly returned a malformed payload: %r", exc)
            return None
        return slots or None


class SyntheticSlotProvider:
    """Plausible weekday times for when no scheduler can be reached.

    Starting tomorrow in the reference timezone, one slot per weekday at a
    random half-hour within ``[hour_start, hour_end)``.
    """

    name = "synthetic"

    def __init__(
        self,
        *,
        tz: str = "Europe/Berlin",
        hour_start: int = 10,
        hour_end: int = 16,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
        rng: random.Random | None = None,
    ) -> None:
        if not 0 <= hour_start < hour_end <= 24:
            raise ValueError(f"Invalid business hours: {hour_start}-{hour_end}")
        self._tz = ZoneInfo(tz)
        self._hour_start = hour_start
        self._hour_end = hour_end
        self._clock = clock
        self._rng = rng or random.Random()

    def fetch(self, limit: int) -> list[BookingSlot]:
        today = self._clock().astimezone(self._tz).date()
        slots: list[BookingSlot] = []
        day = today
        while len(slots) < limit:
            day += timedelta(days=1)
            if day.weekday() >= 5:  # Saturday, Sunday
                continue
            hour = self._rng.randrange(self._hour_start, self._hour_end)
            minute = self._rng.choice((0, 30))
            start = datetime(day.year, day.month, day.day, hour, minute, tzinfo=self._tz)
            slots.append(BookingSlot(start=start))
        return slots


class SlotService:
    """Ranked chain of slot providers; the last one must always succeed."""

    def __init__(self, providers: Sequence[SlotProvider]) -> None:
        if not providers:
            raise ValueError("SlotService needs at least one provider")
        self._providers = list(providers)

    def get_slots(self, limit: int = DEFAULT_SLOT_COUNT) -> list[BookingSlot]:
        limit = max(1, min(limit, MAX_SLOT_COUNT))
        for provider in self._providers:
            slots = provider.fetch(limit)
            if slots:
                logger.debug("Got %d slot(s) from %s", len(slots), provider.name)
                return slots[:limit]
            logger.info("Slot provider %s unavailable; trying next", provider.name)
        return []
