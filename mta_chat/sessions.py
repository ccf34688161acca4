"""Thread-safe in-memory session store.

Design decisions
────────────────
• **Plain dict** of id → entry; a short map lock only guards
  insert / lookup / removal of entries.
• **Per-entry locks**: a request holds its own session's lock for the whole
  turn (see ``SessionStore.checkout``), so different visitors never
  serialize against each other.  Async callers wait on the entry's
  ``asyncio.Lock`` (``SessionStore.acheckout``) so queued requests do not
  occupy worker threads.
• **Lazy expiry**: an idle session is noticed and replaced the next time
  its id is presented.  Ids that are never presented again stay in memory
  until process restart, which is acceptable for a single widget backend.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import threading
import time
import uuid
from collections.abc import AsyncIterator, Callable, Iterator
from contextlib import asynccontextmanager, contextmanager
from dataclasses import dataclass, field

from mta_chat.prompts import TenantConfig

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 60 * 60

# Turns a visitor must send before a booking may be offered.
BOOKING_OFFER_MIN_TURNS = 3


class OfferState(enum.Enum):
    """Where a session stands with respect to the one-time booking offer."""

    NOT_ELIGIBLE = "not_eligible"
    ELIGIBLE_NOT_OFFERED = "eligible_not_offered"
    OFFERED = "offered"


@dataclass
class ChatMessage:
    role: str  # "user" | "assistant"
    content: str


@dataclass
class Profile:
    """What the visitor has told us about themselves.

    ``marketing_consent`` is tri-state: ``None`` means we were never told.
    """

    name: str | None = None
    email: str | None = None
    phone: str | None = None
    marketing_consent: bool | None = None

    def merge(
        self,
        *,
        name: str | None = None,
        email: str | None = None,
        phone: str | None = None,
        marketing_consent: bool | None = None,
    ) -> None:
        """Apply hints from the latest request; the last non-empty value wins."""
        if name and name.strip():
            self.name = name.strip()
        if email and email.strip():
            self.email = email.strip()
        if phone and phone.strip():
            self.phone = phone.strip()
        if marketing_consent is not None:
            self.marketing_consent = marketing_consent


@dataclass
class Session:
    id: str
    created_at: float
    last_active_at: float
    messages: list[ChatMessage] = field(default_factory=list)
    profile: Profile = field(default_factory=Profile)
    turn_count: int = 0
    booking_offered: bool = False
    tenant: TenantConfig | None = None

    def add_user_message(self, content: str) -> None:
        self.messages.append(ChatMessage(role="user", content=content))
        self.turn_count += 1

    def add_assistant_message(self, content: str) -> None:
        self.messages.append(ChatMessage(role="assistant", content=content))

    def recent_messages(self, limit: int) -> list[ChatMessage]:
        """Return the trailing *limit* messages (all of them when ``limit <= 0``)."""
        if limit <= 0:
            return list(self.messages)
        return self.messages[-limit:]

    @property
    def offer_state(self) -> OfferState:
        if self.booking_offered:
            return OfferState.OFFERED
        if (
            self.turn_count >= BOOKING_OFFER_MIN_TURNS
            and self.profile.name
            and self.profile.email
        ):
            return OfferState.ELIGIBLE_NOT_OFFERED
        return OfferState.NOT_ELIGIBLE

    def mark_booking_offered(self) -> None:
        """Move to ``OFFERED``.  Raises if the offer already went out."""
        if self.booking_offered:
            raise RuntimeError(f"Booking already offered for session {self.id}")
        self.booking_offered = True


class _Entry:
    __slots__ = ("session", "lock", "async_lock")

    def __init__(self, session: Session) -> None:
        self.session = session
        self.lock = threading.Lock()
        self.async_lock = asyncio.Lock()


class SessionStore:
    """Owns every live ``Session``, keyed by an opaque generated id."""

    def __init__(
        self,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._timeout = timeout_seconds
        self._clock = clock
        self._entries: dict[str, _Entry] = {}
        self._map_lock = threading.Lock()

    # ── Internal helpers ─────────────────────────────────────────────

    def _is_expired(self, session: Session, now: float) -> bool:
        return now - session.last_active_at > self._timeout

    def _new_entry(self, now: float) -> _Entry:
        session_id = uuid.uuid4().hex
        while session_id in self._entries:
            session_id = uuid.uuid4().hex
        entry = _Entry(Session(id=session_id, created_at=now, last_active_at=now))
        self._entries[session_id] = entry
        return entry

    def _touch(self, session_id: str | None) -> _Entry:
        now = self._clock()
        with self._map_lock:
            entry = self._entries.get(session_id) if session_id else None
            if entry is not None and self._is_expired(entry.session, now):
                logger.info("Session %s expired; starting a new one", session_id)
                del self._entries[session_id]
                entry = None
            if entry is None:
                entry = self._new_entry(now)
                logger.debug("Created session %s", entry.session.id)
            entry.session.last_active_at = now
            return entry

    # ── Public API ───────────────────────────────────────────────────

    def resolve(self, session_id: str | None = None) -> tuple[str, Session]:
        """Return ``(id, session)`` for *session_id*, creating a fresh session
        when the id is absent, unknown or expired.

        Always stamps ``last_active_at``.  The returned id differs from
        *session_id* whenever a new session was allocated.
        """
        entry = self._touch(session_id)
        return entry.session.id, entry.session

    @contextmanager
    def checkout(self, session_id: str | None = None) -> Iterator[tuple[str, Session]]:
        """Resolve *session_id* and hold that session's lock until exit.

        Requests for the same id run one after another; requests for
        different ids proceed in parallel.
        """
        entry = self._touch(session_id)
        with entry.lock:
            yield entry.session.id, entry.session

    @asynccontextmanager
    async def acheckout(
        self, session_id: str | None = None,
    ) -> AsyncIterator[tuple[str, Session]]:
        """Event-loop counterpart of :meth:`checkout`.

        Same-id callers queue on the entry's ``asyncio.Lock`` rather than
        inside worker threads, so a burst on one session never ties up the
        default executor.  The thread lock is still taken, which keeps
        ``checkout`` and ``acheckout`` mutually exclusive.
        """
        entry = self._touch(session_id)
        async with entry.async_lock:
            if not entry.lock.acquire(blocking=False):
                await asyncio.to_thread(entry.lock.acquire)
            try:
                yield entry.session.id, entry.session
            finally:
                entry.lock.release()

    def get(self, session_id: str) -> Session | None:
        """Peek at a session without touching it (``None`` if unknown)."""
        with self._map_lock:
            entry = self._entries.get(session_id)
            return entry.session if entry else None

    def __len__(self) -> int:
        return len(self._entries)
