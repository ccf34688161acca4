"""Conversation engine for the chat widget.

Architecture:
  Each inbound message runs through a small LangGraph ``StateGraph``:

    1. **chatbot**       : one Claude call with the tenant's grounding
                            instruction and the trailing message window.
                            Failures and empty answers turn into the
                            tenant's fallback text; nothing is raised.
    2. **booking_offer** : appends the one-time booking invitation and
                            attaches proposed slots.

  Routing:
    chatbot → (eligible and not yet offered?) → booking_offer → END
            → (otherwise)                      → END

  Session bookkeeping (profile merge, turn counting, history) happens in
  ``ConversationEngine.handle_turn`` around the graph; the caller holds
  the session's lock for the whole turn.
"""

from __future__ import annotations

import base64
import binascii
import logging
import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from langchain_anthropic import ChatAnthropic
from langchain_core.messages import AIMessage, AnyMessage, HumanMessage, SystemMessage
from langgraph.graph import END, StateGraph
from typing_extensions import TypedDict

from mta_chat.config import (
    ANTHROPIC_API_KEY,
    LLM_MAX_TOKENS,
    LLM_TIMEOUT_SECONDS,
    MAX_HISTORY_MESSAGES,
    MODEL_NAME,
)
from mta_chat.prompts import (
    BOOKING_INVITATION,
    GENERIC_APOLOGY,
    TenantConfig,
    get_system_prompt,
)
from mta_chat.services.metrics import metrics
from mta_chat.services.slots import DEFAULT_SLOT_COUNT, BookingSlot, SlotService
from mta_chat.sessions import ChatMessage, OfferState, Session

logger = logging.getLogger(__name__)

IMAGE_MIME_TYPES = frozenset({"image/jpeg", "image/png", "image/gif", "image/webp"})
TEXT_MIME_TYPES = frozenset({"application/json", "application/xml", "application/csv"})
MAX_INLINE_TEXT_CHARS = 20_000


# ── Turn inputs / outputs ────────────────────────────────────────────


@dataclass(frozen=True)
class Attachment:
    """A file the visitor dropped into the widget, base64-encoded."""

    name: str
    mime_type: str
    data: str

    @property
    def is_image(self) -> bool:
        return self.mime_type in IMAGE_MIME_TYPES

    @property
    def is_text(self) -> bool:
        return self.mime_type.startswith("text/") or self.mime_type in TEXT_MIME_TYPES


@dataclass
class TurnResult:
    reply: str
    booking_slots: list[BookingSlot] = field(default_factory=list)


class TurnState(TypedDict):
    """State flowing through the turn graph.

    ``session`` is the live, locked session object; nodes mutate it in
    place.  ``reply`` and ``booking_slots`` are the turn's output.
    """

    session: Session
    tenant: TenantConfig
    attachments: list[Attachment]
    reply: str
    booking_slots: list[BookingSlot]


# ── LLM ──────────────────────────────────────────────────────────────


def build_llm() -> ChatAnthropic:
    """Build the completion model.  No automatic retries: the visitor's next
    message is the retry."""
    return ChatAnthropic(
        model=MODEL_NAME,
        api_key=ANTHROPIC_API_KEY,
        temperature=0.3,
        max_tokens=LLM_MAX_TOKENS,
        timeout=LLM_TIMEOUT_SECONDS,
        max_retries=0,
    )


def _attachment_blocks(attachments: Sequence[Attachment]) -> list[dict[str, Any]]:
    """Turn attachments into LangChain content blocks for a vision model."""
    blocks: list[dict[str, Any]] = []
    for att in attachments:
        if att.is_image:
            blocks.append({
                "type": "image_url",
                "image_url": {"url": f"data:{att.mime_type};base64,{att.data}"},
            })
            continue
        if att.is_text:
            try:
                text = base64.b64decode(att.data).decode("utf-8", errors="replace")
            except (binascii.Error, ValueError):
                logger.warning("Attachment %s is not valid base64; skipping", att.name)
                continue
            blocks.append({
                "type": "text",
                "text": f"Contents of {att.name}:\n{text[:MAX_INLINE_TEXT_CHARS]}",
            })
            continue
        blocks.append({
            "type": "text",
            "text": f"(The visitor attached {att.name} ({att.mime_type}), which cannot be read.)",
        })
    return blocks


def _to_langchain(
    history: Sequence[ChatMessage],
    attachments: Sequence[Attachment],
) -> list[AnyMessage]:
    """Convert the session window into LangChain messages.

    The window must open with a user turn, so leading assistant messages
    are dropped.  Attachments ride along with the final user message.
    """
    window = list(history)
    while window and window[0].role != "user":
        window.pop(0)

    messages: list[AnyMessage] = [
        HumanMessage(content=m.content) if m.role == "user" else AIMessage(content=m.content)
        for m in window
    ]
    if attachments and messages and isinstance(messages[-1], HumanMessage):
        text = messages[-1].content
        messages[-1] = HumanMessage(
            content=[{"type": "text", "text": text}, *_attachment_blocks(attachments)],
        )
    return messages


def _extract_text(response: Any) -> str:
    content = getattr(response, "content", response)
    if isinstance(content, str):
        return content.strip()
    if isinstance(content, list):
        parts = [
            block.get("text", "") if isinstance(block, dict) else str(block)
            for block in content
        ]
        return "".join(parts).strip()
    return ""


# ── Nodes ────────────────────────────────────────────────────────────


def _make_chatbot_node(llm, max_history: int):
    """Create the node that asks the model for a reply."""

    def chatbot_node(state: TurnState) -> dict:
        session = state["session"]
        tenant = state["tenant"]
        fallback = tenant.fallback_text or GENERIC_APOLOGY

        system = SystemMessage(content=get_system_prompt(tenant))
        history = _to_langchain(
            session.recent_messages(max_history), state.get("attachments") or [],
        )
        t0 = time.perf_counter()
        try:
            response = llm.invoke([system, *history])
        except Exception as exc:
            elapsed = (time.perf_counter() - t0) * 1000
            metrics.record_failure(
                "anthropic", "chat_completion",
                error_type=type(exc).__name__, latency_ms=elapsed,
            )
            metrics.record_event("FallbackReply")
            logger.warning("Completion failed for session %s: %s", session.id, exc)
            return {"reply": fallback}

        elapsed = (time.perf_counter() - t0) * 1000
        metrics.record_success("anthropic", "chat_completion", latency_ms=elapsed)
        reply = _extract_text(response)
        if not reply:
            metrics.record_event("FallbackReply")
            logger.warning("Completion for session %s returned no text", session.id)
            return {"reply": fallback}
        return {"reply": reply}

    return chatbot_node


def _make_booking_offer_node(slot_service: SlotService, slot_count: int):
    """Create the node that issues the one-time booking invitation."""

    def booking_offer_node(state: TurnState) -> dict:
        session = state["session"]
        # Slots first: if fetching raises, the session stays eligible.
        slots = slot_service.get_slots(slot_count)
        session.mark_booking_offered()
        metrics.record_event("BookingOffered")
        logger.info(
            "Offered booking to session %s with %d slot(s)", session.id, len(slots),
        )
        return {
            "reply": f"{state['reply']}\n\n{BOOKING_INVITATION}",
            "booking_slots": slots,
        }

    return booking_offer_node


def should_offer_booking(state: TurnState) -> str:
    """Route to booking_offer exactly once, when the session becomes eligible."""
    if state["session"].offer_state is OfferState.ELIGIBLE_NOT_OFFERED:
        return "booking_offer"
    return END


# ── Engine ───────────────────────────────────────────────────────────


class ConversationEngine:
    """Runs one visitor turn against a session the caller has checked out."""

    def __init__(
        self,
        llm,
        slot_service: SlotService,
        *,
        max_history: int = MAX_HISTORY_MESSAGES,
        slot_count: int = DEFAULT_SLOT_COUNT,
    ) -> None:
        graph = StateGraph(TurnState)
        graph.add_node("chatbot", _make_chatbot_node(llm, max_history))
        graph.add_node("booking_offer", _make_booking_offer_node(slot_service, slot_count))
        graph.set_entry_point("chatbot")
        graph.add_conditional_edges(
            "chatbot",
            should_offer_booking,
            {"booking_offer": "booking_offer", END: END},
        )
        graph.add_edge("booking_offer", END)
        self._graph = graph.compile()

    def handle_turn(
        self,
        session: Session,
        text: str,
        *,
        profile_hints: dict[str, Any] | None = None,
        tenant: TenantConfig | None = None,
        attachments: Sequence[Attachment] = (),
    ) -> TurnResult:
        """Record the visitor's message, get a reply and maybe offer a booking.

        Never raises for model or scheduler failures.
        """
        if profile_hints:
            session.profile.merge(**profile_hints)
        if tenant is not None:
            session.tenant = tenant
        tenant = session.tenant or TenantConfig()

        content = text
        if attachments:
            names = ", ".join(att.name for att in attachments)
            content = f"{text}\n[Attached: {names}]" if text else f"[Attached: {names}]"
        session.add_user_message(content)

        result = self._graph.invoke({
            "session": session,
            "tenant": tenant,
            "attachments": list(attachments),
            "reply": "",
            "booking_slots": [],
        })

        reply = result["reply"]
        session.add_assistant_message(reply)
        return TurnResult(reply=reply, booking_slots=list(result.get("booking_slots") or []))
