"""FastAPI route definitions for the chat widget backend."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from fastapi import APIRouter, Header, HTTPException, Request
from fastapi.responses import JSONResponse

from mta_chat.api.schemas import (
    BookingSlotOut,
    BookRequest,
    BookResponse,
    ChatRequest,
    ChatResponse,
    HealthResponse,
)
from mta_chat.api.security import check_admin_token
from mta_chat.engine import ConversationEngine, TurnResult
from mta_chat.errors import ValidationError
from mta_chat.prompts import GENERIC_APOLOGY
from mta_chat.sessions import Session

logger = logging.getLogger(__name__)

router = APIRouter()


def _get_state(request: Request, name: str) -> Any:
    """Retrieve a shared resource built by the lifespan (see ``server.py``)."""
    resource = getattr(request.app.state, name, None)
    if resource is None:
        raise HTTPException(
            status_code=503,
            detail="The service is still starting up. Please try again in a moment.",
        )
    return resource


def _run_turn(
    engine: ConversationEngine,
    session: Session,
    session_id: str,
    request: ChatRequest,
    request_id: str,
) -> TurnResult:
    """Run one turn against a session the caller has checked out."""
    try:
        return engine.handle_turn(
            session,
            request.message,
            profile_hints=request.profile_hints(),
            tenant=request.tenant_config(),
            attachments=[a.to_attachment() for a in request.attachments],
        )
    except Exception:
        # Log the traceback server-side; the visitor still gets a reply.
        logger.exception("[%s] Error handling turn for session %s", request_id, session_id)
        tenant = session.tenant
        return TurnResult(reply=(tenant and tenant.fallback_text) or GENERIC_APOLOGY)


# ── Endpoints ────────────────────────────────────────────────────────


@router.get("/health", response_model=HealthResponse)
async def health_check():
    """Liveness probe."""
    return HealthResponse()


@router.post("/chat", response_model=ChatResponse, response_model_exclude_none=True)
async def chat(
    request: ChatRequest,
    http_request: Request,
    x_license_key: str | None = Header(None),
):
    """Send a visitor message and get the assistant's reply.

    Omit ``sessionId`` (or send an expired one) to start a new session;
    the response always carries the id to use next time.  Model and
    scheduler failures never surface as errors here.

    The turn blocks on the model API, so it runs in a worker thread via
    ``asyncio.to_thread`` to keep the event loop free.  The session lock
    is awaited first, on the loop, so only one thread per session is busy.
    """
    license_gate = getattr(http_request.app.state, "license_gate", None)
    if license_gate is not None:
        license_gate.check(request.license_key or x_license_key)

    store = _get_state(http_request, "session_store")
    engine = _get_state(http_request, "engine")
    request_id = getattr(http_request.state, "request_id", "?")

    async with store.acheckout(request.session_id) as (session_id, session):
        result = await asyncio.to_thread(
            _run_turn, engine, session, session_id, request, request_id,
        )

    slots = None
    if result.booking_slots:
        slots = [
            BookingSlotOut(start=slot.start, scheduling_url=slot.scheduling_url)
            for slot in result.booking_slots
        ]
    return ChatResponse(reply=result.reply, session_id=session_id, booking_slots=slots)


@router.post("/book", response_model=BookResponse)
async def book(request: BookRequest, http_request: Request):
    """Forward a booking request to the team and record the consent choice."""
    intake = _get_state(http_request, "booking_intake")
    try:
        message = await asyncio.to_thread(
            intake.submit,
            request.user_name,
            request.user_email,
            request.start_time,
            request.marketing_consent,
        )
    except ValidationError as exc:
        return JSONResponse(status_code=400, content={"success": False, "message": str(exc)})
    return BookResponse(success=True, message=message)


@router.get("/consents")
async def list_consents(
    http_request: Request,
    token: str | None = None,
    x_admin_token: str | None = Header(None),
) -> list[dict[str, Any]]:
    """Admin export of the consent log, most recent first."""
    check_admin_token(getattr(http_request.app.state, "admin_token", None), x_admin_token or token)
    consent_log = _get_state(http_request, "consent_log")
    return await asyncio.to_thread(consent_log.read_all)
