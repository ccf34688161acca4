"""FastAPI server for the MadeToAutomate chat widget.

Run with:
    uv run uvicorn mta_chat.server:app --reload --host 0.0.0.0 --port 3000
"""

from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from mta_chat import config
from mta_chat.api.routes import router
from mta_chat.api.security import LicenseGate
from mta_chat.engine import ConversationEngine, build_llm
from mta_chat.errors import AuthorizationError
from mta_chat.services.booking import BookingIntake
from mta_chat.services.calendly_client import CalendlyClient
from mta_chat.services.consent_log import ConsentLog
from mta_chat.services.mailer import SmtpNotifier
from mta_chat.services.slots import CalendlySlotProvider, SlotService, SyntheticSlotProvider
from mta_chat.sessions import SessionStore

# ── Logging ──────────────────────────────────────────────────────────
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-8s %(name)s - %(message)s",
)
logger = logging.getLogger(__name__)


def build_calendly_client() -> CalendlyClient | None:
    """Calendly client when a token is configured; the caller closes it."""
    if not config.CALENDLY_API_TOKEN:
        logger.info("CALENDLY_API_TOKEN not set; booking offers use synthetic slots")
        return None
    return CalendlyClient(config.CALENDLY_API_TOKEN)


def build_slot_service(calendly: CalendlyClient | None) -> SlotService:
    """Calendly first when a client is given, synthetic times otherwise."""
    return SlotService([
        CalendlySlotProvider(
            calendly,
            event_type_uri=config.CALENDLY_EVENT_TYPE_URI,
            display_tz=config.SLOT_TIMEZONE,
        ),
        SyntheticSlotProvider(
            tz=config.SLOT_TIMEZONE,
            hour_start=config.BUSINESS_HOUR_START,
            hour_end=config.BUSINESS_HOUR_END,
        ),
    ])


def build_booking_intake(consent_log: ConsentLog) -> BookingIntake:
    notifier = SmtpNotifier(
        config.SMTP_HOST,
        config.SMTP_PORT,
        user=config.SMTP_USER,
        password=config.SMTP_PASSWORD,
        sender=config.MAIL_FROM,
        recipient=config.ADMIN_EMAIL,
        use_ssl=config.SMTP_USE_SSL,
        timeout=config.SMTP_TIMEOUT_SECONDS,
    )
    if not notifier.configured:
        logger.warning("SMTP relay not configured; booking mails will not be sent")
    return BookingIntake(notifier, consent_log)


# ── Lifespan: initialise / tear-down shared resources ────────────────
@asynccontextmanager
async def lifespan(application: FastAPI):
    """Build the session store, engine and booking intake once per process."""
    logger.info("Building chat engine…")
    consent_log = ConsentLog(config.CONSENTS_FILE)
    calendly = build_calendly_client()
    application.state.session_store = SessionStore(config.SESSION_TIMEOUT_SECONDS)
    application.state.engine = ConversationEngine(build_llm(), build_slot_service(calendly))
    application.state.consent_log = consent_log
    application.state.booking_intake = build_booking_intake(consent_log)
    application.state.license_gate = LicenseGate(config.LICENSE_ENFORCED, config.LICENSE_KEYS)
    application.state.admin_token = config.ADMIN_TOKEN
    logger.info("Chat engine ready.")
    yield
    # Sessions are in-memory only; nothing to persist on shutdown
    if calendly is not None:
        calendly.close()
    logger.info("Chat engine stopped.")


# ── FastAPI application ──────────────────────────────────────────────
app = FastAPI(
    title="MadeToAutomate Chat Widget",
    description="Website support bot: answers questions and offers discovery calls.",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials="*" not in config.CORS_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(AuthorizationError)
async def authorization_error_handler(request: Request, exc: AuthorizationError) -> JSONResponse:
    request_id = getattr(request.state, "request_id", "?")
    logger.warning("[%s] Rejected %s: %s", request_id, request.url.path, exc)
    return JSONResponse(status_code=exc.status_code, content={"detail": str(exc)})


# ── Request-ID middleware ────────────────────────────────────────────
@app.middleware("http")
async def add_request_id(request: Request, call_next) -> Response:
    """Attach a request ID (``X-Request-ID``) for log correlation."""
    request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
    request.state.request_id = request_id
    logger.info("[%s] %s %s", request_id, request.method, request.url.path)
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


app.include_router(router)


@app.get("/")
async def root():
    """Root endpoint with API info."""
    return {
        "service": "MadeToAutomate Chat Widget",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/health",
    }


if __name__ == "__main__":
    logger.info("Starting chat widget server on %s:%d", config.SERVER_HOST, config.SERVER_PORT)
    uvicorn.run(
        "mta_chat.server:app",
        host=config.SERVER_HOST,
        port=config.SERVER_PORT,
        reload=True,
    )
