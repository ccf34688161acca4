"""Centralized configuration for the MadeToAutomate chat backend.

Secret resolution order (per variable):
  1. Environment variable / ``.env`` file  (local dev)
  2. AWS SSM Parameter Store SecureString  (when ``AWS_EXECUTION_ENV`` is set)

The SSM paths follow the convention ``/mta-chat/<VARIABLE_NAME>``.
Only the completion-provider key is required; every other integration
(Calendly, SMTP, licensing) degrades gracefully when left unset.
"""

from __future__ import annotations

import logging
import os

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

_ON_AWS = bool(os.getenv("AWS_EXECUTION_ENV"))


# ── Secret resolution ────────────────────────────────────────────────

def _get_ssm_parameter(name: str) -> str | None:
    """Fetch a SecureString from SSM Parameter Store.

    Returns ``None`` if the parameter does not exist or boto3 is
    unavailable.  Errors are logged but never raised so that local-dev
    fallback still works.
    """
    try:
        import boto3  # noqa: PLC0415 - lazy import to avoid boto3 dep in tests

        ssm = boto3.client("ssm")
        resp = ssm.get_parameter(Name=f"/mta-chat/{name}", WithDecryption=True)
        return resp["Parameter"]["Value"]
    except Exception:
        logger.debug("SSM lookup for %s failed (expected locally)", name)
        return None


def _get_secret(name: str) -> str | None:
    """Return a secret from env-var or SSM, or ``None`` when unset."""
    value = os.getenv(name)
    if value and not value.startswith("your_"):
        return value
    if _ON_AWS:
        return _get_ssm_parameter(name)
    return None


def _require_env(name: str) -> str:
    """Return a config value from env-var or SSM, or raise a clear error."""
    value = _get_secret(name)
    if value:
        return value
    raise OSError(
        f"Missing required configuration: {name}. "
        f"Set it in .env (local) or SSM Parameter Store /mta-chat/{name} (AWS)."
    )


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, str(default))
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"Invalid integer for {name}: {raw!r}") from None


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, str(default))
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"Invalid float for {name}: {raw!r}") from None


def _env_bool(name: str, default: bool = False) -> bool:
    return os.getenv(name, str(default)).strip().lower() in ("1", "true", "yes", "on")


def _env_list(name: str, default: str = "") -> list[str]:
    return [item.strip() for item in os.getenv(name, default).split(",") if item.strip()]


# ── LLM ─────────────────────────────────────────────────────────────
ANTHROPIC_API_KEY: str = _require_env("ANTHROPIC_API_KEY")
MODEL_NAME: str = os.getenv("MODEL_NAME", "claude-haiku-4-5")
LLM_TIMEOUT_SECONDS: float = _env_float("LLM_TIMEOUT_SECONDS", 20.0)
LLM_MAX_TOKENS: int = _env_int("LLM_MAX_TOKENS", 600)

# ── Calendly ────────────────────────────────────────────────────────
CALENDLY_API_TOKEN: str | None = _get_secret("CALENDLY_API_TOKEN")
CALENDLY_BASE_URL: str = "https://api.calendly.com"
CALENDLY_EVENT_TYPE_URI: str | None = os.getenv("CALENDLY_EVENT_TYPE_URI") or None
CALENDLY_TIMEOUT_SECONDS: float = _env_float("CALENDLY_TIMEOUT_SECONDS", 10.0)
CALENDLY_MAX_RETRIES: int = _env_int("CALENDLY_MAX_RETRIES", 1)

# ── Booking slots ───────────────────────────────────────────────────
SLOT_TIMEZONE: str = os.getenv("SLOT_TIMEZONE", "Europe/Berlin")
BUSINESS_HOUR_START: int = _env_int("BUSINESS_HOUR_START", 10)
BUSINESS_HOUR_END: int = _env_int("BUSINESS_HOUR_END", 16)

# ── Mail relay ──────────────────────────────────────────────────────
SMTP_HOST: str | None = os.getenv("SMTP_HOST") or None
SMTP_PORT: int = _env_int("SMTP_PORT", 465)
SMTP_USER: str | None = os.getenv("SMTP_USER") or os.getenv("MAIL_USER") or None
SMTP_PASSWORD: str | None = _get_secret("SMTP_PASSWORD")
SMTP_USE_SSL: bool = _env_bool("SMTP_USE_SSL", True)
SMTP_TIMEOUT_SECONDS: float = _env_float("SMTP_TIMEOUT_SECONDS", 15.0)
MAIL_FROM: str | None = os.getenv("MAIL_FROM") or SMTP_USER
ADMIN_EMAIL: str | None = os.getenv("ADMIN_EMAIL") or SMTP_USER

# ── Consents & admin ────────────────────────────────────────────────
CONSENTS_FILE: str = os.getenv("CONSENTS_FILE", "consents.ndjson")
ADMIN_TOKEN: str | None = _get_secret("ADMIN_TOKEN")

# ── Licensing ───────────────────────────────────────────────────────
LICENSE_ENFORCED: bool = _env_bool("LICENSE_ENFORCED", False)
LICENSE_KEYS: frozenset[str] = frozenset(_env_list("LICENSE_KEYS"))

# ── Sessions ────────────────────────────────────────────────────────
SESSION_TIMEOUT_SECONDS: float = _env_float("SESSION_TIMEOUT_SECONDS", 3600.0)
MAX_HISTORY_MESSAGES: int = _env_int("MAX_HISTORY_MESSAGES", 20)

# ── Server ──────────────────────────────────────────────────────────
SERVER_HOST: str = os.getenv("SERVER_HOST", "0.0.0.0")
SERVER_PORT: int = _env_int("SERVER_PORT", _env_int("PORT", 3000))
CORS_ORIGINS: list[str] = _env_list("CORS_ORIGINS", "*")
