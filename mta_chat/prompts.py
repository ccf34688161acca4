"""Grounding instruction for the chat widget, built per tenant."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime

DEFAULT_COMPANY_NAME = "MadeToAutomate"
DEFAULT_TONE = "friendly, concise and professional"
DEFAULT_LANGUAGE = "English"
DEFAULT_SERVICES: tuple[str, ...] = (
    "AI chatbots and website assistants",
    "Business process automation",
    "Workflow and CRM integrations",
    "Discovery calls and automation consulting",
)

# Used when the model fails and the tenant configured no fallback text.
GENERIC_APOLOGY = (
    "Sorry, a little trouble now. Can we continue talking about "
    "MadeToAutomate services?"
)

BOOKING_INVITATION = "Would you like to book a 30-minute appointment with our representative?"


@dataclass(frozen=True)
class FaqEntry:
    question: str
    answer: str


@dataclass(frozen=True)
class TenantConfig:
    """Per-tenant widget settings echoed on each ``/chat`` request."""

    company_name: str = DEFAULT_COMPANY_NAME
    tone: str = DEFAULT_TONE
    language: str = DEFAULT_LANGUAGE
    services: tuple[str, ...] = DEFAULT_SERVICES
    faq: tuple[FaqEntry, ...] = field(default_factory=tuple)
    fallback_text: str | None = None

    @property
    def out_of_scope_reply(self) -> str:
        """The sentence the model must use verbatim for off-topic requests."""
        if self.fallback_text:
            return self.fallback_text
        return (
            f"Sorry, I can only help with questions about {self.company_name} "
            "and its services."
        )


SYSTEM_PROMPT_TEMPLATE = """You are the website assistant for **{company_name}**.

## Current Date & Time
Today is **{current_date}** ({current_day_of_week}), {current_time} UTC.

## Tone & Language
- Write in a {tone} tone.
- Always reply in {language}, even if the visitor switches language.
- Keep replies short: two or three sentences unless the visitor asks for detail.

## Scope
You may ONLY talk about {company_name} and these services:
{services}

If the visitor asks about anything else, reply with exactly this sentence and nothing more:
"{fallback}"

## Rules
- **NEVER** invent prices, dates, guarantees or availability.
- **NEVER** ask for passwords, payment details or other sensitive data.
- If the visitor shares their name, use it.
- Do not offer to book appointments yourself; the widget handles booking.
{faq_section}"""

FAQ_SECTION_TEMPLATE = """
## FAQ
Use these answers as your primary reference:

{faq_content}
"""


def _format_faq(faq: tuple[FaqEntry, ...]) -> str:
    if not faq:
        return ""
    blocks = [f"Q: {entry.question}\nA: {entry.answer}" for entry in faq]
    return FAQ_SECTION_TEMPLATE.format(faq_content="\n\n".join(blocks))


def get_system_prompt(tenant: TenantConfig, now: datetime | None = None) -> str:
    """Build the grounding instruction for *tenant*."""
    now = now or datetime.now(UTC)
    services = "\n".join(f"- {service}" for service in tenant.services)
    return SYSTEM_PROMPT_TEMPLATE.format(
        company_name=tenant.company_name,
        current_date=now.strftime("%d %B %Y"),
        current_day_of_week=now.strftime("%A"),
        current_time=now.strftime("%H:%M"),
        tone=tenant.tone,
        language=tenant.language,
        services=services,
        fallback=tenant.out_of_scope_reply,
        faq_section=_format_faq(tenant.faq),
    )
