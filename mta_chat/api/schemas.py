"""Pydantic schemas for the FastAPI endpoints.

The widget speaks camelCase JSON; fields are snake_case in Python and
aliased on the wire.
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from mta_chat.engine import Attachment
from mta_chat.prompts import FaqEntry, TenantConfig


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class FaqItem(_CamelModel):
    question: str = Field(..., min_length=1, max_length=500)
    answer: str = Field(..., min_length=1, max_length=4000)


class AttachmentIn(_CamelModel):
    name: str = Field(..., min_length=1, max_length=255)
    mime_type: str = Field(..., min_length=1, max_length=100)
    data: str = Field(..., description="Base64-encoded file contents")

    def to_attachment(self) -> Attachment:
        return Attachment(name=self.name, mime_type=self.mime_type.lower(), data=self.data)


_TENANT_FIELDS = ("company_name", "tone", "language", "services", "faq", "fallback_text")


class ChatRequest(_CamelModel):
    """Incoming chat message from the widget."""

    message: str = Field(..., min_length=1, max_length=4000, description="The visitor's message")
    session_id: str | None = Field(
        None,
        max_length=100,
        description="Session identifier returned by a previous /chat call",
    )
    user_name: str | None = Field(None, max_length=200)
    user_email: str | None = Field(None, max_length=320)
    user_phone: str | None = Field(None, max_length=50)
    marketing_consent: bool | None = None

    # Tenant configuration echoed by the widget
    company_name: str | None = Field(None, max_length=200)
    tone: str | None = Field(None, max_length=200)
    language: str | None = Field(None, max_length=50)
    services: list[str] | None = Field(None, max_length=50)
    faq: list[FaqItem] | None = Field(None, max_length=100)
    fallback_text: str | None = Field(None, max_length=1000)

    attachments: list[AttachmentIn] = Field(default_factory=list, max_length=5)
    license_key: str | None = Field(None, max_length=200)

    @field_validator("message")
    @classmethod
    def message_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("message must not be blank")
        return value

    def profile_hints(self) -> dict:
        return {
            "name": self.user_name,
            "email": self.user_email,
            "phone": self.user_phone,
            "marketing_consent": self.marketing_consent,
        }

    def tenant_config(self) -> TenantConfig | None:
        """Tenant settings carried by this request, or ``None`` if it carried none."""
        if all(getattr(self, name) is None for name in _TENANT_FIELDS):
            return None
        values: dict = {}
        if self.company_name:
            values["company_name"] = self.company_name
        if self.tone:
            values["tone"] = self.tone
        if self.language:
            values["language"] = self.language
        services = tuple(s.strip() for s in self.services or () if s.strip())
        if services:
            values["services"] = services
        if self.faq:
            values["faq"] = tuple(FaqEntry(item.question, item.answer) for item in self.faq)
        if self.fallback_text:
            values["fallback_text"] = self.fallback_text
        return TenantConfig(**values)


class BookingSlotOut(_CamelModel):
    start: datetime
    scheduling_url: str | None = None


class ChatResponse(_CamelModel):
    """Reply from the assistant."""

    reply: str = Field(..., description="The assistant's reply")
    session_id: str = Field(..., description="Session id to send with the next message")
    booking_slots: list[BookingSlotOut] | None = None


class BookRequest(_CamelModel):
    """Booking confirmation from the widget.

    Required fields are optional here so a missing one yields the
    widget-friendly 400 body instead of a schema error.
    """

    start_time: str | None = Field(None, max_length=100)
    user_name: str | None = Field(None, max_length=200)
    user_email: str | None = Field(None, max_length=320)
    marketing_consent: bool | None = None


class BookResponse(_CamelModel):
    success: bool
    message: str


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    service: str = "mta-chat"
