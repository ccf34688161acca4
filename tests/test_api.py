"""Tests for the FastAPI endpoints."""

from __future__ import annotations

import asyncio
import time
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import MagicMock

import httpx
import pytest
from fastapi.testclient import TestClient
from langchain_core.messages import AIMessage

from mta_chat import config, server
from mta_chat.api.security import LicenseGate
from mta_chat.engine import ConversationEngine
from mta_chat.errors import UpstreamUnavailable
from mta_chat.prompts import BOOKING_INVITATION, GENERIC_APOLOGY
from mta_chat.server import app
from mta_chat.services.booking import BookingIntake
from mta_chat.services.calendly_client import CalendlyClient
from mta_chat.services.consent_log import ConsentLog
from mta_chat.services.mailer import SmtpNotifier
from mta_chat.sessions import SessionStore

_STATE_KEYS = (
    "session_store", "engine", "consent_log", "booking_intake", "license_gate", "admin_token",
)


@pytest.fixture
def notifier():
    return MagicMock(spec=SmtpNotifier)


@pytest.fixture
def wired_app(mock_llm, synthetic_slots, notifier, tmp_path):
    """Attach test resources to app state (mirrors the lifespan)."""
    consent_log = ConsentLog(tmp_path / "consents.ndjson")
    app.state.session_store = SessionStore()
    app.state.engine = ConversationEngine(mock_llm, synthetic_slots)
    app.state.consent_log = consent_log
    app.state.booking_intake = BookingIntake(notifier, consent_log)
    app.state.license_gate = LicenseGate(enabled=False)
    app.state.admin_token = "admin-secret"
    yield app
    for key in _STATE_KEYS:
        setattr(app.state, key, None)


@pytest.fixture
def client(wired_app):
    return TestClient(wired_app)


class TestHealthEndpoint:
    def test_health_returns_ok(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok", "service": "mta-chat"}


class TestChatEndpoint:
    def test_first_message_creates_session(self, client):
        response = client.post("/chat", json={"message": "Hi"})
        assert response.status_code == 200
        data = response.json()
        assert data["reply"] == "We build chatbots and automations."
        assert data["sessionId"]
        assert "bookingSlots" not in data

    def test_unknown_session_id_is_replaced(self, client):
        data = client.post("/chat", json={"message": "Hi", "sessionId": "s1"}).json()
        assert data["sessionId"] != "s1"
        session = app.state.session_store.get(data["sessionId"])
        assert session.turn_count == 1

    def test_session_id_is_reused(self, client):
        first = client.post("/chat", json={"message": "Hi"}).json()
        second = client.post(
            "/chat", json={"message": "Again", "sessionId": first["sessionId"]},
        ).json()
        assert second["sessionId"] == first["sessionId"]
        assert app.state.session_store.get(first["sessionId"]).turn_count == 2

    def test_booking_offer_scenario(self, client):
        call1 = client.post("/chat", json={"message": "Hi", "sessionId": "s1"}).json()
        session_id = call1["sessionId"]
        assert session_id != "s1"
        assert "bookingSlots" not in call1
        assert app.state.session_store.get(session_id).turn_count == 1

        call2 = client.post("/chat", json={
            "message": "What do you charge?",
            "sessionId": session_id,
            "userName": "Ann",
            "userEmail": "ann@x.com",
        }).json()
        assert "bookingSlots" not in call2

        call3 = client.post("/chat", json={"message": "Great", "sessionId": session_id}).json()
        assert len(call3["bookingSlots"]) == 3
        assert call3["reply"].endswith(BOOKING_INVITATION)
        for slot in call3["bookingSlots"]:
            assert "start" in slot
            assert "schedulingUrl" not in slot

        call4 = client.post("/chat", json={
            "message": "One more question",
            "sessionId": session_id,
            "userName": "Ann",
            "userEmail": "ann@x.com",
        }).json()
        assert "bookingSlots" not in call4
        assert BOOKING_INVITATION not in call4["reply"]

    def test_model_failure_still_returns_200(self, client, mock_llm):
        mock_llm.invoke.side_effect = RuntimeError("LLM exploded")
        response = client.post("/chat", json={"message": "Hello!"})
        assert response.status_code == 200
        data = response.json()
        assert data["reply"] == GENERIC_APOLOGY
        session = app.state.session_store.get(data["sessionId"])
        assert session.messages[0].content == "Hello!"
        assert session.turn_count == 1

    def test_unexpected_engine_error_returns_fallback(self, client):
        engine = MagicMock()
        engine.handle_turn.side_effect = KeyError("bug")
        app.state.engine = engine
        response = client.post("/chat", json={"message": "Hello!", "fallbackText": "Try later."})
        assert response.status_code == 200
        assert response.json()["reply"] in ("Try later.", GENERIC_APOLOGY)
        assert "bug" not in response.json()["reply"]

    def test_tenant_fields_reach_the_prompt(self, client, mock_llm):
        client.post("/chat", json={
            "message": "Hi",
            "companyName": "Acme Bots",
            "tone": "playful",
            "services": ["Voice agents"],
            "faq": [{"question": "Price?", "answer": "From 500 EUR."}],
            "fallbackText": "Ask me about Acme Bots!",
        })
        system = mock_llm.invoke.call_args[0][0][0].content
        assert "Acme Bots" in system
        assert "playful" in system
        assert "Voice agents" in system
        assert "From 500 EUR." in system
        assert "Ask me about Acme Bots!" in system

    def test_attachments_are_accepted(self, client, mock_llm):
        response = client.post("/chat", json={
            "message": "Look",
            "attachments": [{"name": "a.png", "mimeType": "image/png", "data": "AAAA"}],
        })
        assert response.status_code == 200
        last = mock_llm.invoke.call_args[0][0][-1]
        assert last.content[1]["type"] == "image_url"

    def test_validates_empty_message(self, client):
        response = client.post("/chat", json={"message": ""})
        assert response.status_code == 422

    def test_whitespace_only_message_is_rejected(self, client, mock_llm):
        response = client.post("/chat", json={"message": "   \n\t"})
        assert response.status_code == 422
        mock_llm.invoke.assert_not_called()
        assert len(app.state.session_store) == 0

    def test_response_includes_request_id_header(self, client):
        response = client.post("/chat", json={"message": "Hello!"})
        assert "X-Request-ID" in response.headers

    def test_client_supplied_request_id_is_echoed(self, client):
        response = client.post(
            "/chat", json={"message": "Hello!"}, headers={"X-Request-ID": "trace-123"},
        )
        assert response.headers["X-Request-ID"] == "trace-123"


class TestLicenseGate:
    @pytest.fixture(autouse=True)
    def enforce(self, wired_app):
        wired_app.state.license_gate = LicenseGate(enabled=True, keys=["key-123"])

    def test_missing_key_returns_402(self, client, mock_llm):
        response = client.post("/chat", json={"message": "Hi"})
        assert response.status_code == 402
        mock_llm.invoke.assert_not_called()

    def test_wrong_key_returns_402(self, client):
        response = client.post("/chat", json={"message": "Hi", "licenseKey": "nope"})
        assert response.status_code == 402

    def test_non_ascii_key_is_rejected_cleanly(self, client):
        response = client.post("/chat", json={"message": "Hi", "licenseKey": "schlüssel"})
        assert response.status_code == 402

    def test_key_in_body_is_accepted(self, client):
        response = client.post("/chat", json={"message": "Hi", "licenseKey": "key-123"})
        assert response.status_code == 200

    def test_key_in_header_is_accepted(self, client):
        response = client.post(
            "/chat", json={"message": "Hi"}, headers={"X-License-Key": "key-123"},
        )
        assert response.status_code == 200


class TestBookEndpoint:
    def test_booking_succeeds(self, client, notifier):
        response = client.post("/book", json={
            "startTime": "2026-03-09T10:30:00+01:00",
            "userName": "Ann",
            "userEmail": "ann@x.com",
            "marketingConsent": True,
        })
        assert response.status_code == 200
        assert response.json() == {
            "success": True,
            "message": "Thanks Ann! Someone from our team will contact you shortly "
                       "to confirm the appointment.",
        }
        notifier.send.assert_called_once()

    @pytest.mark.parametrize("missing", ["startTime", "userName", "userEmail"])
    def test_missing_field_returns_400(self, client, notifier, missing):
        body = {
            "startTime": "2026-03-09T10:30:00+01:00",
            "userName": "Ann",
            "userEmail": "ann@x.com",
        }
        del body[missing]
        response = client.post("/book", json=body)
        assert response.status_code == 400
        assert response.json() == {"success": False, "message": "Missing booking info"}
        notifier.send.assert_not_called()

    def test_mail_failure_is_best_effort(self, client, notifier):
        notifier.send.side_effect = UpstreamUnavailable("smtp", "down")
        response = client.post("/book", json={
            "startTime": "2026-03-09T10:30:00+01:00",
            "userName": "Ann",
            "userEmail": "ann@x.com",
        })
        assert response.status_code == 200
        assert response.json()["success"] is True


class TestConsentsEndpoint:
    def _book(self, client, name):
        client.post("/book", json={
            "startTime": "2026-03-09T10:30:00+01:00",
            "userName": name,
            "userEmail": f"{name.lower()}@x.com",
            "marketingConsent": True,
        })

    def test_requires_admin_token(self, client):
        assert client.get("/consents").status_code == 403
        assert client.get("/consents", headers={"X-Admin-Token": "wrong"}).status_code == 403

    def test_closed_when_no_token_configured(self, client, wired_app):
        wired_app.state.admin_token = None
        assert client.get("/consents").status_code == 403

    def test_header_token_lists_most_recent_first(self, client):
        self._book(client, "Ann")
        self._book(client, "Bob")
        response = client.get("/consents", headers={"X-Admin-Token": "admin-secret"})
        assert response.status_code == 200
        assert [r["name"] for r in response.json()] == ["Bob", "Ann"]

    def test_query_token_is_accepted(self, client):
        response = client.get("/consents", params={"token": "admin-secret"})
        assert response.status_code == 200
        assert response.json() == []


class TestSessionIsolation:
    def test_burst_on_one_session_does_not_stall_another(self, wired_app, mock_llm):
        def slow_reply(messages):
            time.sleep(0.3)
            return AIMessage(content="ok")

        mock_llm.invoke.side_effect = slow_reply

        async def scenario():
            # A small executor makes thread starvation easy to observe.
            asyncio.get_running_loop().set_default_executor(ThreadPoolExecutor(max_workers=2))
            transport = httpx.ASGITransport(app=wired_app)
            async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
                first = await client.post("/chat", json={"message": "Hi"})
                busy_id = first.json()["sessionId"]
                burst = [
                    asyncio.create_task(
                        client.post("/chat", json={"message": f"m{i}", "sessionId": busy_id}),
                    )
                    for i in range(6)
                ]
                await asyncio.sleep(0.05)
                started = time.perf_counter()
                other = await client.post("/chat", json={"message": "Hello"})
                elapsed = time.perf_counter() - started
                responses = await asyncio.gather(*burst)
            return busy_id, other, elapsed, responses

        busy_id, other, elapsed, responses = asyncio.run(scenario())

        assert other.status_code == 200
        assert other.json()["sessionId"] != busy_id
        assert elapsed < 1.0
        assert all(r.status_code == 200 for r in responses)
        assert app.state.session_store.get(busy_id).turn_count == 7

    def test_same_session_turns_do_not_interleave(self, wired_app, mock_llm):
        active = 0
        overlaps = []

        def tracking_reply(messages):
            nonlocal active
            active += 1
            overlaps.append(active)
            time.sleep(0.05)
            active -= 1
            return AIMessage(content="ok")

        mock_llm.invoke.side_effect = tracking_reply

        async def scenario():
            transport = httpx.ASGITransport(app=wired_app)
            async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
                first = await client.post("/chat", json={"message": "Hi"})
                session_id = first.json()["sessionId"]
                await asyncio.gather(*[
                    client.post("/chat", json={"message": f"m{i}", "sessionId": session_id})
                    for i in range(4)
                ])
            return session_id

        session_id = asyncio.run(scenario())

        assert max(overlaps) == 1
        session = app.state.session_store.get(session_id)
        assert session.turn_count == 5
        assert [m.role for m in session.messages] == ["user", "assistant"] * 5


class TestLifespan:
    def test_calendly_client_is_closed_on_shutdown(self, monkeypatch, mock_llm, tmp_path):
        calendly = MagicMock(spec=CalendlyClient)
        monkeypatch.setattr(server, "build_calendly_client", lambda: calendly)
        monkeypatch.setattr(server, "build_llm", lambda: mock_llm)
        monkeypatch.setattr(config, "CONSENTS_FILE", str(tmp_path / "consents.ndjson"))
        try:
            with TestClient(app) as client:
                assert client.get("/health").status_code == 200
                assert client.post("/chat", json={"message": "Hi"}).status_code == 200
                calendly.close.assert_not_called()
            calendly.close.assert_called_once()
        finally:
            for key in _STATE_KEYS:
                setattr(app.state, key, None)


class TestNotReady:
    def test_returns_503_before_lifespan(self):
        for key in _STATE_KEYS:
            setattr(app.state, key, None)
        response = TestClient(app).post("/chat", json={"message": "Hello!"})
        assert response.status_code == 503
        assert "starting up" in response.json()["detail"].lower()


class TestRootEndpoint:
    def test_root_returns_service_info(self, client):
        response = client.get("/")
        assert response.status_code == 200
        assert response.json()["service"] == "MadeToAutomate Chat Widget"
