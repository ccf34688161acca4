"""Shared test fixtures for the chat widget test suite."""

from __future__ import annotations

import os
import random
from datetime import UTC, datetime
from unittest.mock import MagicMock

import pytest
from langchain_core.messages import AIMessage


def pytest_configure(config):
    """Set test environment variables BEFORE collection starts.

    This runs before any imports, so config.py won't fail on module load.
    """
    os.environ.setdefault("ANTHROPIC_API_KEY", "test-anthropic-key-123")
    os.environ["METRICS_ENABLED"] = "false"


class FakeClock:
    """Monotonic clock the tests can move forward by hand."""

    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def mock_llm():
    """A completion model that always answers with a fixed AIMessage."""
    llm = MagicMock()
    llm.invoke.return_value = AIMessage(content="We build chatbots and automations.")
    return llm


@pytest.fixture
def synthetic_slots():
    """A slot service that only uses deterministic synthetic times."""
    from mta_chat.services.slots import SlotService, SyntheticSlotProvider

    # Monday 2 March 2026, 09:00 UTC
    fixed_now = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)
    provider = SyntheticSlotProvider(clock=lambda: fixed_now, rng=random.Random(42))
    return SlotService([provider])


@pytest.fixture
def mock_calendly_response():
    """Factory fixture for creating mock Calendly API responses."""

    def _make(data, status_code: int = 200):
        mock = MagicMock()
        mock.status_code = status_code
        mock.json.return_value = data
        mock.text = str(data)
        return mock

    return _make
