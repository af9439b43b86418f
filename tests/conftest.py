"""Shared test fixtures and helpers."""

import json
from typing import Any, Optional
from unittest.mock import MagicMock

import pytest

from config import Settings
from modules.classifier import BookingClassifier
from modules.delivery import ConversionsApiClient
from modules.event_builder import EventBuilder
from modules.pipeline import ConversionPipeline, PipelineContext
from modules.stores import InMemoryAttributionStore, InMemoryDedupStore

NOW = 1_760_000_000.0


class FakeClock:
    """Manually advanced clock for TTL tests."""

    def __init__(self, now: float = NOW):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_response(status_code: int = 200, body: Optional[Any] = None) -> MagicMock:
    """Helper to create a requests.Response stand-in."""
    if body is None:
        body = {"events_received": 1, "fbtrace_id": "trace"} if status_code < 300 else {"error": "boom"}
    response = MagicMock()
    response.status_code = status_code
    response.text = json.dumps(body)
    response.json.return_value = body
    return response


def make_settings(**overrides) -> Settings:
    """Settings with credentials filled in and no .env or log file."""
    values = {
        "meta_pixel_id": "1234567890",
        "meta_access_token": "EAAtesttoken",
        "log_file_path": "",
        "retry_base_delay_seconds": 1.0,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


def make_booking_payload(
    booking_id: str = "appt-1",
    status: str = "booked",
    online: Optional[bool] = True,
    channel: Optional[str] = None,
    metadata: Optional[dict] = None,
    client: Optional[dict] = None,
    sale: Optional[dict] = None,
    **extra,
) -> dict:
    """Helper to create a booking webhook body with sensible defaults."""
    appointment = {
        "id": booking_id,
        "status": status,
        "created_at": "2025-01-15T10:30:00Z",
        "services": [{"name": "Deep Tissue Massage", "price": 120.0}],
    }
    if online is not None:
        appointment["online_booking"] = online
    if channel is not None:
        appointment["source"] = channel
    if metadata is not None:
        appointment["metadata"] = metadata
    body = {"appointment": appointment, "client": client or {}}
    if sale is not None:
        body["sale"] = sale
    body.update(extra)
    return body


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def session():
    """Mock requests.Session that answers 200 by default."""
    mock = MagicMock()
    mock.post.return_value = make_response(200)
    return mock


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def client(settings, session, sleeps):
    return ConversionsApiClient.from_settings(settings, session=session, sleep=sleeps.append)


@pytest.fixture
def context(settings, clock, client):
    return PipelineContext(
        settings=settings,
        attribution_store=InMemoryAttributionStore(settings.attribution_window_seconds, clock=clock),
        dedup_store=InMemoryDedupStore(settings.dedup_window_seconds, clock=clock),
        classifier=BookingClassifier(settings.require_confirmed_status),
        builder=EventBuilder(settings, clock=clock),
        client=client,
    )


@pytest.fixture
def pipeline(context):
    return ConversionPipeline(context)
