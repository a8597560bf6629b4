"""
Pytest configuration and shared fixtures.
"""

import os

# Must be set before application modules read the environment
os.environ.setdefault("LOG_TO_FILE", "0")
os.environ.setdefault("STORE_BACKEND", "memory")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_123")

from datetime import datetime, timedelta, timezone
from typing import List
from unittest.mock import MagicMock

import pytest

from checkout import CheckoutCoordinator
from config import Settings
from db import InMemoryStore
from events import EventNotifier
from models.event import Event
from models.slot import Slot
from reservations import ReservationManager
from scheduler import ExpirySweeper

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    """Controllable clock injected into components."""

    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeIdentity:
    """Maps bearer tokens "token-<customer>" to "<customer>"."""

    async def resolve(self, token):
        from utils.exceptions import AuthenticationError

        if not token or not token.startswith("token-"):
            raise AuthenticationError("Not authenticated")
        return token[len("token-"):]


def make_slot(slot_id: str = "slot-1", hours_from_t0: int = 24, **overrides) -> Slot:
    start = T0 + timedelta(hours=hours_from_t0)
    data = {
        "id": slot_id,
        "provider_id": "provider-1",
        "service_id": "service-1",
        "start_time": start,
        "end_time": start + timedelta(hours=1),
        "price_cents": 4500,
        "currency": "usd",
    }
    data.update(overrides)
    return Slot(**data)


@pytest.fixture
def test_settings():
    """Settings isolated from the developer's .env."""
    return Settings(
        _env_file=None,
        supabase_url="https://test.supabase.co",
        supabase_key="test_key",
        stripe_secret_key="sk_test_123",
        stripe_webhook_secret="whsec_test_123",
        default_hold_minutes=15,
        max_hold_minutes=30,
        sweep_interval_seconds=30,
        sweep_batch_size=100,
        store_backend="memory",
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def notifier():
    return EventNotifier()


@pytest.fixture
def published(notifier) -> List[Event]:
    """Every event published through the notifier, in order."""
    events: List[Event] = []
    notifier.subscribe(events.append)
    return events


@pytest.fixture
async def slot(store):
    return await store.add_slot(make_slot())


@pytest.fixture
def manager(store, notifier, test_settings, clock):
    return ReservationManager(
        store=store, notifier=notifier, config=test_settings, clock=clock
    )


@pytest.fixture
def coordinator(manager, store, notifier, test_settings, clock):
    return CheckoutCoordinator(
        manager=manager, store=store, notifier=notifier, config=test_settings, clock=clock
    )


@pytest.fixture
def sweeper(store, notifier, test_settings, clock):
    return ExpirySweeper(store=store, notifier=notifier, config=test_settings, clock=clock)


@pytest.fixture
def checkout_session():
    """Stripe Checkout Session stand-in."""
    session = MagicMock()
    session.id = "cs_test_123"
    session.url = "https://checkout.stripe.com/c/pay/cs_test_123"
    return session


@pytest.fixture
def mock_supabase_client():
    """Create a mock Supabase client."""
    mock_client = MagicMock()
    mock_table = MagicMock()
    mock_client.table.return_value = mock_table
    return mock_client, mock_table
