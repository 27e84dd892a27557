"""
Pytest configuration and shared fixtures.

Environment variables are set here before any anonbox import so the
module-level settings never pick up a developer's .env values.
Each test gets a fresh app over a temporary JSON store, a fake
geolocator, a recording email sender and a ticking clock.
"""

import os

os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("STATIC_DIR", "/nonexistent-anonbox-static")
os.environ.pop("DATABASE_URL", None)
os.environ.pop("EMAIL_API_KEY", None)

import pytest
from fastapi.testclient import TestClient

from anonbox.config import Settings, get_settings
from anonbox.enrichment import EnrichmentPipeline
from anonbox.geolocation import GeoLocation
from anonbox.main import create_app
from anonbox.notifications import Notifier
from anonbox.schemas import Coordinates
from anonbox.storage import JsonFileStore
from anonbox.utils import StepResult

from tests.fakes import BrokenStore, FakeGeolocator, RecordingSender, TickingClock

# Clear settings cache so fixtures see the environment set above
get_settings.cache_clear()


@pytest.fixture
def clock():
    return TickingClock()


@pytest.fixture
def store(tmp_path):
    return JsonFileStore(tmp_path / "messages.json")


@pytest.fixture
def geolocator():
    return FakeGeolocator(StepResult.success(GeoLocation(
        location="Pune, India",
        coordinates=Coordinates(latitude=18.52, longitude=73.85),
    )))


@pytest.fixture
def sender():
    return RecordingSender()


@pytest.fixture
def notifier(sender, clock):
    return Notifier(sender=sender, clock=clock)


@pytest.fixture
def app_settings(tmp_path):
    return Settings(STATIC_DIR=str(tmp_path / "no-static"), ABANDONED_MIN_LENGTH=3)


@pytest.fixture
def make_client(app_settings, store, geolocator, notifier, clock):
    """Factory so a test can swap in its own store."""

    def _make(custom_store=None):
        app = create_app(
            app_settings,
            store=custom_store or store,
            pipeline=EnrichmentPipeline(geolocator),
            notifier=notifier,
            clock=clock,
        )
        return TestClient(app)

    return _make


@pytest.fixture(scope="function")
def client(make_client):
    """Create test client with a fresh JSON store for each test."""
    with make_client() as test_client:
        yield test_client


@pytest.fixture
def broken_client(make_client):
    with make_client(BrokenStore()) as test_client:
        yield test_client
