"""
Pytest Configuration and Fixtures.

This file configures pytest and provides shared fixtures for all tests.
"""
import sys
from datetime import datetime, timedelta
from pathlib import Path

import pytest

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from config import Settings  # noqa: E402
from aves.db.database import build_engine, build_session_factory  # noqa: E402
from aves.db.models import Base  # noqa: E402
from aves.patterns import FeatureStatisticsEngine  # noqa: E402
from aves.publishing import (  # noqa: E402
    BoundingBox,
    ContentPublishingService,
    InMemoryAnnotationStore,
)


def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests (SQLite-backed stores)")
    config.addinivalue_line("markers", "smoke: Smoke tests for CLI commands")
    config.addinivalue_line("markers", "slow: Slow tests")


def pytest_collection_modifyitems(config, items):
    """Automatically mark tests based on their location."""
    for item in items:
        # Mark based on test file location
        if "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)
        elif "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)
        elif "smoke" in str(item.fspath):
            item.add_marker(pytest.mark.smoke)


class FrozenClock:
    """Controllable replacement for `utcnow`."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture(scope="session")
def project_root():
    """Return the project root directory."""
    return PROJECT_ROOT


@pytest.fixture
def clock():
    """Clock frozen at a fixed instant; advance it explicitly."""
    return FrozenClock(datetime(2025, 3, 1, 9, 0, 0))


@pytest.fixture
def settings():
    """Settings isolated from any local .env file."""
    return Settings(
        _env_file=None,
        database_url="sqlite://",
        generation_api_key=None,
        log_file=None,
    )


@pytest.fixture
def session_factory():
    """Session factory over a fresh in-memory SQLite database."""
    engine = build_engine("sqlite://")
    Base.metadata.create_all(engine)
    yield build_session_factory(engine)
    engine.dispose()


@pytest.fixture
def statistics():
    return FeatureStatisticsEngine()


@pytest.fixture
def annotation_store():
    return InMemoryAnnotationStore()


@pytest.fixture
def publishing(annotation_store, statistics):
    return ContentPublishingService(annotation_store, statistics=statistics)


@pytest.fixture
def sample_box():
    return BoundingBox(x=0.40, y=0.20, width=0.10, height=0.08)


@pytest.fixture
def published_terms(publishing, sample_box):
    """Three published terms on the same species, in creation order."""
    labels = [
        ("el pico", "the beak", "pico"),
        ("el ala", "the wing", "ala"),
        ("la cola", "the tail", "cola"),
    ]
    ids = []
    for spanish, english, feature in labels:
        annotation = publishing.submit(
            spanish,
            english,
            feature,
            sample_box,
            species_id="flamenco",
            annotation_id=f"term-{feature}",
        )
        publishing.approve(annotation.id)
        ids.append(annotation.id)
    publishing.create_module("Beak and wings", "Pico y alas", module_id="anatomy-1", species_ids=["flamenco"])
    result = publishing.publish(ids, module_id="anatomy-1")
    assert result.success
    return ids


@pytest.fixture
def contextual_fill_payload():
    """A generated payload that passes schema validation."""
    return {
        "type": "contextual_fill",
        "instructions": "Completa la frase",
        "sentence": "El flamenco usa ___ para filtrar el agua.",
        "correct_answer": "el pico",
        "options": ["el pico", "el ala", "la cola", "la pata"],
        "translation": "The flamingo uses its beak to filter water.",
        "term_ids": ["term-pico"],
    }
