"""
Pytest configuration and shared fixtures for the security engine tests.
"""

from typing import Dict, Generator

import pytest
from fastapi.testclient import TestClient

from aegis.core.config import Settings
from aegis.main import create_app
from aegis.services.security_engine import SecurityEngine
from tests.helpers import ADMIN_KEY, FakeClock, make_settings


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings() -> Settings:
    """Settings with the admin key set and background loops slowed down."""
    return make_settings()


@pytest.fixture
def engine(settings, clock) -> SecurityEngine:
    """Fresh security engine driven by the fake clock."""
    return SecurityEngine(settings, clock=clock)


@pytest.fixture
def admin_headers() -> Dict[str, str]:
    return {"X-Admin-Key": ADMIN_KEY}


@pytest.fixture
def app(settings, engine):
    return create_app(settings=settings, engine=engine)


@pytest.fixture
def client(app) -> Generator[TestClient, None, None]:
    """Test client with the engine lifespan running."""
    with TestClient(app) as test_client:
        yield test_client


def pytest_configure(config):
    """Configure custom pytest markers."""
    config.addinivalue_line(
        "markers", "unit: mark test as a unit test"
    )
    config.addinivalue_line(
        "markers", "integration: mark test as an integration test"
    )
    config.addinivalue_line(
        "markers", "security: mark test as a security test"
    )
    config.addinivalue_line(
        "markers", "slow: mark test as slow running"
    )
