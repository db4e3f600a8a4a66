"""
Root conftest.py - Global fixtures and configuration for all test layers.

Test Layers:
    - component/: Component tests (services with in-memory repositories and collaborators)
    - unit/     : Unit tests (pure functions, no I/O)
"""
import os
import sys
from typing import Any, Dict, List

import pytest

# Add project root to path
PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, PROJECT_ROOT)

# Engine configuration is read from the environment at import time
os.environ.setdefault("ENV", "testing")


# =============================================================================
# Test Configuration
# =============================================================================

class TestConfig:
    """Centralized test configuration"""

    __test__ = False

    SERVICE_PORT = 8240

    # Collaborators
    SERVICES = {
        "profile_service": 8202,
        "channel_gateway": 8206,
        "content_service": 8241,
    }

    # Infrastructure
    POSTGRES_HOST = os.getenv("POSTGRES_HOST", "localhost")
    POSTGRES_PORT = int(os.getenv("POSTGRES_PORT", "5432"))
    NATS_URL = os.getenv("NATS_URL", "nats://localhost:4222")

    @classmethod
    def get_service_url(cls, service_name: str) -> str:
        port = cls.SERVICES.get(service_name)
        if not port:
            raise ValueError(f"Unknown service: {service_name}")
        return f"http://localhost:{port}"


@pytest.fixture(scope="session")
def test_config() -> TestConfig:
    """Provide test configuration"""
    return TestConfig()


# =============================================================================
# Assertion Helpers
# =============================================================================

class AssertionHelpers:
    """Custom assertion helpers for tests"""

    @staticmethod
    def assert_has_fields(data: Dict, fields: List[str]):
        """Assert dict has required fields"""
        missing = [f for f in fields if f not in data]
        assert not missing, f"Missing fields: {missing}"

    @staticmethod
    def assert_event_published(events: List[Dict[str, Any]], event_type: str, **properties):
        """Assert an envelope of `event_type` was published with matching properties"""
        matching = [e for e in events if e.get("type") == event_type]
        assert matching, f"Event '{event_type}' not found in {[e.get('type') for e in events]}"
        if properties:
            assert any(
                all(e.get("properties", {}).get(k) == v for k, v in properties.items())
                for e in matching
            ), f"No '{event_type}' event with properties {properties}"


@pytest.fixture
def assert_helpers() -> AssertionHelpers:
    """Provide assertion helpers"""
    return AssertionHelpers()


def pytest_configure(config):
    """Register custom markers"""
    config.addinivalue_line("markers", "unit: pure logic tests")
    config.addinivalue_line("markers", "component: service tests with mocked dependencies")
