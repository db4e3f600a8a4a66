"""
Unit Test Fixtures for the Campaign Engine

Pure model and function tests; inputs come from CampaignTestDataFactory.
"""

import pytest
import sys
import os

# Add project root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "../../.."))

from tests.contracts.campaign.data_contract import REFERENCE_TIME, CampaignTestDataFactory
from microservices.campaign_service.scheduler import FrozenClock


@pytest.fixture
def factory():
    """Provide test data factory"""
    return CampaignTestDataFactory()


@pytest.fixture
def clock():
    """Frozen clock at the suite's reference time"""
    return FrozenClock(REFERENCE_TIME)


@pytest.fixture
def customers(factory):
    """Small mixed-country population"""
    return [
        factory.make_customer("c00001", country="US", age=34, tags=["vip", "newsletter"], plan={"tier": "gold"}),
        factory.make_customer("c00002", country="CA", age=19, tags=["newsletter"], plan={"tier": "free"}),
        factory.make_customer("c00003", country="US", age="unknown", signup="2025-11-20T10:00:00+00:00"),
        factory.make_customer("c00004", country="GB", age=52, signup="2024-01-05T00:00:00+00:00"),
    ]
