"""
Component Test Layer Configuration

Services run against in-memory repositories and collaborators defined in
each domain's conftest.py.

Usage:
    pytest tests/component -v
"""
import os
import sys

import pytest

# Set testing environment BEFORE any imports
os.environ["ENV"] = "testing"
os.environ["ENVIRONMENT"] = "testing"

# Add project root
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))))


def pytest_collection_modifyitems(config, items):
    """Mark everything under tests/component"""
    for item in items:
        item.add_marker(pytest.mark.component)
