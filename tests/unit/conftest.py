"""
Unit Test Layer Configuration

Pure functions and models only: no repositories, no event loop work.

Usage:
    pytest tests/unit -v
"""
import os
import sys

import pytest

# Add project root
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))))


def pytest_collection_modifyitems(config, items):
    """Mark everything under tests/unit"""
    for item in items:
        item.add_marker(pytest.mark.unit)
