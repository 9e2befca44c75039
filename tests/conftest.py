"""
Shared fixtures for immustreams tests.
"""

import pytest

from sdk.immustreams.memory import InMemoryImmuDB


@pytest.fixture
def store():
    """Fresh in-memory immudb."""
    return InMemoryImmuDB()
