"""
Test Fixtures for Worker Tests

Provides mocked Redis and withdrawal batch results.
"""
import pytest
from unittest.mock import patch
from typing import Dict, Any

import redis


# ==============================================================================
# Redis Fixtures
# ==============================================================================

class MockRedis:
    """Mock Redis client for testing."""

    def __init__(self):
        self._data: Dict[str, Any] = {}
        self._expires: Dict[str, float] = {}

    def set(self, key: str, value: str, nx: bool = False, ex: int = None) -> bool:
        """Set a key with optional NX (set if not exists) and EX (expiry)."""
        if nx and key in self._data:
            return False
        self._data[key] = value
        if ex:
            self._expires[key] = ex
        return True

    def get(self, key: str) -> str:
        return self._data.get(key)

    def delete(self, key: str) -> int:
        if key in self._data:
            del self._data[key]
            self._expires.pop(key, None)
            return 1
        return 0

    def exists(self, key: str) -> bool:
        return key in self._data

    def clear(self):
        """Clear all data (for test cleanup)."""
        self._data.clear()
        self._expires.clear()


class FailingRedis:
    """Redis client whose server is unreachable."""

    def set(self, *args, **kwargs):
        raise redis.ConnectionError("Redis connection failed")

    def delete(self, *args, **kwargs):
        raise redis.ConnectionError("Redis connection failed")


@pytest.fixture
def mock_redis():
    """Provide a mock Redis instance."""
    return MockRedis()


@pytest.fixture
def mock_redis_client(mock_redis):
    """Patch the get_redis_client function to return mock Redis."""
    with patch('tasks.payouts.get_redis_client', return_value=mock_redis):
        yield mock_redis


# ==============================================================================
# Sample Data Fixtures
# ==============================================================================

@pytest.fixture
def batch_summary():
    """Summary dict as returned by WithdrawalBatchProcessor.run().to_dict()."""
    return {
        "processed": 2,
        "failed": 1,
        "skipped": 0,
        "reconciliation_required": 0,
        "total_amount": 8000,
        "details": [],
        "errors": [],
    }


@pytest.fixture
def failing_redis():
    return FailingRedis()
