"""Pytest configuration and fixtures."""

from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, MagicMock

import pytest

import config
from resources import registry


@pytest.fixture(autouse=True)
def reset_singletons():
    """Give every test a fresh config and kind registry."""
    config.reset_config()
    registry.reset_registry()
    yield
    config.reset_config()
    registry.reset_registry()


@pytest.fixture
def mock_connection():
    """Create a mock asyncpg connection."""
    conn = AsyncMock()
    return conn


@pytest.fixture
def mock_pool(mock_connection):
    """Create a mock asyncpg pool whose acquire() yields mock_connection."""
    pool = AsyncMock()

    @asynccontextmanager
    async def mock_acquire():
        yield mock_connection

    pool.acquire = MagicMock(side_effect=mock_acquire)
    return pool


@pytest.fixture
def file_spec():
    """Desired state of a File."""
    return {
        "forProvider": {"file": "/tmp/a"},
        "providerConfigRef": {"name": "default"},
    }


@pytest.fixture
def sample_resource(file_spec):
    """Sample File record as returned by the store."""
    return {
        "id": 1,
        "name": "test-file",
        "kind": "File",
        "spec": file_spec,
        "status": {},
        "connection_details": {},
        "generation": 1,
        "resource_version": 1,
        "finalizers": [],
        "retry_count": 0,
        "next_reconcile_time": None,
        "last_reconcile_time": None,
        "deleted_at": None,
    }


@pytest.fixture
def sample_provider_config():
    """Sample provider config record as returned by the store."""
    return {
        "id": 1,
        "name": "default",
        "address": "10.0.0.5",
        "username": "root",
        "password": "hunter2",
        "private_key": None,
    }
