"""
Pytest configuration and fixtures for PotSettle tests.

Provides shared fixtures for async FastAPI endpoints and MongoDB
interactions using mongomock-motor (no real MongoDB required).
"""

import os

# Set required env vars before any potsettle imports
os.environ.setdefault("PROOF_SIGNING_SECRET", "test-proof-secret-for-unit-tests-only")

from decimal import Decimal

import pytest
import pytest_asyncio
from mongomock_motor import AsyncMongoMockClient

from potsettle.models.positions import NetPosition


@pytest.fixture
def anyio_backend():
    """Specify anyio backend for async tests."""
    return "asyncio"


@pytest_asyncio.fixture
async def test_db():
    """In-memory MongoDB mock database, discarded after each test."""
    client = AsyncMongoMockClient()
    db = client["potsettle_test"]
    yield db
    client.close()


@pytest_asyncio.fixture
async def client():
    """Async HTTP client bound to the FastAPI app.

    Yields:
        AsyncClient: HTTPX async client with the FastAPI app.
    """
    from httpx import ASGITransport, AsyncClient
    from potsettle.main import app

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


def make_positions(**nets) -> list[NetPosition]:
    """Build net positions keyed by player id, e.g. ``make_positions(A="50", B="-30")``."""
    return [
        NetPosition(player_id=pid, player_name=pid, net_amount=Decimal(str(amount)))
        for pid, amount in nets.items()
    ]


@pytest.fixture
def positions_factory():
    return make_positions
