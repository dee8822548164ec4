"""Pytest fixtures shared by the unit and API tests.

Everything here runs against the in-memory store, which implements the same
transaction contract as the PostgreSQL backend. Tests that need a real
database live under tests/integration and are marked ``docker``.
"""

from typing import AsyncGenerator, List

import httpx
import pytest

from evote.api.config import Settings
from evote.api.main import create_app
from evote.api.memory import MemoryStore
from evote.api.registry import CandidateRegistry, SettingsRegistry, VoterRegistry
from evote.api.voting import VoteService
from evote.shared.models import Candidate, Voter

from tests.helpers import TEST_SECRET


@pytest.fixture
def test_settings() -> Settings:
    """Settings for an app backed by the memory store, with no retry delay."""
    return Settings(
        STORAGE_BACKEND="memory",
        JWT_SECRET=TEST_SECRET,
        RETRY_DELAY_SECONDS=0.0,
        TALLY_CACHE_ENABLED=False,
    )


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def service(store: MemoryStore) -> VoteService:
    return VoteService(store, retry_delay=0.0)


@pytest.fixture
def candidate_registry(store: MemoryStore) -> CandidateRegistry:
    return CandidateRegistry(store)


@pytest.fixture
def voter_registry(store: MemoryStore) -> VoterRegistry:
    return VoterRegistry(store)


@pytest.fixture
def settings_registry(store: MemoryStore) -> SettingsRegistry:
    return SettingsRegistry(store)


@pytest.fixture
async def candidates(candidate_registry: CandidateRegistry) -> List[Candidate]:
    """Three candidates: C1 and C2 for President, C3 for Vice President."""
    return [
        await candidate_registry.create("Alice Moreau", "Green Alliance", "President"),
        await candidate_registry.create("Bruno Keller", "Civic Union", "President"),
        await candidate_registry.create("Chen Wei", "Independent", "Vice President"),
    ]


@pytest.fixture
async def voters(voter_registry: VoterRegistry) -> List[Voter]:
    """Four ordinary voters."""
    return [
        await voter_registry.register(
            f"Voter {i}", f"VOTER{i:03d}", f"voter{i}@example.com", f"555-010{i}"
        )
        for i in range(1, 5)
    ]


@pytest.fixture
async def admin(voter_registry: VoterRegistry) -> Voter:
    return await voter_registry.register(
        "Admin User", "ADMIN001", "admin@example.com", "1234567890", is_admin=True
    )


@pytest.fixture
def app(store: MemoryStore, test_settings: Settings):
    return create_app(store=store, app_settings=test_settings)


@pytest.fixture
async def api_client(app) -> AsyncGenerator[httpx.AsyncClient, None]:
    """HTTP client bound to the app in-process.

    Returns an async httpx client configured for the voting API.
    """
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
