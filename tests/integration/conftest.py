"""Pytest fixtures for PostgreSQL integration tests.

Connection settings come from the same POSTGRES_* environment variables the
services read, defaulting to a local server.
"""

import os
from typing import AsyncGenerator, Generator, List

import psycopg2
import pytest
from psycopg2.extensions import ISOLATION_LEVEL_AUTOCOMMIT

from evote.api.database import PostgresStore
from evote.api.registry import CandidateRegistry, VoterRegistry
from evote.api.voting import VoteService
from evote.reconciliation.database import Database
from evote.shared.models import Candidate, Voter


class IntegrationConfig:
    POSTGRES_HOST = os.getenv("POSTGRES_HOST", "localhost")
    POSTGRES_PORT = int(os.getenv("POSTGRES_PORT", "5432"))
    POSTGRES_DB = os.getenv("POSTGRES_DB", "election_db")
    POSTGRES_USER = os.getenv("POSTGRES_USER", "election_user")
    POSTGRES_PASSWORD = os.getenv("POSTGRES_PASSWORD", "election_pass")
    POSTGRES_MIN_CONNECTIONS = 1
    POSTGRES_MAX_CONNECTIONS = 2


def _dsn() -> str:
    c = IntegrationConfig
    return (
        f"postgresql://{c.POSTGRES_USER}:{c.POSTGRES_PASSWORD}"
        f"@{c.POSTGRES_HOST}:{c.POSTGRES_PORT}/{c.POSTGRES_DB}"
    )


@pytest.fixture(scope="session")
def postgres_connection() -> Generator:
    """Autocommit psycopg2 connection for setup and direct assertions.

    Skips the whole integration suite when the server is unreachable.
    """
    try:
        conn = psycopg2.connect(
            host=IntegrationConfig.POSTGRES_HOST,
            port=IntegrationConfig.POSTGRES_PORT,
            database=IntegrationConfig.POSTGRES_DB,
            user=IntegrationConfig.POSTGRES_USER,
            password=IntegrationConfig.POSTGRES_PASSWORD,
            connect_timeout=3
        )
    except psycopg2.OperationalError as e:
        pytest.skip(f"PostgreSQL not available: {e}")

    conn.set_isolation_level(ISOLATION_LEVEL_AUTOCOMMIT)
    yield conn
    conn.close()


@pytest.fixture
async def pg_store(postgres_connection) -> AsyncGenerator[PostgresStore, None]:
    """Initialized store over empty tables."""
    store = PostgresStore(_dsn(), min_size=2, max_size=30, create_schema=True)
    await store.initialize()
    with postgres_connection.cursor() as cursor:
        cursor.execute(
            "TRUNCATE ballots, candidates, voters, settings RESTART IDENTITY CASCADE"
        )
    yield store
    await store.close()


@pytest.fixture
def pg_service(pg_store: PostgresStore) -> VoteService:
    return VoteService(pg_store, retry_delay=0.0)


@pytest.fixture
async def pg_candidates(pg_store: PostgresStore) -> List[Candidate]:
    registry = CandidateRegistry(pg_store)
    return [
        await registry.create("Alice Moreau", "Green Alliance", "President"),
        await registry.create("Bruno Keller", "Civic Union", "President"),
    ]


@pytest.fixture
async def pg_voters(pg_store: PostgresStore) -> List[Voter]:
    registry = VoterRegistry(pg_store)
    return [
        await registry.register(
            f"Voter {i}", f"VOTER{i:03d}", f"voter{i}@example.com", f"555-010{i}"
        )
        for i in range(1, 4)
    ]


@pytest.fixture
def worker_database(pg_store) -> Generator[Database, None, None]:
    """psycopg2 database used by the reconciliation worker."""
    database = Database(IntegrationConfig)
    database.connect()
    yield database
    database.close()
