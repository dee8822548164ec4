"""
PostgreSQL operations for counter reconciliation.
"""
import logging
from contextlib import contextmanager
from typing import Dict, List, Tuple

import psycopg2
from psycopg2 import pool
from psycopg2.extras import RealDictCursor

from evote.shared.errors import StorageError, TransientStorageError
from evote.shared.schema import (
    CANDIDATE_DISCREPANCIES_SQL,
    LOCK_LEDGER_SQL,
    RECONCILE_CANDIDATES_SQL,
    RECONCILE_VOTERS_SQL,
    VOTER_DISCREPANCIES_SQL,
)

from .config import config

logger = logging.getLogger(__name__)

TRANSIENT_ERRORS = (psycopg2.OperationalError, psycopg2.InterfaceError)


class Database:
    """PostgreSQL connection pool and reconciliation queries."""

    def __init__(self, cfg=config):
        self.config = cfg
        self.connection_pool = None

    def connect(self):
        """Create database connection pool."""
        try:
            self.connection_pool = pool.ThreadedConnectionPool(
                self.config.POSTGRES_MIN_CONNECTIONS,
                self.config.POSTGRES_MAX_CONNECTIONS,
                host=self.config.POSTGRES_HOST,
                port=self.config.POSTGRES_PORT,
                database=self.config.POSTGRES_DB,
                user=self.config.POSTGRES_USER,
                password=self.config.POSTGRES_PASSWORD,
                connect_timeout=10
            )
            logger.info(
                f"Database connection pool created: "
                f"{self.config.POSTGRES_HOST}:{self.config.POSTGRES_PORT}/{self.config.POSTGRES_DB}"
            )
        except TRANSIENT_ERRORS as e:
            logger.error(f"Failed to create connection pool: {e}")
            raise TransientStorageError(f"Connection pool creation failed: {e}") from e

    @contextmanager
    def get_connection(self):
        """
        Context manager for one transaction on a pooled connection.

        Commits when the block succeeds and rolls back when it raises.
        Driver errors are translated to the shared storage errors.

        Yields:
            Connection object from the pool.
        """
        if self.connection_pool is None:
            raise StorageError("Reconciliation database is not connected")

        connection = None
        try:
            connection = self.connection_pool.getconn()
            with connection:
                yield connection
        except TRANSIENT_ERRORS as e:
            logger.warning(f"Transient database error: {e}")
            raise TransientStorageError(str(e)) from e
        except psycopg2.Error as e:
            logger.error(f"Database error: {e}")
            raise StorageError(f"Database error: {e}") from e
        finally:
            if connection:
                self.connection_pool.putconn(connection)

    def reconcile(self) -> Tuple[int, int]:
        """
        Recompute vote counts and has-voted flags from the ballots table.

        Runs under an exclusive lock on ballots so no cast can commit between
        the count and the update.

        Returns:
            Tuple of (candidates_repaired, voters_repaired)
        """
        with self.get_connection() as conn:
            with conn.cursor() as cursor:
                cursor.execute(LOCK_LEDGER_SQL)
                cursor.execute(RECONCILE_CANDIDATES_SQL)
                candidates_repaired = cursor.rowcount
                cursor.execute(RECONCILE_VOTERS_SQL)
                voters_repaired = cursor.rowcount
        return candidates_repaired, voters_repaired

    def find_discrepancies(self) -> Dict[str, List[Dict]]:
        """Read-only check: rows whose counters disagree with the ledger."""
        with self.get_connection() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cursor:
                cursor.execute(CANDIDATE_DISCREPANCIES_SQL)
                candidates = [
                    {
                        "id": row["id"],
                        "voteCount": row["vote_count"],
                        "ledgerCount": row["ledger_count"],
                    }
                    for row in cursor.fetchall()
                ]
                cursor.execute(VOTER_DISCREPANCIES_SQL)
                voters = [
                    {
                        "id": row["id"],
                        "hasVoted": row["has_voted"],
                        "hasBallot": row["has_ballot"],
                    }
                    for row in cursor.fetchall()
                ]
        return {"candidates": candidates, "voters": voters}

    def close(self):
        """Close all pooled connections."""
        if self.connection_pool:
            self.connection_pool.closeall()
            logger.info("Database connection pool closed")
