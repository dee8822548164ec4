"""PostgreSQL storage backend built on an asyncpg connection pool."""
import asyncio
import json
import logging
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, List, Optional, Tuple

import asyncpg

from evote.shared.errors import (
    ConflictError,
    ConflictReason,
    DuplicateBallotError,
    DuplicateVoterError,
    NotFoundError,
    StorageError,
    TransientStorageError,
)
from evote.shared.models import Ballot, Candidate, Setting, Voter
from evote.shared.schema import (
    CANDIDATE_DISCREPANCIES_SQL,
    LOCK_LEDGER_SQL,
    RECONCILE_CANDIDATES_SQL,
    RECONCILE_VOTERS_SQL,
    SCHEMA_STATEMENTS,
    VOTER_DISCREPANCIES_SQL,
)

logger = logging.getLogger(__name__)

# Failures after which the same transaction may succeed if run again
TRANSIENT_ERRORS = (
    asyncpg.exceptions.PostgresConnectionError,
    asyncpg.exceptions.InterfaceError,
    asyncpg.exceptions.SerializationError,
    asyncpg.exceptions.DeadlockDetectedError,
    asyncpg.exceptions.QueryCanceledError,
    asyncpg.exceptions.TooManyConnectionsError,
    asyncio.TimeoutError,
    OSError,
)

CANDIDATE_COLUMNS = ("name", "party", "position", "bio", "image_url")
VOTER_COLUMNS = ("name", "email", "phone", "is_admin")

VOTER_CONSTRAINTS = {
    "voters_voter_code_key": "voter_code",
    "voters_email_key": "email",
    "voters_phone_key": "phone",
}


def _rowcount(status: str) -> int:
    """Parse the row count out of a command tag such as 'UPDATE 3'."""
    try:
        return int(status.split()[-1])
    except (AttributeError, IndexError, ValueError):
        return 0


def _voter(row) -> Voter:
    return Voter(
        id=row["id"],
        name=row["name"],
        voter_code=row["voter_code"],
        email=row["email"],
        phone=row["phone"],
        is_admin=row["is_admin"],
        has_voted=row["has_voted"],
        created_at=row["created_at"],
    )


def _candidate(row) -> Candidate:
    return Candidate(
        id=row["id"],
        name=row["name"],
        party=row["party"],
        position=row["position"],
        bio=row["bio"],
        image_url=row["image_url"],
        vote_count=row["vote_count"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _ballot(row) -> Ballot:
    return Ballot(
        id=str(row["id"]),
        voter_id=row["voter_id"],
        candidate_id=row["candidate_id"],
        cast_at=row["cast_at"],
    )


def _setting(row) -> Setting:
    value = row["value"]
    return Setting(
        key=row["key"],
        value=json.loads(value) if value is not None else None,
        description=row["description"],
    )


class PostgresTransaction:
    """Queries executed on one connection inside an open transaction."""

    def __init__(self, conn: asyncpg.Connection):
        self.conn = conn

    # Candidates

    async def get_candidate(self, candidate_id: int) -> Optional[Candidate]:
        row = await self.conn.fetchrow("SELECT * FROM candidates WHERE id = $1", candidate_id)
        return _candidate(row) if row else None

    async def list_candidates(self, position: Optional[str] = None) -> List[Candidate]:
        if position is None:
            rows = await self.conn.fetch(
                "SELECT * FROM candidates ORDER BY position, vote_count DESC, id"
            )
        else:
            rows = await self.conn.fetch(
                """
                SELECT * FROM candidates
                WHERE position = $1
                ORDER BY position, vote_count DESC, id
                """,
                position
            )
        return [_candidate(row) for row in rows]

    async def count_candidates(self) -> int:
        return await self.conn.fetchval("SELECT COUNT(*) FROM candidates")

    async def insert_candidate(self, name: str, party: str, position: str,
                               bio: str = "", image_url: Optional[str] = None) -> Candidate:
        row = await self.conn.fetchrow(
            """
            INSERT INTO candidates (name, party, position, bio, image_url)
            VALUES ($1, $2, $3, $4, $5)
            RETURNING *
            """,
            name, party, position, bio, image_url
        )
        return _candidate(row)

    async def update_candidate(self, candidate_id: int, fields: Dict) -> Optional[Candidate]:
        changes = [(k, v) for k, v in fields.items() if k in CANDIDATE_COLUMNS]
        if not changes:
            return await self.get_candidate(candidate_id)
        assignments = ", ".join(f"{col} = ${i}" for i, (col, _) in enumerate(changes, start=2))
        row = await self.conn.fetchrow(
            f"UPDATE candidates SET {assignments}, updated_at = NOW() WHERE id = $1 RETURNING *",
            candidate_id, *[v for _, v in changes]
        )
        return _candidate(row) if row else None

    async def delete_candidate(self, candidate_id: int) -> bool:
        try:
            status = await self.conn.execute("DELETE FROM candidates WHERE id = $1", candidate_id)
        except asyncpg.exceptions.ForeignKeyViolationError:
            raise ConflictError(ConflictReason.HAS_VOTES, "Cannot delete candidate with existing votes")
        return _rowcount(status) > 0

    async def increment_vote_count(self, candidate_id: int) -> None:
        updated = await self.conn.fetchval(
            "UPDATE candidates SET vote_count = vote_count + 1 WHERE id = $1 RETURNING id",
            candidate_id
        )
        if updated is None:
            raise NotFoundError("Candidate")

    async def zero_vote_counts(self) -> int:
        status = await self.conn.execute(
            "UPDATE candidates SET vote_count = 0, updated_at = NOW() WHERE vote_count <> 0"
        )
        return _rowcount(status)

    # Voters

    async def get_voter(self, voter_id: int) -> Optional[Voter]:
        row = await self.conn.fetchrow("SELECT * FROM voters WHERE id = $1", voter_id)
        return _voter(row) if row else None

    async def find_registration_conflict(self, voter_code: Optional[str], email: Optional[str],
                                         phone: Optional[str],
                                         exclude_id: Optional[int] = None) -> Optional[str]:
        row = await self.conn.fetchrow(
            """
            SELECT voter_code = $1 AS voter_code, email = $2 AS email, phone = $3 AS phone
            FROM voters
            WHERE (voter_code = $1 OR email = $2 OR phone = $3)
              AND ($4::BIGINT IS NULL OR id <> $4)
            LIMIT 1
            """,
            voter_code, email, phone, exclude_id
        )
        if row is None:
            return None
        for field in ("voter_code", "email", "phone"):
            if row[field]:
                return field
        return None

    async def insert_voter(self, name: str, voter_code: str, email: str, phone: str,
                           is_admin: bool = False) -> Voter:
        try:
            row = await self.conn.fetchrow(
                """
                INSERT INTO voters (name, voter_code, email, phone, is_admin)
                VALUES ($1, $2, $3, $4, $5)
                RETURNING *
                """,
                name, voter_code, email, phone, is_admin
            )
        except asyncpg.exceptions.UniqueViolationError as e:
            raise DuplicateVoterError(VOTER_CONSTRAINTS.get(e.constraint_name, ""))
        return _voter(row)

    async def update_voter(self, voter_id: int, fields: Dict) -> Optional[Voter]:
        changes = [(k, v) for k, v in fields.items() if k in VOTER_COLUMNS]
        if not changes:
            return await self.get_voter(voter_id)
        assignments = ", ".join(f"{col} = ${i}" for i, (col, _) in enumerate(changes, start=2))
        try:
            row = await self.conn.fetchrow(
                f"UPDATE voters SET {assignments} WHERE id = $1 RETURNING *",
                voter_id, *[v for _, v in changes]
            )
        except asyncpg.exceptions.UniqueViolationError as e:
            raise DuplicateVoterError(VOTER_CONSTRAINTS.get(e.constraint_name, ""))
        return _voter(row) if row else None

    async def delete_voter(self, voter_id: int) -> bool:
        try:
            status = await self.conn.execute("DELETE FROM voters WHERE id = $1", voter_id)
        except asyncpg.exceptions.ForeignKeyViolationError:
            raise ConflictError(ConflictReason.HAS_VOTES, "Cannot delete user who has already voted")
        return _rowcount(status) > 0

    async def list_voters(self, limit: int, offset: int) -> List[Voter]:
        rows = await self.conn.fetch(
            "SELECT * FROM voters ORDER BY created_at DESC, id DESC LIMIT $1 OFFSET $2",
            limit, offset
        )
        return [_voter(row) for row in rows]

    async def count_voters(self, has_voted: Optional[bool] = None,
                           is_admin: Optional[bool] = None) -> int:
        return await self.conn.fetchval(
            """
            SELECT COUNT(*) FROM voters
            WHERE ($1::BOOLEAN IS NULL OR has_voted = $1)
              AND ($2::BOOLEAN IS NULL OR is_admin = $2)
            """,
            has_voted, is_admin
        )

    async def mark_voted(self, voter_id: int) -> None:
        updated = await self.conn.fetchval(
            "UPDATE voters SET has_voted = TRUE WHERE id = $1 RETURNING id", voter_id
        )
        if updated is None:
            raise NotFoundError("Voter")

    async def clear_voted_flags(self) -> int:
        status = await self.conn.execute("UPDATE voters SET has_voted = FALSE WHERE has_voted")
        return _rowcount(status)

    # Ballot ledger

    async def insert_ballot(self, ballot: Ballot) -> None:
        try:
            await self.conn.execute(
                """
                INSERT INTO ballots (id, voter_id, candidate_id, cast_at)
                VALUES ($1, $2, $3, $4)
                """,
                uuid.UUID(ballot.id), ballot.voter_id, ballot.candidate_id, ballot.cast_at
            )
        except asyncpg.exceptions.UniqueViolationError as e:
            if e.constraint_name == "ballots_voter_id_key":
                raise DuplicateBallotError()
            raise StorageError(f"Ballot id collision: {e}")
        except asyncpg.exceptions.ForeignKeyViolationError as e:
            if "candidate" in (e.constraint_name or ""):
                raise NotFoundError("Candidate")
            raise NotFoundError("Voter")

    async def find_ballot_by_voter(self, voter_id: int) -> Optional[Ballot]:
        row = await self.conn.fetchrow("SELECT * FROM ballots WHERE voter_id = $1", voter_id)
        return _ballot(row) if row else None

    async def get_ballot(self, ballot_id: str) -> Optional[Ballot]:
        row = await self.conn.fetchrow("SELECT * FROM ballots WHERE id = $1", uuid.UUID(ballot_id))
        return _ballot(row) if row else None

    async def count_by_candidate(self, candidate_id: int) -> int:
        return await self.conn.fetchval(
            "SELECT COUNT(*) FROM ballots WHERE candidate_id = $1", candidate_id
        )

    async def count_ballots(self) -> int:
        return await self.conn.fetchval("SELECT COUNT(*) FROM ballots")

    async def ballot_counts(self) -> Dict[int, int]:
        rows = await self.conn.fetch(
            "SELECT candidate_id, COUNT(*) AS n FROM ballots GROUP BY candidate_id"
        )
        return {row["candidate_id"]: row["n"] for row in rows}

    async def list_recent(self, limit: int, offset: int) -> List[Ballot]:
        rows = await self.conn.fetch(
            "SELECT * FROM ballots ORDER BY cast_at DESC, id DESC LIMIT $1 OFFSET $2",
            limit, offset
        )
        return [_ballot(row) for row in rows]

    async def delete_all_ballots(self) -> int:
        status = await self.conn.execute("DELETE FROM ballots")
        return _rowcount(status)

    # Maintenance

    async def lock_ledger(self) -> None:
        await self.conn.execute(LOCK_LEDGER_SQL)

    async def repair_counters(self) -> Tuple[int, int]:
        candidates_fixed = _rowcount(await self.conn.execute(RECONCILE_CANDIDATES_SQL))
        voters_fixed = _rowcount(await self.conn.execute(RECONCILE_VOTERS_SQL))
        return candidates_fixed, voters_fixed

    async def find_discrepancies(self) -> Dict[str, List[Dict]]:
        candidate_rows = await self.conn.fetch(CANDIDATE_DISCREPANCIES_SQL)
        voter_rows = await self.conn.fetch(VOTER_DISCREPANCIES_SQL)
        return {
            "candidates": [
                {"id": r["id"], "voteCount": r["vote_count"], "ledgerCount": r["ledger_count"]}
                for r in candidate_rows
            ],
            "voters": [
                {"id": r["id"], "hasVoted": r["has_voted"], "hasBallot": r["has_ballot"]}
                for r in voter_rows
            ],
        }

    # Settings

    async def list_settings(self) -> List[Setting]:
        rows = await self.conn.fetch("SELECT * FROM settings ORDER BY key")
        return [_setting(row) for row in rows]

    async def get_setting(self, key: str) -> Optional[Setting]:
        row = await self.conn.fetchrow("SELECT * FROM settings WHERE key = $1", key)
        return _setting(row) if row else None

    async def insert_setting(self, setting: Setting) -> Setting:
        try:
            row = await self.conn.fetchrow(
                """
                INSERT INTO settings (key, value, description)
                VALUES ($1, $2::jsonb, $3)
                RETURNING *
                """,
                setting.key, json.dumps(setting.value), setting.description
            )
        except asyncpg.exceptions.UniqueViolationError:
            raise ConflictError(ConflictReason.ALREADY_EXISTS, "Setting key already exists")
        return _setting(row)

    async def update_setting(self, key: str, value) -> Optional[Setting]:
        row = await self.conn.fetchrow(
            """
            UPDATE settings SET value = $2::jsonb, updated_at = NOW()
            WHERE key = $1
            RETURNING *
            """,
            key, json.dumps(value)
        )
        return _setting(row) if row else None

    async def delete_setting(self, key: str) -> bool:
        status = await self.conn.execute("DELETE FROM settings WHERE key = $1", key)
        return _rowcount(status) > 0


class PostgresStore:
    """Async PostgreSQL storage manager."""

    def __init__(self, dsn: str, min_size: int = 5, max_size: int = 20,
                 command_timeout: float = 10.0, create_schema: bool = True):
        self.dsn = dsn
        self.min_size = min_size
        self.max_size = max_size
        self.command_timeout = command_timeout
        self.create_schema = create_schema
        self.pool: Optional[asyncpg.Pool] = None

    @classmethod
    def from_settings(cls, settings) -> 'PostgresStore':
        return cls(
            settings.postgres_dsn,
            min_size=settings.POSTGRES_POOL_MIN_SIZE,
            max_size=settings.POSTGRES_POOL_MAX_SIZE,
            command_timeout=settings.POSTGRES_COMMAND_TIMEOUT,
            create_schema=settings.AUTO_CREATE_SCHEMA,
        )

    async def initialize(self):
        """Initialize database connection pool and schema."""
        try:
            self.pool = await asyncpg.create_pool(
                self.dsn,
                min_size=self.min_size,
                max_size=self.max_size,
                command_timeout=self.command_timeout
            )
            logger.info("PostgreSQL connection pool initialized successfully")

            async with self.pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
                if self.create_schema:
                    async with conn.transaction():
                        for statement in SCHEMA_STATEMENTS:
                            await conn.execute(statement)
                    logger.info("PostgreSQL schema verified")

        except Exception as e:
            logger.error(f"Failed to initialize PostgreSQL connection pool: {e}")
            raise

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[PostgresTransaction]:
        """
        Run a block inside one database transaction.

        Driver failures are raised as TransientStorageError (retryable) or
        StorageError. A failure while committing is flagged ambiguous since
        the server may have applied the transaction before the link dropped.
        """
        if self.pool is None:
            raise StorageError("PostgreSQL store is not initialized")

        try:
            conn = await self.pool.acquire()
        except TRANSIENT_ERRORS as e:
            raise TransientStorageError(f"Could not acquire connection: {e}") from e

        committing = False
        try:
            tx = conn.transaction()
            await tx.start()
            try:
                yield PostgresTransaction(conn)
            except BaseException:
                await self._rollback(tx)
                raise
            committing = True
            await tx.commit()
        except TRANSIENT_ERRORS as e:
            logger.warning(f"Transient PostgreSQL failure (committing={committing}): {e}")
            raise TransientStorageError(str(e), ambiguous=committing) from e
        except asyncpg.exceptions.PostgresError as e:
            logger.error(f"PostgreSQL error: {e}")
            raise StorageError(f"Database error: {e}") from e
        finally:
            await self.pool.release(conn)

    async def _rollback(self, tx):
        try:
            await tx.rollback()
        except TRANSIENT_ERRORS as e:
            logger.warning(f"Rollback failed, connection will be discarded: {e}")

    async def check_health(self) -> bool:
        """
        Check PostgreSQL connection health.

        Returns:
            bool: True if healthy, False otherwise
        """
        try:
            if not self.pool:
                return False
            async with self.pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
                return True
        except Exception as e:
            logger.error(f"PostgreSQL health check failed: {e}")
            return False

    async def close(self):
        """Close database connection pool."""
        try:
            if self.pool:
                await self.pool.close()
                logger.info("PostgreSQL connection pool closed successfully")
        except Exception as e:
            logger.error(f"Error closing PostgreSQL connection pool: {e}")
