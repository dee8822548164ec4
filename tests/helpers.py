"""Helpers shared by test modules."""

from contextlib import asynccontextmanager
from typing import Dict

from jose import jwt

from evote.api.memory import MemoryStore
from evote.shared.errors import TransientStorageError
from evote.shared.models import Voter

TEST_SECRET = "test-secret"


def make_token(voter_id: int, secret: str = TEST_SECRET) -> str:
    """Sign a bearer token the way the identity provider does."""
    return jwt.encode({"id": voter_id}, secret, algorithm="HS256")


def auth_headers(voter: Voter) -> Dict[str, str]:
    return {"Authorization": f"Bearer {make_token(voter.id)}"}


async def candidate_counts(store: MemoryStore) -> Dict[int, int]:
    """Denormalized vote_count per candidate."""
    async with store.transaction() as tx:
        return {c.id: c.vote_count for c in await tx.list_candidates()}


async def ledger_counts(store: MemoryStore) -> Dict[int, int]:
    """Ballots per candidate, zero for candidates without ballots."""
    async with store.transaction() as tx:
        counts = await tx.ballot_counts()
        return {c.id: counts.get(c.id, 0) for c in await tx.list_candidates()}


class FlakyStore:
    """Wraps a store and fails transactions according to a script.

    Each call to transaction() consumes the next step:
    - "down": fail before anything is applied (safe to retry)
    - "unknown": fail ambiguously before anything is applied
    - "lost_commit": apply the transaction, then fail ambiguously
    - None: pass through
    """

    def __init__(self, inner, script):
        self.inner = inner
        self.script = list(script)
        self.calls = 0

    async def initialize(self):
        await self.inner.initialize()

    async def close(self):
        await self.inner.close()

    async def check_health(self) -> bool:
        return await self.inner.check_health()

    @asynccontextmanager
    async def transaction(self):
        self.calls += 1
        step = self.script.pop(0) if self.script else None
        if step == "down":
            raise TransientStorageError("connection refused")
        if step == "unknown":
            raise TransientStorageError("connection reset during commit", ambiguous=True)
        async with self.inner.transaction() as tx:
            yield tx
        if step == "lost_commit":
            raise TransientStorageError("connection reset during commit", ambiguous=True)
