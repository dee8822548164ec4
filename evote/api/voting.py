"""
Vote casting, election reset, reconciliation and result aggregation.

VoteService is the only writer of ballots. Every operation runs inside a
single storage transaction, so the ballot ledger, the candidates'
vote_count and the voters' has_voted flag change together or not at all.
"""
import asyncio
import logging
import math
import uuid
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from evote.api import metrics
from evote.shared.errors import (
    AlreadyVotedError,
    ConflictError,
    NotFoundError,
    TransientStorageError,
    VotingClosedError,
)
from evote.shared.models import (
    ELECTION_END_KEY,
    ELECTION_START_KEY,
    Ballot,
    BallotReceipt,
    TallyEntry,
    TallySource,
    VOTING_ENABLED_KEY,
    get_current_timestamp,
    sort_tally,
)

logger = logging.getLogger(__name__)


def _parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 setting value; naive values are taken as UTC."""
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _switched_off(value: Any) -> bool:
    """True for a votingEnabled value that turns voting off ("false", 0, False)."""
    if isinstance(value, str):
        return value.strip().lower() in ("false", "0", "no", "off")
    return value is not None and not value


def _percentage(part: int, whole: int) -> float:
    return round(part / whole * 100, 2) if whole > 0 else 0.0


class VoteService:
    """Enforces one ballot per voter and keeps the derived counters in step."""

    def __init__(self, store, cache=None, max_attempts: int = 3,
                 retry_delay: float = 0.1, backoff: float = 2.0):
        self.store = store
        self.cache = cache
        self.max_attempts = max(1, max_attempts)
        self.retry_delay = retry_delay
        self.backoff = backoff

    @classmethod
    def from_settings(cls, store, settings, cache=None) -> 'VoteService':
        return cls(
            store,
            cache=cache,
            max_attempts=settings.MAX_RETRY_ATTEMPTS,
            retry_delay=settings.RETRY_DELAY_SECONDS,
            backoff=settings.RETRY_BACKOFF,
        )

    def _delay(self, attempt: int) -> float:
        return self.retry_delay * (self.backoff ** (attempt - 1))

    async def _with_retry(self, operation: str, func: Callable[[], Awaitable[Any]]) -> Any:
        """
        Run an idempotent storage operation, retrying transient failures.

        Args:
            operation: Name used in logs and metrics
            func: Coroutine factory running one complete transaction

        Returns:
            Whatever func returns
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                return await func()
            except TransientStorageError as e:
                if attempt >= self.max_attempts:
                    logger.error(f"{operation} failed after {attempt} attempts: {e}")
                    raise
                metrics.storage_retries.labels(operation=operation).inc()
                delay = self._delay(attempt)
                logger.warning(
                    f"{operation} attempt {attempt} hit a transient failure, "
                    f"retrying in {delay:.2f}s: {e}"
                )
                await asyncio.sleep(delay)

    async def _invalidate_results(self):
        if self.cache is not None:
            await self.cache.invalidate()

    # ------------------------------------------------------------------
    # Vote casting
    # ------------------------------------------------------------------

    async def cast_vote(self, voter_id: int, candidate_id: int) -> BallotReceipt:
        """
        Record one ballot for a voter.

        Preconditions are checked in order: the election window, the
        candidate, the voter's has_voted flag, then the ledger. The ballot
        insert, the counter increment and the flag update share one
        transaction; the ledger's unique constraint settles races between
        concurrent casts for the same voter.

        Args:
            voter_id: Authenticated voter
            candidate_id: Chosen candidate

        Returns:
            BallotReceipt for the new ballot

        Raises:
            VotingClosedError: Outside the configured election window
            NotFoundError: Unknown candidate or voter
            ConflictError: The voter already holds a ballot
            TransientStorageError: Storage unreachable after retries, or the
                outcome of a commit could not be determined
        """
        ballot = Ballot(
            id=str(uuid.uuid4()),
            voter_id=voter_id,
            candidate_id=candidate_id,
            cast_at=get_current_timestamp(),
        )

        attempt = 0
        while True:
            attempt += 1
            try:
                await self._cast_once(ballot)
                break
            except TransientStorageError as e:
                if e.ambiguous and await self._ballot_committed(ballot):
                    logger.info(f"Ballot {ballot.id} was committed before the connection failed")
                    break
                if attempt >= self.max_attempts:
                    metrics.vote_rejections.labels(reason="storage").inc()
                    logger.error(f"Vote cast for voter {voter_id} failed after {attempt} attempts: {e}")
                    raise
                metrics.storage_retries.labels(operation="cast_vote").inc()
                await asyncio.sleep(self._delay(attempt))
            except ConflictError as e:
                metrics.vote_rejections.labels(reason=e.reason.value).inc()
                logger.info(f"Vote refused for voter {voter_id}: {e.reason.value}")
                raise
            except NotFoundError as e:
                metrics.vote_rejections.labels(reason="not_found").inc()
                logger.info(f"Vote refused for voter {voter_id}: {e.message}")
                raise
            except VotingClosedError:
                metrics.vote_rejections.labels(reason="closed").inc()
                raise

        metrics.votes_cast.labels(candidate_id=str(candidate_id)).inc()
        logger.info(f"Ballot recorded: id={ballot.id}, voter={voter_id}, candidate={candidate_id}")
        await self._invalidate_results()
        return BallotReceipt.from_ballot(ballot)

    async def _cast_once(self, ballot: Ballot) -> None:
        async with self.store.transaction() as tx:
            await self._check_voting_window(tx)

            if await tx.get_candidate(ballot.candidate_id) is None:
                raise NotFoundError("Candidate")

            voter = await tx.get_voter(ballot.voter_id)
            if voter is None:
                raise NotFoundError("Voter")
            if voter.has_voted:
                raise AlreadyVotedError()

            if await tx.find_ballot_by_voter(ballot.voter_id) is not None:
                raise AlreadyVotedError()

            await tx.insert_ballot(ballot)
            await tx.increment_vote_count(ballot.candidate_id)
            await tx.mark_voted(ballot.voter_id)

    async def _ballot_committed(self, ballot: Ballot) -> bool:
        """Look a ballot up by id after a commit failed mid-flight."""
        try:
            async with self.store.transaction() as tx:
                return await tx.get_ballot(ballot.id) is not None
        except TransientStorageError as e:
            metrics.vote_rejections.labels(reason="outcome_unknown").inc()
            logger.error(
                f"Outcome of ballot {ballot.id} for voter {ballot.voter_id} is unknown, "
                f"reconciliation required: {e}"
            )
            raise TransientStorageError(
                "Vote outcome unknown, check your ballot before voting again",
                ambiguous=True
            ) from e

    async def _check_voting_window(self, tx) -> None:
        enabled_setting = await tx.get_setting(VOTING_ENABLED_KEY)
        if enabled_setting and _switched_off(enabled_setting.value):
            raise VotingClosedError("Voting is currently closed")

        start_setting = await tx.get_setting(ELECTION_START_KEY)
        end_setting = await tx.get_setting(ELECTION_END_KEY)
        try:
            start = _parse_timestamp(start_setting.value) if start_setting else None
            end = _parse_timestamp(end_setting.value) if end_setting else None
        except (TypeError, ValueError) as e:
            logger.error(f"Unreadable voting window setting: {e}")
            raise VotingClosedError("Voting window is misconfigured") from e
        now = get_current_timestamp()

        if start and now < start:
            raise VotingClosedError(f"Voting has not started yet. Opens at {start.isoformat()}")
        if end and now > end:
            raise VotingClosedError(f"Voting has ended. Closed at {end.isoformat()}")

    # ------------------------------------------------------------------
    # Admin operations
    # ------------------------------------------------------------------

    async def reset_election(self) -> Dict[str, int]:
        """
        Delete every ballot, clear every has_voted flag and zero every counter.

        Runs as one transaction holding the ledger lock, so no cast can land
        between the delete and the counter reset.
        """
        async def reset():
            async with self.store.transaction() as tx:
                await tx.lock_ledger()
                ballots = await tx.delete_all_ballots()
                voters = await tx.clear_voted_flags()
                candidates = await tx.zero_vote_counts()
            return {
                "ballotsDeleted": ballots,
                "votersReset": voters,
                "candidatesReset": candidates,
            }

        result = await self._with_retry("reset_election", reset)
        metrics.election_resets.inc()
        logger.warning(
            f"Election reset: {result['ballotsDeleted']} ballots deleted, "
            f"{result['votersReset']} voters and {result['candidatesReset']} candidates reset"
        )
        await self._invalidate_results()
        return result

    async def reconcile(self) -> Dict[str, int]:
        """Re-derive vote_count and has_voted from the ledger."""
        async def repair():
            async with self.store.transaction() as tx:
                await tx.lock_ledger()
                return await tx.repair_counters()

        candidates_fixed, voters_fixed = await self._with_retry("reconcile", repair)
        metrics.counter_repairs.labels(kind="candidate").inc(candidates_fixed)
        metrics.counter_repairs.labels(kind="voter").inc(voters_fixed)
        if candidates_fixed or voters_fixed:
            logger.warning(
                f"Reconciliation repaired {candidates_fixed} candidates and {voters_fixed} voters"
            )
            await self._invalidate_results()
        else:
            logger.info("Reconciliation found no drift")
        return {"candidatesRepaired": candidates_fixed, "votersRepaired": voters_fixed}

    async def find_discrepancies(self) -> Dict[str, List[Dict]]:
        async def read():
            async with self.store.transaction() as tx:
                return await tx.find_discrepancies()

        return await self._with_retry("find_discrepancies", read)

    # ------------------------------------------------------------------
    # Read path
    # ------------------------------------------------------------------

    async def tally(self, source: TallySource = TallySource.COUNTERS) -> List[TallyEntry]:
        """
        Candidates with their vote counts, most votes first, ties by id.

        Args:
            source: COUNTERS reads vote_count, LEDGER counts ballots

        Returns:
            list: Ordered tally entries, zero-vote candidates included
        """
        async def read():
            async with self.store.transaction() as tx:
                candidates = await tx.list_candidates()
                if source == TallySource.LEDGER:
                    counts = await tx.ballot_counts()
                    return [TallyEntry(c, counts.get(c.id, 0)) for c in candidates]
                return [TallyEntry(c, c.vote_count) for c in candidates]

        return sort_tally(await self._with_retry("tally", read))

    async def published_results(self, source: TallySource = TallySource.COUNTERS) -> List[Dict]:
        """Tally projection served to clients, read through the cache when enabled."""
        generation = None
        if self.cache is not None:
            # Taken before the tally is read so a concurrent write orphans our entry
            generation = await self.cache.generation()
        if generation is not None:
            cached = await self.cache.get(source.value, generation)
            if cached is not None:
                return cached

        rows = [entry.to_dict() for entry in await self.tally(source)]
        if generation is not None:
            await self.cache.set(source.value, generation, rows)
        return rows

    async def find_by_voter(self, voter_id: int) -> Optional[Ballot]:
        async def read():
            async with self.store.transaction() as tx:
                return await tx.find_ballot_by_voter(voter_id)

        return await self._with_retry("find_by_voter", read)

    async def count_by_candidate(self, candidate_id: int) -> int:
        async def read():
            async with self.store.transaction() as tx:
                return await tx.count_by_candidate(candidate_id)

        return await self._with_retry("count_by_candidate", read)

    async def my_vote(self, voter_id: int) -> Dict:
        async def read():
            async with self.store.transaction() as tx:
                ballot = await tx.find_ballot_by_voter(voter_id)
                if ballot is None:
                    raise NotFoundError("Vote", "No vote found")
                candidate = await tx.get_candidate(ballot.candidate_id)
            return {
                "id": ballot.id,
                "candidate": candidate.summary() if candidate else None,
                "timestamp": ballot.cast_at.isoformat(),
            }

        return await self._with_retry("my_vote", read)

    async def _describe(self, tx, ballots: List[Ballot]) -> List[Dict]:
        rows = []
        for ballot in ballots:
            voter = await tx.get_voter(ballot.voter_id)
            candidate = await tx.get_candidate(ballot.candidate_id)
            rows.append({
                "id": ballot.id,
                "voter": voter.summary() if voter else None,
                "candidate": candidate.summary() if candidate else None,
                "timestamp": ballot.cast_at.isoformat(),
            })
        return rows

    async def list_recent(self, page: int = 1, limit: int = 25) -> Tuple[List[Dict], Dict]:
        """
        One page of the ledger, newest ballot first.

        Returns:
            tuple: (ballot rows, pagination dict)
        """
        async def read():
            async with self.store.transaction() as tx:
                ballots = await tx.list_recent(limit, (page - 1) * limit)
                total = await tx.count_ballots()
                return await self._describe(tx, ballots), total

        rows, total = await self._with_retry("list_recent", read)
        pagination = {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": math.ceil(total / limit) if limit else 0,
        }
        return rows, pagination

    async def vote_stats(self) -> Dict:
        async def read():
            async with self.store.transaction() as tx:
                return (
                    await tx.count_ballots(),
                    await tx.count_voters(),
                    await tx.count_voters(has_voted=True),
                )

        total_votes, total_users, voted_users = await self._with_retry("vote_stats", read)
        ledger = await self.tally(TallySource.LEDGER)
        return {
            "totalVotes": total_votes,
            "totalUsers": total_users,
            "votedUsers": voted_users,
            "turnoutPercentage": _percentage(voted_users, total_users),
            "candidateStats": [
                {"candidate": e.candidate.summary(), "votes": e.vote_count}
                for e in ledger if e.vote_count > 0
            ],
        }

    async def admin_stats(self) -> Dict:
        async def read():
            async with self.store.transaction() as tx:
                counts = {
                    "total": await tx.count_voters(),
                    "admins": await tx.count_voters(is_admin=True),
                    "voters": await tx.count_voters(is_admin=False),
                    "voted": await tx.count_voters(has_voted=True),
                    "candidates": await tx.count_candidates(),
                    "ballots": await tx.count_ballots(),
                }
                recent = await self._describe(tx, await tx.list_recent(10, 0))
                return counts, recent

        counts, recent = await self._with_retry("admin_stats", read)
        ledger = await self.tally(TallySource.LEDGER)
        return {
            "users": {
                "total": counts["total"],
                "admins": counts["admins"],
                "voters": counts["voters"],
                "voted": counts["voted"],
                "turnoutPercentage": _percentage(counts["voted"], counts["voters"]),
            },
            "candidates": {"total": counts["candidates"]},
            "votes": {
                "total": counts["ballots"],
                "distribution": [
                    {
                        "candidate": e.candidate.name,
                        "party": e.candidate.party,
                        "votes": e.vote_count,
                    }
                    for e in ledger if e.vote_count > 0
                ],
            },
            "recentVotes": recent,
        }
