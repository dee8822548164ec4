"""Tests for the vote casting service.

Covers the single-ballot rule, counter/ledger consistency, election reset,
the voting window and recovery from transient storage failures.
"""

import asyncio
from datetime import timedelta

import pytest

from evote.api.memory import MemoryTransaction
from evote.api.voting import VoteService
from evote.shared.errors import (
    ConflictError,
    ConflictReason,
    NotFoundError,
    TransientStorageError,
    VotingClosedError,
)
from evote.shared.models import (
    ELECTION_END_KEY,
    ELECTION_START_KEY,
    TallySource,
    VOTING_ENABLED_KEY,
    get_current_timestamp,
)

from tests.helpers import FlakyStore, candidate_counts, ledger_counts


async def voter_flag(store, voter_id):
    async with store.transaction() as tx:
        return (await tx.get_voter(voter_id)).has_voted


@pytest.mark.asyncio
class TestCastVote:
    """Scenarios for casting a single ballot."""

    async def test_first_vote_is_recorded(self, service, store, voters, candidates):
        """A voter casts for C1.

        Verifies:
        - Receipt carries the ballot id, candidate id and timestamp
        - C1's vote count is 1 and the voter is flagged
        """
        v1 = voters[0]
        c1, c2 = candidates[0], candidates[1]

        receipt = await service.cast_vote(v1.id, c1.id)

        assert receipt.candidate_id == c1.id
        assert receipt.ballot_id
        assert receipt.to_dict()["candidateId"] == c1.id

        counts = await candidate_counts(store)
        assert counts[c1.id] == 1
        assert counts[c2.id] == 0
        assert await voter_flag(store, v1.id) is True

        ballot = await service.find_by_voter(v1.id)
        assert ballot.id == receipt.ballot_id
        assert ballot.candidate_id == c1.id

    async def test_second_vote_is_refused(self, service, store, voters, candidates):
        """Voting again for a different candidate changes nothing."""
        v1 = voters[0]
        c1, c2 = candidates[0], candidates[1]
        await service.cast_vote(v1.id, c1.id)

        with pytest.raises(ConflictError) as exc_info:
            await service.cast_vote(v1.id, c2.id)

        assert exc_info.value.reason == ConflictReason.ALREADY_VOTED
        assert exc_info.value.message == "User has already voted"
        counts = await candidate_counts(store)
        assert counts[c1.id] == 1
        assert counts[c2.id] == 0
        assert await service.count_by_candidate(c2.id) == 0

    async def test_two_concurrent_casts_for_one_voter(self, service, store, voters, candidates):
        """Two simultaneous casts for V2, one per candidate.

        Verifies exactly one succeeds, exactly one counter moved and the
        loser left no ballot behind.
        """
        v2 = voters[1]
        c1, c2 = candidates[0], candidates[1]

        results = await asyncio.gather(
            service.cast_vote(v2.id, c1.id),
            service.cast_vote(v2.id, c2.id),
            return_exceptions=True
        )

        successes = [r for r in results if not isinstance(r, Exception)]
        failures = [r for r in results if isinstance(r, Exception)]
        assert len(successes) == 1
        assert len(failures) == 1
        assert isinstance(failures[0], ConflictError)

        counts = await candidate_counts(store)
        assert counts[c1.id] + counts[c2.id] == 1
        assert counts[successes[0].candidate_id] == 1
        assert counts == await ledger_counts(store)

    async def test_many_concurrent_casts_record_one_ballot(self, service, store, voters, candidates):
        """N concurrent casts for the same voter leave exactly one ballot."""
        voter = voters[2]
        attempts = 25

        results = await asyncio.gather(
            *[
                service.cast_vote(voter.id, candidates[i % len(candidates)].id)
                for i in range(attempts)
            ],
            return_exceptions=True
        )

        successes = [r for r in results if not isinstance(r, Exception)]
        assert len(successes) == 1
        assert all(isinstance(r, ConflictError) for r in results if isinstance(r, Exception))

        async with store.transaction() as tx:
            assert await tx.count_ballots() == 1
        assert sum((await candidate_counts(store)).values()) == 1

    async def test_unknown_candidate(self, service, store, voters, candidates):
        with pytest.raises(NotFoundError) as exc_info:
            await service.cast_vote(voters[0].id, 999)

        assert exc_info.value.message == "Candidate not found"
        assert await voter_flag(store, voters[0].id) is False
        assert await service.find_by_voter(voters[0].id) is None

    async def test_unknown_voter(self, service, candidates):
        with pytest.raises(NotFoundError) as exc_info:
            await service.cast_vote(999, candidates[0].id)

        assert exc_info.value.resource == "Voter"

    async def test_candidate_checked_before_voter_state(self, service, voters, candidates):
        """An already-voted voter naming an unknown candidate gets NotFound."""
        await service.cast_vote(voters[0].id, candidates[0].id)

        with pytest.raises(NotFoundError):
            await service.cast_vote(voters[0].id, 999)

    async def test_refused_vote_never_changes_counts(self, service, store, voters, candidates):
        """Repeated refused casts leave every counter where it was."""
        await service.cast_vote(voters[0].id, candidates[0].id)
        await service.cast_vote(voters[1].id, candidates[1].id)
        before = await candidate_counts(store)

        for candidate in candidates:
            with pytest.raises(ConflictError):
                await service.cast_vote(voters[0].id, candidate.id)

        assert await candidate_counts(store) == before

    async def test_duplicate_insert_rejected_when_flag_lags(
        self, service, store, voters, candidates, monkeypatch
    ):
        """The ledger's uniqueness rule catches a cast that slipped past both checks.

        The voter's flag is cleared and the ledger lookup stubbed out, so the
        only thing standing between the voter and a second ballot is the
        insert itself.
        """
        voter = voters[0]
        await service.cast_vote(voter.id, candidates[0].id)

        async with store.transaction() as tx:
            await tx.clear_voted_flags()

        async def no_ballot(self, voter_id):
            return None

        monkeypatch.setattr(MemoryTransaction, "find_ballot_by_voter", no_ballot)

        with pytest.raises(ConflictError) as exc_info:
            await service.cast_vote(voter.id, candidates[1].id)

        assert exc_info.value.reason == ConflictReason.DUPLICATE
        assert exc_info.value.message == "User has already voted"
        counts = await candidate_counts(store)
        assert counts[candidates[0].id] == 1
        assert counts[candidates[1].id] == 0


@pytest.mark.asyncio
class TestConsistency:
    """Vote counts always equal ballots per candidate."""

    async def test_counters_match_ledger_after_casts_and_reset(self, service, store, voters, candidates):
        for voter, candidate in zip(voters, [candidates[0], candidates[0], candidates[1], candidates[2]]):
            await service.cast_vote(voter.id, candidate.id)
            assert await candidate_counts(store) == await ledger_counts(store)

        await service.reset_election()
        assert await candidate_counts(store) == await ledger_counts(store)

        await service.cast_vote(voters[3].id, candidates[1].id)
        assert await candidate_counts(store) == await ledger_counts(store)

    async def test_tally_sources_agree(self, service, voters, candidates):
        await service.cast_vote(voters[0].id, candidates[2].id)
        await service.cast_vote(voters[1].id, candidates[2].id)
        await service.cast_vote(voters[2].id, candidates[0].id)

        counters = [(e.candidate.id, e.vote_count) for e in await service.tally(TallySource.COUNTERS)]
        ledger = [(e.candidate.id, e.vote_count) for e in await service.tally(TallySource.LEDGER)]
        assert counters == ledger


@pytest.mark.asyncio
class TestReset:
    """Tests for the admin election reset."""

    async def test_reset_clears_everything(self, service, store, voters, candidates):
        """Reset with ballots for V1 and V2, then both vote again.

        Verifies:
        - Tally is all zeros, ledger empty, no voter flagged
        - Both voters can cast new ballots afterwards
        """
        v1, v2 = voters[0], voters[1]
        await service.cast_vote(v1.id, candidates[0].id)
        await service.cast_vote(v2.id, candidates[1].id)

        result = await service.reset_election()

        assert result == {"ballotsDeleted": 2, "votersReset": 2, "candidatesReset": 2}
        assert all(e.vote_count == 0 for e in await service.tally())
        assert len(await service.tally()) == len(candidates)
        async with store.transaction() as tx:
            assert await tx.count_ballots() == 0
            assert await tx.count_voters(has_voted=True) == 0

        await service.cast_vote(v1.id, candidates[1].id)
        await service.cast_vote(v2.id, candidates[1].id)
        counts = await candidate_counts(store)
        assert counts[candidates[1].id] == 2
        assert counts[candidates[0].id] == 0

    async def test_reset_on_empty_election(self, service):
        result = await service.reset_election()
        assert result == {"ballotsDeleted": 0, "votersReset": 0, "candidatesReset": 0}


@pytest.mark.asyncio
class TestTally:
    """Tests for result ordering."""

    async def test_ordered_by_votes_then_id(self, service, voters, candidates):
        c1, c2, c3 = candidates
        await service.cast_vote(voters[0].id, c3.id)
        await service.cast_vote(voters[1].id, c3.id)
        await service.cast_vote(voters[2].id, c2.id)
        await service.cast_vote(voters[3].id, c1.id)

        tally = await service.tally()

        assert [e.candidate.id for e in tally] == [c3.id, c1.id, c2.id]
        assert [e.vote_count for e in tally] == [2, 1, 1]

    async def test_includes_candidates_without_votes(self, service, candidates):
        tally = await service.tally()
        assert [e.candidate.id for e in tally] == [c.id for c in candidates]
        assert all(e.vote_count == 0 for e in tally)

    async def test_repeatable(self, service, voters, candidates):
        await service.cast_vote(voters[0].id, candidates[1].id)

        first = [entry.to_dict() for entry in await service.tally()]
        second = [entry.to_dict() for entry in await service.tally()]
        assert first == second

    async def test_published_results_shape(self, service, voters, candidates):
        await service.cast_vote(voters[0].id, candidates[1].id)

        rows = await service.published_results(TallySource.LEDGER)

        assert rows[0] == {"candidate": candidates[1].summary(), "voteCount": 1}
        assert len(rows) == 3


@pytest.mark.asyncio
class TestVotingWindow:
    """Casts outside the configured election window are refused."""

    async def test_before_start(self, service, settings_registry, voters, candidates):
        opens = get_current_timestamp() + timedelta(hours=1)
        await settings_registry.create(ELECTION_START_KEY, opens.isoformat())

        with pytest.raises(VotingClosedError) as exc_info:
            await service.cast_vote(voters[0].id, candidates[0].id)

        assert exc_info.value.message.startswith("Voting has not started yet")
        assert await service.find_by_voter(voters[0].id) is None

    async def test_after_end(self, service, settings_registry, voters, candidates):
        closed = get_current_timestamp() - timedelta(minutes=5)
        await settings_registry.create(ELECTION_END_KEY, closed.isoformat())

        with pytest.raises(VotingClosedError) as exc_info:
            await service.cast_vote(voters[0].id, candidates[0].id)

        assert exc_info.value.message.startswith("Voting has ended")

    async def test_inside_window(self, service, settings_registry, voters, candidates):
        now = get_current_timestamp()
        await settings_registry.create(ELECTION_START_KEY, (now - timedelta(days=1)).isoformat())
        await settings_registry.create(ELECTION_END_KEY, (now + timedelta(days=1)).isoformat())

        receipt = await service.cast_vote(voters[0].id, candidates[0].id)
        assert receipt.candidate_id == candidates[0].id

    async def test_unset_bounds_leave_voting_open(self, service, settings_registry, voters, candidates):
        await settings_registry.create(ELECTION_START_KEY, None)
        await settings_registry.create(ELECTION_END_KEY, "")

        await service.cast_vote(voters[0].id, candidates[0].id)

    async def test_unreadable_bound_refuses_votes(self, service, settings_registry, voters, candidates):
        await settings_registry.create(ELECTION_END_KEY, "next tuesday")

        with pytest.raises(VotingClosedError) as exc_info:
            await service.cast_vote(voters[0].id, candidates[0].id)

        assert exc_info.value.message == "Voting window is misconfigured"
        assert await service.find_by_voter(voters[0].id) is None

    async def test_switched_off_refuses_votes(self, service, store, settings_registry, voters, candidates):
        """An admin closing voting wins over an open date window."""
        now = get_current_timestamp()
        await settings_registry.create(ELECTION_START_KEY, (now - timedelta(days=1)).isoformat())
        await settings_registry.create(VOTING_ENABLED_KEY, False)

        with pytest.raises(VotingClosedError) as exc_info:
            await service.cast_vote(voters[0].id, candidates[0].id)

        assert exc_info.value.message == "Voting is currently closed"
        assert await service.find_by_voter(voters[0].id) is None
        assert (await candidate_counts(store))[candidates[0].id] == 0

    @pytest.mark.parametrize("value", [True, "true", None])
    async def test_switched_on_allows_votes(self, service, settings_registry, voters, candidates, value):
        await settings_registry.create(VOTING_ENABLED_KEY, value)

        receipt = await service.cast_vote(voters[0].id, candidates[0].id)
        assert receipt.candidate_id == candidates[0].id

    async def test_reopening_allows_votes(self, service, settings_registry, voters, candidates):
        await settings_registry.create(VOTING_ENABLED_KEY, "false")
        with pytest.raises(VotingClosedError):
            await service.cast_vote(voters[0].id, candidates[0].id)

        await settings_registry.update(VOTING_ENABLED_KEY, True)

        await service.cast_vote(voters[0].id, candidates[0].id)


@pytest.mark.asyncio
class TestTransientFailures:
    """Retries and ambiguous commits."""

    async def test_retries_until_store_recovers(self, store, voters, candidates):
        flaky = FlakyStore(store, ["down", "down"])
        service = VoteService(flaky, max_attempts=3, retry_delay=0.0)

        await service.cast_vote(voters[0].id, candidates[0].id)

        assert flaky.calls == 3
        assert (await candidate_counts(store))[candidates[0].id] == 1

    async def test_gives_up_after_max_attempts(self, store, voters, candidates):
        flaky = FlakyStore(store, ["down"] * 3)
        service = VoteService(flaky, max_attempts=3, retry_delay=0.0)

        with pytest.raises(TransientStorageError):
            await service.cast_vote(voters[0].id, candidates[0].id)

        assert await ledger_counts(store) == {c.id: 0 for c in candidates}
        assert await voter_flag(store, voters[0].id) is False

    async def test_lost_commit_is_not_counted_twice(self, store, voters, candidates):
        """The commit lands but the acknowledgement is lost.

        The service finds its own ballot by id and reports success without
        casting again.
        """
        flaky = FlakyStore(store, ["lost_commit"])
        service = VoteService(flaky, max_attempts=3, retry_delay=0.0)

        receipt = await service.cast_vote(voters[0].id, candidates[0].id)

        assert (await candidate_counts(store))[candidates[0].id] == 1
        ballot = await service.find_by_voter(voters[0].id)
        assert ballot.id == receipt.ballot_id

    async def test_ambiguous_failure_without_commit_is_retried(self, store, voters, candidates):
        flaky = FlakyStore(store, ["unknown"])
        service = VoteService(flaky, max_attempts=3, retry_delay=0.0)

        await service.cast_vote(voters[0].id, candidates[0].id)

        # cast, ballot lookup, cast again
        assert flaky.calls == 3
        assert (await candidate_counts(store))[candidates[0].id] == 1

    async def test_unresolvable_outcome_is_surfaced(self, store, voters, candidates):
        """Commit outcome unknown and the lookup fails too."""
        flaky = FlakyStore(store, ["lost_commit", "down"])
        service = VoteService(flaky, max_attempts=3, retry_delay=0.0)

        with pytest.raises(TransientStorageError) as exc_info:
            await service.cast_vote(voters[0].id, candidates[0].id)

        assert exc_info.value.ambiguous is True
        # the ballot did land; reconciliation and the ledger agree
        assert await candidate_counts(store) == await ledger_counts(store)

    async def test_reset_is_retried(self, store, service, voters, candidates):
        await service.cast_vote(voters[0].id, candidates[0].id)
        flaky = FlakyStore(store, ["down"])

        result = await VoteService(flaky, retry_delay=0.0).reset_election()

        assert result["ballotsDeleted"] == 1
        assert await ledger_counts(store) == {c.id: 0 for c in candidates}
