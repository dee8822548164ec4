"""
In-process storage backend.

Implements the same transaction contract as the PostgreSQL store. Whole
transactions are serialized behind one asyncio.Lock and work on a shallow
copy of the committed state, which replaces it only when the transaction
body finishes without raising. Records are never mutated in place, so the
shallow copy is enough for rollback.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field, replace
from typing import AsyncIterator, Dict, List, Optional, Tuple

from evote.shared.errors import (
    ConflictError,
    ConflictReason,
    DuplicateBallotError,
    DuplicateVoterError,
    NotFoundError,
)
from evote.shared.models import Ballot, Candidate, Setting, Voter, get_current_timestamp

logger = logging.getLogger(__name__)

CANDIDATE_FIELDS = ("name", "party", "position", "bio", "image_url")
VOTER_FIELDS = ("name", "email", "phone", "is_admin")


@dataclass
class _State:
    voters: Dict[int, Voter] = field(default_factory=dict)
    candidates: Dict[int, Candidate] = field(default_factory=dict)
    # keyed by voter id: one ballot per voter
    ballots: Dict[int, Ballot] = field(default_factory=dict)
    settings: Dict[str, Setting] = field(default_factory=dict)
    next_voter_id: int = 1
    next_candidate_id: int = 1

    def copy(self) -> '_State':
        return _State(
            voters=dict(self.voters),
            candidates=dict(self.candidates),
            ballots=dict(self.ballots),
            settings=dict(self.settings),
            next_voter_id=self.next_voter_id,
            next_candidate_id=self.next_candidate_id,
        )


class MemoryTransaction:
    """Operations available inside a memory store transaction."""

    def __init__(self, state: _State):
        self._state = state

    # Candidates

    async def get_candidate(self, candidate_id: int) -> Optional[Candidate]:
        return self._state.candidates.get(candidate_id)

    async def list_candidates(self, position: Optional[str] = None) -> List[Candidate]:
        candidates = [
            c for c in self._state.candidates.values()
            if position is None or c.position == position
        ]
        return sorted(candidates, key=lambda c: (c.position, -c.vote_count, c.id))

    async def count_candidates(self) -> int:
        return len(self._state.candidates)

    async def insert_candidate(self, name: str, party: str, position: str,
                               bio: str = "", image_url: Optional[str] = None) -> Candidate:
        candidate = Candidate(
            id=self._state.next_candidate_id,
            name=name,
            party=party,
            position=position,
            bio=bio,
            image_url=image_url,
        )
        self._state.candidates[candidate.id] = candidate
        self._state.next_candidate_id += 1
        return candidate

    async def update_candidate(self, candidate_id: int, fields: Dict) -> Optional[Candidate]:
        candidate = self._state.candidates.get(candidate_id)
        if candidate is None:
            return None
        changes = {k: v for k, v in fields.items() if k in CANDIDATE_FIELDS}
        candidate = replace(candidate, updated_at=get_current_timestamp(), **changes)
        self._state.candidates[candidate_id] = candidate
        return candidate

    async def delete_candidate(self, candidate_id: int) -> bool:
        if any(b.candidate_id == candidate_id for b in self._state.ballots.values()):
            raise ConflictError(ConflictReason.HAS_VOTES, "Cannot delete candidate with existing votes")
        return self._state.candidates.pop(candidate_id, None) is not None

    async def increment_vote_count(self, candidate_id: int) -> None:
        candidate = self._state.candidates.get(candidate_id)
        if candidate is None:
            raise NotFoundError("Candidate")
        self._state.candidates[candidate_id] = replace(
            candidate, vote_count=candidate.vote_count + 1
        )

    async def zero_vote_counts(self) -> int:
        changed = 0
        for cid, candidate in list(self._state.candidates.items()):
            if candidate.vote_count:
                changed += 1
            self._state.candidates[cid] = replace(candidate, vote_count=0)
        return changed

    # Voters

    async def get_voter(self, voter_id: int) -> Optional[Voter]:
        return self._state.voters.get(voter_id)

    async def find_registration_conflict(self, voter_code: Optional[str], email: Optional[str],
                                         phone: Optional[str],
                                         exclude_id: Optional[int] = None) -> Optional[str]:
        for voter in self._state.voters.values():
            if voter.id == exclude_id:
                continue
            if voter_code is not None and voter.voter_code == voter_code:
                return "voter_code"
            if email is not None and voter.email == email:
                return "email"
            if phone is not None and voter.phone == phone:
                return "phone"
        return None

    async def insert_voter(self, name: str, voter_code: str, email: str, phone: str,
                           is_admin: bool = False) -> Voter:
        conflict = await self.find_registration_conflict(voter_code, email, phone)
        if conflict:
            raise DuplicateVoterError(conflict)
        voter = Voter(
            id=self._state.next_voter_id,
            name=name,
            voter_code=voter_code,
            email=email,
            phone=phone,
            is_admin=is_admin,
        )
        self._state.voters[voter.id] = voter
        self._state.next_voter_id += 1
        return voter

    async def update_voter(self, voter_id: int, fields: Dict) -> Optional[Voter]:
        voter = self._state.voters.get(voter_id)
        if voter is None:
            return None
        conflict = await self.find_registration_conflict(
            None, fields.get("email"), fields.get("phone"), exclude_id=voter_id
        )
        if conflict:
            raise DuplicateVoterError(conflict)
        voter = replace(voter, **{k: v for k, v in fields.items() if k in VOTER_FIELDS})
        self._state.voters[voter_id] = voter
        return voter

    async def delete_voter(self, voter_id: int) -> bool:
        if voter_id in self._state.ballots:
            raise ConflictError(ConflictReason.HAS_VOTES, "Cannot delete user who has already voted")
        return self._state.voters.pop(voter_id, None) is not None

    async def list_voters(self, limit: int, offset: int) -> List[Voter]:
        voters = sorted(
            self._state.voters.values(),
            key=lambda v: (v.created_at, v.id),
            reverse=True
        )
        return voters[offset:offset + limit]

    async def count_voters(self, has_voted: Optional[bool] = None,
                           is_admin: Optional[bool] = None) -> int:
        return sum(
            1 for v in self._state.voters.values()
            if (has_voted is None or v.has_voted == has_voted)
            and (is_admin is None or v.is_admin == is_admin)
        )

    async def mark_voted(self, voter_id: int) -> None:
        voter = self._state.voters.get(voter_id)
        if voter is None:
            raise NotFoundError("Voter")
        self._state.voters[voter_id] = replace(voter, has_voted=True)

    async def clear_voted_flags(self) -> int:
        changed = 0
        for vid, voter in list(self._state.voters.items()):
            if voter.has_voted:
                changed += 1
                self._state.voters[vid] = replace(voter, has_voted=False)
        return changed

    # Ballot ledger

    async def insert_ballot(self, ballot: Ballot) -> None:
        if ballot.voter_id in self._state.ballots:
            raise DuplicateBallotError()
        if ballot.candidate_id not in self._state.candidates:
            raise NotFoundError("Candidate")
        if ballot.voter_id not in self._state.voters:
            raise NotFoundError("Voter")
        self._state.ballots[ballot.voter_id] = ballot

    async def find_ballot_by_voter(self, voter_id: int) -> Optional[Ballot]:
        return self._state.ballots.get(voter_id)

    async def get_ballot(self, ballot_id: str) -> Optional[Ballot]:
        for ballot in self._state.ballots.values():
            if ballot.id == ballot_id:
                return ballot
        return None

    async def count_by_candidate(self, candidate_id: int) -> int:
        return sum(1 for b in self._state.ballots.values() if b.candidate_id == candidate_id)

    async def count_ballots(self) -> int:
        return len(self._state.ballots)

    async def ballot_counts(self) -> Dict[int, int]:
        counts: Dict[int, int] = {}
        for ballot in self._state.ballots.values():
            counts[ballot.candidate_id] = counts.get(ballot.candidate_id, 0) + 1
        return counts

    async def list_recent(self, limit: int, offset: int) -> List[Ballot]:
        ballots = sorted(
            self._state.ballots.values(),
            key=lambda b: (b.cast_at, b.id),
            reverse=True
        )
        return ballots[offset:offset + limit]

    async def delete_all_ballots(self) -> int:
        count = len(self._state.ballots)
        self._state.ballots.clear()
        return count

    # Maintenance

    async def lock_ledger(self) -> None:
        # Transactions are already serialized by the store lock
        return None

    async def repair_counters(self) -> Tuple[int, int]:
        counts = await self.ballot_counts()
        candidates_fixed = 0
        for cid, candidate in list(self._state.candidates.items()):
            expected = counts.get(cid, 0)
            if candidate.vote_count != expected:
                candidates_fixed += 1
                self._state.candidates[cid] = replace(
                    candidate, vote_count=expected, updated_at=get_current_timestamp()
                )
        voters_fixed = 0
        for vid, voter in list(self._state.voters.items()):
            expected = vid in self._state.ballots
            if voter.has_voted != expected:
                voters_fixed += 1
                self._state.voters[vid] = replace(voter, has_voted=expected)
        return candidates_fixed, voters_fixed

    async def find_discrepancies(self) -> Dict[str, List[Dict]]:
        counts = await self.ballot_counts()
        candidates = [
            {"id": c.id, "voteCount": c.vote_count, "ledgerCount": counts.get(c.id, 0)}
            for c in sorted(self._state.candidates.values(), key=lambda c: c.id)
            if c.vote_count != counts.get(c.id, 0)
        ]
        voters = [
            {"id": v.id, "hasVoted": v.has_voted, "hasBallot": v.id in self._state.ballots}
            for v in sorted(self._state.voters.values(), key=lambda v: v.id)
            if v.has_voted != (v.id in self._state.ballots)
        ]
        return {"candidates": candidates, "voters": voters}

    # Settings

    async def list_settings(self) -> List[Setting]:
        return [self._state.settings[k] for k in sorted(self._state.settings)]

    async def get_setting(self, key: str) -> Optional[Setting]:
        return self._state.settings.get(key)

    async def insert_setting(self, setting: Setting) -> Setting:
        if setting.key in self._state.settings:
            raise ConflictError(ConflictReason.ALREADY_EXISTS, "Setting key already exists")
        self._state.settings[setting.key] = setting
        return setting

    async def update_setting(self, key: str, value) -> Optional[Setting]:
        setting = self._state.settings.get(key)
        if setting is None:
            return None
        setting = replace(setting, value=value)
        self._state.settings[key] = setting
        return setting

    async def delete_setting(self, key: str) -> bool:
        return self._state.settings.pop(key, None) is not None


class MemoryStore:
    """Storage backend holding all state in process memory."""

    def __init__(self):
        self._state = _State()
        self._lock = asyncio.Lock()

    async def initialize(self):
        logger.info("In-memory store initialized")

    async def close(self):
        logger.info("In-memory store closed")

    async def check_health(self) -> bool:
        return True

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[MemoryTransaction]:
        """Run a block atomically; any exception discards its writes."""
        async with self._lock:
            working = self._state.copy()
            yield MemoryTransaction(working)
            self._state = working
