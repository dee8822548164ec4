"""
Shared domain records for the voting system.

This module contains:
- Voter, Candidate, Ballot and Setting records as stored by every backend
- BallotReceipt: what a voter gets back after a successful cast
- TallyEntry and the deterministic tally ordering
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional


class TallySource(str, Enum):
    """Where a tally reads its counts from."""
    COUNTERS = "counters"
    LEDGER = "ledger"


def get_current_timestamp() -> datetime:
    """
    Get the current time as an aware UTC datetime.

    Returns:
        datetime: now, in UTC
    """
    return datetime.now(timezone.utc)


@dataclass
class Voter:
    """
    A registered voter.

    Attributes:
        id: Storage identifier
        name: Display name
        voter_code: Public voter ID, upper-case
        email: Lower-case email address
        phone: Phone number as entered
        is_admin: Whether the voter may use admin endpoints
        has_voted: True iff a ballot exists for this voter
        created_at: Registration time
    """
    id: int
    name: str
    voter_code: str
    email: str
    phone: str
    is_admin: bool = False
    has_voted: bool = False
    created_at: datetime = field(default_factory=get_current_timestamp)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "voterId": self.voter_code,
            "email": self.email,
            "phone": self.phone,
            "isAdmin": self.is_admin,
            "hasVoted": self.has_voted,
            "createdAt": self.created_at.isoformat(),
        }

    def summary(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "voterId": self.voter_code}


@dataclass
class Candidate:
    """A candidate standing for a position."""
    id: int
    name: str
    party: str
    position: str
    bio: str = ""
    image_url: Optional[str] = None
    vote_count: int = 0
    created_at: datetime = field(default_factory=get_current_timestamp)
    updated_at: datetime = field(default_factory=get_current_timestamp)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "party": self.party,
            "position": self.position,
            "bio": self.bio,
            "imageUrl": self.image_url,
            "voteCount": self.vote_count,
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
        }

    def summary(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "party": self.party,
            "position": self.position,
        }


@dataclass
class Ballot:
    """
    One voter's recorded choice.

    Ballots are written once by the vote casting service and only ever
    removed in bulk by an election reset.
    """
    id: str
    voter_id: int
    candidate_id: int
    cast_at: datetime


@dataclass
class BallotReceipt:
    """Confirmation returned to the voter who cast a ballot."""
    ballot_id: str
    candidate_id: int
    timestamp: datetime

    @classmethod
    def from_ballot(cls, ballot: Ballot) -> 'BallotReceipt':
        return cls(
            ballot_id=ballot.id,
            candidate_id=ballot.candidate_id,
            timestamp=ballot.cast_at
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.ballot_id,
            "candidateId": self.candidate_id,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class Setting:
    """Election-wide key/value setting (e.g. voting window bounds)."""
    key: str
    value: Any
    description: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"key": self.key, "value": self.value, "description": self.description}


@dataclass
class TallyEntry:
    """A candidate and its vote count in a tally."""
    candidate: Candidate
    vote_count: int

    def to_dict(self) -> Dict[str, Any]:
        return {"candidate": self.candidate.summary(), "voteCount": self.vote_count}


def sort_tally(entries: Iterable[TallyEntry]) -> List[TallyEntry]:
    """
    Order tally entries by vote count descending, then candidate id ascending.

    Args:
        entries: Unordered tally entries

    Returns:
        list: Entries in publication order
    """
    return sorted(entries, key=lambda e: (-e.vote_count, e.candidate.id))


# Setting keys that open and bound the voting window
ELECTION_START_KEY = "electionStartDate"
ELECTION_END_KEY = "electionEndDate"
VOTING_ENABLED_KEY = "votingEnabled"
