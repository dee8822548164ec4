"""
Shared records, errors and schema for the voting system.

This package contains common code used by the API and the worker:
- Domain records (Voter, Candidate, Ballot, BallotReceipt, TallyEntry)
- The error taxonomy
- The PostgreSQL schema and reconciliation statements
"""

from .models import (
    Voter,
    Candidate,
    Ballot,
    BallotReceipt,
    Setting,
    TallyEntry,
    TallySource,
    sort_tally,
    get_current_timestamp,
    ELECTION_START_KEY,
    ELECTION_END_KEY,
    VOTING_ENABLED_KEY,
)
from .errors import (
    VotingError,
    NotFoundError,
    ConflictReason,
    ConflictError,
    AlreadyVotedError,
    DuplicateBallotError,
    DuplicateVoterError,
    VotingClosedError,
    StorageError,
    TransientStorageError,
)

__all__ = [
    'Voter',
    'Candidate',
    'Ballot',
    'BallotReceipt',
    'Setting',
    'TallyEntry',
    'TallySource',
    'sort_tally',
    'get_current_timestamp',
    'ELECTION_START_KEY',
    'ELECTION_END_KEY',
    'VOTING_ENABLED_KEY',
    'VotingError',
    'NotFoundError',
    'ConflictReason',
    'ConflictError',
    'AlreadyVotedError',
    'DuplicateBallotError',
    'DuplicateVoterError',
    'VotingClosedError',
    'StorageError',
    'TransientStorageError',
]
