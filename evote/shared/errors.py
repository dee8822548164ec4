"""
Error taxonomy shared by the API and the reconciliation worker.

Storage backends translate driver exceptions into these classes so that
nothing above the storage boundary depends on asyncpg or psycopg2.
"""

from enum import Enum


class VotingError(Exception):
    """Base class for all domain errors."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFoundError(VotingError):
    """A referenced voter, candidate, ballot or setting does not exist."""

    def __init__(self, resource: str, message: str = None):
        super().__init__(message or f"{resource} not found")
        self.resource = resource


class ConflictReason(str, Enum):
    """Why a write was refused."""
    ALREADY_VOTED = "already_voted"
    DUPLICATE = "duplicate"
    HAS_VOTES = "has_votes"
    ALREADY_EXISTS = "already_exists"


class ConflictError(VotingError):
    """A write would violate a uniqueness or lifecycle rule."""

    def __init__(self, reason: ConflictReason, message: str):
        super().__init__(message)
        self.reason = reason


class AlreadyVotedError(ConflictError):
    """The voter already holds a ballot (flag or ledger says so)."""

    def __init__(self):
        super().__init__(ConflictReason.ALREADY_VOTED, "User has already voted")


class DuplicateBallotError(ConflictError):
    """The ledger's unique constraint rejected a second ballot for a voter."""

    def __init__(self):
        super().__init__(ConflictReason.DUPLICATE, "User has already voted")


class VotingClosedError(VotingError):
    """A ballot was cast outside the configured election window."""
    pass


class StorageError(VotingError):
    """Unexpected storage failure (schema mismatch, corrupted state)."""
    pass


class TransientStorageError(StorageError):
    """
    Network or timeout failure talking to the store.

    Attributes:
        ambiguous: True when the failure happened while committing, so the
            caller cannot know whether the transaction was applied.
    """

    def __init__(self, message: str, ambiguous: bool = False):
        super().__init__(message)
        self.ambiguous = ambiguous


class DuplicateVoterError(ConflictError):
    """A voter ID, email or phone number is already registered."""

    MESSAGES = {
        "voter_code": "Voter ID already registered",
        "email": "Email already registered",
        "phone": "Phone number already registered",
    }

    def __init__(self, field: str):
        super().__init__(
            ConflictReason.ALREADY_EXISTS,
            self.MESSAGES.get(field, "User already exists")
        )
        self.field = field
