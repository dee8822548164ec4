"""
Candidate, voter and settings registries.

None of these write vote_count or has_voted: the storage layer only accepts
the display fields listed in its update whitelist, and the request models
never carry the counters.
"""
import logging
import math
from typing import Any, Dict, List, Optional, Tuple

from evote.shared.errors import ConflictError, ConflictReason, DuplicateVoterError, NotFoundError
from evote.shared.models import Candidate, Setting, Voter

logger = logging.getLogger(__name__)


class CandidateRegistry:
    """Admin-managed candidate records."""

    def __init__(self, store, cache=None):
        self.store = store
        self.cache = cache

    async def _invalidate_results(self):
        if self.cache is not None:
            await self.cache.invalidate()

    async def list(self, position: Optional[str] = None) -> List[Candidate]:
        async with self.store.transaction() as tx:
            return await tx.list_candidates(position)

    async def get(self, candidate_id: int) -> Candidate:
        async with self.store.transaction() as tx:
            candidate = await tx.get_candidate(candidate_id)
        if candidate is None:
            raise NotFoundError("Candidate")
        return candidate

    async def create(self, name: str, party: str, position: str, bio: str = "",
                     image_url: Optional[str] = None) -> Candidate:
        async with self.store.transaction() as tx:
            candidate = await tx.insert_candidate(name, party, position, bio, image_url)
        logger.info(f"Candidate created: id={candidate.id}, name={candidate.name}")
        await self._invalidate_results()
        return candidate

    async def update(self, candidate_id: int, fields: Dict[str, Any]) -> Candidate:
        async with self.store.transaction() as tx:
            candidate = await tx.update_candidate(candidate_id, fields)
        if candidate is None:
            raise NotFoundError("Candidate")
        logger.info(f"Candidate updated: id={candidate_id}, fields={sorted(fields)}")
        await self._invalidate_results()
        return candidate

    async def delete(self, candidate_id: int) -> None:
        """
        Remove a candidate that nobody has voted for.

        Raises:
            NotFoundError: Unknown candidate
            ConflictError: The candidate has a non-zero count or ballots
        """
        async with self.store.transaction() as tx:
            candidate = await tx.get_candidate(candidate_id)
            if candidate is None:
                raise NotFoundError("Candidate")
            if candidate.vote_count > 0 or await tx.count_by_candidate(candidate_id) > 0:
                raise ConflictError(
                    ConflictReason.HAS_VOTES,
                    "Cannot delete candidate with existing votes"
                )
            await tx.delete_candidate(candidate_id)
        logger.info(f"Candidate deleted: id={candidate_id}")
        await self._invalidate_results()


class VoterRegistry:
    """Voter registration and admin user management."""

    def __init__(self, store):
        self.store = store

    async def register(self, name: str, voter_code: str, email: str, phone: str,
                       is_admin: bool = False) -> Voter:
        """
        Register a voter; voter ID, email and phone must all be unused.

        Raises:
            DuplicateVoterError: One of the identifiers is taken
        """
        voter_code = voter_code.strip().upper()
        email = email.strip().lower()
        phone = phone.strip()

        async with self.store.transaction() as tx:
            conflict = await tx.find_registration_conflict(voter_code, email, phone)
            if conflict:
                raise DuplicateVoterError(conflict)
            voter = await tx.insert_voter(name.strip(), voter_code, email, phone, is_admin)
        logger.info(f"Voter registered: id={voter.id}, voter_code={voter.voter_code}")
        return voter

    async def get(self, voter_id: int) -> Voter:
        voter = await self.find(voter_id)
        if voter is None:
            raise NotFoundError("User")
        return voter

    async def find(self, voter_id: int) -> Optional[Voter]:
        async with self.store.transaction() as tx:
            return await tx.get_voter(voter_id)

    async def list(self, page: int = 1, limit: int = 25) -> Tuple[List[Voter], Dict]:
        async with self.store.transaction() as tx:
            voters = await tx.list_voters(limit, (page - 1) * limit)
            total = await tx.count_voters()
        pagination = {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": math.ceil(total / limit) if limit else 0,
        }
        return voters, pagination

    async def update(self, voter_id: int, fields: Dict[str, Any]) -> Voter:
        if "email" in fields:
            fields["email"] = fields["email"].strip().lower()
        if "phone" in fields:
            fields["phone"] = fields["phone"].strip()

        async with self.store.transaction() as tx:
            conflict = await tx.find_registration_conflict(
                None, fields.get("email"), fields.get("phone"), exclude_id=voter_id
            )
            if conflict:
                raise DuplicateVoterError(conflict)
            voter = await tx.update_voter(voter_id, fields)
        if voter is None:
            raise NotFoundError("User")
        logger.info(f"Voter updated: id={voter_id}, fields={sorted(fields)}")
        return voter

    async def delete(self, voter_id: int) -> None:
        async with self.store.transaction() as tx:
            voter = await tx.get_voter(voter_id)
            if voter is None:
                raise NotFoundError("User")
            if voter.has_voted:
                raise ConflictError(
                    ConflictReason.HAS_VOTES,
                    "Cannot delete user who has already voted"
                )
            await tx.delete_voter(voter_id)
        logger.info(f"Voter deleted: id={voter_id}")


class SettingsRegistry:
    """Election-wide key/value settings."""

    def __init__(self, store):
        self.store = store

    async def all(self) -> Dict[str, Any]:
        async with self.store.transaction() as tx:
            settings = await tx.list_settings()
        return {s.key: s.value for s in settings}

    async def get(self, key: str) -> Setting:
        async with self.store.transaction() as tx:
            setting = await tx.get_setting(key)
        if setting is None:
            raise NotFoundError("Setting")
        return setting

    async def create(self, key: str, value: Any, description: str = "") -> Setting:
        async with self.store.transaction() as tx:
            if await tx.get_setting(key) is not None:
                raise ConflictError(ConflictReason.ALREADY_EXISTS, "Setting key already exists")
            setting = await tx.insert_setting(Setting(key=key, value=value, description=description))
        logger.info(f"Setting created: {key}")
        return setting

    async def update(self, key: str, value: Any) -> Setting:
        async with self.store.transaction() as tx:
            setting = await tx.update_setting(key, value)
        if setting is None:
            raise NotFoundError("Setting")
        logger.info(f"Setting updated: {key}")
        return setting

    async def update_many(self, values: Dict[str, Any]) -> List[Setting]:
        """Update the given keys in one transaction; unknown keys are skipped."""
        updated = []
        async with self.store.transaction() as tx:
            for key, value in values.items():
                setting = await tx.update_setting(key, value)
                if setting is not None:
                    updated.append(setting)
        logger.info(f"Settings updated: {[s.key for s in updated]}")
        return updated

    async def delete(self, key: str) -> None:
        async with self.store.transaction() as tx:
            deleted = await tx.delete_setting(key)
        if not deleted:
            raise NotFoundError("Setting")
        logger.info(f"Setting deleted: {key}")
