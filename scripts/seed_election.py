#!/usr/bin/env python3
"""
Seed an election database with an admin voter, default settings and,
optionally, sample candidates. Existing rows are left untouched.

Usage:
    python3 scripts/seed_election.py [--candidates] [--start ISO] [--end ISO]
"""
import argparse
import asyncio
import logging

from evote.api.config import settings
from evote.api.database import PostgresStore
from evote.api.registry import CandidateRegistry, SettingsRegistry, VoterRegistry
from evote.shared.errors import ConflictError
from evote.shared.models import ELECTION_END_KEY, ELECTION_START_KEY, VOTING_ENABLED_KEY

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger("seed_election")

SAMPLE_CANDIDATES = [
    ("Amara Okafor", "Green Alliance", "President"),
    ("Daniel Reyes", "Civic Union", "President"),
    ("Priya Nair", "Independent", "President"),
    ("Tomas Lindqvist", "Civic Union", "Vice President"),
    ("Hana Sato", "Green Alliance", "Vice President"),
]


def default_settings(start, end):
    return [
        (ELECTION_START_KEY, start, "Start date and time for the election"),
        (ELECTION_END_KEY, end, "End date and time for the election"),
        (VOTING_ENABLED_KEY, True, "Whether voting is currently enabled"),
        ("systemName", "E-Voting System", "Name of the voting system"),
        ("maxCandidates", 10, "Maximum number of candidates allowed"),
    ]


async def seed(with_candidates: bool, start, end):
    store = PostgresStore.from_settings(settings)
    await store.initialize()
    try:
        voters = VoterRegistry(store)
        try:
            admin = await voters.register(
                "Admin User", "ADMIN001", "admin@example.com", "1234567890", is_admin=True
            )
            logger.info(f"Admin voter created: id={admin.id}")
        except ConflictError as e:
            logger.info(f"Admin voter already exists ({e.message})")

        registry = SettingsRegistry(store)
        for key, value, description in default_settings(start, end):
            try:
                await registry.create(key, value, description)
                logger.info(f"Setting '{key}' created")
            except ConflictError:
                logger.info(f"Setting '{key}' already exists")

        if with_candidates:
            candidates = CandidateRegistry(store)
            existing = {(c.name, c.position) for c in await candidates.list()}
            for name, party, position in SAMPLE_CANDIDATES:
                if (name, position) in existing:
                    logger.info(f"Candidate '{name}' already exists")
                    continue
                candidate = await candidates.create(name, party, position)
                logger.info(f"Candidate '{name}' created: id={candidate.id}")
    finally:
        await store.close()

    logger.info("Seeding completed successfully")


def main():
    parser = argparse.ArgumentParser(description="Seed the election database")
    parser.add_argument("--candidates", action="store_true", help="Also create sample candidates")
    parser.add_argument("--start", default=None, help="Election start (ISO-8601); unset means open")
    parser.add_argument("--end", default=None, help="Election end (ISO-8601); unset means no close")
    args = parser.parse_args()

    asyncio.run(seed(args.candidates, args.start, args.end))


if __name__ == "__main__":
    main()
