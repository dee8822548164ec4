"""
PostgreSQL schema and the reconciliation statements.

Shared by the asyncpg-backed API store and the psycopg2-backed
reconciliation worker; none of these statements take parameters.
"""

SCHEMA_STATEMENTS = [
    """
    CREATE TABLE IF NOT EXISTS voters (
        id BIGSERIAL PRIMARY KEY,
        name TEXT NOT NULL,
        voter_code TEXT NOT NULL,
        email TEXT NOT NULL,
        phone TEXT NOT NULL,
        is_admin BOOLEAN NOT NULL DEFAULT FALSE,
        has_voted BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        CONSTRAINT voters_voter_code_key UNIQUE (voter_code),
        CONSTRAINT voters_email_key UNIQUE (email),
        CONSTRAINT voters_phone_key UNIQUE (phone)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS candidates (
        id BIGSERIAL PRIMARY KEY,
        name TEXT NOT NULL,
        party TEXT NOT NULL,
        position TEXT NOT NULL,
        bio TEXT NOT NULL DEFAULT '',
        image_url TEXT,
        vote_count INTEGER NOT NULL DEFAULT 0 CHECK (vote_count >= 0),
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS ballots (
        id UUID PRIMARY KEY,
        voter_id BIGINT NOT NULL REFERENCES voters(id),
        candidate_id BIGINT NOT NULL REFERENCES candidates(id),
        cast_at TIMESTAMPTZ NOT NULL,
        CONSTRAINT ballots_voter_id_key UNIQUE (voter_id)
    )
    """,
    "CREATE INDEX IF NOT EXISTS ballots_candidate_idx ON ballots (candidate_id)",
    "CREATE INDEX IF NOT EXISTS ballots_cast_at_idx ON ballots (cast_at DESC, id DESC)",
    "CREATE INDEX IF NOT EXISTS candidates_position_idx ON candidates (position, vote_count DESC)",
    """
    CREATE TABLE IF NOT EXISTS settings (
        key TEXT PRIMARY KEY,
        value JSONB,
        description TEXT NOT NULL DEFAULT '',
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
]

# Blocks concurrent ballot inserts (ROW EXCLUSIVE) until the holder commits
LOCK_LEDGER_SQL = "LOCK TABLE ballots IN EXCLUSIVE MODE"

RECONCILE_CANDIDATES_SQL = """
    UPDATE candidates c
    SET vote_count = t.n, updated_at = NOW()
    FROM (
        SELECT c2.id, COUNT(b.id)::INTEGER AS n
        FROM candidates c2
        LEFT JOIN ballots b ON b.candidate_id = c2.id
        GROUP BY c2.id
    ) t
    WHERE c.id = t.id AND c.vote_count <> t.n
"""

RECONCILE_VOTERS_SQL = """
    UPDATE voters v
    SET has_voted = EXISTS (SELECT 1 FROM ballots b WHERE b.voter_id = v.id)
    WHERE v.has_voted <> EXISTS (SELECT 1 FROM ballots b WHERE b.voter_id = v.id)
"""

CANDIDATE_DISCREPANCIES_SQL = """
    SELECT c.id, c.vote_count, COUNT(b.id)::INTEGER AS ledger_count
    FROM candidates c
    LEFT JOIN ballots b ON b.candidate_id = c.id
    GROUP BY c.id, c.vote_count
    HAVING c.vote_count <> COUNT(b.id)
    ORDER BY c.id
"""

VOTER_DISCREPANCIES_SQL = """
    SELECT v.id, v.has_voted, (b.id IS NOT NULL) AS has_ballot
    FROM voters v
    LEFT JOIN ballots b ON b.voter_id = v.id
    WHERE v.has_voted <> (b.id IS NOT NULL)
    ORDER BY v.id
"""
