"""Integration tests against a real PostgreSQL server.

These exercise the constraints and locks the in-memory store only imitates:
the ledger's unique index under truly concurrent transactions, the table
lock taken by reset and reconciliation, and the psycopg2 worker queries.

All tests are marked ``docker`` and skip when PostgreSQL is unreachable.
"""
