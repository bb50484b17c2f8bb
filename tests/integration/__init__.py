"""Integration tests package.

Integration tests use a REAL PostgreSQL database with the pgvector
extension (vector similarity search, JSONB columns and SELECT ... FOR
UPDATE are Postgres features).

Run with:
    pytest -m integration tests/integration/

Or exclude integration tests:
    pytest -m "not integration"
"""
