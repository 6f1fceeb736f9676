"""Integration test fixtures.

Applies migrations 0001–0002 against an ephemeral PostgreSQL database
provided by pytest-postgresql before every integration test. The whole
directory is skipped on machines without a PostgreSQL server install.
"""

from __future__ import annotations

import shutil
from pathlib import Path

import psycopg
import pytest
from pytest_postgresql import factories

from ffcam_etl.persistence import PostgresAdapter

# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------

PROJECT_ROOT = Path(__file__).parent.parent.parent
MIGRATIONS = [
    PROJECT_ROOT / "migrations" / "0001_ffcam_core.sql",
    PROJECT_ROOT / "migrations" / "0002_commission_links.sql",
]

if shutil.which("pg_ctl") is None and shutil.which("pg_config") is None:
    collect_ignore_glob = ["test_*.py"]

# ---------------------------------------------------------------------------
# pytest-postgresql process fixture
# ---------------------------------------------------------------------------

postgresql_proc = factories.postgresql_proc()
postgresql = factories.postgresql("postgresql_proc")


# ---------------------------------------------------------------------------
# Schema fixtures
# ---------------------------------------------------------------------------

@pytest.fixture(scope="function")
def db_conn(postgresql):
    """Return a psycopg connection with schema applied.

    Each test gets a fresh schema via function scope so tests are isolated.
    """
    dsn = (
        f"host={postgresql.info.host} "
        f"port={postgresql.info.port} "
        f"dbname={postgresql.info.dbname} "
        f"user={postgresql.info.user} "
        f"password={postgresql.info.password or ''}"
    )
    conn = psycopg.connect(dsn, autocommit=True)
    try:
        for migration in MIGRATIONS:
            sql = migration.read_text(encoding="utf-8")
            conn.execute(sql)
        yield conn, dsn
    finally:
        conn.close()


@pytest.fixture()
def pg_adapter(db_conn):
    """Connected PostgresAdapter over the migrated schema."""
    _, dsn = db_conn
    adapter = PostgresAdapter(dsn)
    adapter.connect()
    try:
        yield adapter
    finally:
        adapter.close()
