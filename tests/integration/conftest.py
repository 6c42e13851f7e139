"""Integration test fixtures.

Applies the tariff import migration against an ephemeral PostgreSQL database
provided by pytest-postgresql before any integration test runs.
"""

from __future__ import annotations

from pathlib import Path

import psycopg
import pytest
from pytest_postgresql import factories

# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------

PROJECT_ROOT = Path(__file__).parent.parent.parent
MIGRATIONS = [
    PROJECT_ROOT / "migrations" / "0001_tariff_import.sql",
]

TENANT = "tenant-a"

# ---------------------------------------------------------------------------
# pytest-postgresql process fixture
# ---------------------------------------------------------------------------

postgresql_proc = factories.postgresql_proc()
postgresql = factories.postgresql("postgresql_proc")


# ---------------------------------------------------------------------------
# Schema fixture
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
        conn.autocommit = False
        yield conn, dsn
    finally:
        conn.close()


# ---------------------------------------------------------------------------
# Registry fixture
# ---------------------------------------------------------------------------

@pytest.fixture
def registry(db_conn) -> dict[str, str]:
    """Seed a small provider registry for TENANT; returns abbreviation -> provider id."""
    conn, _ = db_conn
    ids: dict[str, str] = {}
    for canonical, abbreviation, official in [
        ("CEMIG Distribuição S.A.", "CEMIG", None),
        ("Equatorial Pará Distribuidora de Energia S.A.", "CELPA", None),
        ("Companhia de Eletricidade do Estado da Bahia", "COELBA", "COELBA"),
    ]:
        row = conn.execute(
            """
            INSERT INTO provider (tenant_id, canonical_name, abbreviation, official_source_name)
            VALUES (%s, %s, %s, %s)
            RETURNING id::text
            """,
            (TENANT, canonical, abbreviation, official),
        ).fetchone()
        ids[abbreviation] = row[0]
    conn.execute(
        "INSERT INTO provider_alias (provider_id, alias) VALUES (%s, %s)",
        (ids["CELPA"], "Equatorial Energia Pará"),
    )
    # inactive and foreign-tenant providers are never part of the snapshot
    conn.execute(
        "INSERT INTO provider (tenant_id, canonical_name, abbreviation, is_active) "
        "VALUES (%s, 'Light S.A.', 'LIGHT', false)",
        (TENANT,),
    )
    conn.execute(
        "INSERT INTO provider (tenant_id, canonical_name, abbreviation) "
        "VALUES ('tenant-b', 'Copel Distribuição S.A.', 'COPEL')",
    )
    conn.commit()
    return ids
