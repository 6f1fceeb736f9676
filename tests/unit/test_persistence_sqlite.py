"""Unit tests for ffcam_etl.persistence against the embedded SQLite store.

Uses tmp_path database files; no PostgreSQL required.
"""

from __future__ import annotations

import sqlite3

import pytest

from ffcam_etl.persistence import (
    POSTGRES_DIALECT,
    SQLITE_DIALECT,
    SQLITE_SCHEMA,
    PostgresAdapter,
    SQLiteAdapter,
    create_adapter,
    select_backend,
)
from ffcam_etl.shared import BackendUnavailableError


@pytest.fixture()
def adapter(tmp_path):
    a = SQLiteAdapter(tmp_path / "store" / "local.db")
    a.connect()
    yield a
    a.close()


# ---------------------------------------------------------------------------
# Dialect
# ---------------------------------------------------------------------------

class TestDialect:
    def test_upsert_sql(self):
        sql = POSTGRES_DIALECT.upsert(
            "formation_referentiel", ["code_formation", "intitule"],
            conflict=["code_formation"], update=["intitule"], touch=["updated_at"],
        )
        assert sql == (
            "INSERT INTO formation_referentiel (code_formation, intitule, updated_at) "
            "VALUES (%s, %s, NOW()) "
            "ON CONFLICT (code_formation) "
            "DO UPDATE SET intitule = EXCLUDED.intitule, updated_at = NOW()"
        )

    def test_sqlite_now(self):
        sql = SQLITE_DIALECT.upsert("t", ["a"], conflict=["a"], touch=["updated_at"])
        assert "CURRENT_TIMESTAMP" in sql
        assert "NOW()" not in sql

    def test_insert_ignore(self):
        sql = SQLITE_DIALECT.insert_ignore("t", ["a", "b"], conflict=["a", "b"])
        assert sql.endswith("ON CONFLICT (a, b) DO NOTHING")


# ---------------------------------------------------------------------------
# Connection + bootstrap
# ---------------------------------------------------------------------------

class TestConnection:
    def test_connect_creates_parent_dir_and_schema(self, tmp_path):
        path = tmp_path / "nested" / "dir" / "local.db"
        a = SQLiteAdapter(path)
        assert not a.is_connected()
        a.connect()
        try:
            assert a.is_connected()
            assert path.exists()
            for name, _ in SQLITE_SCHEMA:
                assert a.table_exists(name), name
        finally:
            a.close()
        assert not a.is_connected()

    def test_context_manager(self, tmp_path):
        with SQLiteAdapter(tmp_path / "x.db") as a:
            assert a.is_connected()
        assert not a.is_connected()

    def test_bootstrap_is_idempotent(self, adapter):
        assert adapter.bootstrap() == []

    def test_execute_requires_connection(self, tmp_path):
        with pytest.raises(RuntimeError, match="not connected"):
            SQLiteAdapter(tmp_path / "x.db").execute("SELECT 1")

    def test_execute_returns_rows_and_metadata(self, adapter):
        rows, result = adapter.execute(
            "INSERT INTO caf_user (cafnum_user) VALUES (%s)", ("690012345678",)
        )
        assert rows == []
        assert result.rowcount == 1
        assert result.lastrowid is not None
        rows, _ = adapter.execute("SELECT cafnum_user FROM caf_user")
        assert rows == [{"cafnum_user": "690012345678"}]


class TestDestructiveMigration:
    def test_old_shape_table_is_rebuilt(self, tmp_path):
        path = tmp_path / "old.db"
        conn = sqlite3.connect(path)
        conn.execute("CREATE TABLE formation_validation (user_id INTEGER, code_formation TEXT)")
        conn.execute("INSERT INTO formation_validation VALUES (1, 'STG-FEA10')")
        conn.execute("CREATE TABLE formation_referentiel (code TEXT)")
        conn.commit()
        conn.close()

        a = SQLiteAdapter(path)
        a.connect()
        try:
            assert "id_interne" in a.table_columns("formation_validation")
            assert "code_formation" in a.table_columns("formation_referentiel")
            row = a.fetch_one("SELECT COUNT(*) AS n FROM formation_validation")
            assert row["n"] == 0
        finally:
            a.close()

    def test_dependents_dropped_with_referential(self, tmp_path):
        path = tmp_path / "old.db"
        conn = sqlite3.connect(path)
        conn.execute("CREATE TABLE formation_competence_referentiel (id INTEGER, intitule TEXT)")
        conn.execute(
            "CREATE TABLE formation_competence_validation (user_id INTEGER, competence_id INTEGER)"
        )
        conn.commit()
        conn.close()

        a = SQLiteAdapter(path)
        a._conn = sqlite3.connect(path, isolation_level=None)
        a._conn.row_factory = sqlite3.Row
        try:
            dropped = a.bootstrap()
            assert dropped == [
                "formation_commission_groupe_competence",
                "formation_competence_validation",
                "formation_competence_referentiel",
            ]
            assert "est_valide" in a.table_columns("formation_competence_validation")
        finally:
            a.close()


# ---------------------------------------------------------------------------
# Upsert semantics
# ---------------------------------------------------------------------------

class TestUpsert:
    def _upsert_ref(self, adapter, label):
        with adapter.transaction():
            adapter.upsert(
                "formation_referentiel",
                {"code_formation": "STG-FEA10", "intitule": label},
                conflict=["code_formation"],
                update=["intitule"],
                touch=["updated_at"],
            )
        return adapter.fetch_one(
            "SELECT id, intitule, created_at FROM formation_referentiel WHERE code_formation = %s",
            ("STG-FEA10",),
        )

    def test_referential_id_is_stable(self, adapter):
        first = self._upsert_ref(adapter, "Initiateur SAE")
        second = self._upsert_ref(adapter, "Initiateur SAE (v2)")
        assert first["id"] == second["id"]
        assert second["intitule"] == "Initiateur SAE (v2)"
        row = adapter.fetch_one("SELECT COUNT(*) AS n FROM formation_referentiel")
        assert row["n"] == 1

    def test_columns_outside_update_list_survive(self, adapter):
        with adapter.transaction():
            adapter.upsert(
                "formation_referentiel_niveau_pratique",
                {"cursus_niveau_id": 7, "code_activite": "ESC", "libelle": "INITIE"},
                conflict=["cursus_niveau_id"],
                update=["libelle"],
            )
            adapter.upsert(
                "formation_referentiel_niveau_pratique",
                {"cursus_niveau_id": 7, "code_activite": "CHANGED", "libelle": "PERFECTIONNE"},
                conflict=["cursus_niveau_id"],
                update=["libelle"],
            )
        row = adapter.fetch_one(
            "SELECT code_activite, libelle FROM formation_referentiel_niveau_pratique"
        )
        assert row == {"code_activite": "ESC", "libelle": "PERFECTIONNE"}

    def test_insert_ignore_rowcount(self, adapter):
        with adapter.transaction():
            ref = self._upsert_ref(adapter, "x")
            first = adapter.insert_ignore(
                "formation_commission_formation",
                {"formation_id": ref["id"], "commission_id": 1},
                conflict=["formation_id", "commission_id"],
            )
            second = adapter.insert_ignore(
                "formation_commission_formation",
                {"formation_id": ref["id"], "commission_id": 1},
                conflict=["formation_id", "commission_id"],
            )
        assert first.rowcount == 1
        assert second.rowcount == 0


# ---------------------------------------------------------------------------
# Transactions
# ---------------------------------------------------------------------------

class TestTransaction:
    def _count_users(self, adapter):
        return adapter.fetch_one("SELECT COUNT(*) AS n FROM caf_user")["n"]

    def test_commit(self, adapter):
        with adapter.transaction():
            adapter.execute("INSERT INTO caf_user (cafnum_user) VALUES (%s)", ("690000000001",))
        assert self._count_users(adapter) == 1

    def test_rollback_on_error(self, adapter):
        with pytest.raises(ValueError):
            with adapter.transaction():
                adapter.execute("INSERT INTO caf_user (cafnum_user) VALUES (%s)", ("690000000001",))
                raise ValueError("boom")
        assert self._count_users(adapter) == 0

    def test_nested_rollback_keeps_outer_work(self, adapter):
        with adapter.transaction():
            adapter.execute("INSERT INTO caf_user (cafnum_user) VALUES (%s)", ("690000000001",))
            with pytest.raises(sqlite3.IntegrityError):
                with adapter.transaction():
                    adapter.execute(
                        "INSERT INTO caf_user (cafnum_user) VALUES (%s)", ("690000000001",)
                    )
        assert self._count_users(adapter) == 1

    def test_requires_connection(self, tmp_path):
        with pytest.raises(RuntimeError):
            with SQLiteAdapter(tmp_path / "x.db").transaction():
                pass


# ---------------------------------------------------------------------------
# Domain helpers
# ---------------------------------------------------------------------------

class TestDomainHelpers:
    def test_get_member_id(self, adapter):
        with adapter.transaction():
            adapter.execute("INSERT INTO caf_user (cafnum_user) VALUES (%s)", ("690012345678",))
        assert adapter.get_member_id("690012345678") == 1
        assert adapter.get_member_id("690000000000") is None

    def test_update_last_sync(self, adapter):
        adapter.update_last_sync("formations", 12)
        adapter.update_last_sync("formations", 15)
        rows, _ = adapter.execute("SELECT type, records_count, last_sync FROM formation_last_sync")
        assert len(rows) == 1
        assert rows[0]["records_count"] == 15
        assert rows[0]["last_sync"] is not None

    def test_is_missing_table(self, adapter):
        with pytest.raises(sqlite3.OperationalError) as exc_info:
            adapter.execute("SELECT * FROM caf_commission")
        assert adapter.is_missing_table(exc_info.value) is True
        assert adapter.is_missing_table(ValueError("no such table")) is False

    def test_table_exists(self, adapter):
        assert adapter.table_exists("formation_last_sync") is True
        assert adapter.table_exists("caf_commission") is False


# ---------------------------------------------------------------------------
# Backend selection
# ---------------------------------------------------------------------------

class TestSelectBackend:
    def test_auto_without_dsn(self):
        assert select_backend("auto", None) == "sqlite"

    def test_auto_with_dsn(self):
        assert select_backend("auto", "postgresql://x") == "postgres"

    def test_forced_sqlite_ignores_dsn(self):
        assert select_backend("sqlite", "postgresql://x") == "sqlite"

    def test_forced_postgres_without_dsn(self):
        with pytest.raises(BackendUnavailableError):
            select_backend("postgres", None)

    def test_unknown(self):
        with pytest.raises(ValueError):
            select_backend("mysql", None)

    def test_create_adapter(self, tmp_path):
        assert isinstance(create_adapter("sqlite", None, tmp_path / "x.db"), SQLiteAdapter)
        pg = create_adapter("postgres", "postgresql://x", tmp_path / "x.db")
        assert isinstance(pg, PostgresAdapter)
        assert not pg.is_connected()
