"""ffcam_etl.persistence

Dual-backend persistence layer for the FFCAM sync.

Two interchangeable adapters expose one contract:
  - PostgresAdapter  (networked store, psycopg; schema managed by migrations/)
  - SQLiteAdapter    (embedded development store; self-bootstrapping schema)

Callers write statements with %s placeholders and never spell a dialect
specific upsert or time function: Dialect.upsert() / Dialect.insert_ignore()
render INSERT ... ON CONFLICT for the active backend and Dialect.now is the
backend's current-timestamp expression. Both engines support ON CONFLICT
natively, so the update column list is always honoured (no full-row
replace, referential ids stay stable across runs).

Transactions are explicit SAVEPOINTs and may nest; the outermost
transaction() commits.
"""

from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterator, NamedTuple, Sequence

import psycopg
from psycopg.rows import dict_row

from ffcam_etl.shared import BackendUnavailableError

log = logging.getLogger(__name__)

BACKEND_SQLITE = "sqlite"
BACKEND_POSTGRES = "postgres"
BACKEND_AUTO = "auto"


# ---------------------------------------------------------------------------
# Query builder
# ---------------------------------------------------------------------------

class ExecResult(NamedTuple):
    rowcount: int
    lastrowid: int | None = None


@dataclass(frozen=True)
class Dialect:
    name: str
    now: str

    def upsert(
        self,
        table: str,
        columns: Sequence[str],
        conflict: Sequence[str],
        update: Sequence[str] = (),
        touch: Sequence[str] = (),
    ) -> str:
        """INSERT ... ON CONFLICT (conflict) DO UPDATE SET update, touch.

        `touch` columns are timestamp columns set to `now` on insert and on
        update. With nothing to update the statement becomes DO NOTHING.
        """
        cols = list(columns) + list(touch)
        values = ["%s"] * len(columns) + [self.now] * len(touch)
        sql = (
            f"INSERT INTO {table} ({', '.join(cols)}) "
            f"VALUES ({', '.join(values)}) "
            f"ON CONFLICT ({', '.join(conflict)}) "
        )
        assignments = [f"{c} = EXCLUDED.{c}" for c in update]
        assignments += [f"{c} = {self.now}" for c in touch]
        if not assignments:
            return sql + "DO NOTHING"
        return sql + "DO UPDATE SET " + ", ".join(assignments)

    def insert_ignore(self, table: str, columns: Sequence[str], conflict: Sequence[str]) -> str:
        return self.upsert(table, columns, conflict)


POSTGRES_DIALECT = Dialect(name=BACKEND_POSTGRES, now="NOW()")
SQLITE_DIALECT = Dialect(name=BACKEND_SQLITE, now="CURRENT_TIMESTAMP")


# ---------------------------------------------------------------------------
# Adapter base
# ---------------------------------------------------------------------------

class SqlAdapter:
    """Backend-neutral operations built on execute()."""

    dialect: Dialect

    def __init__(self) -> None:
        self._conn: Any = None
        self._sp_depth = 0

    @property
    def backend_name(self) -> str:
        return self.dialect.name

    # -- connection -------------------------------------------------------

    def connect(self) -> None:
        raise NotImplementedError

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def is_connected(self) -> bool:
        return self._conn is not None

    def __enter__(self) -> "SqlAdapter":
        self.connect()
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    # -- statements -------------------------------------------------------

    def execute(
        self, sql: str, params: Sequence[Any] = ()
    ) -> tuple[list[dict[str, Any]], ExecResult]:
        raise NotImplementedError

    def fetch_one(self, sql: str, params: Sequence[Any] = ()) -> dict[str, Any] | None:
        rows, _ = self.execute(sql, params)
        return rows[0] if rows else None

    def _commit(self) -> None:
        self._conn.commit()

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """SAVEPOINT-scoped unit of work; rolls back only its own writes."""
        if self._conn is None:
            raise RuntimeError("adapter is not connected; call connect() first")
        self._sp_depth += 1
        sp = f"sp_{self._sp_depth}"
        self._conn.execute(f"SAVEPOINT {sp}")
        try:
            yield
        except BaseException:
            self._conn.execute(f"ROLLBACK TO SAVEPOINT {sp}")
            self._conn.execute(f"RELEASE SAVEPOINT {sp}")
            raise
        else:
            self._conn.execute(f"RELEASE SAVEPOINT {sp}")
        finally:
            self._sp_depth -= 1
            if self._sp_depth == 0:
                self._commit()

    def upsert(
        self,
        table: str,
        values: dict[str, Any],
        conflict: Sequence[str],
        update: Sequence[str] = (),
        touch: Sequence[str] = (),
    ) -> ExecResult:
        sql = self.dialect.upsert(table, list(values), conflict, update, touch)
        _, result = self.execute(sql, list(values.values()))
        return result

    def insert_ignore(
        self, table: str, values: dict[str, Any], conflict: Sequence[str]
    ) -> ExecResult:
        """Insert unless the conflict key exists; rowcount 0 means already present."""
        sql = self.dialect.insert_ignore(table, list(values), conflict)
        _, result = self.execute(sql, list(values.values()))
        return result

    # -- domain helpers ---------------------------------------------------

    def get_member_id(self, member_number: str) -> int | None:
        """Internal id for a club membership number; None when unknown."""
        row = self.fetch_one(
            "SELECT id_user FROM caf_user WHERE cafnum_user = %s LIMIT 1",
            (member_number,),
        )
        return int(row["id_user"]) if row else None

    def update_last_sync(self, sync_type: str, count: int) -> None:
        with self.transaction():
            self.upsert(
                "formation_last_sync",
                {"type": sync_type, "records_count": count},
                conflict=["type"],
                update=["records_count"],
                touch=["last_sync"],
            )

    def is_missing_table(self, exc: BaseException) -> bool:
        raise NotImplementedError

    def table_exists(self, table: str) -> bool:
        raise NotImplementedError


# ---------------------------------------------------------------------------
# SQLite (embedded development store)
# ---------------------------------------------------------------------------

SQLITE_SCHEMA: list[tuple[str, str]] = [
    ("caf_user", """
        CREATE TABLE IF NOT EXISTS caf_user (
            id_user INTEGER PRIMARY KEY AUTOINCREMENT,
            cafnum_user TEXT UNIQUE
        )"""),
    ("formation_referentiel", """
        CREATE TABLE IF NOT EXISTS formation_referentiel (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            code_formation TEXT NOT NULL UNIQUE,
            intitule TEXT NOT NULL,
            created_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP
        )"""),
    ("formation_referentiel_brevet", """
        CREATE TABLE IF NOT EXISTS formation_referentiel_brevet (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            code_brevet TEXT NOT NULL UNIQUE,
            intitule TEXT NOT NULL,
            created_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP
        )"""),
    ("formation_referentiel_niveau_pratique", """
        CREATE TABLE IF NOT EXISTS formation_referentiel_niveau_pratique (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            cursus_niveau_id INTEGER NOT NULL UNIQUE,
            code_activite TEXT,
            activite TEXT,
            niveau TEXT,
            libelle TEXT,
            niveau_court TEXT,
            discipline TEXT,
            created_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP
        )"""),
    ("formation_competence_referentiel", """
        CREATE TABLE IF NOT EXISTS formation_competence_referentiel (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            intitule TEXT NOT NULL,
            code_activite TEXT NOT NULL DEFAULT '',
            activite TEXT,
            created_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
            UNIQUE (intitule, code_activite)
        )"""),
    ("formation_validation", """
        CREATE TABLE IF NOT EXISTS formation_validation (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL REFERENCES caf_user(id_user) ON DELETE CASCADE,
            code_formation TEXT NOT NULL,
            id_interne TEXT NOT NULL DEFAULT '',
            valide INTEGER DEFAULT 1,
            date_validation DATE,
            numero_formation TEXT,
            validateur TEXT,
            intitule_formation TEXT,
            lieu_formation TEXT,
            date_debut_formation DATE,
            date_fin_formation DATE,
            created_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
            UNIQUE (user_id, code_formation, id_interne)
        )"""),
    ("formation_validation_brevet", """
        CREATE TABLE IF NOT EXISTS formation_validation_brevet (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL REFERENCES caf_user(id_user) ON DELETE CASCADE,
            brevet_id INTEGER NOT NULL REFERENCES formation_referentiel_brevet(id),
            id_interne TEXT NOT NULL DEFAULT '',
            date_obtention DATE,
            date_recyclage DATE,
            date_edition DATE,
            date_formation_continue DATE,
            date_migration DATE,
            created_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
            UNIQUE (user_id, brevet_id, id_interne)
        )"""),
    ("formation_validation_niveau_pratique", """
        CREATE TABLE IF NOT EXISTS formation_validation_niveau_pratique (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL REFERENCES caf_user(id_user) ON DELETE CASCADE,
            niveau_id INTEGER NOT NULL REFERENCES formation_referentiel_niveau_pratique(id),
            date_validation DATE,
            valide_par TEXT,
            created_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
            UNIQUE (user_id, niveau_id)
        )"""),
    ("formation_competence_validation", """
        CREATE TABLE IF NOT EXISTS formation_competence_validation (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL REFERENCES caf_user(id_user) ON DELETE CASCADE,
            competence_id INTEGER NOT NULL REFERENCES formation_competence_referentiel(id),
            niveau_associe TEXT,
            date_validation DATE,
            est_valide INTEGER NOT NULL DEFAULT 0,
            valide_par TEXT,
            commentaire TEXT,
            created_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
            UNIQUE (user_id, competence_id)
        )"""),
    ("formation_commission_formation", """
        CREATE TABLE IF NOT EXISTS formation_commission_formation (
            formation_id INTEGER NOT NULL REFERENCES formation_referentiel(id) ON DELETE CASCADE,
            commission_id INTEGER NOT NULL,
            created_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
            PRIMARY KEY (formation_id, commission_id)
        )"""),
    ("formation_commission_brevet", """
        CREATE TABLE IF NOT EXISTS formation_commission_brevet (
            brevet_id INTEGER NOT NULL REFERENCES formation_referentiel_brevet(id) ON DELETE CASCADE,
            commission_id INTEGER NOT NULL,
            created_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
            PRIMARY KEY (brevet_id, commission_id)
        )"""),
    ("formation_commission_niveau_pratique", """
        CREATE TABLE IF NOT EXISTS formation_commission_niveau_pratique (
            niveau_id INTEGER NOT NULL REFERENCES formation_referentiel_niveau_pratique(id) ON DELETE CASCADE,
            commission_id INTEGER NOT NULL,
            created_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
            PRIMARY KEY (niveau_id, commission_id)
        )"""),
    ("formation_commission_groupe_competence", """
        CREATE TABLE IF NOT EXISTS formation_commission_groupe_competence (
            groupe_competence_id INTEGER NOT NULL REFERENCES formation_competence_referentiel(id) ON DELETE CASCADE,
            commission_id INTEGER NOT NULL,
            created_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
            PRIMARY KEY (groupe_competence_id, commission_id)
        )"""),
    ("formation_pattern_commission_mapping", """
        CREATE TABLE IF NOT EXISTS formation_pattern_commission_mapping (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            entity_type TEXT NOT NULL,
            code_pattern TEXT NOT NULL,
            exclude_pattern TEXT,
            commission_id INTEGER NOT NULL,
            priorite INTEGER NOT NULL DEFAULT 0,
            actif INTEGER NOT NULL DEFAULT 1,
            created_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP
        )"""),
    ("formation_last_sync", """
        CREATE TABLE IF NOT EXISTS formation_last_sync (
            type TEXT PRIMARY KEY,
            last_sync DATETIME DEFAULT CURRENT_TIMESTAMP,
            records_count INTEGER DEFAULT 0
        )"""),
]

# Columns whose absence marks an old-shape table that must be rebuilt.
REQUIRED_COLUMNS: dict[str, tuple[str, ...]] = {
    "formation_referentiel": ("id", "code_formation"),
    "formation_validation": ("id_interne", "lieu_formation"),
    "formation_validation_brevet": ("id_interne",),
    "formation_validation_niveau_pratique": ("niveau_id",),
    "formation_competence_referentiel": ("code_activite",),
    "formation_pattern_commission_mapping": ("entity_type",),
}

# Tables holding foreign keys into the key table (dropped first).
DEPENDENT_TABLES: dict[str, tuple[str, ...]] = {
    "formation_referentiel": ("formation_commission_formation", "formation_validation"),
    "formation_referentiel_brevet": ("formation_commission_brevet", "formation_validation_brevet"),
    "formation_referentiel_niveau_pratique": (
        "formation_commission_niveau_pratique",
        "formation_validation_niveau_pratique",
    ),
    "formation_competence_referentiel": (
        "formation_commission_groupe_competence",
        "formation_competence_validation",
    ),
}

POSTGRES_REQUIRED_TABLES = tuple(name for name, _ in SQLITE_SCHEMA) + ("caf_commission",)


class SQLiteAdapter(SqlAdapter):
    dialect = SQLITE_DIALECT

    def __init__(self, path: Path | str) -> None:
        super().__init__()
        self.path = str(path)

    def connect(self) -> None:
        if self._conn is not None:
            return
        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        # isolation_level=None: transactions are driven by explicit SAVEPOINTs
        self._conn = sqlite3.connect(self.path, isolation_level=None)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys = ON")
        if self.path != ":memory:":
            self._conn.execute("PRAGMA journal_mode = WAL")
        self.bootstrap()

    def _commit(self) -> None:
        # RELEASE of the outermost savepoint already committed
        pass

    def execute(
        self, sql: str, params: Sequence[Any] = ()
    ) -> tuple[list[dict[str, Any]], ExecResult]:
        if self._conn is None:
            raise RuntimeError("adapter is not connected; call connect() first")
        cur = self._conn.execute(sql.replace("%s", "?"), tuple(params))
        rows = [dict(r) for r in cur.fetchall()] if cur.description else []
        return rows, ExecResult(cur.rowcount, cur.lastrowid)

    def is_missing_table(self, exc: BaseException) -> bool:
        return isinstance(exc, sqlite3.OperationalError) and "no such table" in str(exc)

    def table_exists(self, table: str) -> bool:
        row = self.fetch_one(
            "SELECT name FROM sqlite_master WHERE type = 'table' AND name = %s",
            (table,),
        )
        return row is not None

    def table_columns(self, table: str) -> set[str]:
        rows, _ = self.execute(f"PRAGMA table_info({table})")
        return {r["name"] for r in rows}

    # -- schema -----------------------------------------------------------

    def bootstrap(self) -> list[str]:
        """Create missing tables, rebuilding old-shape ones first.

        Returns the names of tables that were dropped by the destructive
        migration (empty on a current schema).
        """
        dropped = self._drop_outdated_tables()
        for _, ddl in SQLITE_SCHEMA:
            self._conn.execute(ddl)
        return dropped

    def _drop_outdated_tables(self) -> list[str]:
        dropped: list[str] = []
        for table, required in REQUIRED_COLUMNS.items():
            if not self.table_exists(table):
                continue
            missing = [c for c in required if c not in self.table_columns(table)]
            if not missing:
                continue
            log.warning(
                "SQLite table %s is missing %s; dropping it and its dependents",
                table, ", ".join(missing),
            )
            for name in DEPENDENT_TABLES.get(table, ()) + (table,):
                if name not in dropped:
                    self._conn.execute(f"DROP TABLE IF EXISTS {name}")
                    dropped.append(name)
        return dropped


# ---------------------------------------------------------------------------
# PostgreSQL (networked store)
# ---------------------------------------------------------------------------

class PostgresAdapter(SqlAdapter):
    dialect = POSTGRES_DIALECT

    def __init__(self, dsn: str) -> None:
        super().__init__()
        self.dsn = dsn

    def connect(self) -> None:
        if self._conn is not None:
            return
        self._conn = psycopg.connect(self.dsn, autocommit=False, row_factory=dict_row)
        self.bootstrap()

    def execute(
        self, sql: str, params: Sequence[Any] = ()
    ) -> tuple[list[dict[str, Any]], ExecResult]:
        if self._conn is None:
            raise RuntimeError("adapter is not connected; call connect() first")
        cur = self._conn.execute(sql, tuple(params) if params else None)
        rows = cur.fetchall() if cur.description else []
        return list(rows), ExecResult(cur.rowcount)

    def is_missing_table(self, exc: BaseException) -> bool:
        return isinstance(exc, psycopg.errors.UndefinedTable)

    def table_exists(self, table: str) -> bool:
        row = self.fetch_one("SELECT to_regclass(%s) AS oid", (table,))
        return bool(row and row["oid"])

    def bootstrap(self) -> list[str]:
        """Verify the externally migrated schema; never creates or drops tables."""
        missing = [t for t in POSTGRES_REQUIRED_TABLES if not self.table_exists(t)]
        self._conn.commit()
        if missing:
            log.warning(
                "PostgreSQL schema is missing tables %s; apply migrations/ first",
                ", ".join(missing),
            )
        return missing


# ---------------------------------------------------------------------------
# Backend selection
# ---------------------------------------------------------------------------

def select_backend(requested: str, dsn: str | None) -> str:
    """Resolve --backend (auto|sqlite|postgres) against the available DSN."""
    if requested == BACKEND_SQLITE:
        return BACKEND_SQLITE
    if requested == BACKEND_POSTGRES:
        if not dsn:
            raise BackendUnavailableError(
                "PostgreSQL backend forced but no DSN configured "
                "(set the variable named by --db-dsn-env)"
            )
        return BACKEND_POSTGRES
    if requested != BACKEND_AUTO:
        raise ValueError(f"unknown backend: {requested!r}")
    return BACKEND_POSTGRES if dsn else BACKEND_SQLITE


def create_adapter(backend: str, dsn: str | None, sqlite_path: Path | str) -> SqlAdapter:
    if backend == BACKEND_POSTGRES:
        if not dsn:
            raise BackendUnavailableError("PostgreSQL backend requires a DSN")
        return PostgresAdapter(dsn)
    return SQLiteAdapter(sqlite_path)
