"""ffcam_etl.sync_ffcam

CLI entrypoint: FFCAM extranet -> club database sync.

Modes (--mode):
  sync           scrape each entity kind and import it (default)
  init_patterns  render the commission code rules into
                 formation_pattern_commission_mapping

Usage (sync):
    export FFCAM_SESSION_ID=...          # "sid" from the extranet URL
    export FFCAM_DB_DSN=postgresql://... # optional; SQLite otherwise
    python -m ffcam_etl.sync_ffcam --only training,certification

Usage (dry run, nothing written, store never opened):
    python -m ffcam_etl.sync_ffcam --dry-run

Usage (init_patterns):
    python -m ffcam_etl.sync_ffcam --mode init_patterns --backend sqlite

Phases run strictly in order (training, certification, skill_level,
competency) with a fixed pause between them. Only fatal failures exit
non-zero: missing session id, expired session, first page unavailable,
forced backend unavailable, invalid rule file.
"""

from __future__ import annotations

import logging
import os
import sqlite3
import sys
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterable

import click
import psycopg
import requests

from ffcam_etl.commission_linker import CommissionLinker, sync_pattern_table
from ffcam_etl.commission_rules import (
    DEFAULT_RULES_PATH,
    CommissionRuleSet,
    RuleSetValidationError,
    load_rule_set,
    relational_pattern_rows,
)
from ffcam_etl.fetcher import (
    DEFAULT_BASE_URL,
    REQUEST_DELAY_MS,
    ROWS_PER_PAGE,
    PaginatedFetcher,
    RateLimiter,
)
from ffcam_etl.importers import (
    CertificationImport,
    CompetencyImport,
    TrainingImport,
    run_import,
    run_skill_level_import,
)
from ffcam_etl.normalize import CLUB_PREFIXES
from ffcam_etl.persistence import (
    BACKEND_AUTO,
    BACKEND_POSTGRES,
    BACKEND_SQLITE,
    SqlAdapter,
    create_adapter,
    select_backend,
)
from ffcam_etl.scrapers import (
    scrape_certifications,
    scrape_competencies,
    scrape_skill_levels,
    scrape_training_sessions,
)
from ffcam_etl.shared import (
    BackendUnavailableError,
    EntityKind,
    FetchError,
    RunStats,
    SessionExpiredError,
    build_summary,
    default_run_id,
    parse_kinds,
    write_run_report,
)

log = logging.getLogger(__name__)

PHASE_PAUSE_SECONDS = 2.0


# ---------------------------------------------------------------------------
# Run sequencing
# ---------------------------------------------------------------------------

def _run_phase(
    kind: EntityKind,
    fetcher: PaginatedFetcher,
    stats: RunStats,
    adapter: SqlAdapter | None,
    linker: CommissionLinker | None,
    dry_run: bool,
    prefixes: tuple[str, ...],
) -> None:
    entity_stats = stats.for_kind(kind)
    if kind is EntityKind.TRAINING:
        records = scrape_training_sessions(fetcher, prefixes)
        run_import(records, TrainingImport(), entity_stats, adapter, linker, dry_run)
    elif kind is EntityKind.CERTIFICATION:
        records = scrape_certifications(fetcher, prefixes)
        run_import(records, CertificationImport(), entity_stats, adapter, linker, dry_run)
    elif kind is EntityKind.SKILL_LEVEL:
        scraped = scrape_skill_levels(fetcher, prefixes)
        run_skill_level_import(
            scraped.records, scraped.metadata, entity_stats, adapter, linker, dry_run
        )
    elif kind is EntityKind.COMPETENCY:
        records = scrape_competencies(fetcher, prefixes)
        run_import(records, CompetencyImport(), entity_stats, adapter, linker, dry_run)
    else:
        raise ValueError(f"unknown entity kind: {kind!r}")


def run_sync(
    kinds: Iterable[EntityKind],
    fetcher: PaginatedFetcher,
    stats: RunStats,
    adapter: SqlAdapter | None = None,
    linker: CommissionLinker | None = None,
    dry_run: bool = False,
    prefixes: Iterable[str] = CLUB_PREFIXES,
    phase_pause_seconds: float = PHASE_PAUSE_SECONDS,
    sleeper: Callable[[float], None] = time.sleep,
) -> RunStats:
    """Scrape then import each kind in order, pausing between kinds.

    SessionExpiredError / FetchError from a first page propagate; the
    caller treats them as fatal.
    """
    prefixes = tuple(prefixes)
    for idx, kind in enumerate(kinds):
        if idx > 0 and phase_pause_seconds > 0:
            sleeper(phase_pause_seconds)
        _run_phase(kind, fetcher, stats, adapter, linker, dry_run, prefixes)

        if dry_run or adapter is None:
            continue
        imported = stats.for_kind(kind).imported
        try:
            adapter.update_last_sync(kind.last_sync_type, imported)
        except Exception as exc:
            log.warning("Could not record last sync for %s: %s", kind.last_sync_type, exc)
    return stats


# ---------------------------------------------------------------------------
# init_patterns mode
# ---------------------------------------------------------------------------

def _init_patterns(
    run_id: str,
    rule_set: CommissionRuleSet,
    adapter: SqlAdapter | None,
    dry_run: bool,
) -> None:
    if dry_run or adapter is None:
        ids = rule_set.dev_commission_ids()
        for kind in (EntityKind.TRAINING, EntityKind.CERTIFICATION):
            rows = relational_pattern_rows(rule_set, kind, ids)
            click.echo(f"[{run_id}] {kind.value}: {len(rows)} pattern(s) would be written")
        click.echo(f"[{run_id}] DRY RUN: nothing written.")
        return

    written = sync_pattern_table(adapter, rule_set)
    for kind_name, count in written.items():
        click.echo(f"[{run_id}] {kind_name}: {count} pattern(s) written")
    click.echo(f"[{run_id}] Rule set {rule_set.version} (sha256 {rule_set.yaml_hash[:12]})")


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def _fatal(run_id: str, message: str) -> None:
    click.echo(f"[{run_id}] FATAL: {message}", err=True)
    sys.exit(1)


@click.command()
@click.option(
    "--mode",
    type=click.Choice(["sync", "init_patterns"]),
    default="sync",
    show_default=True,
)
@click.option(
    "--only",
    default=None,
    help="Comma list of entity kinds: training,certification,skill_level,competency",
)
@click.option("--dry-run", is_flag=True, default=False, help="Scrape and validate; never open the store")
@click.option(
    "--backend",
    "backend_choice",
    type=click.Choice([BACKEND_AUTO, BACKEND_SQLITE, BACKEND_POSTGRES]),
    default=BACKEND_AUTO,
    show_default=True,
)
@click.option("--db-dsn-env", default="FFCAM_DB_DSN", show_default=True, help="Env var name holding the PostgreSQL DSN")
@click.option("--sqlite-path", default="data/local.db", show_default=True, type=click.Path())
@click.option("--session-env", default="FFCAM_SESSION_ID", show_default=True, help="Env var name holding the extranet sid")
@click.option("--base-url", default=DEFAULT_BASE_URL, show_default=True)
@click.option("--rows-per-page", default=ROWS_PER_PAGE, type=int, show_default=True)
@click.option("--request-delay-ms", default=REQUEST_DELAY_MS, type=int, show_default=True, help="Pause between pages")
@click.option("--phase-pause-seconds", default=PHASE_PAUSE_SECONDS, type=float, show_default=True, help="Pause between entity kinds")
@click.option("--club-prefixes", default=",".join(CLUB_PREFIXES), show_default=True, help="Member-number prefixes of the club")
@click.option("--rules-path", default=str(DEFAULT_RULES_PATH), show_default=True, type=click.Path())
@click.option("--reports-dir", default="data/reports", show_default=True, type=click.Path())
@click.option("--run-id", default=None, help="Override the timestamp run id used for the report")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="INFO",
    show_default=True,
)
def main(
    mode: str,
    only: str | None,
    dry_run: bool,
    backend_choice: str,
    db_dsn_env: str,
    sqlite_path: str,
    session_env: str,
    base_url: str,
    rows_per_page: int,
    request_delay_ms: int,
    phase_pause_seconds: float,
    club_prefixes: str,
    rules_path: str,
    reports_dir: str,
    run_id: str | None,
    log_level: str,
) -> None:
    """FFCAM extranet training records -> club database."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    run_id = run_id or default_run_id()
    started_at = datetime.now(timezone.utc).isoformat()

    try:
        kinds = parse_kinds(only)
    except ValueError as exc:
        raise click.BadParameter(str(exc), param_hint="--only") from exc
    prefixes = tuple(p.strip() for p in club_prefixes.split(",") if p.strip())

    try:
        rule_set = load_rule_set(Path(rules_path))
    except (RuleSetValidationError, FileNotFoundError) as exc:
        _fatal(run_id, f"commission rules {rules_path}: {exc}")

    # Credentials come from the environment only, and are checked before any request
    session_id = os.environ.get(session_env, "").strip()
    if mode == "sync" and not session_id:
        _fatal(run_id, f"env var {session_env} must hold the extranet session id (sid)")

    dsn = os.environ.get(db_dsn_env, "").strip() or None
    backend: str | None = None
    adapter: SqlAdapter | None = None
    if not dry_run:
        try:
            backend = select_backend(backend_choice, dsn)
        except BackendUnavailableError as exc:
            _fatal(run_id, str(exc))
        adapter = create_adapter(backend, dsn, sqlite_path)

    click.echo(f"[{run_id}] Starting {mode} run (dry_run={dry_run}, backend={backend or 'none'})")

    if mode == "init_patterns":
        try:
            if adapter is not None:
                adapter.connect()
            _init_patterns(run_id, rule_set, adapter, dry_run)
        except (sqlite3.Error, psycopg.Error) as exc:
            _fatal(run_id, f"store unavailable: {exc}")
        finally:
            if adapter is not None:
                adapter.close()
        return

    stats = RunStats()
    http = requests.Session()
    fetcher = PaginatedFetcher(
        http,
        session_id,
        base_url=base_url,
        rows_per_page=rows_per_page,
        rate_limiter=RateLimiter(delay_seconds=request_delay_ms / 1000.0),
    )
    try:
        linker = None
        if adapter is not None:
            adapter.connect()
            linker = CommissionLinker(adapter, rule_set)
        run_sync(
            kinds,
            fetcher,
            stats,
            adapter=adapter,
            linker=linker,
            dry_run=dry_run,
            prefixes=prefixes,
            phase_pause_seconds=phase_pause_seconds,
        )
    except SessionExpiredError as exc:
        _fatal(run_id, str(exc))
    except FetchError as exc:
        _fatal(run_id, f"first page unavailable: {exc}")
    except (sqlite3.Error, psycopg.Error) as exc:
        _fatal(run_id, f"store unavailable: {exc}")
    finally:
        if adapter is not None:
            adapter.close()
        http.close()

    click.echo(build_summary(stats, kinds, run_id, dry_run))
    report_path = write_run_report(
        Path(reports_dir), run_id, started_at, dry_run, backend, kinds, stats
    )
    click.echo(f"[{run_id}] Run report: {report_path}")
    if fetcher.pages_failed:
        click.echo(f"[{run_id}] {fetcher.pages_failed} page(s) skipped after fetch errors")


if __name__ == "__main__":
    main()
