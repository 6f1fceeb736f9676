"""ffcam_etl.shared

Shared types used across the FFCAM sync pipeline: exceptions, the entity
kind enum, per-kind statistics, error categorisation, and run-report
writing support.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

DETAILED_ERROR_LIMIT = 3


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

SESSION_HELP = (
    "To renew the session:\n"
    "  1. Log in to the FFCAM extranet\n"
    "  2. Copy the \"sid\" parameter from the page URL\n"
    "     e.g. https://extranet-clubalpin.com/...?sid=YOUR_SESSION_ID\n"
    "  3. Export it as FFCAM_SESSION_ID (or the variable named by --session-env)"
)


class SessionExpiredError(Exception):
    """The extranet answered with an HTML page instead of grid JSON."""

    def __init__(self, message: str = "FFCAM session id expired or invalid.") -> None:
        super().__init__(f"{message}\n\n{SESSION_HELP}")


class FetchError(Exception):
    """A single grid page could not be fetched or decoded."""


class MissingReferentialKeyError(ValueError):
    """A record carries no referential code; it cannot be imported."""


class BackendUnavailableError(Exception):
    """A forced persistence backend is not configured."""


# ---------------------------------------------------------------------------
# Entity kinds
# ---------------------------------------------------------------------------

class EntityKind(str, Enum):
    TRAINING = "training"
    CERTIFICATION = "certification"
    SKILL_LEVEL = "skill_level"
    COMPETENCY = "competency"

    @property
    def last_sync_type(self) -> str:
        """Key written to formation_last_sync.type."""
        return _LAST_SYNC_TYPES[self]

    @property
    def heading(self) -> str:
        return _HEADINGS[self]


_LAST_SYNC_TYPES = {
    EntityKind.TRAINING: "formations",
    EntityKind.CERTIFICATION: "brevets",
    EntityKind.SKILL_LEVEL: "niveaux_pratique",
    EntityKind.COMPETENCY: "competences",
}

_HEADINGS = {
    EntityKind.TRAINING: "TRAINING SESSIONS",
    EntityKind.CERTIFICATION: "CERTIFICATIONS",
    EntityKind.SKILL_LEVEL: "SKILL LEVELS",
    EntityKind.COMPETENCY: "COMPETENCIES",
}

ALL_KINDS: tuple[EntityKind, ...] = (
    EntityKind.TRAINING,
    EntityKind.CERTIFICATION,
    EntityKind.SKILL_LEVEL,
    EntityKind.COMPETENCY,
)


def parse_kinds(value: str | None) -> list[EntityKind]:
    """Parse a comma-separated kind list ("training,competency") in run order.

    Raises ValueError on an unknown kind.
    """
    if not value:
        return list(ALL_KINDS)
    requested = {v.strip() for v in value.split(",") if v.strip()}
    unknown = requested - {k.value for k in ALL_KINDS}
    if unknown:
        raise ValueError(f"unknown entity kind(s): {sorted(unknown)}")
    return [k for k in ALL_KINDS if k.value in requested]


# ---------------------------------------------------------------------------
# Statistics
# ---------------------------------------------------------------------------

def error_signature(exc: BaseException) -> str:
    """Bucket key for an import failure.

    Driver errors are grouped by their SQL state (psycopg) or SQLite error
    name; anything else by the first 50 characters of its message.
    """
    sqlstate = getattr(exc, "sqlstate", None)
    if sqlstate:
        return f"SQL-{sqlstate}"
    errorname = getattr(exc, "sqlite_errorname", None)
    if errorname:
        return f"SQL-{errorname}"
    return str(exc)[:50]


@dataclass
class EntityStats:
    total: int = 0
    imported: int = 0
    ignored: int = 0
    errors: int = 0
    links_created: int = 0
    error_types: dict[str, int] = field(default_factory=dict)
    catalog: set[str] = field(default_factory=set)
    warnings: list[str] = field(default_factory=list)

    def record_error(self, exc: BaseException) -> str:
        signature = error_signature(exc)
        self.error_types[signature] = self.error_types.get(signature, 0) + 1
        self.errors += 1
        return signature

    def anomalies(self) -> dict[str, int]:
        """Entity-specific anomaly counters (fields declared by subclasses)."""
        base = set(EntityStats.__dataclass_fields__)
        return {k: v for k, v in self.__dict__.items() if k not in base}

    def to_dict(self) -> dict[str, Any]:
        d = {
            k: v for k, v in self.__dict__.items()
            if k not in ("catalog", "warnings", "error_types")
        }
        d["error_types"] = dict(self.error_types)
        d["catalog_size"] = len(self.catalog)
        d["warnings"] = self.warnings[:50]
        return d


@dataclass
class TrainingStats(EntityStats):
    missing_number: int = 0
    missing_instructor: int = 0
    missing_location: int = 0
    missing_dates: int = 0
    missing_code: int = 0


@dataclass
class CertificationStats(EntityStats):
    missing_code: int = 0
    missing_acquisition_date: int = 0


@dataclass
class SkillLevelStats(EntityStats):
    missing_cursus_id: int = 0
    non_standard_level: int = 0


@dataclass
class CompetencyStats(EntityStats):
    missing_label: int = 0


@dataclass
class RunStats:
    training: TrainingStats = field(default_factory=TrainingStats)
    certification: CertificationStats = field(default_factory=CertificationStats)
    skill_level: SkillLevelStats = field(default_factory=SkillLevelStats)
    competency: CompetencyStats = field(default_factory=CompetencyStats)

    def for_kind(self, kind: EntityKind) -> EntityStats:
        if kind is EntityKind.TRAINING:
            return self.training
        if kind is EntityKind.CERTIFICATION:
            return self.certification
        if kind is EntityKind.SKILL_LEVEL:
            return self.skill_level
        if kind is EntityKind.COMPETENCY:
            return self.competency
        raise ValueError(f"unknown entity kind: {kind!r}")

    @property
    def total_errors(self) -> int:
        return sum(self.for_kind(k).errors for k in ALL_KINDS)

    def to_dict(self) -> dict[str, Any]:
        return {
            "stats": {k.value: self.for_kind(k).to_dict() for k in ALL_KINDS},
            "referentials": {
                k.value: len(self.for_kind(k).catalog) for k in ALL_KINDS
            },
        }


# ---------------------------------------------------------------------------
# Reporting
# ---------------------------------------------------------------------------

def default_run_id(now: datetime | None = None) -> str:
    """Filesystem-safe UTC timestamp, e.g. 2025-03-01T08-15-42."""
    now = now or datetime.now(timezone.utc)
    return now.strftime("%Y-%m-%dT%H-%M-%S")


def _pct(part: int, whole: int) -> str:
    if not whole:
        return "0.0%"
    return f"{100.0 * part / whole:.1f}%"


def build_entity_report(kind: EntityKind, stats: EntityStats, dry_run: bool) -> str:
    """Per-entity report printed after an import phase."""
    lines = [
        f"--- {kind.heading} {'(dry run)' if dry_run else ''}".rstrip(),
        f"total      : {stats.total}",
        f"imported   : {stats.imported}",
        f"ignored    : {stats.ignored}",
        f"errors     : {stats.errors}",
        f"links      : {stats.links_created}",
        f"catalog    : {len(stats.catalog)}",
    ]
    for name, count in stats.anomalies().items():
        lines.append(f"{name:<26}: {count} ({_pct(count, stats.total)})")
    if stats.error_types:
        lines.append("errors by type:")
        for signature, count in sorted(
            stats.error_types.items(), key=lambda kv: kv[1], reverse=True
        ):
            lines.append(f"  - {signature}: {count}")
    return "\n".join(lines)


def build_summary(stats: RunStats, kinds: list[EntityKind], run_id: str, dry_run: bool) -> str:
    lines = [
        "=== FFCAM Sync Run Report ===",
        f"run_id     : {run_id}",
        f"dry_run    : {dry_run}",
        "",
        f"{'entity':<14} {'total':>7} {'imported':>9} {'ignored':>8} {'errors':>7}",
    ]
    for kind in kinds:
        s = stats.for_kind(kind)
        lines.append(
            f"{kind.value:<14} {s.total:>7} {s.imported:>9} {s.ignored:>8} {s.errors:>7}"
        )
    lines += ["", "--- Referentials ---"]
    for kind in kinds:
        lines.append(f"{kind.value:<14}: {len(stats.for_kind(kind).catalog)}")
    return "\n".join(lines)


def write_run_report(
    reports_dir: Path,
    run_id: str,
    started_at: str,
    dry_run: bool,
    backend: str | None,
    kinds: list[EntityKind],
    stats: RunStats,
) -> Path:
    report = {
        "run_id": run_id,
        "mode": "dry-run" if dry_run else "production",
        "started_at": started_at,
        "finished_at": datetime.now(timezone.utc).isoformat(),
        "dry_run": dry_run,
        "backend": backend,
        "entities": [k.value for k in kinds],
        **stats.to_dict(),
    }
    report_path = Path(reports_dir) / f"import_{run_id}.json"
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps(report, indent=2, default=str))
    return report_path
