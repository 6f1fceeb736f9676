"""ffcam_etl.scrapers

Entity scrapers over the FFCAM jqGrid datasets.

Each scraper is a dataset configuration plus a pure row mapper; the
PaginatedFetcher does the paging. Rows whose member number is not a club
number are dropped before mapping. The skill-level dataset also returns
an out-of-band metadata table (userData.caliData, keyed by row id) that
carries the cursus level id and the validator; it is merged page by page
and returned alongside the records.

Grid columns (cell.col_N):
  adh_formations          0 member, 1 name, 2 code, 3 label, 4 validation date,
                          5 number, 6 instructor, 7 location, 8 internal id,
                          9 start date, 10 end date
  adh_brevets             0 member, 1 name, 2 code, 3 label, 4 obtained,
                          5 recycled, 6 edited, 7 internal id, 8 comment,
                          9 continuing education, 10 migration
  adh_niveaux_pratique    0 member, 1 name, 2 club, 4 activity code,
                          5 activity, 6 level, 7 validation date
  adh_groupe_competence   0 member, 1 name, 4 activity code, 5 activity,
                          6 label, 7 associated level, 8 validation date,
                          9 status (HTML), 10 validated by, 11 comment
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, TypeVar

import click

from ffcam_etl.fetcher import PaginatedFetcher
from ffcam_etl.normalize import (
    CLUB_PREFIXES,
    format_date,
    is_club_member,
    parse_validation_status,
)
from ffcam_etl.shared import EntityKind

T = TypeVar("T")

META_CURSUS_ID = "_BASE_cursus_niveau_pratique_id"
META_VALIDATED_BY = "_BASE_validation_qui"
META_DISCIPLINE = "_BASE_discipline"


# ---------------------------------------------------------------------------
# Dataset configuration
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ScraperConfig:
    kind: EntityKind
    dataset: str
    sort_field: str

    def params(self) -> dict[str, str]:
        return {
            "def": self.dataset,
            "mode": "liste",
            "sidx": self.sort_field,
            "sord": "asc",
        }


SCRAPER_CONFIGS: dict[EntityKind, ScraperConfig] = {
    EntityKind.TRAINING: ScraperConfig(
        EntityKind.TRAINING, "adh_formations", "jqGrid_adh_formations_NOMCOMPLET"
    ),
    EntityKind.CERTIFICATION: ScraperConfig(
        EntityKind.CERTIFICATION, "adh_brevets", "jqGrid_adh_brevets_NOMCOMPLET"
    ),
    EntityKind.SKILL_LEVEL: ScraperConfig(
        EntityKind.SKILL_LEVEL, "adh_niveaux_pratique", "jqGrid_adh_niveaux_pratique_nom_complet"
    ),
    EntityKind.COMPETENCY: ScraperConfig(
        EntityKind.COMPETENCY, "adh_groupe_competence", "jqGrid_adh_groupe_competence_nom_complet"
    ),
}


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

@dataclass
class TrainingSession:
    row_id: str
    member_number: str
    name: str
    code: str
    label: str
    validation_date: str = ""
    session_number: str = ""
    instructor: str = ""
    location: str = ""
    internal_id: str = ""
    start_date: str = ""
    end_date: str = ""


@dataclass
class Certification:
    row_id: str
    member_number: str
    name: str
    code: str
    label: str
    obtained_on: str = ""
    recycled_on: str = ""
    edited_on: str = ""
    internal_id: str = ""
    comment: str = ""
    continuing_education_on: str = ""
    migrated_on: str = ""


@dataclass
class SkillLevel:
    row_id: str
    member_number: str
    name: str
    club: str = ""
    activity_code: str = ""
    activity: str = ""
    level: str = ""
    validation_date: str = ""
    validated_by: str = ""
    discipline: str = ""


@dataclass
class Competency:
    row_id: str
    member_number: str
    name: str
    activity_code: str = ""
    activity: str = ""
    label: str = ""
    associated_level: str = ""
    validation_date: str = ""
    is_validated: bool = False
    validated_by: str = ""
    comment: str = ""


@dataclass
class ScrapedSkillLevels:
    records: list[SkillLevel] = field(default_factory=list)
    metadata: dict[str, dict[str, Any]] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Row mappers
# ---------------------------------------------------------------------------

def _col(row: dict[str, Any], idx: int) -> str:
    cell = row.get("cell") or {}
    value = cell.get(f"col_{idx}")
    return "" if value is None else str(value).strip()


def _row_id(row: dict[str, Any]) -> str:
    return str(row.get("id", ""))


def map_training_row(row: dict[str, Any]) -> TrainingSession:
    return TrainingSession(
        row_id=_row_id(row),
        member_number=_col(row, 0),
        name=_col(row, 1),
        code=_col(row, 2),
        label=_col(row, 3),
        validation_date=format_date(_col(row, 4)),
        session_number=_col(row, 5),
        instructor=_col(row, 6),
        location=_col(row, 7),
        internal_id=_col(row, 8),
        start_date=format_date(_col(row, 9)),
        end_date=format_date(_col(row, 10)),
    )


def map_certification_row(row: dict[str, Any]) -> Certification:
    return Certification(
        row_id=_row_id(row),
        member_number=_col(row, 0),
        name=_col(row, 1),
        code=_col(row, 2),
        label=_col(row, 3),
        obtained_on=format_date(_col(row, 4)),
        recycled_on=format_date(_col(row, 5)),
        edited_on=format_date(_col(row, 6)),
        internal_id=_col(row, 7),
        comment=_col(row, 8),
        continuing_education_on=format_date(_col(row, 9)),
        migrated_on=format_date(_col(row, 10)),
    )


def map_skill_level_row(
    row: dict[str, Any], metadata: dict[str, dict[str, Any]] | None = None
) -> SkillLevel:
    meta = (metadata or {}).get(_row_id(row)) or {}
    return SkillLevel(
        row_id=_row_id(row),
        member_number=_col(row, 0),
        name=_col(row, 1),
        club=_col(row, 2),
        activity_code=_col(row, 4),
        activity=_col(row, 5),
        level=_col(row, 6),
        validation_date=format_date(_col(row, 7)),
        validated_by=str(meta.get(META_VALIDATED_BY) or "").strip(),
        discipline=str(meta.get(META_DISCIPLINE) or "").strip(),
    )


def map_competency_row(row: dict[str, Any]) -> Competency:
    return Competency(
        row_id=_row_id(row),
        member_number=_col(row, 0),
        name=_col(row, 1),
        activity_code=_col(row, 4),
        activity=_col(row, 5),
        label=_col(row, 6),
        associated_level=_col(row, 7),
        validation_date=format_date(_col(row, 8)),
        is_validated=parse_validation_status(_col(row, 9)),
        validated_by=_col(row, 10),
        comment=_col(row, 11),
    )


def club_only(
    mapper: Callable[[dict[str, Any]], T],
    prefixes: Iterable[str] = CLUB_PREFIXES,
) -> Callable[[dict[str, Any]], T | None]:
    """Wrap a row mapper so non-club rows are skipped before mapping."""
    prefixes = tuple(prefixes)

    def transform(row: dict[str, Any]) -> T | None:
        if not is_club_member(_col(row, 0), prefixes):
            return None
        return mapper(row)

    return transform


# ---------------------------------------------------------------------------
# Scrapers
# ---------------------------------------------------------------------------

def _echo_examples(records: list[Any], describe: Callable[[Any], str]) -> None:
    if not records:
        return
    click.echo("  examples:")
    for idx, record in enumerate(records[:3], start=1):
        click.echo(f"    {idx}. {record.name} (CAF#{record.member_number}) {describe(record)}")


def _scrape(
    kind: EntityKind,
    fetcher: PaginatedFetcher,
    mapper: Callable[[dict[str, Any]], T],
    prefixes: Iterable[str],
    on_page: Callable[[dict[str, Any]], None] | None = None,
) -> list[T]:
    click.echo(f"\nFetching {kind.heading}...")
    records = fetcher.fetch_all(
        SCRAPER_CONFIGS[kind].params(), club_only(mapper, prefixes), on_page=on_page
    )
    click.echo(f"  {len(records)} club {kind.value} record(s) fetched")
    return records


def scrape_training_sessions(
    fetcher: PaginatedFetcher, prefixes: Iterable[str] = CLUB_PREFIXES
) -> list[TrainingSession]:
    records = _scrape(EntityKind.TRAINING, fetcher, map_training_row, prefixes)
    _echo_examples(records, lambda r: f"{r.code} {r.label} [{r.validation_date}]")
    return records


def scrape_certifications(
    fetcher: PaginatedFetcher, prefixes: Iterable[str] = CLUB_PREFIXES
) -> list[Certification]:
    records = _scrape(EntityKind.CERTIFICATION, fetcher, map_certification_row, prefixes)
    _echo_examples(records, lambda r: f"{r.code} {r.label} [{r.obtained_on}]")
    return records


def scrape_skill_levels(
    fetcher: PaginatedFetcher, prefixes: Iterable[str] = CLUB_PREFIXES
) -> ScrapedSkillLevels:
    result = ScrapedSkillLevels()

    def capture_metadata(payload: dict[str, Any]) -> None:
        user_data = payload.get("userData") or {}
        cali = user_data.get("caliData") if isinstance(user_data, dict) else None
        if isinstance(cali, dict):
            result.metadata.update({str(k): v for k, v in cali.items()})

    result.records = _scrape(
        EntityKind.SKILL_LEVEL,
        fetcher,
        lambda row: map_skill_level_row(row, result.metadata),
        prefixes,
        on_page=capture_metadata,
    )
    _echo_examples(result.records, lambda r: f"{r.activity} ({r.activity_code}) {r.level}")
    return result


def scrape_competencies(
    fetcher: PaginatedFetcher, prefixes: Iterable[str] = CLUB_PREFIXES
) -> list[Competency]:
    records = _scrape(EntityKind.COMPETENCY, fetcher, map_competency_row, prefixes)
    _echo_examples(records, lambda r: f"{r.label} [{'valid' if r.is_validated else 'pending'}]")
    return records
