"""ffcam_etl.importers

Entity importers: scraped records -> referential catalog + member validation.

One generic loop, run_import(), drives four hook objects (one per entity
kind). Each hook supplies:
  referential_key(record)      catalog key counted in the run report
  validate(record, stats)      soft anomalies; False skips the record,
                               MissingReferentialKeyError fails it
  persist(record, adapter, linker)
                               referential upsert, id lookup, commission
                               links, member lookup, validation upsert
  report(stats, dry_run)       per-entity summary text

Processing order per record:
  1.  total += 1, validate
  2.  catalog key recorded
  3.  SAVEPOINT (adapter.transaction())
      a.  upsert referential entry, resolve its id
      b.  link to commissions
      c.  resolve member id; unknown member -> ignored (not an error)
      d.  upsert validation keyed by (member, referential identity)
  4.  imported += 1, or errors += 1 with the failure categorised

Dry run: validation and catalog counting happen, persistence never does,
and every valid record counts as imported.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, NamedTuple, Protocol

import click

from ffcam_etl.commission_linker import CommissionLinker
from ffcam_etl.normalize import date_or_none, extract_level_short, trim
from ffcam_etl.persistence import SqlAdapter
from ffcam_etl.scrapers import (
    META_CURSUS_ID,
    Certification,
    Competency,
    SkillLevel,
    TrainingSession,
)
from ffcam_etl.shared import (
    DETAILED_ERROR_LIMIT,
    EntityKind,
    EntityStats,
    MissingReferentialKeyError,
    build_entity_report,
)

log = logging.getLogger(__name__)

PROGRESS_EVERY = 100


class PersistResult(NamedTuple):
    member_found: bool
    links_created: int = 0


class ImportHooks(Protocol):
    kind: EntityKind

    def referential_key(self, record: Any) -> str | None:
        ...

    def validate(self, record: Any, stats: Any) -> bool:
        ...

    def persist(
        self, record: Any, adapter: SqlAdapter, linker: CommissionLinker
    ) -> PersistResult:
        ...

    def report(self, stats: Any, dry_run: bool) -> str:
        ...


# ---------------------------------------------------------------------------
# Generic loop
# ---------------------------------------------------------------------------

def _describe(record: Any) -> str:
    name = getattr(record, "name", "")
    member = getattr(record, "member_number", "")
    return f"{name} (cafnum {member})"


def _record_failure(hooks: ImportHooks, record: Any, stats: EntityStats, exc: Exception) -> None:
    already = stats.errors
    signature = stats.record_error(exc)
    stats.warnings.append(f"{_describe(record)}: {signature}")
    if already < DETAILED_ERROR_LIMIT:
        log.error(
            "%s import failed for %s key=%s: %s",
            hooks.kind.value, _describe(record), hooks.referential_key(record), exc,
        )
    elif already == DETAILED_ERROR_LIMIT:
        log.error(
            "%s: further error details suppressed; see the error breakdown in the report",
            hooks.kind.value,
        )


def run_import(
    records: Iterable[Any],
    hooks: ImportHooks,
    stats: EntityStats,
    adapter: SqlAdapter | None,
    linker: CommissionLinker | None,
    dry_run: bool = False,
) -> EntityStats:
    """Import *records* with *hooks*, accumulating into *stats*."""
    if not dry_run and (adapter is None or linker is None):
        raise ValueError("adapter and linker are required unless dry_run is set")

    click.echo(f"\nImporting {hooks.kind.heading}...")
    for record in records:
        stats.total += 1
        try:
            if not hooks.validate(record, stats):
                continue
        except MissingReferentialKeyError as exc:
            _record_failure(hooks, record, stats, exc)
            continue

        key = hooks.referential_key(record)
        if key:
            stats.catalog.add(key)

        if dry_run:
            stats.imported += 1
        else:
            try:
                with adapter.transaction():
                    result = hooks.persist(record, adapter, linker)
            except Exception as exc:
                _record_failure(hooks, record, stats, exc)
            else:
                stats.links_created += result.links_created
                if result.member_found:
                    stats.imported += 1
                else:
                    stats.ignored += 1

        if stats.total % PROGRESS_EVERY == 0:
            click.echo(f"  {stats.imported}/{stats.total} imported")

    click.echo(hooks.report(stats, dry_run))
    return stats


def _referential_id(adapter: SqlAdapter, sql: str, params: tuple[Any, ...], what: str) -> int:
    row = adapter.fetch_one(sql, params)
    if row is None:
        raise LookupError(f"referential id not found for {what}")
    return int(row["id"])


# ---------------------------------------------------------------------------
# Training sessions
# ---------------------------------------------------------------------------

@dataclass
class TrainingImport:
    kind: EntityKind = EntityKind.TRAINING

    def referential_key(self, record: TrainingSession) -> str | None:
        return trim(record.code)

    def validate(self, record: TrainingSession, stats: Any) -> bool:
        if not trim(record.session_number):
            stats.missing_number += 1
        if not trim(record.instructor):
            stats.missing_instructor += 1
        if not trim(record.location):
            stats.missing_location += 1
        if not record.start_date or not record.end_date:
            stats.missing_dates += 1
        if not trim(record.code):
            stats.missing_code += 1
            raise MissingReferentialKeyError(f"training session without code for {_describe(record)}")
        return True

    def persist(
        self, record: TrainingSession, adapter: SqlAdapter, linker: CommissionLinker
    ) -> PersistResult:
        code = record.code.strip()
        adapter.upsert(
            "formation_referentiel",
            {"code_formation": code, "intitule": trim(record.label) or code},
            conflict=["code_formation"],
            update=["intitule"],
            touch=["updated_at"],
        )
        formation_id = _referential_id(
            adapter,
            "SELECT id FROM formation_referentiel WHERE code_formation = %s LIMIT 1",
            (code,), f"training {code}",
        )
        links = linker.link_training(formation_id, code)

        user_id = adapter.get_member_id(record.member_number)
        if user_id is None:
            return PersistResult(False, links)

        adapter.upsert(
            "formation_validation",
            {
                "user_id": user_id,
                "code_formation": code,
                "id_interne": record.internal_id or "",
                "valide": 1,
                "date_validation": date_or_none(record.validation_date),
                "numero_formation": trim(record.session_number),
                "validateur": trim(record.instructor),
                "intitule_formation": trim(record.label),
                "lieu_formation": trim(record.location),
                "date_debut_formation": date_or_none(record.start_date),
                "date_fin_formation": date_or_none(record.end_date),
            },
            conflict=["user_id", "code_formation", "id_interne"],
            update=[
                "valide",
                "date_validation",
                "numero_formation",
                "validateur",
                "intitule_formation",
                "lieu_formation",
                "date_debut_formation",
                "date_fin_formation",
            ],
            touch=["updated_at"],
        )
        return PersistResult(True, links)

    def report(self, stats: Any, dry_run: bool) -> str:
        return build_entity_report(self.kind, stats, dry_run)


# ---------------------------------------------------------------------------
# Certifications (brevets)
# ---------------------------------------------------------------------------

@dataclass
class CertificationImport:
    kind: EntityKind = EntityKind.CERTIFICATION

    def referential_key(self, record: Certification) -> str | None:
        return trim(record.code)

    def validate(self, record: Certification, stats: Any) -> bool:
        if not trim(record.code):
            stats.missing_code += 1
            raise MissingReferentialKeyError(f"certification without code for {_describe(record)}")
        if not record.obtained_on:
            stats.missing_acquisition_date += 1
        return True

    def persist(
        self, record: Certification, adapter: SqlAdapter, linker: CommissionLinker
    ) -> PersistResult:
        code = record.code.strip()
        adapter.upsert(
            "formation_referentiel_brevet",
            {"code_brevet": code, "intitule": trim(record.label) or code},
            conflict=["code_brevet"],
            update=["intitule"],
            touch=["updated_at"],
        )
        brevet_id = _referential_id(
            adapter,
            "SELECT id FROM formation_referentiel_brevet WHERE code_brevet = %s LIMIT 1",
            (code,), f"certification {code}",
        )
        links = linker.link_certification(brevet_id, code)

        user_id = adapter.get_member_id(record.member_number)
        if user_id is None:
            return PersistResult(False, links)

        adapter.upsert(
            "formation_validation_brevet",
            {
                "user_id": user_id,
                "brevet_id": brevet_id,
                "id_interne": record.internal_id or "",
                "date_obtention": date_or_none(record.obtained_on),
                "date_recyclage": date_or_none(record.recycled_on),
                "date_edition": date_or_none(record.edited_on),
                "date_formation_continue": date_or_none(record.continuing_education_on),
                "date_migration": date_or_none(record.migrated_on),
            },
            conflict=["user_id", "brevet_id", "id_interne"],
            update=[
                "date_obtention",
                "date_recyclage",
                "date_edition",
                "date_formation_continue",
                "date_migration",
            ],
            touch=["updated_at"],
        )
        return PersistResult(True, links)

    def report(self, stats: Any, dry_run: bool) -> str:
        return build_entity_report(self.kind, stats, dry_run)


# ---------------------------------------------------------------------------
# Skill levels (niveaux de pratique)
# ---------------------------------------------------------------------------

@dataclass
class SkillLevelImport:
    """Skill levels resolve their referential identity from the metadata side table."""

    metadata: dict[str, dict[str, Any]] = field(default_factory=dict)
    kind: EntityKind = EntityKind.SKILL_LEVEL

    def cursus_id(self, record: SkillLevel) -> str | None:
        meta = self.metadata.get(record.row_id) or {}
        value = meta.get(META_CURSUS_ID)
        return trim(str(value)) if value is not None else None

    def referential_key(self, record: SkillLevel) -> str | None:
        return self.cursus_id(record)

    def validate(self, record: SkillLevel, stats: Any) -> bool:
        if not self.cursus_id(record):
            stats.missing_cursus_id += 1
            return False
        if extract_level_short(record.level) is None:
            stats.non_standard_level += 1
        return True

    def persist(
        self, record: SkillLevel, adapter: SqlAdapter, linker: CommissionLinker
    ) -> PersistResult:
        cursus_id = int(self.cursus_id(record))
        discipline = trim(record.discipline)
        adapter.upsert(
            "formation_referentiel_niveau_pratique",
            {
                "cursus_niveau_id": cursus_id,
                "code_activite": trim(record.activity_code),
                "activite": trim(record.activity),
                "niveau": trim(record.level),
                "libelle": trim(record.level),
                "niveau_court": extract_level_short(record.level),
                "discipline": discipline,
            },
            conflict=["cursus_niveau_id"],
            update=["libelle", "niveau_court", "discipline"],
            touch=["updated_at"],
        )
        niveau_id = _referential_id(
            adapter,
            "SELECT id FROM formation_referentiel_niveau_pratique "
            "WHERE cursus_niveau_id = %s LIMIT 1",
            (cursus_id,), f"skill level cursus {cursus_id}",
        )
        links = linker.link_skill_level(niveau_id, record.activity, discipline)

        user_id = adapter.get_member_id(record.member_number)
        if user_id is None:
            return PersistResult(False, links)

        adapter.upsert(
            "formation_validation_niveau_pratique",
            {
                "user_id": user_id,
                "niveau_id": niveau_id,
                "date_validation": date_or_none(record.validation_date),
                "valide_par": trim(record.validated_by),
            },
            conflict=["user_id", "niveau_id"],
            update=["date_validation", "valide_par"],
            touch=["updated_at"],
        )
        return PersistResult(True, links)

    def report(self, stats: Any, dry_run: bool) -> str:
        return build_entity_report(self.kind, stats, dry_run)


def run_skill_level_import(
    records: Iterable[SkillLevel],
    metadata: dict[str, dict[str, Any]],
    stats: EntityStats,
    adapter: SqlAdapter | None,
    linker: CommissionLinker | None,
    dry_run: bool = False,
) -> EntityStats:
    return run_import(records, SkillLevelImport(metadata), stats, adapter, linker, dry_run)


# ---------------------------------------------------------------------------
# Competencies (groupes de compétences)
# ---------------------------------------------------------------------------

@dataclass
class CompetencyImport:
    kind: EntityKind = EntityKind.COMPETENCY

    def referential_key(self, record: Competency) -> str | None:
        label = trim(record.label)
        if not label:
            return None
        return f"{label}|{record.activity_code.strip()}"

    def validate(self, record: Competency, stats: Any) -> bool:
        if not trim(record.label):
            stats.missing_label += 1
            return False
        return True

    def persist(
        self, record: Competency, adapter: SqlAdapter, linker: CommissionLinker
    ) -> PersistResult:
        label = record.label.strip()
        activity_code = record.activity_code.strip()
        adapter.upsert(
            "formation_competence_referentiel",
            {"intitule": label, "code_activite": activity_code, "activite": trim(record.activity)},
            conflict=["intitule", "code_activite"],
            update=["activite"],
            touch=["updated_at"],
        )
        competence_id = _referential_id(
            adapter,
            "SELECT id FROM formation_competence_referentiel "
            "WHERE intitule = %s AND code_activite = %s LIMIT 1",
            (label, activity_code), f"competency {label!r}",
        )
        links = linker.link_competency(competence_id, record.activity)

        user_id = adapter.get_member_id(record.member_number)
        if user_id is None:
            return PersistResult(False, links)

        adapter.upsert(
            "formation_competence_validation",
            {
                "user_id": user_id,
                "competence_id": competence_id,
                "niveau_associe": trim(record.associated_level),
                "date_validation": date_or_none(record.validation_date),
                "est_valide": 1 if record.is_validated else 0,
                "valide_par": trim(record.validated_by),
                "commentaire": trim(record.comment),
            },
            conflict=["user_id", "competence_id"],
            update=[
                "niveau_associe",
                "date_validation",
                "est_valide",
                "valide_par",
                "commentaire",
            ],
            touch=["updated_at"],
        )
        return PersistResult(True, links)

    def report(self, stats: Any, dry_run: bool) -> str:
        return build_entity_report(self.kind, stats, dry_run)
