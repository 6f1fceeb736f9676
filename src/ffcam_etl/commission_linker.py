"""ffcam_etl.commission_linker

Links FFCAM referential entries to CAF commissions.

CommissionLinker wraps the rule-based classifier with persistence: each
commission slug is resolved once per run through caf_commission, then
idempotent link rows are written (ON CONFLICT DO NOTHING). A store
without caf_commission (the SQLite development store) yields no ids and
no links; that is not an error. Unexpected database errors propagate to
the importer, which counts them against the record.

Also provides the relational rendering of the code rules:
  - sync_pattern_table()  rewrites formation_pattern_commission_mapping
  - classify_code_sql()   resolves commission ids with SQL LIKE
"""

from __future__ import annotations

import logging
from typing import Any

from ffcam_etl.commission_rules import (
    CommissionRuleSet,
    classify_activity,
    classify_code,
    normalize_code,
    relational_pattern_rows,
)
from ffcam_etl.persistence import SqlAdapter
from ffcam_etl.shared import EntityKind

log = logging.getLogger(__name__)

LINK_TABLES: dict[EntityKind, tuple[str, str]] = {
    EntityKind.TRAINING: ("formation_commission_formation", "formation_id"),
    EntityKind.CERTIFICATION: ("formation_commission_brevet", "brevet_id"),
    EntityKind.SKILL_LEVEL: ("formation_commission_niveau_pratique", "niveau_id"),
    EntityKind.COMPETENCY: ("formation_commission_groupe_competence", "groupe_competence_id"),
}

PATTERN_TABLE = "formation_pattern_commission_mapping"
PATTERN_KINDS = (EntityKind.TRAINING, EntityKind.CERTIFICATION)


# ---------------------------------------------------------------------------
# Linker
# ---------------------------------------------------------------------------

class CommissionLinker:
    def __init__(self, adapter: SqlAdapter, rule_set: CommissionRuleSet) -> None:
        self.adapter = adapter
        self.rule_set = rule_set
        self._ids: dict[str, int | None] = {}

    def commission_id(self, slug: str) -> int | None:
        """caf_commission id for *slug*, cached for the run (misses included)."""
        if slug in self._ids:
            return self._ids[slug]
        try:
            with self.adapter.transaction():
                row = self.adapter.fetch_one(
                    "SELECT id_commission FROM caf_commission "
                    "WHERE code_commission = %s LIMIT 1",
                    (slug,),
                )
        except Exception as exc:
            if not self.adapter.is_missing_table(exc):
                raise
            log.debug("caf_commission unavailable; no id for %s", slug)
            row = None
        commission_id = int(row["id_commission"]) if row else None
        self._ids[slug] = commission_id
        return commission_id

    def link_training(self, formation_id: int, code: str) -> int:
        slugs = classify_code(self.rule_set, EntityKind.TRAINING, code)
        return self._link(EntityKind.TRAINING, formation_id, slugs)

    def link_certification(self, brevet_id: int, code: str) -> int:
        slugs = classify_code(self.rule_set, EntityKind.CERTIFICATION, code)
        return self._link(EntityKind.CERTIFICATION, brevet_id, slugs)

    def link_skill_level(self, niveau_id: int, activity: str | None, discipline: str | None) -> int:
        slug = classify_activity(self.rule_set, activity, discipline)
        return self._link(EntityKind.SKILL_LEVEL, niveau_id, [slug] if slug else [])

    def link_competency(self, competence_id: int, activity: str | None) -> int:
        slug = classify_activity(self.rule_set, activity)
        return self._link(EntityKind.COMPETENCY, competence_id, [slug] if slug else [])

    def _link(self, kind: EntityKind, ref_id: int, slugs: list[str]) -> int:
        table, column = LINK_TABLES[kind]
        created = 0
        for slug in slugs:
            commission_id = self.commission_id(slug)
            if commission_id is None:
                continue
            try:
                with self.adapter.transaction():
                    result = self.adapter.insert_ignore(
                        table,
                        {column: ref_id, "commission_id": commission_id},
                        conflict=[column, "commission_id"],
                    )
            except Exception as exc:
                if not self.adapter.is_missing_table(exc):
                    raise
                log.debug("%s unavailable; skipping link to %s", table, slug)
                continue
            if result.rowcount > 0:
                created += 1
        return created


# ---------------------------------------------------------------------------
# Relational pattern table
# ---------------------------------------------------------------------------

def resolve_commission_ids(adapter: SqlAdapter, rule_set: CommissionRuleSet) -> dict[str, int]:
    """Real caf_commission ids when the table exists, development ids otherwise."""
    if not adapter.table_exists("caf_commission"):
        return rule_set.dev_commission_ids()
    rows, _ = adapter.execute("SELECT id_commission, code_commission FROM caf_commission")
    return {r["code_commission"]: int(r["id_commission"]) for r in rows}


def sync_pattern_table(adapter: SqlAdapter, rule_set: CommissionRuleSet) -> dict[str, int]:
    """Replace the relational pattern rows with the current rule set.

    Returns the number of rows written per entity kind.
    """
    commission_ids = resolve_commission_ids(adapter, rule_set)
    now = adapter.dialect.now
    insert_sql = (
        f"INSERT INTO {PATTERN_TABLE} "
        "(entity_type, code_pattern, exclude_pattern, commission_id, priorite, actif, "
        "created_at, updated_at) "
        f"VALUES (%s, %s, %s, %s, %s, %s, {now}, {now})"
    )
    written: dict[str, int] = {}
    with adapter.transaction():
        adapter.execute(f"DELETE FROM {PATTERN_TABLE}")
        for kind in PATTERN_KINDS:
            rows = relational_pattern_rows(rule_set, kind, commission_ids)
            for row in rows:
                adapter.execute(insert_sql, (
                    row["entity_type"],
                    row["code_pattern"],
                    row["exclude_pattern"],
                    row["commission_id"],
                    row["priorite"],
                    row["actif"],
                ))
            written[kind.value] = len(rows)
    return written


def classify_code_sql(adapter: SqlAdapter, kind: Any, code: str | None) -> list[int]:
    """Commission ids for *code* via SQL LIKE, priority DESC then id ASC."""
    normalized = normalize_code(code)
    if not normalized:
        return []
    rows, _ = adapter.execute(
        "SELECT commission_id, MAX(priorite) AS priorite "
        f"FROM {PATTERN_TABLE} "
        "WHERE actif = 1 AND entity_type = %s "
        "AND CAST(%s AS TEXT) LIKE code_pattern ESCAPE '\\' "
        "AND (exclude_pattern IS NULL "
        "     OR CAST(%s AS TEXT) NOT LIKE exclude_pattern ESCAPE '\\') "
        "GROUP BY commission_id "
        "ORDER BY MAX(priorite) DESC, commission_id ASC",
        (str(getattr(kind, "value", kind)), normalized, normalized),
    )
    return [int(r["commission_id"]) for r in rows]
