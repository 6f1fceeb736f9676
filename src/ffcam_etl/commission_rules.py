"""ffcam_etl.commission_rules

YAML-based commission classification rules for FFCAM referentials.

Responsibilities:
  - Load and validate the canonical rule table (config/commission_rules.yml)
  - Classify training / certification codes into commission slugs
  - Classify practice activities (with snow-sports discipline disambiguation)
  - Render the same code rules as rows for the relational LIKE table
  - Hash YAML content for traceability

One rule set is the source of truth for both renderings: in-process
matching compiles each LIKE pattern to an anchored regex, the relational
rendering stores the patterns verbatim for `code LIKE code_pattern`.

Usage:
    from pathlib import Path
    from ffcam_etl.commission_rules import load_rule_set, classify_code

    rule_set = load_rule_set(Path("config/commission_rules.yml"))
    classify_code(rule_set, "certification", "BF1-RA-TR")
    # -> ["randonnee", "trail"]
"""

from __future__ import annotations

import hashlib
import logging
import re
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_RULES_PATH = Path("config/commission_rules.yml")

DEFAULT_PRIORITY = 10

CODE_RULE_KINDS = frozenset({"training", "certification"})

REQUIRED_YAML_KEYS = frozenset({"version", "commissions", "code_rules"})


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class RuleSetValidationError(ValueError):
    """Raised when the commission rule YAML fails schema validation."""


# ---------------------------------------------------------------------------
# LIKE pattern rendering
# ---------------------------------------------------------------------------

@lru_cache(maxsize=None)
def like_to_regex(pattern: str) -> re.Pattern[str]:
    """Compile a SQL LIKE pattern to an equivalent regex (use fullmatch).

    `%` matches any run of characters, `_` exactly one; a backslash makes
    the next character literal (ESCAPE '\\').
    """
    parts: list[str] = []
    escaped = False
    for ch in pattern:
        if escaped:
            parts.append(re.escape(ch))
            escaped = False
        elif ch == "\\":
            escaped = True
        elif ch == "%":
            parts.append(".*")
        elif ch == "_":
            parts.append(".")
        else:
            parts.append(re.escape(ch))
    if escaped:
        parts.append(re.escape("\\"))
    return re.compile("".join(parts), re.DOTALL)


def normalize_code(code: str | None) -> str:
    return (code or "").strip().upper()


# ---------------------------------------------------------------------------
# Rule set dataclasses
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CodeRule:
    pattern: str
    commission: str
    exclude: str | None = None
    priority: int = DEFAULT_PRIORITY

    def matches(self, normalized_code: str) -> bool:
        if not like_to_regex(self.pattern).fullmatch(normalized_code):
            return False
        if self.exclude and like_to_regex(self.exclude).fullmatch(normalized_code):
            return False
        return True


@dataclass
class CommissionRuleSet:
    """Parsed, validated commission rule table."""

    version: str
    yaml_hash: str
    commissions: list[str]
    code_rules: dict[str, list[CodeRule]]
    activities: dict[str, str]
    snow_activity: str | None = None
    snow_fallback: str | None = None
    snow_disciplines: list[tuple[str, str]] = field(default_factory=list)
    raw_yaml: str = field(repr=False, default="")

    def rules_for(self, kind: str) -> list[CodeRule]:
        return self.code_rules.get(_kind_key(kind), [])

    def dev_commission_ids(self) -> dict[str, int]:
        """Stand-in ids (declaration position + 1) for stores without caf_commission."""
        return {slug: idx + 1 for idx, slug in enumerate(self.commissions)}


def _kind_key(kind: Any) -> str:
    return str(getattr(kind, "value", kind))


# ---------------------------------------------------------------------------
# Loader + validator
# ---------------------------------------------------------------------------

def load_rule_set(yaml_path: Path) -> CommissionRuleSet:
    """Load, validate, and return the commission rule set.

    Raises:
        RuleSetValidationError: If any required field is missing or invalid.
        FileNotFoundError: If the YAML file does not exist.
    """
    raw = Path(yaml_path).read_text(encoding="utf-8")
    return parse_rule_set(raw)


def parse_rule_set(raw: str) -> CommissionRuleSet:
    data = yaml.safe_load(raw)
    validate_rule_set(data)
    yaml_hash = hashlib.sha256(raw.encode("utf-8")).hexdigest()

    code_rules = {
        kind: [
            CodeRule(
                pattern=str(r["pattern"]).upper(),
                commission=r["commission"],
                exclude=str(r["exclude"]).upper() if r.get("exclude") else None,
                priority=int(r.get("priority", DEFAULT_PRIORITY)),
            )
            for r in rules or []
        ]
        for kind, rules in data["code_rules"].items()
    }
    snow = data.get("snow_sports") or {}
    return CommissionRuleSet(
        version=str(data["version"]),
        yaml_hash=yaml_hash,
        commissions=list(data["commissions"]),
        code_rules=code_rules,
        activities={
            str(k).strip().upper(): v for k, v in (data.get("activities") or {}).items()
        },
        snow_activity=str(snow["activity"]).strip().upper() if snow else None,
        snow_fallback=snow.get("fallback") if snow else None,
        snow_disciplines=[
            (str(d["match"]), d["commission"]) for d in snow.get("disciplines", []) or []
        ],
        raw_yaml=raw,
    )


def validate_rule_set(data: Any) -> None:
    """Raise RuleSetValidationError if *data* does not satisfy the schema."""
    if not isinstance(data, dict):
        raise RuleSetValidationError("Rule file must be a YAML mapping")

    missing = REQUIRED_YAML_KEYS - set(data.keys())
    if missing:
        raise RuleSetValidationError(f"Missing required keys: {sorted(missing)}")

    commissions = data["commissions"]
    if not isinstance(commissions, list) or not commissions:
        raise RuleSetValidationError("commissions must be a non-empty list")
    if len(set(commissions)) != len(commissions):
        raise RuleSetValidationError("commissions contains duplicate slugs")
    known = set(commissions)

    code_rules = data["code_rules"]
    if not isinstance(code_rules, dict):
        raise RuleSetValidationError("code_rules must be a mapping")
    bad_kinds = set(code_rules.keys()) - CODE_RULE_KINDS
    if bad_kinds:
        raise RuleSetValidationError(
            f"Unknown code_rules kinds: {sorted(bad_kinds)}. "
            f"Must be one of: {sorted(CODE_RULE_KINDS)}"
        )
    for kind, rules in code_rules.items():
        if not isinstance(rules, list):
            raise RuleSetValidationError(f"code_rules.{kind} must be a list")
        for idx, rule in enumerate(rules):
            where = f"code_rules.{kind}[{idx}]"
            if not isinstance(rule, dict):
                raise RuleSetValidationError(f"{where} must be a mapping")
            pattern = rule.get("pattern")
            if not isinstance(pattern, str) or not pattern.strip():
                raise RuleSetValidationError(f"{where}.pattern must be a non-empty string")
            exclude = rule.get("exclude")
            if exclude is not None and not isinstance(exclude, str):
                raise RuleSetValidationError(f"{where}.exclude must be a string")
            if rule.get("commission") not in known:
                raise RuleSetValidationError(
                    f"{where}.commission {rule.get('commission')!r} is not a declared commission"
                )
            priority = rule.get("priority", DEFAULT_PRIORITY)
            if isinstance(priority, bool) or not isinstance(priority, int):
                raise RuleSetValidationError(f"{where}.priority must be an integer")

    activities = data.get("activities") or {}
    if not isinstance(activities, dict):
        raise RuleSetValidationError("activities must be a mapping")
    for activity, slug in activities.items():
        if slug not in known:
            raise RuleSetValidationError(
                f"activities.{activity} maps to undeclared commission {slug!r}"
            )

    snow = data.get("snow_sports")
    if snow is not None:
        if not isinstance(snow, dict) or not snow.get("activity"):
            raise RuleSetValidationError("snow_sports.activity is required")
        if snow.get("fallback") is not None and snow["fallback"] not in known:
            raise RuleSetValidationError(
                f"snow_sports.fallback {snow['fallback']!r} is not a declared commission"
            )
        for idx, disc in enumerate(snow.get("disciplines") or []):
            if not isinstance(disc, dict) or not disc.get("match"):
                raise RuleSetValidationError(f"snow_sports.disciplines[{idx}].match is required")
            if disc.get("commission") not in known:
                raise RuleSetValidationError(
                    f"snow_sports.disciplines[{idx}].commission "
                    f"{disc.get('commission')!r} is not a declared commission"
                )


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------

def classify_code(rule_set: CommissionRuleSet, kind: Any, code: str | None) -> list[str]:
    """All commissions whose rules match *code*, first-match order, no repeats."""
    normalized = normalize_code(code)
    if not normalized:
        return []
    result: list[str] = []
    for rule in rule_set.rules_for(kind):
        if rule.commission not in result and rule.matches(normalized):
            result.append(rule.commission)
    return result


def classify_activity(
    rule_set: CommissionRuleSet,
    activity: str | None,
    discipline: str | None = None,
) -> str | None:
    """Commission for a practice activity; None when unmapped.

    The snow-sports activity is resolved through its discipline; an absent
    or unrecognised discipline falls back to the configured default.
    """
    if not activity:
        return None
    act = activity.strip().upper()
    if rule_set.snow_activity and act == rule_set.snow_activity:
        if discipline:
            disc = discipline.strip().lower()
            for key, slug in rule_set.snow_disciplines:
                if key.lower() in disc:
                    return slug
        return rule_set.snow_fallback
    return rule_set.activities.get(act)


def relational_pattern_rows(
    rule_set: CommissionRuleSet,
    kind: Any,
    commission_ids: dict[str, int],
) -> list[dict[str, Any]]:
    """Rows for formation_pattern_commission_mapping, one per code rule.

    Rules whose commission has no id in *commission_ids* are skipped.
    """
    rows: list[dict[str, Any]] = []
    for rule in rule_set.rules_for(kind):
        commission_id = commission_ids.get(rule.commission)
        if commission_id is None:
            log.warning("No commission id for %s; skipping pattern %s", rule.commission, rule.pattern)
            continue
        rows.append({
            "entity_type": _kind_key(kind),
            "code_pattern": rule.pattern,
            "exclude_pattern": rule.exclude,
            "commission_id": commission_id,
            "priorite": rule.priority,
            "actif": 1,
        })
    return rows
