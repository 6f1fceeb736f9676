"""ffcam_etl.normalize

Normalization helpers for FFCAM extranet grid cells.

All functions accept str | None. Date helpers return "" (never None) for
absent values because the grid itself uses empty strings for missing dates.
"""

from __future__ import annotations

import re
from typing import Iterable

CLUB_PREFIXES: tuple[str, ...] = ("6900", "690")

_SENTINEL_DATE = "0000-00-00"
_ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_LEVEL_SHORT_RE = re.compile(r"^(INITIE|PERFECTIONNE|SPECIALISE)")


# ---------------------------------------------------------------------------
# Strings
# ---------------------------------------------------------------------------

def trim(value: str | None) -> str | None:
    """Strip leading/trailing whitespace; treat empty string as None."""
    if value is None:
        return None
    v = str(value).strip()
    return v if v else None


# ---------------------------------------------------------------------------
# Dates
# ---------------------------------------------------------------------------

def format_date(value: str | None) -> str:
    """Normalize a grid date to YYYY-MM-DD.

    Accepts DD/MM/YYYY (day and month zero-padded) or an already normalized
    YYYY-MM-DD value. Empty input and the 0000-00-00 sentinel yield "".
    Any other shape is returned unchanged.
    """
    if not value:
        return ""
    if value == _SENTINEL_DATE:
        return ""
    if _ISO_DATE_RE.match(value):
        return value
    parts = value.split("/")
    if len(parts) == 3:
        day, month, year = parts
        return f"{year}-{month.zfill(2)}-{day.zfill(2)}"
    return value


def date_or_none(value: str | None) -> str | None:
    """format_date() for persistence: empty dates become SQL NULL."""
    v = format_date(value)
    return v or None


# ---------------------------------------------------------------------------
# Club membership
# ---------------------------------------------------------------------------

def is_club_member(
    member_number: str | None,
    prefixes: Iterable[str] = CLUB_PREFIXES,
) -> bool:
    """True when the member number starts with one of the club prefixes.

    Case-sensitive; empty or missing numbers are never members.
    """
    if not member_number:
        return False
    return any(member_number.startswith(p) for p in prefixes)


# ---------------------------------------------------------------------------
# Grid cell parsing
# ---------------------------------------------------------------------------

def parse_validation_status(html: str | None) -> bool:
    """Competency status cell: a green filled circle means validated."""
    if not html:
        return False
    return "text-vert" in html and "fa-circle" in html


def extract_level_short(level: str | None) -> str | None:
    """INITIE / PERFECTIONNE / SPECIALISE prefix of a practice level label."""
    if not level:
        return None
    m = _LEVEL_SHORT_RE.match(level)
    return m.group(1) if m else None
