"""Normalization functions for ANEEL tariff file ingestion.

String helpers accept str | None.  Parsers return (value, error) pairs where
the caller needs to distinguish "empty" from "malformed".
"""

from __future__ import annotations

import re
import unicodedata
from datetime import date, timedelta

_SPREADSHEET_EPOCH = date(1899, 12, 30)
_SERIAL_MIN = 30000
_SERIAL_MAX = 60000

_ISO_PREFIX_RE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})")
_BR_DATE_RE = re.compile(r"^(\d{1,2})[/\-](\d{1,2})[/\-](\d{4})$")


# ---------------------------------------------------------------------------
# Rule 1: trim
# ---------------------------------------------------------------------------

def trim(value: str | None) -> str | None:
    """Strip leading/trailing whitespace; treat empty string as None."""
    if value is None:
        return None
    v = value.strip()
    return v if v else None


# ---------------------------------------------------------------------------
# Rule 2: normalize_space
# ---------------------------------------------------------------------------

def normalize_space(value: str | None) -> str | None:
    """Collapse internal runs of whitespace to single spaces, then trim."""
    v = trim(value)
    if v is None:
        return None
    return re.sub(r"\s+", " ", v)


# ---------------------------------------------------------------------------
# Rule 3: normalize_text  (matching key for agents, headers, markers)
# ---------------------------------------------------------------------------

def normalize_text(value: str | None) -> str:
    """Trim, lowercase, drop diacritics, collapse whitespace.

    Always returns a string ("" for None) so results can be used directly
    as dict keys.  Idempotent: normalize_text(normalize_text(s)) == normalize_text(s).
    """
    v = normalize_space(value)
    if v is None:
        return ""
    v = unicodedata.normalize("NFD", v.lower())
    return "".join(c for c in v if not unicodedata.combining(c))


def normalize_header(value: str | None) -> str:
    """normalize_text, reading underscores as spaces (``inicio_vigencia``)."""
    if value is None:
        return ""
    return normalize_text(value.replace("_", " "))


# ---------------------------------------------------------------------------
# Rule 4: strip_suffixes  (legal/entity suffixes on utility names)
# ---------------------------------------------------------------------------

_SUFFIX_RE = re.compile(
    r"\b(s\s*/\s*a|s\.?\s?a\.?|ltda\.?|cia\.?|distribuicao|distribuidora|"
    r"energia|eletrica|de)(?=[\s.,\-]|$)"
)
_DIST_TAIL_RE = re.compile(r"[\s\-]+(d|dis|dist)$")
_TRAILING_PUNCT_RE = re.compile(r"[\s.,\-/]+$")
_LEADING_PUNCT_RE = re.compile(r"^[\s.,\-/]+")


def strip_suffixes(value: str) -> str:
    """Remove legal-entity and distribution suffixes from a normalized name.

    Expects normalize_text output (lowercase, accent-free).
    e.g. "cemig distribuicao s.a." -> "cemig", "cemig-d" -> "cemig".
    """
    v = _SUFFIX_RE.sub(" ", value)
    v = re.sub(r"\s+", " ", v).strip()
    v = _DIST_TAIL_RE.sub("", v)
    v = _TRAILING_PUNCT_RE.sub("", v)
    v = _LEADING_PUNCT_RE.sub("", v)
    return re.sub(r"\s+", " ", v).strip()


# ---------------------------------------------------------------------------
# Rule 5: numbers (comma-decimal tolerant)
# ---------------------------------------------------------------------------

def parse_number(value: str | None) -> float:
    """Lenient parse used by the record parser: unparseable -> 0.0."""
    v = trim(value)
    if v is None:
        return 0.0
    try:
        return float(v.replace(",", ".", 1))
    except ValueError:
        m = re.match(r"^[+-]?\d+(\.\d+)?", v.replace(",", ".", 1))
        return float(m.group(0)) if m else 0.0


def parse_numeric_field(value: str | None) -> tuple[float | None, str | None]:
    """Strict parse used by the row validator.

    Empty -> (0.0, None); non-numeric -> (None, error message).
    """
    v = trim(value)
    if v is None:
        return 0.0, None
    cleaned = re.sub(r"\s", "", v).replace(",", ".", 1)
    try:
        return float(cleaned), None
    except ValueError:
        return None, f'non-numeric value: "{value}"'


# ---------------------------------------------------------------------------
# Rule 6: tariff dates
# ---------------------------------------------------------------------------

def parse_tariff_date(value: str | None) -> tuple[str | None, str | None]:
    """Parse an ISO, Brazilian (dd/mm/yyyy, dd-mm-yyyy) or spreadsheet-serial date.

    Returns (iso_date, None) on success or (None, error message).
    """
    v = trim(value)
    if v is None:
        return None, "empty date"

    m = _ISO_PREFIX_RE.match(v)
    if m:
        year, month, day = (int(g) for g in m.groups())
        try:
            return date(year, month, day).isoformat(), None
        except ValueError:
            return None, f"invalid date: {v[:10]}"

    m = _BR_DATE_RE.match(v)
    if m:
        day, month, year = (int(g) for g in m.groups())
        if month < 1 or month > 12:
            return None, f"invalid month: {month}"
        if day < 1 or day > 31:
            return None, f"invalid day: {day}"
        if year < 1990 or year > 2099:
            return None, f"year out of range: {year}"
        try:
            return date(year, month, day).isoformat(), None
        except ValueError:
            return None, f"invalid day for month: {day:02d}/{month:02d}/{year}"

    try:
        serial = float(v)
    except ValueError:
        serial = None
    if serial is not None and _SERIAL_MIN < serial < _SERIAL_MAX:
        return (_SPREADSHEET_EPOCH + timedelta(days=int(serial))).isoformat(), None

    return None, f'unrecognized date format: "{v}"'
