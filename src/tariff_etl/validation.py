"""tariff_etl.validation

Row Validator: line-by-line validation of a loaded tariff file.

  1. Global, blocking check: the schema's required columns are present.
     If not, no row is validated and the pipeline halts.
  2. Footer/summary/blank rows from the ANEEL site export are set aside in
     discarded_footer_rows; they never appear in the row results.
  3. Every remaining row gets a RowValidation with per-field errors
     (row is invalid) and warnings (row still proceeds).

File-wide notes, such as a missing modalidade column, go to
ValidationReport.warnings rather than onto every row.

Dates are normalized to ISO and comma decimals to floats along the way.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any

from tariff_etl.columns import ColumnMap, cell
from tariff_etl.loader import TariffSchema
from tariff_etl.normalize import parse_numeric_field, parse_tariff_date

DEFAULT_TARIFF_MODE = "Convencional"
MISSING_TARIFF_MODE_WARNING = (
    f"Column 'modalidade' missing; '{DEFAULT_TARIFF_MODE}' is used for every row"
)

VALID = "valid"
INVALID = "invalid"
WARNING = "warning"

# Required columns per schema.  "agent" is satisfied by agent_code or agent_name.
REQUIRED_COLUMNS: dict[TariffSchema, tuple[str, ...]] = {
    TariffSchema.CONSOLIDATED: ("agent", "validity_start", "subgroup", "tusd"),
    TariffSchema.COMPONENTS: ("agent", "validity_start", "subgroup"),
}

REQUIRED_LABELS: dict[str, str] = {
    "agent": "sigla (agent code)",
    "validity_start": "inicio_vigencia (validity start)",
    "subgroup": "subgrupo (subgroup)",
    "tusd": "tusd (TUSD value)",
    "component_value": "valor componente (component value)",
}

FOOTER_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"filtros?\s*aplicados", re.IGNORECASE),
    re.compile(r"^ano\s+.?\s*\d{4}", re.IGNORECASE),
    re.compile(r"^flag\b", re.IGNORECASE),
    re.compile(r"tipo\s+de\s+outorga", re.IGNORECASE),
    re.compile(r"\(em\s+branco\)", re.IGNORECASE),
    re.compile(r"^total\b", re.IGNORECASE),
    re.compile(r"^fonte:", re.IGNORECASE),
    re.compile(r"^legenda:", re.IGNORECASE),
)

_PREVIEW_LEN = 120


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------

@dataclass
class RowValidation:
    row_index: int
    status: str
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    raw_fields: dict[str, str] = field(default_factory=dict)
    normalized_fields: dict[str, Any] = field(default_factory=dict)
    issue_fields: set[str] = field(default_factory=set)
    empty_fields: list[str] = field(default_factory=list)


@dataclass
class DiscardedRow:
    row_index: int
    reason: str
    preview: str


@dataclass
class ValidationReport:
    schema: TariffSchema
    total_rows: int = 0
    valid_rows: int = 0
    invalid_rows: int = 0
    warning_rows: int = 0
    rows: list[RowValidation] = field(default_factory=list)
    missing_required_columns: list[str] = field(default_factory=list)
    discarded_footer_rows: list[DiscardedRow] = field(default_factory=list)
    detected_columns: dict[str, int] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)

    @property
    def is_blocked(self) -> bool:
        return bool(self.missing_required_columns)

    @property
    def invalid_row_indices(self) -> set[int]:
        return {r.row_index for r in self.rows if r.status == INVALID}


# ---------------------------------------------------------------------------
# Global checks
# ---------------------------------------------------------------------------

def _has(column_map: ColumnMap, field_name: str) -> bool:
    if field_name == "agent":
        return "agent_code" in column_map or "agent_name" in column_map
    return field_name in column_map


def check_required_columns(column_map: ColumnMap, schema: TariffSchema) -> list[str]:
    """Return one message per missing required column (empty when satisfied)."""
    missing = [
        f"Required field '{REQUIRED_LABELS.get(f, f)}' not found in header."
        for f in REQUIRED_COLUMNS[schema]
        if not _has(column_map, f)
    ]
    if (
        schema is TariffSchema.COMPONENTS
        and "component_value" not in column_map
        and "tusd" not in column_map
    ):
        missing.append("Required field 'valor componente' or 'tusd' not found in header.")
    return missing


def is_footer_row(cells: list[str]) -> bool:
    joined = " ".join((c or "").strip() for c in cells).strip()
    if not joined:
        return True
    return any(p.search(joined) for p in FOOTER_PATTERNS)


def _discard(row_index: int, cells: list[str]) -> DiscardedRow:
    if all(not (c or "").strip() for c in cells):
        return DiscardedRow(row_index, "blank row", "")
    preview = " | ".join(c.strip() for c in cells if c and c.strip())
    return DiscardedRow(row_index, "footer/summary row", preview[:_PREVIEW_LEN])


# ---------------------------------------------------------------------------
# Per-row validation
# ---------------------------------------------------------------------------

def _validate_row(
    row_index: int,
    cells: list[str],
    column_map: ColumnMap,
    schema: TariffSchema,
) -> RowValidation:
    rv = RowValidation(row_index=row_index, status=VALID)
    raw = {name: cell(cells, column_map, name) for name in column_map}
    rv.raw_fields = raw
    norm = rv.normalized_fields

    def error(field_name: str, message: str) -> None:
        rv.errors.append(message)
        rv.issue_fields.add(field_name)

    def warning(field_name: str, message: str) -> None:
        rv.warnings.append(message)
        rv.issue_fields.add(field_name)

    agent = raw.get("agent_code") or raw.get("agent_name") or ""
    if not agent:
        agent_field = "agent_code" if "agent_code" in column_map else "agent_name"
        error(agent_field, "Agent code is empty")
        rv.empty_fields.append(agent_field)
    norm["agent"] = agent

    subgroup = raw.get("subgroup", "")
    if not subgroup:
        error("subgroup", "Subgroup is empty")
        rv.empty_fields.append("subgroup")
    norm["subgroup"] = subgroup

    if "validity_start" in column_map:
        start, err = parse_tariff_date(raw.get("validity_start"))
        if err:
            error("validity_start", f"Validity start: {err}")
        if not raw.get("validity_start"):
            rv.empty_fields.append("validity_start")
        norm["validity_start"] = start

    if "validity_end" in column_map:
        end, err = parse_tariff_date(raw.get("validity_end"))
        if raw.get("validity_end") and err:
            warning("validity_end", f"Validity end: {err}")
        norm["validity_end"] = end
        start = norm.get("validity_start")
        if start and end and start > end:
            error("validity_start", f"Validity start ({start}) is after validity end ({end})")

    mandatory = schema is TariffSchema.CONSOLIDATED
    if "tusd" in column_map:
        value, err = parse_numeric_field(raw.get("tusd"))
        if err:
            (error if mandatory else warning)("tusd", f"TUSD: {err}")
        norm["tusd"] = value
    elif "component_value" in column_map:
        value, err = parse_numeric_field(raw.get("component_value"))
        if err:
            (error if mandatory else warning)("component_value", f"Component value: {err}")
        norm["component_value"] = value

    if "te" in column_map:
        value, err = parse_numeric_field(raw.get("te"))
        if err:
            warning("te", f"TE: {err}")
        norm["te"] = value

    if "base_tariff" in column_map:
        norm["base_tariff"] = raw.get("base_tariff", "")

    norm["tariff_mode"] = raw.get("tariff_mode") or DEFAULT_TARIFF_MODE

    if rv.errors:
        rv.status = INVALID
    elif rv.warnings:
        rv.status = WARNING
    return rv


def validate_rows(
    headers: list[str],
    rows: list[list[str]],
    column_map: ColumnMap,
    schema: TariffSchema,
    line_numbers: list[int] | None = None,
) -> ValidationReport:
    """Validate every data row and return the aggregate report.

    line_numbers[i] is the source line of rows[i]; defaults to i + 2
    (header on line 1).
    """
    report = ValidationReport(schema=schema, detected_columns=dict(column_map))
    report.missing_required_columns = check_required_columns(column_map, schema)
    if report.missing_required_columns:
        return report
    if "tariff_mode" not in column_map:
        report.warnings.append(MISSING_TARIFF_MODE_WARNING)

    for i, cells in enumerate(rows):
        row_index = line_numbers[i] if line_numbers else i + 2
        if is_footer_row(cells):
            report.discarded_footer_rows.append(_discard(row_index, cells))
            continue
        report.rows.append(_validate_row(row_index, cells, column_map, schema))

    report.total_rows = len(report.rows)
    report.valid_rows = sum(1 for r in report.rows if r.status == VALID)
    report.invalid_rows = sum(1 for r in report.rows if r.status == INVALID)
    report.warning_rows = sum(1 for r in report.rows if r.status == WARNING)
    return report
