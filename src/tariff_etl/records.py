"""tariff_etl.records

Record Parser: keeps the business-relevant rows of a validated file.

Walks the rows again, independently of validation status, and emits one
ParsedTariffRecord per row that:

  - has at least 3 cells and is not a footer/summary row,
  - carries the "aplica" marker in the base-tariff column (when that column
    exists and the cell is non-empty),
  - has a non-empty subgroup,
  - for the components schema only: names the "fio b" component.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

from tariff_etl.columns import ColumnMap, cell
from tariff_etl.loader import TariffSchema
from tariff_etl.normalize import normalize_text, parse_number, parse_tariff_date
from tariff_etl.validation import DEFAULT_TARIFF_MODE, is_footer_row

_MIN_CELLS = 3
_APPLIES_MARKER = "aplica"
_WIRE_B_MARKER = "fio b"


@dataclass(frozen=True)
class ParsedTariffRecord:
    source_agent_code: str
    source_agent_name: str
    subgroup: str
    tariff_mode: str
    time_slot: str
    tusd_value: float
    te_value: float
    fio_b_value: float | None
    unit: str
    base_tariff_flag: str
    detail: str
    validity_start: str
    row_index: int
    tariff_class: str = ""
    tariff_subclass: str = ""

    @property
    def source_agent(self) -> str:
        return self.source_agent_code or self.source_agent_name


def _is_wire_b(component: str) -> bool:
    return _WIRE_B_MARKER in normalize_text(component).replace("_", " ")


def parse_records(
    rows: list[list[str]],
    column_map: ColumnMap,
    schema: TariffSchema,
    line_numbers: list[int] | None = None,
    skip_rows: Iterable[int] | None = None,
) -> list[ParsedTariffRecord]:
    """Return the tariff records worth aggregating, in file order.

    skip_rows holds row indices (source line numbers) to leave out.
    """
    skip = set(skip_rows or ())
    records: list[ParsedTariffRecord] = []

    for i, cells in enumerate(rows):
        row_index = line_numbers[i] if line_numbers else i + 2
        if row_index in skip or len(cells) < _MIN_CELLS or is_footer_row(cells):
            continue

        base_flag = cell(cells, column_map, "base_tariff")
        if base_flag and _APPLIES_MARKER not in normalize_text(base_flag):
            continue

        subgroup = cell(cells, column_map, "subgroup")
        if not subgroup:
            continue

        tusd = parse_number(cell(cells, column_map, "tusd"))
        fio_b: float | None = None
        if schema is TariffSchema.COMPONENTS:
            if not _is_wire_b(cell(cells, column_map, "component")):
                continue
            fio_b = parse_number(cell(cells, column_map, "component_value")) or tusd

        raw_start = cell(cells, column_map, "validity_start")
        iso_start, _ = parse_tariff_date(raw_start)

        records.append(ParsedTariffRecord(
            source_agent_code=cell(cells, column_map, "agent_code"),
            source_agent_name=cell(cells, column_map, "agent_name"),
            subgroup=subgroup,
            tariff_mode=cell(cells, column_map, "tariff_mode") or DEFAULT_TARIFF_MODE,
            time_slot=cell(cells, column_map, "time_slot"),
            tusd_value=tusd,
            te_value=parse_number(cell(cells, column_map, "te")),
            fio_b_value=fio_b,
            unit=cell(cells, column_map, "unit"),
            base_tariff_flag=base_flag,
            detail=cell(cells, column_map, "detail"),
            validity_start=iso_start or raw_start,
            row_index=row_index,
            tariff_class=cell(cells, column_map, "tariff_class"),
            tariff_subclass=cell(cells, column_map, "tariff_subclass"),
        ))
    return records
