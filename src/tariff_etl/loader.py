"""tariff_etl.loader

File Loader and Schema Detector.

Reads an ANEEL tariff export (delimited text or .xlsx spreadsheet) into a
header row plus data rows of trimmed string cells, and classifies the file
as one of the two known schemas:

  consolidated: "Tarifas Homologadas": TE/TUSD totals per subgroup
  components  : "Componentes Tarifários": one row per tariff component
"""

from __future__ import annotations

import csv
import io
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from pathlib import PurePath

import openpyxl

from tariff_etl.normalize import normalize_header
from tariff_etl.shared import EmptyFileError, StructuralFileError

SPREADSHEET_SUFFIXES = frozenset({".xlsx", ".xlsm"})

# "fio_b" headers read as "fio b" under normalize_header
_COMPONENT_MARKERS = ("componente", "fio b", "dsctipocomponente")


class TariffSchema(str, Enum):
    CONSOLIDATED = "consolidated"
    COMPONENTS = "components"

    @property
    def label(self) -> str:
        if self is TariffSchema.COMPONENTS:
            return "Componentes Tarifários"
        return "Tarifas Homologadas"


@dataclass
class LoadedFile:
    """Header + data rows of one source file.

    line_numbers[i] is the 1-based source line (or sheet row) of rows[i];
    the header occupies line 1 in well-formed files.
    """

    headers: list[str]
    rows: list[list[str]]
    line_numbers: list[int] = field(default_factory=list)
    container: str = "delimited"

    def __post_init__(self) -> None:
        if not self.line_numbers:
            self.line_numbers = [i + 2 for i in range(len(self.rows))]


# ---------------------------------------------------------------------------
# Delimited text
# ---------------------------------------------------------------------------

def _decode(content: bytes) -> str:
    try:
        return content.decode("utf-8-sig")
    except UnicodeDecodeError:
        pass
    try:
        return content.decode("latin-1")
    except UnicodeDecodeError as exc:  # pragma: no cover - latin-1 maps every byte
        raise StructuralFileError(f"cannot decode file: {exc}") from exc


def sniff_delimiter(header_line: str) -> str:
    """ANEEL exports use ';'; hand-made files often use ','."""
    return ";" if ";" in header_line else ","


def load_delimited(text: str) -> LoadedFile:
    lines = text.splitlines()
    header_line = next((ln for ln in lines if ln.strip()), None)
    if header_line is None:
        raise EmptyFileError("file has no header row")
    delimiter = sniff_delimiter(header_line)

    reader = csv.reader(io.StringIO(text), delimiter=delimiter)
    headers: list[str] | None = None
    rows: list[list[str]] = []
    line_numbers: list[int] = []
    try:
        for record in reader:
            cells = [c.strip() for c in record]
            if headers is None:
                if not any(cells):
                    continue
                headers = cells
                continue
            rows.append(cells or [""])
            line_numbers.append(reader.line_num)
    except csv.Error as exc:
        raise StructuralFileError(f"malformed delimited text near line {reader.line_num}: {exc}") from exc

    if headers is None:
        raise EmptyFileError("file has no header row")
    if not any(any(c for c in r) for r in rows):
        raise EmptyFileError("file has a header but no data rows")
    return LoadedFile(headers, rows, line_numbers, container="delimited")


# ---------------------------------------------------------------------------
# Spreadsheet
# ---------------------------------------------------------------------------

def _cell_text(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


def load_spreadsheet(content: bytes) -> LoadedFile:
    """Read the first worksheet of an .xlsx workbook."""
    try:
        wb = openpyxl.load_workbook(io.BytesIO(content), read_only=True, data_only=True)
    except Exception as exc:
        raise StructuralFileError(f"failed to open spreadsheet: {exc}") from exc

    try:
        sheet = wb.active or wb[wb.sheetnames[0]]
        headers: list[str] | None = None
        rows: list[list[str]] = []
        line_numbers: list[int] = []
        for row_no, values in enumerate(sheet.iter_rows(values_only=True), start=1):
            cells = [_cell_text(v) for v in values]
            if headers is None:
                if not any(cells):
                    continue
                headers = cells
                continue
            rows.append(cells or [""])
            line_numbers.append(row_no)
    finally:
        wb.close()

    if headers is None:
        raise EmptyFileError("spreadsheet has no header row")
    if not any(any(c for c in r) for r in rows):
        raise EmptyFileError("spreadsheet has a header but no data rows")
    return LoadedFile(headers, rows, line_numbers, container="spreadsheet")


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------

def load_file(content: bytes, file_name: str) -> LoadedFile:
    """Dispatch on file extension and return the loaded table."""
    if not content:
        raise EmptyFileError(f"{file_name} is empty")
    suffix = PurePath(file_name).suffix.lower()
    if suffix in SPREADSHEET_SUFFIXES:
        return load_spreadsheet(content)
    if suffix == ".xls":
        raise StructuralFileError("legacy .xls workbooks are not supported; save as .xlsx or .csv")
    return load_delimited(_decode(content))


def detect_schema(headers: list[str]) -> TariffSchema:
    """Components files carry a component-type column or a 'fio b' marker."""
    joined = "|".join(normalize_header(h) for h in headers)
    if any(marker in joined for marker in _COMPONENT_MARKERS):
        return TariffSchema.COMPONENTS
    return TariffSchema.CONSOLIDATED
