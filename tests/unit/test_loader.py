"""Unit tests for tariff_etl.loader."""

from __future__ import annotations

import io
from datetime import datetime

import openpyxl
import pytest

from tariff_etl.loader import (
    LoadedFile,
    TariffSchema,
    detect_schema,
    load_delimited,
    load_file,
    sniff_delimiter,
)
from tariff_etl.shared import EmptyFileError, StructuralFileError

SCENARIO_A_CSV = (
    "sigla;subgrupo;tusd;te;unidade;inicio_vigencia\n"
    "CEMIG;B1;0,45;0,32;kWh;01/01/2024\n"
)


def _xlsx_bytes(rows: list[list[object]]) -> bytes:
    wb = openpyxl.Workbook()
    ws = wb.active
    for row in rows:
        ws.append(row)
    buf = io.BytesIO()
    wb.save(buf)
    return buf.getvalue()


# ---------------------------------------------------------------------------
# Delimited text
# ---------------------------------------------------------------------------

class TestLoadDelimited:
    def test_semicolon_file(self):
        loaded = load_file(SCENARIO_A_CSV.encode("utf-8"), "tarifas.csv")
        assert loaded.headers == ["sigla", "subgrupo", "tusd", "te", "unidade", "inicio_vigencia"]
        assert loaded.rows == [["CEMIG", "B1", "0,45", "0,32", "kWh", "01/01/2024"]]
        assert loaded.line_numbers == [2]
        assert loaded.container == "delimited"

    def test_comma_file_keeps_quoted_decimal_comma(self):
        text = 'sigla,subgrupo,tusd\n"CEMIG, S.A.",B1,"0,45"\n'
        loaded = load_delimited(text)
        assert loaded.rows == [["CEMIG, S.A.", "B1", "0,45"]]

    def test_blank_line_keeps_source_line_numbers(self):
        loaded = load_delimited("a;b;c\n1;2;3\n\n4;5;6\n")
        assert loaded.rows == [["1", "2", "3"], [""], ["4", "5", "6"]]
        assert loaded.line_numbers == [2, 3, 4]

    def test_leading_blank_lines_before_header(self):
        loaded = load_delimited("\n\na;b;c\n1;2;3\n")
        assert loaded.headers == ["a", "b", "c"]
        assert loaded.line_numbers == [4]

    def test_cells_are_trimmed(self):
        loaded = load_delimited(" a ; b \n 1 ;  2 \n")
        assert loaded.headers == ["a", "b"]
        assert loaded.rows == [["1", "2"]]

    def test_utf8_bom_tolerated(self):
        content = "\ufeff" + SCENARIO_A_CSV
        loaded = load_file(content.encode("utf-8"), "tarifas.csv")
        assert loaded.headers[0] == "sigla"

    def test_latin1_fallback(self):
        content = "SigAgente;DatInícioVigência\nCEMIG;2024-01-01\n".encode("latin-1")
        loaded = load_file(content, "tarifas.txt")
        assert loaded.headers == ["SigAgente", "DatInícioVigência"]

    def test_empty_bytes(self):
        with pytest.raises(EmptyFileError):
            load_file(b"", "tarifas.csv")

    def test_whitespace_only(self):
        with pytest.raises(EmptyFileError):
            load_file(b"\n \n", "tarifas.csv")

    def test_header_only(self):
        with pytest.raises(EmptyFileError):
            load_file(b"sigla;subgrupo;tusd\n", "tarifas.csv")

    def test_empty_file_error_is_structural(self):
        with pytest.raises(StructuralFileError):
            load_file(b"sigla;subgrupo\n\n\n", "tarifas.csv")

    def test_legacy_xls_rejected(self):
        with pytest.raises(StructuralFileError):
            load_file(b"\xd0\xcf\x11\xe0", "tarifas.xls")


class TestQuotedCells:
    def test_quoted_delimiter(self):
        loaded = load_delimited('a;b;c\n1;"x;y";3\n')
        assert loaded.rows == [["1", "x;y", "3"]]

    def test_doubled_quote_escape(self):
        loaded = load_delimited('a,b,c\n1,"say ""hi""",3\n')
        assert loaded.rows == [["1", 'say "hi"', "3"]]

    def test_quoted_cell_spanning_lines(self):
        loaded = load_delimited('a;b;c\n1;"linha um\nlinha dois";3\n4;5;6\n')
        assert loaded.rows == [["1", "linha um\nlinha dois", "3"], ["4", "5", "6"]]
        assert loaded.line_numbers == [3, 4]


class TestSniffDelimiter:
    def test_semicolon_wins(self):
        assert sniff_delimiter("a;b,c") == ";"

    def test_comma_default(self):
        assert sniff_delimiter("a,b,c") == ","


# ---------------------------------------------------------------------------
# Spreadsheet
# ---------------------------------------------------------------------------

class TestLoadSpreadsheet:
    def test_reads_first_sheet(self):
        content = _xlsx_bytes([
            ["sigla", "subgrupo", "tusd", "te", "unidade", "inicio_vigencia"],
            ["CEMIG", "B1", 0.45, 0.32, "kWh", datetime(2024, 1, 1)],
            ["CEMIG", "B3", 12.0, None, "kWh", "01/01/2024"],
        ])
        loaded = load_file(content, "tarifas.xlsx")
        assert loaded.container == "spreadsheet"
        assert loaded.headers == ["sigla", "subgrupo", "tusd", "te", "unidade", "inicio_vigencia"]
        assert loaded.rows[0] == ["CEMIG", "B1", "0.45", "0.32", "kWh", "2024-01-01"]
        assert loaded.rows[1] == ["CEMIG", "B3", "12", "", "kWh", "01/01/2024"]
        assert loaded.line_numbers == [2, 3]

    def test_header_only_sheet(self):
        content = _xlsx_bytes([["sigla", "subgrupo", "tusd"]])
        with pytest.raises(EmptyFileError):
            load_file(content, "tarifas.xlsx")

    def test_corrupt_workbook(self):
        with pytest.raises(StructuralFileError):
            load_file(b"not a zip archive", "tarifas.xlsx")


# ---------------------------------------------------------------------------
# LoadedFile / schema detection
# ---------------------------------------------------------------------------

class TestLoadedFile:
    def test_default_line_numbers(self):
        loaded = LoadedFile(headers=["a"], rows=[["1"], ["2"]])
        assert loaded.line_numbers == [2, 3]


class TestDetectSchema:
    def test_consolidated(self):
        headers = ["sigla", "subgrupo", "tusd", "te", "unidade", "inicio_vigencia"]
        assert detect_schema(headers) is TariffSchema.CONSOLIDATED

    def test_components_by_component_column(self):
        headers = ["SigAgente", "DscSubGrupo", "DscTipoComponente", "VlrComponente"]
        assert detect_schema(headers) is TariffSchema.COMPONENTS

    def test_components_by_fio_b_marker(self):
        headers = ["sigla", "subgrupo", "TUSD_FIO_B"]
        assert detect_schema(headers) is TariffSchema.COMPONENTS

    def test_labels(self):
        assert TariffSchema.CONSOLIDATED.label == "Tarifas Homologadas"
        assert TariffSchema.COMPONENTS.label == "Componentes Tarifários"
