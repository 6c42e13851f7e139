"""Unit tests for tariff_etl.pipeline (ImportSession driven end to end, no database)."""

from __future__ import annotations

from datetime import datetime
from unittest.mock import MagicMock

import pytest

from tariff_etl.entity_resolver import ProviderEntity
from tariff_etl.loader import TariffSchema
from tariff_etl.pipeline import ImportSession, match_agents, prepare_import
from tariff_etl.policy import ImportPolicy
from tariff_etl.shared import (
    EmptyFileError,
    InvalidTransitionError,
    MissingRequiredColumnError,
)
from tariff_etl.workflow import ImportStep

REGISTRY = [ProviderEntity("p-cemig", "CEMIG Distribuição S.A.", abbreviation="CEMIG")]

VALID_CSV = (
    "sigla;subgrupo;tusd;te;unidade;inicio_vigencia\n"
    "CEMIG-D;B1;450;320;MWh;01/01/2024\n"
    "CEMIG-D;B3;0,44;0,31;kWh;01/01/2024\n"
    "Desconhecida;B1;0,40;0,30;kWh;01/01/2024\n"
    "Filtros aplicados:;;;;;\n"
).encode("utf-8")

INVALID_ROW_CSV = (
    "sigla;subgrupo;tusd;te;unidade;inicio_vigencia\n"
    "CEMIG;B1;0,45;0,32;kWh;01/01/2024\n"
    "CEMIG;B2;abc;0,32;kWh;01/01/2024\n"
).encode("utf-8")

NO_TUSD_CSV = (
    "sigla;subgrupo;te;unidade;inicio_vigencia\n"
    "CEMIG;B1;0,32;kWh;01/01/2024\n"
).encode("utf-8")


def _conn() -> MagicMock:
    conn = MagicMock()
    conn.execute.return_value.fetchone.return_value = (
        "v-1", "tenant-a", "aneel_consolidated", "draft", 2, 1,
        "tarifas.csv", datetime(2024, 1, 1), None, None,
    )
    return conn


# ---------------------------------------------------------------------------
# Stage functions
# ---------------------------------------------------------------------------

class TestPrepareImport:
    def test_context_built(self):
        ctx = prepare_import(VALID_CSV, "tarifas.csv", tenant_id="tenant-a")
        assert ctx.schema is TariffSchema.CONSOLIDATED
        assert ctx.validation.total_rows == 3
        assert len(ctx.validation.discarded_footer_rows) == 1
        assert len(ctx.records) == 3
        assert ctx.unmatched_agents == []

    def test_missing_column_raises_with_report(self):
        with pytest.raises(MissingRequiredColumnError) as exc_info:
            prepare_import(NO_TUSD_CSV, "tarifas.csv", tenant_id="tenant-a")
        assert exc_info.value.report.is_blocked
        assert exc_info.value.missing == exc_info.value.report.missing_required_columns

    def test_invalid_rows_kept_by_default(self):
        ctx = prepare_import(INVALID_ROW_CSV, "tarifas.csv", tenant_id="tenant-a")
        assert [r.subgroup for r in ctx.records] == ["B1", "B2"]

    def test_invalid_rows_excluded_by_policy(self):
        ctx = prepare_import(
            INVALID_ROW_CSV, "tarifas.csv", tenant_id="tenant-a",
            policy=ImportPolicy(exclude_invalid_rows=True),
        )
        assert [r.subgroup for r in ctx.records] == ["B1"]


class TestMatchAgents:
    def test_payloads_and_unmatched(self):
        ctx = prepare_import(VALID_CSV, "tarifas.csv", tenant_id="tenant-a")
        aggregation = match_agents(ctx, REGISTRY)
        assert set(aggregation.payloads) == {
            ("p-cemig", "B1", "Convencional"),
            ("p-cemig", "B3", "Convencional"),
        }
        b1 = aggregation.payloads[("p-cemig", "B1", "Convencional")]
        assert b1.values["tusd_rate"] == pytest.approx(0.45)
        assert b1.values["energy_rate"] == pytest.approx(0.32)
        assert aggregation.skipped_records == 1
        assert ctx.unmatched_agents == ["Desconhecida"]
        assert ctx.resolver.lookups == 2

    def test_min_confidence_from_policy(self):
        ctx = prepare_import(
            VALID_CSV, "tarifas.csv", tenant_id="tenant-a",
            policy=ImportPolicy(min_match_confidence=0.99),
        )
        aggregation = match_agents(ctx, REGISTRY)
        assert aggregation.payloads == {}
        assert ctx.matches["CEMIG-D"].candidate is REGISTRY[0]


# ---------------------------------------------------------------------------
# ImportSession
# ---------------------------------------------------------------------------

class TestImportSession:
    def test_end_to_end(self):
        notes: list[tuple[str, str]] = []
        session = ImportSession("tenant-a", notify=lambda lvl, msg: notes.append((lvl, msg)))
        report = session.load(VALID_CSV, "tarifas.csv")
        assert report.invalid_rows == 0
        assert session.step is ImportStep.VALIDATE

        session.confirm_validation()
        assert session.step is ImportStep.PREVIEW

        session.preview(REGISTRY)
        result = session.commit(_conn(), sleep=lambda s: None)
        assert session.step is ImportStep.DONE
        assert result.version_id == "v-1"
        assert result.updated == 2
        assert result.skipped == 1
        assert result.family_tallies == {"A": 0, "B": 2}
        assert any(lvl == "progress" for lvl, _ in notes)

        reports = session.reports()
        assert reports.summary.records_imported == 2
        assert reports.summary.mapping_rate == 50
        assert [u.source_agent for u in reports.unmatched_entities] == ["Desconhecida"]

    def test_blocked_file_refuses_confirmation(self):
        session = ImportSession("tenant-a")
        report = session.load(NO_TUSD_CSV, "tarifas.csv")
        assert report.is_blocked
        assert session.context is None
        with pytest.raises(InvalidTransitionError):
            session.confirm_validation(confirm_invalid=True)

    def test_invalid_rows_need_confirmation(self):
        session = ImportSession("tenant-a")
        session.load(INVALID_ROW_CSV, "tarifas.csv")
        with pytest.raises(InvalidTransitionError):
            session.confirm_validation()
        session.confirm_validation(confirm_invalid=True)
        assert session.step is ImportStep.PREVIEW

    def test_structural_error_returns_to_upload(self):
        session = ImportSession("tenant-a")
        with pytest.raises(EmptyFileError):
            session.load(b"", "tarifas.csv")
        assert session.step is ImportStep.UPLOAD
        assert session.state.error

    def test_commit_requires_preview(self):
        session = ImportSession("tenant-a")
        session.load(VALID_CSV, "tarifas.csv")
        session.confirm_validation()
        with pytest.raises(InvalidTransitionError, match="preview"):
            session.commit(_conn())

    def test_preview_requires_confirmation(self):
        session = ImportSession("tenant-a")
        session.load(VALID_CSV, "tarifas.csv")
        with pytest.raises(InvalidTransitionError):
            session.preview(REGISTRY)

    def test_failed_commit_still_reaches_done(self):
        conn = MagicMock()
        conn.execute.side_effect = RuntimeError("db down")
        session = ImportSession("tenant-a")
        session.load(VALID_CSV, "tarifas.csv")
        session.confirm_validation()
        session.preview(REGISTRY)
        with pytest.raises(RuntimeError):
            session.commit(conn)
        assert session.step is ImportStep.DONE
        assert session.state.error == "db down"

    def test_back_and_reset(self):
        session = ImportSession("tenant-a")
        session.load(VALID_CSV, "tarifas.csv")
        session.confirm_validation()
        session.back()
        assert session.step is ImportStep.VALIDATE
        session.reset()
        assert session.step is ImportStep.UPLOAD
        assert session.context is None
        with pytest.raises(InvalidTransitionError):
            session.reports()
