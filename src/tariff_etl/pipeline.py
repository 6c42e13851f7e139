"""tariff_etl.pipeline

Stage orchestration for one tariff import.

An ImportContext is built once per file and carries everything later stages
need (schema, column map, policy, resolver, intermediate results), so no
stage keeps module-level state.

  prepare_import   load -> detect schema -> resolve columns -> validate -> parse
  match_agents     registry snapshot -> EntityResolver -> aggregate payloads
  run_commit       Commit Engine
  build_reports    Report Generator

ImportSession wraps the same stages behind the workflow state machine so the
user gates (confirm invalid rows, review unmatched agents) are enforced.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable

import psycopg

from tariff_etl.aggregate import AggregationResult, aggregate_payloads
from tariff_etl.columns import ColumnMap, resolve_columns
from tariff_etl.commit import CommitResult, Notify, commit_payloads
from tariff_etl.entity_resolver import EntityResolver, MatchResult, ProviderEntity
from tariff_etl.loader import LoadedFile, TariffSchema, detect_schema, load_file
from tariff_etl.policy import DEFAULT_POLICY, ImportPolicy
from tariff_etl.records import ParsedTariffRecord, parse_records
from tariff_etl.reports import ImportReports, generate_reports
from tariff_etl.shared import (
    InvalidTransitionError,
    MissingRequiredColumnError,
    StructuralFileError,
)
from tariff_etl.validation import ValidationReport, validate_rows
from tariff_etl.workflow import INITIAL_STATE, ImportStep, WorkflowState, transition


@dataclass
class ImportContext:
    file_name: str
    tenant_id: str
    loaded: LoadedFile
    schema: TariffSchema
    column_map: ColumnMap
    validation: ValidationReport
    policy: ImportPolicy = DEFAULT_POLICY
    records: list[ParsedTariffRecord] = field(default_factory=list)
    resolver: EntityResolver | None = None
    matches: dict[str, MatchResult] = field(default_factory=dict)
    aggregation: AggregationResult | None = None
    commit_result: CommitResult | None = None

    @property
    def unmatched_agents(self) -> list[str]:
        if self.resolver is None:
            return []
        return self.resolver.unmatched


# ---------------------------------------------------------------------------
# Stages
# ---------------------------------------------------------------------------

def prepare_import(
    content: bytes,
    file_name: str,
    *,
    tenant_id: str,
    policy: ImportPolicy = DEFAULT_POLICY,
) -> ImportContext:
    """Load, validate and parse one file.

    Raises:
        StructuralFileError: The file cannot be read (EmptyFileError included).
        MissingRequiredColumnError: A required column is absent; .report holds
            the ValidationReport with every missing column.
    """
    loaded = load_file(content, file_name)
    schema = detect_schema(loaded.headers)
    column_map = resolve_columns(loaded.headers)
    report = validate_rows(loaded.headers, loaded.rows, column_map, schema, loaded.line_numbers)
    if report.is_blocked:
        raise MissingRequiredColumnError(report.missing_required_columns, report)

    skip = report.invalid_row_indices if policy.exclude_invalid_rows else None
    records = parse_records(loaded.rows, column_map, schema, loaded.line_numbers, skip)
    return ImportContext(
        file_name=file_name,
        tenant_id=tenant_id,
        loaded=loaded,
        schema=schema,
        column_map=column_map,
        validation=report,
        policy=policy,
        records=records,
    )


def match_agents(ctx: ImportContext, registry: list[ProviderEntity]) -> AggregationResult:
    """Resolve every distinct source agent once and aggregate the payloads."""
    ctx.resolver = EntityResolver(registry, min_confidence=ctx.policy.min_match_confidence)
    distinct = dict.fromkeys(r.source_agent for r in ctx.records)
    ctx.matches = ctx.resolver.resolve_all(distinct)
    ctx.aggregation = aggregate_payloads(ctx.records, ctx.matches, ctx.schema)
    return ctx.aggregation


def run_commit(
    conn: psycopg.Connection,
    ctx: ImportContext,
    *,
    notify: Notify | None = None,
    should_abort: Callable[[], bool] | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> CommitResult:
    if ctx.aggregation is None:
        raise InvalidTransitionError("match_agents must run before run_commit")
    ctx.commit_result = commit_payloads(
        conn,
        ctx.aggregation.payloads,
        tenant_id=ctx.tenant_id,
        source_file_name=ctx.file_name,
        skipped=ctx.aggregation.skipped_records,
        policy=ctx.policy,
        notify=notify,
        should_abort=should_abort,
        sleep=sleep,
    )
    return ctx.commit_result


def build_reports(ctx: ImportContext, generated_at: datetime | None = None) -> ImportReports:
    return generate_reports(
        file_name=ctx.file_name,
        schema=ctx.schema,
        headers=ctx.loaded.headers,
        validation=ctx.validation,
        records=ctx.records,
        matches=ctx.matches,
        unmatched_agents=ctx.unmatched_agents if ctx.resolver else None,
        commit_result=ctx.commit_result,
        generated_at=generated_at,
    )


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------

class ImportSession:
    """One import driven through upload -> validate -> preview -> importing -> done."""

    def __init__(
        self,
        tenant_id: str,
        policy: ImportPolicy = DEFAULT_POLICY,
        notify: Notify | None = None,
    ) -> None:
        self.tenant_id = tenant_id
        self.policy = policy
        self.notify = notify
        self.state: WorkflowState = INITIAL_STATE
        self.context: ImportContext | None = None
        self.validation: ValidationReport | None = None

    @property
    def step(self) -> ImportStep:
        return self.state.step

    def _fire(self, event: str, **facts) -> None:
        self.state = transition(self.state, event, **facts)

    def _require(self, step: ImportStep) -> ImportContext:
        if self.state.step is not step or self.context is None:
            raise InvalidTransitionError(
                f"expected step '{step.value}', session is in '{self.state.step.value}'"
            )
        return self.context

    def load(self, content: bytes, file_name: str) -> ValidationReport:
        """Load and validate a file.

        A file with missing required columns still returns its report; the
        session then refuses confirm_validation.
        """
        self._fire("file_selected", file_name=file_name)
        try:
            self.context = prepare_import(
                content, file_name, tenant_id=self.tenant_id, policy=self.policy
            )
        except MissingRequiredColumnError as exc:
            self.context = None
            self.validation = exc.report
            self._fire("file_loaded", invalid_rows=0, blocked=True)
            return exc.report
        except StructuralFileError as exc:
            self._fire("load_failed", error=str(exc))
            raise
        self.validation = self.context.validation
        self._fire("file_loaded", invalid_rows=self.validation.invalid_rows, blocked=False)
        return self.validation

    def confirm_validation(self, confirm_invalid: bool = False) -> None:
        self._fire("confirm_validation", confirm_invalid=confirm_invalid)

    def preview(self, registry: list[ProviderEntity]) -> AggregationResult:
        """Match agents against the registry snapshot; unmatched agents are advisory."""
        ctx = self._require(ImportStep.PREVIEW)
        return match_agents(ctx, registry)

    def back(self) -> None:
        self._fire("back")

    def commit(
        self,
        conn: psycopg.Connection,
        *,
        should_abort: Callable[[], bool] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> CommitResult:
        ctx = self._require(ImportStep.PREVIEW)
        if ctx.aggregation is None:
            raise InvalidTransitionError("preview must run before commit")
        self._fire("start_import")
        try:
            result = run_commit(
                conn, ctx, notify=self.notify, should_abort=should_abort, sleep=sleep
            )
        except Exception as exc:
            self._fire("import_finished", error=str(exc))
            raise
        self._fire("import_finished")
        return result

    def reports(self, generated_at: datetime | None = None) -> ImportReports:
        if self.context is None:
            raise InvalidTransitionError("no file has been loaded")
        return build_reports(self.context, generated_at=generated_at)

    def reset(self) -> None:
        self._fire("reset")
        self.context = None
        self.validation = None
