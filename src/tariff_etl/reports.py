"""tariff_etl.reports

Report Generator: four read-only reports derived once per import.

  summary              counts, mapping rate, validity dates, family tallies
  unmatched_entities   one entry per unmatched agent with a recommended action
  column_errors        expected columns that are missing or poorly filled
  value_sanity         zero TE+TUSD, likely unconverted MWh values, empty
                       required fields

Pure: no database or file access.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping

from tariff_etl.aggregate import FAMILY_HIGH_VOLTAGE, FAMILY_LOW_VOLTAGE, is_demand_unit, is_mwh
from tariff_etl.commit import CommitResult
from tariff_etl.entity_resolver import MatchResult
from tariff_etl.loader import TariffSchema
from tariff_etl.records import ParsedTariffRecord
from tariff_etl.validation import ValidationReport

FILL_RATE_THRESHOLD = 95
LOW_FILL_RATE = 50
MAX_COLUMN_EXAMPLES = 5
MAX_SANITY_EXAMPLES = 20
SUSPICIOUS_KWH_VALUE = 1.0

EXPECTED_FIELDS: dict[str, str] = {
    "agent_code": "Sigla do Agente",
    "agent_name": "Nome do Agente",
    "subgroup": "Subgrupo",
    "tariff_mode": "Modalidade Tarifária",
    "time_slot": "Posto Tarifário",
    "tusd": "Valor TUSD",
    "te": "Valor TE",
    "unit": "Unidade",
    "validity_start": "Início Vigência",
    "base_tariff": "Base Tarifária",
}

COMPONENT_FIELDS: dict[str, str] = {
    "component": "Componente Tarifário",
    "component_value": "Valor Componente",
}


# ---------------------------------------------------------------------------
# Report types
# ---------------------------------------------------------------------------

@dataclass
class SummaryReport:
    schema_label: str
    file_name: str
    total_rows: int
    valid_rows: int
    invalid_rows: int
    warning_rows: int
    distinct_agents: int
    matched_agents: int
    unmatched_agents: int
    mapping_rate: int
    validity_dates: list[str]
    family_tallies: dict[str, int]
    records_imported: int
    persistence_errors: int
    tariff_classes: list[str] = field(default_factory=list)


@dataclass
class UnmatchedEntity:
    source_agent: str
    reason: str
    recommended_action: str
    candidate: str | None = None


@dataclass
class ColumnIssue:
    field_name: str
    expected_column: str
    found_column: str | None
    fill_rate: int
    examples: list[str] = field(default_factory=list)
    suggestion: str = ""


@dataclass
class SanityDetail:
    agent: str
    subgroup: str
    field_name: str
    value: float | None = None
    row_index: int | None = None


@dataclass
class ValueSanityReport:
    zero_te_tusd: int = 0
    suspicious_mwh_values: int = 0
    empty_required_fields: int = 0
    zero_te_tusd_examples: list[SanityDetail] = field(default_factory=list)
    suspicious_examples: list[SanityDetail] = field(default_factory=list)


@dataclass
class ImportReports:
    summary: SummaryReport
    unmatched_entities: list[UnmatchedEntity]
    column_errors: list[ColumnIssue]
    value_sanity: ValueSanityReport
    generated_at: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------

def _is_matched(matches: Mapping[str, MatchResult], agent: str) -> bool:
    match = matches.get(agent)
    return match is not None and match.matched


def _tariff_classes(records: list[ParsedTariffRecord]) -> list[str]:
    """Distinct "Classe / Subclasse" labels, sorted."""
    labels: set[str] = set()
    for r in records:
        if r.tariff_class and r.tariff_subclass:
            labels.add(f"{r.tariff_class} / {r.tariff_subclass}")
        elif r.tariff_class or r.tariff_subclass:
            labels.add(r.tariff_class or r.tariff_subclass)
    return sorted(labels)


def _summary(
    file_name: str,
    schema: TariffSchema,
    validation: ValidationReport,
    records: list[ParsedTariffRecord],
    matches: Mapping[str, MatchResult],
    commit_result: CommitResult | None,
) -> SummaryReport:
    agents = list(dict.fromkeys(r.source_agent for r in records if r.source_agent))
    matched = [a for a in agents if _is_matched(matches, a)]
    tallies = (
        dict(commit_result.family_tallies)
        if commit_result else {FAMILY_HIGH_VOLTAGE: 0, FAMILY_LOW_VOLTAGE: 0}
    )
    return SummaryReport(
        schema_label=schema.label,
        file_name=file_name,
        total_rows=validation.total_rows,
        valid_rows=validation.valid_rows,
        invalid_rows=validation.invalid_rows,
        warning_rows=validation.warning_rows,
        distinct_agents=len(agents),
        matched_agents=len(matched),
        unmatched_agents=len(agents) - len(matched),
        mapping_rate=round(len(matched) / len(agents) * 100) if agents else 0,
        validity_dates=sorted({r.validity_start for r in records if r.validity_start}),
        family_tallies=tallies,
        records_imported=commit_result.updated if commit_result else 0,
        persistence_errors=len(commit_result.errors) if commit_result else 0,
        tariff_classes=_tariff_classes(records),
    )


def _unmatched(
    records: list[ParsedTariffRecord],
    matches: Mapping[str, MatchResult],
    unmatched_agents: list[str],
) -> list[UnmatchedEntity]:
    with_records = {r.source_agent for r in records}
    items: list[UnmatchedEntity] = []
    for agent in unmatched_agents:
        match = matches.get(agent)
        if agent not in with_records:
            items.append(UnmatchedEntity(
                source_agent=agent,
                reason="No valid records in the file",
                recommended_action="Check that the agent name is spelled correctly in the file",
            ))
        elif match is not None and match.candidate is not None:
            candidate = match.candidate.canonical_name
            items.append(UnmatchedEntity(
                source_agent=agent,
                reason=(
                    f"Low-confidence {match.tier} match ({match.confidence:.2f}) "
                    f"with \"{candidate}\" was rejected"
                ),
                recommended_action=(
                    f"If \"{agent}\" is \"{candidate}\", register it as an alias of that provider"
                ),
                candidate=candidate,
            ))
        else:
            items.append(UnmatchedEntity(
                source_agent=agent,
                reason="Not found in the provider registry",
                recommended_action=(
                    f"Register \"{agent}\" as the official source name or an alias of a provider"
                ),
            ))
    return items


def _column_errors(
    schema: TariffSchema,
    validation: ValidationReport,
    headers: list[str],
) -> list[ColumnIssue]:
    expected = dict(EXPECTED_FIELDS)
    if schema is TariffSchema.COMPONENTS:
        expected.update(COMPONENT_FIELDS)

    issues: list[ColumnIssue] = []
    total = validation.total_rows
    for field_name, label in expected.items():
        idx = validation.detected_columns.get(field_name)
        if idx is None:
            issues.append(ColumnIssue(
                field_name=field_name,
                expected_column=label,
                found_column=None,
                fill_rate=0,
                suggestion=f'Column "{label}" was not found; check the header for a variant of it.',
            ))
            continue

        failing = [r for r in validation.rows if field_name in r.issue_fields]
        fill_rate = round((1 - len(failing) / total) * 100) if total else 100
        if fill_rate >= FILL_RATE_THRESHOLD:
            continue

        found = headers[idx] if idx < len(headers) else f"col{idx}"
        examples = [
            f"Line {r.row_index}: " + "; ".join(r.errors + r.warnings)
            for r in failing[:MAX_COLUMN_EXAMPLES]
        ]
        if fill_rate < LOW_FILL_RATE:
            suggestion = f'Column "{found}" may be mapped incorrectly; check the file.'
        else:
            suggestion = f"{100 - fill_rate}% of the values are invalid or empty."
        issues.append(ColumnIssue(
            field_name=field_name,
            expected_column=label,
            found_column=found,
            fill_rate=fill_rate,
            examples=examples,
            suggestion=suggestion,
        ))
    return issues


def _value_sanity(
    schema: TariffSchema,
    validation: ValidationReport,
    records: list[ParsedTariffRecord],
) -> ValueSanityReport:
    zero: list[SanityDetail] = []
    suspicious: list[SanityDetail] = []
    for r in records:
        agent = r.source_agent
        if schema is not TariffSchema.COMPONENTS and r.te_value == 0 and r.tusd_value == 0:
            zero.append(SanityDetail(agent, r.subgroup, "TE+TUSD", row_index=r.row_index))
        # kW demand charges are legitimately above 1 R$
        if is_mwh(r.unit) or is_demand_unit(r.unit):
            continue
        checks = [("TE", r.te_value), ("TUSD", r.tusd_value)]
        if r.fio_b_value is not None:
            checks.append(("Fio B", r.fio_b_value))
        for name, value in checks:
            if value > SUSPICIOUS_KWH_VALUE:
                suspicious.append(SanityDetail(agent, r.subgroup, name, value, r.row_index))

    empty = sum(1 for r in validation.rows if r.empty_fields)
    return ValueSanityReport(
        zero_te_tusd=len(zero),
        suspicious_mwh_values=len(suspicious),
        empty_required_fields=empty,
        zero_te_tusd_examples=zero[:MAX_SANITY_EXAMPLES],
        suspicious_examples=suspicious[:MAX_SANITY_EXAMPLES],
    )


def generate_reports(
    *,
    file_name: str,
    schema: TariffSchema,
    headers: list[str],
    validation: ValidationReport,
    records: list[ParsedTariffRecord],
    matches: Mapping[str, MatchResult],
    unmatched_agents: list[str] | None = None,
    commit_result: CommitResult | None = None,
    generated_at: datetime | None = None,
) -> ImportReports:
    """Build all four reports from the artifacts of one import."""
    if unmatched_agents is None:
        unmatched_agents = list(dict.fromkeys(
            r.source_agent for r in records
            if r.source_agent and not _is_matched(matches, r.source_agent)
        ))
    stamp = (generated_at or datetime.now(timezone.utc)).isoformat()
    return ImportReports(
        summary=_summary(file_name, schema, validation, records, matches, commit_result),
        unmatched_entities=_unmatched(records, matches, unmatched_agents),
        column_errors=_column_errors(schema, validation, headers),
        value_sanity=_value_sanity(schema, validation, records),
        generated_at=stamp,
    )
