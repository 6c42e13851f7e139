"""tariff_etl.aggregate

Unit Normalizer and Aggregator.

Rescales R$/MWh values to the R$/kWh base, then folds parsed records into one
SubgroupTariffPayload per (entity_id, subgroup, tariff_mode).

Consolidated files (TE/TUSD):
  A* subgroups  te_peak / tusd_peak / te_off_peak / tusd_off_peak from energy
                rows, demand_consumption_rate / demand_generation_rate from
                kW rows
  B* subgroups  energy_rate / tusd_rate from the first energy row

Components files (Fio B):
  A* subgroups  wire_b_peak / wire_b_off_peak
  B* subgroups  wire_b_rate from the first energy row
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Mapping

from tariff_etl.entity_resolver import MatchResult
from tariff_etl.loader import TariffSchema
from tariff_etl.normalize import normalize_text
from tariff_etl.records import ParsedTariffRecord

ORIGIN_CONSOLIDATED = "aneel_consolidated"
ORIGIN_COMPONENTS = "aneel_components"

FAMILY_HIGH_VOLTAGE = "A"
FAMILY_LOW_VOLTAGE = "B"

_GENERATION_MARKER = "gera"

PayloadKey = tuple[str, str, str]


# ---------------------------------------------------------------------------
# Unit helpers
# ---------------------------------------------------------------------------

def is_mwh(unit: str | None) -> bool:
    return "mwh" in normalize_text(unit)


def to_kwh(value: float) -> float:
    """R$/MWh -> R$/kWh."""
    return value / 1000.0


def is_energy_unit(unit: str | None) -> bool:
    return "wh" in normalize_text(unit)


def is_demand_unit(unit: str | None) -> bool:
    """kW (demand) but not kWh/MWh (energy)."""
    u = normalize_text(unit)
    return "kw" in u and "wh" not in u


def is_peak_slot(time_slot: str | None) -> bool:
    """'Ponta' but not 'Fora Ponta'."""
    s = normalize_text(time_slot)
    return "ponta" in s and "fora" not in s


def voltage_family(subgroup: str) -> str:
    return FAMILY_HIGH_VOLTAGE if subgroup.strip().upper().startswith("A") else FAMILY_LOW_VOLTAGE


def _energy_value(value: float | None, unit: str) -> float:
    v = value or 0.0
    return to_kwh(v) if is_mwh(unit) else v


# ---------------------------------------------------------------------------
# Types
# ---------------------------------------------------------------------------

@dataclass
class SubgroupTariffPayload:
    entity_id: str
    entity_name: str
    subgroup: str
    tariff_mode: str
    origin: str
    family: str
    values: dict[str, float] = field(default_factory=dict)
    record_count: int = 0
    validity_start: str | None = None
    version_id: str | None = None

    @property
    def key(self) -> PayloadKey:
        return (self.entity_id, self.subgroup, self.tariff_mode)


@dataclass
class AggregationResult:
    payloads: dict[PayloadKey, SubgroupTariffPayload] = field(default_factory=dict)
    skipped_records: int = 0
    unmatched_agents: list[str] = field(default_factory=list)

    @property
    def grouped_records(self) -> int:
        return sum(p.record_count for p in self.payloads.values())


# ---------------------------------------------------------------------------
# Per-family folding
# ---------------------------------------------------------------------------

def _first_energy(records: list[ParsedTariffRecord]) -> ParsedTariffRecord:
    return next((r for r in records if is_energy_unit(r.unit)), records[0])


def _fold_consolidated(family: str, records: list[ParsedTariffRecord]) -> dict[str, float]:
    if family == FAMILY_LOW_VOLTAGE:
        r = _first_energy(records)
        return {
            "energy_rate": _energy_value(r.te_value, r.unit),
            "tusd_rate": _energy_value(r.tusd_value, r.unit),
        }

    values: dict[str, float] = {}
    for r in records:
        if is_demand_unit(r.unit):
            generation = _GENERATION_MARKER in normalize_text(f"{r.detail} {r.time_slot}")
            name = "demand_generation_rate" if generation else "demand_consumption_rate"
            values[name] = r.tusd_value
            continue
        te = _energy_value(r.te_value, r.unit)
        tusd = _energy_value(r.tusd_value, r.unit)
        if is_peak_slot(r.time_slot):
            values["te_peak"] = te
            values["tusd_peak"] = tusd
        else:
            values["te_off_peak"] = te
            values["tusd_off_peak"] = tusd
    return values


def _fold_components(family: str, records: list[ParsedTariffRecord]) -> dict[str, float]:
    if family == FAMILY_LOW_VOLTAGE:
        r = _first_energy(records)
        return {"wire_b_rate": _energy_value(r.fio_b_value, r.unit)}

    values: dict[str, float] = {}
    for r in records:
        if is_demand_unit(r.unit):
            continue
        slot = "wire_b_peak" if is_peak_slot(r.time_slot) else "wire_b_off_peak"
        values[slot] = _energy_value(r.fio_b_value, r.unit)
    return values


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def aggregate_payloads(
    records: list[ParsedTariffRecord],
    matches: Mapping[str, MatchResult],
    schema: TariffSchema,
) -> AggregationResult:
    """Group matched records by (entity, subgroup, tariff mode) and fold each group."""
    result = AggregationResult()
    groups: dict[PayloadKey, list[ParsedTariffRecord]] = {}
    names: dict[str, str] = {}
    unmatched: dict[str, None] = {}

    for r in records:
        match = matches.get(r.source_agent)
        if match is None or match.entity is None:
            result.skipped_records += 1
            if r.source_agent:
                unmatched[r.source_agent] = None
            continue
        names[match.entity.id] = match.entity.canonical_name
        groups.setdefault((match.entity.id, r.subgroup, r.tariff_mode), []).append(r)

    origin = ORIGIN_COMPONENTS if schema is TariffSchema.COMPONENTS else ORIGIN_CONSOLIDATED
    fold = _fold_components if schema is TariffSchema.COMPONENTS else _fold_consolidated

    for key, group in groups.items():
        entity_id, subgroup, tariff_mode = key
        family = voltage_family(subgroup)
        result.payloads[key] = SubgroupTariffPayload(
            entity_id=entity_id,
            entity_name=names[entity_id],
            subgroup=subgroup,
            tariff_mode=tariff_mode,
            origin=origin,
            family=family,
            values=fold(family, group),
            record_count=len(group),
            validity_start=group[0].validity_start or None,
        )

    result.unmatched_agents = list(unmatched)
    return result
