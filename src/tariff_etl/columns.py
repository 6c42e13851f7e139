"""tariff_etl.columns

Column Resolver: maps semantic field names to column indices.

Each field is resolved independently over the normalized headers in three
tiers, first hit wins:

  1. exact       header == alias
  2. prefix      header starts with alias
  3. contains    alias occurs inside header (aliases < 3 chars skipped)

If two fields land on the same column the one later in FIELD_PRIORITY is
dropped.  The result is a read-only mapping built once per file.
"""

from __future__ import annotations

from types import MappingProxyType
from typing import Mapping

from tariff_etl.normalize import normalize_header

ColumnMap = Mapping[str, int]

# Highest priority first.  Also the iteration order of FIELD_ALIASES.
FIELD_PRIORITY: tuple[str, ...] = (
    "agent_code",
    "agent_name",
    "subgroup",
    "tariff_mode",
    "time_slot",
    "tusd",
    "te",
    "unit",
    "base_tariff",
    "detail",
    "validity_start",
    "validity_end",
    # "subclasse" contains "classe"; subclass must claim its column first.
    "tariff_subclass",
    "tariff_class",
    "component",
    "component_value",
)

FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "agent_code": ("sigla", "sig agente", "sigagente", "sigla agente", "sigla do agente"),
    "agent_name": (
        "nom agente", "nomagente", "nome agente", "nome do agente", "nome",
    ),
    "subgroup": ("subgrupo", "sub grupo", "dsc subgrupo", "dscsubgrupo"),
    "tariff_mode": (
        "modalidade", "modalidade tarifaria", "dsc modalidade tarifaria",
        "dscmodalidadetarifaria",
    ),
    "time_slot": (
        "posto", "posto tarifario", "dsc posto tarifario", "dscpostotarifario",
        "nompostotarifario",
    ),
    "tusd": ("tusd", "vlr tusd", "vlrtusd", "valor tusd"),
    "te": ("te", "vlr te", "vlrte", "valor te"),
    "unit": (
        "unidade", "unidade terciaria", "dsc unidade terciaria",
        "dscunidadeterciaria", "unid",
    ),
    "base_tariff": ("base tarifaria", "dsc base tarifaria", "dscbasetarifaria"),
    "detail": ("detalhe", "dsc detalhe", "dscdetalhe"),
    "validity_start": (
        "inicio vigencia", "dat inicio vigencia", "datiniciovigencia",
        "data inicio vigencia", "data de inicio", "inicio",
    ),
    "validity_end": (
        "fim vigencia", "dat fim vigencia", "datfimvigencia",
        "data fim vigencia", "data de fim", "fim",
    ),
    "tariff_class": ("classe", "dsc classe", "dscclasse"),
    "tariff_subclass": ("subclasse", "sub classe", "dsc subclasse", "dscsubclasse"),
    "component": (
        "componente", "tipo componente", "dsc tipo componente",
        "dsctipocomponente", "dsc componente", "componente tarifario",
    ),
    "component_value": ("vlr componente", "vlrcomponente", "valor componente", "valor"),
}

_MIN_CONTAINS_ALIAS_LEN = 3


def _find(headers: list[str], aliases: tuple[str, ...]) -> int | None:
    for alias in aliases:
        for idx, h in enumerate(headers):
            if h == alias:
                return idx
    for alias in aliases:
        for idx, h in enumerate(headers):
            if h.startswith(alias):
                return idx
    for alias in aliases:
        if len(alias) < _MIN_CONTAINS_ALIAS_LEN:
            continue
        for idx, h in enumerate(headers):
            if alias in h:
                return idx
    return None


def resolve_columns(headers: list[str]) -> ColumnMap:
    """Return the read-only field -> column-index map for these headers."""
    normalized = [normalize_header(h) for h in headers]
    resolved: dict[str, int] = {}
    taken: set[int] = set()
    for field_name in FIELD_PRIORITY:
        idx = _find(normalized, FIELD_ALIASES[field_name])
        if idx is None or idx in taken:
            continue
        resolved[field_name] = idx
        taken.add(idx)
    return MappingProxyType(resolved)


def cell(row: list[str], column_map: ColumnMap, field_name: str) -> str:
    """Trimmed cell text for a field, "" when unmapped or out of range."""
    idx = column_map.get(field_name)
    if idx is None or idx >= len(row):
        return ""
    return (row[idx] or "").strip()
