"""tariff_etl.entity_resolver

Entity Resolver: maps free-text ANEEL agent strings onto registered providers.

Lookup tiers, short-circuiting on the first hit:

  tier           confidence   key
  exact          1.00         official source name / canonical name / alias
  stripped       0.95         canonical name with legal suffixes removed
  abbreviation   0.90         provider abbreviation (raw and stripped source)
  variant        0.85         KNOWN_VARIANTS historical/regional names
  substring      0.50         first registry entity whose name contains the source

A hit below min_confidence is reported as unmatched; the rejected entity is
kept on MatchResult.candidate so it can be offered for review.

One resolver is built per import from a registry snapshot; results are cached
per distinct source string.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable

import psycopg

from tariff_etl.normalize import normalize_text, strip_suffixes

TIER_EXACT = "exact"
TIER_STRIPPED = "stripped"
TIER_ABBREVIATION = "abbreviation"
TIER_VARIANT = "variant"
TIER_SUBSTRING = "substring"

TIER_CONFIDENCE: dict[str, float] = {
    TIER_EXACT: 1.0,
    TIER_STRIPPED: 0.95,
    TIER_ABBREVIATION: 0.9,
    TIER_VARIANT: 0.85,
    TIER_SUBSTRING: 0.5,
}

_MIN_SUBSTRING_LEN = 3

# Historical / regional names seen in ANEEL exports -> registry abbreviation.
# Keys and values are normalize_text() forms.
KNOWN_VARIANTS: dict[str, str] = {
    "cemigd": "cemig",
    "copeldis": "copel",
    "copel dis": "copel",
    "cpflpaulista": "cpfl",
    "cpfl paulista": "cpfl",
    "cpflpiratininga": "cpfl-pir",
    "cpfl piratininga": "cpfl-pir",
    "light sesa": "light",
    "enel rj": "enel-rj",
    "enel ce": "enel-ce",
    "enel ceara": "enel-ce",
    "enel sp": "enel-sp",
    "enel sao paulo": "enel-sp",
    "eletropaulo": "enel-sp",
    "edp sp": "edp-sp",
    "edp sao paulo": "edp-sp",
    "edp es": "edp-es",
    "edp espirito santo": "edp-es",
    "emr": "emg",
    "energisa mg": "emg",
    "energisa minas gerais": "emg",
    "energisa ms": "ems",
    "energisa mato grosso do sul": "ems",
    "energisa mt": "emt",
    "energisa mato grosso": "emt",
    "energisa pb": "epb",
    "energisa paraiba": "epb",
    "energisa ro": "ero",
    "energisa rondonia": "ero",
    "energisa se": "ese",
    "energisa sergipe": "ese",
    "energisa to": "eto",
    "energisa tocantins": "eto",
    "energisa ac": "eac",
    "energisa acre": "eac",
    "pacto energia pr": "epr",
    "neoenergia ba": "coelba",
    "neoenergia bahia": "coelba",
    "neoenergia pe": "celpe",
    "neoenergia pernambuco": "celpe",
    "neoenergia rn": "cosern",
    "neoenergia rio grande do norte": "cosern",
    "neoenergia brasilia": "ceb",
    "neoenergia df": "ceb",
    "neoenergia elektro": "neo-elk",
    "elektro": "neo-elk",
    "ceeed": "ceee",
    "boa vista": "rre",
    "roraima energia": "rre",
    "equatorial al": "ceal",
    "equatorial alagoas": "ceal",
    "equatorial go": "celg",
    "equatorial goias": "celg",
    "equatorial ma": "cemar",
    "equatorial maranhao": "cemar",
    "equatorial pa": "celpa",
    "equatorial para": "celpa",
    "equatorial pi": "cepisa",
    "equatorial piaui": "cepisa",
}


# ---------------------------------------------------------------------------
# Types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ProviderEntity:
    id: str
    canonical_name: str
    abbreviation: str | None = None
    official_source_name: str | None = None
    aliases: tuple[str, ...] = ()


@dataclass(frozen=True)
class MatchResult:
    source_agent: str
    entity: ProviderEntity | None
    tier: str | None = None
    confidence: float = 0.0
    candidate: ProviderEntity | None = None

    @property
    def matched(self) -> bool:
        return self.entity is not None


# ---------------------------------------------------------------------------
# Resolver
# ---------------------------------------------------------------------------

@dataclass
class EntityResolver:
    entities: list[ProviderEntity]
    min_confidence: float = 0.0
    lookups: int = 0
    _by_name: dict[str, ProviderEntity] = field(default_factory=dict, repr=False)
    _by_stripped: dict[str, ProviderEntity] = field(default_factory=dict, repr=False)
    _by_abbreviation: dict[str, ProviderEntity] = field(default_factory=dict, repr=False)
    _cache: dict[str, MatchResult] = field(default_factory=dict, repr=False)
    _unmatched: dict[str, None] = field(default_factory=dict, repr=False)

    def __post_init__(self) -> None:
        self.entities = list(self.entities)
        by_official: dict[str, ProviderEntity] = {}
        # First registration of a key wins, so registry order decides ties.
        for e in self.entities:
            if e.official_source_name:
                by_official.setdefault(normalize_text(e.official_source_name), e)
            name = normalize_text(e.canonical_name)
            self._by_name.setdefault(name, e)
            for alias in e.aliases:
                self._by_name.setdefault(normalize_text(alias), e)
            stripped = strip_suffixes(name)
            if stripped:
                self._by_stripped.setdefault(stripped, e)
            if e.abbreviation:
                self._by_abbreviation.setdefault(normalize_text(e.abbreviation), e)
        # Official source names take precedence over canonical names and aliases.
        self._by_name = {**self._by_name, **by_official}

    @property
    def unmatched(self) -> list[str]:
        """Source strings with no accepted match, in first-seen order."""
        return list(self._unmatched)

    def resolve(self, source_agent: str) -> MatchResult:
        cached = self._cache.get(source_agent)
        if cached is not None:
            return cached
        self.lookups += 1
        result = self._compute(source_agent)
        if result.confidence < self.min_confidence and result.entity is not None:
            result = MatchResult(
                source_agent=source_agent,
                entity=None,
                tier=result.tier,
                confidence=result.confidence,
                candidate=result.entity,
            )
        if result.entity is None and source_agent.strip():
            self._unmatched[source_agent] = None
        self._cache[source_agent] = result
        return result

    def resolve_all(self, source_agents: Iterable[str]) -> dict[str, MatchResult]:
        return {s: self.resolve(s) for s in source_agents}

    def _hit(self, source_agent: str, entity: ProviderEntity, tier: str) -> MatchResult:
        return MatchResult(source_agent, entity, tier, TIER_CONFIDENCE[tier])

    def _compute(self, source_agent: str) -> MatchResult:
        raw = normalize_text(source_agent)
        if not raw:
            return MatchResult(source_agent, None)
        stripped = strip_suffixes(raw)
        forms = [raw] if not stripped or stripped == raw else [raw, stripped]

        entity = self._by_name.get(raw)
        if entity:
            return self._hit(source_agent, entity, TIER_EXACT)

        if stripped:
            entity = self._by_stripped.get(stripped) or self._by_name.get(stripped)
            if entity:
                return self._hit(source_agent, entity, TIER_STRIPPED)

        for form in forms:
            entity = self._by_abbreviation.get(form)
            if entity:
                return self._hit(source_agent, entity, TIER_ABBREVIATION)

        for form in forms:
            target = KNOWN_VARIANTS.get(form)
            if target is None:
                continue
            entity = self._by_abbreviation.get(target) or self._by_name.get(target)
            if entity:
                return self._hit(source_agent, entity, TIER_VARIANT)

        entity = self._substring_match(raw, stripped)
        if entity:
            return self._hit(source_agent, entity, TIER_SUBSTRING)
        return MatchResult(source_agent, None)

    def _substring_match(self, raw: str, stripped: str) -> ProviderEntity | None:
        needles = [p for p in (raw, stripped) if len(p) >= _MIN_SUBSTRING_LEN]
        for e in self.entities:
            name = normalize_text(e.canonical_name)
            names = (name, strip_suffixes(name))
            if any(p in n for p in needles for n in names if n):
                return e
            abbr = normalize_text(e.abbreviation)
            if len(abbr) >= _MIN_SUBSTRING_LEN and abbr in raw:
                return e
            if len(raw) >= _MIN_SUBSTRING_LEN and abbr and raw in abbr:
                return e
        return None


# ---------------------------------------------------------------------------
# Registry snapshot
# ---------------------------------------------------------------------------

def load_registry(conn: psycopg.Connection, tenant_id: str) -> list[ProviderEntity]:
    """Read active providers and their aliases, ordered by canonical name."""
    rows = conn.execute(
        """
        SELECT p.id::text, p.canonical_name, p.abbreviation, p.official_source_name,
               COALESCE(
                   array_agg(a.alias ORDER BY a.alias) FILTER (WHERE a.alias IS NOT NULL),
                   '{}'
               )
        FROM provider p
        LEFT JOIN provider_alias a ON a.provider_id = p.id
        WHERE p.tenant_id = %s AND p.is_active
        GROUP BY p.id, p.canonical_name, p.abbreviation, p.official_source_name
        ORDER BY p.canonical_name, p.id
        """,
        (tenant_id,),
    ).fetchall()
    return [
        ProviderEntity(
            id=r[0],
            canonical_name=r[1],
            abbreviation=r[2],
            official_source_name=r[3],
            aliases=tuple(r[4] or ()),
        )
        for r in rows
    ]
