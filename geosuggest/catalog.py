"""
City catalog: the normalized, frozen record set every index is built from.

Build steps:
  1. Parse optional country / admin-division tables into lookup dicts
  2. Parse the primary cities table (fatal if it yields nothing usable)
  3. Stream alternate names, keeping only rows for known ids and wanted languages
  4. Join everything into one CityRecord per id, sorted by id

Joins are best-effort: a missing country or admin code leaves the optional
field unset, and alternate names for unknown ids are dropped silently.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Iterator, Optional, Union

from geosuggest.errors import ParseError, SourceFatalError
from geosuggest.parser import (
    ADMIN1_CODES,
    ADMIN2_CODES,
    ALTERNATE_NAMES,
    COUNTRY_INFO,
    GEONAMES_CITIES,
    Schema,
    parse_table,
    read_lines,
)

logger = logging.getLogger(__name__)

# Populated-place feature codes that are not cities in their own right
EXCLUDED_FEATURE_CODES = frozenset(
    {"PPLA3", "PPLA4", "PPLA5", "PPLF", "PPLL", "PPLQ", "PPLW", "PPLX", "STLMT"}
)
CAPITAL_FEATURE_CODE = "PPLC"

# alternateNames "languages" that are really codes, links or ids
PSEUDO_LANGUAGES = frozenset(
    {"post", "link", "iata", "icao", "faac", "abbr", "wkdt", "unlc", "fr_1793"}
)

Lines = Union[Iterable[str], str, bytes]


# ── Records ───────────────────────────────────────────────────────────

@dataclass(frozen=True)
class CountryRef:
    id: Optional[int]
    code: str
    name: str


@dataclass(frozen=True)
class AdminDivision:
    id: Optional[int]
    code: str  # "CC.ADM1" or "CC.ADM1.ADM2"
    name: str
    names: dict[str, tuple[str, ...]] = field(default_factory=dict)

    def name_for(self, lang: Optional[str]) -> str:
        variants = self.names.get(lang) if lang else None
        return variants[0] if variants else self.name


@dataclass(frozen=True)
class CountryRecord:
    id: Optional[int]
    code: str
    name: str
    iso3: str = ""
    capital: str = ""
    population: int = 0
    continent: str = ""
    languages: str = ""
    neighbours: str = ""
    # Back-reference only; the city lives in Catalog.cities
    capital_id: Optional[int] = None
    names: dict[str, tuple[str, ...]] = field(default_factory=dict)

    def name_for(self, lang: Optional[str]) -> str:
        variants = self.names.get(lang) if lang else None
        return variants[0] if variants else self.name

    def ref(self) -> CountryRef:
        return CountryRef(id=self.id, code=self.code, name=self.name)


@dataclass(frozen=True)
class CityRecord:
    id: int
    name: str
    latitude: float
    longitude: float
    country_code: str = ""
    population: int = 0
    timezone: str = ""
    feature_code: str = ""
    # language tag -> spellings, preferred first; "" holds untagged variants
    names: dict[str, tuple[str, ...]] = field(default_factory=dict)
    country: Optional[CountryRef] = None
    admin_division: Optional[AdminDivision] = None
    admin2_division: Optional[AdminDivision] = None

    @property
    def is_capital(self) -> bool:
        return self.feature_code == CAPITAL_FEATURE_CODE

    def name_for(self, lang: Optional[str]) -> str:
        variants = self.names.get(lang) if lang else None
        return variants[0] if variants else self.name

    def variants(self) -> Iterator[tuple[str, str]]:
        """Every (language, spelling) pair, canonical name first."""
        yield "", self.name
        for lang in sorted(self.names):
            for value in self.names[lang]:
                yield lang, value


@dataclass(frozen=True)
class Catalog:
    cities: dict[int, CityRecord]
    countries: dict[str, CountryRecord] = field(default_factory=dict)
    admin_divisions: dict[str, AdminDivision] = field(default_factory=dict)
    capitals: dict[str, int] = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self.cities)

    def get(self, city_id: int) -> Optional[CityRecord]:
        return self.cities.get(city_id)

    def capital(self, country_code: str) -> Optional[CityRecord]:
        city_id = self.capitals.get(country_code.upper())
        return self.cities.get(city_id) if city_id is not None else None


# ── Sources ───────────────────────────────────────────────────────────

@dataclass(frozen=True)
class SourceFiles:
    """Paths of the raw gazetteer files; only ``cities`` is mandatory."""
    cities: Union[str, Path]
    names: Optional[Union[str, Path]] = None
    countries: Optional[Union[str, Path]] = None
    admin1_codes: Optional[Union[str, Path]] = None
    admin2_codes: Optional[Union[str, Path]] = None
    cities_schema: Schema = GEONAMES_CITIES


def open_lines(path: Union[str, Path]) -> Iterator[str]:
    """Stream a text file line by line."""
    with open(path, "r", encoding="utf-8-sig", newline="") as f:
        yield from f


def _as_lines(source: Lines) -> Iterable[str]:
    if isinstance(source, (str, bytes)):
        return read_lines(source)
    return source


# ── Builder ───────────────────────────────────────────────────────────

@dataclass
class _Stats:
    cities: int = 0
    excluded: int = 0
    duplicates: int = 0
    names: int = 0
    orphan_names: int = 0
    row_errors: list[ParseError] = field(default_factory=list)


def _append_name(
    bucket: dict[str, list[str]], lang: str, value: str, preferred: bool = False
) -> None:
    variants = bucket.setdefault(lang, [])
    if value in variants:
        if preferred and variants[0] != value:
            variants.remove(value)
            variants.insert(0, value)
        return
    if preferred:
        variants.insert(0, value)
    else:
        variants.append(value)


def _freeze(bucket: dict[str, list[str]]) -> dict[str, tuple[str, ...]]:
    return {lang: tuple(bucket[lang]) for lang in sorted(bucket) if bucket[lang]}


def _load_admin(source: Optional[Lines], schema: Schema, stats: _Stats) -> dict[str, dict]:
    if source is None:
        return {}
    return {
        row["code"]: row.values
        for row in parse_table(_as_lines(source), schema, errors=stats.row_errors)
    }


def _load_countries(source: Optional[Lines], stats: _Stats) -> dict[str, dict]:
    if source is None:
        return {}
    return {
        row["iso"]: row.values
        for row in parse_table(_as_lines(source), COUNTRY_INFO, errors=stats.row_errors)
        if row["iso"]
    }


def _load_names(
    source: Lines,
    city_ids: set[int],
    other_ids: set[int],
    languages: frozenset[str],
    stats: _Stats,
) -> dict[int, dict[str, list[str]]]:
    names_by_id: dict[int, dict[str, list[str]]] = {}

    for row in parse_table(_as_lines(source), ALTERNATE_NAMES, errors=stats.row_errors):
        geonameid = row["geonameid"]
        is_city = geonameid in city_ids
        if not is_city and geonameid not in other_ids:
            stats.orphan_names += 1
            continue

        if row["is_colloquial"] or row["is_historic"]:
            continue
        # "State of California" style short forms only count when preferred
        if is_city and row["is_short_name"] and not row["is_preferred_name"]:
            continue

        lang = row["isolanguage"]
        if lang in PSEUDO_LANGUAGES:
            continue
        if languages and lang not in languages:
            continue
        value = row["alternate_name"]
        if not value:
            continue

        _append_name(names_by_id.setdefault(geonameid, {}), lang, value, row["is_preferred_name"])
        stats.names += 1

    return names_by_id


def build_catalog(
    cities: Optional[Lines],
    names: Optional[Lines] = None,
    countries: Optional[Lines] = None,
    admin1_codes: Optional[Lines] = None,
    admin2_codes: Optional[Lines] = None,
    languages: Iterable[str] = (),
    cities_schema: Schema = GEONAMES_CITIES,
) -> Catalog:
    """
    Join raw gazetteer sources into a frozen Catalog.

    Every source is an iterable of lines (or a whole str/bytes payload).
    ``languages`` limits which alternate names are kept; empty keeps all.
    Raises SourceFatalError when the cities source yields no valid city.
    """
    if cities is None:
        raise SourceFatalError("cities source is required")

    started = time.monotonic()
    stats = _Stats()
    wanted = frozenset(languages)

    country_rows = _load_countries(countries, stats)
    admin1_rows = _load_admin(admin1_codes, ADMIN1_CODES, stats)
    admin2_rows = _load_admin(admin2_codes, ADMIN2_CODES, stats)

    city_rows: dict[int, dict] = {}
    for row in parse_table(_as_lines(cities), cities_schema, errors=stats.row_errors):
        city_id = row["id"]
        if city_id is None:
            stats.row_errors.append(ParseError(row.line_no, "id: missing"))
            continue
        if row.get("feature_code", "") in EXCLUDED_FEATURE_CODES:
            stats.excluded += 1
            continue
        if city_id in city_rows:
            stats.duplicates += 1
            logger.debug("Duplicate city id %d at line %d ignored", city_id, row.line_no)
            continue
        city_rows[city_id] = row.values

    if not city_rows:
        raise SourceFatalError(
            f"cities source contains no valid rows ({len(stats.row_errors)} malformed)"
        )
    stats.cities = len(city_rows)

    names_by_id: dict[int, dict[str, list[str]]] = {}
    if names is not None:
        other_ids = {r["geonameid"] for r in country_rows.values() if r["geonameid"] is not None}
        for rows in (admin1_rows, admin2_rows):
            other_ids.update(r["geonameid"] for r in rows.values() if r["geonameid"] is not None)
        names_by_id = _load_names(names, set(city_rows), other_ids, wanted, stats)

    def admin_division(rows: dict[str, dict], code: str) -> Optional[AdminDivision]:
        row = rows.get(code)
        if row is None:
            return None
        return AdminDivision(
            id=row["geonameid"],
            code=code,
            name=row["name"],
            names=_freeze(names_by_id.get(row["geonameid"], {})),
        )

    admin_divisions: dict[str, AdminDivision] = {}
    for rows in (admin1_rows, admin2_rows):
        for code in sorted(rows):
            admin_divisions[code] = admin_division(rows, code)

    capitals: dict[str, int] = {}
    records: dict[int, CityRecord] = {}

    for city_id in sorted(city_rows):
        row = city_rows[city_id]
        country_code = row.get("country_code", "").upper()
        feature_code = row.get("feature_code", "")

        bucket: dict[str, list[str]] = {}
        asciiname = row.get("asciiname", "")
        if asciiname and asciiname != row["name"]:
            _append_name(bucket, "", asciiname)
        for alt in row.get("alternatenames", "").split(","):
            alt = alt.strip()
            if alt and alt != row["name"]:
                _append_name(bucket, "", alt)
        for lang, values in names_by_id.get(city_id, {}).items():
            for value in values:
                _append_name(bucket, lang, value)

        country_row = country_rows.get(country_code)
        admin1_key = f"{country_code}.{row.get('admin1_code', '')}"
        admin2_key = f"{admin1_key}.{row.get('admin2_code', '')}"

        records[city_id] = CityRecord(
            id=city_id,
            name=row["name"],
            latitude=row["latitude"],
            longitude=row["longitude"],
            country_code=country_code,
            population=row.get("population") or 0,
            timezone=row.get("timezone", ""),
            feature_code=feature_code,
            names=_freeze(bucket),
            country=(
                CountryRef(id=country_row["geonameid"], code=country_code, name=country_row["name"])
                if country_row else None
            ),
            admin_division=admin_divisions.get(admin1_key) if "admin1_code" in row else None,
            admin2_division=admin_divisions.get(admin2_key) if "admin2_code" in row else None,
        )

        if feature_code == CAPITAL_FEATURE_CODE and country_code:
            current = records.get(capitals.get(country_code, -1))
            if current is None or records[city_id].population > current.population:
                capitals[country_code] = city_id

    country_records = {
        code: CountryRecord(
            id=row["geonameid"],
            code=code,
            name=row["name"],
            iso3=row["iso3"],
            capital=row["capital"],
            population=row["population"] or 0,
            continent=row["continent"],
            languages=row["languages"],
            neighbours=row["neighbours"],
            capital_id=capitals.get(code),
            names=_freeze(names_by_id.get(row["geonameid"], {})),
        )
        for code, row in sorted(country_rows.items())
    }

    logger.info(
        "Catalog built: %d cities, %d countries, %d admin divisions, %d capitals, "
        "%d names (%d orphaned), %d excluded, %d duplicates, %d malformed rows, took %.2fs",
        stats.cities, len(country_records), len(admin_divisions), len(capitals),
        stats.names, stats.orphan_names, stats.excluded, stats.duplicates,
        len(stats.row_errors), time.monotonic() - started,
    )

    return Catalog(
        cities=records,
        countries=country_records,
        admin_divisions=admin_divisions,
        capitals=dict(sorted(capitals.items())),
    )


def build_catalog_from_files(files: SourceFiles, languages: Iterable[str] = ()) -> Catalog:
    """Build a Catalog straight from files on disk, streaming each one."""
    def lines(path: Optional[Union[str, Path]]) -> Optional[Iterator[str]]:
        return open_lines(path) if path is not None else None

    if not Path(files.cities).exists():
        raise SourceFatalError(f"cities file not found: {files.cities}")

    return build_catalog(
        cities=open_lines(files.cities),
        names=lines(files.names),
        countries=lines(files.countries),
        admin1_codes=lines(files.admin1_codes),
        admin2_codes=lines(files.admin2_codes),
        languages=languages,
        cities_schema=files.cities_schema,
    )
