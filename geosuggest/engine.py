"""
Query facade over one immutable index snapshot.

An Engine owns a Catalog plus the spatial and text indexes derived from it,
and the metadata describing the sources it was built from. Nothing here
mutates after construction, so one Engine can serve any number of
concurrent readers; a rebuild produces a new Engine.
"""

from __future__ import annotations

import hashlib
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional, Union

from geosuggest.catalog import (
    AdminDivision,
    Catalog,
    CityRecord,
    CountryRecord,
    Lines,
    SourceFiles,
    build_catalog,
    build_catalog_from_files,
)
from geosuggest.models import EngineMetadata, SourceMetadata
from geosuggest.parser import GEONAMES_CITIES, Schema
from geosuggest.spatial import SpatialIndex
from geosuggest.text_index import TextIndex

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReverseHit:
    city: CityRecord
    distance: float  # km
    score: float


def file_signature(path: Union[str, Path]) -> str:
    """Content signature used as the descriptor of a local source file."""
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(1 << 20), b""):
            digest.update(chunk)
    return f"sha256:{digest.hexdigest()}"


def _country_filter(countries: Optional[Iterable[str]]) -> Optional[list[str]]:
    if countries is None:
        return None
    codes = [c.strip().upper() for c in countries if c and c.strip()]
    # an empty allow-list means "no filter"
    return codes or None


def _language_list(languages: Iterable[str]) -> list[str]:
    if isinstance(languages, str):
        languages = [languages]
    return sorted(set(languages))


class Engine:
    __slots__ = ("_catalog", "_metadata", "_spatial", "_text")

    def __init__(self, catalog: Catalog, metadata: Optional[EngineMetadata] = None):
        started = time.monotonic()
        self._catalog = catalog
        self._metadata = metadata or EngineMetadata()
        self._spatial = SpatialIndex.from_catalog(catalog)
        self._text = TextIndex.from_catalog(catalog)
        logger.info(
            "Engine ready: %d cities, %d name variants, took %.2fs",
            len(catalog), len(self._text), time.monotonic() - started,
        )

    # ── Construction ──────────────────────────────────────────────────

    @classmethod
    def from_catalog(cls, catalog: Catalog, metadata: Optional[EngineMetadata] = None) -> "Engine":
        return cls(catalog, metadata)

    @classmethod
    def from_files(
        cls,
        files: SourceFiles,
        languages: Iterable[str] = (),
        extra: Optional[dict[str, str]] = None,
    ) -> "Engine":
        """Build from local files; descriptors are sha256 content signatures."""
        languages = _language_list(languages)
        catalog = build_catalog_from_files(files, languages)

        paths = {
            "cities": files.cities,
            "names": files.names,
            "countries": files.countries,
            "admin1_codes": files.admin1_codes,
            "admin2_codes": files.admin2_codes,
        }
        paths = {name: path for name, path in paths.items() if path is not None}
        metadata = EngineMetadata(
            source=SourceMetadata(
                sources={name: str(path) for name, path in paths.items()},
                descriptors={name: file_signature(path) for name, path in paths.items()},
                languages=languages,
            ),
            extra=extra or {},
        )
        return cls(catalog, metadata)

    @classmethod
    def from_contents(
        cls,
        cities: Lines,
        names: Optional[Lines] = None,
        countries: Optional[Lines] = None,
        admin1_codes: Optional[Lines] = None,
        admin2_codes: Optional[Lines] = None,
        languages: Iterable[str] = (),
        cities_schema: Schema = GEONAMES_CITIES,
        source: Optional[SourceMetadata] = None,
        extra: Optional[dict[str, str]] = None,
    ) -> "Engine":
        """Build from in-memory source payloads (str, bytes or line iterables)."""
        languages = _language_list(languages)
        catalog = build_catalog(
            cities,
            names=names,
            countries=countries,
            admin1_codes=admin1_codes,
            admin2_codes=admin2_codes,
            languages=languages,
            cities_schema=cities_schema,
        )
        metadata = EngineMetadata(
            source=source or SourceMetadata(languages=languages),
            extra=extra or {},
        )
        return cls(catalog, metadata)

    # ── Accessors ─────────────────────────────────────────────────────

    @property
    def catalog(self) -> Catalog:
        return self._catalog

    @property
    def metadata(self) -> EngineMetadata:
        return self._metadata

    def __len__(self) -> int:
        return len(self._catalog)

    def __eq__(self, other: object) -> bool:
        # indexes are derived from the catalog, so they need no comparison
        if not isinstance(other, Engine):
            return NotImplemented
        return self._catalog == other._catalog and self._metadata == other._metadata

    __hash__ = None

    # ── Queries ───────────────────────────────────────────────────────

    def get(self, city_id: int) -> Optional[CityRecord]:
        return self._catalog.get(city_id)

    def capital(self, country_code: str) -> Optional[CityRecord]:
        """Capital city by 2-letter country code (case-insensitive)."""
        return self._catalog.capital(country_code)

    def country_info(self, country_code: str) -> Optional[CountryRecord]:
        return self._catalog.countries.get(country_code.upper())

    def admin_division(self, code: str) -> Optional[AdminDivision]:
        return self._catalog.admin_divisions.get(code)

    def suggest(
        self,
        pattern: str,
        limit: int = 10,
        min_score: Optional[float] = None,
        countries: Optional[Iterable[str]] = None,
        min_population: Optional[int] = None,
        languages: Optional[Iterable[str]] = None,
    ) -> list[CityRecord]:
        """
        Cities whose name variants best match ``pattern``, best first.

        ``min_score`` is the Jaro-Winkler threshold (default 0.8).
        ``countries`` restricts results to the given ISO codes and
        ``languages`` restricts which tagged variants are matched.
        """
        matches = self._text.search(
            pattern,
            limit,
            min_score=min_score,
            countries=_country_filter(countries),
            min_population=min_population,
            languages=languages,
        )
        return [self._catalog.cities[m.city_id] for m in matches]

    def reverse(
        self,
        loc: tuple[float, float],
        limit: int = 1,
        k: Optional[float] = None,
        countries: Optional[Iterable[str]] = None,
        min_population: Optional[int] = None,
    ) -> list[ReverseHit]:
        """
        Nearest cities to ``loc`` (latitude, longitude), nearest first.

        With ``k`` the ``limit`` nearest cities are re-ranked by
        ``distance_km - k * population`` (k in km per inhabitant) so big
        cities win over close villages.
        Raises ValueError for out-of-range coordinates.
        """
        latitude, longitude = loc
        neighbors = self._spatial.nearest(
            latitude,
            longitude,
            limit,
            countries=_country_filter(countries),
            min_population=min_population,
        )

        hits = []
        for n in neighbors:
            city = self._catalog.cities[n.city_id]
            score = n.distance_km - k * city.population if k else n.distance_km
            hits.append(ReverseHit(city=city, distance=n.distance_km, score=score))

        if k:
            hits.sort(key=lambda h: (h.score, h.city.id))
        return hits
