"""
FastAPI service exposing the geocoding engine.

Endpoints:
  GET /api/city/get      - City by GeoNames id
  GET /api/city/capital  - Capital city of a country
  GET /api/city/suggest  - Cities matching a name fragment
  GET /api/city/reverse  - Nearest cities to a lat/lng point
  GET /api/city/geoip2   - City of an IP address (needs GEOIP2_FILE)
  GET /health            - Loaded index summary

Every city endpoint accepts ``lang`` to localize city, country and admin
division names, falling back to the canonical names.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware

from geosuggest.catalog import AdminDivision, CityRecord
from geosuggest.config import APP_VERSION, get_settings
from geosuggest.engine import Engine
from geosuggest.geoip import GeoIPLocator
from geosuggest.models import (
    AdminDivisionItem,
    CapitalResponse,
    CityItem,
    CountryItem,
    GeoIPResponse,
    GetCityResponse,
    HealthResponse,
    ReverseItem,
    ReverseResponse,
    SuggestResponse,
)
from geosuggest.scheduler import start_scheduler, stop_scheduler
from geosuggest.storage import DumpFormat, load_from
from geosuggest.updater import IndexUpdater, RebuildCoordinator, SnapshotHolder

logger = logging.getLogger(__name__)

# score(item) = distance_km - k * population; k is km per inhabitant,
# so a 10M city gets a 20 km head start over a village
DEFAULT_K = 0.000002
DEFAULT_NEAREST_LIMIT = 10


# ── Lifespan ──────────────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup: load index + GeoIP database, start updates. Shutdown: stop them."""
    logger.info("Starting up API server...")
    settings = get_settings()
    holder: SnapshotHolder = app.state.holder

    if holder.get() is None:
        path = settings.index.index_file
        if os.path.exists(path):
            holder.swap(await asyncio.to_thread(load_from, path))
        else:
            logger.warning("Index file %s not found; build it with scripts/build_index.py", path)

    if settings.api.geoip2_file and app.state.geoip is None:
        app.state.geoip = GeoIPLocator(settings.api.geoip2_file)

    coordinator = RebuildCoordinator(
        holder,
        IndexUpdater(settings.sources),
        settings.index.index_file,
        DumpFormat(settings.index.dump_format),
    )
    app.state.coordinator = coordinator
    start_scheduler(coordinator)
    yield
    stop_scheduler()
    if app.state.geoip is not None:
        app.state.geoip.close()
        app.state.geoip = None
    logger.info("API server shut down.")


# ── App ───────────────────────────────────────────────────────────────

app = FastAPI(
    title="Geosuggest API",
    description="Suggest, reverse geocode and look up cities from GeoNames data",
    version=APP_VERSION,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["GET"],
    allow_headers=["*"],
)

app.state.holder = SnapshotHolder()
app.state.geoip = None

router = APIRouter(prefix=f"{get_settings().api.url_prefix.rstrip('/')}/api/city")


# ── Helpers ───────────────────────────────────────────────────────────

def get_engine(request: Request) -> Engine:
    engine = request.app.state.holder.get()
    if engine is None:
        raise HTTPException(503, "Index is not loaded yet")
    return engine


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 3)


def _limit(limit: Optional[int]) -> int:
    settings = get_settings().api
    if limit is None:
        return settings.default_limit
    return min(limit, settings.max_limit)


def _countries(countries: Optional[str]) -> Optional[list[str]]:
    """Comma separated country codes -> list (None when absent)."""
    if countries is None:
        return None
    return [c.strip() for c in countries.split(",") if c.strip()]


def _format_admin(division: Optional[AdminDivision], lang: Optional[str]) -> Optional[AdminDivisionItem]:
    if division is None:
        return None
    return AdminDivisionItem(id=division.id, code=division.code, name=division.name_for(lang))


def _format_city(city: CityRecord, engine: Engine, lang: Optional[str]) -> CityItem:
    country = None
    if city.country is not None:
        record = engine.country_info(city.country.code)
        country = CountryItem(
            id=city.country.id,
            code=city.country.code,
            name=record.name_for(lang) if record is not None else city.country.name,
        )

    return CityItem(
        id=city.id,
        name=city.name_for(lang),
        country=country,
        admin_division=_format_admin(city.admin_division, lang),
        admin2_division=_format_admin(city.admin2_division, lang),
        timezone=city.timezone,
        latitude=city.latitude,
        longitude=city.longitude,
        population=city.population,
    )


def _client_ip(request: Request) -> Optional[str]:
    """Proxy headers first, then the peer address."""
    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()

    forwarded = request.headers.get("forwarded")
    if forwarded:
        # Forwarded: for=192.0.2.60;proto=http;by=203.0.113.43
        for part in forwarded.split(",")[0].split(";"):
            key, _, value = part.strip().partition("=")
            if key.lower() == "for" and value:
                value = value.strip('"')
                if value.startswith("["):
                    return value[1:].split("]")[0]
                return value.rsplit(":", 1)[0] if value.count(":") == 1 else value

    return request.client.host if request.client else None


# ══════════════════════════════════════════════════════════════════════
# ENDPOINTS
# ══════════════════════════════════════════════════════════════════════

@router.get("/get", response_model=GetCityResponse)
async def city_get(
    id: int = Query(..., ge=0, description="GeoNames id of the city"),
    lang: Optional[str] = Query(None, description="isolanguage code"),
    engine: Engine = Depends(get_engine),
):
    started = time.perf_counter()
    city = engine.get(id)
    return GetCityResponse(
        city=_format_city(city, engine, lang) if city else None,
        time=_elapsed_ms(started),
    )


@router.get("/capital", response_model=CapitalResponse)
async def capital(
    country_code: str = Query(..., min_length=2, max_length=2, description="ISO 3166-1 alpha-2"),
    lang: Optional[str] = Query(None, description="isolanguage code"),
    engine: Engine = Depends(get_engine),
):
    started = time.perf_counter()
    city = engine.capital(country_code)
    return CapitalResponse(
        city=_format_city(city, engine, lang) if city else None,
        time=_elapsed_ms(started),
    )


@router.get("/suggest", response_model=SuggestResponse)
async def suggest(
    pattern: str = Query(..., max_length=200),
    limit: Optional[int] = Query(None, ge=1),
    lang: Optional[str] = Query(None, description="isolanguage code"),
    min_score: Optional[float] = Query(
        None, ge=0, le=1, description="min Jaro-Winkler similarity (by default 0.8)"
    ),
    countries: Optional[str] = Query(None, description="comma separated country codes"),
    min_population: Optional[int] = Query(None, ge=0),
    engine: Engine = Depends(get_engine),
):
    """
    Cities whose names match ``pattern``.

    With ``lang`` only variants in that language (plus the untagged ones)
    take part in matching, and names are returned in that language.
    """
    started = time.perf_counter()
    cities = engine.suggest(
        pattern,
        _limit(limit),
        min_score=min_score,
        countries=_countries(countries),
        min_population=min_population,
        languages=[lang] if lang else None,
    )
    return SuggestResponse(
        items=[_format_city(city, engine, lang) for city in cities],
        time=_elapsed_ms(started),
    )


@router.get("/reverse", response_model=ReverseResponse)
async def reverse(
    lat: float = Query(..., ge=-90, le=90, description="Latitude"),
    lng: float = Query(..., ge=-180, le=180, description="Longitude"),
    limit: Optional[int] = Query(None, ge=1),
    lang: Optional[str] = Query(None, description="isolanguage code"),
    k: float = Query(
        DEFAULT_K, ge=0, description="population correction, km of distance per inhabitant"
    ),
    nearest_limit: int = Query(
        DEFAULT_NEAREST_LIMIT, ge=1, description="nearest cities to re-rank by population"
    ),
    countries: Optional[str] = Query(None, description="comma separated country codes"),
    min_population: Optional[int] = Query(None, ge=0),
    engine: Engine = Depends(get_engine),
):
    """
    Nearest cities to a point.

    The ``nearest_limit`` closest cities are re-ranked by
    ``distance - k * population`` and the best ``limit`` are returned.
    """
    started = time.perf_counter()
    limit = _limit(limit)
    hits = engine.reverse(
        (lat, lng),
        max(nearest_limit, limit),
        k=k,
        countries=_countries(countries),
        min_population=min_population,
    )
    return ReverseResponse(
        items=[
            ReverseItem(city=_format_city(h.city, engine, lang), distance=h.distance, score=h.score)
            for h in hits[:limit]
        ],
        time=_elapsed_ms(started),
    )


@router.get("/geoip2", response_model=GeoIPResponse)
async def geoip2(
    request: Request,
    ip: Optional[str] = Query(None, description="defaults to the client address"),
    lang: Optional[str] = Query(None, description="isolanguage code"),
    engine: Engine = Depends(get_engine),
):
    """
    City of an IP address: the GeoNames id from the GeoIP2 record when the
    index knows it, else the nearest city to the record's coordinates.
    """
    started = time.perf_counter()
    locator: Optional[GeoIPLocator] = request.app.state.geoip
    if locator is None:
        raise HTTPException(501, "GeoIP2 database is not configured")

    addr = ip or _client_ip(request)
    if not addr:
        raise HTTPException(400, "IP address is not declared in request and peer address is unknown")
    try:
        hit = locator.lookup(addr)
    except ValueError as e:
        raise HTTPException(400, f"Invalid ip addr: {addr} error: {e}")

    city = None
    if hit is not None:
        if hit.geoname_id is not None:
            city = engine.get(hit.geoname_id)
        if city is None and hit.latitude is not None and hit.longitude is not None:
            nearest = engine.reverse((hit.latitude, hit.longitude), 1)
            city = nearest[0].city if nearest else None

    return GeoIPResponse(
        city=_format_city(city, engine, lang) if city else None,
        for_ip=hit.ip if hit else addr,
        time=_elapsed_ms(started),
    )


app.include_router(router)


@app.get("/health", response_model=HealthResponse)
async def health_check(request: Request):
    """Summary of the served index."""
    engine: Optional[Engine] = request.app.state.holder.get()
    if engine is None:
        return HealthResponse(status="unavailable")

    metadata = engine.metadata
    return HealthResponse(
        status="ok",
        cities=len(engine),
        countries=len(engine.catalog.countries),
        version=metadata.version,
        created_at=metadata.created_at,
        languages=metadata.source.languages,
    )
