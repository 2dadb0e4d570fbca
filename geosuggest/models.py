"""
Pydantic models used for index metadata and API responses.
These are pure data objects with no engine coupling.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, Field

from geosuggest.config import APP_VERSION


# ── Index metadata ────────────────────────────────────────────────────

class SourceMetadata(BaseModel):
    """What an index was built from. The only input to staleness checks."""
    # source name ("cities", "names", ...) -> url or file path
    sources: dict[str, str] = Field(default_factory=dict)
    # source name -> ETag, Last-Modified or "sha256:<hex>" content signature
    descriptors: dict[str, str] = Field(default_factory=dict)
    languages: list[str] = Field(default_factory=list)

    model_config = {"frozen": True}


class EngineMetadata(BaseModel):
    version: str = APP_VERSION
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    source: SourceMetadata = Field(default_factory=SourceMetadata)
    extra: dict[str, str] = Field(default_factory=dict)

    model_config = {"frozen": True}


# ── API response models ───────────────────────────────────────────────

class CountryItem(BaseModel):
    id: Optional[int] = None
    code: str
    name: str


class AdminDivisionItem(BaseModel):
    id: Optional[int] = None
    code: str
    name: str


class CityItem(BaseModel):
    id: int
    name: str
    country: Optional[CountryItem] = None
    admin_division: Optional[AdminDivisionItem] = None
    admin2_division: Optional[AdminDivisionItem] = None
    timezone: str
    latitude: float
    longitude: float
    population: int


class GetCityResponse(BaseModel):
    city: Optional[CityItem] = None
    time: float = Field(..., description="Elapsed time in ms")


class CapitalResponse(BaseModel):
    city: Optional[CityItem] = None
    time: float


class SuggestResponse(BaseModel):
    items: list[CityItem] = Field(default_factory=list)
    time: float


class ReverseItem(BaseModel):
    city: CityItem
    distance: float = Field(..., description="Great-circle distance in km")
    score: float


class ReverseResponse(BaseModel):
    items: list[ReverseItem] = Field(default_factory=list)
    time: float


class GeoIPResponse(BaseModel):
    city: Optional[CityItem] = None
    for_ip: str
    time: float


class HealthResponse(BaseModel):
    status: str = "ok"
    cities: int = 0
    countries: int = 0
    version: Optional[str] = None
    created_at: Optional[datetime] = None
    languages: list[str] = Field(default_factory=list)
