"""
Central configuration loaded from environment variables with sensible defaults.
Source URLs default to the public GeoNames dump.
"""

from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Optional


APP_VERSION = "1.0.0"
GEONAMES_DUMP_URL = "https://download.geonames.org/export/dump"


def _optional(name: str, default: str) -> Optional[str]:
    """Env var that may be switched off by setting it to an empty string."""
    value = os.getenv(name, default)
    return value or None


def _languages() -> tuple[str, ...]:
    raw = os.getenv("GEOSUGGEST_LANGUAGES", "")
    return tuple(sorted({lang.strip() for lang in raw.split(",") if lang.strip()}))


@dataclass(frozen=True)
class IndexConfig:
    index_file: str = os.getenv(
        "GEOSUGGEST_INDEX_FILE",
        os.path.join(tempfile.gettempdir(), "geosuggest-index.bin"),
    )
    # msgpack+zstd | msgpack | json
    dump_format: str = os.getenv("GEOSUGGEST_INDEX_FORMAT", "msgpack+zstd")


@dataclass(frozen=True)
class SourcesConfig:
    cities_url: str = os.getenv("GEOSUGGEST_CITIES_URL", f"{GEONAMES_DUMP_URL}/cities5000.zip")
    # Member to extract when the url points to a zip archive
    cities_filename: Optional[str] = _optional("GEOSUGGEST_CITIES_FILENAME", "cities5000.txt")
    names_url: Optional[str] = _optional("GEOSUGGEST_NAMES_URL", f"{GEONAMES_DUMP_URL}/alternateNamesV2.zip")
    names_filename: Optional[str] = _optional("GEOSUGGEST_NAMES_FILENAME", "alternateNamesV2.txt")
    countries_url: Optional[str] = _optional("GEOSUGGEST_COUNTRIES_URL", f"{GEONAMES_DUMP_URL}/countryInfo.txt")
    admin1_codes_url: Optional[str] = _optional("GEOSUGGEST_ADMIN1_URL", f"{GEONAMES_DUMP_URL}/admin1CodesASCII.txt")
    admin2_codes_url: Optional[str] = _optional("GEOSUGGEST_ADMIN2_URL", f"{GEONAMES_DUMP_URL}/admin2Codes.txt")
    languages: tuple[str, ...] = field(default_factory=_languages)
    # Seconds; the full alternate names archive is several hundred MB
    http_timeout: float = float(os.getenv("GEOSUGGEST_HTTP_TIMEOUT", "300"))


@dataclass(frozen=True)
class SchedulerConfig:
    enabled: bool = os.getenv("UPDATE_CHECK_ENABLED", "false").lower() == "true"
    interval_minutes: int = int(os.getenv("UPDATE_CHECK_INTERVAL_MIN", "1440"))


@dataclass(frozen=True)
class APIConfig:
    host: str = os.getenv("API_HOST", "0.0.0.0")
    port: int = int(os.getenv("API_PORT", "8080"))
    url_prefix: str = os.getenv("API_URL_PREFIX", "")
    default_limit: int = int(os.getenv("API_DEFAULT_LIMIT", "10"))
    max_limit: int = int(os.getenv("API_MAX_LIMIT", "100"))
    geoip2_file: Optional[str] = _optional("GEOIP2_FILE", "")


@dataclass(frozen=True)
class Settings:
    index: IndexConfig = field(default_factory=IndexConfig)
    sources: SourcesConfig = field(default_factory=SourcesConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    api: APIConfig = field(default_factory=APIConfig)
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    env: str = os.getenv("APP_ENV", "development")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Singleton settings instance."""
    return Settings()
