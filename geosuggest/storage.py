"""
Binary persistence of an Engine snapshot.

Artifact layout (all integers big-endian):

    magic "GSIX" | layout version u8 | format u8 | metadata len u32 | payload len u32
    metadata (msgpack, never compressed)
    payload (catalog encoded in the chosen DumpFormat)
    sha256(metadata + payload)

Only the catalog is stored. Spatial and text indexes are rebuilt from it on
load, which is deterministic and keeps the format independent of index
internals. Metadata sits uncompressed in front of the payload so update
checks can read it without touching the catalog.
"""

from __future__ import annotations

import errno
import fcntl
import hashlib
import json
import logging
import os
import struct
import tempfile
import time
from contextlib import contextmanager
from enum import Enum
from pathlib import Path
from typing import Any, Iterator, Optional, Union

import msgpack
import zstandard as zstd
from pydantic import ValidationError

from geosuggest.catalog import AdminDivision, Catalog, CityRecord, CountryRecord, CountryRef
from geosuggest.engine import Engine
from geosuggest.errors import DeserializationError
from geosuggest.models import EngineMetadata
from geosuggest.spatial import validate_coordinates

logger = logging.getLogger(__name__)

MAGIC = b"GSIX"
LAYOUT_VERSION = 1
HEADER = struct.Struct(">4sBBII")
DIGEST_SIZE = hashlib.sha256().digest_size
ZSTD_LEVEL = 10


class DumpFormat(str, Enum):
    MSGPACK_ZSTD = "msgpack+zstd"
    MSGPACK = "msgpack"
    JSON = "json"

    @property
    def code(self) -> int:
        return _FORMAT_CODES[self]


_FORMAT_CODES = {DumpFormat.MSGPACK_ZSTD: 1, DumpFormat.MSGPACK: 2, DumpFormat.JSON: 3}
_FORMATS_BY_CODE = {code: fmt for fmt, code in _FORMAT_CODES.items()}

_DECODE_ERRORS = (
    ValueError,
    TypeError,
    KeyError,
    IndexError,
    UnicodeDecodeError,
    msgpack.UnpackException,
    zstd.ZstdError,
    ValidationError,
)


# ── Catalog <-> plain structures ──────────────────────────────────────

def _names_out(names: dict[str, tuple[str, ...]]) -> dict[str, list[str]]:
    return {lang: list(values) for lang, values in names.items()}


def _names_in(raw: dict) -> dict[str, tuple[str, ...]]:
    if not isinstance(raw, dict):
        raise TypeError(f"names must be a mapping, got {type(raw).__name__}")
    return {str(lang): tuple(str(v) for v in values) for lang, values in raw.items()}


def _admin_out(division: Optional[AdminDivision]) -> Optional[list]:
    if division is None:
        return None
    return [division.id, division.code, division.name, _names_out(division.names)]


def _admin_in(raw: Optional[list]) -> Optional[AdminDivision]:
    if raw is None:
        return None
    division_id, code, name, names = raw
    return AdminDivision(id=division_id, code=code, name=name, names=_names_in(names))


def _catalog_to_plain(catalog: Catalog) -> dict[str, Any]:
    cities = []
    for city in catalog.cities.values():
        country = city.country
        cities.append([
            city.id,
            city.name,
            city.latitude,
            city.longitude,
            city.country_code,
            city.population,
            city.timezone,
            city.feature_code,
            _names_out(city.names),
            [country.id, country.code, country.name] if country else None,
            _admin_out(city.admin_division),
            _admin_out(city.admin2_division),
        ])

    countries = [
        [
            c.id, c.code, c.name, c.iso3, c.capital, c.population, c.continent,
            c.languages, c.neighbours, c.capital_id, _names_out(c.names),
        ]
        for c in catalog.countries.values()
    ]

    return {
        "cities": cities,
        "countries": countries,
        "admin_divisions": [_admin_out(d) for d in catalog.admin_divisions.values()],
        "capitals": dict(catalog.capitals),
    }


def _catalog_from_plain(data: dict[str, Any]) -> Catalog:
    cities: dict[int, CityRecord] = {}
    for row in data["cities"]:
        (city_id, name, latitude, longitude, country_code, population,
         timezone, feature_code, names, country, admin1, admin2) = row
        latitude, longitude = float(latitude), float(longitude)
        validate_coordinates(latitude, longitude)
        if not isinstance(city_id, int) or city_id in cities:
            raise ValueError(f"invalid or duplicate city id {city_id!r}")
        cities[city_id] = CityRecord(
            id=city_id,
            name=name,
            latitude=latitude,
            longitude=longitude,
            country_code=country_code,
            population=int(population),
            timezone=timezone,
            feature_code=feature_code,
            names=_names_in(names),
            country=CountryRef(*country) if country is not None else None,
            admin_division=_admin_in(admin1),
            admin2_division=_admin_in(admin2),
        )

    countries: dict[str, CountryRecord] = {}
    for row in data["countries"]:
        (country_id, code, name, iso3, capital, population, continent,
         languages, neighbours, capital_id, names) = row
        countries[code] = CountryRecord(
            id=country_id,
            code=code,
            name=name,
            iso3=iso3,
            capital=capital,
            population=int(population),
            continent=continent,
            languages=languages,
            neighbours=neighbours,
            capital_id=capital_id,
            names=_names_in(names),
        )

    admin_divisions = {}
    for row in data["admin_divisions"]:
        division = _admin_in(row)
        admin_divisions[division.code] = division

    capitals = {str(cc): int(city_id) for cc, city_id in data["capitals"].items()}
    for cc, city_id in capitals.items():
        if city_id not in cities:
            raise ValueError(f"capital of {cc} references unknown city {city_id}")

    return Catalog(
        cities=dict(sorted(cities.items())),
        countries=countries,
        admin_divisions=admin_divisions,
        capitals=capitals,
    )


# ── Payload codecs ────────────────────────────────────────────────────

def _encode_payload(plain: dict[str, Any], fmt: DumpFormat) -> bytes:
    if fmt is DumpFormat.JSON:
        return json.dumps(plain, ensure_ascii=False, separators=(",", ":")).encode("utf-8")
    packed = msgpack.packb(plain, use_bin_type=True)
    if fmt is DumpFormat.MSGPACK_ZSTD:
        return zstd.ZstdCompressor(level=ZSTD_LEVEL).compress(packed)
    return packed


def _decode_payload(payload: bytes, fmt: DumpFormat) -> dict[str, Any]:
    if fmt is DumpFormat.JSON:
        return json.loads(payload.decode("utf-8"))
    if fmt is DumpFormat.MSGPACK_ZSTD:
        payload = zstd.ZstdDecompressor().decompress(payload)
    # int keys are not used anywhere in the payload, so strict_map_key stays on
    return msgpack.unpackb(payload, raw=False)


def _encode_metadata(metadata: EngineMetadata) -> bytes:
    return msgpack.packb(metadata.model_dump(mode="json"), use_bin_type=True)


def _decode_metadata(raw: bytes) -> EngineMetadata:
    return EngineMetadata.model_validate(msgpack.unpackb(raw, raw=False))


# ── Public API ────────────────────────────────────────────────────────

def dump(engine: Engine, fmt: DumpFormat = DumpFormat.MSGPACK_ZSTD) -> bytes:
    fmt = DumpFormat(fmt)
    metadata = _encode_metadata(engine.metadata)
    payload = _encode_payload(_catalog_to_plain(engine.catalog), fmt)
    header = HEADER.pack(MAGIC, LAYOUT_VERSION, fmt.code, len(metadata), len(payload))
    digest = hashlib.sha256(metadata + payload).digest()
    return header + metadata + payload + digest


def _parse_header(header: bytes) -> tuple[DumpFormat, int, int]:
    if len(header) < HEADER.size:
        raise DeserializationError(f"artifact truncated: {len(header)} byte header")
    magic, layout, code, meta_len, payload_len = HEADER.unpack(header[:HEADER.size])
    if magic != MAGIC:
        raise DeserializationError(f"not an index artifact (magic {magic!r})")
    if layout != LAYOUT_VERSION:
        raise DeserializationError(f"unsupported layout version {layout}")
    fmt = _FORMATS_BY_CODE.get(code)
    if fmt is None:
        raise DeserializationError(f"unknown dump format code {code}")
    return fmt, meta_len, payload_len


def load(data: bytes, fmt: Optional[DumpFormat] = None) -> Engine:
    """
    Decode an artifact produced by dump().

    When ``fmt`` is given it must match the format recorded in the header.
    Raises DeserializationError on any corruption; never returns a partial Engine.
    """
    started = time.monotonic()
    stored_fmt, meta_len, payload_len = _parse_header(data)
    if fmt is not None:
        try:
            fmt = DumpFormat(fmt)
        except ValueError as e:
            raise DeserializationError(f"unknown dump format {fmt!r}") from e
        if fmt is not stored_fmt:
            raise DeserializationError(
                f"format mismatch: expected {fmt.value}, artifact is {stored_fmt.value}"
            )

    expected = HEADER.size + meta_len + payload_len + DIGEST_SIZE
    if len(data) != expected:
        raise DeserializationError(f"artifact size {len(data)} does not match header ({expected})")

    body = data[HEADER.size:expected - DIGEST_SIZE]
    if hashlib.sha256(body).digest() != data[expected - DIGEST_SIZE:]:
        raise DeserializationError("checksum mismatch")

    try:
        metadata = _decode_metadata(body[:meta_len])
        catalog = _catalog_from_plain(_decode_payload(body[meta_len:], stored_fmt))
    except _DECODE_ERRORS as e:
        raise DeserializationError(f"malformed artifact: {e}") from e

    engine = Engine(catalog, metadata)
    logger.info(
        "Loaded %s index: %d cities in %.2fs", stored_fmt.value, len(engine), time.monotonic() - started
    )
    return engine


def dump_to(
    path: Union[str, Path], engine: Engine, fmt: DumpFormat = DumpFormat.MSGPACK_ZSTD
) -> None:
    """Write atomically: a temp file in the target directory replaces ``path``."""
    path = Path(path)
    data = dump(engine, fmt)
    path.parent.mkdir(parents=True, exist_ok=True)

    fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise
    logger.info("Index written to %s (%d bytes, %s)", path, len(data), DumpFormat(fmt).value)


@contextmanager
def rebuild_lock(path: Union[str, Path]) -> Iterator[bool]:
    """
    Advisory lock on ``<path>.lock`` shared by every process that rebuilds
    ``path``. Yields False without waiting when another holder has it.
    """
    lock_path = Path(f"{path}.lock")
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with open(lock_path, "w") as handle:
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
            acquired = True
        except OSError as e:
            if e.errno not in (errno.EAGAIN, errno.EACCES):
                raise
            acquired = False

        if not acquired:
            yield False
            return
        try:
            handle.write(str(os.getpid()))
            handle.flush()
            yield True
        finally:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)


def load_from(path: Union[str, Path], fmt: Optional[DumpFormat] = None) -> Engine:
    with open(path, "rb") as f:
        data = f.read()
    return load(data, fmt)


def read_metadata(path: Union[str, Path]) -> EngineMetadata:
    """Read only the header and metadata block of an artifact on disk."""
    with open(path, "rb") as f:
        header = f.read(HEADER.size)
        _, meta_len, _ = _parse_header(header)
        raw = f.read(meta_len)
    if len(raw) != meta_len:
        raise DeserializationError("artifact truncated inside metadata")
    try:
        return _decode_metadata(raw)
    except _DECODE_ERRORS as e:
        raise DeserializationError(f"malformed metadata: {e}") from e
