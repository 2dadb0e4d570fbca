"""
Upstream source handling: staleness checks, downloads and index rebuilds.

IndexUpdater talks HTTP (httpx) to the configured gazetteer sources:
  - has_updates() compares the descriptors recorded in an index's metadata
    with what the sources report now (HEAD: ETag, else Last-Modified)
  - build() downloads every configured source and produces a fresh Engine

SnapshotHolder and RebuildCoordinator handle publishing: readers always see
one complete Engine, and a rebuild replaces both the index file and the
served snapshot only after it fully succeeded.
"""

from __future__ import annotations

import asyncio
import logging
import tempfile
import time
import zipfile
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, Optional, Union

import httpx

from geosuggest.catalog import SourceFiles, build_catalog_from_files
from geosuggest.config import SourcesConfig
from geosuggest.engine import Engine
from geosuggest.errors import SourceFatalError, UpdateCheckError
from geosuggest.models import EngineMetadata, SourceMetadata
from geosuggest.storage import DumpFormat, dump_to, rebuild_lock

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1 << 20


@dataclass(frozen=True)
class SourceItem:
    name: str
    url: str
    # member to extract when the url serves a zip archive
    filename: Optional[str] = None


def configured_sources(config: SourcesConfig) -> list[SourceItem]:
    """Sources in build order; ``cities`` is always first."""
    items = [SourceItem("cities", config.cities_url, config.cities_filename)]
    if config.names_url:
        items.append(SourceItem("names", config.names_url, config.names_filename))
    if config.countries_url:
        items.append(SourceItem("countries", config.countries_url))
    if config.admin1_codes_url:
        items.append(SourceItem("admin1_codes", config.admin1_codes_url))
    if config.admin2_codes_url:
        items.append(SourceItem("admin2_codes", config.admin2_codes_url))
    return items


def _descriptor(headers: httpx.Headers) -> str:
    return headers.get("etag") or headers.get("last-modified") or ""


class IndexUpdater:
    def __init__(
        self,
        config: SourcesConfig,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.config = config
        self.sources = configured_sources(config)
        self._client = client

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._client is not None:
            yield self._client
            return
        async with httpx.AsyncClient(
            timeout=self.config.http_timeout, follow_redirects=True
        ) as client:
            yield client

    # ── Staleness ─────────────────────────────────────────────────────

    async def get_descriptor(self, client: httpx.AsyncClient, item: SourceItem) -> str:
        """Current descriptor of one source; any failure is an UpdateCheckError."""
        logger.debug("HEAD %s", item.url)
        try:
            resp = await client.head(item.url)
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise UpdateCheckError(
                item.name, f"HTTP {e.response.status_code}", url=item.url
            ) from e
        except httpx.HTTPError as e:
            raise UpdateCheckError(item.name, f"{type(e).__name__}: {e}", url=item.url) from e
        return _descriptor(resp.headers)

    async def has_updates(self, metadata: Union[EngineMetadata, SourceMetadata]) -> bool:
        """
        True when an index built from ``metadata`` no longer reflects the
        configured sources. Raises UpdateCheckError when any source cannot be
        checked; an unknown state is never reported as fresh or stale.
        """
        source = metadata.source if isinstance(metadata, EngineMetadata) else metadata

        if not source.descriptors:
            logger.info("Index metadata has no source descriptors")
            return True
        if sorted(source.languages) != sorted(self.config.languages):
            logger.info(
                "Language set changed: %s -> %s", source.languages, list(self.config.languages)
            )
            return True
        if set(source.descriptors) != {item.name for item in self.sources}:
            logger.info("Configured source set changed")
            return True
        for item in self.sources:
            if source.sources.get(item.name) != item.url:
                logger.info("Source %s moved to %s", item.name, item.url)
                return True

        async with self._session() as client:
            current = await asyncio.gather(
                *(self.get_descriptor(client, item) for item in self.sources),
                return_exceptions=True,
            )
        # every HEAD has settled before the client is closed
        for result in current:
            if isinstance(result, BaseException):
                raise result

        for item, descriptor in zip(self.sources, current):
            if source.descriptors.get(item.name) != descriptor:
                logger.info(
                    "Source %s changed: %r -> %r",
                    item.name, source.descriptors.get(item.name), descriptor,
                )
                return True

        logger.info("All %d sources up to date", len(self.sources))
        return False

    # ── Build ─────────────────────────────────────────────────────────

    async def fetch(
        self, client: httpx.AsyncClient, item: SourceItem, directory: Path
    ) -> tuple[Path, str]:
        """Download one source into ``directory``, unpacking zip archives."""
        target = directory / f"{item.name}.download"
        started = time.monotonic()
        logger.info("GET %s", item.url)
        try:
            async with client.stream("GET", item.url) as resp:
                resp.raise_for_status()
                descriptor = _descriptor(resp.headers)
                with open(target, "wb") as f:
                    async for chunk in resp.aiter_bytes(CHUNK_SIZE):
                        f.write(chunk)
        except httpx.HTTPStatusError as e:
            raise SourceFatalError(
                f"GET {item.url} ({item.name}) returned HTTP {e.response.status_code}"
            ) from e
        except httpx.HTTPError as e:
            raise SourceFatalError(f"GET {item.url} ({item.name}) failed: {e}") from e

        logger.info(
            "Downloaded %s: %d bytes in %.1fs",
            item.name, target.stat().st_size, time.monotonic() - started,
        )

        if not zipfile.is_zipfile(target):
            return target, descriptor

        try:
            with zipfile.ZipFile(target) as archive:
                member = item.filename
                if member is None:
                    members = [n for n in archive.namelist() if not n.endswith("/")]
                    if len(members) != 1:
                        raise SourceFatalError(
                            f"{item.name}: archive holds {len(members)} files, filename required"
                        )
                    member = members[0]
                logger.info("Unzip %s from %s", member, item.name)
                extracted = archive.extract(member, directory / item.name)
        except (KeyError, zipfile.BadZipFile) as e:
            raise SourceFatalError(f"{item.name}: cannot extract {item.filename}: {e}") from e
        return Path(extracted), descriptor

    async def build(self, extra: Optional[dict[str, str]] = None) -> Engine:
        """Fetch every configured source and build a new Engine from them."""
        started = time.monotonic()
        with tempfile.TemporaryDirectory(prefix="geosuggest-") as tmp:
            directory = Path(tmp)
            async with self._session() as client:
                results = await asyncio.gather(
                    *(self.fetch(client, item, directory) for item in self.sources),
                    return_exceptions=True,
                )
            # every download has settled before the temp directory goes away
            for result in results:
                if isinstance(result, BaseException):
                    raise result
            fetched: list[tuple[Path, str]] = list(results)
            paths = {item.name: path for item, (path, _) in zip(self.sources, fetched)}

            files = SourceFiles(
                cities=paths["cities"],
                names=paths.get("names"),
                countries=paths.get("countries"),
                admin1_codes=paths.get("admin1_codes"),
                admin2_codes=paths.get("admin2_codes"),
            )
            catalog = await asyncio.to_thread(
                build_catalog_from_files, files, self.config.languages
            )

        metadata = EngineMetadata(
            source=SourceMetadata(
                sources={item.name: item.url for item in self.sources},
                descriptors={
                    item.name: descriptor for item, (_, descriptor) in zip(self.sources, fetched)
                },
                languages=sorted(self.config.languages),
            ),
            extra=extra or {},
        )
        engine = await asyncio.to_thread(Engine, catalog, metadata)
        logger.info("Index built from %d sources in %.1fs", len(self.sources), time.monotonic() - started)
        return engine


# ── Publishing ────────────────────────────────────────────────────────

class SnapshotHolder:
    """The currently served Engine. Swapping is a single reference assignment."""

    def __init__(self, engine: Optional[Engine] = None):
        self._engine = engine

    def get(self) -> Optional[Engine]:
        return self._engine

    def swap(self, engine: Engine) -> Optional[Engine]:
        previous, self._engine = self._engine, engine
        return previous


class RebuildCoordinator:
    """
    Serializes rebuilds of one index file, in process (asyncio.Lock) and
    across processes (rebuild_lock).

    A rebuild checks for updates, builds, writes the file atomically and only
    then publishes the new Engine. Any failure leaves both the file and the
    served snapshot as they were.
    """

    def __init__(
        self,
        holder: SnapshotHolder,
        updater: IndexUpdater,
        index_file: Union[str, Path],
        fmt: DumpFormat = DumpFormat.MSGPACK_ZSTD,
    ):
        self.holder = holder
        self.updater = updater
        self.index_file = Path(index_file)
        self.fmt = DumpFormat(fmt)
        self._lock = asyncio.Lock()

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    async def rebuild(self, force: bool = False) -> bool:
        """Returns True when a new snapshot was published."""
        async with self._lock:
            with rebuild_lock(self.index_file) as acquired:
                if not acquired:
                    logger.warning(
                        "Index %s is being rebuilt by another process, skipping", self.index_file
                    )
                    return False

                current = self.holder.get()
                if not force and current is not None:
                    if not await self.updater.has_updates(current.metadata):
                        return False

                engine = await self.updater.build()
                await asyncio.to_thread(dump_to, self.index_file, engine, self.fmt)
                self.holder.swap(engine)
                logger.info("Serving new index: %d cities", len(engine))
                return True
