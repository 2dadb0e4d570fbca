"""
Tests for update checks, source downloads and rebuild publishing.
HTTP is served by httpx.MockTransport; no network required.
"""

from __future__ import annotations

import asyncio
import io
import zipfile

import httpx
import pytest

from geosuggest.config import SourcesConfig
from geosuggest.engine import Engine
from geosuggest.errors import SourceFatalError, UpdateCheckError
from geosuggest.models import EngineMetadata, SourceMetadata
from geosuggest.scheduler import update_job
from geosuggest.storage import load_from, rebuild_lock
from geosuggest.tests.sample_data import (
    CITY_ROWS,
    COUNTRY_ROWS,
    MOSCOW_ID,
    VALID_CITY_COUNT,
    VORONEZH_ID,
    as_text,
)
from geosuggest.updater import (
    IndexUpdater,
    RebuildCoordinator,
    SnapshotHolder,
    configured_sources,
)

CITIES_URL = "https://example.test/dump/cities5000.zip"
COUNTRIES_URL = "https://example.test/dump/countryInfo.txt"


def make_config(**overrides) -> SourcesConfig:
    values = dict(
        cities_url=CITIES_URL,
        cities_filename="cities5000.txt",
        names_url=None,
        names_filename=None,
        countries_url=COUNTRIES_URL,
        admin1_codes_url=None,
        admin2_codes_url=None,
        languages=("ru",),
        http_timeout=5.0,
    )
    values.update(overrides)
    return SourcesConfig(**values)


def zipped(member: str, text: str) -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as archive:
        archive.writestr(member, text)
    return buf.getvalue()


class FakeGeonames:
    """Serves the sample extract and records every request."""

    def __init__(self):
        self.etags = {CITIES_URL: '"cities-1"', COUNTRIES_URL: '"countries-1"'}
        self.bodies = {
            CITIES_URL: zipped("cities5000.txt", as_text(CITY_ROWS)),
            COUNTRIES_URL: as_text(COUNTRY_ROWS).encode("utf-8"),
        }
        self.requests: list[tuple[str, str]] = []
        self.fail: dict[str, Exception | int] = {}
        self.last_modified_only = False

    def __call__(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        self.requests.append((request.method, url))

        failure = self.fail.get(url)
        if isinstance(failure, Exception):
            raise failure
        if isinstance(failure, int):
            return httpx.Response(failure)
        if url not in self.bodies:
            return httpx.Response(404)

        if self.last_modified_only:
            headers = {"Last-Modified": "Wed, 01 Oct 2025 10:00:00 GMT"}
        else:
            headers = {"ETag": self.etags[url]}
        if request.method == "HEAD":
            return httpx.Response(200, headers=headers)
        return httpx.Response(200, headers=headers, content=self.bodies[url])

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))


def run(coro):
    return asyncio.run(coro)


async def _build(server: FakeGeonames, config: SourcesConfig | None = None) -> Engine:
    async with server.client() as client:
        return await IndexUpdater(config or make_config(), client=client).build()


async def _has_updates(server: FakeGeonames, metadata, config: SourcesConfig | None = None) -> bool:
    async with server.client() as client:
        return await IndexUpdater(config or make_config(), client=client).has_updates(metadata)


@pytest.fixture(scope="module")
def built() -> Engine:
    return run(_build(FakeGeonames()))


class TestConfiguredSources:
    def test_optional_sources_skipped(self):
        names = [item.name for item in configured_sources(make_config())]
        assert names == ["cities", "countries"]

    def test_all_sources(self):
        config = make_config(
            names_url="https://example.test/dump/alternateNamesV2.zip",
            names_filename="alternateNamesV2.txt",
            admin1_codes_url="https://example.test/dump/admin1CodesASCII.txt",
            admin2_codes_url="https://example.test/dump/admin2Codes.txt",
        )
        names = [item.name for item in configured_sources(config)]
        assert names == ["cities", "names", "countries", "admin1_codes", "admin2_codes"]


class TestBuild:
    def test_engine_from_sources(self, built):
        assert len(built) == VALID_CITY_COUNT
        assert built.suggest("Voronezh", 1)[0].id == VORONEZH_ID
        assert built.get(VORONEZH_ID).country.name == "Russia"
        assert built.capital("RU").id == MOSCOW_ID

    def test_metadata(self, built):
        source = built.metadata.source
        assert source.sources == {"cities": CITIES_URL, "countries": COUNTRIES_URL}
        assert source.descriptors == {"cities": '"cities-1"', "countries": '"countries-1"'}
        assert source.languages == ["ru"]

    def test_plain_file_without_member_name(self):
        server = FakeGeonames()
        server.bodies[CITIES_URL] = as_text(CITY_ROWS).encode("utf-8")
        engine = run(_build(server, make_config(cities_filename=None)))
        assert len(engine) == VALID_CITY_COUNT

    def test_missing_archive_member(self):
        with pytest.raises(SourceFatalError):
            run(_build(FakeGeonames(), make_config(cities_filename="cities15000.txt")))

    def test_failed_cities_download(self):
        server = FakeGeonames()
        server.fail[CITIES_URL] = 503
        with pytest.raises(SourceFatalError):
            run(_build(server))

    def test_failed_optional_download(self):
        server = FakeGeonames()
        server.fail[COUNTRIES_URL] = httpx.ConnectError("connection refused")
        with pytest.raises(SourceFatalError):
            run(_build(server))


class TestHasUpdates:
    def test_fresh(self, built):
        server = FakeGeonames()
        assert run(_has_updates(server, built.metadata)) is False
        assert sorted(server.requests) == [("HEAD", CITIES_URL), ("HEAD", COUNTRIES_URL)]

    def test_accepts_source_metadata(self, built):
        assert run(_has_updates(FakeGeonames(), built.metadata.source)) is False

    def test_descriptor_changed(self, built):
        server = FakeGeonames()
        server.etags[COUNTRIES_URL] = '"countries-2"'
        assert run(_has_updates(server, built.metadata)) is True

    def test_last_modified_fallback(self):
        server = FakeGeonames()
        server.last_modified_only = True
        engine = run(_build(server))
        assert engine.metadata.source.descriptors["cities"] == "Wed, 01 Oct 2025 10:00:00 GMT"
        assert run(_has_updates(server, engine.metadata)) is False

    def test_no_descriptors(self):
        server = FakeGeonames()
        assert run(_has_updates(server, EngineMetadata())) is True
        assert server.requests == []

    def test_language_set_changed(self, built):
        server = FakeGeonames()
        assert run(_has_updates(server, built.metadata, make_config(languages=("en", "ru")))) is True
        assert server.requests == []

    def test_source_added(self, built):
        config = make_config(admin1_codes_url="https://example.test/dump/admin1CodesASCII.txt")
        assert run(_has_updates(FakeGeonames(), built.metadata, config)) is True

    def test_source_moved(self, built):
        metadata = SourceMetadata(
            sources={"cities": "https://mirror.test/cities5000.zip", "countries": COUNTRIES_URL},
            descriptors=built.metadata.source.descriptors,
            languages=["ru"],
        )
        assert run(_has_updates(FakeGeonames(), metadata)) is True

    def test_http_error_status(self, built):
        server = FakeGeonames()
        server.fail[COUNTRIES_URL] = 500
        with pytest.raises(UpdateCheckError) as exc:
            run(_has_updates(server, built.metadata))
        assert exc.value.source == "countries"
        assert exc.value.url == COUNTRIES_URL

    def test_transport_error(self, built):
        server = FakeGeonames()
        server.fail[CITIES_URL] = httpx.ConnectError("connection refused")
        with pytest.raises(UpdateCheckError) as exc:
            run(_has_updates(server, built.metadata))
        assert exc.value.source == "cities"

    def test_timeout(self, built):
        server = FakeGeonames()
        server.fail[CITIES_URL] = httpx.ReadTimeout("timed out")
        with pytest.raises(UpdateCheckError):
            run(_has_updates(server, built.metadata))

    def test_failure_waits_for_other_sources(self, built):
        server = FakeGeonames()
        server.fail[CITIES_URL] = 500
        answered = []

        async def slow_countries(request: httpx.Request) -> httpx.Response:
            if str(request.url) == COUNTRIES_URL:
                await asyncio.sleep(0.2)
            response = server(request)
            answered.append(str(request.url))
            return response

        async def check():
            async with httpx.AsyncClient(transport=httpx.MockTransport(slow_countries)) as client:
                updater = IndexUpdater(make_config(), client=client)
                with pytest.raises(UpdateCheckError) as exc:
                    await updater.has_updates(built.metadata)
                pending = [t for t in asyncio.all_tasks() if t is not asyncio.current_task()]
                return exc.value, pending

        error, pending = run(check())
        assert error.source == "cities"
        assert pending == []
        assert sorted(answered) == [CITIES_URL, COUNTRIES_URL]


class TestRebuildCoordinator:
    async def _rebuild(self, server, holder, path, force=False) -> bool:
        async with server.client() as client:
            updater = IndexUpdater(make_config(), client=client)
            return await RebuildCoordinator(holder, updater, path).rebuild(force=force)

    def test_up_to_date(self, tmp_path, built):
        holder = SnapshotHolder(built)
        path = tmp_path / "index.bin"
        assert run(self._rebuild(FakeGeonames(), holder, path)) is False
        assert holder.get() is built
        assert not path.exists()

    def test_stale_rebuilds_and_swaps(self, tmp_path, built):
        server = FakeGeonames()
        server.etags[CITIES_URL] = '"cities-2"'
        holder = SnapshotHolder(built)
        path = tmp_path / "index.bin"

        assert run(self._rebuild(server, holder, path)) is True
        current = holder.get()
        assert current is not built
        assert current.metadata.source.descriptors["cities"] == '"cities-2"'
        assert load_from(path) == current

    def test_empty_holder_builds(self, tmp_path):
        holder = SnapshotHolder()
        path = tmp_path / "index.bin"
        assert run(self._rebuild(FakeGeonames(), holder, path)) is True
        assert len(holder.get()) == VALID_CITY_COUNT

    def test_failure_keeps_current_snapshot(self, tmp_path, built):
        server = FakeGeonames()
        server.fail[CITIES_URL] = 500
        holder = SnapshotHolder(built)
        path = tmp_path / "index.bin"

        with pytest.raises(SourceFatalError):
            run(self._rebuild(server, holder, path, force=True))
        assert holder.get() is built
        assert not path.exists()

    def test_scheduled_job_survives_failure(self, tmp_path, built):
        async def job():
            server = FakeGeonames()
            server.fail[CITIES_URL] = httpx.ConnectError("connection refused")
            async with server.client() as client:
                updater = IndexUpdater(make_config(), client=client)
                coordinator = RebuildCoordinator(SnapshotHolder(built), updater, tmp_path / "index.bin")
                return await update_job(coordinator), coordinator.holder.get()

        rebuilt, current = run(job())
        assert rebuilt is False
        assert current is built

    def test_skips_while_another_process_rebuilds(self, tmp_path):
        server = FakeGeonames()
        holder = SnapshotHolder()
        path = tmp_path / "index.bin"

        with rebuild_lock(path) as acquired:
            assert acquired
            assert run(self._rebuild(server, holder, path, force=True)) is False
        assert holder.get() is None
        assert server.requests == []
        assert not path.exists()

        assert run(self._rebuild(server, holder, path, force=True)) is True
        assert load_from(path) == holder.get()
