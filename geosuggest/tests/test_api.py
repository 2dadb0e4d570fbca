"""
Tests for the HTTP layer, served from the sample index without lifespan
startup (no index file, no scheduler).
"""

from __future__ import annotations

import ipaddress

import pytest
from fastapi.testclient import TestClient

from geosuggest.api import DEFAULT_K, app
from geosuggest.engine import Engine
from geosuggest.geoip import GeoIPHit
from geosuggest.tests.sample_data import (
    LONDON_CA_ID,
    LONDON_GB_ID,
    MOSCOW_ID,
    RUSSIA_ID,
    VALID_CITY_COUNT,
    VORONEZH_ID,
    as_text,
    city_row,
)
from geosuggest.updater import SnapshotHolder


class StubLocator:
    def __init__(self, hits: dict[str, GeoIPHit]):
        self.hits = hits

    def lookup(self, ip: str):
        ipaddress.ip_address(ip)
        return self.hits.get(ip)

    def close(self) -> None:
        pass


@pytest.fixture(scope="module")
def client(engine):
    previous = app.state.holder
    app.state.holder = SnapshotHolder(engine)
    yield TestClient(app)
    app.state.holder = previous


@pytest.fixture
def geoip():
    app.state.geoip = StubLocator({
        "81.2.69.142": GeoIPHit("81.2.69.142", VORONEZH_ID, 51.67, 39.18),
        "2.2.2.2": GeoIPHit("2.2.2.2", None, 55.7, 37.6),
    })
    yield app.state.geoip
    app.state.geoip = None


class TestGet:
    def test_city(self, client):
        resp = client.get("/api/city/get", params={"id": VORONEZH_ID})
        assert resp.status_code == 200
        body = resp.json()
        city = body["city"]
        assert city["id"] == VORONEZH_ID
        assert city["name"] == "Voronezh"
        assert city["country"] == {"id": RUSSIA_ID, "code": "RU", "name": "Russia"}
        assert city["admin_division"]["code"] == "RU.86"
        assert city["admin2_division"] is None
        assert city["population"] == 848752
        assert city["timezone"] == "Europe/Moscow"
        assert body["time"] >= 0

    def test_localized(self, client):
        city = client.get("/api/city/get", params={"id": VORONEZH_ID, "lang": "ru"}).json()["city"]
        assert city["name"] == "Воронеж"
        assert city["country"]["name"] == "Россия"
        assert city["admin_division"]["name"] == "Воронежская область"

    def test_unknown_language_falls_back(self, client):
        city = client.get("/api/city/get", params={"id": VORONEZH_ID, "lang": "ja"}).json()["city"]
        assert city["name"] == "Voronezh"
        assert city["country"]["name"] == "Russia"

    def test_not_found(self, client):
        resp = client.get("/api/city/get", params={"id": 1})
        assert resp.status_code == 200
        assert resp.json()["city"] is None

    def test_missing_id(self, client):
        assert client.get("/api/city/get").status_code == 422


class TestCapital:
    def test_capital(self, client):
        city = client.get("/api/city/capital", params={"country_code": "gb"}).json()["city"]
        assert city["id"] == LONDON_GB_ID
        assert city["admin2_division"]["name"] == "Greater London"

    def test_no_capital(self, client):
        assert client.get("/api/city/capital", params={"country_code": "CA"}).json()["city"] is None

    def test_bad_code(self, client):
        assert client.get("/api/city/capital", params={"country_code": "RUS"}).status_code == 422


class TestSuggest:
    def test_suggest(self, client):
        items = client.get("/api/city/suggest", params={"pattern": "London"}).json()["items"]
        assert [i["id"] for i in items] == [LONDON_GB_ID, LONDON_CA_ID]

    def test_limit(self, client):
        items = client.get("/api/city/suggest", params={"pattern": "London", "limit": 1}).json()["items"]
        assert [i["id"] for i in items] == [LONDON_GB_ID]

    def test_countries(self, client):
        params = {"pattern": "London", "countries": "CA,US"}
        items = client.get("/api/city/suggest", params=params).json()["items"]
        assert [i["id"] for i in items] == [LONDON_CA_ID]

    def test_localized(self, client):
        params = {"pattern": "Londres", "lang": "fr"}
        items = client.get("/api/city/suggest", params=params).json()["items"]
        assert items[0]["id"] == LONDON_GB_ID
        assert items[0]["name"] == "Londres"

    def test_min_score(self, client):
        params = {"pattern": "Voronej", "min_score": 0.99}
        assert client.get("/api/city/suggest", params=params).json()["items"] == []
        assert client.get("/api/city/suggest", params={"pattern": "Voronej", "min_score": 2}).status_code == 422

    def test_empty_pattern(self, client):
        assert client.get("/api/city/suggest", params={"pattern": " "}).json()["items"] == []


class TestReverse:
    def test_reverse(self, client):
        params = {"lat": 51.67204, "lng": 39.1843, "limit": 1}
        (item,) = client.get("/api/city/reverse", params=params).json()["items"]
        assert item["city"]["id"] == VORONEZH_ID
        assert item["distance"] == pytest.approx(0.0, abs=1e-3)

    def test_default_limit(self, client):
        items = client.get("/api/city/reverse", params={"lat": 0, "lng": 0}).json()["items"]
        assert len(items) == VALID_CITY_COUNT
        scores = [i["score"] for i in items]
        assert scores == sorted(scores)

    def test_population_coefficient(self, client):
        params = {"lat": 52.5, "lng": 39.0, "limit": 1, "k": 0.0001}
        (item,) = client.get("/api/city/reverse", params=params).json()["items"]
        assert item["city"]["id"] == MOSCOW_ID

    def test_countries(self, client):
        params = {"lat": 51.5, "lng": -0.12, "limit": 1, "countries": "CA"}
        (item,) = client.get("/api/city/reverse", params=params).json()["items"]
        assert item["city"]["id"] == LONDON_CA_ID

    @pytest.mark.parametrize("lat, lng", [(91, 0), (0, 181), ("north", 0)])
    def test_invalid_coordinates(self, client, lat, lng):
        assert client.get("/api/city/reverse", params={"lat": lat, "lng": lng}).status_code == 422


class TestGeoIP:
    def test_not_configured(self, client):
        assert client.get("/api/city/geoip2", params={"ip": "81.2.69.142"}).status_code == 501

    def test_by_geoname_id(self, client, geoip):
        body = client.get("/api/city/geoip2", params={"ip": "81.2.69.142", "lang": "ru"}).json()
        assert body["city"]["id"] == VORONEZH_ID
        assert body["city"]["name"] == "Воронеж"
        assert body["for_ip"] == "81.2.69.142"

    def test_by_coordinates(self, client, geoip):
        body = client.get("/api/city/geoip2", params={"ip": "2.2.2.2"}).json()
        assert body["city"]["id"] == MOSCOW_ID

    def test_unknown_address(self, client, geoip):
        body = client.get("/api/city/geoip2", params={"ip": "10.0.0.1"}).json()
        assert body["city"] is None
        assert body["for_ip"] == "10.0.0.1"

    def test_forwarded_for_header(self, client, geoip):
        resp = client.get("/api/city/geoip2", headers={"X-Forwarded-For": "81.2.69.142, 10.0.0.1"})
        assert resp.json()["city"]["id"] == VORONEZH_ID

    def test_forwarded_header(self, client, geoip):
        resp = client.get("/api/city/geoip2", headers={"Forwarded": "for=2.2.2.2;proto=https"})
        assert resp.json()["for_ip"] == "2.2.2.2"

    def test_invalid_address(self, client, geoip):
        assert client.get("/api/city/geoip2", params={"ip": "not-an-ip"}).status_code == 400


class TestHealth:
    def test_health(self, client, engine):
        body = client.get("/health").json()
        assert body["status"] == "ok"
        assert body["cities"] == VALID_CITY_COUNT
        assert body["countries"] == 3
        assert body["version"] == engine.metadata.version

    def test_no_index(self, client):
        previous = app.state.holder
        app.state.holder = SnapshotHolder()
        try:
            assert client.get("/health").json()["status"] == "unavailable"
            assert client.get("/api/city/get", params={"id": VORONEZH_ID}).status_code == 503
        finally:
            app.state.holder = previous


class TestPopulationCorrection:
    @pytest.fixture
    def towns(self):
        engine = Engine.from_contents(as_text([
            city_row(9100001, "Village", 50.1, 30.0, "UA", 1000, timezone="Europe/Kyiv"),
            city_row(9100002, "Metropolis", 50.2, 30.0, "UA", 10_000_000, timezone="Europe/Kyiv"),
        ]))
        previous = app.state.holder
        app.state.holder = SnapshotHolder(engine)
        yield TestClient(app)
        app.state.holder = previous

    def test_big_city_beats_closer_village(self, towns):
        items = towns.get("/api/city/reverse", params={"lat": 50.0, "lng": 30.0}).json()["items"]
        assert [i["city"]["name"] for i in items] == ["Metropolis", "Village"]
        assert items[0]["distance"] > items[1]["distance"]
        assert items[0]["score"] == pytest.approx(items[0]["distance"] - DEFAULT_K * 10_000_000)

    def test_without_correction(self, towns):
        params = {"lat": 50.0, "lng": 30.0, "k": 0}
        items = towns.get("/api/city/reverse", params=params).json()["items"]
        assert [i["city"]["name"] for i in items] == ["Village", "Metropolis"]
