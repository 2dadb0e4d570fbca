"""Module fixtures built from the sample GeoNames extract."""

from __future__ import annotations

import pytest

from geosuggest.catalog import build_catalog
from geosuggest.engine import Engine
from geosuggest.tests.sample_data import (
    ADMIN1_ROWS,
    ADMIN2_ROWS,
    CITY_ROWS,
    COUNTRY_ROWS,
    NAME_ROWS,
    as_text,
)


@pytest.fixture(scope="module")
def source_texts() -> dict[str, str]:
    return {
        "cities": as_text(CITY_ROWS),
        "names": as_text(NAME_ROWS),
        "countries": as_text(COUNTRY_ROWS),
        "admin1_codes": as_text(ADMIN1_ROWS),
        "admin2_codes": as_text(ADMIN2_ROWS),
    }


@pytest.fixture(scope="module")
def catalog(source_texts):
    return build_catalog(**source_texts)


@pytest.fixture(scope="module")
def engine(source_texts) -> Engine:
    return Engine.from_contents(**source_texts)


@pytest.fixture
def source_files(tmp_path, source_texts) -> dict[str, str]:
    paths = {}
    for name, text in source_texts.items():
        path = tmp_path / f"{name}.txt"
        path.write_text(text, encoding="utf-8")
        paths[name] = str(path)
    return paths
