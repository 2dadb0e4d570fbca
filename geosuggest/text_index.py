"""
Approximate name search over every (city, name variant) pair.

Scoring:
  - exact match of the normalized pattern        -> 1.0
  - variant starts with the pattern              -> at least PREFIX_SCORE
  - anything else                                -> Jaro-Winkler similarity

Entries are bucketed by their first character and only the pattern's bucket
is scored. Country, population and language filters run as numpy masks
over the bucket before any string comparison happens.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Optional

import numpy as np
from rapidfuzz import process
from rapidfuzz.distance import JaroWinkler

logger = logging.getLogger(__name__)

DEFAULT_MIN_SCORE = 0.8
PREFIX_SCORE = 0.99


def normalize(value: str) -> str:
    """Case-fold, trim and collapse inner whitespace."""
    return " ".join(value.casefold().split())


@dataclass(frozen=True)
class TextIndexEntry:
    value: str
    city_id: int
    lang: str


@dataclass(frozen=True)
class TextMatch:
    city_id: int
    score: float
    value: str
    lang: str


class _Bucket:
    __slots__ = ("values", "city_ids", "langs", "countries", "populations")

    def __init__(self, entries: list[TextIndexEntry], countries: dict, populations: dict):
        self.values = np.array([e.value for e in entries], dtype=object)
        self.city_ids = np.array([e.city_id for e in entries], dtype=np.int64)
        self.langs = np.array([e.lang for e in entries], dtype=str)
        self.countries = np.array([countries.get(e.city_id, "") for e in entries], dtype=str)
        self.populations = np.array([populations.get(e.city_id, 0) for e in entries], dtype=np.int64)


class TextIndex:
    def __init__(
        self,
        entries: Iterable[TextIndexEntry],
        countries: Optional[dict[int, str]] = None,
        populations: Optional[dict[int, int]] = None,
    ):
        countries = countries or {}
        populations = populations or {}

        grouped: dict[str, list[TextIndexEntry]] = {}
        total = 0
        for entry in entries:
            if not entry.value:
                continue
            grouped.setdefault(entry.value[0], []).append(entry)
            total += 1

        self._size = total
        self._buckets = {
            key: _Bucket(items, countries, populations) for key, items in grouped.items()
        }
        logger.debug("Text index: %d entries in %d buckets", total, len(self._buckets))

    @classmethod
    def from_catalog(cls, catalog) -> "TextIndex":
        entries: list[TextIndexEntry] = []
        for city in catalog.cities.values():
            seen: set[str] = set()
            for lang, raw in city.variants():
                value = normalize(raw)
                if value and value not in seen:
                    seen.add(value)
                    entries.append(TextIndexEntry(value=value, city_id=city.id, lang=lang))
        return cls(
            entries,
            countries={c.id: c.country_code for c in catalog.cities.values()},
            populations={c.id: c.population for c in catalog.cities.values()},
        )

    def __len__(self) -> int:
        return self._size

    def search(
        self,
        pattern: str,
        limit: int,
        min_score: Optional[float] = None,
        countries: Optional[Iterable[str]] = None,
        min_population: Optional[int] = None,
        languages: Optional[Iterable[str]] = None,
    ) -> list[TextMatch]:
        """
        Best variant per city, ordered by score desc, population desc, id asc.
        """
        query = normalize(pattern)
        if not query or limit <= 0:
            return []
        bucket = self._buckets.get(query[0])
        if bucket is None:
            return []

        threshold = DEFAULT_MIN_SCORE if min_score is None else min_score

        mask = np.ones(len(bucket.values), dtype=bool)
        if countries is not None:
            mask &= np.isin(bucket.countries, sorted({c.upper() for c in countries}))
        if min_population:
            mask &= bucket.populations >= min_population
        if languages is not None:
            if isinstance(languages, str):
                languages = [languages]
            # untagged variants (canonical, ascii) always take part
            mask &= np.isin(bucket.langs, sorted(set(languages) | {""}))
        positions = np.flatnonzero(mask)
        if not len(positions):
            return []

        choices = bucket.values[positions].tolist()
        scores = process.cdist(
            [query], choices, scorer=JaroWinkler.normalized_similarity, dtype=np.float64
        )[0]

        candidates = []
        for pos, value, score in zip(positions.tolist(), choices, scores.tolist()):
            if value == query:
                score = 1.0
            elif value.startswith(query):
                score = max(score, PREFIX_SCORE)
            if score >= threshold:
                candidates.append((-score, -int(bucket.populations[pos]), int(bucket.city_ids[pos]), pos))

        candidates.sort()

        matches: list[TextMatch] = []
        seen: set[int] = set()
        for neg_score, _, city_id, pos in candidates:
            if city_id in seen:
                continue
            seen.add(city_id)
            matches.append(TextMatch(
                city_id=city_id,
                score=-neg_score,
                value=bucket.values[pos],
                lang=str(bucket.langs[pos]),
            ))
            if len(matches) >= limit:
                break
        return matches
