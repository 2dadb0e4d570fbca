"""
Nearest-city lookup over a balanced k-d tree.

Coordinates are embedded on the unit sphere (x, y, z) before indexing.
Straight-line (chord) distance between two unit vectors is monotonic in
great-circle distance, so Euclidean nearest-neighbour order in 3D is the
true geographic order, including near the poles and across the antimeridian
where a flat lat/lon metric falls apart.
"""

from __future__ import annotations

import heapq
import math
from dataclasses import dataclass
from typing import Iterable, Optional, Sequence

import numpy as np

EARTH_RADIUS_KM = 6371.0088
LEAF_SIZE = 16


def to_unit_vectors(latitudes, longitudes) -> np.ndarray:
    """(n,) latitude/longitude degrees -> (n, 3) unit vectors."""
    lat = np.radians(np.asarray(latitudes, dtype=np.float64))
    lon = np.radians(np.asarray(longitudes, dtype=np.float64))
    cos_lat = np.cos(lat)
    return np.column_stack((cos_lat * np.cos(lon), cos_lat * np.sin(lon), np.sin(lat)))


def chord_to_km(squared_chord: float) -> float:
    chord = math.sqrt(max(squared_chord, 0.0))
    return 2.0 * math.asin(min(1.0, chord / 2.0)) * EARTH_RADIUS_KM


def validate_coordinates(latitude: float, longitude: float) -> None:
    if not (math.isfinite(latitude) and math.isfinite(longitude)):
        raise ValueError(f"coordinates must be finite, got ({latitude}, {longitude})")
    if not -90.0 <= latitude <= 90.0:
        raise ValueError(f"latitude {latitude} out of range [-90, 90]")
    if not -180.0 <= longitude <= 180.0:
        raise ValueError(f"longitude {longitude} out of range [-180, 180]")


@dataclass(frozen=True)
class Neighbor:
    city_id: int
    distance_km: float


class SpatialIndex:
    """
    Immutable k-d tree. Points are reordered at build time so every leaf
    is a contiguous slice of the point arrays.
    """

    def __init__(
        self,
        ids: Sequence[int],
        latitudes: Sequence[float],
        longitudes: Sequence[float],
        country_codes: Optional[Sequence[str]] = None,
        populations: Optional[Sequence[int]] = None,
    ):
        n = len(ids)
        ids_arr = np.asarray(ids, dtype=np.int64)
        # Sorting by id first makes the tree layout independent of input order
        order = np.argsort(ids_arr, kind="stable")
        points = to_unit_vectors(latitudes, longitudes)[order] if n else np.zeros((0, 3))
        countries = np.asarray(country_codes if country_codes is not None else [""] * n, dtype=str)
        pops = np.asarray(populations if populations is not None else [0] * n, dtype=np.int64)

        self._perm = np.arange(n)
        self._dims: list[int] = []
        self._splits: list[float] = []
        self._children: list[tuple[int, int]] = []
        self._ranges: list[tuple[int, int]] = []
        self._points_for_build = points
        if n:
            self._build(0, n)

        self._points = points[self._perm]
        self._ids = ids_arr[order][self._perm]
        self._countries = countries[order][self._perm] if n else countries
        self._populations = pops[order][self._perm] if n else pops
        del self._points_for_build

    @classmethod
    def from_catalog(cls, catalog) -> "SpatialIndex":
        cities = list(catalog.cities.values())
        return cls(
            ids=[c.id for c in cities],
            latitudes=[c.latitude for c in cities],
            longitudes=[c.longitude for c in cities],
            country_codes=[c.country_code for c in cities],
            populations=[c.population for c in cities],
        )

    def __len__(self) -> int:
        return len(self._ids)

    # ── Build ─────────────────────────────────────────────────────────

    def _build(self, start: int, end: int) -> int:
        node = len(self._dims)
        self._dims.append(-1)
        self._splits.append(0.0)
        self._children.append((-1, -1))
        self._ranges.append((start, end))

        if end - start <= LEAF_SIZE:
            return node

        idx = self._perm[start:end]
        pts = self._points_for_build[idx]
        dim = int(np.argmax(pts.max(axis=0) - pts.min(axis=0)))
        mid = (end - start) // 2
        part = np.argpartition(pts[:, dim], mid)
        self._perm[start:end] = idx[part]

        self._dims[node] = dim
        self._splits[node] = float(self._points_for_build[self._perm[start + mid], dim])
        left = self._build(start, start + mid)
        right = self._build(start + mid, end)
        self._children[node] = (left, right)
        return node

    # ── Query ─────────────────────────────────────────────────────────

    def _mask(
        self, countries: Optional[Iterable[str]], min_population: Optional[int]
    ) -> Optional[np.ndarray]:
        mask = None
        if countries is not None:
            allowed = sorted({c.upper() for c in countries})
            mask = np.isin(self._countries, allowed)
        if min_population:
            pop_mask = self._populations >= min_population
            mask = pop_mask if mask is None else mask & pop_mask
        return mask

    def nearest(
        self,
        latitude: float,
        longitude: float,
        k: int = 1,
        countries: Optional[Iterable[str]] = None,
        min_population: Optional[int] = None,
    ) -> list[Neighbor]:
        """
        Up to ``k`` nearest points passing the filters, nearest first.
        Equal distances are ordered by ascending city id.
        """
        validate_coordinates(latitude, longitude)
        if k <= 0 or not len(self._ids):
            return []

        query = to_unit_vectors([latitude], [longitude])[0]
        mask = self._mask(countries, min_population)
        # max-heap of the k best as (-d2, -id)
        heap: list[tuple[float, int]] = []

        def visit(node: int) -> None:
            dim = self._dims[node]
            if dim < 0:
                start, end = self._ranges[node]
                diff = self._points[start:end] - query
                d2 = np.einsum("ij,ij->i", diff, diff)
                candidates = np.arange(start, end)
                if mask is not None:
                    keep = mask[start:end]
                    candidates, d2 = candidates[keep], d2[keep]
                for pos, dist in zip(candidates.tolist(), d2.tolist()):
                    item = (-dist, -int(self._ids[pos]))
                    if len(heap) < k:
                        heapq.heappush(heap, item)
                    elif item > heap[0]:
                        heapq.heapreplace(heap, item)
                return

            delta = float(query[dim]) - self._splits[node]
            left, right = self._children[node]
            near, far = (left, right) if delta < 0 else (right, left)
            visit(near)
            if len(heap) < k or delta * delta <= -heap[0][0]:
                visit(far)

        visit(0)

        best = sorted((-neg_d2, -neg_id) for neg_d2, neg_id in heap)
        return [Neighbor(city_id=city_id, distance_km=chord_to_km(d2)) for d2, city_id in best]
