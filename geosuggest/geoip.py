"""
IP -> city lookup backed by a MaxMind GeoIP2 / GeoLite2 City database.
"""

from __future__ import annotations

import ipaddress
import logging
from dataclasses import dataclass
from typing import Optional

import geoip2.database
import geoip2.errors

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GeoIPHit:
    ip: str
    # GeoNames id of the city, when the database knows it
    geoname_id: Optional[int]
    latitude: Optional[float]
    longitude: Optional[float]


class GeoIPLocator:
    def __init__(self, path: str):
        self._reader = geoip2.database.Reader(path)
        logger.info("GeoIP2 database loaded from %s", path)

    def close(self) -> None:
        self._reader.close()

    def lookup(self, ip: str) -> Optional[GeoIPHit]:
        """
        Raises ValueError for a malformed address; an address the database
        does not know returns None.
        """
        addr = str(ipaddress.ip_address(ip.strip()))
        try:
            resp = self._reader.city(addr)
        except geoip2.errors.AddressNotFoundError:
            logger.debug("Address %s not found in GeoIP2 database", addr)
            return None
        return GeoIPHit(
            ip=addr,
            geoname_id=resp.city.geoname_id,
            latitude=resp.location.latitude,
            longitude=resp.location.longitude,
        )
