"""Geo resolution: cache-first lookup against ip-api.com or local MaxMind databases."""

import json
import logging
from typing import Protocol

import geoip2.database
import geoip2.errors
import httpx

from phc.models import GeoInfo
from phc.store import CacheStore

logger = logging.getLogger(__name__)

DEFAULT_IP_API_URL = "http://ip-api.com/json"
GEO_FIELDS = "status,country,countryCode,isp,org,as,city"
GEO_TTL_SECONDS = 86400


class GeoLookup(Protocol):
    """A geolocation backend answering in the ip-api.com payload shape.

    ``lookup`` returns a dict with ``status``, ``country``, ``countryCode``,
    ``isp``, ``org``, ``as`` and ``city``, or ``None`` when the service gave
    no usable reply.
    """

    async def lookup(self, ip: str) -> dict | None: ...


class IpApiLookup:
    """Query the ip-api.com JSON endpoint (or a compatible mirror).

    Args:
        client: Shared async HTTP client; its timeout bounds each call.
        base_url: Endpoint prefix; the IP is appended as a path segment.
    """

    def __init__(
        self, client: httpx.AsyncClient, base_url: str = DEFAULT_IP_API_URL
    ) -> None:
        self._client = client
        self._base_url = base_url.rstrip("/")

    async def lookup(self, ip: str) -> dict | None:
        resp = await self._client.get(
            f"{self._base_url}/{ip}", params={"fields": GEO_FIELDS}
        )
        if resp.status_code != 200:
            logger.debug("Geo service returned HTTP %d for %s", resp.status_code, ip)
            return None
        payload = resp.json()
        return payload if isinstance(payload, dict) else None


class MaxMindLookup:
    """Answer lookups from MaxMind GeoLite2 database files.

    The reader is tolerant of missing database files: if a path is ``None``
    or points to a non-existent file, the corresponding half of the answer
    is simply left empty.

    Args:
        city_db_path: Path to ``GeoLite2-City.mmdb``, or ``None``.
        asn_db_path: Path to ``GeoLite2-ASN.mmdb``, or ``None``.
    """

    def __init__(
        self,
        city_db_path: str | None = None,
        asn_db_path: str | None = None,
    ) -> None:
        self._city_reader: geoip2.database.Reader | None = None
        self._asn_reader: geoip2.database.Reader | None = None

        if city_db_path:
            try:
                self._city_reader = geoip2.database.Reader(city_db_path)
                logger.debug("Opened GeoLite2-City DB: %s", city_db_path)
            except FileNotFoundError:
                logger.warning(
                    "GeoLite2-City DB not found at %s; "
                    "country/city enrichment disabled",
                    city_db_path,
                )

        if asn_db_path:
            try:
                self._asn_reader = geoip2.database.Reader(asn_db_path)
                logger.debug("Opened GeoLite2-ASN DB: %s", asn_db_path)
            except FileNotFoundError:
                logger.warning(
                    "GeoLite2-ASN DB not found at %s; ISP enrichment disabled",
                    asn_db_path,
                )

    def close(self) -> None:
        """Close underlying database readers."""
        if self._city_reader:
            self._city_reader.close()
        if self._asn_reader:
            self._asn_reader.close()

    async def lookup(self, ip: str) -> dict | None:
        payload: dict = {}

        if self._city_reader:
            try:
                resp = self._city_reader.city(ip)
            except (geoip2.errors.AddressNotFoundError, ValueError):
                logger.debug("City lookup failed for %s", ip)
            else:
                payload["country"] = resp.country.name
                payload["countryCode"] = resp.country.iso_code
                payload["city"] = resp.city.name

        if self._asn_reader:
            try:
                resp = self._asn_reader.asn(ip)
            except (geoip2.errors.AddressNotFoundError, ValueError):
                logger.debug("ASN lookup failed for %s", ip)
            else:
                org = resp.autonomous_system_organization
                payload["isp"] = org
                payload["org"] = org
                if resp.autonomous_system_number is not None:
                    payload["as"] = f"AS{resp.autonomous_system_number} {org or ''}".strip()

        payload["status"] = "success" if payload else "fail"
        return payload


def normalize_geo(payload: dict | None) -> GeoInfo | None:
    """Turn a lookup payload into ``GeoInfo``.

    Only an explicit ``status == "success"`` is trusted.  The country code is
    taken from ``countryCode`` when present, otherwise from the first two
    letters of the full country name.  A payload with a non-string field is
    treated as malformed and yields ``None``.
    """
    if not isinstance(payload, dict) or payload.get("status") != "success":
        return None
    fields = ("country", "countryCode", "isp", "org", "as", "city")
    if any(not isinstance(payload.get(f), (str, type(None))) for f in fields):
        return None

    country = payload.get("countryCode")
    if not country and payload.get("country"):
        country = payload["country"][:2]

    return GeoInfo(
        country=country or None,
        isp=payload.get("isp") or payload.get("org") or None,
        asn=payload.get("as") or None,
        city=payload.get("city") or None,
    )


class GeoResolver:
    """Resolve ``GeoInfo`` for an endpoint, cache first.

    Lookup order is the endpoint key, then the bare IP, then the geo
    backend.  Backend answers are written back under both keys.  Nothing in
    here raises: every failure resolves to ``None``.

    Args:
        lookup: Geo backend, or ``None`` to run on cache and hints only.
        cache: Geo cache store, or ``None`` when caching is unavailable.
        ttl_seconds: Lifetime of cache entries written back.
    """

    def __init__(
        self,
        lookup: GeoLookup | None,
        cache: CacheStore | None = None,
        ttl_seconds: int = GEO_TTL_SECONDS,
    ) -> None:
        self._lookup = lookup
        self._cache = cache
        self._ttl_seconds = ttl_seconds

    async def resolve(self, ip: str, endpoint_key: str) -> GeoInfo | None:
        for cache_key in (endpoint_key, ip):
            cached = await self._read_cache(cache_key)
            if cached is not None:
                return cached

        geo = await self._lookup_remote(ip)
        if geo is not None:
            await self._write_cache(endpoint_key, geo)
            await self._write_cache(ip, geo)
        return geo

    async def _read_cache(self, key: str) -> GeoInfo | None:
        if self._cache is None:
            return None
        try:
            raw = await self._cache.get(key)
            if raw is None:
                return None
            return GeoInfo.from_dict(json.loads(raw))
        except Exception as exc:  # noqa: BLE001
            logger.debug("Ignoring unreadable geo cache entry %s: %s", key, exc)
            return None

    async def _lookup_remote(self, ip: str) -> GeoInfo | None:
        if self._lookup is None:
            return None
        try:
            payload = await self._lookup.lookup(ip)
        except (httpx.HTTPError, ValueError) as exc:
            logger.debug("Geo lookup failed for %s: %s", ip, exc)
            return None
        geo = normalize_geo(payload)
        if geo is None:
            logger.debug("Geo lookup for %s was not successful", ip)
        return geo

    async def _write_cache(self, key: str, geo: GeoInfo) -> None:
        if self._cache is None:
            return
        try:
            await self._cache.put(
                key, json.dumps(geo.to_dict()), ttl_seconds=self._ttl_seconds
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning("Geo cache write failed for %s: %s", key, exc)
