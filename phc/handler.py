"""Batch submission surface: authorise, validate, probe, route results to a sink."""

import hmac
import logging

import httpx

from phc.config import PhcConfig
from phc.geoip import GeoLookup, GeoResolver, IpApiLookup, MaxMindLookup
from phc.orchestrator import process_batch
from phc.sink import BatchError, select_sink
from phc.store import CacheStore

logger = logging.getLogger(__name__)

# Timeout for geo and collector HTTP calls.
HTTP_TIMEOUT_SECONDS = 10.0


def authorize(config: PhcConfig, authorization: str | None) -> None:
    """Check the submitter's bearer token when one is configured.

    Raises:
        BatchError: With status 401 on a missing or wrong token.
    """
    if not config.auth_token:
        return
    expected = f"Bearer {config.auth_token}"
    if not hmac.compare_digest((authorization or "").encode(), expected.encode()):
        raise BatchError("Unauthorized", status=401)


def extract_batch(body: object) -> list:
    """Return the ``batch`` list from a request body.

    Raises:
        BatchError: With status 400 if the body has no ``batch`` list.
    """
    if not isinstance(body, dict) or not isinstance(body.get("batch"), list):
        raise BatchError("Missing batch", status=400)
    return body["batch"]


def build_geo_lookup(config: PhcConfig, client: httpx.AsyncClient) -> GeoLookup | None:
    """Instantiate the geo backend named by ``config.geo_provider``."""
    if config.geo_provider == "ip-api":
        return IpApiLookup(client, config.geo_api_url)
    if config.geo_provider == "maxmind":
        return MaxMindLookup(
            city_db_path=config.maxmind_city_db,
            asn_db_path=config.maxmind_asn_db,
        )
    return None


async def check_batch(
    body: object,
    config: PhcConfig,
    *,
    proxy_store: CacheStore | None,
    geo_store: CacheStore | None = None,
    authorization: str | None = None,
    client: httpx.AsyncClient | None = None,
) -> dict:
    """Handle one ``{"batch": [...]}`` submission end to end.

    Args:
        body: Decoded request body.
        config: Loaded configuration.
        proxy_store: Proxy cache; ``None`` routes results to the collector.
        geo_store: Geo cache, or ``None`` to always ask the geo backend.
        authorization: Value of the submitter's ``Authorization`` header.
        client: HTTP client to use; one is created for the call if omitted.

    Returns:
        The sink's response payload.

    Raises:
        BatchError: For unauthorised or malformed requests and for sink
            failures.
    """
    authorize(config, authorization)
    items = extract_batch(body)

    if client is None:
        async with httpx.AsyncClient(timeout=HTTP_TIMEOUT_SECONDS) as own_client:
            return await _run(items, config, proxy_store, geo_store, own_client)
    return await _run(items, config, proxy_store, geo_store, client)


async def _run(
    items: list,
    config: PhcConfig,
    proxy_store: CacheStore | None,
    geo_store: CacheStore | None,
    client: httpx.AsyncClient,
) -> dict:
    sink = select_sink(
        proxy_store,
        client,
        collector_url=config.collector_url,
        collector_token=config.collector_token,
    )
    lookup = build_geo_lookup(config, client)
    resolver = GeoResolver(
        lookup, cache=geo_store, ttl_seconds=config.geo_cache_ttl_seconds
    )
    try:
        results = await process_batch(
            items, resolver, timeout_ms=config.health_check_timeout_ms
        )
    finally:
        if isinstance(lookup, MaxMindLookup):
            lookup.close()
    logger.debug("Routing %d result(s) to %s", len(results), type(sink).__name__)
    return await sink.submit(results)
