"""Batch fan-out: one geo + TCP pipeline per endpoint, settled independently."""

import asyncio
import logging
import time

from phc.geoip import GeoResolver
from phc.models import ItemError, ProbeRecord, parse_endpoint
from phc.prober import DEFAULT_TIMEOUT_MS, probe

logger = logging.getLogger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


async def process_one(
    item: object,
    resolver: GeoResolver,
    timeout_ms: int = DEFAULT_TIMEOUT_MS,
) -> ProbeRecord:
    """Run the geo + reachability pipeline for one batch item.

    Raises:
        ValueError: If *item* cannot be parsed as an endpoint.
    """
    endpoint = parse_endpoint(item)
    key = endpoint.key

    geo = await resolver.resolve(endpoint.ip, key)
    outcome = await probe(endpoint.ip, endpoint.port, timeout_ms)

    if geo is not None and geo.country:
        country = geo.country.upper()
    elif endpoint.country:
        country = endpoint.country.upper()
    else:
        country = None

    if geo is not None and geo.isp:
        isp = geo.isp
    else:
        isp = endpoint.isp or None

    return ProbeRecord(
        proxy=key,
        status=outcome.status,
        latency=outcome.latency,
        country=country,
        isp=isp,
        last_checked=_now_ms(),
    )


async def process_batch(
    items: list,
    resolver: GeoResolver,
    timeout_ms: int = DEFAULT_TIMEOUT_MS,
) -> list[ProbeRecord | ItemError]:
    """Probe every item concurrently and wait for all of them to settle.

    One failing item never cancels its siblings: its slot holds an
    ``ItemError`` instead of a ``ProbeRecord``.

    Args:
        items: ``"ip:port"`` strings or ``{"ip", "port", "country", "isp"}``
            mappings.
        resolver: Geo resolver shared by the whole batch.
        timeout_ms: Per-endpoint TCP connect timeout.

    Returns:
        One entry per input item, in input order.
    """
    logger.info("Checking batch of %d endpoint(s)", len(items))
    settled = await asyncio.gather(
        *(process_one(item, resolver, timeout_ms) for item in items),
        return_exceptions=True,
    )

    results: list[ProbeRecord | ItemError] = []
    for item, outcome in zip(items, settled):
        if isinstance(outcome, BaseException):
            logger.warning("Batch item %r failed: %s", item, outcome)
            results.append(ItemError(error=str(outcome) or type(outcome).__name__))
        else:
            results.append(outcome)

    alive = sum(1 for r in results if isinstance(r, ProbeRecord) and r.status == "alive")
    logger.info(
        "Batch done: %d alive, %d dead, %d error(s)",
        alive,
        sum(1 for r in results if isinstance(r, ProbeRecord)) - alive,
        sum(1 for r in results if isinstance(r, ItemError)),
    )
    return results
