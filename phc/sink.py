"""Result sinks: direct cache store with summary aggregation, or remote collector."""

import json
import logging

import httpx

from phc.aggregator import update_summary
from phc.models import ItemError, ProbeRecord
from phc.store import CacheStore

logger = logging.getLogger(__name__)


class BatchError(Exception):
    """A batch-level failure reported to the submitter as one error response.

    Attributes:
        status: HTTP-style status code for the response.
    """

    def __init__(self, message: str, status: int = 400) -> None:
        super().__init__(message)
        self.status = status


def results_to_dicts(results: list[ProbeRecord | ItemError]) -> list[dict]:
    return [r.to_dict() for r in results]


class StoreSink:
    """Write each record into the proxy cache and fold it into the summary.

    Args:
        store: Proxy cache store; also holds the summary entry.
    """

    def __init__(self, store: CacheStore) -> None:
        self._store = store

    async def submit(self, results: list[ProbeRecord | ItemError]) -> dict:
        for record in results:
            if isinstance(record, ProbeRecord):
                await self._store_record(record)
        return {
            "ok": True,
            "stored": len(results),
            "results": results_to_dicts(results),
        }

    async def _store_record(self, record: ProbeRecord) -> None:
        try:
            previous_raw = await self._store.get(record.proxy)
            await self._store.put(record.proxy, json.dumps(record.to_dict()))
        except Exception as exc:  # noqa: BLE001
            logger.warning("Store write failed for %s: %s", record.proxy, exc)
            return

        try:
            previous = (
                ProbeRecord.from_dict(json.loads(previous_raw)) if previous_raw else None
            )
        except ValueError as exc:
            logger.warning(
                "Previous record for %s is unreadable; summary not updated: %s",
                record.proxy,
                exc,
            )
            return

        await update_summary(self._store, previous, record)


class CollectorSink:
    """Forward results to a remote collector over HTTP.

    Delivery is attempted once; there is no retry.

    Args:
        client: Shared async HTTP client.
        url: Collector endpoint accepting ``{"results": [...]}``.
        token: Bearer token for the collector.
    """

    def __init__(self, client: httpx.AsyncClient, url: str, token: str) -> None:
        self._client = client
        self._url = url
        self._token = token

    async def submit(self, results: list[ProbeRecord | ItemError]) -> dict:
        try:
            resp = await self._client.post(
                self._url,
                json={"results": results_to_dicts(results)},
                headers={"Authorization": f"Bearer {self._token}"},
            )
        except httpx.HTTPError as exc:
            raise BatchError(f"Callback error: {exc}", status=500) from exc

        if not resp.is_success:
            raise BatchError(f"Callback failed: {resp.text}", status=502)

        logger.info("Posted %d result(s) to collector", len(results))
        return {"ok": True, "posted": len(results)}


def select_sink(
    store: CacheStore | None,
    client: httpx.AsyncClient,
    collector_url: str | None = None,
    collector_token: str | None = None,
) -> StoreSink | CollectorSink:
    """Pick the sink: the direct store when available, else the collector.

    Raises:
        BatchError: If neither a store nor a fully configured collector
            is available.
    """
    if store is not None:
        return StoreSink(store)
    if not collector_url or not collector_token:
        raise BatchError("No collector configured", status=500)
    return CollectorSink(client, collector_url, collector_token)
