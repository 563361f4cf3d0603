"""Summary aggregation: incremental alive/dead histogram, global and per country."""

import json
import logging

from phc.models import ProbeRecord, Summary
from phc.store import CacheStore, SqliteStore

logger = logging.getLogger(__name__)

SUMMARY_KEY = "_HEALTH_SUMMARY"


def _counter(record: ProbeRecord) -> str:
    return "alive" if record.status == "alive" else "dead"


def _remove(summary: Summary, record: ProbeRecord) -> None:
    counter = _counter(record)
    setattr(summary, counter, max(0, getattr(summary, counter) - 1))
    if record.country:
        bucket = summary.countries.setdefault(
            record.country.upper(), {"alive": 0, "dead": 0}
        )
        bucket[counter] = max(0, bucket.get(counter, 0) - 1)


def _add(summary: Summary, record: ProbeRecord) -> None:
    counter = _counter(record)
    setattr(summary, counter, getattr(summary, counter) + 1)
    if record.country:
        bucket = summary.countries.setdefault(
            record.country.upper(), {"alive": 0, "dead": 0}
        )
        bucket[counter] = bucket.get(counter, 0) + 1


def apply_delta(
    summary: Summary,
    previous: ProbeRecord | None,
    current: ProbeRecord,
) -> Summary:
    """Replace *previous*'s contribution to *summary* with *current*'s.

    Decrements are floored at zero.  ``total`` is left exactly as stored;
    only ``rebuild_summary`` sets it.

    Args:
        summary: Summary to update (mutated in place).
        previous: The record being overwritten, or ``None`` on first write.
        current: The record being written.

    Returns:
        The same ``Summary`` instance.
    """
    if previous is not None:
        _remove(summary, previous)
    _add(summary, current)
    return summary


async def update_summary(
    store: CacheStore,
    previous: ProbeRecord | None,
    current: ProbeRecord,
) -> Summary | None:
    """Read-modify-write the stored summary for one record write.

    Concurrent callers are not serialised, so interleaved updates can lose
    increments.  Failures are logged and swallowed.

    Returns:
        The summary as written, or ``None`` if the update failed.
    """
    try:
        raw = await store.get(SUMMARY_KEY)
        summary = Summary.from_dict(json.loads(raw)) if raw else Summary()
        apply_delta(summary, previous, current)
        await store.put(SUMMARY_KEY, json.dumps(summary.to_dict()))
    except Exception as exc:  # noqa: BLE001
        logger.warning("Summary update failed for %s: %s", current.proxy, exc)
        return None
    return summary


def rebuild_summary(records: list[ProbeRecord]) -> Summary:
    """Compute a summary from scratch, ``total`` included.

    Used to reset the stored summary after drift from lost updates.
    """
    summary = Summary(total=len(records))
    for record in records:
        _add(summary, record)
    return summary


async def load_summary(store: CacheStore) -> Summary:
    """Return the stored summary, or an empty one if absent or unreadable."""
    raw = await store.get(SUMMARY_KEY)
    if not raw:
        return Summary()
    try:
        return Summary.from_dict(json.loads(raw))
    except (ValueError, TypeError, AttributeError) as exc:
        logger.warning("Stored summary is unreadable: %s", exc)
        return Summary()


async def reset_summary(store: SqliteStore) -> Summary:
    """Rebuild the stored summary from every proxy record in *store*."""
    records: list[ProbeRecord] = []
    for key, value in await store.scan():
        if key == SUMMARY_KEY:
            continue
        try:
            records.append(ProbeRecord.from_dict(json.loads(value)))
        except ValueError as exc:
            logger.warning("Skipping unreadable record %s: %s", key, exc)
    summary = rebuild_summary(records)
    await store.put(SUMMARY_KEY, json.dumps(summary.to_dict()))
    logger.info("Summary rebuilt from %d record(s)", len(records))
    return summary
