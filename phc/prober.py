"""Raw TCP reachability probe."""

import asyncio
import logging
import time
from dataclasses import dataclass

from phc.models import Status

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS = 5000


@dataclass(frozen=True)
class ProbeOutcome:
    """Liveness verdict for one endpoint.

    Attributes:
        status: ``"alive"`` if a TCP connection was established.
        latency: Milliseconds to connection establishment; ``None`` when dead.
    """

    status: Status
    latency: int | None


DEAD = ProbeOutcome(status="dead", latency=None)


async def probe(ip: str, port: int, timeout_ms: int = DEFAULT_TIMEOUT_MS) -> ProbeOutcome:
    """Open a TCP connection to ``(ip, port)`` and time the handshake.

    The connection is closed immediately; no bytes are exchanged.  Refusals,
    timeouts, resolution errors and unencodable host names all yield
    ``DEAD``.

    Args:
        ip: Host or IP address to dial.
        port: TCP port.
        timeout_ms: Upper bound on the whole connect attempt, name
            resolution included.

    Returns:
        A ``ProbeOutcome``.
    """
    start = time.monotonic()
    try:
        _reader, writer = await asyncio.wait_for(
            asyncio.open_connection(ip, port),
            timeout=timeout_ms / 1000,
        )
    except (asyncio.TimeoutError, OSError, ValueError) as exc:
        logger.debug("Probe %s:%s failed: %r", ip, port, exc)
        return DEAD
    latency = round((time.monotonic() - start) * 1000)

    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        pass

    return ProbeOutcome(status="alive", latency=max(latency, 0))
