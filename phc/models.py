"""Data models: Endpoint, GeoInfo, ProbeRecord, ItemError, Summary dataclasses."""

from dataclasses import asdict, dataclass, field
from typing import Literal

Status = Literal["alive", "dead"]


@dataclass
class Endpoint:
    """A proxy endpoint to probe.

    Attributes:
        ip: Host or IP address of the proxy.
        port: TCP port.
        country: Country hint supplied with the batch, used only when
            geolocation yields nothing.
        isp: ISP hint supplied with the batch, same fallback rules.
    """

    ip: str
    port: int
    country: str | None = None
    isp: str | None = None

    @property
    def key(self) -> str:
        """Canonical ``"host:port"`` key."""
        return f"{self.ip}:{self.port}"


def parse_endpoint(item: object) -> Endpoint:
    """Parse a batch item into an ``Endpoint``.

    Accepts either an ``"ip:port"`` string or a mapping with ``ip``, ``port``
    and optional ``country`` / ``isp`` hints.

    Raises:
        ValueError: If the item is neither form or the port is not a valid
            TCP port number.
    """
    if isinstance(item, str):
        ip, sep, port = item.strip().rpartition(":")
        if not sep:
            raise ValueError(f"Expected 'ip:port', got {item!r}")
        return Endpoint(ip=ip.strip(), port=_parse_port(port.strip()))

    if isinstance(item, dict):
        ip = item.get("ip")
        if not isinstance(ip, str) or not ip.strip():
            raise ValueError(f"Batch item has no ip: {item!r}")
        return Endpoint(
            ip=ip.strip(),
            port=_parse_port(item.get("port")),
            country=item.get("country") or None,
            isp=item.get("isp") or None,
        )

    raise ValueError(f"Unsupported batch item type: {type(item).__name__}")


def _parse_port(value: object) -> int:
    try:
        port = int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        raise ValueError(f"Invalid port: {value!r}") from None
    if not 0 < port < 65536:
        raise ValueError(f"Port out of range: {port}")
    return port


@dataclass(frozen=True)
class GeoInfo:
    """Country / ISP attribution for an IP address.

    Attributes:
        country: Two-letter country code, if known.
        isp: ISP or organisation name.
        asn: AS descriptor as reported by the lookup (e.g. ``"AS15169 Google"``).
        city: City name.
    """

    country: str | None = None
    isp: str | None = None
    asn: str | None = None
    city: str | None = None

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, raw: object) -> "GeoInfo":
        if not isinstance(raw, dict):
            raise ValueError(f"Expected a mapping, got {type(raw).__name__}")
        for name in ("country", "isp", "asn", "city"):
            value = raw.get(name)
            if value is not None and not isinstance(value, str):
                raise ValueError(f"Field {name!r} is not a string: {value!r}")
        return cls(
            country=raw.get("country"),
            isp=raw.get("isp"),
            asn=raw.get("asn"),
            city=raw.get("city"),
        )


@dataclass
class ProbeRecord:
    """Outcome of probing one endpoint; the unit of output and of storage.

    ``latency`` is an integer number of milliseconds when ``status`` is
    ``"alive"`` and ``None`` when it is ``"dead"``.
    """

    proxy: str
    status: Status
    latency: int | None
    country: str | None
    isp: str | None
    last_checked: int

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, raw: object) -> "ProbeRecord":
        if not isinstance(raw, dict):
            raise ValueError(f"Expected a mapping, got {type(raw).__name__}")
        try:
            return cls(
                proxy=raw["proxy"],
                status="alive" if raw.get("status") == "alive" else "dead",
                latency=raw.get("latency"),
                country=raw.get("country"),
                isp=raw.get("isp"),
                last_checked=raw.get("last_checked") or 0,
            )
        except KeyError as exc:
            raise ValueError(f"Stored record is missing {exc}") from exc


@dataclass
class ItemError:
    """Error descriptor occupying the output slot of a failed batch item."""

    error: str

    def to_dict(self) -> dict:
        return {"error": self.error}


@dataclass
class Summary:
    """Rolling alive/dead histogram, globally and per country.

    Attributes:
        total: Maintained outside the incremental update path; see
            ``aggregator.rebuild_summary``.
        alive: Global alive count.
        dead: Global dead count.
        countries: Country code -> ``{"alive": n, "dead": n}``.
    """

    total: int = 0
    alive: int = 0
    dead: int = 0
    countries: dict[str, dict[str, int]] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, raw: object) -> "Summary":
        if not isinstance(raw, dict):
            raise ValueError(f"Expected a mapping, got {type(raw).__name__}")
        countries: dict[str, dict[str, int]] = {}
        for code, counts in (raw.get("countries") or {}).items():
            countries[code] = {
                "alive": int(counts.get("alive") or 0),
                "dead": int(counts.get("dead") or 0),
            }
        return cls(
            total=int(raw.get("total") or 0),
            alive=int(raw.get("alive") or 0),
            dead=int(raw.get("dead") or 0),
            countries=countries,
        )
