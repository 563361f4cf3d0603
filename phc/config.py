"""YAML configuration file loading."""

import logging
from dataclasses import dataclass
from pathlib import Path

import yaml

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_DIR = Path.home() / ".phc"
DEFAULT_CONFIG_PATH = DEFAULT_CONFIG_DIR / "config.yaml"
DEFAULT_DB_PATH = str(DEFAULT_CONFIG_DIR / "phc.db")

GEO_PROVIDERS = ("ip-api", "maxmind", "none")


@dataclass
class PhcConfig:
    """Top-level configuration for the phc tool.

    Every field has a default so a batch can be checked without any config
    file: results go to the local SQLite cache and geolocation uses the
    public ip-api.com endpoint.

    Attributes:
        db_path: Path to the SQLite database backing the proxy and geo caches.
        health_check_timeout_ms: Per-endpoint TCP connect timeout.
        geo_provider: ``"ip-api"`` (HTTP lookup), ``"maxmind"`` (local
            GeoLite2 databases) or ``"none"`` (hints only).
        geo_api_url: Base URL of the ip-api compatible lookup service.
        geo_cache_ttl_seconds: Lifetime of cached geo entries.
        maxmind_city_db: Path to GeoLite2-City.mmdb, or None if not configured.
        maxmind_asn_db: Path to GeoLite2-ASN.mmdb, or None if not configured.
        collector_url: Remote collector that receives results when the
            local store is not used.
        collector_token: Bearer token sent to the collector.
        auth_token: Bearer token required from batch submitters, if set.
        log_level: Root logging level name.
    """

    db_path: str = DEFAULT_DB_PATH
    health_check_timeout_ms: int = 5000
    geo_provider: str = "ip-api"
    geo_api_url: str = "http://ip-api.com/json"
    geo_cache_ttl_seconds: int = 86400
    maxmind_city_db: str | None = None
    maxmind_asn_db: str | None = None
    collector_url: str | None = None
    collector_token: str | None = None
    auth_token: str | None = None
    log_level: str = "INFO"


# Keys in the YAML file that map to PhcConfig fields.
_YAML_KEY_TO_FIELD: dict[str, str] = {
    "db_path": "db_path",
    "health_check_timeout_ms": "health_check_timeout_ms",
    "geo_provider": "geo_provider",
    "geo_api_url": "geo_api_url",
    "geo_cache_ttl_seconds": "geo_cache_ttl_seconds",
    "maxmind_city_db": "maxmind_city_db",
    "maxmind_asn_db": "maxmind_asn_db",
    "collector_url": "collector_url",
    "collector_token": "collector_token",
    "auth_token": "auth_token",
    "log_level": "log_level",
}

_INT_FIELDS = ("health_check_timeout_ms", "geo_cache_ttl_seconds")


def load_config(path: Path | str | None = None) -> PhcConfig:
    """Load configuration from a YAML file.

    Args:
        path: Explicit path to a YAML config file.  If ``None``, the
            default location (``~/.phc/config.yaml``) is tried.  If the
            default file doesn't exist, a ``PhcConfig`` with all defaults
            is returned silently.

    Returns:
        A populated ``PhcConfig`` instance.

    Raises:
        FileNotFoundError: If an explicit *path* was given but doesn't exist.
        ConfigError: If the file contains invalid YAML, has an unexpected
            top-level structure, or carries an invalid value.
    """
    resolved = _resolve_path(path)

    if resolved is None:
        logger.debug("No config file found; using defaults")
        return PhcConfig()

    logger.debug("Loading config from %s", resolved)
    text = resolved.read_text(encoding="utf-8")

    try:
        raw = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {resolved}: {exc}") from exc

    if raw is None:
        # Empty file: treat as all-defaults.
        return PhcConfig()

    if not isinstance(raw, dict):
        raise ConfigError(
            f"Expected a YAML mapping at the top level in {resolved}, "
            f"got {type(raw).__name__}"
        )

    return _build_config(raw, source=resolved)


class ConfigError(Exception):
    """Raised when a configuration file is malformed or unreadable."""


# ------------------------------------------------------------------
# Internal helpers
# ------------------------------------------------------------------


def _resolve_path(path: Path | str | None) -> Path | None:
    """Return a concrete ``Path`` to read, or ``None`` if nothing to read.

    Raises:
        FileNotFoundError: If the caller supplied an explicit path that
            doesn't exist on disk.
    """
    if path is not None:
        p = Path(path).expanduser()
        if not p.is_file():
            raise FileNotFoundError(f"Config file not found: {p}")
        return p

    default = DEFAULT_CONFIG_PATH.expanduser()
    if default.is_file():
        return default
    return None


def _build_config(raw: dict, source: Path) -> PhcConfig:
    """Map raw YAML dict to a ``PhcConfig``, ignoring unknown keys."""
    kwargs: dict[str, object] = {}

    for yaml_key, field_name in _YAML_KEY_TO_FIELD.items():
        if yaml_key in raw:
            kwargs[field_name] = raw[yaml_key]

    unknown = set(raw) - set(_YAML_KEY_TO_FIELD)
    if unknown:
        logger.warning(
            "Ignoring unknown config keys in %s: %s",
            source,
            ", ".join(sorted(unknown)),
        )

    for name in _INT_FIELDS:
        if name in kwargs:
            try:
                kwargs[name] = int(kwargs[name])  # type: ignore[arg-type]
            except (TypeError, ValueError):
                raise ConfigError(
                    f"{name} in {source} must be an integer, got {kwargs[name]!r}"
                ) from None

    provider = kwargs.get("geo_provider", PhcConfig.geo_provider)
    if provider not in GEO_PROVIDERS:
        raise ConfigError(
            f"geo_provider in {source} must be one of "
            f"{', '.join(GEO_PROVIDERS)}; got {provider!r}"
        )

    return PhcConfig(**kwargs)
