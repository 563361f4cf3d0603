"""CLI entry point for the phc tool."""

import asyncio
import json
import logging
import sys

import click

from phc.aggregator import load_summary, reset_summary
from phc.config import ConfigError, PhcConfig, load_config
from phc.handler import check_batch
from phc.output import FORMATS, render, render_summary
from phc.sink import BatchError
from phc.store import GEO_NAMESPACE, PROXY_NAMESPACE, SqliteStore, init_db

logger = logging.getLogger(__name__)

SINKS = ("store", "collector")

_config_option = click.option(
    "--config",
    "-c",
    "config_path",
    default=None,
    type=click.Path(exists=False),
    help="Path to YAML config file (default: ~/.phc/config.yaml).",
)

_format_option = click.option(
    "--format",
    "-f",
    "output_format",
    default="table",
    type=click.Choice(FORMATS, case_sensitive=False),
    show_default=True,
    help="Output format.",
)


@click.group()
def main() -> None:
    """Check proxy liveness and keep a rolling health summary."""


@main.command()
@click.argument("endpoints", nargs=-1)
@click.option(
    "--input",
    "-i",
    "input_path",
    default=None,
    type=click.Path(exists=True, dir_okay=False),
    help="File with one ip:port per line, or a JSON {\"batch\": [...]} document.",
)
@click.option(
    "--timeout",
    "-t",
    "timeout_ms",
    default=None,
    type=click.IntRange(min=1),
    help="TCP connect timeout in milliseconds (default: from config, 5000).",
)
@click.option(
    "--sink",
    default="store",
    type=click.Choice(SINKS, case_sensitive=False),
    show_default=True,
    help="Write results to the local cache or post them to the collector.",
)
@_format_option
@_config_option
def check(
    endpoints: tuple[str, ...],
    input_path: str | None,
    timeout_ms: int | None,
    sink: str,
    output_format: str,
    config_path: str | None,
) -> None:
    """Probe ENDPOINTS (ip:port) and record the results."""
    cfg = _load(config_path)
    if timeout_ms is not None:
        cfg.health_check_timeout_ms = timeout_ms

    batch: list = list(endpoints)
    if input_path:
        batch.extend(_read_batch_file(input_path))
    if not batch:
        raise click.UsageError("No endpoints given; pass ENDPOINTS or --input.")

    conn = init_db(cfg.db_path)
    try:
        proxy_store = SqliteStore(conn, PROXY_NAMESPACE) if sink == "store" else None
        geo_store = SqliteStore(conn, GEO_NAMESPACE)
        authorization = f"Bearer {cfg.auth_token}" if cfg.auth_token else None
        try:
            payload = asyncio.run(
                check_batch(
                    {"batch": batch},
                    cfg,
                    proxy_store=proxy_store,
                    geo_store=geo_store,
                    authorization=authorization,
                )
            )
        except BatchError as exc:
            click.echo(f"Error: {exc}", err=True)
            sys.exit(1)
    finally:
        conn.close()

    render(payload, output_format)


@main.command()
@_format_option
@_config_option
def summary(output_format: str, config_path: str | None) -> None:
    """Show the stored health summary."""
    cfg = _load(config_path)
    conn = init_db(cfg.db_path)
    try:
        current = asyncio.run(load_summary(SqliteStore(conn, PROXY_NAMESPACE)))
    finally:
        conn.close()
    render_summary(current, output_format)


@main.command("rebuild-summary")
@_config_option
def rebuild_summary_cmd(config_path: str | None) -> None:
    """Recompute the health summary from every stored proxy record."""
    cfg = _load(config_path)
    conn = init_db(cfg.db_path)
    try:
        rebuilt = asyncio.run(reset_summary(SqliteStore(conn, PROXY_NAMESPACE)))
    finally:
        conn.close()
    click.echo(
        f"Summary rebuilt: total={rebuilt.total} "
        f"alive={rebuilt.alive} dead={rebuilt.dead}"
    )


def _load(config_path: str | None) -> PhcConfig:
    """Load config and configure logging, exiting on configuration errors."""
    try:
        cfg = load_config(config_path)
    except (ConfigError, FileNotFoundError) as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)

    logging.basicConfig(
        level=getattr(logging, cfg.log_level.upper(), logging.INFO),
        format="%(levelname)s: %(message)s",
    )
    logger.debug("Config loaded: %s", cfg)
    return cfg


def _read_batch_file(path: str) -> list:
    """Read endpoints from a plain-text or JSON file."""
    with open(path, encoding="utf-8") as fh:
        text = fh.read()

    try:
        doc = json.loads(text)
    except ValueError:
        doc = None

    if isinstance(doc, dict) and isinstance(doc.get("batch"), list):
        return doc["batch"]
    if isinstance(doc, list):
        return doc

    return [
        line.strip()
        for line in text.splitlines()
        if line.strip() and not line.lstrip().startswith("#")
    ]
