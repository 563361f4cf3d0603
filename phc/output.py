"""Output renderer: rich table formatter, JSON formatter, format dispatch."""

import json
import logging
import sys
from datetime import UTC, datetime
from io import StringIO

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from phc.models import Summary

logger = logging.getLogger(__name__)

# Columns displayed for batch results.
_RESULT_COLUMNS = [
    ("Proxy", "proxy"),
    ("Status", "status"),
    ("Latency (ms)", "latency"),
    ("Country", "country"),
    ("ISP", "isp"),
    ("Last checked", "last_checked"),
]

FORMATS = ("table", "json")


def render(
    payload: dict,
    fmt: str,
    *,
    file: object | None = None,
    width: int | None = None,
) -> None:
    """Dispatch a batch response to the appropriate formatter.

    Args:
        payload: Sink response (``results`` / ``stored`` / ``posted``).
        fmt: Output format, ``"table"`` or ``"json"``.
        file: Writable file object for output (default: ``sys.stdout``).
        width: Explicit console width (default: auto-detect).

    Raises:
        ValueError: If *fmt* is not ``"table"`` or ``"json"``.
    """
    if fmt == "table":
        render_table(payload, file=file, width=width)
    elif fmt == "json":
        render_json(payload, file=file)
    else:
        raise ValueError(f"Unknown output format: {fmt!r}")


def render_summary(
    summary: Summary,
    fmt: str,
    *,
    file: object | None = None,
    width: int | None = None,
) -> None:
    """Render the stored health summary."""
    if fmt == "table":
        render_summary_table(summary, file=file, width=width)
    elif fmt == "json":
        render_json(summary.to_dict(), file=file)
    else:
        raise ValueError(f"Unknown output format: {fmt!r}")


# ---------------------------------------------------------------------------
# Table (rich) formatter
# ---------------------------------------------------------------------------


def render_table(
    payload: dict,
    *,
    file: object | None = None,
    width: int | None = None,
) -> None:
    """Render batch results as a ``rich`` table.

    Error descriptors get their own row with the message in the Status
    column.  When the results were forwarded to a collector there is nothing
    to tabulate and a one-line note is printed instead.
    """
    out = file or sys.stdout
    console = Console(file=out, highlight=False, width=width)

    results = payload.get("results")
    if results is None:
        console.print(f"Posted {payload.get('posted', 0)} result(s) to collector.")
        return

    table = Table(title=f"Proxy check — {len(results)} endpoint(s)")
    for header, _ in _RESULT_COLUMNS:
        table.add_column(header)

    for row in results:
        if "error" in row:
            message = escape(str(row["error"]))
            table.add_row("—", f"[red]error: {message}[/red]", *["—"] * 4)
            continue
        cells = [escape(_fmt(row.get(attr), attr)) for _, attr in _RESULT_COLUMNS]
        table.add_row(*cells)

    console.print(table)
    _print_results_summary(console, results)


def _print_results_summary(console: Console, results: list[dict]) -> None:
    """Print a one-line tally beneath the results table."""
    alive = sum(1 for r in results if r.get("status") == "alive")
    dead = sum(1 for r in results if r.get("status") == "dead")
    errors = sum(1 for r in results if "error" in r)
    console.print(f"  {alive} alive, {dead} dead, {errors} error(s)")


def render_summary_table(
    summary: Summary,
    *,
    file: object | None = None,
    width: int | None = None,
) -> None:
    """Render global counters plus a per-country breakdown."""
    out = file or sys.stdout
    console = Console(file=out, highlight=False, width=width)

    console.print(
        f"\n[bold]Health summary[/bold]  total={summary.total} "
        f"alive={summary.alive} dead={summary.dead}\n"
    )

    if not summary.countries:
        console.print("  No per-country data available.")
        return

    t = Table(title="Countries")
    t.add_column("Country")
    t.add_column("Alive", justify="right")
    t.add_column("Dead", justify="right")
    ranked = sorted(
        summary.countries.items(),
        key=lambda item: item[1].get("alive", 0) + item[1].get("dead", 0),
        reverse=True,
    )
    for code, counts in ranked:
        t.add_row(code, str(counts.get("alive", 0)), str(counts.get("dead", 0)))
    console.print(t)


# ---------------------------------------------------------------------------
# JSON formatter
# ---------------------------------------------------------------------------


def render_json(payload: dict, *, file: object | None = None) -> None:
    """Render *payload* as indented JSON to *file*."""
    out = file or sys.stdout
    json.dump(payload, out, indent=2, default=str)
    out.write("\n")  # type: ignore[union-attr]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _fmt(value: object, attr: str = "") -> str:
    """Format a field value for table display.

    ``None`` becomes ``"—"``; ``last_checked`` (epoch ms) becomes an ISO
    timestamp.
    """
    if value is None:
        return "—"
    if attr == "last_checked" and isinstance(value, int):
        return datetime.fromtimestamp(value / 1000, UTC).strftime("%Y-%m-%d %H:%M:%S")
    return str(value)


def render_to_string(payload: dict, fmt: str, *, width: int = 200) -> str:
    """Render to a string instead of stdout, useful for testing."""
    buf = StringIO()
    render(payload, fmt, file=buf, width=width)
    return buf.getvalue()
