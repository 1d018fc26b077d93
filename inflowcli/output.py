"""Output format routing for inflowcli.

Converts result dicts to the requested format: json, table, csv.

Design rules:
- JSON: 2-space indent, utf-8, Decimal rendered as float
- Table: Rich-formatted, null buckets dimmed as "—"
- CSV: RFC 4180, header row always present

All functions return strings. The caller writes to stdout.
"""

from __future__ import annotations

import csv
import io
import json
from decimal import Decimal
from typing import Any

from rich.console import Console
from rich.table import Table
from rich.text import Text

VALID_FORMATS = {"json", "table", "csv"}


class DecimalEncoder(json.JSONEncoder):
    """JSON encoder that handles Decimal values."""

    def default(self, obj: Any) -> Any:
        if isinstance(obj, Decimal):
            return float(obj)
        return super().default(obj)


def format_output(data: Any, fmt: str) -> str:
    """
    Format data for stdout output.

    Args:
        data: Result dict, list, or any JSON-serialisable value.
        fmt: "json" | "table" | "csv"

    Raises:
        ValueError: If fmt is not a recognised format.
    """
    fmt = fmt.lower()
    if fmt not in VALID_FORMATS:
        raise ValueError(f"Unknown format {fmt!r}. Valid: {sorted(VALID_FORMATS)}")

    if fmt == "table":
        return format_table(data)
    if fmt == "csv":
        return format_csv(data)
    return format_json(data)


# ── JSON ─────────────────────────────────────────────────────────────────────


def format_json(data: Any) -> str:
    """Pretty-print data as JSON (2-space indent)."""
    return json.dumps(data, indent=2, cls=DecimalEncoder, ensure_ascii=False)


# ── Table ────────────────────────────────────────────────────────────────────


def format_table(data: Any) -> str:
    """
    Format as a Rich terminal table.

    Handles:
    - Volume payloads (dict with 'period' and 'data')
    - Refresh results (dict with 'stats' and 'volume')
    - Counterparty summaries (dict with 'counterparties')
    - Price maps (dict with 'prices')
    - Generic dict fallback
    """
    buf = io.StringIO()
    console = Console(file=buf, highlight=False, markup=True, width=120)

    if isinstance(data, dict) and "period" in data and "data" in data:
        _render_volume_table(console, data)
    elif isinstance(data, dict) and "stats" in data and "volume" in data:
        _render_refresh_table(console, data)
    elif isinstance(data, dict) and "counterparties" in data:
        _render_counterparty_table(console, data)
    elif isinstance(data, dict) and "prices" in data:
        _render_price_table(console, data)
    else:
        console.print_json(json.dumps(data, cls=DecimalEncoder))

    return buf.getvalue()


def _volume_text(volume: float | None) -> Text:
    if volume is None:
        return Text("—", style="dim")
    if volume == 0:
        return Text("$0", style="dim")
    return Text(f"${volume:,.2f}", style="green")


def _render_volume_table(console: Console, data: dict[str, Any]) -> None:
    buckets = data.get("data", [])
    table = Table(
        title=f"Inflow Volume — {data.get('period', '')}",
        show_header=True,
        header_style="bold blue",
    )
    table.add_column("Date", style="cyan", no_wrap=True)
    table.add_column("Volume USD", justify="right")

    total = 0.0
    for bucket in buckets:
        volume = bucket.get("volume")
        if volume is not None:
            total += volume
        table.add_row(bucket.get("date", ""), _volume_text(volume))

    console.print(table)
    counts = data.get("transactionCounts") or {}
    console.print(
        f"Total: [bold]${total:,.2f}[/bold]  "
        f"In: [bold]{counts.get('in', 0)}[/bold]  Out: [bold]{counts.get('out', 0)}[/bold]  "
        f"Source: {data.get('source', '')}  Updated: {data.get('lastUpdated') or '—'}"
    )
    if data.get("warning"):
        console.print(f"[yellow]{data['warning']}[/yellow]")


def _render_refresh_table(console: Console, data: dict[str, Any]) -> None:
    stats = data.get("stats", {})
    table = Table(title="Refresh", show_header=True, header_style="bold blue")
    table.add_column("Field")
    table.add_column("Value", justify="right")
    for key in ("wallet", "year", "fromBlock", "toBlock", "newTransactions", "persisted"):
        table.add_row(key, str(stats.get(key, "")))
    console.print(table)

    failed = stats.get("failedRanges") or []
    if failed:
        console.print(
            "[yellow]Failed ranges:[/yellow] "
            + ", ".join(f"{lo}-{hi}" for lo, hi in failed)
        )
    monthly = (data.get("volume") or {}).get("monthly") or []
    if monthly:
        _render_volume_table(console, {"period": "monthly", "data": monthly})


def _render_counterparty_table(console: Console, data: dict[str, Any]) -> None:
    table = Table(
        title=f"Top Counterparties — {data.get('year', '')}",
        show_header=True,
        header_style="bold blue",
    )
    table.add_column("Address", style="cyan", no_wrap=True)
    table.add_column("Txns", justify="right")
    table.add_column("Received USD", justify="right")
    table.add_column("Sent USD", justify="right")

    for c in data.get("counterparties", []):
        address = c.get("address", "")
        short_addr = f"{address[:8]}…{address[-6:]}" if len(address) > 16 else address
        table.add_row(
            short_addr,
            str(c.get("transactionCount", 0)),
            f"${c.get('totalValueReceivedUsd', 0.0):,.2f}",
            f"${c.get('totalValueSentUsd', 0.0):,.2f}",
        )
    console.print(table)


def _render_price_table(console: Console, data: dict[str, Any]) -> None:
    table = Table(title="Token Prices", header_style="bold blue")
    table.add_column("Token")
    table.add_column("USD", justify="right")
    for symbol, price in sorted(data.get("prices", {}).items()):
        table.add_row(symbol, f"${price:,.4f}")
    console.print(table)


# ── CSV ──────────────────────────────────────────────────────────────────────


def format_csv(data: Any) -> str:
    """
    Format as CSV with a header row.

    Flattens nested structures to the extent possible.
    """
    buf = io.StringIO()
    writer = csv.writer(buf)

    rows: list[dict[str, Any]] = []

    if isinstance(data, dict):
        for key in ("data", "counterparties"):
            if key in data and isinstance(data[key], list):
                rows = data[key]
                break
        if not rows and isinstance(data.get("prices"), dict):
            rows = [{"token": s, "usd": p} for s, p in sorted(data["prices"].items())]
        if not rows and isinstance(data.get("stats"), dict):
            rows = [data["stats"]]

    elif isinstance(data, list):
        rows = data

    if not rows:
        writer.writerow(["value"])
        writer.writerow([json.dumps(data, cls=DecimalEncoder)])
        return buf.getvalue()

    flat_rows = [_flatten_dict(r) for r in rows]
    headers = list(flat_rows[0].keys())
    writer.writerow(headers)
    for row in flat_rows:
        writer.writerow([row.get(h, "") for h in headers])

    return buf.getvalue()


def _flatten_dict(d: dict[str, Any], prefix: str = "") -> dict[str, Any]:
    """Flatten a nested dict for CSV output."""
    result: dict[str, Any] = {}
    for k, v in d.items():
        full_key = f"{prefix}{k}" if not prefix else f"{prefix}.{k}"
        if isinstance(v, dict):
            result.update(_flatten_dict(v, full_key))
        elif isinstance(v, (list, tuple)):
            result[full_key] = json.dumps(v)
        elif isinstance(v, Decimal):
            result[full_key] = float(v)
        elif v is None:
            result[full_key] = ""
        else:
            result[full_key] = v
    return result


# ── Utility ──────────────────────────────────────────────────────────────────


def mask_api_key(key: str) -> str:
    """
    Mask an API key for safe display.

    'abcdefg123' → 'abcd****'
    '' → '****'
    """
    if not key or len(key) <= 4:
        return "****"
    return key[:4] + "****"
