"""Tests for inflowcli/output.py — output formatting."""

from __future__ import annotations

import csv
import io
import json
from decimal import Decimal
from typing import Any

import pytest

from inflowcli.output import (
    DecimalEncoder,
    format_csv,
    format_json,
    format_output,
    format_table,
    mask_api_key,
)

# ── Fixtures ──────────────────────────────────────────────────────────────────


def make_volume_payload() -> dict[str, Any]:
    """Volume payload matching VolumeService.get_volume_data()."""
    data = [
        {"date": "2025-03-01", "volume": 0.0},
        {"date": "2025-03-02", "volume": 1234.5},
        {"date": "2025-03-03", "volume": None},
    ]
    return {
        "period": "daily",
        "data": data,
        "daily": data,
        "weekly": [],
        "monthly": [],
        "source": "cache",
        "lastUpdated": "2025-03-02T12:00:00Z",
        "blockInfo": {"lastProcessedBlock": 100, "processingDate": "2025-03-02T12:00:00Z"},
        "transactionCounts": {"in": 3, "out": 1},
    }


def make_refresh_payload() -> dict[str, Any]:
    return {
        "stats": {
            "wallet": "0x1111111111111111111111111111111111111111",
            "year": 2025,
            "fromBlock": 24,
            "toBlock": 2179,
            "newTransactions": 2,
            "failedRanges": [[1024, 2023]],
            "truncatedRanges": [],
            "persisted": True,
        },
        "volume": {"daily": [], "weekly": [], "monthly": [{"date": "2025-03-01", "volume": 99.0}]},
    }


def make_counterparties() -> dict[str, Any]:
    return {
        "wallet": "0x1111111111111111111111111111111111111111",
        "year": 2025,
        "counterparties": [
            {
                "address": "0xd8da6bf26964af9d7eed9e03e53415d37aa96045",
                "transactionCount": 4,
                "totalValueSentUsd": 10.0,
                "totalValueReceivedUsd": 2500.0,
            }
        ],
        "source": "cache",
    }


# ── JSON ──────────────────────────────────────────────────────────────────────


def test_format_json_is_indented_and_valid() -> None:
    result = format_json({"key": "value"})
    assert json.loads(result) == {"key": "value"}
    assert "\n  " in result


def test_format_json_handles_decimal() -> None:
    parsed = json.loads(format_json({"amount": Decimal("1.5")}))
    assert parsed["amount"] == 1.5


def test_decimal_encoder_rejects_unknown() -> None:
    with pytest.raises(TypeError):
        json.dumps({"x": object()}, cls=DecimalEncoder)


def test_format_json_keeps_nulls() -> None:
    parsed = json.loads(format_json(make_volume_payload()))
    assert parsed["data"][2]["volume"] is None


# ── Table ─────────────────────────────────────────────────────────────────────


def test_volume_table() -> None:
    result = format_table(make_volume_payload())
    assert "2025-03-02" in result
    assert "$1,234.50" in result
    assert "—" in result
    assert "Total" in result


def test_volume_table_shows_warning() -> None:
    payload = make_volume_payload()
    payload["warning"] = "No cached data"
    assert "No cached data" in format_table(payload)


def test_refresh_table() -> None:
    result = format_table(make_refresh_payload())
    assert "newTransactions" in result
    assert "1024-2023" in result
    assert "2025-03-01" in result


def test_counterparty_table_shortens_address() -> None:
    result = format_table(make_counterparties())
    assert "0xd8da6b" in result
    assert "$2,500.00" in result


def test_price_table() -> None:
    result = format_table({"prices": {"ETH": 3000.0, "USDC": 1.0}})
    assert "$3,000.0000" in result
    assert "USDC" in result


def test_generic_table_fallback() -> None:
    assert "removed" in format_table({"removed": 3})


# ── CSV ───────────────────────────────────────────────────────────────────────


def test_volume_csv() -> None:
    rows = list(csv.reader(io.StringIO(format_csv(make_volume_payload()))))
    assert rows[0] == ["date", "volume"]
    assert rows[2] == ["2025-03-02", "1234.5"]
    assert rows[3] == ["2025-03-03", ""]


def test_counterparty_csv_header() -> None:
    first_line = format_csv(make_counterparties()).splitlines()[0]
    assert first_line == "address,transactionCount,totalValueSentUsd,totalValueReceivedUsd"


def test_price_csv() -> None:
    rows = list(csv.reader(io.StringIO(format_csv({"prices": {"USDC": 1.0, "ETH": 3000.0}}))))
    assert rows == [["token", "usd"], ["ETH", "3000.0"], ["USDC", "1.0"]]


def test_refresh_csv_flattens_stats() -> None:
    rows = list(csv.reader(io.StringIO(format_csv(make_refresh_payload()))))
    assert "failedRanges" in rows[0]
    assert rows[1][rows[0].index("failedRanges")] == "[[1024, 2023]]"


def test_csv_fallback_for_scalars() -> None:
    assert format_csv({"status": "ok"}).splitlines()[0] == "value"


# ── Routing ───────────────────────────────────────────────────────────────────


@pytest.mark.parametrize("fmt", ["json", "JSON", "table", "csv"])
def test_format_output_routes(fmt: str) -> None:
    assert format_output(make_volume_payload(), fmt)


def test_format_output_unknown() -> None:
    with pytest.raises(ValueError):
        format_output({}, "jsonl")


@pytest.mark.parametrize(
    ("key", "expected"),
    [("abcdefg123", "abcd****"), ("", "****"), ("abc", "****")],
)
def test_mask_api_key(key: str, expected: str) -> None:
    assert mask_api_key(key) == expected
