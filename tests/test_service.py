"""Tests for inflowcli/service.py — the cached read path."""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal

import pytest
import pytest_asyncio

from conftest import OTHER, WALLET
from inflowcli.aggregator import update_volume_cache
from inflowcli.cache import TTLCache
from inflowcli.exceptions import CacheUnavailableError, InvalidAddressError, InvalidPeriodError
from inflowcli.models import Transaction, transactions_key, volume_key
from inflowcli.service import EMPTY_WARNING, MALFORMED_WARNING, UNAVAILABLE_WARNING, VolumeService
from inflowcli.store import FileCacheStore

NOW = datetime(2025, 3, 31, 12, tzinfo=timezone.utc)


def inflow(tx_hash: str, day: str, usd: float) -> Transaction:
    return Transaction(
        hash=tx_hash,
        from_addr=OTHER,
        to_addr=WALLET,
        date=day,
        timestamp=f"{day}T10:00:00Z",
        block_number=1,
        token_symbol="USDC",
        token_amount=Decimal(str(usd)),
        usd_value=usd,
        direction="in",
    )


@pytest_asyncio.fixture
async def seeded_store(file_store: FileCacheStore) -> FileCacheStore:
    txs = [inflow("0xA", "2025-03-05", 100.0), inflow("0xB", "2025-03-06", 25.0)]
    cache = update_volume_cache(None, txs, as_of_block=2000, now=NOW)
    await file_store.set(volume_key(WALLET, 2025), cache.to_dict(), ttl_seconds=3600)
    await file_store.set(transactions_key(WALLET, 2025), [t.to_dict() for t in txs], ttl_seconds=3600)
    return file_store


@pytest.mark.asyncio
async def test_volume_data_is_gap_filled(seeded_store: FileCacheStore) -> None:
    service = VolumeService(seeded_store, TTLCache())
    payload = await service.get_volume_data(WALLET, 2025, "daily")

    assert payload["period"] == "daily"
    assert payload["source"] == "cache"
    assert "warning" not in payload
    assert len(payload["daily"]) == 365
    assert payload["data"] == payload["daily"]
    days = {b["date"]: b["volume"] for b in payload["daily"]}
    assert days["2025-03-05"] == 100.0
    assert days["2025-03-04"] == 0.0
    assert days["2025-04-01"] is None
    assert payload["blockInfo"]["lastProcessedBlock"] == 2000
    assert payload["lastUpdated"] == "2025-03-31T12:00:00Z"
    assert payload["transactionCounts"] == {"in": 2, "out": 0}


@pytest.mark.asyncio
async def test_weekly_and_monthly_views(seeded_store: FileCacheStore) -> None:
    service = VolumeService(seeded_store, TTLCache())
    weekly = await service.get_volume_data(WALLET, "2025", "weekly")
    assert weekly["data"][0]["date"] == "2024-12-30"
    assert {"date": "2025-03-03", "volume": 125.0} in weekly["data"]

    monthly = await service.get_volume_data(WALLET, 2025, "monthly")
    assert [b["volume"] for b in monthly["data"][:4]] == [0.0, 0.0, 125.0, None]


@pytest.mark.asyncio
async def test_missing_cache_returns_null_calendar(file_store: FileCacheStore) -> None:
    payload = await VolumeService(file_store, TTLCache()).get_volume_data(WALLET, 2025, "monthly")
    assert payload["source"] == "empty"
    assert payload["warning"] == EMPTY_WARNING
    assert len(payload["data"]) == 12
    assert all(b["volume"] is None for b in payload["data"])
    assert payload["lastUpdated"] is None
    assert payload["blockInfo"] is None


@pytest.mark.asyncio
async def test_responses_are_memoized(seeded_store: FileCacheStore) -> None:
    responses = TTLCache()
    service = VolumeService(seeded_store, responses)
    first = await service.get_volume_data(WALLET, 2025)

    await seeded_store.delete(volume_key(WALLET, 2025))
    assert await service.get_volume_data(WALLET, 2025) is first

    service.invalidate(WALLET, 2025)
    assert (await service.get_volume_data(WALLET, 2025))["source"] == "empty"


@pytest.mark.asyncio
async def test_empty_responses_not_memoized(file_store: FileCacheStore) -> None:
    responses = TTLCache()
    service = VolumeService(file_store, responses)
    await service.get_volume_data(WALLET, 2025)
    assert len(responses) == 0


@pytest.mark.asyncio
async def test_unreadable_store_degrades_to_empty(tmp_path) -> None:
    class Unreadable(FileCacheStore):
        async def get(self, key, ignore_expiry=False):
            raise CacheUnavailableError("locked")

    payload = await VolumeService(Unreadable(tmp_path), TTLCache()).get_volume_data(WALLET, 2025)
    assert payload["source"] == "empty"
    assert payload["warning"] == UNAVAILABLE_WARNING


@pytest.mark.asyncio
async def test_invalid_inputs(file_store: FileCacheStore) -> None:
    service = VolumeService(file_store, TTLCache())
    with pytest.raises(InvalidPeriodError):
        await service.get_volume_data(WALLET, 2025, "hourly")
    with pytest.raises(InvalidAddressError):
        await service.get_volume_data("not-an-address", 2025)


@pytest.mark.asyncio
async def test_counterparties(seeded_store: FileCacheStore) -> None:
    result = await VolumeService(seeded_store, TTLCache()).get_counterparties(WALLET, 2025)
    assert result["source"] == "cache"
    assert result["counterparties"] == [
        {
            "address": OTHER,
            "transactionCount": 2,
            "totalValueSentUsd": 0.0,
            "totalValueReceivedUsd": 125.0,
        }
    ]


@pytest.mark.asyncio
async def test_counterparties_without_ledger(file_store: FileCacheStore) -> None:
    result = await VolumeService(file_store, TTLCache()).get_counterparties(WALLET, 2025)
    assert result == {"wallet": WALLET, "year": 2025, "counterparties": [], "source": "empty"}


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "document",
    [
        {"daily": [{"volume": 1}]},
        {"daily": [{"date": "2025-13-40", "volume": 1}]},
        {"daily": [], "transactionCounts": {"in": "many"}},
        ["not", "a", "cache"],
    ],
)
async def test_malformed_volume_document_degrades_to_empty(
    file_store: FileCacheStore, document
) -> None:
    await file_store.set(volume_key(WALLET, 2025), document, ttl_seconds=3600)
    responses = TTLCache()
    payload = await VolumeService(file_store, responses).get_volume_data(WALLET, 2025, "daily")

    assert payload["source"] == "empty"
    assert payload["warning"] == MALFORMED_WARNING
    assert len(payload["daily"]) == 365
    assert all(b["volume"] is None for b in payload["daily"])
    assert len(responses) == 0


@pytest.mark.asyncio
async def test_counterparties_skip_malformed_ledger_entries(seeded_store: FileCacheStore) -> None:
    ledger = await seeded_store.get(transactions_key(WALLET, 2025))
    await seeded_store.set(
        transactions_key(WALLET, 2025), ledger + [{"hash": "0xbad"}], ttl_seconds=3600
    )
    result = await VolumeService(seeded_store, TTLCache()).get_counterparties(WALLET, 2025)
    assert result["source"] == "cache"
    assert result["counterparties"][0]["transactionCount"] == 2
    assert result["warning"] == MALFORMED_WARNING


@pytest.mark.asyncio
async def test_counterparties_with_malformed_or_unreadable_ledger(tmp_path) -> None:
    store = FileCacheStore(tmp_path)
    await store.set(transactions_key(WALLET, 2025), {"not": "a list"}, ttl_seconds=3600)
    result = await VolumeService(store, TTLCache()).get_counterparties(WALLET, 2025)
    assert result["counterparties"] == []
    assert result["warning"] == MALFORMED_WARNING

    class Unreadable(FileCacheStore):
        async def get(self, key, ignore_expiry=False):
            raise CacheUnavailableError("locked")

    result = await VolumeService(Unreadable(tmp_path), TTLCache()).get_counterparties(WALLET, 2025)
    assert result["source"] == "empty"
    assert result["warning"] == UNAVAILABLE_WARNING
