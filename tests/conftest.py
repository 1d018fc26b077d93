"""Pytest fixtures shared across all inflowcli tests."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import replace
from datetime import datetime, timezone
from decimal import Decimal

import pytest
import pytest_asyncio

from inflowcli.cache import TTLCache
from inflowcli.config import (
    APIConfig,
    CacheConfig,
    FetchConfig,
    InflowConfig,
    PriceConfig,
    WalletConfig,
)
from inflowcli.db import Database
from inflowcli.fetchers.base import TransferPage, TransferQuery
from inflowcli.fetchers.ranges import BlockRangeFetcher
from inflowcli.models import Transfer
from inflowcli.prices import PriceOracle
from inflowcli.store import FileCacheStore

WALLET = "0x1111111111111111111111111111111111111111"
OTHER = "0x2222222222222222222222222222222222222222"
THIRD = "0x3333333333333333333333333333333333333333"

# Fake chain: one block per hour, block 24 is 2025-01-01T00:00:00Z
BLOCK_TIME = 3600
GENESIS_TS = int(datetime(2024, 12, 31, tzinfo=timezone.utc).timestamp())


def block_at(dt: datetime) -> int:
    """Block number whose timestamp is dt on the fake chain."""
    return (int(dt.timestamp()) - GENESIS_TS) // BLOCK_TIME


def block_time(block: int) -> datetime:
    return datetime.fromtimestamp(GENESIS_TS + block * BLOCK_TIME, tz=timezone.utc)


def make_transfer(
    tx_hash: str,
    block: int,
    value: str | int | None = "100",
    asset: str | None = "USDC",
    to_addr: str = WALLET,
    from_addr: str = OTHER,
    unique_id: str = "",
    with_timestamp: bool = True,
) -> Transfer:
    return Transfer(
        hash=tx_hash,
        from_addr=from_addr,
        to_addr=to_addr,
        block_number=block,
        timestamp=block_time(block) if with_timestamp else None,
        asset=asset,
        value=None if value is None else Decimal(str(value)),
        category="erc20" if asset not in (None, "ETH") else "external",
        unique_id=unique_id or f"{tx_hash}:log:{block}",
    )


class FakeProvider:
    """
    In-memory TransferProvider over the fake chain.

    fail_when(query) may return an exception to raise for that query.
    """

    def __init__(
        self,
        transfers: list[Transfer] | None = None,
        head: int = 24 + 24 * 90,
        page_size: int = 1000,
        fail_when: Callable[[TransferQuery], Exception | None] | None = None,
    ) -> None:
        self.transfers = list(transfers or [])
        self.head = head
        self.page_size = page_size
        self.fail_when = fail_when
        self.head_errors: list[Exception] = []
        self.queries: list[TransferQuery] = []
        self.eth_calls: list[tuple[str, str]] = []
        self.eth_call_results: dict[str, str] = {}
        self.closed = False

    async def get_block_number(self) -> int:
        if self.head_errors:
            raise self.head_errors.pop(0)
        return self.head

    async def get_block_timestamp(self, block_number: int) -> int:
        return GENESIS_TS + block_number * BLOCK_TIME

    async def get_asset_transfers(self, query: TransferQuery) -> TransferPage:
        self.queries.append(replace(query))
        if self.fail_when is not None:
            error = self.fail_when(query)
            if error is not None:
                raise error

        matching = [
            t
            for t in self.transfers
            if query.from_block <= t.block_number <= query.to_block
            and (query.to_address is None or t.to_addr == query.to_address.lower())
            and (query.from_address is None or t.from_addr == query.from_address.lower())
        ]
        offset = int(query.page_key or 0)
        page = matching[offset : offset + self.page_size]
        more = offset + self.page_size < len(matching)
        return TransferPage(
            transfers=page, next_page_key=str(offset + self.page_size) if more else None
        )

    async def eth_call(self, to: str, data: str) -> str:
        self.eth_calls.append((to, data))
        selector = data[:10]
        if selector not in self.eth_call_results:
            from inflowcli.exceptions import APIError

            raise APIError(f"execution reverted for {selector}")
        return self.eth_call_results[selector]

    async def close(self) -> None:
        self.closed = True


# ── Config fixtures ───────────────────────────────────────────────────────────


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    """Isolate every test from the developer's INFLOWCLI_* / ALCHEMY_* environment."""
    import os

    for name in list(os.environ):
        if name.startswith("INFLOWCLI_") or name == "ALCHEMY_API_KEY":
            monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("INFLOWCLI_CONFIG_PATH", str(tmp_path / "no-such-config.toml"))


@pytest.fixture
def sample_config(tmp_path) -> InflowConfig:
    """Minimal valid InflowConfig for tests."""
    return InflowConfig(
        api=APIConfig(alchemy_api_key="test_alchemy_key_12345"),
        wallet=WalletConfig(address=WALLET),
        fetch=FetchConfig(backoff_base_seconds=0.0, backoff_cap_seconds=0.0, max_retries=2),
        prices=PriceConfig(use_dex=False),
        cache=CacheConfig(dir=str(tmp_path / "cache"), db_path=":memory:"),
    )


# ── Provider / collaborator fixtures ──────────────────────────────────────────


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def fetcher(provider: FakeProvider) -> BlockRangeFetcher:
    """Fetcher with zero backoff so retries do not sleep."""
    return BlockRangeFetcher(provider, max_retries=2, backoff_base=0.0, backoff_cap=0.0)


@pytest.fixture
def oracle(provider: FakeProvider) -> PriceOracle:
    return PriceOracle(provider, TTLCache(600), PriceConfig(use_dex=False))


# ── Store fixtures ────────────────────────────────────────────────────────────


@pytest.fixture
def file_store(tmp_path) -> FileCacheStore:
    return FileCacheStore(tmp_path / "cache")


@pytest_asyncio.fixture
async def in_memory_db() -> Database:
    """In-memory SQLite store with schema applied."""
    db = Database(":memory:")
    await db.connect()
    yield db
    await db.close()
