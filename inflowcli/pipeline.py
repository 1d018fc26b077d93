"""
Refresh pipeline: the single entry point that brings a wallet's volume cache
up to date.

Flow:
  1. Read the chain head (with retry); stay safety_buffer_blocks behind it.
  2. Load the existing volume cache and transaction ledger (ignoring expiry).
  3. Locate the year's block range; start after the last processed block.
  4. Fetch inflows (and outflows when track_outgoing) over that range.
  5. Price, normalize and dedupe against the ledger's hashes.
  6. Merge into the volume cache; persist the ledger, then the cache.

Failure handling:
  - ConfigurationError propagates before or during the fetch.
  - ProviderUnavailableError if the head is unreadable or every chunk failed.
  - Failed sub-ranges hold lastProcessedBlock back so the next run refetches
    them; the ledger prevents double counting of what was already fetched.
  - Cache read failure: rebuild in memory, do not persist.
  - Cache write failure: logged, the in-memory result is returned. If the
    ledger was saved but the volume cache was not, the previous ledger is
    written back; should that also fail, a forced refresh repairs the pair.
  - blockInfo.coveredThrough is the block time of lastProcessedBlock, so
    days inside a failed range read as "no data" rather than zero.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from inflowcli.aggregator import update_volume_cache
from inflowcli.cache import TTLCache
from inflowcli.config import FetchConfig, is_valid_address
from inflowcli.exceptions import (
    CacheUnavailableError,
    InvalidAddressError,
    ProviderUnavailableError,
    TransientProviderError,
)
from inflowcli.fetchers.base import TransferProvider
from inflowcli.fetchers.blocks import BlockLocator
from inflowcli.fetchers.ranges import BlockRangeFetcher, FetchResult
from inflowcli.models import Transaction, VolumeCache, transactions_key, volume_key
from inflowcli.normalizer import normalize_transfers
from inflowcli.prices import PriceOracle
from inflowcli.store import CacheStore, open_store

if TYPE_CHECKING:
    from inflowcli.config import InflowConfig

logger = logging.getLogger(__name__)


@dataclass
class RefreshStats:
    """What the last refresh_volume() call did."""

    wallet: str = ""
    year: int = 0
    from_block: int | None = None
    to_block: int | None = None
    new_transactions: int = 0
    failed_ranges: list[tuple[int, int]] = field(default_factory=list)
    truncated_ranges: list[tuple[int, int]] = field(default_factory=list)
    persisted: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "wallet": self.wallet,
            "year": self.year,
            "fromBlock": self.from_block,
            "toBlock": self.to_block,
            "newTransactions": self.new_transactions,
            "failedRanges": [list(r) for r in self.failed_ranges],
            "truncatedRanges": [list(r) for r in self.truncated_ranges],
            "persisted": self.persisted,
        }


class VolumePipeline:
    """
    Wires provider, fetcher, price oracle and cache store together.

    Usage:
        pipeline = VolumePipeline(provider, store, oracle, fetcher)
        cache = await pipeline.refresh_volume("0xabc...", 2025)
    """

    def __init__(
        self,
        provider: TransferProvider,
        store: CacheStore,
        oracle: PriceOracle,
        fetcher: BlockRangeFetcher,
        fetch_config: FetchConfig | None = None,
        cache_ttl_seconds: int = 24 * 3600,
        locator: BlockLocator | None = None,
    ) -> None:
        self._provider = provider
        self._store = store
        self._oracle = oracle
        self._fetcher = fetcher
        self._fetch_config = fetch_config or FetchConfig()
        self._ttl = cache_ttl_seconds
        self._locator = locator or BlockLocator(provider, retry=fetcher.with_retry)
        self.last_stats = RefreshStats()

    async def refresh_volume(
        self,
        wallet_address: str,
        year: int | str,
        last_processed_block: int | None = None,
        force_refresh: bool = False,
        now: datetime | None = None,
    ) -> VolumeCache:
        """
        Bring the volume cache for (wallet, year) up to date and return it.

        Raises:
            InvalidAddressError: wallet_address is not a 0x address
            ConfigurationError: provider rejected the credentials
            ProviderUnavailableError: head unreadable or every chunk failed
        """
        if not is_valid_address(wallet_address):
            raise InvalidAddressError(
                f"Invalid wallet address: {wallet_address!r}. Must be 0x + 40 hex chars.",
                details={"address": wallet_address},
            )
        wallet = wallet_address.lower()
        year = int(year)
        stats = self.last_stats = RefreshStats(wallet=wallet, year=year)

        head = await self._chain_head()
        safe_head = max(head - self._fetch_config.safety_buffer_blocks, 0)

        existing, ledger, persist = await self._load_state(wallet, year)
        stored_ledger = ledger
        if force_refresh:
            existing, ledger = None, []

        bounds = await self._year_bounds(year, safe_head)
        if bounds is None:
            logger.info("Year %d has no blocks at or before %d; nothing to fetch", year, safe_head)
            return self._merge(existing, [], safe_head, force_refresh, now)

        year_first, year_last = bounds
        start = year_first
        if not force_refresh:
            if last_processed_block is not None:
                start = last_processed_block + 1
            elif existing is not None and existing.block_info is not None:
                start = existing.block_info.last_processed_block + 1
        start = max(start, year_first)
        stats.from_block, stats.to_block = start, year_last

        if start > year_last:
            logger.info("Cache for %s/%d already covers block %d", wallet, year, year_last)
            covered = await self._block_time(year_last)
            return self._merge(existing, [], year_last, force_refresh, now, covered)

        results = await self._fetch_all(wallet, start, year_last)
        for result in results:
            stats.failed_ranges.extend(result.failed_ranges)
            stats.truncated_ranges.extend(result.truncated_ranges)
        if all(r.all_failed for r in results):
            raise ProviderUnavailableError(
                f"Every block range between {start} and {year_last} failed",
                details={"failed_ranges": [list(r) for r in stats.failed_ranges]},
            )

        # Stop before the first failed range; the next run refetches from there
        as_of_block = year_last
        if stats.failed_ranges:
            as_of_block = min(lo for lo, _ in stats.failed_ranges) - 1
        covered = await self._block_time(as_of_block)

        symbols = {t.asset for r in results for t in r.transfers}
        prices = await self._oracle.get_prices(symbols)

        seen = {tx.hash for tx in ledger}
        new_transactions: list[Transaction] = []
        for direction, result in zip(("in", "out"), results):
            new_transactions.extend(
                normalize_transfers(result.transfers, direction, year, prices, seen)
            )
        stats.new_transactions = len(new_transactions)
        logger.info(
            "%s/%d: %d new transaction(s) in blocks %d-%d",
            wallet,
            year,
            len(new_transactions),
            start,
            year_last,
        )

        cache = self._merge(existing, new_transactions, as_of_block, force_refresh, now, covered)
        if persist:
            await self._persist(cache, ledger + new_transactions, stored_ledger)
        return cache

    # ──────────────────────────────────────────────────────────────
    # Private helpers
    # ──────────────────────────────────────────────────────────────

    async def _chain_head(self) -> int:
        try:
            return await self._fetcher.with_retry(self._provider.get_block_number, "chain head")
        except TransientProviderError as e:
            raise ProviderUnavailableError(f"Cannot read chain head: {e}") from e

    async def _year_bounds(self, year: int, safe_head: int) -> tuple[int, int] | None:
        try:
            return await self._locator.year_bounds(year, safe_head)
        except TransientProviderError as e:
            raise ProviderUnavailableError(f"Cannot locate blocks for {year}: {e}") from e

    async def _load_state(
        self, wallet: str, year: int
    ) -> tuple[VolumeCache | None, list[Transaction], bool]:
        """Return (existing cache, ledger, persist?)."""
        try:
            doc = await self._store.get(volume_key(wallet, year), ignore_expiry=True)
            ledger_doc = await self._store.get(transactions_key(wallet, year), ignore_expiry=True)
        except CacheUnavailableError as e:
            logger.warning("Cache unreadable, rebuilding in memory without saving: %s", e)
            return None, [], False

        existing = None
        if doc:
            try:
                existing = VolumeCache.from_dict(doc)
            except (KeyError, TypeError, ValueError, AttributeError) as e:
                logger.warning("Discarding malformed volume cache for %s/%d: %s", wallet, year, e)

        ledger: list[Transaction] = []
        if existing is not None and isinstance(ledger_doc, list):
            for entry in ledger_doc:
                try:
                    ledger.append(Transaction.from_dict(entry))
                except (KeyError, TypeError, ValueError, ArithmeticError) as e:
                    logger.debug("Skipping malformed ledger entry: %s", e)
        return existing, ledger, True

    async def _fetch_all(self, wallet: str, start: int, end: int) -> list[FetchResult]:
        categories = self._fetch_config.categories
        results = [await self._fetcher.fetch(wallet, start, end, "in", categories)]
        if self._fetch_config.track_outgoing:
            results.append(await self._fetcher.fetch(wallet, start, end, "out", categories))
        return results

    async def _block_time(self, block_number: int) -> datetime | None:
        """Block time of block_number, or None when it cannot be read."""
        if block_number < 0:
            return None
        try:
            ts = await self._locator.timestamp_of(block_number)
        except TransientProviderError as e:
            logger.warning("Cannot read time of block %d: %s", block_number, e)
            return None
        return datetime.fromtimestamp(ts, tz=timezone.utc)

    def _merge(
        self,
        existing: VolumeCache | None,
        transactions: list[Transaction],
        as_of_block: int,
        force_refresh: bool,
        now: datetime | None,
        covered_through: datetime | None = None,
    ) -> VolumeCache:
        return update_volume_cache(
            existing,
            transactions,
            as_of_block,
            force_refresh=force_refresh,
            now=now,
            covered_through=covered_through,
        )

    async def _persist(
        self,
        cache: VolumeCache,
        ledger: list[Transaction],
        stored_ledger: list[Transaction],
    ) -> None:
        """Write the ledger, then the volume cache; undo the ledger if the cache write fails."""
        wallet, year = self.last_stats.wallet, self.last_stats.year
        ledger_key = transactions_key(wallet, year)
        try:
            await self._store.set(ledger_key, [tx.to_dict() for tx in ledger], self._ttl)
        except CacheUnavailableError as e:
            logger.warning("Could not save transaction ledger for %s/%d: %s", wallet, year, e)
            return
        try:
            await self._store.set(volume_key(wallet, year), cache.to_dict(), self._ttl)
        except CacheUnavailableError as e:
            logger.warning("Could not save volume cache for %s/%d: %s", wallet, year, e)
            try:
                await self._store.set(ledger_key, [tx.to_dict() for tx in stored_ledger], self._ttl)
            except CacheUnavailableError as restore_error:
                logger.error(
                    "Ledger for %s/%d is ahead of its volume cache; run a forced refresh: %s",
                    wallet,
                    year,
                    restore_error,
                )
            return
        self.last_stats.persisted = True


async def refresh_volume(
    config: InflowConfig,
    wallet_address: str | None = None,
    year: int | str | None = None,
    last_processed_block: int | None = None,
    force_refresh: bool = False,
) -> tuple[VolumeCache, RefreshStats]:
    """
    Build the collaborators from config, run one refresh, and clean up.

    Returns the refreshed cache and the run's stats.
    """
    from inflowcli.config import ensure_runnable
    from inflowcli.fetchers import get_provider

    wallet = ensure_runnable(config, wallet_address)
    year = int(year) if year is not None else datetime.now(tz=timezone.utc).year

    provider = get_provider(config)
    store = await open_store(config)
    try:
        fetcher = BlockRangeFetcher.from_config(provider, config.fetch)
        oracle = PriceOracle(provider, TTLCache(config.prices.ttl_seconds), config.prices)
        pipeline = VolumePipeline(
            provider,
            store,
            oracle,
            fetcher,
            fetch_config=config.fetch,
            cache_ttl_seconds=config.cache.ttl_hours * 3600,
        )
        cache = await pipeline.refresh_volume(
            wallet, year, last_processed_block=last_processed_block, force_refresh=force_refresh
        )
        return cache, pipeline.last_stats
    finally:
        await store.close()
        await provider.close()
