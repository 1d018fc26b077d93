"""
Block-range fetcher: turns one closed block interval into the complete set of
matching transfers.

Responsibilities:
- Split wide ranges into chunks of at most max_block_span blocks.
- Follow pageKey up to max_pages pages per sub-range.
- Retry transient provider failures with capped exponential backoff.
- Halve a sub-range the provider rejects as too wide.
- Degrade a sub-range that keeps failing: record it in failed_ranges and move
  on, keeping whatever pages were collected before the failure.
- Filter to the requested interval, drop duplicates, sort by block.

Retry schedule (attempt n = 0, 1, ...):
    delay = min(base * 2**n, cap)     # 1s, 2s, 4s, 8s, 16s, 30s ...
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TypeVar

from inflowcli.exceptions import ProviderError, RangeTooWideError, TransientProviderError
from inflowcli.fetchers.base import TransferPage, TransferProvider, TransferQuery
from inflowcli.models import Transfer

logger = logging.getLogger(__name__)

DIRECTIONS = ("in", "out")

T = TypeVar("T")


@dataclass
class FetchResult:
    """Outcome of one fetch() call."""

    transfers: list[Transfer] = field(default_factory=list)
    failed_ranges: list[tuple[int, int]] = field(default_factory=list)
    truncated_ranges: list[tuple[int, int]] = field(default_factory=list)
    chunks_attempted: int = 0
    chunks_failed: int = 0      # chunks where no sub-range succeeded

    @property
    def all_failed(self) -> bool:
        return self.chunks_attempted > 0 and self.chunks_failed == self.chunks_attempted


@dataclass
class _ChunkOutcome:
    transfers: list[Transfer] = field(default_factory=list)
    failed: list[tuple[int, int]] = field(default_factory=list)
    truncated: list[tuple[int, int]] = field(default_factory=list)
    succeeded: bool = False


def split_range(from_block: int, to_block: int, span: int) -> list[tuple[int, int]]:
    """Split [from_block, to_block] into consecutive chunks of at most span blocks."""
    if from_block > to_block:
        raise ValueError(f"from_block {from_block} > to_block {to_block}")
    if span < 1:
        raise ValueError(f"span must be >= 1, got {span}")
    chunks = []
    start = from_block
    while start <= to_block:
        end = min(start + span - 1, to_block)
        chunks.append((start, end))
        start = end + 1
    return chunks


def backoff_delay(attempt: int, base: float, cap: float) -> float:
    return min(base * (2**attempt), cap)


class BlockRangeFetcher:
    """
    Fetches all transfers to (or from) an address over a block range.

    Usage:
        fetcher = BlockRangeFetcher.from_config(provider, config.fetch)
        result = await fetcher.fetch(wallet, 1_000, 2_000_000, direction="in")
        result.transfers, result.failed_ranges
    """

    def __init__(
        self,
        provider: TransferProvider,
        max_block_span: int = 500_000,
        max_pages: int = 5,
        max_count: int = 1000,
        max_retries: int = 5,
        backoff_base: float = 1.0,
        backoff_cap: float = 30.0,
        concurrency: int = 1,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._provider = provider
        self.max_block_span = max_block_span
        self.max_pages = max_pages
        self.max_count = max_count
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.backoff_cap = backoff_cap
        self.concurrency = max(concurrency, 1)
        self._sleep = sleep

    @classmethod
    def from_config(cls, provider: TransferProvider, fetch_config) -> BlockRangeFetcher:
        return cls(
            provider,
            max_block_span=fetch_config.max_block_span,
            max_pages=fetch_config.max_pages,
            max_count=fetch_config.max_count,
            max_retries=fetch_config.max_retries,
            backoff_base=fetch_config.backoff_base_seconds,
            backoff_cap=fetch_config.backoff_cap_seconds,
            concurrency=fetch_config.concurrency,
        )

    async def fetch(
        self,
        address: str,
        from_block: int,
        to_block: int,
        direction: str = "in",
        categories: list[str] | None = None,
    ) -> FetchResult:
        """
        Fetch every transfer in [from_block, to_block] for address.

        Raises:
            ValueError: from_block > to_block or unknown direction
            ConfigurationError: provider rejected the credentials
        """
        if from_block > to_block:
            raise ValueError(f"from_block {from_block} > to_block {to_block}")
        if direction not in DIRECTIONS:
            raise ValueError(f"direction must be one of {DIRECTIONS}, got {direction!r}")
        categories = list(categories or ["external", "erc20"])

        chunks = split_range(from_block, to_block, self.max_block_span)
        semaphore = asyncio.Semaphore(self.concurrency)

        async def run(start: int, end: int) -> _ChunkOutcome:
            async with semaphore:
                return await self._fetch_chunk(address, start, end, direction, categories)

        if self.concurrency == 1:
            outcomes = [await run(start, end) for start, end in chunks]
        else:
            outcomes = await asyncio.gather(*(run(start, end) for start, end in chunks))

        result = FetchResult(chunks_attempted=len(chunks))
        collected: list[Transfer] = []
        for outcome in outcomes:
            collected.extend(outcome.transfers)
            result.failed_ranges.extend(outcome.failed)
            result.truncated_ranges.extend(outcome.truncated)
            if not outcome.succeeded:
                result.chunks_failed += 1

        result.transfers = _finalize(collected, from_block, to_block)
        result.failed_ranges.sort()
        if result.failed_ranges:
            logger.warning(
                "Fetched %d-%d (%s) with %d failed sub-range(s): %s",
                from_block,
                to_block,
                direction,
                len(result.failed_ranges),
                result.failed_ranges,
            )
        return result

    async def with_retry(self, call: Callable[[], Awaitable[T]], label: str) -> T:
        """
        Await call(), retrying TransientProviderError up to max_retries times.

        RangeTooWideError is never retried; the caller splits the range.
        """
        attempt = 0
        while True:
            try:
                return await call()
            except RangeTooWideError:
                raise
            except TransientProviderError as e:
                if attempt >= self.max_retries:
                    raise
                delay = backoff_delay(attempt, self.backoff_base, self.backoff_cap)
                logger.warning(
                    "Transient error on %s (attempt %d/%d), retrying in %.1fs: %s",
                    label,
                    attempt + 1,
                    self.max_retries,
                    delay,
                    e,
                )
                await self._sleep(delay)
                attempt += 1

    # ──────────────────────────────────────────────────────────────
    # Private helpers
    # ──────────────────────────────────────────────────────────────

    async def _fetch_chunk(
        self,
        address: str,
        start: int,
        end: int,
        direction: str,
        categories: list[str],
    ) -> _ChunkOutcome:
        """Fetch one chunk, halving sub-ranges the provider rejects as too wide."""
        outcome = _ChunkOutcome()
        pending = [(start, end)]
        while pending:
            lo, hi = pending.pop()
            sink: list[Transfer] = []
            try:
                truncated = await self._fetch_pages(address, lo, hi, direction, categories, sink)
            except RangeTooWideError as e:
                outcome.transfers.extend(sink)
                if lo == hi:
                    logger.warning("Block %d still too wide for provider: %s", lo, e)
                    outcome.failed.append((lo, hi))
                    continue
                mid = (lo + hi) // 2
                logger.debug("Range %d-%d too wide, splitting at %d", lo, hi, mid)
                # Stack: lower half is popped first
                pending.append((mid + 1, hi))
                pending.append((lo, mid))
                continue
            except ProviderError as e:
                outcome.transfers.extend(sink)
                logger.warning("Giving up on blocks %d-%d: %s", lo, hi, e)
                outcome.failed.append((lo, hi))
                continue

            outcome.transfers.extend(sink)
            outcome.succeeded = True
            if truncated:
                outcome.truncated.append((lo, hi))
        return outcome

    async def _fetch_pages(
        self,
        address: str,
        lo: int,
        hi: int,
        direction: str,
        categories: list[str],
        sink: list[Transfer],
    ) -> bool:
        """
        Follow pageKey for one sub-range, appending into sink.

        Returns True if the page ceiling cut the sub-range short.
        """
        query = TransferQuery(
            from_block=lo,
            to_block=hi,
            categories=categories,
            to_address=address if direction == "in" else None,
            from_address=address if direction == "out" else None,
            max_count=self.max_count,
        )
        for page_no in range(self.max_pages):
            page = await self._with_retry(query)
            sink.extend(page.transfers)
            logger.debug(
                "Blocks %d-%d page %d: %d transfers", lo, hi, page_no + 1, len(page.transfers)
            )
            if not page.next_page_key:
                return False
            query.page_key = page.next_page_key

        logger.warning(
            "Blocks %d-%d hit the %d-page ceiling; later transfers in this range are missing",
            lo,
            hi,
            self.max_pages,
        )
        return True

    async def _with_retry(self, query: TransferQuery) -> TransferPage:
        return await self.with_retry(
            lambda: self._provider.get_asset_transfers(query),
            f"blocks {query.from_block}-{query.to_block}",
        )


def _finalize(transfers: list[Transfer], from_block: int, to_block: int) -> list[Transfer]:
    """In-range, first occurrence per dedup key, sorted by block."""
    seen: set[str] = set()
    kept = []
    for t in sorted(transfers, key=lambda t: t.block_number):
        if not from_block <= t.block_number <= to_block:
            continue
        if t.dedup_key in seen:
            continue
        seen.add(t.dedup_key)
        kept.append(t)
    return kept
