"""
Timestamp → block number lookup.

Finds the first block of a calendar year by searching on block timestamps
instead of assuming a fixed block time. Interpolation steps alternate with
bisection steps: interpolation converges in a few calls on chains with a
steady block time, bisection bounds the worst case.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from typing import Any

from inflowcli.fetchers.base import TransferProvider

logger = logging.getLogger(__name__)

RetryWrapper = Callable[[Callable[[], Awaitable[Any]], str], Awaitable[Any]]


class BlockLocator:
    """
    Maps Unix timestamps to block numbers. Block timestamps are memoized.

    Usage:
        locator = BlockLocator(provider)
        first, last = await locator.year_bounds(2025, head)
    """

    def __init__(self, provider: TransferProvider, retry: RetryWrapper | None = None) -> None:
        self._provider = provider
        self._retry = retry
        self._timestamps: dict[int, int] = {}

    async def timestamp_of(self, block_number: int) -> int:
        cached = self._timestamps.get(block_number)
        if cached is not None:
            return cached
        if self._retry is not None:
            ts = await self._retry(
                lambda: self._provider.get_block_timestamp(block_number),
                f"block {block_number} timestamp",
            )
        else:
            ts = await self._provider.get_block_timestamp(block_number)
        self._timestamps[block_number] = ts
        return ts

    async def find_block_by_timestamp(self, target_ts: int, head: int) -> int:
        """
        Return the first block in [0, head] whose timestamp is >= target_ts.

        Returns head + 1 when every block up to head is older than target_ts.
        """
        lo, hi = 0, head
        ts_lo = await self.timestamp_of(lo)
        if ts_lo >= target_ts:
            return 0
        ts_hi = await self.timestamp_of(hi)
        if ts_hi < target_ts:
            return head + 1

        # ts(lo) < target_ts <= ts(hi)
        interpolate = True
        calls = 0
        while hi - lo > 1:
            if interpolate and ts_hi > ts_lo:
                guess = lo + (target_ts - ts_lo) * (hi - lo) // (ts_hi - ts_lo)
                mid = min(max(guess, lo + 1), hi - 1)
            else:
                mid = (lo + hi) // 2
            interpolate = not interpolate
            ts_mid = await self.timestamp_of(mid)
            calls += 1
            if ts_mid >= target_ts:
                hi, ts_hi = mid, ts_mid
            else:
                lo, ts_lo = mid, ts_mid

        logger.debug("Timestamp %d → block %d after %d lookups", target_ts, hi, calls)
        return hi

    async def year_bounds(self, year: int, head: int) -> tuple[int, int] | None:
        """
        Return (first_block, last_block) of the UTC calendar year, clamped to head.

        Returns None if the year has not started by head or ended before genesis.
        """
        start_ts = int(datetime(year, 1, 1, tzinfo=timezone.utc).timestamp())
        end_ts = int(datetime(year + 1, 1, 1, tzinfo=timezone.utc).timestamp())

        first = await self.find_block_by_timestamp(start_ts, head)
        if first > head:
            return None
        next_year_first = await self.find_block_by_timestamp(end_ts, head)
        last = min(next_year_first - 1, head)
        if last < first:
            return None  # year ended before genesis
        return first, last
