"""
Read path for the frontend: cached volume series, gap-filled and reshaped.

Never touches the provider. A missing, unreadable or malformed cache yields a
full calendar of null buckets with source="empty" and a warning, so the
consumer can always render.
"""

from __future__ import annotations

import logging
from typing import Any

from inflowcli.aggregator import summarize_counterparties
from inflowcli.cache import TTLCache
from inflowcli.config import is_valid_address
from inflowcli.exceptions import CacheUnavailableError, InvalidAddressError
from inflowcli.gaps import fill_year, validate_period
from inflowcli.models import PERIODS, Transaction, VolumeCache, transactions_key, volume_key
from inflowcli.store import CacheStore

logger = logging.getLogger(__name__)

EMPTY_WARNING = "No cached data for this wallet and year; run a refresh to populate it."
UNAVAILABLE_WARNING = "Cache store is unavailable; showing empty series."
MALFORMED_WARNING = "Cached data is unreadable; run a forced refresh to rebuild it."

_MALFORMED = (KeyError, TypeError, ValueError, AttributeError, ArithmeticError)


class VolumeService:
    """
    Usage:
        service = VolumeService(store, TTLCache(60))
        payload = await service.get_volume_data(wallet, 2025, "weekly")
    """

    def __init__(self, store: CacheStore, response_cache: TTLCache, response_ttl: float = 60) -> None:
        self._store = store
        self._responses = response_cache
        self._ttl = response_ttl

    async def get_volume_data(
        self, wallet: str, year: int | str, period: str = "daily"
    ) -> dict[str, Any]:
        """
        Return {period, data, daily, weekly, monthly, source, lastUpdated,
        blockInfo, transactionCounts, warning?} for one wallet and year.

        Raises:
            InvalidPeriodError: period is not daily/weekly/monthly
            InvalidAddressError: wallet is not a 0x address
        """
        validate_period(period)
        wallet = _check_wallet(wallet)
        year = int(year)

        key = f"volume:{wallet}:{year}:{period}"
        cached = self._responses.get(key)
        if cached is not None:
            return cached

        cache, warning = await self._load_cache(wallet, year)
        try:
            filled = fill_year(cache, year)
        except _MALFORMED as e:
            logger.warning("Ignoring malformed volume buckets for %s/%d: %s", wallet, year, e)
            cache, warning = None, MALFORMED_WARNING
            filled = fill_year(None, year)
        series = {p: [b.to_dict() for b in filled.series(p)] for p in PERIODS}
        payload: dict[str, Any] = {
            "period": period,
            "data": series[period],
            **series,
            "source": "cache" if cache is not None else "empty",
            "lastUpdated": cache.last_updated if cache is not None else None,
            "blockInfo": cache.block_info.to_dict() if cache and cache.block_info else None,
            "transactionCounts": dict(filled.transaction_counts),
        }
        if cache is None:
            payload["warning"] = warning or EMPTY_WARNING
            return payload  # empty responses are not memoized

        self._responses.set(key, payload, ttl=self._ttl)
        return payload

    async def get_counterparties(
        self, wallet: str, year: int | str, limit: int = 10
    ) -> dict[str, Any]:
        """Top counterparties from the transaction ledger."""
        wallet = _check_wallet(wallet)
        year = int(year)
        warning = None
        try:
            doc = await self._store.get(transactions_key(wallet, year), ignore_expiry=True)
        except CacheUnavailableError as e:
            logger.warning("Transaction ledger unreadable for %s/%d: %s", wallet, year, e)
            doc, warning = None, UNAVAILABLE_WARNING

        if doc and not isinstance(doc, list):
            logger.warning("Ignoring malformed transaction ledger for %s/%d", wallet, year)
            doc, warning = None, MALFORMED_WARNING

        transactions: list[Transaction] = []
        skipped = 0
        for entry in doc or []:
            try:
                transactions.append(Transaction.from_dict(entry))
            except _MALFORMED as e:
                logger.debug("Skipping malformed ledger entry: %s", e)
                skipped += 1
        if skipped:
            logger.warning("Skipped %d malformed ledger entries for %s/%d", skipped, wallet, year)
            warning = MALFORMED_WARNING

        result: dict[str, Any] = {
            "wallet": wallet,
            "year": year,
            "counterparties": summarize_counterparties(transactions, wallet, limit),
            "source": "cache" if transactions else "empty",
        }
        if warning:
            result["warning"] = warning
        return result

    def invalidate(self, wallet: str, year: int | str) -> None:
        for period in PERIODS:
            self._responses.delete(f"volume:{wallet.lower()}:{int(year)}:{period}")

    async def _load_cache(self, wallet: str, year: int) -> tuple[VolumeCache | None, str | None]:
        """Return (cache, warning). An unreadable store or document yields no cache."""
        try:
            doc = await self._store.get(volume_key(wallet, year), ignore_expiry=True)
        except CacheUnavailableError as e:
            logger.warning("Volume cache unreadable for %s/%d: %s", wallet, year, e)
            return None, UNAVAILABLE_WARNING
        if not doc:
            return None, None
        try:
            return VolumeCache.from_dict(doc), None
        except _MALFORMED as e:
            logger.warning("Ignoring malformed volume cache for %s/%d: %s", wallet, year, e)
            return None, MALFORMED_WARNING


def _check_wallet(wallet: str) -> str:
    if not is_valid_address(wallet):
        raise InvalidAddressError(
            f"Invalid wallet address: {wallet!r}. Must be 0x + 40 hex chars.",
            details={"address": wallet},
        )
    return wallet.lower()
