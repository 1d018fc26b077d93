"""
Volume aggregation: Transactions → daily/weekly/monthly USD inflow buckets.

Incremental model:
  - New inflow is added onto the existing daily buckets.
  - Weekly and monthly buckets are always recomputed from daily, so the three
    series can never disagree.
  - force_refresh discards the existing cache and rebuilds from the given
    (complete) transaction set.

Transactions are summed in (block_number, hash) order so repeated runs over
the same input produce identical floating point totals.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime, timezone
from typing import Any

from inflowcli.gaps import period_start
from inflowcli.models import BlockInfo, Transaction, VolumeBucket, VolumeCache


def update_volume_cache(
    existing: VolumeCache | None,
    transactions: Iterable[Transaction],
    as_of_block: int,
    force_refresh: bool = False,
    now: datetime | None = None,
    covered_through: datetime | None = None,
) -> VolumeCache:
    """
    Merge transactions into existing (or a fresh cache) and return the result.

    covered_through is the block time of as_of_block, when known. existing is
    not mutated.
    """
    now = now or datetime.now(tz=timezone.utc)
    base = None if force_refresh else existing

    daily: dict[str, float] = {}
    counts = {"in": 0, "out": 0}
    if base is not None:
        for bucket in base.daily:
            if bucket.volume is not None:
                daily[bucket.date] = daily.get(bucket.date, 0.0) + bucket.volume
        counts.update(base.transaction_counts)

    seen: set[str] = set()
    for tx in sorted(transactions, key=lambda t: (t.block_number, t.hash)):
        if tx.hash in seen:
            continue
        seen.add(tx.hash)
        counts[tx.direction] = counts.get(tx.direction, 0) + 1
        if tx.direction != "in":
            continue
        daily[tx.date] = daily.get(tx.date, 0.0) + tx.usd_value

    daily_buckets = [VolumeBucket(date=d, volume=v) for d, v in sorted(daily.items())]

    last_block = as_of_block
    covered = _iso(covered_through) if covered_through is not None else None
    if base is not None and base.block_info is not None:
        if base.block_info.last_processed_block > as_of_block:
            last_block = base.block_info.last_processed_block
            covered = base.block_info.covered_through

    stamp = _iso(now)
    return VolumeCache(
        daily=daily_buckets,
        weekly=rollup(daily_buckets, "weekly"),
        monthly=rollup(daily_buckets, "monthly"),
        last_updated=stamp,
        block_info=BlockInfo(
            last_processed_block=last_block, processing_date=stamp, covered_through=covered
        ),
        transaction_counts=counts,
    )


def rollup(daily: Iterable[VolumeBucket], period: str) -> list[VolumeBucket]:
    """Sum daily buckets into weekly (Monday) or monthly (1st) buckets."""
    totals: dict[str, float] = {}
    for bucket in daily:
        if bucket.volume is None:
            continue
        key = period_start(bucket.date, period).isoformat()
        totals[key] = totals.get(key, 0.0) + bucket.volume
    return [VolumeBucket(date=d, volume=v) for d, v in sorted(totals.items())]


def summarize_counterparties(
    transactions: Iterable[Transaction], wallet: str, limit: int = 10
) -> list[dict[str, Any]]:
    """
    Rank the addresses the wallet exchanged value with.

    Sent/received are from the wallet's point of view. Sorted by transaction
    count, then total USD volume, descending.
    """
    wallet = wallet.lower()
    stats: dict[str, dict[str, Any]] = {}
    for tx in transactions:
        counterparty = tx.from_addr if tx.direction == "in" else tx.to_addr
        counterparty = (counterparty or "").lower()
        if not counterparty or counterparty == wallet:
            continue
        entry = stats.setdefault(
            counterparty,
            {
                "address": counterparty,
                "transactionCount": 0,
                "totalValueSentUsd": 0.0,
                "totalValueReceivedUsd": 0.0,
            },
        )
        entry["transactionCount"] += 1
        if tx.direction == "in":
            entry["totalValueReceivedUsd"] += tx.usd_value
        else:
            entry["totalValueSentUsd"] += tx.usd_value

    ranked = sorted(
        stats.values(),
        key=lambda e: (
            -e["transactionCount"],
            -(e["totalValueSentUsd"] + e["totalValueReceivedUsd"]),
            e["address"],
        ),
    )
    return ranked[:limit]


def _iso(ts: datetime) -> str:
    return ts.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")
