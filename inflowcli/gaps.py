"""
Gap filling: turn sparse volume buckets into contiguous date series.

Conventions shared with the aggregator:
  daily   → the date itself
  weekly  → Monday of the ISO week containing the date
  monthly → first day of the month

A missing bucket means either "fetched, no activity" (fill_value, 0.0) or
"never fetched" (None). Periods starting after known_through are the latter.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import date, datetime, timedelta

from inflowcli.exceptions import InvalidPeriodError
from inflowcli.models import PERIODS, VolumeBucket, VolumeCache


def validate_period(period: str) -> str:
    if period not in PERIODS:
        raise InvalidPeriodError(
            f"Invalid period: {period!r}. Must be one of {', '.join(PERIODS)}.",
            details={"period": period},
        )
    return period


def period_start(d: date | str, period: str) -> date:
    """Start date of the period instance containing d."""
    validate_period(period)
    d = _as_date(d)
    if period == "daily":
        return d
    if period == "weekly":
        return d - timedelta(days=d.weekday())
    return d.replace(day=1)


def next_period(d: date, period: str) -> date:
    """Start of the period instance following the one that starts at d."""
    if period == "daily":
        return d + timedelta(days=1)
    if period == "weekly":
        return d + timedelta(days=7)
    if d.month == 12:
        return date(d.year + 1, 1, 1)
    return date(d.year, d.month + 1, 1)


def fill_gaps(
    buckets: Iterable[VolumeBucket],
    period: str,
    start: date | str,
    end: date | str,
    known_through: date | str | None = None,
    fill_value: float | None = 0.0,
) -> list[VolumeBucket]:
    """
    Emit one bucket per period instance in [start, end], ascending.

    start is aligned down to its period start. Input buckets outside the
    range are dropped; input buckets falling in the same period are summed.

    Args:
        buckets: Sparse input series.
        period: "daily" | "weekly" | "monthly".
        start, end: Inclusive range, as dates or ISO strings.
        known_through: Last date covered by processed data. Missing periods
            starting after it get None instead of fill_value.
        fill_value: Value for missing periods that were covered.
    """
    validate_period(period)
    first = period_start(start, period)
    last = _as_date(end)
    cutoff = _as_date(known_through) if known_through is not None else None

    totals: dict[date, float] = {}
    for bucket in buckets:
        if bucket.volume is None:
            continue
        key = period_start(bucket.date, period)
        totals[key] = totals.get(key, 0.0) + bucket.volume

    filled: list[VolumeBucket] = []
    cur = first
    while cur <= last:
        if cur in totals:
            volume: float | None = totals[cur]
        elif cutoff is None or cur <= cutoff:
            volume = fill_value
        else:
            volume = None
        filled.append(VolumeBucket(date=cur.isoformat(), volume=volume))
        cur = next_period(cur, period)
    return filled


def fill_daily(buckets, start, end, known_through=None, fill_value=0.0) -> list[VolumeBucket]:
    return fill_gaps(buckets, "daily", start, end, known_through, fill_value)


def fill_weekly(buckets, start, end, known_through=None, fill_value=0.0) -> list[VolumeBucket]:
    return fill_gaps(buckets, "weekly", start, end, known_through, fill_value)


def fill_monthly(buckets, start, end, known_through=None, fill_value=0.0) -> list[VolumeBucket]:
    return fill_gaps(buckets, "monthly", start, end, known_through, fill_value)


def fill_year(cache: VolumeCache | None, year: int | str) -> VolumeCache:
    """
    Gap-fill all three series over the full calendar year.

    With no cache every period is None. Otherwise empty periods up to the
    block time the data covers are 0.0 and later ones None. Documents written
    before coveredThrough existed fall back to the processing date.
    """
    year = int(year)
    start, end = date(year, 1, 1), date(year, 12, 31)

    if cache is None:
        return VolumeCache(
            daily=fill_daily([], start, end, fill_value=None),
            weekly=fill_weekly([], start, end, fill_value=None),
            monthly=fill_monthly([], start, end, fill_value=None),
        )

    known_through = None
    if cache.block_info and cache.block_info.covered_through:
        known_through = _as_date(cache.block_info.covered_through)
    elif cache.block_info and cache.block_info.processing_date:
        known_through = _as_date(cache.block_info.processing_date)
    elif cache.last_updated:
        known_through = _as_date(cache.last_updated)

    return VolumeCache(
        daily=fill_daily(cache.daily, start, end, known_through),
        weekly=fill_weekly(cache.weekly, start, end, known_through),
        monthly=fill_monthly(cache.monthly, start, end, known_through),
        last_updated=cache.last_updated,
        block_info=cache.block_info,
        transaction_counts=dict(cache.transaction_counts),
    )


def _as_date(value: date | str) -> date:
    """Accept a date, a datetime, or an ISO day / ISO8601 timestamp string."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value)
    if len(text) > 10:
        return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
    return date.fromisoformat(text)
