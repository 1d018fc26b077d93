"""
Shared data models for inflowcli.

These dataclasses are the canonical data shapes used across all modules:
the provider produces Transfers, the normalizer turns them into Transactions,
the aggregator rolls Transactions into a VolumeCache, and the service and
output layers render it.

VolumeCache.to_dict() is the persisted / frontend wire shape and uses the
camelCase keys the dashboard reads (lastUpdated, blockInfo, ...).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any

PERIODS = ("daily", "weekly", "monthly")
DIRECTIONS = ("in", "out")


@dataclass(frozen=True)
class Transfer:
    """A single value-movement event as reported by the data provider."""

    hash: str
    from_addr: str
    to_addr: str
    block_number: int
    timestamp: datetime | None      # None when the provider omitted metadata
    asset: str | None
    value: Decimal | None           # decimal-formatted token amount
    category: str = ""
    unique_id: str = ""             # provider's per-transfer id (hash:log:index)

    @property
    def dedup_key(self) -> str:
        return self.unique_id or self.hash


@dataclass
class Transaction:
    """Normalized, deduplicated, USD-valued representation of a Transfer."""

    hash: str
    from_addr: str
    to_addr: str
    date: str                   # ISO day, UTC
    timestamp: str              # ISO8601 UTC
    block_number: int
    token_symbol: str
    token_amount: Decimal
    usd_value: float
    direction: str              # "in" | "out"
    category: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "hash": self.hash,
            "from": self.from_addr,
            "to": self.to_addr,
            "date": self.date,
            "timestamp": self.timestamp,
            "blockNumber": self.block_number,
            "token": self.token_symbol,
            "tokenAmount": str(self.token_amount),
            "usdValue": self.usd_value,
            "direction": self.direction,
            "category": self.category,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> Transaction:
        return cls(
            hash=d["hash"],
            from_addr=d.get("from", ""),
            to_addr=d.get("to", ""),
            date=d["date"],
            timestamp=d.get("timestamp", ""),
            block_number=int(d.get("blockNumber", 0)),
            token_symbol=d.get("token", ""),
            token_amount=Decimal(str(d.get("tokenAmount", "0"))),
            usd_value=float(d.get("usdValue", 0.0)),
            direction=d.get("direction", "in"),
            category=d.get("category", ""),
        )


@dataclass
class VolumeBucket:
    """Summed USD volume for one calendar period, keyed by its start date."""

    date: str                   # bucket start, ISO day
    volume: float | None        # None = no data for this period

    def to_dict(self) -> dict[str, Any]:
        return {"date": self.date, "volume": self.volume}

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> VolumeBucket:
        vol = d.get("volume")
        return cls(date=str(d["date"]), volume=None if vol is None else float(vol))


@dataclass
class BlockInfo:
    last_processed_block: int
    processing_date: str        # ISO8601 UTC, when the refresh ran
    covered_through: str | None = None  # ISO8601 UTC block time of last_processed_block

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "lastProcessedBlock": self.last_processed_block,
            "processingDate": self.processing_date,
        }
        if self.covered_through is not None:
            d["coveredThrough"] = self.covered_through
        return d


@dataclass
class VolumeCache:
    """
    Daily/weekly/monthly inflow series for one (wallet, year).

    The unit of persistence and the unit handed to the frontend.
    """

    daily: list[VolumeBucket] = field(default_factory=list)
    weekly: list[VolumeBucket] = field(default_factory=list)
    monthly: list[VolumeBucket] = field(default_factory=list)
    last_updated: str = ""
    block_info: BlockInfo | None = None
    transaction_counts: dict[str, int] = field(default_factory=lambda: {"in": 0, "out": 0})

    def series(self, period: str) -> list[VolumeBucket]:
        return getattr(self, period)

    def to_dict(self) -> dict[str, Any]:
        """Serialize for JSON persistence and output."""
        return {
            "daily": [b.to_dict() for b in self.daily],
            "weekly": [b.to_dict() for b in self.weekly],
            "monthly": [b.to_dict() for b in self.monthly],
            "lastUpdated": self.last_updated,
            "blockInfo": self.block_info.to_dict() if self.block_info else None,
            "transactionCounts": dict(self.transaction_counts),
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> VolumeCache:
        """Parse a persisted document; tolerates the legacy {"data": {...}} nesting."""
        if "daily" not in d and isinstance(d.get("data"), dict):
            d = d["data"]
        info = d.get("blockInfo") or None
        counts = d.get("transactionCounts") or {}
        return cls(
            daily=[VolumeBucket.from_dict(b) for b in d.get("daily") or []],
            weekly=[VolumeBucket.from_dict(b) for b in d.get("weekly") or []],
            monthly=[VolumeBucket.from_dict(b) for b in d.get("monthly") or []],
            last_updated=d.get("lastUpdated", ""),
            block_info=(
                BlockInfo(
                    last_processed_block=int(info.get("lastProcessedBlock") or 0),
                    processing_date=info.get("processingDate", ""),
                    covered_through=info.get("coveredThrough"),
                )
                if info
                else None
            ),
            transaction_counts={
                "in": int(counts.get("in", 0)),
                "out": int(counts.get("out", 0)),
            },
        )


def volume_key(wallet: str, year: str | int) -> str:
    """Cache key of the VolumeCache document for (wallet, year)."""
    return f"volume-{wallet}-{year}"


def transactions_key(wallet: str, year: str | int) -> str:
    """Cache key of the transaction ledger for (wallet, year)."""
    return f"transactions-{wallet}-{year}"
