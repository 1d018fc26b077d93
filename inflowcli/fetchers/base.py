"""Provider protocol and the request/response shapes it exchanges."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

from inflowcli.models import Transfer


@dataclass
class TransferQuery:
    """
    One page request for transfer events in a closed block range.

    Exactly one of to_address / from_address is set: the wallet is the
    receiver for inflows and the sender for outflows.
    """

    from_block: int
    to_block: int
    categories: list[str] = field(default_factory=lambda: ["external", "erc20"])
    to_address: str | None = None
    from_address: str | None = None
    max_count: int = 1000
    page_key: str | None = None


@dataclass
class TransferPage:
    transfers: list[Transfer]
    next_page_key: str | None = None  # None = last page


@runtime_checkable
class TransferProvider(Protocol):
    """
    Protocol that all chain data providers must implement.

    Providers are responsible for:
    - Making JSON-RPC calls to the data source
    - Mapping upstream failures onto the inflowcli exception hierarchy
    - Parsing raw transfer records into Transfer objects

    Providers are NOT responsible for:
    - Retrying, chunking or paginating a whole range (that's ranges.py)
    - Pricing (that's prices.py)
    - Deduplication and bucketing (normalizer.py / aggregator.py)
    """

    async def get_block_number(self) -> int:
        """Return the current chain head."""
        ...

    async def get_block_timestamp(self, block_number: int) -> int:
        """Return the block's Unix timestamp (UTC seconds)."""
        ...

    async def get_asset_transfers(self, query: TransferQuery) -> TransferPage:
        """
        Fetch one page of transfers matching query.

        Raises:
            RateLimitError / ProviderServerError / NetworkError: retryable
            RangeTooWideError: the range must be split
            InvalidAPIKeyError: credentials rejected
            APIError: any other upstream error
        """
        ...

    async def eth_call(self, to: str, data: str) -> str:
        """Execute a read-only contract call and return the hex result."""
        ...

    async def close(self) -> None:
        ...
