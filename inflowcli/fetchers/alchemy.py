"""
Alchemy JSON-RPC client.

Fetches native and ERC-20 transfers to/from the tracked wallet via
alchemy_getAssetTransfers, plus the handful of standard eth_* calls the
pipeline needs (chain head, block timestamps, read-only contract calls).

API docs: https://docs.alchemy.com/reference/alchemy-getassettransfers

Design decisions:
- Uses async httpx for all HTTP calls.
- One request per call; retry, backoff and range splitting live in ranges.py.
- Upstream failures are mapped onto the inflowcli exception hierarchy so the
  fetcher can tell retryable errors from permanent ones.
- Malformed transfer records are skipped here; records without a timestamp
  are kept (timestamp=None) and dropped later by the normalizer.
"""

from __future__ import annotations

import itertools
import logging
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any

import httpx

from inflowcli.exceptions import (
    APIError,
    ConnectionFailedError,
    InvalidAPIKeyError,
    NetworkTimeoutError,
    ProviderServerError,
    RangeTooWideError,
    RateLimitError,
)
from inflowcli.fetchers.base import TransferPage, TransferQuery
from inflowcli.models import Transfer

logger = logging.getLogger(__name__)

# Substrings of JSON-RPC error messages that mean "split the range"
_RANGE_ERROR_HINTS = (
    "block range",
    "response size",
    "log response size exceeded",
    "query returned more than",
    "range too large",
    "too many results",
    "exceeds max",
)

_RATE_LIMIT_HINTS = ("rate limit", "compute units", "throughput", "too many requests")

_AUTH_HINTS = ("unauthorized", "invalid api key", "must be authenticated", "api key")


class AlchemyClient:
    """
    Async Alchemy JSON-RPC client.

    Usage:
        client = AlchemyClient(config.api.endpoint())
        head = await client.get_block_number()
        page = await client.get_asset_transfers(TransferQuery(...))
        await client.close()
    """

    def __init__(self, endpoint: str, timeout: float = 30.0) -> None:
        self._endpoint = endpoint
        self._client = httpx.AsyncClient(timeout=timeout)
        self._ids = itertools.count(1)

    async def get_block_number(self) -> int:
        result = await self._rpc("eth_blockNumber", [])
        return _hex_to_int(result, "eth_blockNumber")

    async def get_block_timestamp(self, block_number: int) -> int:
        result = await self._rpc("eth_getBlockByNumber", [hex(block_number), False])
        if not isinstance(result, dict) or "timestamp" not in result:
            raise APIError(
                f"Block {block_number} not found",
                details={"block_number": block_number},
            )
        return _hex_to_int(result["timestamp"], "eth_getBlockByNumber")

    async def get_asset_transfers(self, query: TransferQuery) -> TransferPage:
        """Fetch one page of transfers. Does not follow pageKey."""
        params: dict[str, Any] = {
            "fromBlock": hex(query.from_block),
            "toBlock": hex(query.to_block),
            "category": list(query.categories),
            "withMetadata": True,
            "excludeZeroValue": True,
            "maxCount": hex(query.max_count),
            "order": "asc",
        }
        if query.to_address:
            params["toAddress"] = query.to_address
        if query.from_address:
            params["fromAddress"] = query.from_address
        if query.page_key:
            params["pageKey"] = query.page_key

        result = await self._rpc("alchemy_getAssetTransfers", [params])
        if not isinstance(result, dict):
            raise APIError("Malformed alchemy_getAssetTransfers result")

        transfers = []
        for raw in result.get("transfers") or []:
            t = self._parse_transfer(raw)
            if t is not None:
                transfers.append(t)

        logger.debug(
            "alchemy_getAssetTransfers %d-%d: %d transfers, more=%s",
            query.from_block,
            query.to_block,
            len(transfers),
            bool(result.get("pageKey")),
        )
        return TransferPage(transfers=transfers, next_page_key=result.get("pageKey") or None)

    async def eth_call(self, to: str, data: str) -> str:
        result = await self._rpc("eth_call", [{"to": to, "data": data}, "latest"])
        if not isinstance(result, str):
            raise APIError("Malformed eth_call result", details={"to": to})
        return result

    async def close(self) -> None:
        await self._client.aclose()

    # ──────────────────────────────────────────────────────────────
    # Private helpers
    # ──────────────────────────────────────────────────────────────

    async def _rpc(self, method: str, params: list[Any]) -> Any:
        """POST one JSON-RPC request and return its result, or raise."""
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        try:
            resp = await self._client.post(self._endpoint, json=payload)
        except httpx.TimeoutException as e:
            raise NetworkTimeoutError(f"Alchemy timeout on {method}: {e}") from e
        except httpx.TransportError as e:
            raise ConnectionFailedError(f"Cannot connect to Alchemy: {e}") from e

        if resp.status_code == 429:
            retry_after = _retry_after(resp.headers.get("retry-after"))
            raise RateLimitError("Alchemy rate limit exceeded", retry_after=retry_after)
        if resp.status_code in (401, 403):
            raise InvalidAPIKeyError("Alchemy API key was rejected")
        if resp.status_code >= 500:
            raise ProviderServerError(
                f"Alchemy returned HTTP {resp.status_code} on {method}",
                status_code=resp.status_code,
            )
        if resp.status_code != 200:
            raise APIError(
                f"Alchemy returned HTTP {resp.status_code} on {method}",
                details={"status_code": resp.status_code},
            )

        try:
            data = resp.json()
        except ValueError as e:
            raise APIError(f"Alchemy returned invalid JSON on {method}") from e

        error = data.get("error") if isinstance(data, dict) else None
        if error:
            _raise_rpc_error(method, error)
        if not isinstance(data, dict) or "result" not in data:
            raise APIError(f"Alchemy response to {method} has no result")
        return data["result"]

    def _parse_transfer(self, raw: dict[str, Any]) -> Transfer | None:
        """Parse one alchemy_getAssetTransfers record. Returns None if unusable."""
        try:
            tx_hash = raw["hash"]
            block_number = int(raw["blockNum"], 16)
        except (KeyError, TypeError, ValueError):
            logger.debug("Skipping transfer without hash/blockNum: %r", raw)
            return None

        value = raw.get("value")
        try:
            amount = None if value is None else Decimal(str(value))
        except InvalidOperation:
            amount = None

        metadata = raw.get("metadata") or {}
        return Transfer(
            hash=tx_hash,
            from_addr=(raw.get("from") or "").lower(),
            to_addr=(raw.get("to") or "").lower(),
            block_number=block_number,
            timestamp=_parse_timestamp(metadata.get("blockTimestamp")),
            asset=raw.get("asset"),
            value=amount,
            category=raw.get("category") or "",
            unique_id=raw.get("uniqueId") or "",
        )


def _raise_rpc_error(method: str, error: Any) -> None:
    if isinstance(error, dict):
        code = error.get("code")
        message = str(error.get("message", ""))
    else:
        code = None
        message = str(error)
    lowered = message.lower()
    details = {"method": method, "rpc_code": code}

    if code == 429 or any(h in lowered for h in _RATE_LIMIT_HINTS):
        raise RateLimitError(f"Alchemy rate limit on {method}: {message}")
    if any(h in lowered for h in _RANGE_ERROR_HINTS):
        raise RangeTooWideError(f"Alchemy rejected range on {method}: {message}", details=details)
    if any(h in lowered for h in _AUTH_HINTS):
        raise InvalidAPIKeyError(f"Alchemy rejected credentials: {message}", details=details)
    raise APIError(f"Alchemy error on {method}: {message}", details=details)


def _parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO8601 block timestamp (e.g. 2025-03-05T12:00:00.000Z) as UTC."""
    if not value or not isinstance(value, str):
        return None
    try:
        ts = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def _hex_to_int(value: Any, method: str) -> int:
    try:
        return int(value, 16)
    except (TypeError, ValueError) as e:
        raise APIError(f"Malformed {method} result: {value!r}") from e


def _retry_after(header: str | None) -> int:
    try:
        return max(int(header or 1), 1)
    except ValueError:
        return 1
