"""Provider Transfer → canonical Transaction."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from datetime import timezone

from inflowcli.exceptions import DataShapeError
from inflowcli.models import Transaction, Transfer

logger = logging.getLogger(__name__)

DEFAULT_SYMBOL = "ETH"


def normalize_transfers(
    transfers: Iterable[Transfer],
    direction: str,
    year: int | str,
    prices: Mapping[str, float],
    seen: set[str],
) -> list[Transaction]:
    """
    Convert transfers into USD-valued Transactions for one calendar year.

    Args:
        transfers: Provider records, ideally sorted by block.
        direction: "in" or "out", relative to the tracked wallet.
        year: UTC calendar year to keep.
        prices: Upper-cased symbol → USD price. Missing symbols price at 1.0.
        seen: Hashes already counted. Mutated in place; first seen wins.

    Returns:
        Transactions in input order.
    """
    year = int(year)
    result: list[Transaction] = []
    for transfer in transfers:
        try:
            tx = _to_transaction(transfer, direction, prices)
        except DataShapeError as e:
            logger.debug("Dropping transfer %s: %s", transfer.hash, e)
            continue

        if int(tx.date[:4]) != year:
            continue
        if tx.hash in seen:
            continue
        seen.add(tx.hash)
        result.append(tx)
    return result


def _to_transaction(transfer: Transfer, direction: str, prices: Mapping[str, float]) -> Transaction:
    if transfer.timestamp is None:
        raise DataShapeError("missing block timestamp", details={"hash": transfer.hash})
    if transfer.value is None:
        raise DataShapeError("missing value", details={"hash": transfer.hash})

    symbol = (transfer.asset or DEFAULT_SYMBOL).upper()
    price = prices.get(symbol, 1.0)
    usd_value = float(transfer.value) * price
    ts = transfer.timestamp
    ts = ts.replace(tzinfo=timezone.utc) if ts.tzinfo is None else ts.astimezone(timezone.utc)

    return Transaction(
        hash=transfer.hash,
        from_addr=transfer.from_addr,
        to_addr=transfer.to_addr,
        date=ts.date().isoformat(),
        timestamp=ts.isoformat().replace("+00:00", "Z"),
        block_number=transfer.block_number,
        token_symbol=symbol,
        token_amount=transfer.value,
        usd_value=usd_value,
        direction=direction,
        category=transfer.category,
    )
