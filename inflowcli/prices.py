"""
Token → USD price resolution.

Sources, in order:
  1. Stablecoins (USDC, USDT, DAI, USDbC) are pinned to 1.0.
  2. ETH / WETH: WETH/USDC pool reserves read with eth_call on the DEX
     factory's pair (getPair → token0 → getReserves).
  3. Last price successfully resolved for the symbol in this process.
  4. The configured static fallback (prices.eth_fallback_usd).
Unknown tokens are valued at 1.0 with a warning.

Prices are current spot prices, applied to every transaction in a refresh;
historical (per-block) pricing is not attempted.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from inflowcli.cache import TTLCache
from inflowcli.config import PriceConfig
from inflowcli.exceptions import PriceLookupError, ProviderError
from inflowcli.fetchers.base import TransferProvider

logger = logging.getLogger(__name__)

STABLECOINS = frozenset({"USDC", "USDT", "DAI", "USDBC"})
ETH_SYMBOLS = frozenset({"ETH", "WETH"})

USDC_DECIMALS = 6
WETH_DECIMALS = 18

# Function selectors (first 4 bytes of keccak256 of the signature)
SELECTOR_GET_PAIR = "0xe6a43905"    # getPair(address,address)
SELECTOR_TOKEN0 = "0x0dfe1681"      # token0()
SELECTOR_GET_RESERVES = "0x0902f1ac"  # getReserves()

ZERO_ADDRESS = "0x" + "0" * 40


class PriceOracle:
    """
    Resolves USD prices for token symbols.

    Usage:
        oracle = PriceOracle(provider, TTLCache(600), config.prices)
        eth = await oracle.get_price("ETH")
    """

    def __init__(
        self,
        provider: TransferProvider | None,
        cache: TTLCache,
        config: PriceConfig | None = None,
    ) -> None:
        self._provider = provider
        self._cache = cache
        self._config = config or PriceConfig()
        self._last_good: dict[str, float] = {}
        self._warned: set[str] = set()

    async def get_price(self, symbol: str | None) -> float:
        """
        Return the USD price of one unit of symbol.

        Lookup failures fall back to the last good or configured price.

        Raises:
            ConfigurationError: the provider rejected the API key
        """
        sym = (symbol or "ETH").upper()
        if sym in STABLECOINS:
            return 1.0

        cached = self._cache.get(f"price:{sym}")
        if cached is not None:
            return cached

        if sym in ETH_SYMBOLS:
            price = await self._eth_price()
        else:
            if sym not in self._warned:
                logger.warning("No price source for token %s; valuing at 1.0 USD", sym)
                self._warned.add(sym)
            price = 1.0

        self._cache.set(f"price:{sym}", price, ttl=self._config.ttl_seconds)
        return price

    async def get_prices(self, symbols: Iterable[str | None]) -> dict[str, float]:
        """Resolve a batch of symbols. Keys are upper-cased symbols."""
        prices: dict[str, float] = {}
        for symbol in symbols:
            sym = (symbol or "ETH").upper()
            if sym not in prices:
                prices[sym] = await self.get_price(sym)
        return prices

    async def dex_price(self) -> float:
        """
        WETH price in USDC from the pool's reserve ratio.

        Raises:
            PriceLookupError: pair missing, empty reserves, or provider failure
        """
        if self._provider is None:
            raise PriceLookupError("No provider configured for on-chain pricing")
        cfg = self._config
        try:
            pair = _decode_address(
                await self._provider.eth_call(
                    cfg.factory_address,
                    SELECTOR_GET_PAIR + _encode_address(cfg.weth_address) + _encode_address(cfg.usdc_address),
                )
            )
            if pair == ZERO_ADDRESS:
                raise PriceLookupError("No WETH/USDC pair on the configured factory")
            token0 = _decode_address(await self._provider.eth_call(pair, SELECTOR_TOKEN0))
            reserve0, reserve1 = _decode_words(
                await self._provider.eth_call(pair, SELECTOR_GET_RESERVES), 2
            )
        except ProviderError as e:
            if isinstance(e, PriceLookupError):
                raise
            raise PriceLookupError(f"DEX price lookup failed: {e}") from e
        except ValueError as e:
            raise PriceLookupError(f"Malformed DEX response: {e}") from e

        if token0 == cfg.usdc_address.lower():
            usdc_reserve, token_reserve = reserve0, reserve1
        else:
            usdc_reserve, token_reserve = reserve1, reserve0
        return reserve_ratio_price(usdc_reserve, token_reserve, USDC_DECIMALS, WETH_DECIMALS)

    # ──────────────────────────────────────────────────────────────
    # Private helpers
    # ──────────────────────────────────────────────────────────────

    async def _eth_price(self) -> float:
        if self._config.use_dex:
            try:
                price = await self.dex_price()
            except PriceLookupError as e:
                logger.warning("ETH price lookup failed, using fallback: %s", e)
            else:
                self._last_good["ETH"] = price
                return price
        return self._last_good.get("ETH", self._config.eth_fallback_usd)


def reserve_ratio_price(
    usdc_reserve: int, token_reserve: int, usdc_decimals: int, token_decimals: int
) -> float:
    """price = (usdcReserve / 10**usdcDecimals) / (tokenReserve / 10**tokenDecimals)"""
    if token_reserve <= 0 or usdc_reserve <= 0:
        raise PriceLookupError("Pool has empty reserves")
    return (usdc_reserve / 10**usdc_decimals) / (token_reserve / 10**token_decimals)


def _encode_address(address: str) -> str:
    return address.lower().removeprefix("0x").rjust(64, "0")


def _decode_words(data: str, count: int) -> list[int]:
    body = data.removeprefix("0x")
    if len(body) < 64 * count:
        raise ValueError(f"expected {count} words, got {len(body)} hex chars")
    return [int(body[i * 64 : (i + 1) * 64], 16) for i in range(count)]


def _decode_address(data: str) -> str:
    (word,) = _decode_words(data, 1)
    return "0x" + format(word, "064x")[-40:]
