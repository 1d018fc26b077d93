"""
Provider layer for inflowcli.

Provides a factory function `get_provider()` that returns the configured
transfer data provider. All providers implement TransferProvider.

Usage:
    from inflowcli.fetchers import get_provider
    provider = get_provider(config)
    head = await provider.get_block_number()
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from inflowcli.fetchers.base import TransferPage, TransferProvider, TransferQuery

if TYPE_CHECKING:
    from inflowcli.config import InflowConfig

__all__ = ["TransferPage", "TransferProvider", "TransferQuery", "get_provider"]


def get_provider(config: InflowConfig) -> TransferProvider:
    """
    Factory: return an Alchemy JSON-RPC provider for the configured network.

    Raises:
        ConfigMissingError: Neither an API key nor an explicit RPC URL is set
    """
    from inflowcli.exceptions import ConfigMissingError
    from inflowcli.fetchers.alchemy import AlchemyClient

    if not config.api.alchemy_api_key and not config.api.rpc_url:
        raise ConfigMissingError(
            "Alchemy API key is not configured. "
            "Set INFLOWCLI_ALCHEMY_API_KEY or api.alchemy_api_key."
        )
    return AlchemyClient(config.api.endpoint(), timeout=config.fetch.timeout_seconds)
