"""Click CLI entry point for inflowcli.

All commands are thin orchestration wrappers — business logic lives in
config, pipeline, service, prices, store, and output modules.

Exit codes:
  0 — success
  1 — generic error
  2 — provider error, rate limit, provider unavailable
  3 — network error
  4 — data error (invalid address, invalid period)
  5 — config error (missing key, invalid config, rejected key)
  6 — cache store error
"""

from __future__ import annotations

import asyncio
import json
import logging
import shutil
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import click

from inflowcli import __version__
from inflowcli.cache import TTLCache
from inflowcli.config import (
    InflowConfig,
    ensure_runnable,
    get_default_config_path,
    load_config,
    save_config,
)
from inflowcli.exceptions import ConfigMissingError, InflowError
from inflowcli.models import PERIODS
from inflowcli.output import format_output, mask_api_key

FORMATS = ["json", "table", "csv"]


# ── Error handler ─────────────────────────────────────────────────────────────


def _output_error(err: InflowError | Exception) -> None:
    """Write error JSON to stderr and exit with the mapped code."""
    if isinstance(err, InflowError):
        payload = err.to_dict()
        exit_code = err.exit_code
    else:
        payload = {"error": "unknown_error", "message": str(err), "details": {}}
        exit_code = 1
    sys.stderr.write(json.dumps(payload) + "\n")
    sys.stderr.flush()
    sys.exit(exit_code)


def _setup_logging(level: str, verbose: int) -> None:
    if verbose >= 2:
        level = "DEBUG"
    elif verbose == 1:
        level = "INFO"
    logging.basicConfig(
        stream=sys.stderr,
        level=getattr(logging, level.upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        force=True,
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


def _config(ctx: click.Context) -> InflowConfig:
    """Return the loaded config, or raise the error that prevented loading it."""
    error = ctx.obj.get("config_error")
    if error is not None:
        raise error
    return ctx.obj["config"]


def _current_year() -> int:
    return datetime.now(tz=timezone.utc).year


def _wallet_or_config(config: InflowConfig, wallet: str | None) -> str:
    address = wallet or config.wallet.address
    if not address:
        raise ConfigMissingError(
            "Wallet address is not configured. Pass --wallet or set INFLOWCLI_WALLET."
        )
    return address


# ── Root group ────────────────────────────────────────────────────────────────


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--config",
    "config_path",
    envvar="INFLOWCLI_CONFIG_PATH",
    default=None,
    help="Config file path (default: ~/.inflowcli/config.toml)",
)
@click.option(
    "--format",
    "output_format",
    type=click.Choice(FORMATS),
    default=None,
    help="Output format (overrides config default)",
)
@click.option("-v", "--verbose", count=True, help="-v for INFO, -vv for DEBUG logs on stderr")
@click.pass_context
def cli(
    ctx: click.Context, config_path: str | None, output_format: str | None, verbose: int
) -> None:
    """inflowcli — USD inflow volume tracker for a wallet on Base."""
    ctx.ensure_object(dict)
    try:
        config = load_config(config_path)
    except InflowError as e:
        # Defaults keep `config init` usable; other commands re-raise the error
        ctx.obj["config_error"] = e
        config = InflowConfig()

    _setup_logging(config.logging.level, verbose)
    ctx.obj["config"] = config
    ctx.obj["format"] = output_format or config.output.default_format
    ctx.obj["config_path"] = config_path


# ── Refresh ───────────────────────────────────────────────────────────────────


@cli.command("refresh")
@click.option("--wallet", "wallet_addr", default=None, help="Wallet address (default: config)")
@click.option("--year", default=None, type=click.IntRange(2015, 2100), help="Calendar year")
@click.option(
    "--from-block",
    "last_processed_block",
    default=None,
    type=click.IntRange(0),
    help="Treat this block as already processed and fetch after it",
)
@click.option("--force", is_flag=True, help="Rebuild the year from its first block")
@click.option("--format", "fmt", type=click.Choice(FORMATS), default=None)
@click.pass_context
def refresh_command(
    ctx: click.Context,
    wallet_addr: str | None,
    year: int | None,
    last_processed_block: int | None,
    force: bool,
    fmt: str | None,
) -> None:
    """Fetch new transfers and update the volume cache."""
    fmt = fmt or ctx.obj.get("format", "json")

    try:
        config = _config(ctx)
        wallet = ensure_runnable(config, wallet_addr)

        from inflowcli.pipeline import refresh_volume

        cache, stats = asyncio.run(
            refresh_volume(
                config,
                wallet,
                year or _current_year(),
                last_processed_block=last_processed_block,
                force_refresh=force,
            )
        )
    except InflowError as e:
        _output_error(e)
        return

    click.echo(format_output({"stats": stats.to_dict(), "volume": cache.to_dict()}, fmt))


# ── Volume ────────────────────────────────────────────────────────────────────


@cli.command("volume")
@click.option("--wallet", "wallet_addr", default=None, help="Wallet address (default: config)")
@click.option("--year", default=None, type=click.IntRange(2015, 2100), help="Calendar year")
@click.option("--period", type=click.Choice(PERIODS), default="daily", show_default=True)
@click.option("--format", "fmt", type=click.Choice(FORMATS), default=None)
@click.pass_context
def volume_command(
    ctx: click.Context,
    wallet_addr: str | None,
    year: int | None,
    period: str,
    fmt: str | None,
) -> None:
    """Show the cached, gap-filled volume series (no network calls)."""
    fmt = fmt or ctx.obj.get("format", "json")

    async def _run() -> dict[str, Any]:
        from inflowcli.service import VolumeService
        from inflowcli.store import open_store

        config = _config(ctx)
        wallet = _wallet_or_config(config, wallet_addr)
        store = await open_store(config)
        try:
            service = VolumeService(
                store, TTLCache(config.cache.response_ttl_seconds), config.cache.response_ttl_seconds
            )
            return await service.get_volume_data(wallet, year or _current_year(), period)
        finally:
            await store.close()

    try:
        result = asyncio.run(_run())
    except InflowError as e:
        _output_error(e)
        return

    click.echo(format_output(result, fmt))


# ── Counterparties ────────────────────────────────────────────────────────────


@cli.command("counterparties")
@click.option("--wallet", "wallet_addr", default=None, help="Wallet address (default: config)")
@click.option("--year", default=None, type=click.IntRange(2015, 2100), help="Calendar year")
@click.option("--limit", default=10, type=click.IntRange(1, 1000), show_default=True)
@click.option("--format", "fmt", type=click.Choice(FORMATS), default=None)
@click.pass_context
def counterparties_command(
    ctx: click.Context,
    wallet_addr: str | None,
    year: int | None,
    limit: int,
    fmt: str | None,
) -> None:
    """Rank the addresses the wallet exchanged value with."""
    fmt = fmt or ctx.obj.get("format", "json")

    async def _run() -> dict[str, Any]:
        from inflowcli.service import VolumeService
        from inflowcli.store import open_store

        config = _config(ctx)
        wallet = _wallet_or_config(config, wallet_addr)
        store = await open_store(config)
        try:
            service = VolumeService(store, TTLCache(config.cache.response_ttl_seconds))
            return await service.get_counterparties(wallet, year or _current_year(), limit)
        finally:
            await store.close()

    try:
        result = asyncio.run(_run())
    except InflowError as e:
        _output_error(e)
        return

    click.echo(format_output(result, fmt))


# ── Price ─────────────────────────────────────────────────────────────────────


@cli.command("price")
@click.argument("symbols", nargs=-1)
@click.option("--format", "fmt", type=click.Choice(FORMATS), default=None)
@click.pass_context
def price_command(ctx: click.Context, symbols: tuple[str, ...], fmt: str | None) -> None:
    """Resolve USD prices for token symbols (default: ETH)."""
    fmt = fmt or ctx.obj.get("format", "json")

    async def _run() -> dict[str, Any]:
        from inflowcli.fetchers import get_provider
        from inflowcli.prices import PriceOracle

        config = _config(ctx)
        provider = get_provider(config) if config.prices.use_dex else None
        try:
            oracle = PriceOracle(provider, TTLCache(config.prices.ttl_seconds), config.prices)
            return {"prices": await oracle.get_prices(symbols or ("ETH",))}
        finally:
            if provider is not None:
                await provider.close()

    try:
        result = asyncio.run(_run())
    except InflowError as e:
        _output_error(e)
        return

    click.echo(format_output(result, fmt))


# ── Cache commands ────────────────────────────────────────────────────────────


@cli.group("cache")
def cache_group() -> None:
    """Manage the persistent volume cache."""


@cache_group.command("prune")
@click.pass_context
def cache_prune(ctx: click.Context) -> None:
    """Delete expired cache documents."""

    async def _run() -> int:
        from inflowcli.store import open_store

        store = await open_store(_config(ctx))
        try:
            return await store.prune()
        finally:
            await store.close()

    try:
        removed = asyncio.run(_run())
    except InflowError as e:
        _output_error(e)
        return

    click.echo(json.dumps({"status": "pruned", "removed": removed}))


# ── Config commands ───────────────────────────────────────────────────────────


@cli.group("config")
def config_group() -> None:
    """Manage inflowcli configuration."""


@config_group.command("init")
@click.option("--force", is_flag=True, help="Overwrite existing config")
@click.pass_context
def config_init(ctx: click.Context, force: bool) -> None:
    """Initialize default config at ~/.inflowcli/config.toml."""
    provided = ctx.obj.get("config_path")
    config_path = Path(provided) if provided else get_default_config_path()

    if config_path.exists() and not force:
        click.echo(
            json.dumps(
                {
                    "status": "already_exists",
                    "config_path": str(config_path),
                    "hint": "Use --force to reinitialize",
                }
            )
        )
        return

    status = "initialized"
    backup = None
    if config_path.exists():
        backup = str(config_path) + ".bak"
        shutil.copy2(config_path, backup)
        status = "reinitialized"

    save_config(InflowConfig(), str(config_path))

    result: dict[str, Any] = {"status": status, "config_path": str(config_path)}
    if backup:
        result["backup"] = backup
    click.echo(json.dumps(result))


@config_group.command("set")
@click.argument("key")
@click.argument("value")
@click.pass_context
def config_set(ctx: click.Context, key: str, value: str) -> None:
    """Set a config value by dotted key path (e.g. api.alchemy_api_key)."""
    config_path = ctx.obj.get("config_path")
    config: InflowConfig = ctx.obj["config"]

    parts = key.split(".", 1)
    if len(parts) != 2:
        sys.stderr.write(
            json.dumps(
                {"error": "cli_error", "message": f"Key must be in form section.key, got: {key!r}"}
            )
            + "\n"
        )
        sys.exit(1)

    section_name, field_name = parts
    section = getattr(config, section_name, None)
    if section is None or not hasattr(section, field_name):
        sys.stderr.write(
            json.dumps({"error": "config_invalid", "message": f"Unknown config key: {key!r}"})
            + "\n"
        )
        sys.exit(5)

    # Type-coerce to the field's current type
    current = getattr(section, field_name)
    try:
        if isinstance(current, bool):
            typed_value: Any = value.lower() in ("1", "true", "yes")
        elif isinstance(current, int):
            typed_value = int(value)
        elif isinstance(current, float):
            typed_value = float(value)
        elif isinstance(current, list):
            typed_value = [v.strip() for v in value.split(",") if v.strip()]
        else:
            typed_value = value
    except (ValueError, TypeError) as e:
        sys.stderr.write(json.dumps({"error": "config_invalid", "message": str(e)}) + "\n")
        sys.exit(5)
    setattr(section, field_name, typed_value)

    save_config(config, config_path)

    display_value = (
        mask_api_key(str(typed_value)) if "api_key" in field_name.lower() else typed_value
    )
    click.echo(json.dumps({"status": "updated", "key": key, "value": display_value}))


@config_group.command("show")
@click.option("--format", "fmt", type=click.Choice(["json", "table"]), default=None)
@click.pass_context
def config_show(ctx: click.Context, fmt: str | None) -> None:
    """Show current configuration (API key masked)."""
    try:
        config = _config(ctx)
    except InflowError as e:
        _output_error(e)
        return
    provided = ctx.obj.get("config_path")
    config_path = Path(provided) if provided else get_default_config_path()
    fmt = fmt or ctx.obj.get("format", "json")
    if fmt not in ("json", "table"):
        fmt = "json"

    result = {
        "config_path": str(config_path),
        "api": {
            "alchemy_api_key": mask_api_key(config.api.alchemy_api_key),
            "network": config.api.network,
            "rpc_url": "****" if config.api.rpc_url else "",
        },
        "wallet": {"address": config.wallet.address},
        "fetch": {
            "max_block_span": config.fetch.max_block_span,
            "max_pages": config.fetch.max_pages,
            "max_retries": config.fetch.max_retries,
            "concurrency": config.fetch.concurrency,
            "categories": list(config.fetch.categories),
            "track_outgoing": config.fetch.track_outgoing,
        },
        "prices": {
            "use_dex": config.prices.use_dex,
            "eth_fallback_usd": config.prices.eth_fallback_usd,
        },
        "cache": {
            "backend": config.cache.backend,
            "dir": config.cache.dir,
            "db_path": config.cache.db_path,
            "ttl_hours": config.cache.ttl_hours,
        },
        "output": {"default_format": config.output.default_format},
        "logging": {"level": config.logging.level},
    }

    click.echo(format_output(result, fmt))


if __name__ == "__main__":
    cli()
