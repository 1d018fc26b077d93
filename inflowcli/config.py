"""
Config loading for inflowcli.

Sources (in precedence order, highest first):
  1. Environment variables (INFLOWCLI_*)
  2. ~/.inflowcli/config.toml
  3. Built-in defaults

Usage:
    from inflowcli.config import load_config
    config = load_config()
    print(config.api.alchemy_api_key)
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path

import toml

from inflowcli.exceptions import ConfigInvalidError, ConfigMissingError, InvalidAddressError

# Default config directory and file
DEFAULT_CONFIG_DIR = Path.home() / ".inflowcli"
DEFAULT_CONFIG_PATH = DEFAULT_CONFIG_DIR / "config.toml"

ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")


def _csv_list(value: str) -> list[str]:
    return [part.strip() for part in value.split(",") if part.strip()]


def _bool(value: str) -> bool:
    return value.lower() in ("1", "true", "yes")


# Environment variable → config key mapping
# Format: (env_var_name, dotted_config_path, type_converter)
_ENV_OVERRIDES: list[tuple[str, str, object]] = [
    ("INFLOWCLI_ALCHEMY_API_KEY", "api.alchemy_api_key", str),
    ("ALCHEMY_API_KEY", "api.alchemy_api_key", str),
    ("INFLOWCLI_NETWORK", "api.network", str),
    ("INFLOWCLI_RPC_URL", "api.rpc_url", str),
    ("INFLOWCLI_WALLET", "wallet.address", str),
    ("INFLOWCLI_MAX_BLOCK_SPAN", "fetch.max_block_span", int),
    ("INFLOWCLI_MAX_PAGES", "fetch.max_pages", int),
    ("INFLOWCLI_MAX_RETRIES", "fetch.max_retries", int),
    ("INFLOWCLI_CONCURRENCY", "fetch.concurrency", int),
    ("INFLOWCLI_CATEGORIES", "fetch.categories", _csv_list),
    ("INFLOWCLI_TRACK_OUTGOING", "fetch.track_outgoing", _bool),
    ("INFLOWCLI_USE_DEX_PRICES", "prices.use_dex", _bool),
    ("INFLOWCLI_ETH_FALLBACK_USD", "prices.eth_fallback_usd", float),
    ("INFLOWCLI_CACHE_BACKEND", "cache.backend", str),
    ("INFLOWCLI_CACHE_DIR", "cache.dir", str),
    ("INFLOWCLI_DB_PATH", "cache.db_path", str),
    ("INFLOWCLI_CACHE_TTL_HOURS", "cache.ttl_hours", int),
    ("INFLOWCLI_OUTPUT_FORMAT", "output.default_format", str),
    ("INFLOWCLI_LOG_LEVEL", "logging.level", str),
]

VALID_FORMATS = {"json", "table", "csv"}
VALID_BACKENDS = {"file", "sqlite"}
VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR"}
VALID_CATEGORIES = {"external", "internal", "erc20", "erc721", "erc1155", "specialnft"}


@dataclass
class APIConfig:
    """Provider credentials and endpoint."""

    alchemy_api_key: str = ""
    network: str = "base-mainnet"
    rpc_url: str = ""  # overrides the URL derived from network + key

    def endpoint(self) -> str:
        if self.rpc_url:
            return self.rpc_url
        return f"https://{self.network}.g.alchemy.com/v2/{self.alchemy_api_key}"


@dataclass
class WalletConfig:
    """The wallet whose inflows are tracked."""

    address: str = ""


@dataclass
class FetchConfig:
    """Block-range fetching, pagination and retry policy."""

    max_block_span: int = 500_000
    max_pages: int = 5              # pageKey ceiling per sub-range
    max_count: int = 1000           # transfers per page
    max_retries: int = 5
    backoff_base_seconds: float = 1.0
    backoff_cap_seconds: float = 30.0
    safety_buffer_blocks: int = 5   # stay behind the head to avoid re-orgs
    timeout_seconds: float = 30.0
    concurrency: int = 1
    categories: list[str] = field(default_factory=lambda: ["external", "erc20"])
    track_outgoing: bool = True


@dataclass
class PriceConfig:
    """Token pricing sources."""

    use_dex: bool = True
    eth_fallback_usd: float = 3500.0
    ttl_seconds: int = 600
    # Aerodrome factory and token addresses on Base
    factory_address: str = "0x420DD381b31aEf6683db6B902084cB0FFECe40Da"
    usdc_address: str = "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913"
    weth_address: str = "0x4200000000000000000000000000000000000006"


@dataclass
class CacheConfig:
    """Persistent volume cache configuration."""

    backend: str = "file"           # file | sqlite
    dir: str = str(DEFAULT_CONFIG_DIR / "cache")
    db_path: str = str(DEFAULT_CONFIG_DIR / "inflow.db")
    ttl_hours: int = 24
    response_ttl_seconds: int = 60


@dataclass
class OutputConfig:
    """Output formatting defaults."""

    default_format: str = "json"    # json | table | csv


@dataclass
class LoggingConfig:
    level: str = "WARNING"


@dataclass
class InflowConfig:
    """Full configuration object. Passed via Click context to all commands."""

    api: APIConfig = field(default_factory=APIConfig)
    wallet: WalletConfig = field(default_factory=WalletConfig)
    fetch: FetchConfig = field(default_factory=FetchConfig)
    prices: PriceConfig = field(default_factory=PriceConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    output: OutputConfig = field(default_factory=OutputConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def load_config(path: str | None = None) -> InflowConfig:
    """
    Load configuration from TOML file + environment variable overrides.

    Args:
        path: Override config file path. If None, uses INFLOWCLI_CONFIG_PATH
              env var or default (~/.inflowcli/config.toml).

    Returns:
        InflowConfig with all values resolved.

    Raises:
        ConfigInvalidError: Config file exists but is invalid TOML or values.
    """
    config_path = _resolve_config_path(path)

    raw: dict = {}
    if config_path.exists():
        try:
            raw = toml.load(str(config_path))
        except toml.TomlDecodeError as e:
            raise ConfigInvalidError(f"Invalid TOML in {config_path}: {e}") from e

    config = _dict_to_config(raw)
    _apply_env_overrides(config)
    _validate_config(config)

    return config


def save_config(config: InflowConfig, path: str | None = None) -> Path:
    """
    Serialize InflowConfig to TOML and write to disk.

    Returns the path where config was written.
    """
    config_path = _resolve_config_path(path)
    config_path.parent.mkdir(parents=True, exist_ok=True)

    data = {
        "api": {
            "alchemy_api_key": config.api.alchemy_api_key,
            "network": config.api.network,
            "rpc_url": config.api.rpc_url,
        },
        "wallet": {
            "address": config.wallet.address,
        },
        "fetch": {
            "max_block_span": config.fetch.max_block_span,
            "max_pages": config.fetch.max_pages,
            "max_count": config.fetch.max_count,
            "max_retries": config.fetch.max_retries,
            "backoff_base_seconds": config.fetch.backoff_base_seconds,
            "backoff_cap_seconds": config.fetch.backoff_cap_seconds,
            "safety_buffer_blocks": config.fetch.safety_buffer_blocks,
            "timeout_seconds": config.fetch.timeout_seconds,
            "concurrency": config.fetch.concurrency,
            "categories": list(config.fetch.categories),
            "track_outgoing": config.fetch.track_outgoing,
        },
        "prices": {
            "use_dex": config.prices.use_dex,
            "eth_fallback_usd": config.prices.eth_fallback_usd,
            "ttl_seconds": config.prices.ttl_seconds,
            "factory_address": config.prices.factory_address,
            "usdc_address": config.prices.usdc_address,
            "weth_address": config.prices.weth_address,
        },
        "cache": {
            "backend": config.cache.backend,
            "dir": config.cache.dir,
            "db_path": config.cache.db_path,
            "ttl_hours": config.cache.ttl_hours,
            "response_ttl_seconds": config.cache.response_ttl_seconds,
        },
        "output": {
            "default_format": config.output.default_format,
        },
        "logging": {
            "level": config.logging.level,
        },
    }

    with open(config_path, "w") as f:
        toml.dump(data, f)

    return config_path


def get_default_config_path() -> Path:
    """Return the default config file path."""
    return DEFAULT_CONFIG_PATH


def is_valid_address(address: str) -> bool:
    """Return True for a 0x-prefixed 20-byte hex address. No network call."""
    return bool(ADDRESS_RE.match(address or ""))


def ensure_runnable(config: InflowConfig, wallet: str | None = None) -> str:
    """
    Fail fast before any fetch: require an API endpoint and a valid wallet.

    Returns the wallet address to track.

    Raises:
        ConfigMissingError: No Alchemy API key / RPC URL, or no wallet.
        InvalidAddressError: Wallet is not a valid 0x address.
    """
    if not config.api.alchemy_api_key and not config.api.rpc_url:
        raise ConfigMissingError(
            "Alchemy API key is not configured. "
            "Set INFLOWCLI_ALCHEMY_API_KEY or api.alchemy_api_key."
        )
    address = wallet or config.wallet.address
    if not address:
        raise ConfigMissingError(
            "Wallet address is not configured. Set INFLOWCLI_WALLET or wallet.address."
        )
    if not is_valid_address(address):
        raise InvalidAddressError(
            f"Invalid wallet address: {address!r}. Must be 0x + 40 hex chars.",
            details={"address": address},
        )
    return address


# ──────────────────────────────────────────────────────────────
# Private helpers
# ──────────────────────────────────────────────────────────────


def _resolve_config_path(path: str | None) -> Path:
    if path:
        return Path(path).expanduser()
    env_path = os.environ.get("INFLOWCLI_CONFIG_PATH")
    if env_path:
        return Path(env_path).expanduser()
    return DEFAULT_CONFIG_PATH


def _dict_to_config(raw: dict) -> InflowConfig:
    """Build InflowConfig from raw TOML dict, applying defaults for missing keys."""
    config = InflowConfig()

    try:
        api = raw.get("api", {})
        config.api.alchemy_api_key = api.get("alchemy_api_key", "")
        config.api.network = api.get("network", "base-mainnet")
        config.api.rpc_url = api.get("rpc_url", "")

        wallet = raw.get("wallet", {})
        config.wallet.address = wallet.get("address", "")

        fetch = raw.get("fetch", {})
        defaults = FetchConfig()
        config.fetch.max_block_span = int(fetch.get("max_block_span", defaults.max_block_span))
        config.fetch.max_pages = int(fetch.get("max_pages", defaults.max_pages))
        config.fetch.max_count = int(fetch.get("max_count", defaults.max_count))
        config.fetch.max_retries = int(fetch.get("max_retries", defaults.max_retries))
        config.fetch.backoff_base_seconds = float(
            fetch.get("backoff_base_seconds", defaults.backoff_base_seconds)
        )
        config.fetch.backoff_cap_seconds = float(
            fetch.get("backoff_cap_seconds", defaults.backoff_cap_seconds)
        )
        config.fetch.safety_buffer_blocks = int(
            fetch.get("safety_buffer_blocks", defaults.safety_buffer_blocks)
        )
        config.fetch.timeout_seconds = float(fetch.get("timeout_seconds", defaults.timeout_seconds))
        config.fetch.concurrency = int(fetch.get("concurrency", defaults.concurrency))
        config.fetch.categories = list(fetch.get("categories", defaults.categories))
        config.fetch.track_outgoing = bool(fetch.get("track_outgoing", defaults.track_outgoing))

        prices = raw.get("prices", {})
        price_defaults = PriceConfig()
        config.prices.use_dex = bool(prices.get("use_dex", price_defaults.use_dex))
        config.prices.eth_fallback_usd = float(
            prices.get("eth_fallback_usd", price_defaults.eth_fallback_usd)
        )
        config.prices.ttl_seconds = int(prices.get("ttl_seconds", price_defaults.ttl_seconds))
        config.prices.factory_address = prices.get("factory_address", price_defaults.factory_address)
        config.prices.usdc_address = prices.get("usdc_address", price_defaults.usdc_address)
        config.prices.weth_address = prices.get("weth_address", price_defaults.weth_address)

        cache = raw.get("cache", {})
        cache_defaults = CacheConfig()
        config.cache.backend = cache.get("backend", cache_defaults.backend)
        config.cache.dir = cache.get("dir", cache_defaults.dir)
        config.cache.db_path = cache.get("db_path", cache_defaults.db_path)
        config.cache.ttl_hours = int(cache.get("ttl_hours", cache_defaults.ttl_hours))
        config.cache.response_ttl_seconds = int(
            cache.get("response_ttl_seconds", cache_defaults.response_ttl_seconds)
        )

        output = raw.get("output", {})
        config.output.default_format = output.get("default_format", "json")

        log = raw.get("logging", {})
        config.logging.level = str(log.get("level", "WARNING")).upper()
    except (ValueError, TypeError) as e:
        raise ConfigInvalidError(f"Invalid config value: {e}") from e

    return config


def _apply_env_overrides(config: InflowConfig) -> None:
    """Apply environment variable overrides to a loaded config."""
    for env_var, dotted_key, converter in _ENV_OVERRIDES:
        val = os.environ.get(env_var)
        if val is None:
            continue
        section, key = dotted_key.split(".", 1)
        section_obj = getattr(config, section)
        if key == "alchemy_api_key" and getattr(section_obj, key) and env_var == "ALCHEMY_API_KEY":
            continue  # INFLOWCLI_ALCHEMY_API_KEY or the file wins over the bare name
        try:
            setattr(section_obj, key, converter(val))  # type: ignore[operator]
        except (ValueError, TypeError) as e:
            raise ConfigInvalidError(
                f"Invalid value for {env_var}={val!r}: {e}"
            ) from e
    config.logging.level = config.logging.level.upper()


def _validate_config(config: InflowConfig) -> None:
    """Validate config values. Raises ConfigInvalidError on invalid values."""
    fetch = config.fetch
    if fetch.max_block_span < 1:
        raise ConfigInvalidError(f"fetch.max_block_span must be >= 1, got {fetch.max_block_span}")
    if fetch.max_pages < 1:
        raise ConfigInvalidError(f"fetch.max_pages must be >= 1, got {fetch.max_pages}")
    if fetch.max_retries < 1:
        raise ConfigInvalidError(f"fetch.max_retries must be >= 1, got {fetch.max_retries}")
    if fetch.concurrency < 1:
        raise ConfigInvalidError(f"fetch.concurrency must be >= 1, got {fetch.concurrency}")
    if fetch.backoff_base_seconds < 0 or fetch.backoff_cap_seconds < 0:
        raise ConfigInvalidError("fetch backoff values must be non-negative")
    if fetch.safety_buffer_blocks < 0:
        raise ConfigInvalidError(
            f"fetch.safety_buffer_blocks must be non-negative, got {fetch.safety_buffer_blocks}"
        )
    unknown = set(fetch.categories) - VALID_CATEGORIES
    if unknown or not fetch.categories:
        raise ConfigInvalidError(
            f"fetch.categories must be a non-empty subset of {sorted(VALID_CATEGORIES)}, "
            f"got {fetch.categories!r}"
        )
    if config.cache.backend not in VALID_BACKENDS:
        raise ConfigInvalidError(
            f"cache.backend must be one of {sorted(VALID_BACKENDS)}, got {config.cache.backend!r}"
        )
    if config.output.default_format not in VALID_FORMATS:
        raise ConfigInvalidError(
            f"output.default_format must be one of {sorted(VALID_FORMATS)}, "
            f"got {config.output.default_format!r}"
        )
    if config.logging.level not in VALID_LOG_LEVELS:
        raise ConfigInvalidError(
            f"logging.level must be one of {sorted(VALID_LOG_LEVELS)}, got {config.logging.level!r}"
        )
    if config.prices.eth_fallback_usd < 0:
        raise ConfigInvalidError(
            f"prices.eth_fallback_usd must be non-negative, got {config.prices.eth_fallback_usd}"
        )
    if config.wallet.address and not is_valid_address(config.wallet.address):
        raise ConfigInvalidError(f"wallet.address is not a valid address: {config.wallet.address!r}")
