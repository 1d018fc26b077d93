"""
Custom exception hierarchy for inflowcli.

Each exception maps to a specific CLI exit code and JSON error_code field.
cli.py catches all InflowError subclasses and formats them as JSON output.

Exit code mapping:
  1 — InflowError (generic CLI error)
  2 — ProviderError (upstream API error, rate limit, provider unavailable)
  3 — NetworkError (timeout, connection refused)
  4 — DataError (malformed record, invalid address, invalid period)
  5 — ConfigurationError (missing/malformed config, rejected API key)
  6 — CacheUnavailableError (cache store read/write failure)

Recovery rules:
  TransientProviderError is retried by the block-range fetcher and never
  reaches the caller. DataShapeError and PriceLookupError are absorbed by the
  normalizer and the price oracle. Only ConfigurationError and
  ProviderUnavailableError escape a refresh.
"""


class InflowError(Exception):
    """Base exception for all inflowcli errors."""

    exit_code: int = 1
    error_code: str = "unknown_error"

    def __init__(self, message: str, details: dict | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        return {
            "error": self.error_code,
            "message": self.message,
            "details": self.details,
        }


class ProviderError(InflowError):
    """Blockchain data provider returned an error."""

    exit_code = 2
    error_code = "provider_error"


class APIError(ProviderError):
    """Non-transient upstream error (malformed response, JSON-RPC error)."""

    error_code = "api_error"


class PriceLookupError(ProviderError):
    """Token price could not be resolved from the on-chain source."""

    error_code = "price_lookup_failed"


class ProviderUnavailableError(ProviderError):
    """Provider unreachable for the whole operation, after all retries."""

    error_code = "provider_unavailable"


class TransientProviderError(ProviderError):
    """Recoverable provider failure; retried with backoff."""

    error_code = "transient_provider_error"


class RateLimitError(TransientProviderError):
    """Provider rate limit exceeded."""

    error_code = "rate_limited"

    def __init__(self, message: str, retry_after: int = 1, **kwargs) -> None:
        super().__init__(message, details={"retry_after_seconds": retry_after})
        self.retry_after = retry_after


class ProviderServerError(TransientProviderError):
    """Provider answered with a 5xx status."""

    error_code = "provider_server_error"

    def __init__(self, message: str, status_code: int = 500) -> None:
        super().__init__(message, details={"status_code": status_code})
        self.status_code = status_code


class RangeTooWideError(TransientProviderError):
    """Requested block range is too large for a single provider call."""

    error_code = "range_too_wide"


class NetworkError(TransientProviderError):
    """Network connectivity issue — timeout or connection failure."""

    exit_code = 3
    error_code = "network_error"


class NetworkTimeoutError(NetworkError):
    """Request timed out."""

    error_code = "network_timeout"


class ConnectionFailedError(NetworkError):
    """Could not connect to the provider endpoint."""

    error_code = "connection_failed"


class DataError(InflowError):
    """Data validation error."""

    exit_code = 4
    error_code = "data_error"


class DataShapeError(DataError):
    """Provider record is missing a field the pipeline needs (e.g. timestamp)."""

    error_code = "data_shape"


class InvalidAddressError(DataError):
    """Address is not a 0x-prefixed 20-byte hex string."""

    error_code = "invalid_address"


class InvalidPeriodError(DataError):
    """Period is not one of daily, weekly, monthly."""

    error_code = "invalid_period"


class ConfigurationError(InflowError):
    """Required configuration is missing or malformed."""

    exit_code = 5
    error_code = "config_error"


class ConfigMissingError(ConfigurationError):
    """A required credential or address is not configured."""

    error_code = "config_missing"


class ConfigInvalidError(ConfigurationError):
    """Config file exists but contains invalid TOML or invalid values."""

    error_code = "config_invalid"


class InvalidAPIKeyError(ConfigurationError):
    """Provider rejected the configured API key."""

    error_code = "invalid_api_key"


class CacheUnavailableError(InflowError):
    """Cache store could not be read or written."""

    exit_code = 6
    error_code = "cache_unavailable"
