"""Tests for inflowcli/exceptions.py — exception hierarchy."""

from __future__ import annotations

from inflowcli.exceptions import (
    APIError,
    CacheUnavailableError,
    ConfigInvalidError,
    ConfigMissingError,
    ConfigurationError,
    ConnectionFailedError,
    DataError,
    DataShapeError,
    InflowError,
    InvalidAddressError,
    InvalidAPIKeyError,
    InvalidPeriodError,
    NetworkError,
    NetworkTimeoutError,
    PriceLookupError,
    ProviderError,
    ProviderServerError,
    ProviderUnavailableError,
    RangeTooWideError,
    RateLimitError,
    TransientProviderError,
)

# ── Hierarchy / exit codes ────────────────────────────────────────────────────


def test_inflow_error_base() -> None:
    """InflowError is the base of the hierarchy."""
    e = InflowError("base error")
    assert e.exit_code == 1
    assert e.error_code == "unknown_error"
    assert str(e) == "base error"


def test_provider_errors_exit_code_2() -> None:
    """Provider-side failures exit with 2."""
    for cls in (APIError, PriceLookupError, ProviderUnavailableError, RangeTooWideError):
        e = cls("boom")
        assert e.exit_code == 2
        assert isinstance(e, ProviderError)


def test_transient_errors() -> None:
    """Rate limits, 5xx, range and network errors are all retryable."""
    for e in (
        RateLimitError("slow down"),
        ProviderServerError("bad gateway", status_code=502),
        RangeTooWideError("too wide"),
        NetworkTimeoutError("timeout"),
        ConnectionFailedError("refused"),
    ):
        assert isinstance(e, TransientProviderError)


def test_api_error_is_not_transient() -> None:
    assert not isinstance(APIError("bad"), TransientProviderError)


def test_rate_limit_error() -> None:
    """RateLimitError includes retry_after."""
    e = RateLimitError("too many requests", retry_after=30)
    assert e.retry_after == 30
    assert e.details["retry_after_seconds"] == 30


def test_provider_server_error_status() -> None:
    e = ProviderServerError("unavailable", status_code=503)
    assert e.status_code == 503
    assert e.details["status_code"] == 503


def test_network_error_exit_code() -> None:
    """NetworkError has exit_code 3."""
    assert NetworkError("connection refused").exit_code == 3
    assert NetworkTimeoutError("t").exit_code == 3


def test_data_errors_exit_code_4() -> None:
    for cls in (DataShapeError, InvalidAddressError, InvalidPeriodError):
        e = cls("bad data")
        assert e.exit_code == 4
        assert isinstance(e, DataError)


def test_configuration_errors_exit_code_5() -> None:
    """Rejected API keys are configuration problems, not provider problems."""
    for cls in (ConfigMissingError, ConfigInvalidError, InvalidAPIKeyError):
        e = cls("bad config")
        assert e.exit_code == 5
        assert isinstance(e, ConfigurationError)
        assert not isinstance(e, ProviderError)


def test_cache_unavailable_exit_code() -> None:
    assert CacheUnavailableError("disk full").exit_code == 6


def test_to_dict() -> None:
    """to_dict produces the CLI's stderr payload."""
    e = InvalidAddressError("nope", details={"address": "0x1"})
    assert e.to_dict() == {
        "error": "invalid_address",
        "message": "nope",
        "details": {"address": "0x1"},
    }


def test_details_default_empty() -> None:
    assert APIError("x").details == {}
