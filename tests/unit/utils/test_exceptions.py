"""Tests for the custom exception hierarchy.

Covers:
- Inheritance: every provider exception is a DataFetchError
- Attributes: ticker, source, http_status accessible; http_status defaults to None
- Aliases resolve to the same classes
- ScanAbortedError stays outside the DataFetchError tree
"""

import pytest

from Stock_Screener.utils.exceptions import (
    AuthError,
    DataFetchError,
    DataSourceUnavailableError,
    DiscoveryFailure,
    InsufficientDataError,
    MalformedResponse,
    ProviderUnavailable,
    RateLimited,
    RateLimitExceededError,
    ScanAbortedError,
    TickerNotFoundError,
)


class TestDataFetchErrorBase:
    """Tests for the base DataFetchError exception."""

    def test_attributes_accessible(self) -> None:
        exc = DataFetchError(
            "Chart API returned HTTP 500", ticker="TEST", source="yahoo", http_status=500
        )
        assert exc.ticker == "TEST"
        assert exc.source == "yahoo"
        assert exc.http_status == 500
        assert str(exc) == "Chart API returned HTTP 500"

    def test_http_status_defaults_to_none(self) -> None:
        assert DataFetchError("x", ticker="TEST", source="yahoo").http_status is None


class TestSubclasses:
    @pytest.mark.parametrize(
        "exc_type",
        [
            TickerNotFoundError,
            InsufficientDataError,
            AuthError,
            RateLimited,
            ProviderUnavailable,
            MalformedResponse,
            DiscoveryFailure,
        ],
    )
    def test_caught_as_data_fetch_error(self, exc_type: type[DataFetchError]) -> None:
        with pytest.raises(DataFetchError) as info:
            raise exc_type("failed", ticker="TEST", source="yahoo")
        assert info.value.ticker == "TEST"

    def test_aliases(self) -> None:
        assert RateLimited is RateLimitExceededError
        assert ProviderUnavailable is DataSourceUnavailableError

    def test_cause_preserved_on_fallback(self) -> None:
        primary = ProviderUnavailable("Chart API unavailable", ticker="TEST", source="yahoo")
        with pytest.raises(RateLimited) as info:
            try:
                raise primary
            except ProviderUnavailable as exc:
                raise RateLimited(
                    "alphavantage call budget exhausted", ticker="TEST", source="alphavantage"
                ) from exc
        assert info.value.__cause__ is primary


class TestScanAbortedError:
    def test_not_a_provider_error(self) -> None:
        assert issubclass(ScanAbortedError, RuntimeError)
        assert not issubclass(ScanAbortedError, DataFetchError)
