"""Custom exception hierarchy for the stock screener.

All provider-facing exceptions inherit from DataFetchError, which carries
contextual information about which symbol and which data source failed.
The orchestrator absorbs these into a run's error list; only
ScanAbortedError escalates a run to ``failed``.
"""


class DataFetchError(Exception):
    """Base exception for all data-fetching failures.

    Attributes:
        ticker: The ticker symbol (or market id, for discovery) involved.
        source: The data source that failed (e.g., "yahoo", "alphavantage").
        http_status: The HTTP status code, if the failure was HTTP-related.
    """

    def __init__(
        self,
        message: str,
        *,
        ticker: str,
        source: str,
        http_status: int | None = None,
    ) -> None:
        self.ticker = ticker
        self.source = source
        self.http_status = http_status
        super().__init__(message)


class TickerNotFoundError(DataFetchError):
    """Raised when a ticker symbol does not exist in the data source."""


class InsufficientDataError(DataFetchError):
    """Raised when available data is too sparse for the requested operation."""


class AuthError(DataFetchError):
    """Raised when the session token could not be acquired or was rejected."""


class RateLimitExceededError(DataFetchError):
    """Raised when a provider's call budget is exhausted or it answered 429."""


RateLimited = RateLimitExceededError


class ProviderUnavailable(DataFetchError):
    """Raised on network failures or 5xx responses after the single retry."""


DataSourceUnavailableError = ProviderUnavailable


class MalformedResponse(DataFetchError):
    """Raised when a provider payload does not have the expected shape."""


class DiscoveryFailure(DataFetchError):
    """Raised when one market's scanner query fails."""


class ScanAbortedError(RuntimeError):
    """Raised inside the orchestrator when a run cannot continue at all."""
