"""Daily price history from the primary (Yahoo chart) and secondary (Alpha Vantage) providers.

Every outbound request is gated by the RateGovernor: one budget unit per
HTTP attempt, refused consumes never hit the network. The primary is tried
first, unauthenticated; 401/403 answers escalate to the session token and,
once more, to a freshly refreshed token. Network errors and 5xx answers are
retried once against the alternate chart host. Any primary failure on a
daily request falls through to the secondary provider, whose failures are
terminal and chained to the primary error.
"""

from __future__ import annotations

import datetime
import json
import logging
from typing import Any, Final
from urllib.parse import quote

import httpx

from Stock_Screener.config import ScreenerSettings
from Stock_Screener.models.enums import Provider
from Stock_Screener.models.market_data import EnrichedSeries, PriceBar
from Stock_Screener.services._helpers import safe_float, safe_int
from Stock_Screener.services.cache import (
    DATA_TYPE_QUOTE,
    ServiceCache,
    history_key,
    quote_key,
)
from Stock_Screener.services.rate_limiter import RateGovernor
from Stock_Screener.services.session import SessionToken, SessionTokenCache
from Stock_Screener.services.symbols import normalize_symbol, to_secondary_symbol
from Stock_Screener.utils.exceptions import (
    AuthError,
    DataFetchError,
    InsufficientDataError,
    MalformedResponse,
    ProviderUnavailable,
    RateLimited,
    TickerNotFoundError,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_RANGE: Final[str] = "5y"
DEFAULT_INTERVAL: Final[str] = "1d"

AUTH_STATUSES: Final[frozenset[int]] = frozenset({401, 403})
HTTP_OK: Final[int] = 200
HTTP_NOT_FOUND: Final[int] = 404
HTTP_TOO_MANY_REQUESTS: Final[int] = 429
HTTP_SERVER_ERROR: Final[int] = 500

# Calendar days covered by a chart range, used to trim secondary output.
RANGE_DAYS: Final[dict[str, int]] = {
    "1d": 1,
    "5d": 5,
    "1mo": 31,
    "3mo": 92,
    "6mo": 183,
    "1y": 366,
    "2y": 731,
    "5y": 1827,
    "10y": 3653,
}

SECONDARY_SERIES_KEY: Final[str] = "Time Series (Daily)"
SECONDARY_QUOTE_KEY: Final[str] = "Global Quote"
SECONDARY_THROTTLE_KEYS: Final[tuple[str, ...]] = ("Note", "Information")
SECONDARY_ERROR_KEY: Final[str] = "Error Message"


class QuoteClient:
    """Fetch enriched daily series through the primary/secondary fallback chain.

    The HTTP client, governor and token cache are shared across the process
    and injected; the quote client owns none of them.

    Usage::

        client = build_http_client(user_agent=settings.user_agent)
        governor = RateGovernor(settings.quotas())
        tokens = SessionTokenCache(client)
        quotes = QuoteClient(client, governor, tokens, settings=settings)

        series = await quotes.fetch_series("SHOP.TO", range_="5y")
        price = await quotes.fetch_quote("SHOP.TO")
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        governor: RateGovernor,
        tokens: SessionTokenCache,
        *,
        settings: ScreenerSettings,
        cache: ServiceCache | None = None,
    ) -> None:
        self._client = client
        self._governor = governor
        self._tokens = tokens
        self._cache = cache
        self._chart_hosts: tuple[str, str] = (
            settings.yahoo_chart_url.rstrip("/"),
            settings.yahoo_chart_fallback_url.rstrip("/"),
        )
        self._secondary_url = settings.alpha_vantage_url
        self._secondary_key = settings.alpha_vantage_api_key
        self._headers = {"User-Agent": settings.user_agent, "Accept": "application/json"}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def fetch_series(
        self,
        symbol: str,
        *,
        range_: str = DEFAULT_RANGE,
        interval: str = DEFAULT_INTERVAL,
        fallback: bool = True,
    ) -> EnrichedSeries:
        """Fetch the daily history for *symbol*.

        Args:
            symbol: Ticker in any supported suffix convention.
            range_: Chart range ("2y", "5y", ...).
            interval: Bar interval; only "1d" is served by the secondary.
            fallback: When False the secondary is never called; the primary
                error is raised as is.

        Returns:
            The enriched series with bars in ascending date order.

        Raises:
            DataFetchError: A subclass describing the terminal failure. When
                the secondary was tried, the primary error is its ``__cause__``.
        """
        symbol = normalize_symbol(symbol)
        key = history_key(symbol, range_, interval)

        if self._cache is not None:
            cached = await self._cache.get(key)
            if cached is not None:
                logger.debug("Cache hit for series: %s", key)
                return EnrichedSeries.model_validate_json(cached)

        try:
            series = await self._fetch_primary(symbol, range_, interval)
        except DataFetchError as primary_error:
            if not fallback or interval != DEFAULT_INTERVAL:
                raise
            logger.info(
                "Primary provider failed for %s (%s), trying secondary",
                symbol,
                primary_error,
            )
            try:
                series = await self._fetch_secondary(symbol, range_)
            except DataFetchError as secondary_error:
                raise secondary_error from primary_error

        if self._cache is not None:
            await self._cache.set(key, series.model_dump_json(), self._cache.get_ttl(range_))
        logger.debug(
            "Fetched %d bars for %s from %s", len(series.bars), symbol, series.provider
        )
        return series

    async def fetch_quote(self, symbol: str) -> float:
        """Fetch the latest price for *symbol* from the secondary provider.

        Used to cross-validate the primary's current price.

        Raises:
            TickerNotFoundError: If the secondary has no quote for the symbol.
            RateLimited: If the secondary budget is exhausted.
        """
        symbol = normalize_symbol(symbol)
        key = quote_key(symbol)
        if self._cache is not None:
            cached = await self._cache.get(key)
            if cached is not None:
                return float(cached)

        payload = await self._secondary_get(
            {"function": "GLOBAL_QUOTE", "symbol": to_secondary_symbol(symbol)},
            symbol,
        )
        quote_block = payload.get(SECONDARY_QUOTE_KEY)
        if not isinstance(quote_block, dict):
            raise MalformedResponse(
                f"Secondary quote for {symbol} has no '{SECONDARY_QUOTE_KEY}' block",
                ticker=symbol,
                source=Provider.ALPHA_VANTAGE,
            )
        price = safe_float(quote_block.get("05. price"))
        if price <= 0:
            raise TickerNotFoundError(
                f"No secondary quote for {symbol}",
                ticker=symbol,
                source=Provider.ALPHA_VANTAGE,
            )

        if self._cache is not None:
            await self._cache.set(key, str(price), self._cache.get_ttl(DATA_TYPE_QUOTE))
        return price

    # ------------------------------------------------------------------
    # Primary provider
    # ------------------------------------------------------------------

    async def _fetch_primary(self, symbol: str, range_: str, interval: str) -> EnrichedSeries:
        params = {"range": range_, "interval": interval}

        response = await self._primary_get(symbol, params)
        if response.status_code in AUTH_STATUSES:
            token = await self._tokens.get_token()
            if token is None:
                raise AuthError(
                    f"Chart API requires a session token for {symbol}, none available",
                    ticker=symbol,
                    source=Provider.YAHOO,
                    http_status=response.status_code,
                )
            response = await self._primary_get(symbol, params, token)

            if response.status_code in AUTH_STATUSES:
                token = await self._tokens.refresh(stale=token)
                if token is None:
                    raise AuthError(
                        f"Session token refresh failed for {symbol}",
                        ticker=symbol,
                        source=Provider.YAHOO,
                        http_status=response.status_code,
                    )
                response = await self._primary_get(symbol, params, token)

                if response.status_code in AUTH_STATUSES:
                    self._tokens.invalidate(token)
                    raise AuthError(
                        f"Chart API rejected a fresh session token for {symbol}",
                        ticker=symbol,
                        source=Provider.YAHOO,
                        http_status=response.status_code,
                    )

        _raise_for_status(response, symbol, Provider.YAHOO)
        return _parse_chart(symbol, _decode_json(response, symbol, Provider.YAHOO))

    async def _primary_get(
        self,
        symbol: str,
        params: dict[str, str],
        token: SessionToken | None = None,
    ) -> httpx.Response:
        """One logical primary request: the main host, then the alternate on failure.

        Each host attempt consumes one budget unit. Only network errors and
        5xx responses move on to the alternate host.
        """
        headers = dict(self._headers)
        if token is not None:
            params = {**params, "crumb": token.crumb}
            headers["Cookie"] = token.cookie

        last_status: int | None = None
        last_error = ""
        for host in self._chart_hosts:
            await self._consume(Provider.YAHOO, symbol)
            try:
                response = await self._client.get(
                    f"{host}/{quote(symbol, safe='')}",
                    params=params,
                    headers=headers,
                )
            except httpx.HTTPError as exc:
                last_error = f"{type(exc).__name__}: {exc}"
                logger.warning("Chart request to %s failed for %s: %s", host, symbol, last_error)
                continue
            if response.status_code >= HTTP_SERVER_ERROR:
                last_status = response.status_code
                last_error = f"HTTP {response.status_code}"
                logger.warning("Chart host %s returned %s for %s", host, last_error, symbol)
                continue
            return response

        raise ProviderUnavailable(
            f"Chart API unavailable for {symbol} ({last_error})",
            ticker=symbol,
            source=Provider.YAHOO,
            http_status=last_status,
        )

    # ------------------------------------------------------------------
    # Secondary provider
    # ------------------------------------------------------------------

    async def _fetch_secondary(self, symbol: str, range_: str) -> EnrichedSeries:
        payload = await self._secondary_get(
            {
                "function": "TIME_SERIES_DAILY",
                "symbol": to_secondary_symbol(symbol),
                "outputsize": "full",
            },
            symbol,
        )
        raw_series = payload.get(SECONDARY_SERIES_KEY)
        if not isinstance(raw_series, dict):
            raise MalformedResponse(
                f"Secondary response for {symbol} has no '{SECONDARY_SERIES_KEY}'",
                ticker=symbol,
                source=Provider.ALPHA_VANTAGE,
            )

        bars: list[PriceBar] = []
        try:
            for day, values in raw_series.items():
                bars.append(
                    PriceBar(
                        date=datetime.date.fromisoformat(day),
                        open=float(values["1. open"]),
                        high=float(values["2. high"]),
                        low=float(values["3. low"]),
                        close=float(values["4. close"]),
                        volume=safe_int(values.get("5. volume")),
                    )
                )
        except (KeyError, TypeError, ValueError, AttributeError) as exc:
            raise MalformedResponse(
                f"Unexpected secondary bar shape for {symbol}: {exc}",
                ticker=symbol,
                source=Provider.ALPHA_VANTAGE,
            ) from exc

        bars.sort(key=lambda bar: bar.date)
        bars = _trim_to_range(bars, range_)
        if not bars:
            raise InsufficientDataError(
                f"Secondary returned no bars for {symbol}",
                ticker=symbol,
                source=Provider.ALPHA_VANTAGE,
            )
        return EnrichedSeries(
            symbol=symbol,
            bars=tuple(bars),
            current_price=bars[-1].close,
            provider=Provider.ALPHA_VANTAGE,
        )

    async def _secondary_get(self, params: dict[str, str], symbol: str) -> dict[str, Any]:
        """Single, unretried secondary request with payload-level error mapping."""
        await self._consume(Provider.ALPHA_VANTAGE, symbol)
        try:
            response = await self._client.get(
                self._secondary_url,
                params={**params, "apikey": self._secondary_key},
                headers=self._headers,
            )
        except httpx.HTTPError as exc:
            raise ProviderUnavailable(
                f"Secondary provider unreachable for {symbol}: {exc}",
                ticker=symbol,
                source=Provider.ALPHA_VANTAGE,
            ) from exc

        _raise_for_status(response, symbol, Provider.ALPHA_VANTAGE)
        payload = _decode_json(response, symbol, Provider.ALPHA_VANTAGE)
        if not isinstance(payload, dict):
            raise MalformedResponse(
                f"Secondary response for {symbol} is not an object",
                ticker=symbol,
                source=Provider.ALPHA_VANTAGE,
            )

        for throttle_key in SECONDARY_THROTTLE_KEYS:
            if throttle_key in payload:
                raise RateLimited(
                    f"Secondary provider throttled {symbol}: {payload[throttle_key]}",
                    ticker=symbol,
                    source=Provider.ALPHA_VANTAGE,
                )
        if SECONDARY_ERROR_KEY in payload:
            raise TickerNotFoundError(
                f"Secondary provider does not know {symbol}: {payload[SECONDARY_ERROR_KEY]}",
                ticker=symbol,
                source=Provider.ALPHA_VANTAGE,
            )
        return payload

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _consume(self, provider: Provider, symbol: str) -> None:
        if not await self._governor.try_consume(provider):
            raise RateLimited(
                f"{provider} call budget exhausted",
                ticker=symbol,
                source=provider,
            )


# ---------------------------------------------------------------------------
# Response handling
# ---------------------------------------------------------------------------


def _raise_for_status(response: httpx.Response, symbol: str, provider: Provider) -> None:
    status = response.status_code
    if status == HTTP_OK:
        return
    if status == HTTP_NOT_FOUND:
        raise TickerNotFoundError(
            f"{provider} has no data for {symbol}",
            ticker=symbol,
            source=provider,
            http_status=status,
        )
    if status == HTTP_TOO_MANY_REQUESTS:
        raise RateLimited(
            f"{provider} answered 429 for {symbol}",
            ticker=symbol,
            source=provider,
            http_status=status,
        )
    if status in AUTH_STATUSES:
        raise AuthError(
            f"{provider} rejected the request for {symbol}",
            ticker=symbol,
            source=provider,
            http_status=status,
        )
    if status >= HTTP_SERVER_ERROR:
        raise ProviderUnavailable(
            f"{provider} returned HTTP {status} for {symbol}",
            ticker=symbol,
            source=provider,
            http_status=status,
        )
    raise DataFetchError(
        f"{provider} returned HTTP {status} for {symbol}",
        ticker=symbol,
        source=provider,
        http_status=status,
    )


def _decode_json(response: httpx.Response, symbol: str, provider: Provider) -> Any:
    try:
        return response.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise MalformedResponse(
            f"{provider} returned invalid JSON for {symbol}",
            ticker=symbol,
            source=provider,
        ) from exc


def _parse_chart(symbol: str, payload: Any) -> EnrichedSeries:
    """Convert a chart API payload into an EnrichedSeries.

    Rows with any null OHLC value are skipped; a null volume becomes 0.
    Timestamps are shifted by the exchange's ``gmtoffset`` so each bar
    carries its local trading date.
    """
    try:
        chart = payload["chart"]
        results = chart.get("result")
        if not results:
            error = chart.get("error") or {}
            raise TickerNotFoundError(
                f"Chart API returned no result for {symbol}: "
                f"{error.get('description', 'no data')}",
                ticker=symbol,
                source=Provider.YAHOO,
            )
        result = results[0]
        meta = result.get("meta") or {}
        timestamps = result.get("timestamp") or []
        quote_block = result["indicators"]["quote"][0]
        opens = quote_block.get("open") or []
        highs = quote_block.get("high") or []
        lows = quote_block.get("low") or []
        closes = quote_block.get("close") or []
        volumes = quote_block.get("volume") or []
        offset = int(meta.get("gmtoffset") or 0)

        bars: list[PriceBar] = []
        for i, ts in enumerate(timestamps):
            row = [_at(series, i) for series in (opens, highs, lows, closes)]
            if any(value is None for value in row):
                continue
            bars.append(
                PriceBar(
                    date=datetime.datetime.fromtimestamp(int(ts) + offset, tz=datetime.UTC).date(),
                    open=float(row[0]),
                    high=float(row[1]),
                    low=float(row[2]),
                    close=float(row[3]),
                    volume=safe_int(_at(volumes, i)),
                )
            )
    except (KeyError, IndexError, TypeError, ValueError, AttributeError) as exc:
        raise MalformedResponse(
            f"Unexpected chart payload shape for {symbol}: {exc}",
            ticker=symbol,
            source=Provider.YAHOO,
        ) from exc

    if not bars:
        raise InsufficientDataError(
            f"Chart API returned no complete bars for {symbol}",
            ticker=symbol,
            source=Provider.YAHOO,
        )

    market_price = safe_float(meta.get("regularMarketPrice"))
    currency = meta.get("currency")
    return EnrichedSeries(
        symbol=symbol,
        bars=tuple(bars),
        current_price=market_price if market_price > 0 else bars[-1].close,
        currency=str(currency) if currency else None,
        provider=Provider.YAHOO,
    )


def _at(values: list[Any], index: int) -> Any:
    return values[index] if index < len(values) else None


def _trim_to_range(bars: list[PriceBar], range_: str) -> list[PriceBar]:
    """Keep the bars a primary request with the same range would return."""
    if not bars:
        return bars
    last = bars[-1].date
    if range_ == "ytd":
        start = datetime.date(last.year, 1, 1)
    else:
        days = RANGE_DAYS.get(range_)
        if days is None:
            return bars
        start = last - datetime.timedelta(days=days)
    return [bar for bar in bars if bar.date >= start]
