"""Per-market candidate discovery through the TradingView scanner API.

One POST per market returns up to ``discovery_limit`` rows matching a coarse
server-side filter; rows are post-filtered locally, given the primary quote
provider's exchange suffix, and yielded as Candidates. A market that cannot
be queried yields nothing: discovery failures never abort a run.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import AsyncIterator, Callable
from typing import Any, Final

import httpx
from pydantic import BaseModel, ConfigDict, Field

from Stock_Screener.config import ScreenerSettings
from Stock_Screener.models.enums import Provider, ScannerId
from Stock_Screener.models.market_data import Candidate
from Stock_Screener.services._helpers import optional_float, safe_float
from Stock_Screener.services.symbols import normalize_symbol
from Stock_Screener.utils.exceptions import DiscoveryFailure

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

COLUMNS: Final[list[str]] = [
    "name",
    "description",
    "close",
    "change",
    "volume",
    "average_volume_30d_calc",
    "market_cap_basic",
    "sector",
    "High.All",
    "price_52_week_high",
    "price_52_week_low",
    "exchange",
]

EXCLUDED_EXCHANGES: Final[frozenset[str]] = frozenset({"OTC", "OTCM"})

# Kuifje pre-filters loosely and re-checks the decline on the real history.
ATH_DECLINE_PREFILTER_FACTOR: Final[float] = 0.9

_HALTED_RE: Final[re.Pattern[str]] = re.compile(r"\.H$", re.IGNORECASE)
_STATUS_SUFFIX_RE: Final[re.Pattern[str]] = re.compile(r"\.(H|P|U|WT)$", re.IGNORECASE)


def _fixed(suffix: str) -> Callable[[str], str]:
    return lambda _exchange: suffix


class MarketConfig(BaseModel):
    """How one country market is queried and how its tickers are suffixed."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    id: str
    name: str
    code: str
    exchanges: list[str] = Field(default_factory=list)
    suffix_for: Callable[[str], str]

    def apply_suffix(self, ticker: str, exchange: str) -> str:
        """Strip status suffixes (.P, .U, .WT) and append the exchange suffix."""
        clean = _STATUS_SUFFIX_RE.sub("", ticker)
        return f"{clean}{self.suffix_for(exchange)}"


MARKETS: Final[dict[str, MarketConfig]] = {
    market.id: market
    for market in (
        MarketConfig(
            id="us",
            name="United States",
            code="america",
            exchanges=["AMEX", "NYSE", "NASDAQ"],
            suffix_for=_fixed(""),
        ),
        MarketConfig(
            id="ca",
            name="Canada",
            code="canada",
            exchanges=["TSX", "TSXV"],
            suffix_for=lambda exchange: ".V" if exchange == "TSXV" else ".TO",
        ),
        MarketConfig(
            id="uk",
            name="United Kingdom",
            code="uk",
            exchanges=["LSE"],
            suffix_for=_fixed(".L"),
        ),
        MarketConfig(
            id="de",
            name="Germany",
            code="germany",
            exchanges=["XETR", "FWB"],
            suffix_for=lambda exchange: ".DE" if exchange == "XETR" else ".F",
        ),
        MarketConfig(
            id="fr",
            name="France",
            code="france",
            exchanges=["EURONEXT"],
            suffix_for=_fixed(".PA"),
        ),
        MarketConfig(
            id="hk",
            name="Hong Kong",
            code="hongkong",
            exchanges=["HKEX"],
            suffix_for=_fixed(".HK"),
        ),
        MarketConfig(
            id="kr",
            name="South Korea",
            code="korea",
            exchanges=["KRX", "KOSDAQ"],
            suffix_for=lambda exchange: ".KQ" if exchange == "KOSDAQ" else ".KS",
        ),
        MarketConfig(
            id="za",
            name="South Africa",
            code="rsa",
            exchanges=["JSE"],
            suffix_for=_fixed(".JO"),
        ),
        MarketConfig(
            id="au",
            name="Australia",
            code="australia",
            exchanges=["ASX"],
            suffix_for=_fixed(".AX"),
        ),
        MarketConfig(
            id="jp",
            name="Japan",
            code="japan",
            exchanges=["TSE"],
            suffix_for=_fixed(".T"),
        ),
        MarketConfig(
            id="in",
            name="India",
            code="india",
            exchanges=["NSE"],
            suffix_for=_fixed(".NS"),
        ),
        MarketConfig(
            id="br",
            name="Brazil",
            code="brazil",
            exchanges=["BMFBOVESPA"],
            suffix_for=_fixed(".SA"),
        ),
        MarketConfig(
            id="mx",
            name="Mexico",
            code="mexico",
            exchanges=["BMV"],
            suffix_for=_fixed(".MX"),
        ),
        MarketConfig(
            id="sg",
            name="Singapore",
            code="singapore",
            exchanges=["SGX"],
            suffix_for=_fixed(".SI"),
        ),
        MarketConfig(
            id="tw",
            name="Taiwan",
            code="taiwan",
            exchanges=["TWSE"],
            suffix_for=_fixed(".TW"),
        ),
        MarketConfig(
            id="il",
            name="Israel",
            code="israel",
            exchanges=["TASE"],
            suffix_for=_fixed(".TA"),
        ),
    )
}


class CandidateDiscovery:
    """Query the scanner API for each market and yield Candidates.

    Usage::

        discovery = CandidateDiscovery(client, settings=settings)
        async for candidate in discovery.discover("ca", ScannerId.KUIFJE):
            print(candidate.symbol, candidate.ath_decline_pct)

        # Orchestrators that need to record the failure call the eager form:
        candidates = await discovery.fetch_candidates("ca", ScannerId.KUIFJE)
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        settings: ScreenerSettings,
        base_url: str | None = None,
    ) -> None:
        self._client = client
        self._settings = settings
        self._base_url = (base_url or settings.tradingview_url).rstrip("/")

    async def discover(self, market: str, scanner: ScannerId) -> AsyncIterator[Candidate]:
        """Lazily yield the market's candidates; failures yield nothing."""
        try:
            candidates = await self.fetch_candidates(market, scanner)
        except DiscoveryFailure as exc:
            logger.warning("Discovery failed for market %s: %s", market, exc)
            return
        for candidate in candidates:
            yield candidate

    async def fetch_candidates(self, market: str, scanner: ScannerId) -> list[Candidate]:
        """Run one scanner query for *market* and return the filtered candidates.

        Raises:
            DiscoveryFailure: On unknown markets, network errors, non-2xx
                responses, or payloads that are not scanner results.
        """
        config = MARKETS.get(market)
        if config is None:
            raise DiscoveryFailure(
                f"Unknown market '{market}'",
                ticker=market,
                source=Provider.TRADINGVIEW,
            )

        rows = await self._query(config, self._build_payload(config, scanner))
        candidates: list[Candidate] = []
        for row in rows:
            candidate = self._parse_row(config, row)
            if candidate is not None and self._passes_post_filter(candidate, scanner):
                candidates.append(candidate)

        logger.info(
            "Discovery %s/%s: %d rows -> %d candidates",
            scanner,
            market,
            len(rows),
            len(candidates),
        )
        return candidates

    # ------------------------------------------------------------------
    # Request building
    # ------------------------------------------------------------------

    def _build_payload(self, config: MarketConfig, scanner: ScannerId) -> dict[str, Any]:
        if scanner is ScannerId.KUIFJE:
            filters: list[dict[str, Any]] = [
                {"left": "type", "operation": "equal", "right": "stock"},
                {"left": "subtype", "operation": "in_range", "right": ["common", "foreign-issuer"]},
                {"left": "is_primary", "operation": "equal", "right": True},
                {"left": "volume", "operation": "greater", "right": 0},
                {"left": "close", "operation": "greater", "right": 0},
                {"left": "High.All", "operation": "greater", "right": 0},
            ]
            if config.exchanges:
                filters.insert(
                    2, {"left": "exchange", "operation": "in_range", "right": config.exchanges}
                )
            return {
                "columns": COLUMNS,
                "ignore_unknown_fields": True,
                "options": {"lang": "en"},
                "range": [0, self._settings.kuifje.discovery_limit],
                "sort": {"sortBy": "change", "sortOrder": "asc"},
                "symbols": {},
                "markets": [config.code],
                "filter": filters,
            }

        zb = self._settings.zonnebloem
        return {
            "columns": COLUMNS,
            "ignore_unknown_fields": True,
            "options": {"lang": "en"},
            "range": [0, zb.discovery_limit],
            "sort": {"sortBy": "average_volume_30d_calc", "sortOrder": "desc"},
            "symbols": {},
            "markets": [config.code],
            "filter2": {
                "operator": "and",
                "operands": [
                    {"operation": {"operator": "equal", "operand": ["type", "stock"]}},
                    {"operation": {"operator": "greater", "operand": ["close", zb.min_price]}},
                    {
                        "operation": {
                            "operator": "greater",
                            "operand": ["average_volume_30d_calc", zb.min_volume],
                        }
                    },
                    {"operation": {"operator": "greater", "operand": ["price_52_week_high", 0]}},
                    {"operation": {"operator": "greater", "operand": ["price_52_week_low", 0]}},
                ],
            },
        }

    async def _query(self, config: MarketConfig, payload: dict[str, Any]) -> list[dict[str, Any]]:
        url = f"{self._base_url}/{config.code}/scan"
        try:
            response = await self._client.post(url, json=payload)
        except httpx.HTTPError as exc:
            raise DiscoveryFailure(
                f"Scanner request for {config.id} failed: {exc}",
                ticker=config.id,
                source=Provider.TRADINGVIEW,
            ) from exc

        if not response.is_success:
            raise DiscoveryFailure(
                f"Scanner returned HTTP {response.status_code} for {config.id}",
                ticker=config.id,
                source=Provider.TRADINGVIEW,
                http_status=response.status_code,
            )

        try:
            body = response.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise DiscoveryFailure(
                f"Scanner returned invalid JSON for {config.id}",
                ticker=config.id,
                source=Provider.TRADINGVIEW,
            ) from exc

        if not isinstance(body, dict):
            raise DiscoveryFailure(
                f"Scanner payload for {config.id} is not an object",
                ticker=config.id,
                source=Provider.TRADINGVIEW,
            )
        rows = body.get("data") or []
        if not isinstance(rows, list):
            raise DiscoveryFailure(
                f"Scanner payload for {config.id} has no data list",
                ticker=config.id,
                source=Provider.TRADINGVIEW,
            )
        return rows

    # ------------------------------------------------------------------
    # Row handling
    # ------------------------------------------------------------------

    def _parse_row(self, config: MarketConfig, row: dict[str, Any]) -> Candidate | None:
        raw = str(row.get("s") or "")
        values = dict(zip(COLUMNS, row.get("d") or [], strict=False))

        prefix, sep, ticker = raw.partition(":")
        if not sep:
            prefix, ticker = "", str(values.get("name") or raw)
        exchange = str(values.get("exchange") or prefix)
        close = safe_float(values.get("close"))

        if not ticker or close <= 0:
            return None
        if exchange in EXCLUDED_EXCHANGES or _HALTED_RE.search(ticker):
            return None

        return Candidate(
            raw_symbol=raw or ticker,
            symbol=normalize_symbol(config.apply_suffix(ticker, exchange)),
            exchange=exchange,
            market=config.id,
            name=str(values.get("description") or ""),
            price=close,
            volume=safe_float(values.get("volume")),
            average_volume=optional_float(values.get("average_volume_30d_calc")),
            sector=str(values["sector"]) if values.get("sector") else None,
            high_52w=optional_float(values.get("price_52_week_high")),
            low_52w=optional_float(values.get("price_52_week_low")),
            all_time_high=optional_float(values.get("High.All")),
        )

    def _passes_post_filter(self, candidate: Candidate, scanner: ScannerId) -> bool:
        if scanner is ScannerId.KUIFJE:
            kuifje = self._settings.kuifje
            if candidate.sector and candidate.sector in kuifje.excluded_sectors:
                return False
            decline = candidate.ath_decline_pct
            return decline is not None and decline >= (
                kuifje.ath_decline_min * ATH_DECLINE_PREFILTER_FACTOR
            )

        ratio = candidate.range_ratio
        return ratio is not None and ratio >= self._settings.zonnebloem.min_range_ratio
