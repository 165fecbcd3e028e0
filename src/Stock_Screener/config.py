"""Configuration via environment variables using pydantic-settings.

Every value can be overridden with a ``SCREENER_`` prefixed variable; nested
groups use ``__`` as delimiter, e.g. ``SCREENER_KUIFJE__ATH_DECLINE_MIN=90``
or ``SCREENER_ALPHA_VANTAGE_QUOTA__PER_DAY=500``.
"""

from __future__ import annotations

import functools
from typing import Final

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from Stock_Screener.models.enums import Provider, ScannerId

DEFAULT_KUIFJE_MARKETS: Final[list[str]] = ["us", "ca"]
DEFAULT_ZONNEBLOEM_MARKETS: Final[list[str]] = [
    "us",
    "ca",
    "uk",
    "de",
    "fr",
    "hk",
    "au",
    "jp",
]


class ProviderQuota(BaseModel):
    """Call budget for one provider."""

    model_config = ConfigDict(frozen=True)

    per_minute: int = Field(ge=0)
    per_day: int = Field(ge=0)


class KuifjeSettings(BaseModel):
    """Thresholds for the deep-decline-plus-recovery detector."""

    model_config = ConfigDict(frozen=True)

    ath_decline_min: float = 85.0
    ath_decline_max: float = 100.0
    growth_threshold_pct: float = 200.0
    min_growth_events: int = 2
    min_consecutive_days: int = 5
    growth_lookback_years: int = 3
    purchase_limit_multiplier: float = 1.20
    history_range: str = "5y"
    excluded_sectors: list[str] = Field(default_factory=list)
    discovery_limit: int = 300


class ZonnebloemSettings(BaseModel):
    """Thresholds for the stable-base-plus-spike detector."""

    model_config = ConfigDict(frozen=True)

    spike_threshold_pct: float = 75.0
    min_spike_duration_days: int = 4
    min_spike_count: int = 1
    lookback_months: int = 24
    max_base_cv: float = 0.25
    max_price_decline_12m_pct: float = 60.0
    max_base_decline_pct: float = 50.0
    min_history_bars: int = 200
    min_range_ratio: float = 3.0
    min_volume: float = 50_000
    min_price: float = 0.10
    history_range: str = "2y"
    discovery_limit: int = 500


class ScreenerSettings(BaseSettings):
    """All screener settings, loaded from env vars with the SCREENER_ prefix."""

    model_config = SettingsConfigDict(
        env_prefix="SCREENER_",
        env_nested_delimiter="__",
        env_file=".env",
        extra="ignore",
        populate_by_name=True,
    )

    # --- Persistence ---
    db_path: str = "data/screener.db"

    # --- Primary provider (Yahoo chart API) ---
    yahoo_chart_url: str = "https://query1.finance.yahoo.com/v8/finance/chart"
    yahoo_chart_fallback_url: str = "https://query2.finance.yahoo.com/v8/finance/chart"
    yahoo_cookie_url: str = "https://fc.yahoo.com/"
    yahoo_crumb_url: str = "https://query2.finance.yahoo.com/v1/test/getcrumb"
    token_ttl_seconds: float = 30 * 60
    yahoo_quota: ProviderQuota = ProviderQuota(per_minute=60, per_day=2000)

    # --- Secondary provider (Alpha Vantage) ---
    alpha_vantage_url: str = "https://www.alphavantage.co/query"
    alpha_vantage_api_key: str = Field(
        default="demo",
        validation_alias=AliasChoices(
            "SCREENER_ALPHA_VANTAGE_API_KEY",
            "ALPHA_VANTAGE_API_KEY",
        ),
    )
    alpha_vantage_quota: ProviderQuota = ProviderQuota(per_minute=5, per_day=25)
    cross_validate_prices: bool = True

    # --- Discovery ---
    tradingview_url: str = "https://scanner.tradingview.com"
    kuifje_markets: list[str] = Field(default_factory=lambda: list(DEFAULT_KUIFJE_MARKETS))
    zonnebloem_markets: list[str] = Field(
        default_factory=lambda: list(DEFAULT_ZONNEBLOEM_MARKETS)
    )

    # --- Classifiers ---
    kuifje: KuifjeSettings = KuifjeSettings()
    zonnebloem: ZonnebloemSettings = ZonnebloemSettings()

    # --- Orchestration ---
    run_deadline_seconds: float = 240.0
    deadline_margin_seconds: float = 15.0
    max_workers: int = 8
    fatal_unavailable_streak: int = 5
    stale_run_minutes: float = 10.0

    # --- HTTP ---
    http_timeout_seconds: float = 30.0
    user_agent: str = (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
    )

    def markets_for(self, scanner: ScannerId) -> list[str]:
        """Markets a scanner covers by default."""
        if scanner is ScannerId.KUIFJE:
            return list(self.kuifje_markets)
        return list(self.zonnebloem_markets)

    def history_range_for(self, scanner: ScannerId) -> str:
        """Chart range requested when enriching a candidate for a scanner."""
        if scanner is ScannerId.KUIFJE:
            return self.kuifje.history_range
        return self.zonnebloem.history_range

    def quotas(self) -> dict[Provider, ProviderQuota]:
        """Budgets for the rate governor keyed by provider."""
        return {
            Provider.YAHOO: self.yahoo_quota,
            Provider.ALPHA_VANTAGE: self.alpha_vantage_quota,
        }


@functools.lru_cache(maxsize=1)
def get_settings() -> ScreenerSettings:
    """Return the process-wide settings, read from the environment once."""
    return ScreenerSettings()
