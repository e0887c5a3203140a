"""
Candle Cache & Backtester — Configuration
All tunable parameters in one place.
"""

import os
from decimal import Decimal
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Tuple
from exchange.models import interval_ms
from core.indicator_rules import IndicatorRule, default_rules, rules_from_dict


@dataclass
class ExchangeConfig:
    testnet: bool = False
    base_url_mainnet: str = "https://api.binance.com"
    base_url_testnet: str = "https://testnet.binance.vision"
    request_timeout_sec: float = 15.0

    @property
    def base_url(self) -> str:
        return self.base_url_testnet if self.testnet else self.base_url_mainnet


@dataclass
class FetchConfig:
    page_limit: int = 1000              # Binance max klines per request
    max_fetches: int = 100              # Page ceiling per fetch (~100k candles)
    page_delay_sec: float = 0.25        # Inter-page rate-limit delay
    max_retries: int = 3
    retry_backoff_sec: float = 2.0


@dataclass
class CacheConfig:
    wait_timeout_sec: float = 60.0      # Max wait on another caller's in-flight fetch
    max_concurrency: int = 4            # Keys refreshed/warmed in parallel
    keep_days: int = 730                # Prune candles older than this
    warmup_symbols: List[str] = field(default_factory=lambda: [
        "BTCUSDT", "ETHUSDT", "BNBUSDT", "ADAUSDT", "SOLUSDT",
        "XRPUSDT", "DOGEUSDT", "DOTUSDT", "MATICUSDT", "LTCUSDT",
    ])
    warmup_intervals: List[str] = field(default_factory=lambda: ["1h", "4h", "1d"])
    warmup_days: int = 365


@dataclass
class SchedulerConfig:
    update_interval_sec: int = 3600         # Hourly stale-cache refresh
    warmup_interval_sec: int = 86400        # Daily popular-pair warmup
    cleanup_interval_sec: int = 604800      # Weekly prune
    run_on_start: bool = False


@dataclass
class BacktestConfig:
    initial_balance: Decimal = Decimal("10000")
    min_candles: int = 100              # Hard floor on series length
    lookback_candles: int = 250         # Trailing window handed to the signal engine
    annualization_factor: int = 252
    advisor_sample_rate: float = 0.1    # Fraction of eligible signals sent to the advisor
    advisor_sample_seed: Optional[int] = None


@dataclass
class AdvisorConfig:
    api_key: str = ""
    base_url: str = "https://api.openai.com/v1"
    model: str = "gpt-4-turbo-preview"
    timeout_sec: float = 30.0

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)


@dataclass
class RiskDefaults:
    """System-wide defaults a caller applies when a strategy omits a risk field."""
    stop_loss_pct: Decimal = Decimal("2")
    take_profit_pct: Decimal = Decimal("5")
    risk_pct: Decimal = Decimal("2")
    max_position_value: Decimal = Decimal("5000")
    use_advisor: bool = True
    advisor_confidence_threshold: Decimal = Decimal("0.7")


@dataclass
class StorageConfig:
    db_path: str = "./data/cache.db"


@dataclass
class DashboardConfig:
    port: int = 8080
    enabled: bool = True


@dataclass(frozen=True)
class RiskParams:
    stop_loss_pct: Decimal
    take_profit_pct: Decimal
    risk_pct: Decimal
    max_position_value: Decimal


@dataclass(frozen=True)
class StrategyConfig:
    """
    Immutable strategy snapshot consumed by one backtest run.
    Build it with from_dict(), passing resolved defaults explicitly.
    """
    name: str
    symbol: str
    interval: str
    risk: RiskParams
    indicators: Tuple[IndicatorRule, ...] = field(default_factory=default_rules)
    use_advisor: bool = False
    advisor_confidence_threshold: Decimal = Decimal("0.7")

    def __post_init__(self):
        interval_ms(self.interval)
        object.__setattr__(self, "symbol", self.symbol.upper())
        object.__setattr__(self, "indicators", tuple(self.indicators))

    @property
    def enabled_indicators(self) -> Tuple[IndicatorRule, ...]:
        return tuple(r for r in self.indicators if r.enabled)

    @property
    def warmup(self) -> int:
        """Candles needed by the longest enabled indicator."""
        return max((r.warmup for r in self.enabled_indicators), default=1)

    def with_changes(self, **changes) -> "StrategyConfig":
        return replace(self, **changes)

    @classmethod
    def from_dict(cls, data: Dict[str, Any], defaults: RiskDefaults) -> "StrategyConfig":
        """
        {"name", "symbol", "interval", "indicators": {...}, "risk": {...},
         "use_advisor", "advisor_confidence_threshold"}
        """
        risk_data = data.get("risk", {})

        def _dec(key: str, fallback: Decimal) -> Decimal:
            value = risk_data.get(key)
            return fallback if value is None else Decimal(str(value))

        risk = RiskParams(
            stop_loss_pct=_dec("stop_loss_pct", defaults.stop_loss_pct),
            take_profit_pct=_dec("take_profit_pct", defaults.take_profit_pct),
            risk_pct=_dec("risk_pct", defaults.risk_pct),
            max_position_value=_dec("max_position_value", defaults.max_position_value),
        )
        threshold = data.get("advisor_confidence_threshold")
        return cls(
            name=data.get("name", f"{data['symbol']} {data.get('interval', '1h')}"),
            symbol=data["symbol"],
            interval=data.get("interval", "1h"),
            risk=risk,
            indicators=rules_from_dict(data.get("indicators", {})),
            use_advisor=data.get("use_advisor", defaults.use_advisor),
            advisor_confidence_threshold=(
                defaults.advisor_confidence_threshold if threshold is None
                else Decimal(str(threshold))
            ),
        )


@dataclass
class AppConfig:
    exchange: ExchangeConfig = field(default_factory=ExchangeConfig)
    fetch: FetchConfig = field(default_factory=FetchConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    backtest: BacktestConfig = field(default_factory=BacktestConfig)
    advisor: AdvisorConfig = field(default_factory=AdvisorConfig)
    risk_defaults: RiskDefaults = field(default_factory=RiskDefaults)
    storage: StorageConfig = field(default_factory=StorageConfig)
    dashboard: DashboardConfig = field(default_factory=DashboardConfig)
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "AppConfig":
        """Load config with environment variable overrides."""
        config = cls()
        config.exchange.testnet = os.getenv("BINANCE_TESTNET", "false").lower() == "true"
        config.fetch.page_delay_sec = float(os.getenv("FETCH_PAGE_DELAY", "0.25"))
        config.advisor.api_key = os.getenv("OPENAI_API_KEY", "")
        config.advisor.base_url = os.getenv("ADVISOR_BASE_URL", config.advisor.base_url)
        seed = os.getenv("ADVISOR_SAMPLE_SEED")
        config.backtest.advisor_sample_seed = int(seed) if seed else None
        config.storage.db_path = os.getenv("DB_PATH", "./data/cache.db")
        config.dashboard.port = int(os.getenv("DASHBOARD_PORT", "8080"))
        config.log_level = os.getenv("LOG_LEVEL", "INFO")
        return config
