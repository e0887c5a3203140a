"""
Configuration and strategy snapshots.

Coverage:
- StrategyConfig.from_dict fills missing risk fields from RiskDefaults
- symbol normalization, interval and MACD period validation, immutability
- warm-up follows the longest enabled indicator
- AppConfig.from_env overrides
"""

from __future__ import annotations

import dataclasses
from decimal import Decimal

import pytest

from config import AppConfig, RiskDefaults, StrategyConfig


def test_from_dict_applies_defaults() -> None:
    strategy = StrategyConfig.from_dict(
        {"symbol": "ethusdt", "interval": "4h", "risk": {"stop_loss_pct": 1.5}},
        RiskDefaults(),
    )

    assert strategy.symbol == "ETHUSDT"
    assert strategy.name == "ethusdt 4h"
    assert strategy.risk.stop_loss_pct == Decimal("1.5")
    assert strategy.risk.take_profit_pct == Decimal("5")
    assert strategy.risk.max_position_value == Decimal("5000")
    assert strategy.use_advisor is True
    assert strategy.advisor_confidence_threshold == Decimal("0.7")


def test_from_dict_respects_explicit_values() -> None:
    defaults = RiskDefaults(use_advisor=False)
    strategy = StrategyConfig.from_dict(
        {"symbol": "BTCUSDT", "use_advisor": True, "advisor_confidence_threshold": "0.8"},
        defaults,
    )
    assert strategy.interval == "1h"
    assert strategy.use_advisor is True
    assert strategy.advisor_confidence_threshold == Decimal("0.8")


def test_invalid_interval_rejected() -> None:
    with pytest.raises(ValueError):
        StrategyConfig.from_dict({"symbol": "BTCUSDT", "interval": "7m"}, RiskDefaults())


def test_inverted_macd_periods_rejected() -> None:
    with pytest.raises(ValueError, match="MACD"):
        StrategyConfig.from_dict(
            {
                "symbol": "BTCUSDT",
                "interval": "1h",
                "indicators": {"macd": {"fast_period": 26, "slow_period": 12}},
            },
            RiskDefaults(),
        )


def test_strategy_is_frozen() -> None:
    strategy = StrategyConfig.from_dict({"symbol": "BTCUSDT"}, RiskDefaults())
    with pytest.raises(dataclasses.FrozenInstanceError):
        strategy.symbol = "ETHUSDT"
    changed = strategy.with_changes(use_advisor=False)
    assert changed.use_advisor is False
    assert strategy.use_advisor is True


def test_warmup_tracks_enabled_indicators() -> None:
    all_on = StrategyConfig.from_dict({"symbol": "BTCUSDT"}, RiskDefaults())
    rsi_only = StrategyConfig.from_dict(
        {
            "symbol": "BTCUSDT",
            "indicators": {
                "macd": {"enabled": False},
                "ma": {"enabled": False},
                "bollinger": {"enabled": False},
                "volume": {"enabled": False},
            },
        },
        RiskDefaults(),
    )

    assert all_on.warmup == 35
    assert [r.key for r in rsi_only.enabled_indicators] == ["rsi"]
    assert rsi_only.warmup == 15


def test_from_env(monkeypatch) -> None:
    monkeypatch.setenv("BINANCE_TESTNET", "true")
    monkeypatch.setenv("OPENAI_API_KEY", "sk-x")
    monkeypatch.setenv("ADVISOR_SAMPLE_SEED", "7")
    monkeypatch.setenv("DB_PATH", "/tmp/c.db")
    monkeypatch.setenv("DASHBOARD_PORT", "9090")

    config = AppConfig.from_env()

    assert config.exchange.base_url == "https://testnet.binance.vision"
    assert config.advisor.enabled
    assert config.backtest.advisor_sample_seed == 7
    assert config.storage.db_path == "/tmp/c.db"
    assert config.dashboard.port == 9090


def test_from_env_defaults(monkeypatch) -> None:
    for name in ("BINANCE_TESTNET", "OPENAI_API_KEY", "ADVISOR_SAMPLE_SEED"):
        monkeypatch.delenv(name, raising=False)
    config = AppConfig.from_env()
    assert config.exchange.base_url == "https://api.binance.com"
    assert not config.advisor.enabled
    assert config.backtest.advisor_sample_seed is None
