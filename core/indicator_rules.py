"""
Indicator Rules — one tagged variant per indicator kind.
Each rule carries its own parameters, knows how many candles it needs
(warmup), and turns its indicator output into a BUY/SELL vote or nothing.
"""

from __future__ import annotations
from abc import ABC, abstractmethod
from dataclasses import dataclass, fields
from decimal import Decimal
from typing import Any, ClassVar, Dict, Optional, Sequence, Tuple, Type
from exchange.models import Action, Vote
from core import indicators


class IndicatorRule(ABC):
    """Base for all rule variants. Subclasses are frozen dataclasses."""

    name: ClassVar[str] = ""
    key: ClassVar[str] = ""
    decimal_fields: ClassVar[Tuple[str, ...]] = ()

    enabled: bool

    def __post_init__(self):
        for attr in self.decimal_fields:
            value = getattr(self, attr)
            if not isinstance(value, Decimal):
                object.__setattr__(self, attr, Decimal(str(value)))
        for f in fields(self):
            value = getattr(self, f.name)
            if f.name.endswith("period") and value <= 0:
                raise ValueError(f"{self.key} {f.name} must be positive, got {value}")

    @property
    @abstractmethod
    def warmup(self) -> int:
        """Minimum number of candles before the rule can vote."""

    @abstractmethod
    def vote(self, closes: Sequence[Decimal], volumes: Sequence[Decimal]) -> Optional[Vote]:
        ...

    @classmethod
    def from_params(cls, params: Dict[str, Any]) -> "IndicatorRule":
        known = {f.name for f in fields(cls)}
        unknown = set(params) - known
        if unknown:
            raise ValueError(f"Unknown {cls.key} parameters: {sorted(unknown)}")
        return cls(**params)


@dataclass(frozen=True)
class RsiRule(IndicatorRule):
    name: ClassVar[str] = "RSI"
    key: ClassVar[str] = "rsi"
    decimal_fields: ClassVar[Tuple[str, ...]] = ("overbought", "oversold")

    enabled: bool = True
    period: int = 14
    overbought: Decimal = Decimal("70")
    oversold: Decimal = Decimal("30")

    @property
    def warmup(self) -> int:
        return self.period + 1

    def vote(self, closes, volumes):
        values = indicators.rsi(closes, self.period)
        if not values:
            return None
        current = values[-1]
        if current < self.oversold:
            return Vote(self.name, Action.BUY, "Oversold", current)
        if current > self.overbought:
            return Vote(self.name, Action.SELL, "Overbought", current)
        return None


@dataclass(frozen=True)
class MacdRule(IndicatorRule):
    name: ClassVar[str] = "MACD"
    key: ClassVar[str] = "macd"

    enabled: bool = True
    fast_period: int = 12
    slow_period: int = 26
    signal_period: int = 9

    def __post_init__(self):
        super().__post_init__()
        if self.fast_period >= self.slow_period:
            raise ValueError(
                f"MACD fast period ({self.fast_period}) must be shorter than "
                f"slow period ({self.slow_period})"
            )

    @property
    def warmup(self) -> int:
        # two aligned (macd, signal) pairs are needed to detect a cross
        return self.slow_period + self.signal_period

    def vote(self, closes, volumes):
        pairs = indicators.macd(closes, self.fast_period, self.slow_period, self.signal_period)
        if len(pairs) < 2:
            return None
        (prev_macd, prev_signal), (curr_macd, curr_signal) = pairs[-2], pairs[-1]

        if prev_macd < prev_signal and curr_macd > curr_signal:
            return Vote(self.name, Action.BUY, "Bullish crossover", curr_macd)
        if prev_macd > prev_signal and curr_macd < curr_signal:
            return Vote(self.name, Action.SELL, "Bearish crossover", curr_macd)
        return None


@dataclass(frozen=True)
class MovingAverageRule(IndicatorRule):
    name: ClassVar[str] = "MA"
    key: ClassVar[str] = "ma"

    enabled: bool = True
    short_period: int = 9
    long_period: int = 21

    @property
    def warmup(self) -> int:
        return max(self.short_period, self.long_period)

    def vote(self, closes, volumes):
        short_ma = indicators.sma_last(closes, self.short_period)
        long_ma = indicators.sma_last(closes, self.long_period)
        if short_ma is None or long_ma is None:
            return None
        price = closes[-1]

        if short_ma > long_ma and price > short_ma:
            return Vote(self.name, Action.BUY, "Golden cross & price above MA", short_ma)
        if short_ma < long_ma and price < short_ma:
            return Vote(self.name, Action.SELL, "Death cross & price below MA", short_ma)
        return None


@dataclass(frozen=True)
class BollingerRule(IndicatorRule):
    name: ClassVar[str] = "BollingerBands"
    key: ClassVar[str] = "bollinger"
    decimal_fields: ClassVar[Tuple[str, ...]] = ("std_dev",)

    enabled: bool = True
    period: int = 20
    std_dev: Decimal = Decimal("2")

    @property
    def warmup(self) -> int:
        return self.period

    def vote(self, closes, volumes):
        bands = indicators.bollinger_last(closes, self.period, self.std_dev)
        if bands is None:
            return None
        lower, _, upper = bands
        price = closes[-1]

        if price <= lower:
            return Vote(self.name, Action.BUY, "Price at lower band", lower)
        if price >= upper:
            return Vote(self.name, Action.SELL, "Price at upper band", upper)
        return None


@dataclass(frozen=True)
class VolumeRule(IndicatorRule):
    name: ClassVar[str] = "Volume"
    key: ClassVar[str] = "volume"
    decimal_fields: ClassVar[Tuple[str, ...]] = ("threshold",)

    enabled: bool = True
    threshold: Decimal = Decimal("1.5")
    period: int = 20

    @property
    def warmup(self) -> int:
        return max(self.period, 2)

    def vote(self, closes, volumes):
        avg_volume = indicators.sma_last(volumes, self.period)
        if avg_volume is None or len(closes) < 2:
            return None
        current_volume = volumes[-1]
        if current_volume <= avg_volume * self.threshold:
            return None

        change = closes[-1] - closes[-2]
        if change > 0:
            return Vote(self.name, Action.BUY, "High volume with price increase", current_volume)
        if change < 0:
            return Vote(self.name, Action.SELL, "High volume with price decrease", current_volume)
        return None


RULE_TYPES: Dict[str, Type[IndicatorRule]] = {
    cls.key: cls
    for cls in (RsiRule, MacdRule, MovingAverageRule, BollingerRule, VolumeRule)
}


def default_rules() -> Tuple[IndicatorRule, ...]:
    return tuple(cls() for cls in RULE_TYPES.values())


def rules_from_dict(data: Dict[str, Dict[str, Any]]) -> Tuple[IndicatorRule, ...]:
    """
    Build the rule tuple from {"rsi": {...}, "macd": {...}, ...}.
    Indicators not mentioned keep their defaults.
    """
    unknown = set(data) - set(RULE_TYPES)
    if unknown:
        raise ValueError(f"Unknown indicators: {sorted(unknown)}")
    return tuple(
        cls.from_params(data.get(key, {}))
        for key, cls in RULE_TYPES.items()
    )
