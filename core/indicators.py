"""
Technical indicator math on Decimal close/volume series.
All series are oldest-first. Functions return [] (or None) when there is
not enough data rather than raising.
"""

from __future__ import annotations
from decimal import Decimal
from typing import List, Optional, Sequence, Tuple

ZERO = Decimal("0")
HUNDRED = Decimal("100")


def sma(values: Sequence[Decimal], period: int) -> List[Decimal]:
    """Simple moving average, one value per full window."""
    if period <= 0 or len(values) < period:
        return []
    p = Decimal(period)
    window_sum = sum(values[:period], ZERO)
    out = [window_sum / p]
    for i in range(period, len(values)):
        window_sum += values[i] - values[i - period]
        out.append(window_sum / p)
    return out


def sma_last(values: Sequence[Decimal], period: int) -> Optional[Decimal]:
    if period <= 0 or len(values) < period:
        return None
    return sum(values[-period:], ZERO) / Decimal(period)


def ema(values: Sequence[Decimal], period: int) -> List[Decimal]:
    """
    Exponential moving average seeded with the SMA of the first `period` values.
    k = 2 / (period + 1)
    """
    if period <= 0 or len(values) < period:
        return []
    k = Decimal(2) / Decimal(period + 1)
    prev = sum(values[:period], ZERO) / Decimal(period)
    out = [prev]
    for v in values[period:]:
        prev = (v - prev) * k + prev
        out.append(prev)
    return out


def rsi(values: Sequence[Decimal], period: int = 14) -> List[Decimal]:
    """
    Wilder's RSI.

    avg_gain/avg_loss start as plain means over the first `period` changes,
    then smooth: avg = (prev_avg * (period - 1) + current) / period.
    RSI = 100 when there are no losses, 50 on a perfectly flat series.
    """
    if period <= 0 or len(values) <= period:
        return []

    gains: List[Decimal] = []
    losses: List[Decimal] = []
    for prev, curr in zip(values, values[1:]):
        change = curr - prev
        gains.append(change if change > 0 else ZERO)
        losses.append(-change if change < 0 else ZERO)

    p = Decimal(period)
    avg_gain = sum(gains[:period], ZERO) / p
    avg_loss = sum(losses[:period], ZERO) / p
    out = [_rsi_value(avg_gain, avg_loss)]

    for gain, loss in zip(gains[period:], losses[period:]):
        avg_gain = (avg_gain * (p - 1) + gain) / p
        avg_loss = (avg_loss * (p - 1) + loss) / p
        out.append(_rsi_value(avg_gain, avg_loss))
    return out


def _rsi_value(avg_gain: Decimal, avg_loss: Decimal) -> Decimal:
    if avg_loss == 0:
        return HUNDRED if avg_gain > 0 else Decimal("50")
    rs = avg_gain / avg_loss
    return HUNDRED - HUNDRED / (1 + rs)


def macd(
    values: Sequence[Decimal],
    fast_period: int = 12,
    slow_period: int = 26,
    signal_period: int = 9,
) -> List[Tuple[Decimal, Decimal]]:
    """
    MACD line and signal line, aligned: [(macd, signal), ...].
    MACD = EMA(fast) - EMA(slow); signal = EMA(MACD, signal_period).
    First pair appears after slow_period + signal_period - 1 values.
    """
    if fast_period >= slow_period:
        raise ValueError("MACD fast period must be shorter than slow period")
    fast = ema(values, fast_period)
    slow = ema(values, slow_period)
    if not slow:
        return []

    offset = slow_period - fast_period
    macd_line = [f - s for f, s in zip(fast[offset:], slow)]
    signal = ema(macd_line, signal_period)
    if not signal:
        return []
    return list(zip(macd_line[signal_period - 1:], signal))


def std_dev(values: Sequence[Decimal]) -> Decimal:
    """Population standard deviation."""
    n = len(values)
    if n == 0:
        return ZERO
    mean = sum(values, ZERO) / Decimal(n)
    variance = sum(((v - mean) ** 2 for v in values), ZERO) / Decimal(n)
    return variance.sqrt()


def bollinger_last(
    values: Sequence[Decimal],
    period: int = 20,
    num_std: Decimal = Decimal("2"),
) -> Optional[Tuple[Decimal, Decimal, Decimal]]:
    """Latest (lower, middle, upper) band, or None if not enough data."""
    if period <= 0 or len(values) < period:
        return None
    window = values[-period:]
    middle = sum(window, ZERO) / Decimal(period)
    width = std_dev(window) * num_std
    return middle - width, middle, middle + width
