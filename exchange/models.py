"""
Data models for the candle cache and backtester.
Uses Decimal for all monetary/price calculations — no floating point errors.
Timestamps are Unix milliseconds.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Optional, List, Tuple, Dict, Any


# Candle duration per interval, in ms
INTERVAL_MS: Dict[str, int] = {
    "1m": 60_000,
    "3m": 3 * 60_000,
    "5m": 5 * 60_000,
    "15m": 15 * 60_000,
    "30m": 30 * 60_000,
    "1h": 3_600_000,
    "2h": 2 * 3_600_000,
    "4h": 4 * 3_600_000,
    "6h": 6 * 3_600_000,
    "8h": 8 * 3_600_000,
    "12h": 12 * 3_600_000,
    "1d": 86_400_000,
    "3d": 3 * 86_400_000,
    "1w": 7 * 86_400_000,
}


def interval_ms(interval: str) -> int:
    """Duration of one candle. Raises ValueError for unsupported intervals."""
    try:
        return INTERVAL_MS[interval]
    except KeyError:
        raise ValueError(f"Unsupported interval: {interval!r}") from None


class Action(Enum):
    BUY = "BUY"
    SELL = "SELL"
    HOLD = "HOLD"


class CacheStatus(Enum):
    ACTIVE = "ACTIVE"
    UPDATING = "UPDATING"
    ERROR = "ERROR"


class ServeMode(Enum):
    CACHE = "CACHE"             # fully served from cache
    BACKFILL = "BACKFILL"       # missing sub-ranges fetched
    FULL_FETCH = "FULL_FETCH"   # fetched from upstream and populated


class BacktestStatus(Enum):
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class CloseReason(Enum):
    STOP_LOSS = "STOP_LOSS"
    TAKE_PROFIT = "TAKE_PROFIT"
    END_OF_PERIOD = "END_OF_PERIOD"


@dataclass(frozen=True)
class Candle:
    """Standard OHLCV candle (one Binance kline)."""
    open_time: int
    open: Decimal
    high: Decimal
    low: Decimal
    close: Decimal
    volume: Decimal
    close_time: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "open_time": self.open_time,
            "open": str(self.open),
            "high": str(self.high),
            "low": str(self.low),
            "close": str(self.close),
            "volume": str(self.volume),
            "close_time": self.close_time,
        }


@dataclass(frozen=True)
class RangeResult:
    """Candles for a requested range plus how they were obtained."""
    candles: List[Candle]
    mode: ServeMode
    reason: str = ""


@dataclass(frozen=True)
class Vote:
    """A single indicator's BUY/SELL opinion."""
    indicator: str
    side: Action
    reason: str
    value: Optional[Decimal] = None


@dataclass(frozen=True)
class Signal:
    """Aggregated technical signal for one candle window."""
    action: Action
    confidence: Decimal
    votes: Tuple[Vote, ...] = ()
    price: Optional[Decimal] = None
    timestamp: Optional[int] = None

    @property
    def buy_votes(self) -> List[Vote]:
        return [v for v in self.votes if v.side == Action.BUY]

    @property
    def sell_votes(self) -> List[Vote]:
        return [v for v in self.votes if v.side == Action.SELL]


@dataclass(frozen=True)
class Advice:
    """Recommendation returned by the external advisor."""
    action: Action
    confidence: Decimal
    reasoning: str = ""


@dataclass(frozen=True)
class MarketContext:
    """Market summary handed to the advisor alongside the technical signal."""
    symbol: str
    current_price: Decimal
    price_change_pct: Decimal
    volume: Decimal
    high: Decimal
    low: Decimal


@dataclass(frozen=True)
class RiskLevels:
    stop_loss: Decimal
    take_profit: Decimal


@dataclass
class Position:
    """The single open position of a simulation."""
    side: Action
    entry_price: Decimal
    quantity: Decimal
    stop_loss: Decimal
    take_profit: Decimal
    opened_at: int

    @property
    def cost(self) -> Decimal:
        return self.entry_price * self.quantity

    def unrealized(self, price: Decimal) -> Decimal:
        if self.side == Action.BUY:
            return (price - self.entry_price) * self.quantity
        return (self.entry_price - price) * self.quantity


@dataclass(frozen=True)
class Trade:
    """One fill in the backtest trade log (entry or exit)."""
    timestamp: int
    side: Action
    price: Decimal
    quantity: Decimal
    realized_profit: Decimal
    balance_after: Decimal
    close_reason: Optional[CloseReason] = None

    @property
    def is_exit(self) -> bool:
        return self.close_reason is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "side": self.side.value,
            "price": str(self.price),
            "quantity": str(self.quantity),
            "realized_profit": str(self.realized_profit),
            "balance_after": str(self.balance_after),
            "close_reason": self.close_reason.value if self.close_reason else None,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Trade":
        return cls(
            timestamp=int(d["timestamp"]),
            side=Action(d["side"]),
            price=Decimal(d["price"]),
            quantity=Decimal(d["quantity"]),
            realized_profit=Decimal(d["realized_profit"]),
            balance_after=Decimal(d["balance_after"]),
            close_reason=CloseReason(d["close_reason"]) if d.get("close_reason") else None,
        )


@dataclass(frozen=True)
class EquityPoint:
    """Mark-to-market equity after one simulated candle."""
    timestamp: int
    balance: Decimal
    price: Decimal
    max_drawdown: Decimal = Decimal("0")   # running max drawdown (%) up to this step

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "balance": str(self.balance),
            "price": str(self.price),
            "max_drawdown": str(self.max_drawdown),
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "EquityPoint":
        return cls(
            timestamp=int(d["timestamp"]),
            balance=Decimal(d["balance"]),
            price=Decimal(d["price"]),
            max_drawdown=Decimal(d.get("max_drawdown", "0")),
        )


@dataclass
class BacktestResult:
    """
    Outcome of one simulation run.
    Created RUNNING; finalized exactly once via complete() or fail().
    """
    id: str
    name: str
    symbol: str
    interval: str
    start_time: int
    end_time: int
    initial_balance: Decimal
    final_balance: Optional[Decimal] = None
    trades: Tuple[Trade, ...] = ()
    equity_curve: Tuple[EquityPoint, ...] = ()
    summary: Dict[str, Any] = field(default_factory=dict)
    status: BacktestStatus = BacktestStatus.RUNNING
    error: Optional[str] = None
    created_at: Optional[str] = None
    completed_at: Optional[str] = None

    @property
    def is_final(self) -> bool:
        return self.status != BacktestStatus.RUNNING

    @property
    def win_rate(self) -> Decimal:
        return Decimal(str(self.summary.get("win_rate", "0")))

    @property
    def max_drawdown(self) -> Decimal:
        return Decimal(str(self.summary.get("max_drawdown", "0")))

    @property
    def sharpe_ratio(self) -> Decimal:
        return Decimal(str(self.summary.get("sharpe_ratio", "0")))

    def complete(
        self,
        final_balance: Decimal,
        trades: List[Trade],
        equity_curve: List[EquityPoint],
        summary: Dict[str, Any],
        completed_at: str,
    ):
        self._ensure_running()
        self.final_balance = final_balance
        self.trades = tuple(trades)
        self.equity_curve = tuple(equity_curve)
        self.summary = dict(summary)
        self.completed_at = completed_at
        self.status = BacktestStatus.COMPLETED

    def fail(self, error: str, completed_at: str):
        self._ensure_running()
        self.error = error
        self.final_balance = self.initial_balance
        self.completed_at = completed_at
        self.status = BacktestStatus.FAILED

    def _ensure_running(self):
        if self.is_final:
            raise RuntimeError(
                f"Backtest {self.id} already finalized as {self.status.value}"
            )


@dataclass
class CacheStats:
    """Read-only projection of one cache record."""
    symbol: str
    interval: str
    candle_count: int
    data_start_time: Optional[int]
    data_end_time: Optional[int]
    last_update_time: int
    status: CacheStatus
    needs_update: bool
    error_message: Optional[str] = None


@dataclass(frozen=True)
class WarmupResult:
    symbol: str
    interval: str
    ok: bool
    error: Optional[str] = None


@dataclass(frozen=True)
class RefreshSummary:
    updated: int = 0
    skipped: int = 0
    failed: int = 0
