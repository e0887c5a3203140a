"""
Backtest performance metrics.

  - Round trips: one per exit trade
  - Win rate:    winning round trips / round trips × 100
  - Drawdown:    max over time of (peak − equity) / peak × 100
  - Sharpe:      mean(step returns) / pstdev(step returns) × √annualization
                 0 when the deviation is 0 or fewer than 2 equity points
"""

from __future__ import annotations
from decimal import Decimal
from typing import Any, Dict, Sequence
from exchange.models import EquityPoint, Trade

ZERO = Decimal("0")
HUNDRED = Decimal("100")


def step_returns(equity: Sequence[Decimal]) -> list:
    out = []
    for prev, curr in zip(equity, equity[1:]):
        if prev > 0:
            out.append((curr - prev) / prev)
    return out


def sharpe_ratio(equity: Sequence[Decimal], annualization_factor: int = 252) -> Decimal:
    returns = step_returns(equity)
    if not returns:
        return ZERO
    n = Decimal(len(returns))
    mean = sum(returns, ZERO) / n
    variance = sum(((r - mean) ** 2 for r in returns), ZERO) / n
    std = variance.sqrt()
    if std == 0:
        return ZERO
    return mean / std * Decimal(annualization_factor).sqrt()


class DrawdownTracker:
    """Running peak and max drawdown (%), fed one equity value per step."""

    def __init__(self, initial: Decimal):
        self.peak = initial
        self.max_drawdown = ZERO

    def update(self, equity: Decimal) -> Decimal:
        if equity > self.peak:
            self.peak = equity
        if self.peak > 0:
            dd = (self.peak - equity) / self.peak * HUNDRED
            if dd > self.max_drawdown:
                self.max_drawdown = dd
        return self.max_drawdown


def summarize(
    trades: Sequence[Trade],
    equity_curve: Sequence[EquityPoint],
    initial_balance: Decimal,
    final_balance: Decimal,
    annualization_factor: int = 252,
) -> Dict[str, Any]:
    """Summary dict stored on the BacktestResult. Decimal values as strings."""
    exits = [t for t in trades if t.is_exit]
    wins = [t for t in exits if t.realized_profit > 0]
    losses = [t for t in exits if t.realized_profit < 0]

    total_profit = sum((t.realized_profit for t in wins), ZERO)
    total_loss = abs(sum((t.realized_profit for t in losses), ZERO))
    net = final_balance - initial_balance
    profit_pct = net / initial_balance * HUNDRED if initial_balance else ZERO
    win_rate = Decimal(len(wins)) / Decimal(len(exits)) * HUNDRED if exits else ZERO

    balances = [p.balance for p in equity_curve]
    drawdown = equity_curve[-1].max_drawdown if equity_curve else ZERO

    return {
        "total_trades": len(exits),
        "winning_trades": len(wins),
        "losing_trades": len(losses),
        "win_rate": str(win_rate),
        "total_profit": str(total_profit),
        "total_loss": str(total_loss),
        "net_profit": str(net),
        "profit_pct": str(profit_pct),
        "max_drawdown": str(drawdown),
        "sharpe_ratio": str(sharpe_ratio(balances, annualization_factor)),
    }
