"""
Risk Manager — SL/TP placement, position sizing, and exit checks.

Levels:
  - BUY:  SL = entry × (1 − sl%),  TP = entry × (1 + tp%)
  - SELL: SL = entry × (1 + sl%),  TP = entry × (1 − tp%)

Sizing:
  qty = balance × risk% ÷ |entry − SL|
  capped so that qty × entry ≤ min(max_position_value, balance)

Exit triggers use the step's close price. Stop-loss is checked first, so a
step that satisfies both bounds always closes as STOP_LOSS.
"""

from __future__ import annotations
from decimal import Decimal, ROUND_DOWN
from typing import Optional
from exchange.models import Action, CloseReason, Position, RiskLevels
import logging

logger = logging.getLogger(__name__)

HUNDRED = Decimal("100")
QTY_STEP = Decimal("0.00000001")


def calculate_risk_levels(
    entry_price: Decimal,
    side: Action,
    stop_loss_pct: Decimal,
    take_profit_pct: Decimal,
) -> RiskLevels:
    """Percent inputs are whole percents (2 means 2%)."""
    sl = stop_loss_pct / HUNDRED
    tp = take_profit_pct / HUNDRED

    if side == Action.BUY:
        return RiskLevels(
            stop_loss=entry_price * (1 - sl),
            take_profit=entry_price * (1 + tp),
        )
    if side == Action.SELL:
        return RiskLevels(
            stop_loss=entry_price * (1 + sl),
            take_profit=entry_price * (1 - tp),
        )
    raise ValueError(f"No risk levels for {side}")


def calculate_position_size(
    balance: Decimal,
    risk_pct: Decimal,
    entry_price: Decimal,
    stop_loss: Decimal,
    max_position_value: Decimal,
) -> Decimal:
    """
    Quantity to buy/sell, rounded down to 8 decimals.
    Returns 0 when no valid position can be opened.
    """
    if balance <= 0 or entry_price <= 0:
        return Decimal("0")

    per_unit_risk = abs(entry_price - stop_loss)
    if per_unit_risk == 0:
        logger.warning(f"[RISK] Zero distance between entry {entry_price} and SL. No position.")
        return Decimal("0")

    risk_amount = balance * risk_pct / HUNDRED
    quantity = risk_amount / per_unit_risk

    cap = min(max_position_value, balance)
    if quantity * entry_price > cap:
        quantity = cap / entry_price

    quantity = quantity.quantize(QTY_STEP, rounding=ROUND_DOWN)
    if quantity <= 0:
        return Decimal("0")
    return quantity


def check_exit(position: Position, price: Decimal) -> Optional[CloseReason]:
    """Side-aware SL/TP check. Stop-loss wins a tie."""
    if position.side == Action.BUY:
        if price <= position.stop_loss:
            return CloseReason.STOP_LOSS
        if price >= position.take_profit:
            return CloseReason.TAKE_PROFIT
    else:
        if price >= position.stop_loss:
            return CloseReason.STOP_LOSS
        if price <= position.take_profit:
            return CloseReason.TAKE_PROFIT
    return None
