"""
Signal Engine — turns a candle window into one BUY/SELL/HOLD signal.

Each enabled indicator rule casts at most one vote. Aggregation:
  - confidence = max(buy_votes, sell_votes) / enabled_indicators
  - more BUY votes  → BUY
  - more SELL votes → SELL
  - tie with at least one vote → HOLD @ 0.5
  - no votes at all            → HOLD @ 0

Pure and deterministic: same window + same config → same Signal.
"""

from __future__ import annotations
from decimal import Decimal
from typing import List, Sequence, TYPE_CHECKING
from exchange.models import Action, Candle, Signal, Vote
import logging

if TYPE_CHECKING:
    from config import StrategyConfig

logger = logging.getLogger(__name__)

NEUTRAL_CONFIDENCE = Decimal("0.5")


class SignalEngine:
    """Stateless aggregator over the strategy's indicator rules."""

    def evaluate(self, window: Sequence[Candle], config: "StrategyConfig") -> Signal:
        if not window:
            raise ValueError("Cannot evaluate an empty candle window")

        closes = [c.close for c in window]
        volumes = [c.volume for c in window]
        last = window[-1]

        rules = config.enabled_indicators
        votes: List[Vote] = []
        for rule in rules:
            vote = rule.vote(closes, volumes)
            if vote is not None:
                votes.append(vote)

        buy = sum(1 for v in votes if v.side == Action.BUY)
        sell = sum(1 for v in votes if v.side == Action.SELL)

        if not rules or (buy == 0 and sell == 0):
            action, confidence = Action.HOLD, Decimal("0")
        elif buy > sell:
            action, confidence = Action.BUY, Decimal(buy) / Decimal(len(rules))
        elif sell > buy:
            action, confidence = Action.SELL, Decimal(sell) / Decimal(len(rules))
        else:
            action, confidence = Action.HOLD, NEUTRAL_CONFIDENCE

        if votes:
            logger.debug(
                f"[SIGNAL] {config.symbol} @ {last.close}: {action.value} "
                f"conf={confidence:.2f} ({buy} buy / {sell} sell of {len(rules)}) "
                f"— {', '.join(f'{v.indicator}:{v.reason}' for v in votes)}"
            )

        return Signal(
            action=action,
            confidence=confidence,
            votes=tuple(votes),
            price=last.close,
            timestamp=last.close_time,
        )
