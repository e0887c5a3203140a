"""
Backtest Engine — candle-by-candle strategy simulation.

States: FLAT ↔ IN_POSITION (at most one open position).

Per step (from the warm-up candle onwards):
  1. IN_POSITION → check SL then TP on the close; close if hit
  2. FLAT → evaluate the signal, optionally consult the advisor,
     size and open a position
  3. Record one mark-to-market EquityPoint and the running drawdown

At the end any open position is force-closed at the last close.
Sequential and deterministic given the candles, the strategy, and the
sampling policy.
"""

from __future__ import annotations
import asyncio
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional, Sequence, Tuple, TYPE_CHECKING
from exchange.models import (
    Action, BacktestResult, Candle, CloseReason, EquityPoint, Position, Signal, Trade,
)
from core.errors import AdvisoryUnavailableError, InsufficientDataError
from core.signal_engine import SignalEngine
from trading.risk_manager import calculate_position_size, calculate_risk_levels, check_exit
from backtest.advisor import (
    Advisor, NeverSample, RandomSample, SamplingPolicy, build_market_context,
)
from backtest.metrics import DrawdownTracker, summarize
from config import BacktestConfig
import logging

if TYPE_CHECKING:
    from config import StrategyConfig

logger = logging.getLogger(__name__)


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class RunStats:
    """Signal and advisor counters for one run."""
    buy_signals: int = 0
    sell_signals: int = 0
    hold_signals: int = 0
    low_confidence_filtered: int = 0
    advisor_eligible: int = 0
    advisor_attempted: int = 0
    advisor_succeeded: int = 0
    advisor_agreements: int = 0
    advisor_disagreements: int = 0

    def record(self, action: Action):
        if action == Action.BUY:
            self.buy_signals += 1
        elif action == Action.SELL:
            self.sell_signals += 1
        else:
            self.hold_signals += 1


class BacktestEngine:
    """
    Runs simulations. Holds no per-run state, so one engine can serve
    concurrent runs.
    """

    def __init__(
        self,
        config: Optional[BacktestConfig] = None,
        advisor: Optional[Advisor] = None,
        signal_engine: Optional[SignalEngine] = None,
    ):
        self.config = config or BacktestConfig()
        self.advisor = advisor
        self.signals = signal_engine or SignalEngine()

    def new_sampling(self) -> SamplingPolicy:
        """Fresh policy per run so seeded runs replay identically."""
        if self.advisor is None:
            return NeverSample()
        return RandomSample(self.config.advisor_sample_rate, self.config.advisor_sample_seed)

    def new_result(
        self,
        strategy: "StrategyConfig",
        start_time: int,
        end_time: int,
        initial_balance: Optional[Decimal] = None,
    ) -> BacktestResult:
        return BacktestResult(
            id=uuid.uuid4().hex,
            name=strategy.name,
            symbol=strategy.symbol,
            interval=strategy.interval,
            start_time=start_time,
            end_time=end_time,
            initial_balance=Decimal(initial_balance or self.config.initial_balance),
            created_at=utc_now_iso(),
        )

    async def run(
        self,
        candles: Sequence[Candle],
        strategy: "StrategyConfig",
        initial_balance: Optional[Decimal] = None,
        sampling: Optional[SamplingPolicy] = None,
    ) -> BacktestResult:
        start = candles[0].open_time if candles else 0
        end = candles[-1].close_time if candles else 0
        result = self.new_result(strategy, start, end, initial_balance)
        await self.execute(result, candles, strategy, sampling)
        return result

    async def execute(
        self,
        result: BacktestResult,
        candles: Sequence[Candle],
        strategy: "StrategyConfig",
        sampling: Optional[SamplingPolicy] = None,
    ):
        """
        Simulate into an existing RUNNING result and finalize it.
        Insufficient data finalizes FAILED. Cancellation and unexpected
        errors finalize FAILED (unless already final) and re-raise.
        """
        sampling = sampling or self.new_sampling()
        logger.info(
            f"[BACKTEST] {result.id[:8]} {strategy.name}: {strategy.symbol} {strategy.interval}, "
            f"{len(candles)} candles, balance {result.initial_balance}"
        )

        try:
            final_balance, trades, curve, stats = await self._simulate(
                candles, strategy, result.initial_balance, sampling
            )
        except InsufficientDataError as e:
            logger.error(f"[BACKTEST] {result.id[:8]}: {e}")
            result.fail(str(e), utc_now_iso())
            return
        except asyncio.CancelledError:
            logger.warning(f"[BACKTEST] {result.id[:8]}: cancelled")
            if not result.is_final:
                result.fail("Backtest cancelled", utc_now_iso())
            raise
        except Exception as e:
            logger.error(f"[BACKTEST] {result.id[:8]}: simulation error: {e}", exc_info=True)
            result.fail(f"Backtest error: {e}", utc_now_iso())
            raise

        summary = summarize(
            trades, curve, result.initial_balance, final_balance,
            self.config.annualization_factor,
        )
        summary["run_stats"] = asdict(stats)
        result.complete(final_balance, trades, curve, summary, utc_now_iso())
        self._log_summary(result, stats, strategy)

    async def _simulate(
        self,
        candles: Sequence[Candle],
        strategy: "StrategyConfig",
        initial_balance: Decimal,
        sampling: SamplingPolicy,
    ) -> Tuple[Decimal, List[Trade], List[EquityPoint], RunStats]:
        warmup = max(self.config.min_candles, strategy.warmup)
        if len(candles) < warmup:
            raise InsufficientDataError(required=warmup, available=len(candles))
        lookback = max(self.config.lookback_candles, strategy.warmup)

        balance = initial_balance
        position: Optional[Position] = None
        trades: List[Trade] = []
        curve: List[EquityPoint] = []
        drawdown = DrawdownTracker(initial_balance)
        stats = RunStats()

        for i in range(warmup - 1, len(candles)):
            candle = candles[i]
            price = candle.close
            ts = candle.close_time

            if position is not None:
                reason = check_exit(position, price)
                if reason is not None:
                    balance, trade = self._close(position, price, ts, reason, balance)
                    trades.append(trade)
                    position = None

            if position is None:
                window = candles[max(0, i + 1 - lookback): i + 1]
                signal = self.signals.evaluate(window, strategy)
                stats.record(signal.action)
                action = await self._decide(signal, window, strategy, stats, sampling)
                if action != Action.HOLD:
                    opened = self._open(action, price, ts, balance, strategy)
                    if opened is not None:
                        position, trade = opened
                        balance = trade.balance_after
                        trades.append(trade)

            equity = balance
            if position is not None:
                equity += position.cost + position.unrealized(price)
            curve.append(EquityPoint(ts, equity, price, drawdown.update(equity)))

            # cancellation point for runner timeouts
            await asyncio.sleep(0)

        if position is not None:
            last = candles[-1]
            balance, trade = self._close(
                position, last.close, last.close_time, CloseReason.END_OF_PERIOD, balance
            )
            trades.append(trade)

        return balance, trades, curve, stats

    async def _decide(
        self,
        signal: Signal,
        window: Sequence[Candle],
        strategy: "StrategyConfig",
        stats: RunStats,
        sampling: SamplingPolicy,
    ) -> Action:
        """Final action after the confidence filter and the optional advisor."""
        action = signal.action
        if action == Action.HOLD or not strategy.use_advisor:
            return action

        threshold = strategy.advisor_confidence_threshold
        if signal.confidence < threshold:
            stats.low_confidence_filtered += 1
            return Action.HOLD

        if self.advisor is None:
            return action

        index = stats.advisor_eligible
        stats.advisor_eligible += 1
        if not sampling.should_sample(index):
            return action

        stats.advisor_attempted += 1
        try:
            advice = await self.advisor.advise(
                build_market_context(strategy.symbol, window), signal
            )
        except AdvisoryUnavailableError as e:
            logger.warning(f"[ADVISOR] Unavailable: {e}. Using technical signal.")
            return action
        except Exception as e:
            logger.error(f"[ADVISOR] Unexpected error: {e}. Using technical signal.", exc_info=True)
            return action
        stats.advisor_succeeded += 1

        if advice.action == action:
            stats.advisor_agreements += 1
        else:
            stats.advisor_disagreements += 1
            logger.info(
                f"[ADVISOR] Disagrees: technical={action.value}, advisor={advice.action.value} "
                f"({advice.confidence:.2f})"
            )

        if advice.confidence >= threshold:
            return advice.action
        return action

    def _open(
        self,
        action: Action,
        price: Decimal,
        ts: int,
        balance: Decimal,
        strategy: "StrategyConfig",
    ) -> Optional[Tuple[Position, Trade]]:
        risk = strategy.risk
        levels = calculate_risk_levels(price, action, risk.stop_loss_pct, risk.take_profit_pct)
        quantity = calculate_position_size(
            balance, risk.risk_pct, price, levels.stop_loss, risk.max_position_value
        )
        value = quantity * price

        if quantity <= 0 or value > balance or value > risk.max_position_value:
            logger.debug(
                f"[BACKTEST] Entry rejected: {action.value} value {value} "
                f"(balance {balance}, max {risk.max_position_value})"
            )
            return None

        balance -= value
        position = Position(
            side=action,
            entry_price=price,
            quantity=quantity,
            stop_loss=levels.stop_loss,
            take_profit=levels.take_profit,
            opened_at=ts,
        )
        logger.debug(
            f"[BACKTEST] Opened {action.value} {quantity} @ {price} "
            f"SL={levels.stop_loss} TP={levels.take_profit}"
        )
        return position, Trade(ts, action, price, quantity, Decimal("0"), balance)

    def _close(
        self,
        position: Position,
        price: Decimal,
        ts: int,
        reason: CloseReason,
        balance: Decimal,
    ) -> Tuple[Decimal, Trade]:
        profit = position.unrealized(price)
        balance += position.cost + profit
        exit_side = Action.SELL if position.side == Action.BUY else Action.BUY
        logger.debug(
            f"[BACKTEST] Closed {position.side.value} @ {price} ({reason.value}): {profit:+.2f}"
        )
        return balance, Trade(ts, exit_side, price, position.quantity, profit, balance, reason)

    def _log_summary(self, result: BacktestResult, stats: RunStats, strategy: "StrategyConfig"):
        s = result.summary
        logger.info(
            f"[BACKTEST] {result.id[:8]} completed: final {Decimal(result.final_balance):.2f} "
            f"({Decimal(s['profit_pct']):.2f}%), {s['total_trades']} trades, "
            f"win rate {Decimal(s['win_rate']):.2f}%, max DD {Decimal(s['max_drawdown']):.2f}%, "
            f"Sharpe {Decimal(s['sharpe_ratio']):.2f}"
        )
        logger.info(
            f"[BACKTEST] Signals BUY={stats.buy_signals} SELL={stats.sell_signals} "
            f"HOLD={stats.hold_signals}, low-confidence filtered {stats.low_confidence_filtered}"
        )
        if strategy.use_advisor:
            logger.info(
                f"[ADVISOR] Calls {stats.advisor_succeeded}/{stats.advisor_attempted}, "
                f"agreements {stats.advisor_agreements}, disagreements {stats.advisor_disagreements}"
            )
