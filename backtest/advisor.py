"""
Advisor — optional second opinion on a technical signal.

The backtest consults an Advisor only when its sampling policy says so.
Any transport or parse failure surfaces as AdvisoryUnavailableError and
the engine falls back to the technical action.
"""

from __future__ import annotations
import asyncio
import json
import random
from decimal import Decimal, InvalidOperation
from typing import Optional, Protocol, Sequence
import aiohttp
import logging

from exchange.models import Action, Advice, Candle, MarketContext, Signal
from core.errors import AdvisoryUnavailableError

logger = logging.getLogger(__name__)

CONTEXT_CANDLES = 24

SYSTEM_PROMPT = (
    "You are an expert cryptocurrency trading analyst. Provide concise, actionable "
    "trading recommendations based on technical analysis and market data."
)


class Advisor(Protocol):
    async def advise(self, context: MarketContext, signal: Signal) -> Advice:
        ...


# ==================== Sampling Policies ====================

class SamplingPolicy(Protocol):
    def should_sample(self, index: int) -> bool:
        """index counts eligible signals seen so far in the run, starting at 0."""
        ...


class NeverSample:
    def should_sample(self, index: int) -> bool:
        return False


class AlwaysSample:
    def should_sample(self, index: int) -> bool:
        return True


class RandomSample:
    """
    Consult the advisor for a random fraction of eligible signals.
    A private, seedable RNG keeps runs reproducible.
    """

    def __init__(self, rate: float = 0.1, seed: Optional[int] = None, always_first: bool = True):
        if not 0 <= rate <= 1:
            raise ValueError(f"Sample rate must be within [0, 1], got {rate}")
        self.rate = rate
        self.always_first = always_first
        self._rng = random.Random(seed)

    def should_sample(self, index: int) -> bool:
        # draw on every call so the sequence depends only on the seed
        hit = self._rng.random() < self.rate
        return hit or (self.always_first and index == 0)


# ==================== Market Context ====================

def build_market_context(symbol: str, candles: Sequence[Candle]) -> MarketContext:
    """Summary of the trailing 24 candles (or fewer, if that's all there is)."""
    if not candles:
        raise ValueError("Market context needs at least one candle")
    recent = candles[-CONTEXT_CANDLES:]
    current = candles[-1].close
    reference = recent[0].close

    change = Decimal("0")
    if reference:
        change = (current - reference) / reference * 100

    return MarketContext(
        symbol=symbol,
        current_price=current,
        price_change_pct=change,
        volume=sum((c.volume for c in recent), Decimal("0")),
        high=max(c.high for c in recent),
        low=min(c.low for c in recent),
    )


# ==================== HTTP Advisor ====================

class HttpAdvisor:
    """OpenAI-compatible chat-completions client returning an Advice."""

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.openai.com/v1",
        model: str = "gpt-4-turbo-preview",
        timeout_sec: float = 30.0,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = aiohttp.ClientTimeout(total=timeout_sec)
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout, trust_env=True)
        return self._session

    async def close(self):
        if self._session and not self._session.closed:
            await self._session.close()

    def _prompt(self, context: MarketContext, signal: Signal) -> str:
        buy = ", ".join(f"{v.indicator} ({v.reason})" for v in signal.buy_votes) or "none"
        sell = ", ".join(f"{v.indicator} ({v.reason})" for v in signal.sell_votes) or "none"
        return (
            "Based on the following market data and technical analysis, provide a "
            "trading recommendation.\n\n"
            f"Symbol: {context.symbol}\n"
            f"Current Price: {context.current_price}\n"
            f"Price Change ({CONTEXT_CANDLES} periods): {context.price_change_pct:.2f}%\n"
            f"Volume: {context.volume}\n"
            f"High: {context.high}\n"
            f"Low: {context.low}\n\n"
            "Technical Indicators Analysis:\n"
            f"- Action: {signal.action.value}\n"
            f"- Confidence: {signal.confidence * 100:.2f}%\n"
            f"- Buy Signals: {buy}\n"
            f"- Sell Signals: {sell}\n\n"
            "Respond in JSON format:\n"
            '{"recommendation": "BUY|SELL|HOLD", "confidence": 0.0-1.0, '
            '"reasoning": "Your analysis here"}'
        )

    async def advise(self, context: MarketContext, signal: Signal) -> Advice:
        if not self.api_key:
            raise AdvisoryUnavailableError("Advisor API key not configured")

        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": self._prompt(context, signal)},
            ],
            "temperature": 0.3,
            "max_tokens": 500,
            "response_format": {"type": "json_object"},
        }
        headers = {"Authorization": f"Bearer {self.api_key}"}

        try:
            session = await self._get_session()
            async with session.post(
                f"{self.base_url}/chat/completions", json=payload, headers=headers
            ) as resp:
                if resp.status != 200:
                    body = await resp.text()
                    raise AdvisoryUnavailableError(f"Advisor HTTP {resp.status}: {body[:200]}")
                try:
                    data = await resp.json(content_type=None)
                except ValueError as e:
                    raise AdvisoryUnavailableError(f"Advisor returned invalid JSON: {e}") from e
        except asyncio.TimeoutError as e:
            raise AdvisoryUnavailableError("Advisor request timed out") from e
        except aiohttp.ClientError as e:
            raise AdvisoryUnavailableError(f"Advisor network error: {e}") from e

        return parse_advice(data)


def parse_advice(data: dict) -> Advice:
    """Extract {recommendation, confidence, reasoning} from a chat-completions payload."""
    try:
        content = data["choices"][0]["message"]["content"]
        body = json.loads(content)
        action = Action(str(body["recommendation"]).upper())
        confidence = Decimal(str(body["confidence"]))
    except (KeyError, IndexError, TypeError, ValueError, InvalidOperation) as e:
        raise AdvisoryUnavailableError(f"Malformed advisor response: {e}") from e

    if not 0 <= confidence <= 1:
        raise AdvisoryUnavailableError(f"Advisor confidence out of range: {confidence}")
    return Advice(action=action, confidence=confidence, reasoning=str(body.get("reasoning", "")))
