"""Market domain models."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Sequence, Union

Quote = Union[float, int, str]


def quote_text(quote: Quote) -> str:
    """Shortest decimal text of a quote, the way the feed prints it.

    Integral floats drop the trailing ".0" (1234.0 -> "1234").
    Strings are kept as sent, so "1234.50" keeps its trailing zero.
    """
    if isinstance(quote, str):
        return quote.strip()
    text = repr(float(quote))
    if text.endswith(".0"):
        text = text[:-2]
    return text


def last_digit(quote: Quote) -> int:
    """Last base-10 digit of the quote's decimal text (0 if it is not a digit)."""
    text = quote_text(quote)
    if not text or not text[-1].isdigit():
        return 0
    return int(text[-1])


@dataclass(frozen=True)
class Tick:
    digit: int
    quote: float
    timestamp: int  # epoch ms

    @classmethod
    def from_quote(cls, quote: Quote, timestamp: int) -> "Tick":
        return cls(digit=last_digit(quote), quote=float(quote), timestamp=int(timestamp))


@dataclass(frozen=True)
class Candle:
    """OHLC view over a run of consecutive quotes."""

    open: float
    high: float
    low: float
    close: float

    @property
    def body(self) -> float:
        return abs(self.close - self.open)

    @property
    def range(self) -> float:
        return self.high - self.low

    @property
    def upper_wick(self) -> float:
        return self.high - max(self.open, self.close)

    @property
    def lower_wick(self) -> float:
        return min(self.open, self.close) - self.low

    @property
    def bullish(self) -> bool:
        return self.close > self.open

    @property
    def bearish(self) -> bool:
        return self.close < self.open


def candle_from_quotes(quotes: Sequence[float]) -> Optional[Candle]:
    if not quotes:
        return None
    return Candle(open=quotes[0], high=max(quotes), low=min(quotes), close=quotes[-1])


@dataclass(frozen=True)
class StrategyVote:
    name: str
    predicted_digit: Optional[int]
    confidence: float
    weight: float
    reason: str = ""

    @property
    def voted(self) -> bool:
        return self.predicted_digit is not None
