"""Tick-window indicators (RSI, MACD, Bollinger, ATR, stochastic, EMA/SMA, candles).

All functions are pure over a sequence of ticks and return neutral values
while the window is shorter than the indicator needs.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import List, Optional, Sequence

from digitbot.models.market_models import Tick, candle_from_quotes


def _quotes(ticks: Sequence[Tick]) -> List[float]:
    return [t.quote for t in ticks]


def _ema(prev: Optional[float], value: float, period: int) -> float:
    alpha = 2.0 / (period + 1.0)
    return value if prev is None else (alpha * value + (1 - alpha) * prev)


def ema_series(values: Sequence[float], period: int) -> List[float]:
    """EMA seeded with the first value, one output per input."""
    out: List[float] = []
    prev: Optional[float] = None
    for v in values:
        prev = _ema(prev, v, period)
        out.append(prev)
    return out


def rsi(ticks: Sequence[Tick], period: int = 14) -> float:
    """Simple-average RSI over the last period+1 quotes (50 during warm-up)."""
    if len(ticks) < period + 1:
        return 50.0

    prices = _quotes(ticks[-period - 1:])
    gains = 0.0
    losses = 0.0
    for prev, cur in zip(prices, prices[1:]):
        change = cur - prev
        if change > 0:
            gains += change
        else:
            losses -= change

    avg_gain = gains / period
    avg_loss = losses / period
    if avg_loss == 0:
        return 100.0
    rs = avg_gain / avg_loss
    return 100.0 - (100.0 / (1.0 + rs))


@dataclass(frozen=True)
class Macd:
    macd: float
    signal: float
    histogram: float


def macd(ticks: Sequence[Tick], fast: int = 12, slow: int = 26, signal_period: int = 9) -> Macd:
    if len(ticks) < slow:
        return Macd(0.0, 0.0, 0.0)

    prices = _quotes(ticks)
    macd_line = [f - s for f, s in zip(ema_series(prices, fast), ema_series(prices, slow))]
    signal = ema_series(macd_line, signal_period)[-1]
    last = macd_line[-1]
    return Macd(macd=last, signal=signal, histogram=last - signal)


@dataclass(frozen=True)
class BollingerBands:
    upper: float
    middle: float
    lower: float
    width: float


def bollinger_bands(ticks: Sequence[Tick], period: int = 20) -> BollingerBands:
    if len(ticks) < period:
        return BollingerBands(0.0, 0.0, 0.0, 0.0)

    prices = _quotes(ticks[-period:])
    sma = sum(prices) / period
    variance = sum((p - sma) ** 2 for p in prices) / period
    std_dev = math.sqrt(variance)

    upper = sma + 2 * std_dev
    lower = sma - 2 * std_dev
    width = (upper - lower) / sma if sma else math.inf
    return BollingerBands(upper=upper, middle=sma, lower=lower, width=width)


def atr(ticks: Sequence[Tick], period: int = 14) -> float:
    """Mean absolute tick-to-tick move over the last `period` moves."""
    if len(ticks) < period + 1:
        return 0.0
    prices = _quotes(ticks)
    ranges = [abs(cur - prev) for prev, cur in zip(prices, prices[1:])]
    return sum(ranges[-period:]) / period


def stochastic_k(ticks: Sequence[Tick], period: int = 14) -> float:
    if len(ticks) < period:
        return 50.0
    prices = _quotes(ticks[-period:])
    high, low = max(prices), min(prices)
    if high == low:
        return 50.0
    return (prices[-1] - low) / (high - low) * 100.0


@dataclass(frozen=True)
class MovingAverages:
    ema: float
    sma: float
    trend: str  # "up" | "down" | "neutral"


def moving_averages(ticks: Sequence[Tick], period: int = 20) -> MovingAverages:
    if len(ticks) < period:
        return MovingAverages(0.0, 0.0, "neutral")

    prices = _quotes(ticks[-period:])
    sma = sum(prices) / len(prices)
    ema = ema_series(prices, len(prices))[-1]
    trend = "up" if ema > sma else "down" if ema < sma else "neutral"
    return MovingAverages(ema=ema, sma=sma, trend=trend)


@dataclass(frozen=True)
class CandlePattern:
    pattern: str
    bullish: bool
    confidence: float


NO_PATTERN = CandlePattern("none", False, 0.0)


def detect_candle_pattern(ticks: Sequence[Tick], size: int = 5) -> CandlePattern:
    """Classify the last tick move within the last `size` quotes.

    Each tick move is a candle: open is the previous quote, close the latest.
    Doji compares that body with the average tick move over the window; hammer
    and engulfing look at the last three quotes only.
    """
    if len(ticks) < size:
        return NO_PATTERN

    prices = _quotes(ticks[-size:])
    open_, close = prices[-2], prices[-1]
    body = abs(close - open_)
    avg_move = sum(abs(b - a) for a, b in zip(prices, prices[1:])) / (len(prices) - 1)

    if body < avg_move * 0.1:
        return CandlePattern("doji", False, 0.6)

    last3 = prices[-3:]
    lower_wick = min(open_, close) - min(last3)
    upper_wick = max(last3) - max(open_, close)
    if lower_wick > body * 2 and upper_wick < body * 0.5:
        return CandlePattern("hammer", True, 0.75)

    # the previous move closes where the current one opens
    prev_open, prev_close = prices[-3], prices[-2]
    if close > open_ and prev_close < prev_open and close > prev_open:
        return CandlePattern("bullish_engulfing", True, 0.8)
    if close < open_ and prev_close > prev_open and close < prev_open:
        return CandlePattern("bearish_engulfing", False, 0.8)

    return NO_PATTERN


@dataclass(frozen=True)
class BodyWick:
    ratio: float
    uncertainty: bool


def body_wick_ratio(ticks: Sequence[Tick], size: int = 5) -> BodyWick:
    """Body share of the last candle's range; long wicks (< 0.3) mean uncertainty."""
    if len(ticks) < size:
        return BodyWick(0.5, False)

    candle = candle_from_quotes(_quotes(ticks[-size:]))
    assert candle is not None
    ratio = candle.body / candle.range if candle.range > 0 else 0.5
    return BodyWick(ratio=ratio, uncertainty=ratio < 0.3)
