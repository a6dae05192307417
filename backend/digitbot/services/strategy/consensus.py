"""Multi-strategy digit consensus (the "scan" prediction).

Each sub-strategy looks at the same tick window and votes for one digit with
a confidence. Votes are weighted, summed per digit, and the winner's share of
the total becomes the consensus confidence, boosted when many strategies
agree and capped at 0.95.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence, Tuple

from digitbot.infrastructure.logging.logging import get_logger
from digitbot.models.market_models import StrategyVote, Tick
from digitbot.services.market import indicators

log = get_logger("consensus")

MIN_TICKS = 30
ANALYSIS_WINDOW = 50

# Empirically tuned; keep exact for parity with the published predictor
AGREEMENT_VOTES = 4
AGREEMENT_BOOST = 1.3
STRONG_AGREEMENT_VOTES = 6
STRONG_AGREEMENT_BOOST = 1.2
MAX_CONFIDENCE = 0.95
MIN_CONFIDENCE = 0.4

Vote = Tuple[Optional[int], float, str]


@dataclass(frozen=True)
class ConsensusResult:
    digit: Optional[int]
    confidence: float
    votes: Tuple[StrategyVote, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict:
        return {
            "digit": self.digit,
            "confidence": round(self.confidence, 4),
            "votes": [
                {
                    "name": v.name,
                    "digit": v.predicted_digit,
                    "confidence": round(v.confidence, 4),
                    "weight": v.weight,
                    "reason": v.reason,
                }
                for v in self.votes
            ],
        }


NO_PREDICTION = ConsensusResult(digit=None, confidence=0.0)


def _digits(ticks: Sequence[Tick]) -> List[int]:
    return [t.digit for t in ticks]


def _first_max(counts: Sequence[float]) -> int:
    best = 0
    for i, c in enumerate(counts):
        if c > counts[best]:
            best = i
    return best


def _last_matching(digits: Sequence[int], keep: Callable[[int], bool], fallback: int) -> int:
    for d in reversed(digits):
        if keep(d):
            return d
    return fallback


def digit_frequency(ticks: Sequence[Tick]) -> Vote:
    if len(ticks) < 30:
        return None, 0.0, "insufficient data"
    digits = _digits(ticks[-50:])
    counts = [0] * 10
    for d in digits:
        counts[d] += 1
    digit = _first_max(counts)
    frequency = counts[digit] / len(digits)
    return digit, frequency * 1.2, f"digit {digit} appears {frequency * 100:.1f}% of time"


def sum_modulo(ticks: Sequence[Tick]) -> Vote:
    if len(ticks) < 10:
        return None, 0.0, "insufficient data"
    digit = sum(_digits(ticks[-10:])) % 10
    return digit, 0.6, f"sum pattern suggests {digit}"


def cluster(ticks: Sequence[Tick]) -> Vote:
    """Score each digit by mean position x occurrences over the last 20 ticks."""
    if len(ticks) < 20:
        return None, 0.0, "insufficient data"
    positions: dict = {}
    for idx, d in enumerate(_digits(ticks[-20:])):
        positions.setdefault(d, []).append(idx)

    best_digit: Optional[int] = None
    best_score = 0.0
    for d in sorted(positions):
        pos = positions[d]
        score = (sum(pos) / len(pos)) * len(pos)
        if score > best_score:
            best_score = score
            best_digit = d
    return best_digit, min(best_score / 100.0, 0.9), f"cluster analysis suggests {best_digit}"


def volatility_regime(ticks: Sequence[Tick]) -> Vote:
    if len(ticks) < 20:
        return None, 0.0, "insufficient data"
    bands = indicators.bollinger_bands(ticks)
    avg_range = indicators.atr(ticks)
    if bands.width < 0.02 and avg_range < 0.01:
        counts = Counter(_digits(ticks[-20:]))
        digit = 4
        for d in (5, 6):
            if counts[d] > counts[digit]:
                digit = d
        return digit, 0.7, "low volatility favors stable digits"
    return None, 0.0, "normal volatility"


def rsi_bias(ticks: Sequence[Tick]) -> Vote:
    if len(ticks) < 20:
        return None, 0.0, "insufficient data"
    value = indicators.rsi(ticks)
    recent = _digits(ticks[-10:])
    if value > 60:
        digit = _last_matching(recent, lambda d: d >= 6, 7)
    elif value < 40:
        digit = _last_matching(recent, lambda d: d <= 4, 3)
    else:
        digit = 5
    return digit, 0.65, f"RSI {value:.1f} suggests digit {digit}"


def macd_bias(ticks: Sequence[Tick]) -> Vote:
    if len(ticks) < 30:
        return None, 0.0, "insufficient data"
    hist = indicators.macd(ticks).histogram
    recent = _digits(ticks[-5:])
    if hist > 0:
        return _last_matching(recent, lambda d: d >= 5, 7), 0.6, "MACD bullish"
    if hist < 0:
        return _last_matching(recent, lambda d: d <= 5, 3), 0.6, "MACD bearish"
    return None, 0.0, "MACD neutral"


def moving_average_trend(ticks: Sequence[Tick]) -> Vote:
    if len(ticks) < 20:
        return None, 0.0, "insufficient data"
    trend = indicators.moving_averages(ticks).trend
    recent = _digits(ticks[-5:])
    if trend == "up":
        return _last_matching(recent, lambda d: d >= 5, 6), 0.65, "uptrend detected"
    if trend == "down":
        return _last_matching(recent, lambda d: d <= 5, 4), 0.65, "downtrend detected"
    return None, 0.0, "no clear trend"


def stochastic_extremes(ticks: Sequence[Tick]) -> Vote:
    if len(ticks) < 20:
        return None, 0.0, "insufficient data"
    k = indicators.stochastic_k(ticks)
    recent = _digits(ticks[-5:])
    if k > 80:
        return _last_matching(recent, lambda d: d <= 7, 5), 0.6, "stochastic overbought"
    if k < 20:
        return _last_matching(recent, lambda d: d >= 3, 5), 0.6, "stochastic oversold"
    return None, 0.0, "stochastic neutral"


def momentum(ticks: Sequence[Tick]) -> Vote:
    if len(ticks) < 10:
        return None, 0.0, "insufficient data"
    recent = _digits(ticks[-10:])
    weights = [0.0] * 10
    for idx, d in enumerate(recent):
        weights[d] += (idx + 1) / len(recent)
    digit = _first_max(weights)
    strength = weights[digit] / sum(weights)
    return digit, min(strength * 2, 0.85), f"digit {digit} has strong momentum"


def low_variety(ticks: Sequence[Tick]) -> Vote:
    if len(ticks) < 10:
        return None, 0.0, "insufficient data"
    recent = _digits(ticks[-10:])
    if len(set(recent)) <= 3:
        counts = [0] * 10
        for d in recent:
            counts[d] += 1
        return _first_max(counts), 0.75, "low variety suggests continuation"
    return None, 0.0, "high variety detected"


def candlestick(ticks: Sequence[Tick]) -> Vote:
    if len(ticks) < 10:
        return None, 0.0, "insufficient data"
    pattern = indicators.detect_candle_pattern(ticks)
    if pattern.confidence <= 0.6:
        return None, 0.0, "no clear pattern"
    recent = _digits(ticks[-5:])
    if pattern.bullish:
        digit = _last_matching(recent, lambda d: d >= 5, 7)
        return digit, pattern.confidence, f"{pattern.pattern} suggests bullish move"
    digit = _last_matching(recent, lambda d: d <= 5, 3)
    return digit, pattern.confidence, f"{pattern.pattern} suggests bearish move"


def body_wick(ticks: Sequence[Tick]) -> Vote:
    if len(ticks) < 10:
        return None, 0.0, "insufficient data"
    if indicators.body_wick_ratio(ticks).uncertainty:
        digit = _last_matching(_digits(ticks[-5:]), lambda d: 3 <= d <= 7, 5)
        return digit, 0.7, "market uncertainty favors middle digits"
    return None, 0.0, "normal body-wick ratio"


SubStrategy = Callable[[Sequence[Tick]], Vote]

STRATEGIES: Tuple[Tuple[str, SubStrategy, float], ...] = (
    ("digit_frequency", digit_frequency, 1.5),
    ("sum_modulo", sum_modulo, 0.9),
    ("cluster", cluster, 1.3),
    ("volatility", volatility_regime, 1.2),
    ("rsi", rsi_bias, 1.2),
    ("macd", macd_bias, 1.1),
    ("ma_crossover", moving_average_trend, 1.2),
    ("stochastic", stochastic_extremes, 1.0),
    ("momentum", momentum, 1.6),
    ("low_variety", low_variety, 1.1),
    ("candlestick", candlestick, 1.3),
    ("body_wick", body_wick, 1.0),
)


def collect_votes(ticks: Sequence[Tick]) -> Tuple[StrategyVote, ...]:
    votes = []
    for name, fn, weight in STRATEGIES:
        digit, confidence, reason = fn(ticks)
        votes.append(StrategyVote(name=name, predicted_digit=digit, confidence=confidence, weight=weight, reason=reason))
    return tuple(votes)


def aggregate(votes: Sequence[StrategyVote]) -> ConsensusResult:
    scores = [0.0] * 10
    counts = [0] * 10
    for v in votes:
        if v.predicted_digit is None:
            continue
        scores[v.predicted_digit] += v.confidence * v.weight
        counts[v.predicted_digit] += 1

    total = sum(scores)
    digit = _first_max(scores)
    if total == 0 or scores[digit] == 0:
        return ConsensusResult(digit=None, confidence=0.0, votes=tuple(votes))

    confidence = scores[digit] / total
    if counts[digit] >= AGREEMENT_VOTES:
        confidence *= AGREEMENT_BOOST
    if counts[digit] >= STRONG_AGREEMENT_VOTES:
        confidence *= STRONG_AGREEMENT_BOOST
    confidence = min(confidence, MAX_CONFIDENCE)

    return ConsensusResult(
        digit=digit if confidence > MIN_CONFIDENCE else None,
        confidence=confidence,
        votes=tuple(votes),
    )


class ConsensusEngine:
    """Stateless facade used by the scanner and the API."""

    def scan(self, window: Sequence[Tick]) -> ConsensusResult:
        if len(window) < MIN_TICKS:
            return NO_PREDICTION

        # drop the newest tick so the prediction cannot echo the trigger
        context = list(window[-ANALYSIS_WINDOW:])[:-1]
        result = aggregate(collect_votes(context))
        log.debug(
            "consensus_scan",
            ticks=len(context),
            digit=result.digit,
            confidence=round(result.confidence, 4),
            voters=sum(1 for v in result.votes if v.voted),
        )
        return result
