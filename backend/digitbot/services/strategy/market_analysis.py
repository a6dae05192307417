"""Digit-distribution breakdowns for the even/odd, over/under and matches markets."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, List, Sequence

from digitbot.models.market_models import Tick

ANALYSIS_TICKS = 50
MIN_TICKS = 30


@dataclass(frozen=True)
class MarketAnalysis:
    market: str
    prediction: str
    confidence: float  # percent, 0..100
    recommendation: str
    breakdown: Dict[str, float] = field(default_factory=dict)
    recent: List[str] = field(default_factory=list)


def _pct(count: int, total: int) -> float:
    return round(count / total * 100.0, 1) if total else 0.0


def _recent(ticks: Sequence[Tick]) -> List[Tick]:
    if len(ticks) < MIN_TICKS:
        raise ValueError(f"need at least {MIN_TICKS} ticks, got {len(ticks)}")
    return list(ticks[-ANALYSIS_TICKS:])


def analyze_even_odd(ticks: Sequence[Tick]) -> MarketAnalysis:
    recent = _recent(ticks)
    even = sum(1 for t in recent if t.digit % 2 == 0)
    odd = len(recent) - even
    even_pct, odd_pct = _pct(even, len(recent)), _pct(odd, len(recent))
    prediction = "EVEN" if even_pct > odd_pct else "ODD"
    return MarketAnalysis(
        market="even_odd",
        prediction=prediction,
        confidence=max(even_pct, odd_pct),
        recommendation=f"{prediction} contracts likely to dominate next 3-20 ticks",
        breakdown={"even": even_pct, "odd": odd_pct},
        recent=["E" if t.digit % 2 == 0 else "O" for t in recent],
    )


def analyze_over_under(ticks: Sequence[Tick], digit: int) -> MarketAnalysis:
    if not 0 <= digit <= 9:
        raise ValueError("digit must be between 0 and 9")
    recent = _recent(ticks)
    over = sum(1 for t in recent if t.digit > digit)
    under = sum(1 for t in recent if t.digit < digit)
    equal = len(recent) - over - under
    over_pct, under_pct = _pct(over, len(recent)), _pct(under, len(recent))
    prediction = "OVER" if over_pct > under_pct else "UNDER"
    return MarketAnalysis(
        market="over_under",
        prediction=prediction,
        confidence=max(over_pct, under_pct),
        recommendation=f"{prediction} {digit} contracts likely to appear more in next 3-26 ticks",
        breakdown={"over": over_pct, "under": under_pct, "equal": _pct(equal, len(recent))},
        recent=["O" if t.digit > digit else "U" if t.digit < digit else "=" for t in recent],
    )


def analyze_matches(ticks: Sequence[Tick]) -> MarketAnalysis:
    recent = _recent(ticks)
    counts = Counter(t.digit for t in recent)
    # most_common keeps first-seen order on ties
    digit, hits = counts.most_common(1)[0]
    frequency = _pct(hits, len(recent))
    return MarketAnalysis(
        market="matches",
        prediction=str(digit),
        confidence=frequency,
        recommendation=f"Digit {digit} appeared {hits} times ({frequency}%)",
        breakdown={str(d): _pct(counts.get(d, 0), len(recent)) for d in range(10)},
        recent=[str(t.digit) for t in recent],
    )
