"""Deriv synthetic volatility indices offered for digit trading and scanning."""

from __future__ import annotations

from typing import Dict

VOLATILITY_INDICES: Dict[str, str] = {
    "R_10": "Volatility 10 Index",
    "R_25": "Volatility 25 Index",
    "R_50": "Volatility 50 Index",
    "R_75": "Volatility 75 Index",
    "R_100": "Volatility 100 Index",
    "1HZ10V": "Volatility 10 (1s) Index",
    "1HZ25V": "Volatility 25 (1s) Index",
    "1HZ50V": "Volatility 50 (1s) Index",
    "1HZ75V": "Volatility 75 (1s) Index",
    "1HZ100V": "Volatility 100 (1s) Index",
}


def is_known_symbol(symbol: str) -> bool:
    return symbol in VOLATILITY_INDICES


def label_for(symbol: str) -> str:
    return VOLATILITY_INDICES.get(symbol, symbol)
