"""Martingale stake sizing."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class SizeDecision:
    stake: float
    capped: bool
    reason: str


class MartingaleSizer:
    """Next stake after a settled contract.

    - Win: back to the base stake.
    - Loss: current stake x multiplier, never above max_stake.
    """

    def __init__(self, *, base_stake: float, multiplier: float, max_stake: float) -> None:
        if base_stake <= 0:
            raise ValueError("base_stake must be > 0")
        if multiplier < 1:
            raise ValueError("multiplier must be >= 1")
        if max_stake <= 0:
            raise ValueError("max_stake must be > 0")
        self.base_stake = float(base_stake)
        self.multiplier = float(multiplier)
        self.max_stake = float(max_stake)

    def next_stake(self, *, current_stake: float, won: bool) -> SizeDecision:
        if won:
            return SizeDecision(self.base_stake, False, "win_reset")

        raw = float(current_stake) * self.multiplier
        stake = min(raw, self.max_stake)
        capped = stake >= self.max_stake
        return SizeDecision(round(stake, 2), capped, "max_stake_cap" if capped else "loss_multiply")
