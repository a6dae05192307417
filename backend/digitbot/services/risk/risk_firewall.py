"""Take-profit / stop-loss guard on cumulative run profit."""

from __future__ import annotations

from dataclasses import dataclass

TAKE_PROFIT_REASON = "take_profit_reached"
STOP_LOSS_REASON = "stop_loss_reached"


@dataclass(frozen=True)
class RiskDecision:
    allowed: bool
    reason: str


class RiskFirewall:
    def __init__(self, *, take_profit: float, stop_loss: float) -> None:
        if take_profit <= 0 or stop_loss <= 0:
            raise ValueError("take_profit and stop_loss must be > 0")
        self.take_profit = float(take_profit)
        self.stop_loss = float(stop_loss)

    def check(self, cumulative_profit: float) -> RiskDecision:
        """Evaluated after every settlement, before the next cycle is allowed."""
        if cumulative_profit >= self.take_profit:
            return RiskDecision(False, TAKE_PROFIT_REASON)
        if cumulative_profit <= -self.stop_loss:
            return RiskDecision(False, STOP_LOSS_REASON)
        return RiskDecision(True, "ok")
