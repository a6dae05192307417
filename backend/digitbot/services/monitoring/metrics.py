"""Run summary for stop messages, the API and the console."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Sequence

from digitbot.models.trade_models import TradeResult, TradeStatus


@dataclass(frozen=True)
class RunSummary:
    trades: int
    wins: int
    losses: int
    open: int
    win_rate: float  # percent of all trades
    net_profit: float

    def to_dict(self) -> dict:
        return asdict(self)

    def describe(self) -> str:
        return f"{self.trades} trades | Win rate: {self.win_rate:.1f}% | Total P/L: {self.net_profit:.2f}"


def summarize(trades: Sequence[TradeResult], net_profit: float) -> RunSummary:
    wins = sum(1 for t in trades if t.status is TradeStatus.WON)
    losses = sum(1 for t in trades if t.status is TradeStatus.LOST)
    total = len(trades)
    return RunSummary(
        trades=total,
        wins=wins,
        losses=losses,
        open=total - wins - losses,
        win_rate=(wins / total) * 100.0 if total > 0 else 0.0,
        net_profit=round(float(net_profit), 2),
    )
