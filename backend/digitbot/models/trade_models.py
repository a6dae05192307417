from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Set

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

# Deriv rejects digit contracts below this stake
MIN_STAKE = 0.35


class ContractType(str, Enum):
    MATCHES = "Matches"
    DIFFERS = "Differs"
    EVEN = "Even"
    ODD = "Odd"
    OVER = "Over"
    UNDER = "Under"

    @property
    def wire_type(self) -> str:
        return _WIRE_TYPES[self]

    @property
    def needs_barrier(self) -> bool:
        return self not in (ContractType.EVEN, ContractType.ODD)

    @classmethod
    def parse(cls, value: Any) -> "ContractType":
        """Accept UI labels loosely: "matches", "Digit Matches", "DIGITMATCH"."""
        if isinstance(value, ContractType):
            return value
        text = str(value).strip().lower()
        for needle, ct in _LABEL_NEEDLES:
            if needle in text:
                return ct
        raise ValueError(f"unknown contract type: {value!r}")


_WIRE_TYPES = {
    ContractType.MATCHES: "DIGITMATCH",
    ContractType.DIFFERS: "DIGITDIFF",
    ContractType.EVEN: "DIGITEVEN",
    ContractType.ODD: "DIGITODD",
    ContractType.OVER: "DIGITOVER",
    ContractType.UNDER: "DIGITUNDER",
}

_LABEL_NEEDLES = (
    ("match", ContractType.MATCHES),
    ("diff", ContractType.DIFFERS),
    ("even", ContractType.EVEN),
    ("odd", ContractType.ODD),
    ("over", ContractType.OVER),
    ("under", ContractType.UNDER),
)


class StrategyConfig(BaseModel):
    """One bot run's parameters. Immutable once the run starts."""

    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    market: str = Field(default="R_10", min_length=1)
    contract_type: ContractType = Field(default=ContractType.MATCHES)
    stake: float = Field(default=MIN_STAKE, ge=MIN_STAKE)
    duration: int = Field(default=1, ge=1, le=10, description="Contract length in ticks")
    digit: Optional[int] = Field(default=None, ge=0, le=9)
    take_profit: float = Field(default=10.0, gt=0)
    stop_loss: float = Field(default=10.0, gt=0)
    trade_on_every_tick: bool = Field(default=False)
    martingale_multiplier: float = Field(default=2.0, ge=1.0)
    max_stake: float = Field(default=100.0, gt=0)

    @field_validator("contract_type", mode="before")
    @classmethod
    def parse_contract_type(cls, v: Any) -> ContractType:
        return ContractType.parse(v)

    @field_validator("market")
    @classmethod
    def normalize_market(cls, v: str) -> str:
        return v.strip()

    @model_validator(mode="after")
    def check_barrier_and_stakes(self) -> "StrategyConfig":
        if self.contract_type.needs_barrier and self.digit is None:
            raise ValueError(f"digit is required for {self.contract_type.value} contracts")
        if self.max_stake < self.stake:
            raise ValueError("max_stake must be greater than or equal to stake")
        return self

    @property
    def barrier(self) -> Optional[str]:
        if self.contract_type.needs_barrier and self.digit is not None:
            return str(self.digit)
        return None


class TradeStatus(str, Enum):
    OPEN = "open"
    WON = "won"
    LOST = "lost"


@dataclass(frozen=True)
class TradeResult:
    contract_id: str
    buy_price: float
    timestamp: int  # epoch ms
    status: TradeStatus = TradeStatus.OPEN
    sell_price: Optional[float] = None
    profit: Optional[float] = None

    def settle(self, *, profit: float, sell_price: Optional[float]) -> "TradeResult":
        if self.status is not TradeStatus.OPEN:
            raise ValueError(f"contract {self.contract_id} already settled as {self.status.value}")
        return dataclasses.replace(
            self,
            status=TradeStatus.WON if profit >= 0 else TradeStatus.LOST,
            profit=float(profit),
            sell_price=sell_price,
        )

    def to_dict(self) -> dict:
        return {
            "contract_id": self.contract_id,
            "buy_price": self.buy_price,
            "sell_price": self.sell_price,
            "profit": self.profit,
            "status": self.status.value,
            "timestamp": self.timestamp,
        }


@dataclass
class RunState:
    is_running: bool = False
    base_stake: float = 0.0
    current_stake: float = 0.0
    cumulative_profit: float = 0.0
    active_contract_ids: Set[str] = field(default_factory=set)
