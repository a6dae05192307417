from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Union

from digitbot.infrastructure.deriv.deriv_ws_client import TradeSession, error_of
from digitbot.infrastructure.logging.logging import get_logger
from digitbot.models.trade_models import StrategyConfig

JsonDict = Dict[str, Any]


@dataclass(frozen=True)
class Proposal:
    id: str
    ask_price: float


@dataclass(frozen=True)
class Purchase:
    contract_id: str
    buy_price: float


@dataclass(frozen=True)
class Failure:
    reason: str
    exchange_error: bool = False  # reported by Deriv, as opposed to send failure / timeout
    code: Optional[str] = None


def build_proposal_request(config: StrategyConfig, *, stake: float, currency: str) -> JsonDict:
    payload: JsonDict = {
        "proposal": 1,
        "amount": round(float(stake), 2),
        "basis": "stake",
        "contract_type": config.contract_type.wire_type,
        "currency": currency,
        "duration": int(config.duration),
        "duration_unit": "t",
        "symbol": config.market,
    }
    if config.barrier is not None:
        payload["barrier"] = config.barrier
    return payload


class OrderExecutor:
    def __init__(
        self,
        session: TradeSession,
        *,
        proposal_timeout: float = 4.0,
        buy_timeout: float = 4.0,
        proposal_retries: int = 3,
        retry_delay: float = 0.5,
        is_active: Callable[[], bool] = lambda: True,
    ) -> None:
        self._logger = get_logger("order_executor")
        self.session = session
        self.proposal_timeout = proposal_timeout
        self.buy_timeout = buy_timeout
        self.proposal_retries = proposal_retries
        self.retry_delay = retry_delay
        self._is_active = is_active

    async def request_proposal(self, config: StrategyConfig, *, stake: float) -> Union[Proposal, Failure]:
        payload = build_proposal_request(config, stake=stake, currency=self.session.account.currency)

        for attempt in range(self.proposal_retries + 1):
            if attempt > 0:
                self._logger.info("proposal_retry", attempt=attempt, max_retries=self.proposal_retries)
                await asyncio.sleep(self.retry_delay)
            if not self._is_active():
                return Failure("run stopped before proposal")

            resp = await self.session.request(payload, timeout=self.proposal_timeout)
            if resp is None:
                self._logger.warning("proposal_no_response", attempt=attempt, contract_type=payload["contract_type"])
                continue

            err = error_of(resp)
            if err:
                return Failure(f"proposal rejected: {err.get('message')}", exchange_error=True, code=err.get("code"))

            prop = resp.get("proposal") or {}
            proposal_id = prop.get("id")
            if not proposal_id:
                return Failure("proposal missing id", exchange_error=True)

            ask = prop.get("ask_price", prop.get("display_value"))
            return Proposal(id=str(proposal_id), ask_price=float(ask if ask is not None else stake))

        return Failure(f"no proposal after {self.proposal_retries} retries")

    async def buy(self, proposal: Proposal) -> Union[Purchase, Failure]:
        """Single attempt; a lost confirmation is not retried."""
        resp = await self.session.request({"buy": proposal.id, "price": proposal.ask_price}, timeout=self.buy_timeout)
        if resp is None:
            return Failure("buy not confirmed in time")

        err = error_of(resp)
        if err:
            return Failure(f"buy failed: {err.get('message')}", exchange_error=True, code=err.get("code"))

        buy_info = resp.get("buy") or {}
        contract_id = buy_info.get("contract_id")
        if contract_id is None:
            return Failure("buy missing contract_id", exchange_error=True)

        return Purchase(
            contract_id=str(contract_id),
            buy_price=float(buy_info.get("buy_price") or proposal.ask_price),
        )
