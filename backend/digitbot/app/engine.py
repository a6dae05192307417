"""Trading engine: the proposal -> buy -> settlement loop for digit contracts.

One run trades a single StrategyConfig until take-profit, stop-loss, a fatal
exchange error or a manual stop. Cycles are serialized (at most one open
contract) unless trade_on_every_tick is set, in which case every tick starts a
cycle of its own and contracts may overlap.
"""

from __future__ import annotations

import asyncio
import dataclasses
from typing import Any, Coroutine, Dict, List, Optional, Set, Tuple

from digitbot.infrastructure.deriv.deriv_ws_client import AUTH_ERROR_CODES, TradeSession, error_of
from digitbot.infrastructure.logging.logging import bind_run_context, clear_run_context, get_logger
from digitbot.infrastructure.utils.config import TimingConfig
from digitbot.infrastructure.utils.timeutils import now_ms
from digitbot.models.trade_models import RunState, StrategyConfig, TradeResult, TradeStatus
from digitbot.services.execution.order_executor import Failure, OrderExecutor
from digitbot.services.monitoring.event_log import EventLog
from digitbot.services.monitoring.metrics import RunSummary, summarize
from digitbot.services.risk.position_sizer import MartingaleSizer
from digitbot.services.risk.risk_firewall import TAKE_PROFIT_REASON, RiskFirewall

JsonDict = Dict[str, Any]


class TradeOrchestrator:
    def __init__(
        self,
        session: TradeSession,
        *,
        events: EventLog,
        timing: Optional[TimingConfig] = None,
    ) -> None:
        self._logger = get_logger("engine")
        self.session = session
        self.events = events
        self.timing = timing or TimingConfig()

        self._state = RunState()
        self._config: Optional[StrategyConfig] = None
        self._trades: List[TradeResult] = []
        self._executing = False
        self._stop_reason: Optional[str] = None
        self._stopped = asyncio.Event()
        self._tasks: Set["asyncio.Task[Any]"] = set()
        self._sizer: Optional[MartingaleSizer] = None
        self._firewall: Optional[RiskFirewall] = None

        self._executor = OrderExecutor(
            session,
            proposal_timeout=self.timing.proposal_timeout,
            buy_timeout=self.timing.buy_timeout,
            proposal_retries=self.timing.proposal_retries,
            retry_delay=self.timing.retry_delay,
            is_active=lambda: self._state.is_running,
        )

        session.set_reconnect_policy(lambda: self._state.is_running)
        session.on("authorize", self._on_authorize)
        session.on("proposal_open_contract", self._on_contract_update)
        session.on("tick", self._on_tick)
        session.on("error", self._on_error)
        session.on("connection_closed", self._on_connection_closed)

    # ---- read-only views ----
    @property
    def is_running(self) -> bool:
        return self._state.is_running

    @property
    def trades(self) -> Tuple[TradeResult, ...]:
        return tuple(self._trades)

    @property
    def state(self) -> RunState:
        return dataclasses.replace(self._state, active_contract_ids=set(self._state.active_contract_ids))

    @property
    def active_contract_ids(self) -> Set[str]:
        return set(self._state.active_contract_ids)

    @property
    def config(self) -> Optional[StrategyConfig]:
        return self._config

    @property
    def stop_reason(self) -> Optional[str]:
        return self._stop_reason

    def summary(self) -> RunSummary:
        return summarize(self._trades, self._state.cumulative_profit)

    def snapshot(self) -> JsonDict:
        return {
            "is_running": self._state.is_running,
            "stop_reason": self._stop_reason,
            "base_stake": self._state.base_stake,
            "current_stake": self._state.current_stake,
            "cumulative_profit": self._state.cumulative_profit,
            "active_contracts": sorted(self._state.active_contract_ids),
            "balance": self.session.balance,
            "loginid": self.session.loginid,
            "config": self._config.model_dump(by_alias=True, mode="json") if self._config else None,
            "summary": self.summary().to_dict(),
        }

    # ---- lifecycle ----
    async def start(self, config: StrategyConfig) -> bool:
        if self._state.is_running:
            self._logger.warning("start_ignored_already_running")
            return False

        self._config = config
        self._sizer = MartingaleSizer(
            base_stake=config.stake,
            multiplier=config.martingale_multiplier,
            max_stake=config.max_stake,
        )
        self._firewall = RiskFirewall(take_profit=config.take_profit, stop_loss=config.stop_loss)
        self._state = RunState(is_running=True, base_stake=config.stake, current_stake=config.stake)
        self._executing = False
        self._stop_reason = None
        self._stopped.clear()

        bind_run_context(run_id=f"run-{now_ms()}", market=config.market, contract_type=config.contract_type.wire_type)
        self.events.log_event(
            "bot_started",
            f"Bot started: {config.contract_type.value} on {config.market}, stake {config.stake:.2f}",
            market=config.market,
            contract_type=config.contract_type.wire_type,
            stake=config.stake,
            barrier=config.barrier,
            trade_on_every_tick=config.trade_on_every_tick,
        )

        self.session.set_market(config.market)
        await self.session.start()
        return True

    def stop(self, reason: str = "stopped by user") -> None:
        if not self._state.is_running:
            self._logger.debug("stop_ignored_idle", reason=reason)
            return

        self._state.is_running = False
        self._executing = False
        self._stop_reason = reason

        self.session.set_market(None)
        self.session.cancel_pending()
        self._spawn(self.session.forget_ticks())

        summary = self.summary()
        level = "INFO" if reason in ("stopped by user", TAKE_PROFIT_REASON) else "WARNING"
        self.events.log_event(
            "bot_stopped",
            f"Bot stopped ({reason}). Summary: {summary.describe()}",
            level=level,
            reason=reason,
            **summary.to_dict(),
        )
        clear_run_context()
        self._stopped.set()

    def reset_trades(self) -> None:
        self._trades.clear()
        self._state.cumulative_profit = 0.0
        self.events.log_event("trades_reset", "Trade history cleared")

    async def wait_stopped(self) -> Optional[str]:
        await self._stopped.wait()
        return self._stop_reason

    async def shutdown(self) -> None:
        self.stop("shutdown")
        if self._tasks:
            # let the forget_all from stop() go out before the socket closes
            _, pending = await asyncio.wait(set(self._tasks), timeout=self.timing.send_timeout)
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
        await self.session.close()

    # ---- trade cycle ----
    async def _run_cycle(self) -> None:
        config = self._config
        if not self._state.is_running or config is None:
            return

        serialized = not config.trade_on_every_tick
        if serialized:
            # Only one proposal/buy in flight and never more than one open contract
            if self._executing or self._state.active_contract_ids:
                self._logger.debug("cycle_skipped", executing=self._executing, active=len(self._state.active_contract_ids))
                return
            self._executing = True

        try:
            contract_id = await self._trade_once(config)
        except Exception as e:
            self.events.log_event("trade_error", f"Trade cycle error: {e}", level="ERROR", error=str(e))
            self.stop(f"trade cycle error: {e}")
            return
        finally:
            # from here on the active-contract set keeps cycles serialized
            if serialized:
                self._executing = False

        if contract_id is not None and not await self.session.subscribe_contract(contract_id):
            # resubscribed after the next authorization
            self.events.log_event(
                "contract_subscribe_failed",
                f"Could not subscribe to contract {contract_id}",
                level="WARNING",
                contract_id=contract_id,
            )

    async def _trade_once(self, config: StrategyConfig) -> Optional[str]:
        """Proposal + buy; returns the bought contract id, or None when nothing was bought."""
        stake = self._state.current_stake
        balance = self.session.balance
        if balance is not None and balance < stake:
            self.stop(f"insufficient balance: {balance:.2f} < stake {stake:.2f}")
            return None

        self.events.log_event(
            "proposal_sent",
            f"Proposal sent: {config.contract_type.wire_type} stake {stake:.2f}",
            stake=stake,
            contract_type=config.contract_type.wire_type,
            barrier=config.barrier,
        )
        proposal = await self._executor.request_proposal(config, stake=stake)
        if not self._state.is_running:
            self._logger.info("late_reply_ignored", step="proposal")
            return None
        if isinstance(proposal, Failure):
            self.stop(proposal.reason)
            return None

        self.events.log_event(
            "proposal_received",
            f"Proposal {proposal.id} at {proposal.ask_price:.2f}",
            proposal_id=proposal.id,
            ask_price=proposal.ask_price,
        )

        purchase = await self._executor.buy(proposal)
        if not self._state.is_running:
            self._logger.warning(
                "late_reply_ignored",
                step="buy",
                contract_id=None if isinstance(purchase, Failure) else purchase.contract_id,
            )
            return None
        if isinstance(purchase, Failure):
            if purchase.exchange_error or not config.trade_on_every_tick:
                self.stop(purchase.reason)
            else:
                # next tick starts a fresh cycle
                self.events.log_event("buy_failed", purchase.reason, level="WARNING")
            return None

        self._trades.append(TradeResult(contract_id=purchase.contract_id, buy_price=purchase.buy_price, timestamp=now_ms()))
        self._state.active_contract_ids.add(purchase.contract_id)
        self.events.log_event(
            "contract_bought",
            f"Contract {purchase.contract_id} bought for {purchase.buy_price:.2f}",
            contract_id=purchase.contract_id,
            buy_price=purchase.buy_price,
        )
        return purchase.contract_id

    # ---- settlement ----
    def _settle(self, contract_id: str, *, profit: float, sell_price: Optional[float]) -> None:
        self._state.active_contract_ids.discard(contract_id)
        self._state.cumulative_profit = round(self._state.cumulative_profit + profit, 2)

        status = TradeStatus.WON if profit >= 0 else TradeStatus.LOST
        for i, trade in enumerate(self._trades):
            if trade.contract_id == contract_id and trade.status is TradeStatus.OPEN:
                self._trades[i] = trade.settle(profit=profit, sell_price=sell_price)
                status = self._trades[i].status
                break

        won = status is TradeStatus.WON
        self.events.log_event(
            "contract_settled",
            f"Contract {contract_id} {status.value}: {profit:+.2f} (total {self._state.cumulative_profit:+.2f})",
            contract_id=contract_id,
            profit=profit,
            status=status.value,
            cumulative_profit=self._state.cumulative_profit,
        )

        # settlements after stop still count, but start nothing
        if not self._state.is_running or self._sizer is None or self._firewall is None:
            return

        size = self._sizer.next_stake(current_stake=self._state.current_stake, won=won)
        self._state.current_stake = size.stake
        if size.capped:
            self.events.log_event(
                "max_stake_reached",
                f"Stake capped at max stake {size.stake:.2f}",
                level="WARNING",
                stake=size.stake,
            )

        decision = self._firewall.check(self._state.cumulative_profit)
        if not decision.allowed:
            self.stop(decision.reason)
            return

        if self._config is not None and not self._config.trade_on_every_tick:
            self._spawn(self._run_cycle())

    # ---- session handlers ----
    def _on_authorize(self, msg: JsonDict) -> None:
        if not self._state.is_running:
            return
        auth = msg.get("authorize") or {}
        self.events.log_event(
            "authorized",
            f"Authorized as {auth.get('loginid')} (balance {self.session.balance})",
            loginid=auth.get("loginid"),
            balance=self.session.balance,
        )
        # a fresh connection has lost the settlement subscriptions
        for contract_id in sorted(self._state.active_contract_ids):
            self._spawn(self.session.subscribe_contract(contract_id))
        self._spawn(self._run_cycle())

    def _on_contract_update(self, msg: JsonDict) -> None:
        poc = msg.get("proposal_open_contract") or {}
        contract_id = str(poc.get("contract_id") or "")
        if contract_id not in self._state.active_contract_ids:
            return
        if not (poc.get("is_sold") or poc.get("status") == "sold"):
            return

        sell_price = poc.get("sell_price")
        self._settle(
            contract_id,
            profit=float(poc.get("profit") or 0.0),
            sell_price=float(sell_price) if sell_price is not None else None,
        )

    def _on_tick(self, msg: JsonDict) -> None:
        if self._state.is_running and self._config is not None and self._config.trade_on_every_tick:
            self._spawn(self._run_cycle())

    def _on_error(self, msg: JsonDict) -> None:
        if not self._state.is_running:
            return
        err = error_of(msg) or {}
        if msg.get("msg_type") == "authorize" or err.get("code") in AUTH_ERROR_CODES:
            self.stop(f"authorization failed: {err.get('message') or err.get('code')}")

    def _on_connection_closed(self, msg: JsonDict) -> None:
        if not self._state.is_running:
            return
        if msg.get("will_reconnect"):
            self.events.log_event("connection_lost", "Connection lost, reconnecting", level="WARNING")
        else:
            self.stop("connection lost")

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
