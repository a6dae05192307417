"""Deriv WebSocket trading session using asyncio + websockets.

Features:
- Authorize with the injected account token on every (re)connect
- Balance subscription and optional tick subscription after authorization
- send(): waits (polling) for the channel to open, bounded by a timeout
- await_message(): one-shot predicate listeners; every inbound message is
  offered to every pending listener
- request(): req_id correlation so concurrent proposals/buys never cross-talk
- Fixed-delay reconnect while the owner says so (optional attempt cap)
"""

from __future__ import annotations

import asyncio
import json
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import websockets
from websockets.exceptions import ConnectionClosed

from digitbot.infrastructure.logging.logging import get_logger

JsonDict = Dict[str, Any]
Predicate = Callable[[JsonDict], bool]
Handler = Callable[[JsonDict], None]
Connector = Callable[[str], Awaitable[Any]]

AUTH_ERROR_CODES = frozenset({"AuthorizationRequired", "InvalidToken"})

# Discriminant keys of the inbound shapes we understand, checked in order
_MESSAGE_KEYS = (
    "authorize",
    "balance",
    "history",
    "tick",
    "proposal_open_contract",
    "proposal",
    "buy",
    "topup_virtual",
    "forget_all",
)


class DerivWSError(RuntimeError):
    pass


async def open_connection(url: str) -> Any:
    """Default connector: a websockets client connection with library keepalive."""
    return await websockets.connect(url, ping_interval=20, ping_timeout=20, close_timeout=5, max_queue=256)


def message_kind(msg: JsonDict) -> str:
    if msg.get("error"):
        return "error"
    msg_type = msg.get("msg_type")
    if isinstance(msg_type, str) and msg_type:
        return msg_type
    for key in _MESSAGE_KEYS:
        if key in msg:
            return key
    return "unknown"


def error_of(msg: JsonDict) -> Optional[JsonDict]:
    err = msg.get("error")
    return err if isinstance(err, dict) else None


def reply_to(req_id: int) -> Predicate:
    return lambda msg: msg.get("req_id") == req_id


@dataclass(frozen=True)
class AccountContext:
    """Credential + currency of the account the session trades on."""

    token: str
    currency: str = "USD"
    is_virtual: bool = True


class ListenerRegistry:
    """Pending one-shot listeners, each a (predicate, future) pair."""

    def __init__(self) -> None:
        self._pending: List[Tuple[Predicate, "asyncio.Future[Optional[JsonDict]]"]] = []

    def __len__(self) -> int:
        return len(self._pending)

    def register(self, predicate: Predicate) -> "asyncio.Future[Optional[JsonDict]]":
        fut: asyncio.Future[Optional[JsonDict]] = asyncio.get_running_loop().create_future()
        self._pending.append((predicate, fut))
        return fut

    def discard(self, fut: "asyncio.Future[Optional[JsonDict]]") -> None:
        self._pending = [(p, f) for p, f in self._pending if f is not fut]

    def offer(self, msg: JsonDict) -> int:
        matched = 0
        for predicate, fut in list(self._pending):
            if not fut.done() and predicate(msg):
                fut.set_result(msg)
                matched += 1
        return matched

    def cancel_all(self) -> None:
        for _, fut in self._pending:
            if not fut.done():
                fut.set_result(None)
        self._pending.clear()


class TradeSession:
    def __init__(
        self,
        account: AccountContext,
        *,
        websocket_url: str,
        app_id: str,
        send_timeout: float = 4.0,
        ready_poll_interval: float = 0.1,
        reconnect_delay: float = 3.0,
        max_reconnect_attempts: Optional[int] = None,
        connector: Optional[Connector] = None,
    ) -> None:
        self._logger = get_logger("trade_session")
        self._url = f"{websocket_url}?app_id={app_id}"
        self._account = account
        self._send_timeout = send_timeout
        self._poll_interval = ready_poll_interval
        self._reconnect_delay = reconnect_delay
        self._max_reconnect_attempts = max_reconnect_attempts
        self._connect = connector or open_connection

        self._ws: Any = None
        self._open = False
        self._authorized = False
        self._closing = False
        self._runner_task: Optional[asyncio.Task[None]] = None

        self._listeners = ListenerRegistry()
        self._handlers: Dict[str, List[Handler]] = defaultdict(list)
        self._should_reconnect: Callable[[], bool] = lambda: False
        self._last_authorize: Optional[JsonDict] = None

        self._req_id = 10_000
        self._market: Optional[str] = None

        self.balance: Optional[float] = None
        self.loginid: Optional[str] = None

    @property
    def account(self) -> AccountContext:
        return self._account

    @property
    def is_open(self) -> bool:
        return self._open

    @property
    def is_authorized(self) -> bool:
        return self._authorized

    @property
    def pending_listeners(self) -> int:
        return len(self._listeners)

    def set_market(self, symbol: Optional[str]) -> None:
        """Instrument whose ticks are subscribed after each authorization (None = no ticks)."""
        self._market = symbol

    def set_reconnect_policy(self, should_reconnect: Callable[[], bool]) -> None:
        self._should_reconnect = should_reconnect

    def on(self, kind: str, handler: Handler) -> None:
        self._handlers[kind].append(handler)

    def off(self, kind: str, handler: Handler) -> None:
        if handler in self._handlers.get(kind, []):
            self._handlers[kind].remove(handler)

    async def start(self) -> None:
        """Open the connection; on a live one replay the post-authorize sequence or authorize again."""
        self._closing = False
        if self._runner_task is not None and not self._runner_task.done():
            self._logger.info("session_reused", authorized=self._authorized)
            if self._authorized and self._last_authorize is not None:
                await self._after_authorize()
                self._notify("authorize", self._last_authorize)
            elif self._open:
                # a rejected token leaves the socket open; ask again
                await self.send({"authorize": self._account.token})
            return
        self._runner_task = asyncio.create_task(self._run_forever())

    async def close(self) -> None:
        self._closing = True
        self._listeners.cancel_all()
        ws = self._ws
        if ws is not None:
            await ws.close()
        if self._runner_task is not None:
            self._runner_task.cancel()
            try:
                await self._runner_task
            except asyncio.CancelledError:
                pass
            self._runner_task = None

    def cancel_pending(self) -> None:
        """Resolve every pending await_message() with None."""
        self._listeners.cancel_all()

    def next_req_id(self) -> int:
        self._req_id += 1
        return self._req_id

    async def send(self, payload: JsonDict) -> bool:
        """Deliver now if open; otherwise poll readiness up to send_timeout."""
        if not self._open:
            loop = asyncio.get_running_loop()
            deadline = loop.time() + self._send_timeout
            while not self._open:
                if self._closing or loop.time() >= deadline:
                    self._logger.warning("send_not_ready", keys=sorted(payload.keys()))
                    return False
                await asyncio.sleep(self._poll_interval)

        try:
            await self._ws.send(json.dumps(payload))
        except ConnectionClosed as e:
            self._logger.warning("send_failed", error=str(e))
            return False
        return True

    async def await_message(self, predicate: Predicate, timeout: float) -> Optional[JsonDict]:
        fut = self._listeners.register(predicate)
        return await self._wait(fut, timeout)

    async def request(self, payload: JsonDict, *, timeout: float) -> Optional[JsonDict]:
        """Send with a fresh req_id and wait for the reply carrying it.

        Returns None if the send failed or no reply arrived in time.
        """
        if self._closing and self._runner_task is None:
            raise DerivWSError("request on a closed session")
        req_id = self.next_req_id()
        payload = dict(payload)
        payload["req_id"] = req_id

        # listen before sending so a fast reply cannot slip past
        fut = self._listeners.register(reply_to(req_id))
        if not await self.send(payload):
            self._listeners.discard(fut)
            fut.cancel()
            return None

        try:
            resp = await asyncio.wait_for(fut, timeout=timeout)
        except asyncio.TimeoutError:
            self._logger.warning("request_timeout", req_id=req_id, timeout=timeout)
            return None
        finally:
            self._listeners.discard(fut)
        if resp is None:
            self._logger.info("request_cancelled", req_id=req_id)
        return resp

    async def forget_ticks(self) -> bool:
        if not self._open:
            return False
        return await self.send({"forget_all": "ticks"})

    async def subscribe_contract(self, contract_id: str) -> bool:
        return await self.send({"proposal_open_contract": 1, "contract_id": _wire_contract_id(contract_id), "subscribe": 1})

    async def topup_virtual(self, *, timeout: float = 4.0) -> bool:
        """Reset a demo account's virtual balance, then refresh the balance."""
        if not self._account.is_virtual:
            self._logger.warning("topup_rejected_real_account")
            return False
        resp = await self.request({"topup_virtual": 1}, timeout=timeout)
        if resp is None or error_of(resp):
            self._logger.warning("topup_failed", error=(error_of(resp or {}) or {}).get("message"))
            return False
        bal = await self.request({"balance": 1}, timeout=timeout)
        if bal is not None and not error_of(bal):
            self._update_balance(bal.get("balance") or {})
        self._logger.info("topup_done", balance=self.balance)
        return True

    async def _wait(self, fut: "asyncio.Future[Optional[JsonDict]]", timeout: float) -> Optional[JsonDict]:
        try:
            return await asyncio.wait_for(fut, timeout=timeout)
        except asyncio.TimeoutError:
            return None
        finally:
            self._listeners.discard(fut)

    async def _run_forever(self) -> None:
        attempts = 0
        while not self._closing:
            try:
                ws = await self._connect(self._url)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._logger.error("ws_connect_failed", error=str(e))
            else:
                attempts = 0
                await self._serve(ws)

            attempts += 1
            cap = self._max_reconnect_attempts
            will_reconnect = (
                not self._closing
                and self._should_reconnect()
                and (cap is None or attempts <= cap)
            )
            self._notify("connection_closed", {"msg_type": "connection_closed", "will_reconnect": will_reconnect})
            if not will_reconnect:
                break

            self._logger.warning("reconnect_scheduled", seconds=self._reconnect_delay, attempt=attempts)
            await asyncio.sleep(self._reconnect_delay)

    async def _serve(self, ws: Any) -> None:
        self._ws = ws
        self._open = True
        self._authorized = False
        self._logger.info("ws_connected", url=self._url)

        try:
            if await self.send({"authorize": self._account.token}):
                await self._reader_loop(ws)
        finally:
            self._open = False
            self._authorized = False
            self._ws = None
            self._logger.warning("ws_closed")
            await ws.close()

    async def _reader_loop(self, ws: Any) -> None:
        while True:
            try:
                raw = await ws.recv()
            except ConnectionClosed:
                return
            try:
                msg = json.loads(raw)
            except json.JSONDecodeError as e:
                self._logger.warning("ws_bad_frame", error=str(e))
                continue
            if isinstance(msg, dict):
                await self._dispatch(msg)

    async def _dispatch(self, msg: JsonDict) -> None:
        self._listeners.offer(msg)

        kind = message_kind(msg)
        if kind == "authorize":
            await self._on_authorized(msg)
        elif kind == "balance":
            self._update_balance(msg.get("balance") or {})
        elif kind == "error":
            err = error_of(msg) or {}
            self._logger.warning("exchange_error", code=err.get("code"), message=err.get("message"), msg_type=msg.get("msg_type"))

        self._notify(kind, msg)

    async def _on_authorized(self, msg: JsonDict) -> None:
        auth = msg.get("authorize") or {}
        self._authorized = True
        self._last_authorize = msg
        self.loginid = auth.get("loginid")
        if auth.get("balance") is not None:
            self.balance = float(auth["balance"])
        self._logger.info("ws_authorized", loginid=self.loginid, balance=self.balance)
        await self._after_authorize()

    async def _after_authorize(self) -> None:
        await self.send({"balance": 1, "subscribe": 1})
        if self._market:
            await self.send({"ticks": self._market, "subscribe": 1})
            self._logger.info("ticks_subscribed", symbol=self._market)

    def _update_balance(self, payload: JsonDict) -> None:
        if payload.get("balance") is not None:
            self.balance = float(payload["balance"])

    def _notify(self, kind: str, msg: JsonDict) -> None:
        # never let a consumer's handler break message processing
        for handler in list(self._handlers.get(kind, ())):
            try:
                handler(msg)
            except Exception as e:
                self._logger.error("handler_error", kind=kind, error=str(e))


def _wire_contract_id(contract_id: str) -> Any:
    return int(contract_id) if str(contract_id).isdigit() else contract_id
