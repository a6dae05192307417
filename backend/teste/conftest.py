"""In-memory stand-ins for the Deriv WebSocket, injected through the connector seam."""

from __future__ import annotations

import asyncio
import json
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional

import pytest
from websockets.exceptions import ConnectionClosedOK

from digitbot.infrastructure.utils.config import TimingConfig

JsonDict = Dict[str, Any]
Responder = Callable[[JsonDict], List[JsonDict]]

_CLOSED = object()


class FakeWebSocket:
    def __init__(self, responder: Optional[Responder] = None) -> None:
        self.sent: List[JsonDict] = []
        self.closed = False
        self._inbox: "asyncio.Queue[Any]" = asyncio.Queue()
        self._responder = responder

    async def send(self, raw: str) -> None:
        if self.closed:
            raise ConnectionClosedOK(None, None)
        payload = json.loads(raw)
        self.sent.append(payload)
        if self._responder is not None:
            for reply in self._responder(payload):
                self.push(reply)

    def push(self, msg: Any) -> None:
        self._inbox.put_nowait(msg if isinstance(msg, str) else json.dumps(msg))

    async def recv(self) -> str:
        item = await self._inbox.get()
        if item is _CLOSED:
            raise ConnectionClosedOK(None, None)
        return item

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._inbox.put_nowait(_CLOSED)

    def sent_of(self, key: str) -> List[JsonDict]:
        return [p for p in self.sent if key in p]


class FakeConnector:
    """Hands out a fresh FakeWebSocket per connect; failures can be queued."""

    def __init__(self, responder: Optional[Responder] = None) -> None:
        self.responder = responder
        self.connections: List[FakeWebSocket] = []
        self.urls: List[str] = []
        self.failures: Deque[Exception] = deque()

    async def __call__(self, url: str) -> FakeWebSocket:
        self.urls.append(url)
        if self.failures:
            raise self.failures.popleft()
        ws = FakeWebSocket(self.responder)
        self.connections.append(ws)
        return ws

    @property
    def current(self) -> FakeWebSocket:
        return self.connections[-1]

    def all_sent(self, key: str) -> List[JsonDict]:
        return [p for ws in self.connections for p in ws.sent_of(key)]


class FakeDeriv:
    """Scripted exchange behaviour for the trading session.

    proposal_mode / buy_mode: "ok", "silent" (never replies) or "error".
    outcomes: profits used to settle bought contracts, in order; once empty,
    contracts stay open.
    """

    def __init__(self, *, balance: float = 1000.0, outcomes: Optional[List[float]] = None) -> None:
        self.balance = balance
        self.proposal_mode = "ok"
        self.buy_mode = "ok"
        self.auth_error: Optional[str] = None
        self.outcomes: Deque[float] = deque(outcomes or [])
        self._next_id = 0

    def __call__(self, payload: JsonDict) -> List[JsonDict]:
        req_id = payload.get("req_id")

        if "authorize" in payload:
            if self.auth_error:
                return [{"msg_type": "authorize", "error": {"code": self.auth_error, "message": "Token invalid"}}]
            return [
                {
                    "msg_type": "authorize",
                    "authorize": {"loginid": "VRTC123", "balance": self.balance, "currency": "USD", "is_virtual": 1},
                }
            ]

        if "balance" in payload:
            return [_with_req({"msg_type": "balance", "balance": {"balance": self.balance, "currency": "USD"}}, req_id)]

        if "proposal" in payload:
            if self.proposal_mode == "silent":
                return []
            if self.proposal_mode == "error":
                return [_with_req({"msg_type": "proposal", "error": {"code": "InvalidBarrier", "message": "Barrier is not allowed"}}, req_id)]
            self._next_id += 1
            return [
                _with_req(
                    {"msg_type": "proposal", "proposal": {"id": f"prop-{self._next_id}", "ask_price": payload["amount"]}},
                    req_id,
                )
            ]

        if "buy" in payload:
            if self.buy_mode == "silent":
                return []
            if self.buy_mode == "error":
                return [
                    _with_req(
                        {"msg_type": "buy", "error": {"code": "ContractCreationFailure", "message": "Contract creation failed"}},
                        req_id,
                    )
                ]
            self._next_id += 1
            return [
                _with_req(
                    {"msg_type": "buy", "buy": {"contract_id": 5000 + self._next_id, "buy_price": payload["price"]}},
                    req_id,
                )
            ]

        if "proposal_open_contract" in payload:
            cid = payload["contract_id"]
            if not self.outcomes:
                return [{"msg_type": "proposal_open_contract", "proposal_open_contract": {"contract_id": cid, "is_sold": 0}}]
            profit = self.outcomes.popleft()
            return [
                {
                    "msg_type": "proposal_open_contract",
                    "proposal_open_contract": {
                        "contract_id": cid,
                        "is_sold": 1,
                        "status": "won" if profit >= 0 else "lost",
                        "profit": profit,
                        "sell_price": round(max(profit, 0.0) * 2, 2),
                    },
                }
            ]

        if "topup_virtual" in payload:
            self.balance = 10000.0
            return [_with_req({"msg_type": "topup_virtual", "topup_virtual": {"amount": 10000, "currency": "USD"}}, req_id)]

        if "forget_all" in payload:
            return [{"msg_type": "forget_all", "forget_all": []}]

        return []


def _with_req(msg: JsonDict, req_id: Any) -> JsonDict:
    if req_id is not None:
        msg["req_id"] = req_id
    return msg


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0, interval: float = 0.005) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() >= deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(interval)


def history_payload(quotes: List[float], start_epoch: int = 1_700_000_000) -> JsonDict:
    return {
        "msg_type": "history",
        "history": {"prices": quotes, "times": [start_epoch + i for i in range(len(quotes))]},
    }


def tick_payload(quote: float, epoch: int = 1_700_000_100, symbol: str = "R_10") -> JsonDict:
    return {"msg_type": "tick", "tick": {"quote": quote, "epoch": epoch, "symbol": symbol}}


@pytest.fixture
def fast_timing() -> TimingConfig:
    return TimingConfig(
        send_timeout=0.2,
        ready_poll_interval=0.005,
        proposal_timeout=0.1,
        buy_timeout=0.1,
        proposal_retries=3,
        retry_delay=0.01,
        session_reconnect_delay=0.01,
        stream_reconnect_delay=0.01,
    )
