"""Live tick window for one instrument.

On every (re)connect the last 50 prices are loaded with ticks_history and
replace the window, then live ticks are appended (oldest evicted). The
connection is re-opened after a fixed delay for as long as the stream is
started; changing the symbol discards the window and starts over.
"""

from __future__ import annotations

import asyncio
import json
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional

from websockets.exceptions import ConnectionClosed

from digitbot.infrastructure.deriv.deriv_ws_client import Connector, error_of, message_kind, open_connection
from digitbot.infrastructure.logging.logging import get_logger
from digitbot.infrastructure.utils.timeutils import now_ms
from digitbot.models.market_models import Tick

JsonDict = Dict[str, Any]
TickListener = Callable[[Tick], None]

PUBLIC_WS_URL = "wss://ws.binaryws.com/websockets/v3"


class TickStream:
    def __init__(
        self,
        symbol: str,
        *,
        websocket_url: str = PUBLIC_WS_URL,
        app_id: str = "1089",
        window_size: int = 50,
        reconnect_delay: float = 1.2,
        max_reconnect_attempts: Optional[int] = None,
        connector: Optional[Connector] = None,
    ) -> None:
        self._logger = get_logger("tick_stream")
        self._url = f"{websocket_url}?app_id={app_id}"
        self._symbol = symbol
        self._window_size = window_size
        self._reconnect_delay = reconnect_delay
        self._max_reconnect_attempts = max_reconnect_attempts
        self._connect = connector or open_connection

        self._window: Deque[Tick] = deque(maxlen=window_size)
        self._connected = False
        self._running = False
        self._ws: Any = None
        self._runner_task: Optional[asyncio.Task[None]] = None
        self._listeners: List[TickListener] = []

    @property
    def url(self) -> str:
        return self._url

    @property
    def symbol(self) -> str:
        return self._symbol

    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def is_running(self) -> bool:
        return self._running

    def snapshot(self) -> List[Tick]:
        return list(self._window)

    def __len__(self) -> int:
        return len(self._window)

    def add_listener(self, listener: TickListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: TickListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._runner_task = asyncio.create_task(self._run_forever())

    async def stop(self) -> None:
        self._running = False
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
        self._connected = False

    async def set_symbol(self, symbol: str) -> None:
        if symbol == self._symbol:
            return
        was_running = self._running
        await self.stop()
        self._symbol = symbol
        self._window.clear()
        self._logger.info("symbol_changed", symbol=symbol)
        if was_running:
            await self.start()

    def apply_history(self, history: JsonDict) -> int:
        """Replace the window with a ticks_history payload; returns the window size."""
        prices = history.get("prices") or []
        times = history.get("times") or []
        n = min(len(prices), len(times))
        ticks = [Tick.from_quote(prices[i], int(times[i]) * 1000) for i in range(n)]
        self._window.clear()
        self._window.extend(ticks[-self._window_size:])
        self._logger.info("history_loaded", symbol=self._symbol, ticks=len(self._window))
        return len(self._window)

    def apply_tick(self, tick: JsonDict) -> Optional[Tick]:
        quote = tick.get("quote")
        if quote is None:
            return None
        epoch = tick.get("epoch")
        new_tick = Tick.from_quote(quote, int(epoch) * 1000 if epoch is not None else now_ms())
        self._window.append(new_tick)
        for listener in list(self._listeners):
            try:
                listener(new_tick)
            except Exception as e:
                self._logger.error("tick_listener_error", error=str(e))
        return new_tick

    async def _run_forever(self) -> None:
        attempts = 0
        while self._running:
            try:
                ws = await self._connect(self._url)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._logger.error("ws_connect_failed", symbol=self._symbol, error=str(e))
            else:
                attempts = 0
                await self._serve(ws)

            if not self._running:
                break
            attempts += 1
            cap = self._max_reconnect_attempts
            if cap is not None and attempts > cap:
                self._logger.error("reconnect_attempts_exhausted", symbol=self._symbol, attempts=cap)
                self._running = False
                break
            self._logger.warning("reconnect_scheduled", symbol=self._symbol, seconds=self._reconnect_delay)
            await asyncio.sleep(self._reconnect_delay)

    async def _serve(self, ws: Any) -> None:
        self._ws = ws
        self._connected = True
        self._logger.info("ws_connected", symbol=self._symbol)
        try:
            await ws.send(json.dumps({"ticks_history": self._symbol, "count": self._window_size, "end": "latest", "style": "ticks"}))
            await ws.send(json.dumps({"ticks": self._symbol, "subscribe": 1}))
            while True:
                raw = await ws.recv()
                try:
                    msg = json.loads(raw)
                except json.JSONDecodeError as e:
                    self._logger.warning("ws_bad_frame", error=str(e))
                    continue
                self._handle(msg)
        except ConnectionClosed:
            pass
        finally:
            self._connected = False
            self._ws = None
            self._logger.warning("ws_closed", symbol=self._symbol)
            await ws.close()

    def _handle(self, msg: JsonDict) -> None:
        kind = message_kind(msg)
        if kind == "history":
            self.apply_history(msg.get("history") or {})
        elif kind == "tick":
            self.apply_tick(msg.get("tick") or {})
        elif kind == "error":
            err = error_of(msg) or {}
            self._logger.warning("feed_error", symbol=self._symbol, code=err.get("code"), message=err.get("message"))
