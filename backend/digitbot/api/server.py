# digitbot/api/server.py
from __future__ import annotations

from dataclasses import asdict
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from digitbot.app.engine import TradeOrchestrator
from digitbot.infrastructure.utils.config import BotSettings
from digitbot.models.market_models import Tick
from digitbot.models.trade_models import StrategyConfig
from digitbot.services.market.tick_stream import TickStream
from digitbot.services.market.volatility_indices import VOLATILITY_INDICES, is_known_symbol, label_for
from digitbot.services.monitoring.event_log import EventLog
from digitbot.services.strategy.consensus import ConsensusEngine
from digitbot.services.strategy.market_analysis import analyze_even_odd, analyze_matches, analyze_over_under

JsonDict = Dict[str, Any]


# --------- Schemas ---------
class SymbolPayload(BaseModel):
    symbol: str


def _tick_dict(t: Tick) -> JsonDict:
    return {"digit": t.digit, "quote": t.quote, "timestamp": t.timestamp}


def create_app(
    *,
    orchestrator: TradeOrchestrator,
    stream: TickStream,
    events: EventLog,
    settings: BotSettings,
    engine: Optional[ConsensusEngine] = None,
) -> FastAPI:
    engine = engine or ConsensusEngine()
    app = FastAPI(title="Deriv Digit Bot API", version="0.1.0")

    # CORS (frontend)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.api.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    def health() -> JsonDict:
        return {
            "ok": True,
            "session_open": orchestrator.session.is_open,
            "stream_connected": stream.is_connected,
        }

    # --------- Bot ---------
    @app.get("/bot")
    def bot_status() -> JsonDict:
        return orchestrator.snapshot()

    @app.post("/bot/start")
    async def bot_start(config: StrategyConfig) -> JsonDict:
        if not await orchestrator.start(config):
            raise HTTPException(status_code=409, detail="bot already running")
        return orchestrator.snapshot()

    @app.post("/bot/stop")
    async def bot_stop() -> JsonDict:
        orchestrator.stop("stopped by user")
        return orchestrator.snapshot()

    @app.get("/trades")
    def trades() -> JsonDict:
        return {
            "trades": [t.to_dict() for t in orchestrator.trades],
            "summary": orchestrator.summary().to_dict(),
        }

    @app.post("/trades/reset")
    def trades_reset() -> JsonDict:
        orchestrator.reset_trades()
        return {"ok": True}

    @app.get("/events")
    def list_events(limit: int = Query(default=200, ge=1, le=1000)) -> List[JsonDict]:
        return events.list_events(limit=limit)

    @app.post("/account/topup")
    async def account_topup() -> JsonDict:
        if not orchestrator.session.account.is_virtual:
            raise HTTPException(status_code=400, detail="top-up is only available on demo accounts")
        if not await orchestrator.session.topup_virtual(timeout=settings.timing.send_timeout):
            raise HTTPException(status_code=502, detail="top-up failed")
        events.log_event("balance_topup", "Virtual balance topped up", balance=orchestrator.session.balance)
        return {"ok": True, "balance": orchestrator.session.balance}

    # --------- Market data / prediction ---------
    @app.get("/markets")
    def markets() -> List[JsonDict]:
        return [{"symbol": s, "label": label} for s, label in VOLATILITY_INDICES.items()]

    @app.get("/ticks")
    def ticks() -> JsonDict:
        return {
            "symbol": stream.symbol,
            "label": label_for(stream.symbol),
            "connected": stream.is_connected,
            "ticks": [_tick_dict(t) for t in stream.snapshot()],
        }

    @app.post("/ticks/symbol")
    async def ticks_symbol(payload: SymbolPayload) -> JsonDict:
        if not is_known_symbol(payload.symbol):
            raise HTTPException(status_code=400, detail=f"unknown volatility index: {payload.symbol}")
        await stream.set_symbol(payload.symbol)
        return {"symbol": stream.symbol}

    @app.get("/scan")
    def scan() -> JsonDict:
        result = engine.scan(stream.snapshot())
        return {"symbol": stream.symbol, "ticks": len(stream), **result.to_dict()}

    @app.get("/analysis")
    def analysis(
        kind: str = Query(default="even_odd", pattern="^(even_odd|over_under|matches)$"),
        digit: int = Query(default=5, ge=0, le=9),
    ) -> JsonDict:
        window = stream.snapshot()
        try:
            if kind == "even_odd":
                result = analyze_even_odd(window)
            elif kind == "over_under":
                result = analyze_over_under(window, digit)
            else:
                result = analyze_matches(window)
        except ValueError as e:
            raise HTTPException(status_code=409, detail=str(e))
        return asdict(result)

    return app
