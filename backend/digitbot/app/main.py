"""Entrypoint.

Usage:
  python -m digitbot.app.main bot     # trade the configured strategy until it stops
  python -m digitbot.app.main scan    # stream ticks and log a digit prediction every few seconds
  python -m digitbot.app.main api     # serve the HTTP API (bot + scanner in the same loop)
"""

from __future__ import annotations

import argparse
import asyncio
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import uvicorn

from digitbot.app.engine import TradeOrchestrator
from digitbot.infrastructure.deriv.deriv_ws_client import AccountContext, TradeSession
from digitbot.infrastructure.logging.logging import configure_logging, get_logger
from digitbot.infrastructure.utils.config import BotSettings, load_config
from digitbot.services.market.tick_stream import TickStream
from digitbot.services.monitoring.event_log import EventLog
from digitbot.services.strategy.consensus import ConsensusEngine


@dataclass
class Runtime:
    session: TradeSession
    orchestrator: TradeOrchestrator
    stream: TickStream
    events: EventLog
    engine: ConsensusEngine

    async def close(self) -> None:
        await self.orchestrator.shutdown()
        await self.stream.stop()


def build_runtime(settings: BotSettings) -> Runtime:
    timing = settings.timing
    account = AccountContext(
        token=settings.deriv.api_token,
        currency=settings.deriv.currency,
        is_virtual=settings.deriv.account_type == "demo",
    )
    session = TradeSession(
        account,
        websocket_url=settings.deriv.websocket_url,
        app_id=settings.deriv.app_id,
        send_timeout=timing.send_timeout,
        ready_poll_interval=timing.ready_poll_interval,
        reconnect_delay=timing.session_reconnect_delay,
        max_reconnect_attempts=timing.max_reconnect_attempts,
    )
    events = EventLog()
    stream = TickStream(
        settings.scanner.symbol,
        websocket_url=settings.deriv.websocket_url,
        app_id=settings.deriv.app_id,
        window_size=settings.scanner.window_size,
        reconnect_delay=timing.stream_reconnect_delay,
        max_reconnect_attempts=timing.max_reconnect_attempts,
    )
    return Runtime(
        session=session,
        orchestrator=TradeOrchestrator(session, events=events, timing=timing),
        stream=stream,
        events=events,
        engine=ConsensusEngine(),
    )


async def run_bot(settings: BotSettings) -> Optional[str]:
    log = get_logger("main")
    if not settings.deriv.has_real_token:
        raise SystemExit("Set DERIV__API_TOKEN (in .env or the environment) before trading")

    rt = build_runtime(settings)
    try:
        await rt.orchestrator.start(settings.strategy)
        reason = await rt.orchestrator.wait_stopped()
        log.info("bot_finished", reason=reason, **rt.orchestrator.summary().to_dict())
        return reason
    finally:
        await rt.close()


async def run_scan(settings: BotSettings, interval: float) -> None:
    log = get_logger("scanner")
    rt = build_runtime(settings)
    await rt.stream.start()
    try:
        while True:
            await asyncio.sleep(interval)
            result = rt.engine.scan(rt.stream.snapshot())
            log.info(
                "scan",
                symbol=rt.stream.symbol,
                ticks=len(rt.stream),
                digit=result.digit,
                confidence=round(result.confidence, 4),
            )
    finally:
        await rt.stream.stop()


async def run_api(settings: BotSettings) -> None:
    from digitbot.api.server import create_app

    rt = build_runtime(settings)
    app = create_app(
        orchestrator=rt.orchestrator,
        stream=rt.stream,
        events=rt.events,
        settings=settings,
        engine=rt.engine,
    )
    server = uvicorn.Server(
        uvicorn.Config(app, host=settings.api.host, port=settings.api.port, log_level=settings.log_level.lower())
    )
    await rt.stream.start()
    try:
        await server.serve()
    finally:
        await rt.close()


def main() -> None:
    parser = argparse.ArgumentParser("deriv-digit-bot")
    parser.add_argument("command", choices=["bot", "scan", "api"], help="What to run")
    parser.add_argument("--config", type=Path, default=None, help="YAML config path")
    parser.add_argument("--interval", type=float, default=5.0, help="Seconds between scans (scan only)")
    args = parser.parse_args()

    settings = load_config(args.config)
    configure_logging(settings.log_level, json_logs=settings.json_logs)

    if args.command == "bot":
        asyncio.run(run_bot(settings))
        return

    if args.command == "scan":
        asyncio.run(run_scan(settings, args.interval))
        return

    if args.command == "api":
        asyncio.run(run_api(settings))
        return


if __name__ == "__main__":
    main()
