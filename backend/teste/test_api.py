from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from conftest import history_payload
from digitbot.api.server import create_app
from digitbot.infrastructure.deriv.deriv_ws_client import AccountContext
from digitbot.infrastructure.utils.config import BotSettings
from digitbot.models.trade_models import ContractType, StrategyConfig, TradeResult
from digitbot.services.market.tick_stream import TickStream
from digitbot.services.monitoring.event_log import EventLog
from digitbot.services.monitoring.metrics import summarize


@pytest.fixture
def orchestrator():
    orch = MagicMock()
    orch.start = AsyncMock(return_value=True)
    orch.snapshot.return_value = {"is_running": False}
    trades = (TradeResult("11", 1.0, 1).settle(profit=0.95, sell_price=1.95),)
    orch.trades = trades
    orch.summary.return_value = summarize(trades, 0.95)
    orch.session.is_open = True
    orch.session.account = AccountContext(token="a1-test-token-123")
    orch.session.topup_virtual = AsyncMock(return_value=True)
    orch.session.balance = 10000.0
    return orch


@pytest.fixture
def stream():
    s = TickStream("R_10")
    s.apply_history(history_payload([round(100.07 + 0.1 * i, 2) for i in range(50)])["history"])
    return s


@pytest.fixture
def events():
    return EventLog()


@pytest.fixture
def client(orchestrator, stream, events):
    settings = BotSettings.model_validate({})
    return TestClient(create_app(orchestrator=orchestrator, stream=stream, events=events, settings=settings))


def test_health(client):
    body = client.get("/health").json()
    assert body == {"ok": True, "session_open": True, "stream_connected": False}


def test_start_accepts_camel_case_config(client, orchestrator):
    resp = client.post(
        "/bot/start",
        json={"market": "R_10", "contractType": "Matches", "digit": 5, "stake": 1, "takeProfit": 2, "stopLoss": 2},
    )
    assert resp.status_code == 200
    config = orchestrator.start.await_args.args[0]
    assert isinstance(config, StrategyConfig)
    assert config.contract_type is ContractType.MATCHES
    assert config.barrier == "5"


def test_start_rejects_invalid_config(client, orchestrator):
    resp = client.post("/bot/start", json={"contractType": "Over", "digit": None})
    assert resp.status_code == 422
    orchestrator.start.assert_not_awaited()


def test_start_while_running_conflicts(client, orchestrator):
    orchestrator.start.return_value = False
    assert client.post("/bot/start", json={"digit": 5}).status_code == 409


def test_stop_and_reset(client, orchestrator):
    assert client.post("/bot/stop").status_code == 200
    orchestrator.stop.assert_called_once_with("stopped by user")
    assert client.post("/trades/reset").json() == {"ok": True}
    orchestrator.reset_trades.assert_called_once()


def test_trades_include_summary(client):
    body = client.get("/trades").json()
    assert body["trades"][0]["status"] == "won"
    assert body["summary"]["wins"] == 1


def test_events_feed(client, events):
    events.log_event("bot_started", "started")
    assert client.get("/events", params={"limit": 5}).json()[0]["type"] == "bot_started"


def test_ticks_and_scan(client):
    ticks = client.get("/ticks").json()
    assert ticks["symbol"] == "R_10"
    assert ticks["label"] == "Volatility 10 Index"
    assert len(ticks["ticks"]) == 50

    scan = client.get("/scan").json()
    assert scan["digit"] == 7
    assert 0 < scan["confidence"] <= 0.95
    assert len(scan["votes"]) == 12


def test_analysis(client):
    body = client.get("/analysis", params={"kind": "over_under", "digit": 5}).json()
    assert body["market"] == "over_under"
    assert body["prediction"] == "OVER"
    assert client.get("/analysis", params={"kind": "nope"}).status_code == 422


def test_analysis_needs_enough_ticks(orchestrator, events):
    settings = BotSettings.model_validate({})
    app = create_app(orchestrator=orchestrator, stream=TickStream("R_10"), events=events, settings=settings)
    assert TestClient(app).get("/analysis").status_code == 409


def test_unknown_symbol_rejected(client):
    assert client.post("/ticks/symbol", json={"symbol": "FOO"}).status_code == 400


def test_topup(client, orchestrator, events):
    body = client.post("/account/topup").json()
    assert body == {"ok": True, "balance": 10000.0}
    assert events.of_type("balance_topup")


def test_markets_catalogue(client):
    symbols = [m["symbol"] for m in client.get("/markets").json()]
    assert "R_10" in symbols and "1HZ100V" in symbols
