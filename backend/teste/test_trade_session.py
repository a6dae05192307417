import asyncio

import pytest
from structlog.testing import capture_logs

from conftest import FakeConnector, FakeDeriv, FakeWebSocket, wait_until
from digitbot.infrastructure.deriv.deriv_ws_client import (
    AccountContext,
    DerivWSError,
    ListenerRegistry,
    TradeSession,
    message_kind,
)


def make_session(connector, **kwargs) -> TradeSession:
    params = dict(send_timeout=0.2, ready_poll_interval=0.005, reconnect_delay=0.01)
    params.update(kwargs)
    return TradeSession(
        AccountContext(token="a1-test-token-123"),
        websocket_url="wss://example.test/websockets/v3",
        app_id="1089",
        connector=connector,
        **params,
    )


def test_message_kind_prefers_error_then_msg_type():
    assert message_kind({"msg_type": "buy", "error": {"code": "X"}}) == "error"
    assert message_kind({"msg_type": "proposal", "proposal": {}}) == "proposal"
    assert message_kind({"history": {"prices": []}}) == "history"
    assert message_kind({"something": 1}) == "unknown"


@pytest.mark.asyncio
async def test_listener_registry_offers_to_every_match():
    reg = ListenerRegistry()
    a = reg.register(lambda m: m.get("msg_type") == "balance")
    b = reg.register(lambda m: "balance" in m)
    c = reg.register(lambda m: m.get("msg_type") == "proposal")

    assert reg.offer({"msg_type": "balance", "balance": {"balance": 5}}) == 2
    assert a.result() == b.result()
    assert not c.done()

    reg.cancel_all()
    assert c.result() is None
    assert len(reg) == 0


@pytest.mark.asyncio
async def test_authorize_then_balance_and_tick_subscriptions():
    connector = FakeConnector(FakeDeriv(balance=250.0))
    session = make_session(connector)
    session.set_market("R_25")
    try:
        await session.start()
        await wait_until(lambda: session.is_authorized)
        await wait_until(lambda: len(connector.current.sent) >= 3)

        sent = connector.current.sent
        assert sent[0] == {"authorize": "a1-test-token-123"}
        assert {"balance": 1, "subscribe": 1} in sent
        assert {"ticks": "R_25", "subscribe": 1} in sent
        assert session.balance == 250.0
        assert session.loginid == "VRTC123"
        assert connector.urls[0] == "wss://example.test/websockets/v3?app_id=1089"
    finally:
        await session.close()


@pytest.mark.asyncio
async def test_send_times_out_when_channel_never_opens():
    never = asyncio.Event()

    async def hanging_connector(url):
        await never.wait()

    session = make_session(hanging_connector, send_timeout=0.05)
    try:
        await session.start()
        assert await session.send({"ping": 1}) is False
    finally:
        await session.close()


@pytest.mark.asyncio
async def test_await_message_returns_none_on_timeout():
    connector = FakeConnector()
    session = make_session(connector)
    try:
        await session.start()
        await wait_until(lambda: session.is_open)
        assert await session.await_message(lambda m: m.get("msg_type") == "proposal", 0.05) is None
        assert session.pending_listeners == 0
    finally:
        await session.close()


@pytest.mark.asyncio
async def test_concurrent_awaits_all_see_the_same_message():
    connector = FakeConnector()
    session = make_session(connector)
    try:
        await session.start()
        await wait_until(lambda: session.is_open)

        first = asyncio.create_task(session.await_message(lambda m: m.get("msg_type") == "balance", 1.0))
        second = asyncio.create_task(session.await_message(lambda m: "balance" in m, 1.0))
        await wait_until(lambda: session.pending_listeners == 2)

        connector.current.push({"msg_type": "balance", "balance": {"balance": 42.0}})
        a, b = await asyncio.gather(first, second)
        assert a == b
        assert session.balance == 42.0
    finally:
        await session.close()


@pytest.mark.asyncio
async def test_request_replies_are_matched_by_req_id():
    connector = FakeConnector()
    session = make_session(connector)
    try:
        await session.start()
        await wait_until(lambda: session.is_open)

        first = asyncio.create_task(session.request({"proposal": 1, "amount": 1}, timeout=1.0))
        second = asyncio.create_task(session.request({"proposal": 1, "amount": 2}, timeout=1.0))
        ws: FakeWebSocket = connector.current
        await wait_until(lambda: len(ws.sent_of("proposal")) == 2)

        req_a, req_b = (p["req_id"] for p in ws.sent_of("proposal"))
        ws.push({"msg_type": "proposal", "proposal": {"id": "b"}, "req_id": req_b})
        ws.push({"msg_type": "proposal", "proposal": {"id": "a"}, "req_id": req_a})

        resp_a, resp_b = await asyncio.gather(first, second)
        assert resp_a["proposal"]["id"] == "a"
        assert resp_b["proposal"]["id"] == "b"
    finally:
        await session.close()


@pytest.mark.asyncio
async def test_bad_frames_are_skipped():
    connector = FakeConnector()
    session = make_session(connector)
    try:
        await session.start()
        await wait_until(lambda: session.is_open)
        connector.current.push("{not json")
        connector.current.push({"msg_type": "balance", "balance": {"balance": 7.5}})
        await wait_until(lambda: session.balance == 7.5)
        assert session.is_open
    finally:
        await session.close()


@pytest.mark.asyncio
async def test_reconnects_and_reauthorizes_while_policy_allows():
    connector = FakeConnector(FakeDeriv())
    session = make_session(connector)
    closed = []
    session.on("connection_closed", closed.append)
    session.set_reconnect_policy(lambda: True)
    try:
        await session.start()
        await wait_until(lambda: session.is_authorized)

        await connector.current.close()
        await wait_until(lambda: len(connector.connections) == 2 and session.is_authorized)

        assert closed[0]["will_reconnect"] is True
        assert connector.connections[1].sent[0] == {"authorize": "a1-test-token-123"}
    finally:
        await session.close()


@pytest.mark.asyncio
async def test_no_reconnect_when_policy_says_no():
    connector = FakeConnector(FakeDeriv())
    session = make_session(connector)
    closed = []
    session.on("connection_closed", closed.append)
    try:
        await session.start()
        await wait_until(lambda: session.is_authorized)
        await connector.current.close()
        await wait_until(lambda: len(closed) == 1)
        await asyncio.sleep(0.05)

        assert closed[0]["will_reconnect"] is False
        assert len(connector.connections) == 1
    finally:
        await session.close()


@pytest.mark.asyncio
async def test_reconnect_attempts_are_capped():
    connector = FakeConnector()
    connector.failures.extend([OSError("refused")] * 5)
    session = make_session(connector, max_reconnect_attempts=2)
    session.set_reconnect_policy(lambda: True)
    closed = []
    session.on("connection_closed", closed.append)
    try:
        await session.start()
        await wait_until(lambda: len(closed) == 3)
        await asyncio.sleep(0.05)

        assert [c["will_reconnect"] for c in closed] == [True, True, False]
        assert len(connector.urls) == 3
    finally:
        await session.close()


@pytest.mark.asyncio
async def test_topup_only_on_virtual_accounts():
    connector = FakeConnector(FakeDeriv(balance=3.0))
    session = make_session(connector)
    try:
        await session.start()
        await wait_until(lambda: session.is_authorized)
        assert await session.topup_virtual(timeout=0.5) is True
        assert session.balance == 10000.0
    finally:
        await session.close()

    real = TradeSession(
        AccountContext(token="a1-test-token-123", is_virtual=False),
        websocket_url="wss://example.test/websockets/v3",
        app_id="1089",
        connector=FakeConnector(FakeDeriv()),
    )
    assert await real.topup_virtual() is False


@pytest.mark.asyncio
async def test_request_after_close_is_a_usage_error():
    connector = FakeConnector(FakeDeriv())
    session = make_session(connector)
    await session.start()
    await wait_until(lambda: session.is_authorized)
    await session.close()

    with pytest.raises(DerivWSError):
        await session.request({"balance": 1}, timeout=0.1)


@pytest.mark.asyncio
async def test_cancelled_request_is_not_reported_as_timeout():
    exchange = FakeDeriv()
    exchange.proposal_mode = "silent"
    connector = FakeConnector(exchange)
    with capture_logs() as logs:
        session = make_session(connector)
        try:
            await session.start()
            await wait_until(lambda: session.is_authorized)
            pending = asyncio.create_task(session.request({"proposal": 1, "amount": 1}, timeout=5.0))
            await wait_until(lambda: session.pending_listeners == 1)

            session.cancel_pending()
            assert await pending is None
        finally:
            await session.close()

    names = [entry["event"] for entry in logs]
    assert "request_cancelled" in names
    assert "request_timeout" not in names
