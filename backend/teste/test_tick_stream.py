import pytest

from conftest import FakeConnector, history_payload, tick_payload, wait_until
from digitbot.services.market.tick_stream import TickStream


def quotes(n: int, start: float = 1000.11):
    return [round(start + 0.01 * i, 2) for i in range(n)]


def test_history_then_live_tick_keeps_window_size():
    stream = TickStream("R_10")
    history = quotes(50)
    stream.apply_history(history_payload(history)["history"])
    assert len(stream) == 50

    stream.apply_tick({"quote": 2000.37, "epoch": 1_700_000_500})
    window = stream.snapshot()
    assert len(window) == 50
    assert window[-1].quote == 2000.37
    assert window[-1].digit == 7
    assert window[-1].timestamp == 1_700_000_500_000
    assert window[0].quote == history[1]


def test_longer_history_is_trimmed_to_window():
    stream = TickStream("R_10", window_size=40)
    stream.apply_history(history_payload(quotes(60))["history"])
    assert len(stream) == 40
    assert stream.snapshot()[-1].quote == quotes(60)[-1]


def test_listeners_get_every_live_tick_and_errors_are_contained():
    stream = TickStream("R_10")
    got = []

    def broken(tick):
        raise RuntimeError("boom")

    stream.add_listener(broken)
    stream.add_listener(got.append)
    stream.apply_tick({"quote": "1234.50"})
    assert [t.digit for t in got] == [0]


@pytest.mark.asyncio
async def test_stream_requests_history_and_subscribes():
    connector = FakeConnector()
    stream = TickStream("R_50", connector=connector, reconnect_delay=0.01)
    try:
        await stream.start()
        await wait_until(lambda: stream.is_connected and len(connector.current.sent) == 2)

        history_req, ticks_req = connector.current.sent
        assert history_req == {"ticks_history": "R_50", "count": 50, "end": "latest", "style": "ticks"}
        assert ticks_req == {"ticks": "R_50", "subscribe": 1}

        connector.current.push(history_payload(quotes(50)))
        connector.current.push("not-json")
        connector.current.push(tick_payload(1500.04, symbol="R_50"))
        await wait_until(lambda: len(stream) == 50 and stream.snapshot()[-1].quote == 1500.04)
    finally:
        await stream.stop()
    assert not stream.is_connected


@pytest.mark.asyncio
async def test_reconnect_replaces_window_with_fresh_history():
    connector = FakeConnector()
    stream = TickStream("R_10", connector=connector, reconnect_delay=0.01)
    try:
        await stream.start()
        await wait_until(lambda: stream.is_connected)
        connector.current.push(history_payload(quotes(50)))
        await wait_until(lambda: len(stream) == 50)

        await connector.current.close()
        await wait_until(lambda: len(connector.connections) == 2 and stream.is_connected)
        fresh = quotes(50, start=3000.01)
        connector.current.push(history_payload(fresh))
        await wait_until(lambda: stream.snapshot()[0].quote == fresh[0])
        assert len(stream) == 50
    finally:
        await stream.stop()


@pytest.mark.asyncio
async def test_set_symbol_clears_window_and_restarts():
    connector = FakeConnector()
    stream = TickStream("R_10", connector=connector, reconnect_delay=0.01)
    try:
        await stream.start()
        await wait_until(lambda: stream.is_connected)
        connector.current.push(history_payload(quotes(50)))
        await wait_until(lambda: len(stream) == 50)

        await stream.set_symbol("R_100")
        assert stream.symbol == "R_100"
        assert len(stream) == 0
        await wait_until(lambda: len(connector.connections) == 2 and len(connector.current.sent) == 2)
        assert connector.current.sent[0]["ticks_history"] == "R_100"
    finally:
        await stream.stop()


@pytest.mark.asyncio
async def test_stream_gives_up_after_capped_attempts():
    connector = FakeConnector()
    connector.failures.extend([OSError("down")] * 3)
    stream = TickStream("R_10", connector=connector, reconnect_delay=0.01, max_reconnect_attempts=2)
    await stream.start()
    await wait_until(lambda: not stream.is_running)
    assert len(connector.urls) == 3
    await stream.stop()
