import asyncio

import pytest
import pytest_asyncio

from core.schemas.events import TickerPacket
from core.utils.exceptions import (
    CapacityExceededError,
    FeedApiError,
    FeedValidationError,
    PacketDecodeError,
)
from services.market_feed.feed import MultiConnectionLiveFeed
from services.market_feed.models import ConnectionState
from tests.mocks.fake_websocket import disconnection_frame, ticker_frame, wait_until


def _equities(count: int, start: int = 0):
    return [("NSE_EQ", str(start + i)) for i in range(count)]


@pytest_asyncio.fixture
async def feed(credentials, test_settings, feed_kwargs):
    live = MultiConnectionLiveFeed(credentials, test_settings, **feed_kwargs)
    yield live
    await live.close()


@pytest.mark.asyncio
async def test_large_subscription_spreads_over_three_sockets(feed, connector, fast_sleep):
    await feed.subscribe(_equities(12000), 15)

    assert [s.instrument_count for s in feed.get_connection_status()] == [5000, 5000, 2000]
    assert all(s.state == ConnectionState.CONNECTED for s in feed.get_connection_status())
    assert [len(socket.sent) for socket in connector.sockets] == [50, 50, 20]

    frames = [m for socket in connector.sockets for m in socket.messages]
    assert all(m["RequestCode"] == 15 for m in frames)
    assert all(m["InstrumentCount"] <= 100 for m in frames)
    assert sum(m["InstrumentCount"] for m in frames) == 12000
    # inter-batch delay between frames of one connection
    assert fast_sleep.calls.count(0.1) == 49 + 49 + 19


@pytest.mark.asyncio
async def test_connection_urls_carry_distinct_conn_ids(feed, connector):
    await feed.subscribe(_equities(5001))

    first, second = connector.urls
    assert "version=2" in first
    assert "token=test-access-token" in first
    assert "clientId=1000000001" in first
    assert "authType=2" in first
    assert f"connId={feed.instance_id}_0" in first
    assert f"connId={feed.instance_id}_1" in second


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "instruments,request_code,expected_field",
    [
        ([], None, "instruments"),
        ("NSE_EQ:1333", None, "instruments"),
        ([("NSE_XX", "1")], None, "instruments[0]"),
        ([("NSE_EQ", "1"), ("NSE_EQ",)], None, "instruments[1]"),
        ([("NSE_EQ", "1")], 99, "request_code"),
        ([("NSE_EQ", "1")], "15", "request_code"),
        ([("NSE_EQ", "1")], 16, "request_code"),
    ],
)
async def test_invalid_requests_raise_and_emit(feed, connector, event_collector,
                                               instruments, request_code, expected_field):
    collected, attach = event_collector
    attach(feed, "error")

    with pytest.raises(FeedValidationError) as exc_info:
        await feed.subscribe(instruments, request_code)

    assert exc_info.value.field == expected_field
    (event,) = collected["error"]
    assert event.connection_id == -1
    assert event.error is exc_info.value
    assert connector.attempts == 0
    assert len(feed.pool) == 0


@pytest.mark.asyncio
async def test_capacity_exceeded_sends_nothing(feed, connector, event_collector):
    collected, attach = event_collector
    attach(feed, "error")

    with pytest.raises(CapacityExceededError) as exc_info:
        await feed.subscribe(_equities(25001))

    assert exc_info.value.requested == 25001
    assert collected["error"][0].connection_id == -1
    assert connector.attempts == 0
    assert len(feed.pool) == 0

    await feed.subscribe(_equities(25000))
    assert sum(s.instrument_count for s in feed.get_connection_status()) == 25000
    with pytest.raises(CapacityExceededError):
        await feed.subscribe(_equities(1, 99999))


@pytest.mark.asyncio
async def test_legacy_request_code_alias(feed, connector):
    await feed.subscribe([("NSE_EQ", "1333")], 4)
    await feed.subscribe([("NSE_FNO", "52175")], 8)

    assert [m["RequestCode"] for m in connector.sockets[0].messages] == [17, 21]
    assert set(feed.pool.get(0).ledger) == {17, 21}


@pytest.mark.asyncio
async def test_unsubscribe_uses_paired_codes(feed, connector):
    await feed.subscribe([("NSE_EQ", "1"), ("NSE_EQ", "2"), ("NSE_EQ", "3")], 15)
    await feed.subscribe([("BSE_EQ", "500325")], 17)
    socket = connector.sockets[0]

    await feed.unsubscribe([("NSE_EQ", "2"), ("BSE_EQ", "500325"), ("NSE_EQ", "404")])

    unsub = socket.messages[2:]
    assert [m["RequestCode"] for m in unsub] == [16, 18]
    assert unsub[0]["InstrumentList"] == [{"ExchangeSegment": "NSE_EQ", "SecurityId": "2"}]
    assert unsub[1]["InstrumentList"] == [{"ExchangeSegment": "BSE_EQ", "SecurityId": "500325"}]

    connection = feed.pool.get(0)
    assert connection.instrument_count == 2
    assert connection.ledger_instrument_total() == 2
    assert set(connection.ledger) == {15}


@pytest.mark.asyncio
async def test_unsubscribe_with_explicit_code(feed, connector):
    await feed.subscribe([("NSE_EQ", "1")], 21)
    await feed.unsubscribe([("NSE_EQ", "1")], 22)

    assert connector.sockets[0].messages[-1]["RequestCode"] == 22
    assert feed.pool.get(0).instrument_count == 0

    with pytest.raises(FeedValidationError):
        await feed.unsubscribe([("NSE_EQ", "1")], 21)


@pytest.mark.asyncio
async def test_unsubscribed_instruments_are_not_replayed(feed, connector):
    await feed.subscribe([("NSE_EQ", "1"), ("NSE_EQ", "2")], 15)
    await feed.unsubscribe([("NSE_EQ", "1")])

    connector.sockets[0].server_close()
    await wait_until(lambda: len(connector.sockets) == 2 and connector.sockets[1].sent)

    (replayed,) = connector.sockets[1].messages
    assert replayed["InstrumentList"] == [{"ExchangeSegment": "NSE_EQ", "SecurityId": "2"}]


@pytest.mark.asyncio
async def test_packets_are_emitted_with_connection_id(feed, connector, event_collector, metrics):
    collected, attach = event_collector
    attach(feed, "message", "data")
    await feed.subscribe([("NSE_EQ", "1333")])

    connector.sockets[0].feed(ticker_frame(1333, 1520.5, 1_700_000_000))
    await wait_until(lambda: collected["data"])

    (message,) = collected["message"]
    assert message.connection_id == 0
    assert isinstance(message.data, TickerPacket)
    assert message.data.last_traded_price == 1520.5
    assert collected["data"][0].data == message.data
    assert metrics.sample(
        "dhan_feed_packets_decoded_total", {"variant": "multi_connection", "packet_type": "ticker"}
    ) == 1


@pytest.mark.asyncio
async def test_unknown_frame_is_dropped_silently(feed, connector, event_collector, metrics):
    collected, attach = event_collector
    attach(feed, "message", "error")
    await feed.subscribe([("NSE_EQ", "1333")])

    connector.sockets[0].feed(bytes([99]) + bytes(15))
    connector.sockets[0].feed(ticker_frame(1333, 1.0, 1))
    await wait_until(lambda: collected["message"])

    assert len(collected["message"]) == 1
    assert collected.get("error", []) == []
    assert metrics.sample("dhan_feed_unknown_packets_total", {"variant": "multi_connection"}) == 1


@pytest.mark.asyncio
async def test_short_frame_reports_decode_error(feed, connector, event_collector, metrics):
    collected, attach = event_collector
    attach(feed, "message", "error")
    await feed.subscribe([("NSE_EQ", "1333")])

    connector.sockets[0].feed(bytes([2]) + bytes(9))
    await wait_until(lambda: collected["error"])

    (event,) = collected["error"]
    assert event.connection_id == 0
    assert isinstance(event.error, PacketDecodeError)
    assert event.error.response_code == 2
    assert collected.get("message", []) == []
    assert feed.pool.get(0).is_connected
    assert metrics.sample("dhan_feed_decode_errors_total", {"variant": "multi_connection"}) == 1


@pytest.mark.asyncio
async def test_critical_disconnection_halts_connection(feed, connector, event_collector):
    collected, attach = event_collector
    attach(feed, "disconnection", "error", "message")
    await feed.subscribe([("NSE_EQ", "1333")])
    socket = connector.sockets[0]

    socket.feed(disconnection_frame(807))
    await wait_until(lambda: socket.closed)
    for _ in range(20):
        await asyncio.sleep(0)

    (disconnection,) = collected["disconnection"]
    assert disconnection.error_code == 807
    assert disconnection.reason == "Access token expired"
    assert collected["message"][0].data.type == "disconnection"

    (error_event,) = collected["error"]
    assert isinstance(error_event.error, FeedApiError)
    assert error_event.error.critical
    assert error_event.error.code == 807

    assert socket.close_code == 1008
    assert connector.attempts == 1
    assert feed.pool.get(0).state == ConnectionState.DISCONNECTED


@pytest.mark.asyncio
async def test_rate_limit_disconnection_lengthens_backoff(feed, connector, fast_sleep):
    await feed.subscribe([("NSE_EQ", "1333")])
    socket = connector.sockets[0]
    connection = feed.pool.get(0)

    socket.feed(disconnection_frame(805))
    await wait_until(lambda: connection.reconnect_attempts == 2)
    assert connection.is_connected

    socket.server_close(1006, "dropped")
    await wait_until(lambda: len(connector.sockets) == 2 and connector.sockets[1].sent)

    # penalty of 2 plus the new attempt: 2000 * 2^3
    assert 16.0 in fast_sleep.calls
    assert connection.reconnect_attempts == 0


@pytest.mark.asyncio
async def test_json_error_frame_routed_to_error_handler(feed, connector, event_collector):
    collected, attach = event_collector
    attach(feed, "error")
    await feed.subscribe([("NSE_EQ", "1333")])
    connection = feed.pool.get(0)

    connector.sockets[0].feed('{"error": {"code": "DH-904", "message": "slow down"}}')
    await wait_until(lambda: collected["error"])

    (event,) = collected["error"]
    assert event.error.error_type == "TradingApi"
    assert event.error.code == "DH-904"
    assert event.error.details == {"message": "slow down"}
    assert connection.reconnect_attempts == 3
    assert connection.is_connected


@pytest.mark.asyncio
async def test_send_failure_is_reported_not_raised(feed, connector, event_collector):
    collected, attach = event_collector
    attach(feed, "error")
    await feed.subscribe([("NSE_EQ", "1")])
    connector.sockets[0].fail_sends = True

    await feed.subscribe([("NSE_EQ", "2")])

    assert collected["error"][0].error.request_code == 15
    # still recorded for replay
    assert feed.pool.get(0).instrument_count == 2


@pytest.mark.asyncio
async def test_handler_failure_does_not_break_stream(feed, connector, event_collector):
    collected, attach = event_collector

    def broken(event):
        raise RuntimeError("consumer bug")

    feed.on("data", broken)
    attach(feed, "data")
    await feed.subscribe([("NSE_EQ", "1333")])

    connector.sockets[0].feed(ticker_frame(1333, 1.0, 1))
    connector.sockets[0].feed(ticker_frame(1333, 2.0, 2))
    await wait_until(lambda: len(collected["data"]) == 2)
    assert feed.pool.get(0).is_connected
