import struct

import pytest

from core.schemas.events import DepthPacket
from core.utils.exceptions import CapacityExceededError, FeedValidationError
from services.market_feed.feed import MarketDepthFeed
from tests.mocks.fake_websocket import wait_until


def _depth_frame(code: int, security_id: int, levels) -> bytes:
    body = b"".join(struct.pack("<dII", price, qty, orders) for price, qty, orders in levels)
    return struct.pack("<HBBiI", 12 + len(body), code, 1, security_id, 0) + body


@pytest.mark.asyncio
async def test_depth_feed_only_accepts_depth_code(credentials, test_settings, feed_kwargs, connector):
    feed = MarketDepthFeed(credentials, test_settings, depth_type=20, **feed_kwargs)
    try:
        for code in (15, 17, 21):
            with pytest.raises(FeedValidationError):
                await feed.subscribe([("NSE_EQ", "1333")], code)
        assert connector.attempts == 0

        await feed.subscribe([("NSE_EQ", "1333")])
        assert connector.sockets[0].messages[0]["RequestCode"] == 23
    finally:
        await feed.close()


def test_depth_type_must_be_20_or_200(credentials, test_settings):
    with pytest.raises(FeedValidationError):
        MarketDepthFeed(credentials, test_settings, depth_type=50)


@pytest.mark.asyncio
async def test_depth_20_caps(credentials, test_settings, feed_kwargs, connector):
    feed = MarketDepthFeed(credentials, test_settings, depth_type=20, **feed_kwargs)
    try:
        await feed.subscribe([("NSE_EQ", str(i)) for i in range(60)], 23)

        assert [s.instrument_count for s in feed.get_connection_status()] == [50, 10]
        assert all(s.depth_type == 20 for s in feed.get_connection_status())
        assert [m["InstrumentCount"] for s in connector.sockets for m in s.messages] == [50, 10]
        assert all("twentydepth" in url and "connId" not in url for url in connector.urls)

        with pytest.raises(CapacityExceededError):
            await feed.subscribe([("NSE_EQ", str(i)) for i in range(1000, 1191)], 23)
    finally:
        await feed.close()


@pytest.mark.asyncio
async def test_depth_200_one_instrument_per_socket(credentials, test_settings, feed_kwargs, connector):
    feed = MarketDepthFeed(credentials, test_settings, depth_type=200, **feed_kwargs)
    try:
        for i in range(5):
            await feed.subscribe([("NSE_FNO", str(40000 + i))])
        assert len(connector.sockets) == 5
        assert all(len(s.sent) == 1 for s in connector.sockets)
        assert all("twohundreddepth" in url for url in connector.urls)

        with pytest.raises(CapacityExceededError):
            await feed.subscribe([("NSE_FNO", "49999")])
        assert len(connector.sockets) == 5
    finally:
        await feed.close()


@pytest.mark.asyncio
async def test_depth_unsubscribe_codes(credentials, test_settings, feed_kwargs, connector):
    feed = MarketDepthFeed(credentials, test_settings, depth_type=20, **feed_kwargs)
    try:
        await feed.subscribe([("NSE_EQ", "1"), ("NSE_EQ", "2")])
        await feed.unsubscribe([("NSE_EQ", "1")])
        await feed.unsubscribe([("NSE_EQ", "2")], 25)

        assert [m["RequestCode"] for m in connector.sockets[0].messages] == [23, 24, 25]
        assert feed.pool.get(0).instrument_count == 0
    finally:
        await feed.close()


@pytest.mark.asyncio
async def test_depth_packets_are_emitted(credentials, test_settings, feed_kwargs, connector, event_collector):
    collected, attach = event_collector
    feed = MarketDepthFeed(credentials, test_settings, depth_type=20, **feed_kwargs)
    attach(feed, "message")
    try:
        await feed.subscribe([("NSE_EQ", "1333")])
        connector.sockets[0].feed(_depth_frame(41, 1333, [(1501.0, 10, 1), (1500.5, 20, 2)]))
        connector.sockets[0].feed(_depth_frame(51, 1333, [(1502.0, 5, 1)]))
        await wait_until(lambda: len(collected["message"]) == 2)

        bid, ask = (event.data for event in collected["message"])
        assert isinstance(bid, DepthPacket)
        assert (bid.type, ask.type) == ("depth_bid", "depth_ask")
        assert [level.price for level in bid.levels] == [1501.0, 1500.5]
        assert ask.levels[0].quantity == 5
        assert bid.depth_type == 20
    finally:
        await feed.close()
