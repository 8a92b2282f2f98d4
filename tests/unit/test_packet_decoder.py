import struct

import pytest

from core.schemas.events import (
    DisconnectionPacket,
    FullPacket,
    MarketStatusPacket,
    OiDataPacket,
    PrevClosePacket,
    QuotePacket,
    TickerPacket,
)
from core.utils.exceptions import PacketDecodeError
from services.market_feed.decoder import (
    FULL_SIZE,
    LEGACY_LAYOUT,
    POOLED_LAYOUT,
    PacketDecoder,
    get_layout,
)
from tests.mocks.fake_websocket import ticker_frame


def _header(code: int, security_id: int, segment: int = 1, segment_offset: int = 3) -> bytearray:
    buf = bytearray(8)
    buf[0] = code
    buf[segment_offset] = segment
    struct.pack_into("<I", buf, 4, security_id)
    return buf


def _quote_frame(segment_offset: int = 3) -> bytes:
    buf = _header(4, 500, segment=2, segment_offset=segment_offset)
    buf += struct.pack("<fHIfI", 101.5, 25, 1_700_000_000, 100.25, 9000)
    buf += struct.pack("<IIffff", 111, 222, 1.5, 2.5, 3.5, 4.5)
    return bytes(buf)


def test_ticker_decodes_known_values():
    frame = ticker_frame(12345, 99.5, 1_700_000_000)
    packet = PacketDecoder(POOLED_LAYOUT).decode(frame)

    assert isinstance(packet, TickerPacket)
    assert packet.model_dump() == {
        "exchange_segment": 1,
        "security_id": 12345,
        "type": "ticker",
        "last_traded_price": 99.5,
        "last_traded_time": 1_700_000_000,
    }


def test_legacy_layout_reads_segment_from_byte_one():
    frame = ticker_frame(42, 10.0, 1, segment=4, segment_offset=1)
    packet = PacketDecoder(LEGACY_LAYOUT).decode(frame)
    assert packet.exchange_segment == 4
    assert packet.security_id == 42


def test_unknown_response_code_returns_none():
    frame = bytes([99]) + bytes(15)
    assert PacketDecoder(POOLED_LAYOUT).decode(frame) is None


def test_short_ticker_buffer_fails_closed():
    frame = ticker_frame(1, 1.0, 1)[:12]
    with pytest.raises(PacketDecodeError) as exc:
        PacketDecoder(POOLED_LAYOUT).decode(frame)
    assert exc.value.response_code == 2
    assert exc.value.length == 12


def test_empty_buffer_raises():
    with pytest.raises(PacketDecodeError):
        PacketDecoder(POOLED_LAYOUT).decode(b"")


def test_pooled_quote_tail_order():
    packet = PacketDecoder(POOLED_LAYOUT).decode(_quote_frame())

    assert isinstance(packet, QuotePacket)
    assert packet.exchange_segment == 2
    assert packet.last_traded_quantity == 25
    assert packet.volume_traded == 9000
    assert packet.total_sell_quantity == 111
    assert packet.total_buy_quantity == 222
    assert (packet.open_price, packet.close_price, packet.high_price, packet.low_price) == (1.5, 2.5, 3.5, 4.5)


def test_legacy_quote_tail_order():
    packet = PacketDecoder(LEGACY_LAYOUT).decode(_quote_frame(segment_offset=1))

    assert packet.total_buy_quantity == 111
    assert packet.total_sell_quantity == 222
    assert (packet.open_price, packet.high_price, packet.low_price, packet.close_price) == (1.5, 2.5, 3.5, 4.5)


def test_full_packet_with_depth():
    buf = _header(8, 777)
    buf += struct.pack("<fHIfI", 200.0, 10, 1_700_000_100, 199.5, 50_000)
    buf += struct.pack("<IIIIIffff", 300, 400, 1000, 1100, 900, 198.0, 201.0, 205.0, 195.0)
    for level in range(5):
        buf += struct.pack("<IIHHff", 10 + level, 20 + level, 1, 2, 199.0 - level, 201.0 + level)
    assert len(buf) == FULL_SIZE

    packet = PacketDecoder(POOLED_LAYOUT).decode(bytes(buf))

    assert isinstance(packet, FullPacket)
    assert packet.total_sell_quantity == 300
    assert packet.total_buy_quantity == 400
    assert packet.open_interest == 1000
    assert packet.open_interest_day_high == 1100
    assert packet.open_interest_day_low == 900
    assert len(packet.market_depth.buy) == 5
    assert packet.market_depth.buy[0].price == 199.0
    assert packet.market_depth.sell[4].price == 205.0
    assert packet.market_depth.sell[2].quantity == 22


def test_full_packet_too_short():
    buf = _header(8, 1) + bytes(100)
    with pytest.raises(PacketDecodeError):
        PacketDecoder(POOLED_LAYOUT).decode(bytes(buf))


def test_oi_and_prev_close():
    decoder = PacketDecoder(POOLED_LAYOUT)

    oi = decoder.decode(bytes(_header(5, 9)) + struct.pack("<I", 123456))
    assert isinstance(oi, OiDataPacket)
    assert oi.open_interest == 123456

    prev = decoder.decode(bytes(_header(6, 9)) + struct.pack("<fI", 88.5, 654))
    assert isinstance(prev, PrevClosePacket)
    assert prev.previous_close_price == 88.5
    assert prev.previous_open_interest == 654


@pytest.mark.parametrize(
    "frame,expected",
    [
        (bytes(_header(7, 0)), "open"),
        (bytes(_header(7, 0)) + bytes([7]), "open"),
        (bytes(_header(7, 0)) + bytes([0]), "closed"),
    ],
)
def test_market_status(frame, expected):
    packet = PacketDecoder(POOLED_LAYOUT).decode(frame)
    assert isinstance(packet, MarketStatusPacket)
    assert packet.status == expected


def test_disconnection_reason_lookup():
    decoder = PacketDecoder(POOLED_LAYOUT)

    known = decoder.decode(bytes(_header(50, 0)) + struct.pack("<H", 807))
    assert isinstance(known, DisconnectionPacket)
    assert known.error_code == 807
    assert known.reason == "Access token expired"

    other = decoder.decode(bytes(_header(50, 0)) + struct.pack("<H", 812))
    assert other.reason == "Disconnection code: 812"


def test_get_layout_rejects_unknown_name():
    with pytest.raises(ValueError):
        get_layout("nope")
