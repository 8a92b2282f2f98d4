import struct

import pytest

from core.schemas.events import DepthPacket, DisconnectionPacket
from core.utils.exceptions import PacketDecodeError
from services.market_feed.decoder import DEPTH_20_LAYOUT, DEPTH_200_LAYOUT, PacketDecoder


def _depth_frame(code: int, levels, rows: int = 0, security_id: int = 1333) -> bytes:
    body = b"".join(struct.pack("<dII", price, qty, orders) for price, qty, orders in levels)
    header = struct.pack("<HBBiI", 12 + len(body), code, 1, security_id, rows)
    return header + body


def test_depth_20_bid_levels():
    levels = [(1500.0 - i * 0.05, 10 * (i + 1), i + 1) for i in range(20)]
    decoder = PacketDecoder(DEPTH_20_LAYOUT, clock=lambda: 1_700_000_000.5)

    packet = decoder.decode(_depth_frame(41, levels))

    assert isinstance(packet, DepthPacket)
    assert packet.type == "depth_bid"
    assert packet.depth_type == 20
    assert packet.security_id == 1333
    assert len(packet.levels) == 20
    assert packet.levels[0].price == 1500.0
    assert packet.levels[19].orders == 20
    assert packet.received_at == 1_700_000_000_500


def test_depth_20_stops_at_truncated_record():
    levels = [(100.0, 1, 1)] * 5
    frame = _depth_frame(51, levels)[:-4]

    packet = PacketDecoder(DEPTH_20_LAYOUT).decode(frame)

    assert packet.type == "depth_ask"
    assert len(packet.levels) == 4


def test_depth_200_uses_row_count():
    levels = [(50.0 + i, 1, 1) for i in range(10)]
    packet = PacketDecoder(DEPTH_200_LAYOUT).decode(_depth_frame(41, levels, rows=3))

    assert packet.depth_type == 200
    assert [level.price for level in packet.levels] == [50.0, 51.0, 52.0]


def test_depth_header_too_short():
    with pytest.raises(PacketDecodeError):
        PacketDecoder(DEPTH_20_LAYOUT).decode(bytes([0, 0, 41, 1, 0]))


def test_depth_disconnection_and_unknown():
    decoder = PacketDecoder(DEPTH_20_LAYOUT)
    frame = bytearray(12)
    frame[2] = 50
    struct.pack_into("<H", frame, 8, 805)

    packet = decoder.decode(bytes(frame))

    assert isinstance(packet, DisconnectionPacket)
    assert packet.reason == "Connection limit exceeded"
    # Ticker code means nothing on the depth endpoints
    assert decoder.decode(bytes([0, 0, 2]) + bytes(13)) is None
