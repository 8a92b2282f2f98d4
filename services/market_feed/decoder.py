"""
Binary packet decoding for the Dhan feeds.

One decoder handles every feed flavour; the differences between them are
captured by a WireLayout:

* ``pooled``  - multi-connection feed, segment at byte 3
* ``legacy``  - single-socket feed, segment at byte 1, different quote tail order
* ``depth20`` / ``depth200`` - 12 byte header followed by 16 byte depth records

All integers and floats are little-endian. Every typed packet is length-checked
before any field is read; short buffers raise PacketDecodeError.
"""

import struct
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

from core.schemas.events import (
    DepthLevel,
    DepthPacket,
    DisconnectionPacket,
    FeedPacket,
    FullPacket,
    MarketDepth,
    MarketStatusPacket,
    OiDataPacket,
    PrevClosePacket,
    QuotePacket,
    TickerPacket,
)
from core.utils.exceptions import PacketDecodeError

from .error_codes import disconnection_reason
from .models import FeedResponseCode

_U8 = struct.Struct("<B")
_U16 = struct.Struct("<H")
_U32 = struct.Struct("<I")
_I32 = struct.Struct("<i")
_F32 = struct.Struct("<f")

# ltp, ltq, ltt, atp, volume starting at byte 8
_QUOTE_HEAD = struct.Struct("<fHIfI")
# five 4-byte fields starting at byte 26
_QUOTE_TAIL = struct.Struct("<IIffff")
# total qty x2, OI x3, OHLC x4 starting at byte 26
_FULL_TAIL = struct.Struct("<IIIIIffff")
# bid qty, ask qty, bid orders, ask orders, bid price, ask price
_DEPTH_LEVEL = struct.Struct("<IIHHff")
# message length, response code, segment, security id, rows/sequence
_DEPTH_HEADER = struct.Struct("<HBBiI")
_DEPTH_RECORD = struct.Struct("<dII")

HEADER_SIZE = 8
TICKER_SIZE = 16
QUOTE_SIZE = 50
OI_SIZE = 12
PREV_CLOSE_SIZE = 16
DISCONNECT_SIZE = 10
FULL_DEPTH_OFFSET = 62
FULL_DEPTH_LEVELS = 5
FULL_SIZE = FULL_DEPTH_OFFSET + FULL_DEPTH_LEVELS * _DEPTH_LEVEL.size
MARKET_OPEN_STATUS = 7


@dataclass(frozen=True)
class WireLayout:
    name: str
    response_code_offset: int
    segment_offset: int
    header_size: int = HEADER_SIZE
    # Order of the six fields at byte 26 of a quote packet
    quote_tail: Tuple[str, ...] = (
        "total_sell_quantity", "total_buy_quantity",
        "open_price", "close_price", "high_price", "low_price",
    )
    # Order of the two quantity fields at byte 26 of a full packet
    full_quantities: Tuple[str, str] = ("total_sell_quantity", "total_buy_quantity")
    depth_type: Optional[int] = None

    @property
    def is_depth(self) -> bool:
        return self.depth_type is not None


POOLED_LAYOUT = WireLayout(name="pooled", response_code_offset=0, segment_offset=3)

LEGACY_LAYOUT = WireLayout(
    name="legacy",
    response_code_offset=0,
    segment_offset=1,
    quote_tail=(
        "total_buy_quantity", "total_sell_quantity",
        "open_price", "high_price", "low_price", "close_price",
    ),
    full_quantities=("total_buy_quantity", "total_sell_quantity"),
)

DEPTH_20_LAYOUT = WireLayout(
    name="depth20", response_code_offset=2, segment_offset=3,
    header_size=_DEPTH_HEADER.size, depth_type=20,
)

DEPTH_200_LAYOUT = WireLayout(
    name="depth200", response_code_offset=2, segment_offset=3,
    header_size=_DEPTH_HEADER.size, depth_type=200,
)

LAYOUTS: Dict[str, WireLayout] = {
    layout.name: layout
    for layout in (POOLED_LAYOUT, LEGACY_LAYOUT, DEPTH_20_LAYOUT, DEPTH_200_LAYOUT)
}


def get_layout(name: str) -> WireLayout:
    try:
        return LAYOUTS[name]
    except KeyError:
        raise ValueError(f"Unknown wire layout: {name}") from None


class PacketDecoder:
    """Turns one inbound binary frame into one typed packet, or None if unrecognised."""

    def __init__(self, layout: WireLayout, clock: Callable[[], float] = time.time):
        self.layout = layout
        self._clock = clock
        if layout.is_depth:
            self._handlers = {
                FeedResponseCode.DEPTH_BID: self._decode_depth,
                FeedResponseCode.DEPTH_ASK: self._decode_depth,
                FeedResponseCode.DISCONNECT: self._decode_disconnection,
            }
        else:
            self._handlers = {
                FeedResponseCode.TICKER: self._decode_ticker,
                FeedResponseCode.QUOTE: self._decode_quote,
                FeedResponseCode.OI_DATA: self._decode_oi,
                FeedResponseCode.PREV_CLOSE: self._decode_prev_close,
                FeedResponseCode.MARKET_STATUS: self._decode_market_status,
                FeedResponseCode.FULL: self._decode_full,
                FeedResponseCode.DISCONNECT: self._decode_disconnection,
            }

    def response_code(self, data: bytes) -> Optional[int]:
        offset = self.layout.response_code_offset
        if len(data) <= offset:
            return None
        return data[offset]

    def decode(self, data: bytes) -> Optional[FeedPacket]:
        """Decode a frame. Unknown response codes return None."""
        code = self.response_code(data)
        if code is None:
            raise PacketDecodeError(
                f"Frame of {len(data)} bytes has no response code",
                response_code=None, length=len(data),
                required=self.layout.response_code_offset + 1,
            )
        handler = self._handlers.get(code)
        if handler is None:
            return None
        return handler(data, code)

    # helpers

    def _require(self, data: bytes, code: int, size: int) -> None:
        if len(data) < size:
            raise PacketDecodeError(
                f"Packet with response code {code} needs {size} bytes, got {len(data)}",
                response_code=code, length=len(data), required=size,
            )

    def _instrument(self, data: bytes) -> Dict[str, int]:
        return {
            "exchange_segment": _U8.unpack_from(data, self.layout.segment_offset)[0],
            "security_id": _U32.unpack_from(data, 4)[0],
        }

    # standard layouts

    def _decode_ticker(self, data: bytes, code: int) -> TickerPacket:
        self._require(data, code, TICKER_SIZE)
        return TickerPacket(
            **self._instrument(data),
            last_traded_price=_F32.unpack_from(data, 8)[0],
            last_traded_time=_U32.unpack_from(data, 12)[0],
        )

    def _quote_head(self, data: bytes) -> Dict[str, float]:
        ltp, ltq, ltt, atp, volume = _QUOTE_HEAD.unpack_from(data, 8)
        return {
            "last_traded_price": ltp,
            "last_traded_quantity": ltq,
            "last_traded_time": ltt,
            "average_trade_price": atp,
            "volume_traded": volume,
        }

    def _decode_quote(self, data: bytes, code: int) -> QuotePacket:
        self._require(data, code, QUOTE_SIZE)
        tail = dict(zip(self.layout.quote_tail, _QUOTE_TAIL.unpack_from(data, 26)))
        return QuotePacket(**self._instrument(data), **self._quote_head(data), **tail)

    def _decode_full(self, data: bytes, code: int) -> FullPacket:
        self._require(data, code, FULL_SIZE)
        (qty_a, qty_b, oi, oi_high, oi_low,
         open_price, close_price, high_price, low_price) = _FULL_TAIL.unpack_from(data, 26)
        quantities = dict(zip(self.layout.full_quantities, (qty_a, qty_b)))

        buy, sell = [], []
        for level in range(FULL_DEPTH_LEVELS):
            (bid_qty, ask_qty, bid_orders, ask_orders,
             bid_price, ask_price) = _DEPTH_LEVEL.unpack_from(data, FULL_DEPTH_OFFSET + level * _DEPTH_LEVEL.size)
            buy.append(DepthLevel(price=bid_price, quantity=bid_qty, orders=bid_orders))
            sell.append(DepthLevel(price=ask_price, quantity=ask_qty, orders=ask_orders))

        return FullPacket(
            **self._instrument(data),
            **self._quote_head(data),
            **quantities,
            open_interest=oi,
            open_interest_day_high=oi_high,
            open_interest_day_low=oi_low,
            open_price=open_price,
            close_price=close_price,
            high_price=high_price,
            low_price=low_price,
            market_depth=MarketDepth(buy=buy, sell=sell),
        )

    def _decode_oi(self, data: bytes, code: int) -> OiDataPacket:
        self._require(data, code, OI_SIZE)
        return OiDataPacket(**self._instrument(data), open_interest=_U32.unpack_from(data, 8)[0])

    def _decode_prev_close(self, data: bytes, code: int) -> PrevClosePacket:
        self._require(data, code, PREV_CLOSE_SIZE)
        return PrevClosePacket(
            **self._instrument(data),
            previous_close_price=_F32.unpack_from(data, 8)[0],
            previous_open_interest=_U32.unpack_from(data, 12)[0],
        )

    def _decode_market_status(self, data: bytes, code: int) -> MarketStatusPacket:
        self._require(data, code, HEADER_SIZE)
        # Header-only packets carry the status in the response code itself
        if len(data) == HEADER_SIZE:
            return MarketStatusPacket(status="open")
        status_code = _U8.unpack_from(data, HEADER_SIZE)[0]
        return MarketStatusPacket(status="open" if status_code == MARKET_OPEN_STATUS else "closed")

    def _decode_disconnection(self, data: bytes, code: int) -> DisconnectionPacket:
        self._require(data, code, DISCONNECT_SIZE)
        error_code = _U16.unpack_from(data, 8)[0]
        return DisconnectionPacket(error_code=error_code, reason=disconnection_reason(error_code))

    # depth layouts

    def _decode_depth(self, data: bytes, code: int) -> DepthPacket:
        self._require(data, code, _DEPTH_HEADER.size)
        _length, _code, segment, security_id, rows = _DEPTH_HEADER.unpack_from(data, 0)
        max_levels = rows if self.layout.depth_type == 200 else 20

        levels = []
        offset = _DEPTH_HEADER.size
        for _ in range(max_levels):
            if offset + _DEPTH_RECORD.size > len(data):
                break
            price, quantity, orders = _DEPTH_RECORD.unpack_from(data, offset)
            levels.append(DepthLevel(price=price, quantity=quantity, orders=orders))
            offset += _DEPTH_RECORD.size

        return DepthPacket(
            type="depth_bid" if code == FeedResponseCode.DEPTH_BID else "depth_ask",
            exchange_segment=segment,
            security_id=security_id,
            depth_type=self.layout.depth_type,
            levels=levels,
            received_at=int(self._clock() * 1000),
        )
