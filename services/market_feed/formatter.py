# Tick formatting for decoded feed packets
from datetime import datetime, timezone
from typing import Dict, Any, Optional, List
from decimal import Decimal

from core.schemas.events import DepthLevel, DepthPacket, FeedBaseModel, MarketDepth

from .models import ExchangeSegment

# Packets that describe a single instrument and can become a MarketTick
_TICK_PACKET_TYPES = {"ticker", "quote", "full", "oi_data", "prev_close", "depth_bid", "depth_ask"}


class TickFormatter:
    """Formats decoded feed packets into the standardized MarketTick shape"""

    def format_packet(self, packet: FeedBaseModel, received_at: Optional[datetime] = None) -> Optional[Dict[str, Any]]:
        """
        Format one decoded packet into MarketTick fields.
        Market status and disconnection packets carry no instrument and return None.
        """
        packet_type = getattr(packet, "type", None)
        if packet_type not in _TICK_PACKET_TYPES:
            return None

        raw = packet.model_dump()
        formatted_tick = {
            "exchange_segment": self._segment_name(raw["exchange_segment"]),
            "security_id": int(raw["security_id"]),
            "packet_type": packet_type,
            "received_at": self._received_at(packet, received_at),
        }

        if "last_traded_price" in raw:
            formatted_tick["last_price"] = self._price(raw["last_traded_price"])
        if "last_traded_time" in raw:
            formatted_tick["last_traded_time"] = self._format_datetime(raw["last_traded_time"])
        if "last_traded_quantity" in raw:
            formatted_tick["last_traded_quantity"] = int(raw["last_traded_quantity"])
        if "average_trade_price" in raw:
            formatted_tick["average_traded_price"] = self._price(raw["average_trade_price"])
        if "volume_traded" in raw:
            formatted_tick["volume_traded"] = int(raw["volume_traded"])
        if "total_buy_quantity" in raw:
            formatted_tick["total_buy_quantity"] = int(raw["total_buy_quantity"])
        if "total_sell_quantity" in raw:
            formatted_tick["total_sell_quantity"] = int(raw["total_sell_quantity"])

        ohlc_data = self._format_ohlc(raw)
        if ohlc_data:
            formatted_tick["ohlc"] = ohlc_data

        # Open interest (derivatives)
        if "open_interest" in raw:
            formatted_tick["oi"] = int(raw["open_interest"])
        if "open_interest_day_high" in raw:
            formatted_tick["oi_day_high"] = int(raw["open_interest_day_high"])
        if "open_interest_day_low" in raw:
            formatted_tick["oi_day_low"] = int(raw["open_interest_day_low"])
        if "previous_close_price" in raw:
            formatted_tick["previous_close"] = self._price(raw["previous_close_price"])
        if "previous_open_interest" in raw:
            formatted_tick["oi"] = int(raw["previous_open_interest"])

        if isinstance(packet, DepthPacket):
            side = "buy" if packet.type == "depth_bid" else "sell"
            depth_data = self._format_market_depth(MarketDepth(**{side: packet.levels}))
        else:
            depth_data = self._format_market_depth(getattr(packet, "market_depth", None))
        if depth_data:
            formatted_tick["depth"] = depth_data

        return formatted_tick

    def _segment_name(self, segment: int) -> str:
        try:
            return ExchangeSegment(segment).name
        except ValueError:
            return str(segment)

    def _price(self, value: float) -> Decimal:
        # Feed prices are binary floats; two decimals covers every tick size
        return Decimal(str(round(float(value), 2)))

    def _received_at(self, packet: FeedBaseModel, received_at: Optional[datetime]) -> datetime:
        if received_at is not None:
            return self._normalize_to_utc(received_at)
        if isinstance(packet, DepthPacket):
            return datetime.fromtimestamp(packet.received_at / 1000, tz=timezone.utc)
        return datetime.now(timezone.utc)

    def _normalize_to_utc(self, dt_value: Any) -> datetime:
        """Normalize epoch seconds, ISO strings or datetimes to UTC."""
        if dt_value is None:
            return datetime.now(timezone.utc)

        if isinstance(dt_value, datetime):
            # If naive, assume UTC
            if dt_value.tzinfo is None:
                return dt_value.replace(tzinfo=timezone.utc)
            return dt_value.astimezone(timezone.utc)

        if isinstance(dt_value, (int, float)) and not isinstance(dt_value, bool):
            return datetime.fromtimestamp(dt_value, tz=timezone.utc)

        if isinstance(dt_value, str):
            try:
                return self._normalize_to_utc(datetime.fromisoformat(dt_value))
            except ValueError:
                try:
                    parsed = datetime.strptime(dt_value, "%Y-%m-%d %H:%M:%S")
                    return parsed.replace(tzinfo=timezone.utc)
                except ValueError:
                    return datetime.now(timezone.utc)

        return datetime.now(timezone.utc)

    def _format_datetime(self, dt_value: Any) -> Optional[datetime]:
        # Zero means the instrument has not traded yet
        if dt_value is None or dt_value == 0:
            return None
        return self._normalize_to_utc(dt_value)

    def _format_ohlc(self, raw: Dict[str, Any]) -> Optional[Dict[str, Decimal]]:
        """Format OHLC data into structured format"""
        try:
            return {
                "open": self._price(raw["open_price"]),
                "high": self._price(raw["high_price"]),
                "low": self._price(raw["low_price"]),
                "close": self._price(raw["close_price"]),
            }
        except KeyError:
            return None

    def _format_market_depth(self, depth: Optional[MarketDepth]) -> Optional[Dict[str, List[Dict[str, Any]]]]:
        """Format bid/ask levels, dropping empty ones (zero quantity and zero orders)."""
        if depth is None:
            return None

        formatted_depth = {
            "buy": self._format_levels(depth.buy),
            "sell": self._format_levels(depth.sell),
        }
        if not formatted_depth["buy"] and not formatted_depth["sell"]:
            return None
        return formatted_depth

    def _format_levels(self, levels: List[DepthLevel]) -> List[Dict[str, Any]]:
        formatted = []
        for level in levels:
            if level.quantity == 0 and level.orders == 0:
                continue
            formatted.append({
                "price": self._price(level.price),
                "quantity": int(level.quantity),
                "orders": int(level.orders),
            })
        return formatted
