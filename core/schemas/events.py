# Decoded feed packets and the event payloads emitted by feed instances
# Every consumer of the feed receives one of these models

from pydantic import BaseModel, Field, ConfigDict
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional, List, Literal, Union, Annotated, Any


class FeedBaseModel(BaseModel):
    """Base model for all feed schemas with proper JSON encoding (Pydantic v2)."""

    model_config = ConfigDict(
        frozen=True,
        json_encoders={
            Decimal: (lambda v: float(v) if v is not None else None),
            datetime: (lambda v: v.isoformat() if v is not None else None),
        }
    )


class PacketType(str, Enum):
    TICKER = "ticker"
    QUOTE = "quote"
    FULL = "full"
    OI_DATA = "oi_data"
    PREV_CLOSE = "prev_close"
    MARKET_STATUS = "market_status"
    DISCONNECTION = "disconnection"
    DEPTH_BID = "depth_bid"
    DEPTH_ASK = "depth_ask"


class FeedEventName(str, Enum):
    """Names accepted by the per-instance event registry"""
    CONNECT = "connect"
    MESSAGE = "message"
    DATA = "data"
    ERROR = "error"
    CLOSE = "close"
    DISCONNECTION = "disconnection"
    MAX_RECONNECT_ATTEMPTS_REACHED = "maxReconnectAttemptsReached"


class DepthLevel(FeedBaseModel):
    """Single level of market depth"""
    price: float
    quantity: int
    orders: int


class MarketDepth(FeedBaseModel):
    """5-level market depth carried by full packets"""
    buy: List[DepthLevel] = Field(default_factory=list, description="Bid levels, best first")
    sell: List[DepthLevel] = Field(default_factory=list, description="Ask levels, best first")


class InstrumentPacket(FeedBaseModel):
    exchange_segment: int
    security_id: int


class TickerPacket(InstrumentPacket):
    type: Literal["ticker"] = "ticker"
    last_traded_price: float
    last_traded_time: int = Field(..., description="Exchange time, epoch seconds")


class QuotePacket(InstrumentPacket):
    type: Literal["quote"] = "quote"
    last_traded_price: float
    last_traded_quantity: int
    last_traded_time: int
    average_trade_price: float
    volume_traded: int
    total_sell_quantity: int
    total_buy_quantity: int
    open_price: float
    close_price: float
    high_price: float
    low_price: float


class FullPacket(InstrumentPacket):
    type: Literal["full"] = "full"
    last_traded_price: float
    last_traded_quantity: int
    last_traded_time: int
    average_trade_price: float
    volume_traded: int
    total_sell_quantity: int
    total_buy_quantity: int
    open_interest: int
    open_interest_day_high: int
    open_interest_day_low: int
    open_price: float
    close_price: float
    high_price: float
    low_price: float
    market_depth: MarketDepth


class OiDataPacket(InstrumentPacket):
    type: Literal["oi_data"] = "oi_data"
    open_interest: int


class PrevClosePacket(InstrumentPacket):
    type: Literal["prev_close"] = "prev_close"
    previous_close_price: float
    previous_open_interest: int


class MarketStatusPacket(FeedBaseModel):
    type: Literal["market_status"] = "market_status"
    status: Literal["open", "closed"]


class DisconnectionPacket(FeedBaseModel):
    type: Literal["disconnection"] = "disconnection"
    error_code: int
    reason: str


class DepthPacket(InstrumentPacket):
    """One side of a 20 or 200 level order book"""
    type: Literal["depth_bid", "depth_ask"]
    depth_type: int
    levels: List[DepthLevel] = Field(default_factory=list)
    received_at: int = Field(..., description="Local receive time, epoch milliseconds")


FeedPacket = Annotated[
    Union[
        TickerPacket,
        QuotePacket,
        FullPacket,
        OiDataPacket,
        PrevClosePacket,
        MarketStatusPacket,
        DisconnectionPacket,
        DepthPacket,
    ],
    Field(discriminator="type"),
]


# Emitted event payloads

class FeedEvent(FeedBaseModel):
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)


class ConnectEvent(FeedEvent):
    connection_id: int


class MessageEvent(FeedEvent):
    connection_id: int
    data: FeedPacket


class DataEvent(FeedEvent):
    data: FeedPacket


class ErrorEvent(FeedEvent):
    connection_id: int = Field(..., description="-1 for errors not tied to a connection")
    error: Any


class CloseEvent(FeedEvent):
    connection_id: int
    code: Optional[int] = None
    reason: str = ""


class DisconnectionEvent(FeedEvent):
    connection_id: int
    error_code: int
    reason: str


class MaxReconnectAttemptsEvent(FeedEvent):
    connection_id: int
    attempts: int


class MarketTick(FeedBaseModel):
    """Normalised tick for downstream consumers"""
    exchange_segment: str
    security_id: int
    packet_type: PacketType
    last_price: Optional[Decimal] = None
    last_traded_time: Optional[datetime] = None
    last_traded_quantity: Optional[int] = None
    average_traded_price: Optional[Decimal] = None
    volume_traded: Optional[int] = None
    total_buy_quantity: Optional[int] = None
    total_sell_quantity: Optional[int] = None
    ohlc: Optional[dict] = Field(None, description="open/high/low/close as Decimal")
    oi: Optional[int] = None
    oi_day_high: Optional[int] = None
    oi_day_low: Optional[int] = None
    previous_close: Optional[Decimal] = None
    depth: Optional[dict] = Field(None, description="buy/sell levels with Decimal prices")
    received_at: datetime
