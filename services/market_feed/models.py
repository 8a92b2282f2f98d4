# Market Feed Models
from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Any, FrozenSet, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

from core.config.settings import Settings


class ExchangeSegment(IntEnum):
    NSE_EQ = 1
    NSE_FNO = 2
    NSE_CURRENCY = 3
    BSE_EQ = 4
    BSE_FNO = 5
    BSE_CURRENCY = 6
    MCX_COMM = 7


class FeedRequestCode(IntEnum):
    CONNECT = 11
    DISCONNECT = 12
    SUBSCRIBE_TICKER = 15
    UNSUBSCRIBE_TICKER = 16
    SUBSCRIBE_QUOTE = 17
    UNSUBSCRIBE_QUOTE = 18
    SUBSCRIBE_FULL = 21
    UNSUBSCRIBE_FULL = 22
    SUBSCRIBE_MARKET_DEPTH = 23
    UNSUBSCRIBE_MARKET_DEPTH = 24


# Older call sites send 4/8 for quote/full; the feed answers with the canonical codes
LEGACY_REQUEST_CODE_ALIASES = {
    4: FeedRequestCode.SUBSCRIBE_QUOTE,
    8: FeedRequestCode.SUBSCRIBE_FULL,
}

# Depth endpoints also accept 25 for unsubscribe
DEPTH_UNSUBSCRIBE_ALIAS = 25

UNSUBSCRIBE_CODE_FOR = {
    FeedRequestCode.SUBSCRIBE_TICKER: FeedRequestCode.UNSUBSCRIBE_TICKER,
    FeedRequestCode.SUBSCRIBE_QUOTE: FeedRequestCode.UNSUBSCRIBE_QUOTE,
    FeedRequestCode.SUBSCRIBE_FULL: FeedRequestCode.UNSUBSCRIBE_FULL,
    FeedRequestCode.SUBSCRIBE_MARKET_DEPTH: FeedRequestCode.UNSUBSCRIBE_MARKET_DEPTH,
}


class FeedResponseCode(IntEnum):
    TICKER = 2
    QUOTE = 4
    OI_DATA = 5
    PREV_CLOSE = 6
    MARKET_STATUS = 7
    FULL = 8
    DEPTH_BID = 41
    DISCONNECT = 50
    DEPTH_ASK = 51


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


class Instrument(BaseModel):
    """(exchange segment, security id) identity of a subscribable security"""
    model_config = ConfigDict(frozen=True)

    exchange_segment: ExchangeSegment
    security_id: str

    @field_validator("exchange_segment", mode="before")
    @classmethod
    def parse_segment(cls, v: Any) -> ExchangeSegment:
        if isinstance(v, str) and not v.isdigit():
            try:
                return ExchangeSegment[v.strip().upper()]
            except KeyError:
                raise ValueError(f"Unknown exchange segment: {v}")
        return ExchangeSegment(int(v))

    @field_validator("security_id", mode="before")
    @classmethod
    def parse_security_id(cls, v: Any) -> str:
        if isinstance(v, bool) or not isinstance(v, (str, int)):
            raise ValueError("security_id must be a string or integer")
        text = str(v).strip()
        if not text:
            raise ValueError("security_id must not be empty")
        return text

    @classmethod
    def parse(cls, value: Any) -> "Instrument":
        """Accept an Instrument, a (segment, security_id) pair or 'SEGMENT:ID'."""
        if isinstance(value, Instrument):
            return value
        if isinstance(value, str) and ":" in value:
            segment, security_id = value.split(":", 1)
            return cls(exchange_segment=segment, security_id=security_id)
        if isinstance(value, (tuple, list)) and len(value) == 2:
            return cls(exchange_segment=value[0], security_id=value[1])
        raise ValueError(f"Expected (ExchangeSegment, SecurityId), got {value!r}")

    def to_wire(self) -> dict:
        return {"ExchangeSegment": self.exchange_segment.name, "SecurityId": self.security_id}

    def __str__(self) -> str:
        return f"{self.exchange_segment.name}:{self.security_id}"


class ReconnectionConfig(BaseModel):
    """Configuration for reconnection behavior (milliseconds)"""
    max_attempts: int = 10
    base_delay_ms: int = 2000
    max_delay_ms: int = 60000
    jitter_enabled: bool = True
    connect_timeout: float = 10.0
    close_timeout: float = 5.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "ReconnectionConfig":
        rc = settings.reconnection
        return cls(
            max_attempts=rc.max_attempts,
            base_delay_ms=rc.base_delay_ms,
            max_delay_ms=rc.max_delay_ms,
            jitter_enabled=rc.jitter_enabled,
            connect_timeout=rc.connect_timeout_seconds,
            close_timeout=rc.close_timeout_seconds,
        )


class KeepAlivePolicy(BaseModel):
    """Ping cadence; a pong timeout of None means pings are fire-and-forget"""
    ping_interval: float = 30.0
    pong_timeout: Optional[float] = None


class ConnectionStatus(BaseModel):
    """Read-only snapshot of one pooled connection"""
    connection_id: int
    connection_key: str
    state: ConnectionState
    instrument_count: int
    reconnect_attempts: int = 0
    depth_type: Optional[int] = Field(None, description="20 or 200 for depth feeds")


@dataclass(frozen=True)
class FeedVariant:
    """Caps, codes and wire layout of one feed flavour"""
    name: str
    layout: str
    per_connection_cap: int
    per_message_cap: int
    max_connections: int
    subscribe_codes: FrozenSet[int]
    unsubscribe_codes: FrozenSet[int]
    default_subscribe_code: int
    depth_type: Optional[int] = None

    @property
    def pool_capacity(self) -> int:
        return self.per_connection_cap * self.max_connections

    def unsubscribe_code_for(self, subscribe_code: int) -> int:
        return int(UNSUBSCRIBE_CODE_FOR[FeedRequestCode(subscribe_code)])


_STANDARD_SUBSCRIBE_CODES: Tuple[int, ...] = (
    FeedRequestCode.SUBSCRIBE_TICKER,
    FeedRequestCode.SUBSCRIBE_QUOTE,
    FeedRequestCode.SUBSCRIBE_FULL,
    FeedRequestCode.SUBSCRIBE_MARKET_DEPTH,
)
_STANDARD_UNSUBSCRIBE_CODES: Tuple[int, ...] = (
    FeedRequestCode.UNSUBSCRIBE_TICKER,
    FeedRequestCode.UNSUBSCRIBE_QUOTE,
    FeedRequestCode.UNSUBSCRIBE_FULL,
    FeedRequestCode.UNSUBSCRIBE_MARKET_DEPTH,
)


def multi_connection_variant(settings: Settings) -> FeedVariant:
    mf = settings.market_feed
    return FeedVariant(
        name="multi_connection",
        layout="pooled",
        per_connection_cap=mf.max_instruments_per_connection,
        per_message_cap=mf.max_instruments_per_message,
        max_connections=mf.max_connections,
        subscribe_codes=frozenset(_STANDARD_SUBSCRIBE_CODES),
        unsubscribe_codes=frozenset(_STANDARD_UNSUBSCRIBE_CODES),
        default_subscribe_code=FeedRequestCode.SUBSCRIBE_TICKER,
    )


def legacy_variant(settings: Settings) -> FeedVariant:
    mf = settings.market_feed
    return FeedVariant(
        name="live",
        layout="legacy",
        per_connection_cap=mf.max_instruments_per_connection,
        per_message_cap=mf.max_instruments_per_message,
        max_connections=1,
        subscribe_codes=frozenset(_STANDARD_SUBSCRIBE_CODES),
        unsubscribe_codes=frozenset(_STANDARD_UNSUBSCRIBE_CODES),
        default_subscribe_code=FeedRequestCode.SUBSCRIBE_TICKER,
    )


def depth_variant(settings: Settings, depth_type: int = 20) -> FeedVariant:
    mf = settings.market_feed
    if depth_type == 20:
        per_connection = mf.depth_20_instruments_per_connection
        per_message = mf.depth_20_instruments_per_message
    elif depth_type == 200:
        per_connection = mf.depth_200_instruments_per_connection
        per_message = mf.depth_200_instruments_per_message
    else:
        raise ValueError(f"Unsupported depth type: {depth_type}")
    return FeedVariant(
        name=f"depth_{depth_type}",
        layout=f"depth{depth_type}",
        per_connection_cap=per_connection,
        per_message_cap=per_message,
        max_connections=mf.max_connections,
        subscribe_codes=frozenset({FeedRequestCode.SUBSCRIBE_MARKET_DEPTH}),
        unsubscribe_codes=frozenset({FeedRequestCode.UNSUBSCRIBE_MARKET_DEPTH, DEPTH_UNSUBSCRIBE_ALIAS}),
        default_subscribe_code=FeedRequestCode.SUBSCRIBE_MARKET_DEPTH,
        depth_type=depth_type,
    )
