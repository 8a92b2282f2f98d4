# Public feed classes: pooled live feed and market depth feed
import asyncio
import json
import random
import time
from typing import Any, Callable, Iterable, List, Optional, Union

from core.config.settings import DhanSettings, Settings
from core.logging import get_error_logger_safe, get_market_data_logger_safe
from core.monitoring.prometheus_metrics import PrometheusMetricsCollector
from core.schemas.events import (
    DataEvent,
    DisconnectionEvent,
    DisconnectionPacket,
    ErrorEvent,
    FeedEventName,
    MessageEvent,
)
from core.utils.exceptions import (
    CapacityExceededError,
    FeedValidationError,
    PacketDecodeError,
)
from core.utils.ids import connection_key, generate_instance_id

from .auth import FeedUrlBuilder
from .batcher import split_into_batches
from .connection import Connector, FeedConnection, Sleep, websocket_connector
from .decoder import PacketDecoder, get_layout
from .error_codes import is_data_api_code, json_error_message, parse_json_error
from .error_handler import FeedErrorHandler
from .events import FeedEventEmitter, Handler
from .models import (
    LEGACY_REQUEST_CODE_ALIASES,
    ConnectionStatus,
    FeedVariant,
    Instrument,
    KeepAlivePolicy,
    ReconnectionConfig,
    depth_variant,
    multi_connection_variant,
)
from .pool import ConnectionPool


class PooledLiveFeed:
    """
    Feed facade over a bounded pool of sockets.

    Subscriptions are placed first-fit across up to ``max_connections``
    connections, split into protocol-sized frames and recorded per connection
    so they can be replayed after a reconnect. Decoded packets are emitted as
    ``message`` (tagged with the connection id) and ``data`` events.
    """

    def __init__(
        self,
        credentials: DhanSettings,
        variant: FeedVariant,
        settings: Settings,
        keepalive: KeepAlivePolicy,
        *,
        connector: Optional[Connector] = None,
        metrics: Optional[PrometheusMetricsCollector] = None,
        sleep: Sleep = asyncio.sleep,
        rng: Optional[random.Random] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings
        self.variant = variant
        self.keepalive = keepalive
        self.metrics = metrics
        self.instance_id = generate_instance_id(settings.market_feed.connection_id_prefix)
        self.urls = FeedUrlBuilder(credentials, settings)
        self.events = FeedEventEmitter(name=f"{variant.name}:{self.instance_id}")
        self.decoder = PacketDecoder(get_layout(variant.layout), clock=clock)
        self.reconnection = ReconnectionConfig.from_settings(settings)
        self.error_handler = FeedErrorHandler(variant.name, self.events, metrics)

        self._connector = connector or websocket_connector(
            settings.market_feed.max_message_size_bytes, self.reconnection.close_timeout
        )
        self._sleep = sleep
        self._rng = rng
        self.pool = ConnectionPool(variant, self._create_connection)

        self.logger = get_market_data_logger_safe("market_feed").bind(
            variant=variant.name, instance_id=self.instance_id
        )
        self.error_logger = get_error_logger_safe("market_feed_errors").bind(
            variant=variant.name, instance_id=self.instance_id
        )

    # events

    def on(self, event: Union[FeedEventName, str], handler: Handler) -> Callable[[], None]:
        return self.events.on(event, handler)

    def off(self, event: Union[FeedEventName, str], handler: Handler) -> None:
        self.events.off(event, handler)

    # connections

    def _create_connection(self, connection_id: int) -> FeedConnection:
        key = connection_key(self.instance_id, connection_id)
        mf = self.settings.market_feed
        return FeedConnection(
            connection_id,
            key,
            self.urls.url_for(self.variant.layout, key),
            variant=self.variant,
            events=self.events,
            frame_handler=self._handle_frame,
            reconnection=self.reconnection,
            keepalive=self.keepalive,
            connector=self._connector,
            batch_delay=mf.batch_send_delay_ms / 1000,
            group_delay=mf.resubscribe_group_delay_ms / 1000,
            metrics=self.metrics,
            transport_error_handler=self.error_handler.handle_transport_error,
            sleep=self._sleep,
            rng=self._rng,
        )

    async def connect(self) -> None:
        """Open every pooled socket, creating the first connection if the pool is empty."""
        if not len(self.pool):
            self.pool.find_or_create(0)
        for connection in self.pool:
            await connection.connect()

    async def subscribe(self, instruments: Iterable[Any], request_code: Optional[int] = None) -> None:
        """Subscribe instruments under request_code (the variant default when omitted).

        Raises FeedValidationError or CapacityExceededError before anything is
        recorded or sent. Transport failures are reported as error events.
        """
        code = self._subscribe_code(request_code)
        parsed = self._parse_instruments(instruments)
        if len(parsed) > self.pool.free_capacity:
            raise self._rejected(CapacityExceededError(
                f"Cannot subscribe {len(parsed)} instruments: only {self.pool.free_capacity} of "
                f"{self.variant.pool_capacity} slots are free",
                requested=len(parsed),
                capacity=self.pool.free_capacity,
            ))
        try:
            placements = self.pool.allocate(parsed, code)
        except CapacityExceededError as e:
            raise self._rejected(e) from None

        for placement in placements:
            connection = placement.connection
            if not connection.is_connected:
                await connection.connect_quietly()
            if not connection.is_connected:
                # Batches stay in the ledger and go out with the reconnect replay
                self.logger.info(
                    "Connection not open, subscription deferred to reconnect",
                    connection_id=connection.connection_id,
                    state=connection.state.value,
                    instruments=len(placement.instruments),
                )
                continue
            await connection.send_batches(code, placement.batches)

    async def unsubscribe(self, instruments: Iterable[Any], request_code: Optional[int] = None) -> None:
        """Remove instruments from every connection that holds them and tell the server."""
        explicit = self._unsubscribe_code(request_code)
        parsed = self._parse_instruments(instruments)
        targets = set(parsed)
        found = 0

        for connection in self.pool:
            removed = connection.remove_instruments(targets)
            if not removed:
                continue
            found += sum(len(v) for v in removed.values())
            if not connection.is_connected:
                continue
            for subscribe_code, items in removed.items():
                code = explicit if explicit is not None else self.variant.unsubscribe_code_for(subscribe_code)
                batches = split_into_batches(list(dict.fromkeys(items)), self.variant.per_message_cap)
                await connection.send_batches(code, batches)

        self.logger.info("Unsubscribed instruments", requested=len(parsed), removed=found)

    def get_connection_status(self) -> List[ConnectionStatus]:
        return self.pool.status()

    async def close(self) -> None:
        """Close every connection intentionally and empty the pool."""
        connection_ids = [c.connection_id for c in self.pool]
        await self.pool.close_all()
        if self.metrics:
            for connection_id in connection_ids:
                self.metrics.remove_connection(self.variant.name, connection_id)
        self.logger.info("Feed closed", connections=len(connection_ids))

    # validation

    def _rejected(self, error: FeedValidationError) -> FeedValidationError:
        self.error_logger.error("Subscription request rejected", error=str(error), field=error.field)
        self.events.emit(FeedEventName.ERROR, ErrorEvent(connection_id=-1, error=error))
        return error

    def _parse_instruments(self, instruments: Iterable[Any]) -> List[Instrument]:
        items = None
        if instruments is not None and not isinstance(instruments, (str, bytes, dict)):
            try:
                items = list(instruments)
            except TypeError:
                items = None
        if items is None:
            raise self._rejected(FeedValidationError(
                "Instruments must be a list of (ExchangeSegment, SecurityId) pairs",
                field="instruments", value=instruments, expected_type="list",
            ))
        if not items:
            raise self._rejected(FeedValidationError(
                "Instruments must be a non-empty list", field="instruments", value=items,
            ))
        parsed: List[Instrument] = []
        for index, item in enumerate(items):
            try:
                parsed.append(Instrument.parse(item))
            except (ValueError, TypeError) as e:
                raise self._rejected(FeedValidationError(
                    f"Invalid instrument at index {index}: {e}",
                    field=f"instruments[{index}]", value=item,
                    expected_type="(ExchangeSegment, SecurityId)",
                ))
        return parsed

    def _normalise_code(self, request_code: Any) -> int:
        if isinstance(request_code, bool) or not isinstance(request_code, int):
            raise self._rejected(FeedValidationError(
                f"Request code must be an integer, got {request_code!r}",
                field="request_code", value=request_code, expected_type="int",
            ))
        return int(request_code)

    def _subscribe_code(self, request_code: Optional[int]) -> int:
        if request_code is None:
            return int(self.variant.default_subscribe_code)
        code = self._normalise_code(request_code)
        if code in LEGACY_REQUEST_CODE_ALIASES:
            canonical = int(LEGACY_REQUEST_CODE_ALIASES[code])
            self.logger.warning("Legacy request code alias normalised", request_code=code, canonical=canonical)
            code = canonical
        if code not in self.variant.subscribe_codes:
            raise self._rejected(FeedValidationError(
                f"Request code {code} is not a subscribe code for the {self.variant.name} feed "
                f"(allowed: {sorted(self.variant.subscribe_codes)})",
                field="request_code", value=code,
            ))
        return code

    def _unsubscribe_code(self, request_code: Optional[int]) -> Optional[int]:
        if request_code is None:
            return None
        code = self._normalise_code(request_code)
        if code not in self.variant.unsubscribe_codes:
            raise self._rejected(FeedValidationError(
                f"Request code {code} is not an unsubscribe code for the {self.variant.name} feed "
                f"(allowed: {sorted(self.variant.unsubscribe_codes)})",
                field="request_code", value=code,
            ))
        return code

    # inbound frames

    def _handle_frame(self, connection: FeedConnection, frame: Union[bytes, str]) -> None:
        if isinstance(frame, str):
            self._handle_text(connection, frame)
            return

        data = bytes(frame)
        try:
            packet = self.decoder.decode(data)
        except PacketDecodeError as e:
            if self.metrics:
                self.metrics.record_decode_error(self.variant.name)
            self.error_logger.warning("Malformed feed frame", connection_id=connection.connection_id,
                                      response_code=e.response_code, length=e.length)
            self.events.emit(FeedEventName.ERROR, ErrorEvent(connection_id=connection.connection_id, error=e))
            return

        if packet is None:
            if self._handle_json_bytes(connection, data):
                return
            if self.metrics:
                self.metrics.record_unknown_packet(self.variant.name)
            self.logger.warning("Unknown response code, frame dropped",
                                connection_id=connection.connection_id,
                                response_code=self.decoder.response_code(data), length=len(data))
            return

        if self.metrics:
            self.metrics.record_packet(self.variant.name, packet.type)

        if isinstance(packet, DisconnectionPacket):
            self.logger.warning("Server disconnection notice", connection_id=connection.connection_id,
                                error_code=packet.error_code, reason=packet.reason)
            self.events.emit(FeedEventName.DISCONNECTION, DisconnectionEvent(
                connection_id=connection.connection_id, error_code=packet.error_code, reason=packet.reason,
            ))
            if is_data_api_code(packet.error_code):
                self.error_handler.handle_api_code(connection, packet.error_code, {"reason": packet.reason})

        self.events.emit(FeedEventName.MESSAGE, MessageEvent(connection_id=connection.connection_id, data=packet))
        self.events.emit(FeedEventName.DATA, DataEvent(data=packet))

    def _handle_json_bytes(self, connection: FeedConnection, data: bytes) -> bool:
        try:
            text = data.decode("utf-8")
        except UnicodeDecodeError:
            return False
        return self._handle_text(connection, text, quiet=True)

    def _handle_text(self, connection: FeedConnection, text: str, quiet: bool = False) -> bool:
        """Route a JSON error frame to the error handler. Returns True when one was handled."""
        try:
            payload = json.loads(text)
        except ValueError:
            if not quiet:
                self.logger.warning("Unparseable text frame dropped", connection_id=connection.connection_id,
                                    length=len(text))
            return False
        code = parse_json_error(payload)
        if code is None:
            if not quiet:
                self.logger.debug("Text frame ignored", connection_id=connection.connection_id)
            return False
        self.error_handler.handle_api_code(connection, code, {"message": json_error_message(payload)})
        return True


class MultiConnectionLiveFeed(PooledLiveFeed):
    """Ticker/quote/full feed over up to five sockets of 5000 instruments each."""

    def __init__(self, credentials: DhanSettings, settings: Optional[Settings] = None, **kwargs):
        settings = settings or Settings()
        ka = settings.keepalive
        super().__init__(
            credentials,
            multi_connection_variant(settings),
            settings,
            KeepAlivePolicy(ping_interval=ka.pooled_ping_interval_seconds,
                            pong_timeout=ka.pooled_pong_timeout_seconds),
            **kwargs,
        )


class MarketDepthFeed(PooledLiveFeed):
    """20-level or 200-level depth feed; request code 23 only."""

    def __init__(self, credentials: DhanSettings, settings: Optional[Settings] = None,
                 depth_type: int = 20, **kwargs):
        settings = settings or Settings()
        if depth_type not in (20, 200):
            raise FeedValidationError(
                f"Depth type must be 20 or 200, got {depth_type}", field="depth_type", value=depth_type
            )
        ka = settings.keepalive
        super().__init__(
            credentials,
            depth_variant(settings, depth_type),
            settings,
            KeepAlivePolicy(ping_interval=ka.pooled_ping_interval_seconds,
                            pong_timeout=ka.pooled_pong_timeout_seconds),
            **kwargs,
        )
        self.depth_type = depth_type

