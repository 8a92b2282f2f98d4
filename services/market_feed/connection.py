# Feed connection: one socket, its ledger and its reconnect loop

import asyncio
import random
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Set

from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import ConnectionClosed

from core.logging import (
    bind_connection_context,
    get_error_logger_safe,
    get_market_data_logger_safe,
    redact_url_secrets,
)
from core.monitoring.prometheus_metrics import PrometheusMetricsCollector
from core.schemas.events import (
    CloseEvent,
    ConnectEvent,
    ErrorEvent,
    FeedEventName,
    MaxReconnectAttemptsEvent,
)
from core.utils.exceptions import FeedConnectionError, FeedSendError

from .batcher import build_disconnect_message, encode_subscription_message
from .events import FeedEventEmitter
from .models import (
    ConnectionState,
    ConnectionStatus,
    FeedVariant,
    Instrument,
    KeepAlivePolicy,
    ReconnectionConfig,
)

Connector = Callable[[str], Awaitable[Any]]
FrameHandler = Callable[["FeedConnection", Any], None]
TransportErrorHandler = Callable[["FeedConnection", BaseException], None]
Sleep = Callable[[float], Awaitable[Any]]


def websocket_connector(max_size: Optional[int] = 2 ** 20, close_timeout: float = 5.0) -> Connector:
    """Connector backed by the websockets asyncio client.

    Library keepalive is disabled; FeedConnection runs its own ping loop.
    """
    async def _connect(url: str):
        return await ws_connect(
            url,
            ping_interval=None,
            ping_timeout=None,
            close_timeout=close_timeout,
            max_size=max_size,
            compression=None,
        )

    return _connect


def compute_backoff_delay(attempts: int, base_delay_ms: int, max_delay_ms: int,
                          jitter: bool = True, rng: Optional[random.Random] = None) -> int:
    """Exponential backoff in milliseconds: min(base * 2^attempts, max) scaled by 0.75-1.25."""
    exponential = min(base_delay_ms * (2 ** attempts), max_delay_ms)
    if not jitter:
        return int(exponential)
    source = rng or random
    return int(exponential * (0.75 + source.random() * 0.5))


class FeedConnection:
    """
    One pooled connection record.

    Owns exactly one socket at a time, the resubscription ledger, the keep-alive
    task and the pending reconnect task. State transitions:
    disconnected -> connecting -> connected, and reconnecting after an
    unintentional close.
    """

    def __init__(
        self,
        connection_id: int,
        connection_key: str,
        url: str,
        *,
        variant: FeedVariant,
        events: FeedEventEmitter,
        frame_handler: FrameHandler,
        reconnection: ReconnectionConfig,
        keepalive: KeepAlivePolicy,
        connector: Connector,
        batch_delay: float = 0.1,
        group_delay: float = 0.2,
        metrics: Optional[PrometheusMetricsCollector] = None,
        transport_error_handler: Optional[TransportErrorHandler] = None,
        sleep: Sleep = asyncio.sleep,
        rng: Optional[random.Random] = None,
    ):
        self.connection_id = connection_id
        self.connection_key = connection_key
        self.url = url
        self.variant = variant
        self.depth_type = variant.depth_type

        self.state = ConnectionState.DISCONNECTED
        self.socket: Any = None
        self.reconnect_attempts = 0
        self.instrument_count = 0
        self.ledger: Dict[int, List[List[Instrument]]] = {}
        self.is_intentional_close = False

        self._events = events
        self._frame_handler = frame_handler
        self._transport_error_handler = transport_error_handler
        self._reconnection = reconnection
        self._keepalive = keepalive
        self._connector = connector
        self._batch_delay = batch_delay
        self._group_delay = group_delay
        self._metrics = metrics
        self._sleep = sleep
        self._rng = rng

        self._generation = 0
        self._connect_future: Optional[asyncio.Future] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._ping_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._background: Set[asyncio.Task] = set()
        self._reconnect_suppressed = False
        self._max_attempts_reported = False
        self._last_pong = time.monotonic()

        self.logger = bind_connection_context(
            get_market_data_logger_safe("market_feed"), connection_id, connection_key
        ).bind(variant=variant.name)
        self.error_logger = bind_connection_context(
            get_error_logger_safe("market_feed_errors"), connection_id, connection_key
        ).bind(variant=variant.name)

    # ledger

    def record_batches(self, request_code: int, batches: Sequence[List[Instrument]]) -> None:
        """Retain batches for replay and count their instruments."""
        self.ledger.setdefault(request_code, []).extend(list(b) for b in batches)
        self.instrument_count += sum(len(b) for b in batches)
        self._publish_instrument_count()

    def remove_instruments(self, targets: Set[Instrument]) -> Dict[int, List[Instrument]]:
        """Drop targets from the ledger; returns removed instruments keyed by request code."""
        removed: Dict[int, List[Instrument]] = {}
        for code, batches in list(self.ledger.items()):
            kept_batches = []
            for batch in batches:
                kept = [i for i in batch if i not in targets]
                hit = [i for i in batch if i in targets]
                if hit:
                    removed.setdefault(code, []).extend(hit)
                if kept:
                    kept_batches.append(kept)
            if kept_batches:
                self.ledger[code] = kept_batches
            else:
                del self.ledger[code]
        self.instrument_count -= sum(len(v) for v in removed.values())
        self._publish_instrument_count()
        return removed

    def clear_ledger(self) -> None:
        self.ledger.clear()
        self.instrument_count = 0
        self._publish_instrument_count()

    def ledger_instrument_total(self) -> int:
        return sum(len(batch) for batches in self.ledger.values() for batch in batches)

    def has_capacity_for(self, count: int) -> bool:
        return self.instrument_count + count <= self.variant.per_connection_cap

    @property
    def is_connected(self) -> bool:
        return self.state == ConnectionState.CONNECTED and self.socket is not None

    def status(self) -> ConnectionStatus:
        return ConnectionStatus(
            connection_id=self.connection_id,
            connection_key=self.connection_key,
            state=self.state,
            instrument_count=self.instrument_count,
            reconnect_attempts=self.reconnect_attempts,
            depth_type=self.depth_type,
        )

    # lifecycle

    async def connect(self) -> None:
        """Open the socket; concurrent callers share one attempt."""
        if self.state == ConnectionState.RECONNECTING or self._reconnect_in_flight():
            # The pending reconnect opens the socket and replays the ledger
            return
        if self.state == ConnectionState.DISCONNECTED:
            self.is_intentional_close = False
            self._reconnect_suppressed = False
            if self.reconnect_attempts >= self._reconnection.max_attempts:
                self.reconnect_attempts = 0
                self._max_attempts_reported = False
        await self._open()

    def _reconnect_in_flight(self) -> bool:
        pending = self._reconnect_task
        return pending is not None and not pending.done() and pending is not asyncio.current_task()

    async def connect_quietly(self) -> bool:
        """connect() that reports failures only through events; returns whether the socket is open."""
        try:
            await self.connect()
        except FeedConnectionError:
            return False
        return self.is_connected

    async def _open(self) -> None:
        if self.is_connected:
            return
        if self._connect_future is not None and not self._connect_future.done():
            await asyncio.shield(self._connect_future)
            return

        loop = asyncio.get_running_loop()
        future = loop.create_future()
        self._connect_future = future
        self.state = ConnectionState.CONNECTING
        self.logger.info("Connecting feed socket", url=redact_url_secrets(self.url))

        try:
            socket = await asyncio.wait_for(
                self._connector(self.url), timeout=self._reconnection.connect_timeout
            )
        except asyncio.CancelledError:
            self.state = ConnectionState.DISCONNECTED
            self._fail_future(future, FeedConnectionError(
                "Connection attempt cancelled", connection_id=self.connection_id
            ))
            raise
        except Exception as e:
            self.state = ConnectionState.DISCONNECTED
            error = FeedConnectionError(
                f"Failed to open feed socket: {e}",
                connection_id=self.connection_id,
                url=redact_url_secrets(self.url),
                retry_count=self.reconnect_attempts,
                max_retries=self._reconnection.max_attempts,
            )
            self._fail_future(future, error)
            self.error_logger.error("Feed connection failed", error=e)
            self._emit_error(error)
            if self._transport_error_handler is not None:
                self._transport_error_handler(self, e)
            if not self.is_intentional_close and not self._reconnect_suppressed:
                self._schedule_reconnect()
            raise error from e

        if self.is_intentional_close:
            # close() ran while the handshake was in flight
            self._spawn(self._close_socket(socket, 1000, "Client closed"))
            self.state = ConnectionState.DISCONNECTED
            self._fail_future(future, FeedConnectionError(
                "Connection closed while connecting", connection_id=self.connection_id
            ))
            return

        self._attach(socket)
        future.set_result(None)

    @staticmethod
    def _fail_future(future: asyncio.Future, error: Exception) -> None:
        if not future.done():
            future.set_exception(error)
            # Mark retrieved; waiters re-raise it through shield()
            future.exception()

    def _attach(self, socket: Any) -> None:
        self.socket = socket
        self._generation += 1
        generation = self._generation
        self.state = ConnectionState.CONNECTED
        self.reconnect_attempts = 0
        self._max_attempts_reported = False
        self._last_pong = time.monotonic()

        self._reader_task = asyncio.create_task(
            self._read_loop(socket, generation), name=f"feed-reader-{self.connection_key}"
        )
        self._ping_task = asyncio.create_task(
            self._ping_loop(socket, generation), name=f"feed-ping-{self.connection_key}"
        )

        if self._metrics:
            self._metrics.set_connection_status(self.variant.name, self.connection_id, True)
        self.logger.info("Feed socket connected")
        self._events.emit(FeedEventName.CONNECT, ConnectEvent(connection_id=self.connection_id))

    async def _read_loop(self, socket: Any, generation: int) -> None:
        code: Optional[int] = None
        reason = ""
        try:
            async for frame in socket:
                if generation != self._generation:
                    return
                try:
                    self._frame_handler(self, frame)
                except Exception as e:
                    self.error_logger.error("Frame handling failed", error=e, exc_info=True)
                    self._emit_error(e)
        except ConnectionClosed as e:
            if e.rcvd is not None:
                code, reason = e.rcvd.code, e.rcvd.reason
        except (OSError, RuntimeError) as e:
            self.error_logger.error("Feed socket read failed", error=e)
            self._emit_error(FeedConnectionError(
                f"Feed socket read failed: {e}", connection_id=self.connection_id
            ))

        if generation != self._generation:
            return
        if code is None:
            code = getattr(socket, "close_code", None)
            reason = getattr(socket, "close_reason", None) or reason
        self._handle_close(code, reason or "")

    def _handle_close(self, code: Optional[int], reason: str) -> None:
        self._generation += 1
        self._cancel_task(self._ping_task)
        self._ping_task = None
        self._reader_task = None
        self.socket = None
        self.state = ConnectionState.DISCONNECTED

        if self._metrics:
            self._metrics.set_connection_status(self.variant.name, self.connection_id, False)
        self.logger.warning(
            "Feed socket closed", code=code, reason=reason, intentional=self.is_intentional_close
        )
        self._events.emit(
            FeedEventName.CLOSE,
            CloseEvent(connection_id=self.connection_id, code=code, reason=reason),
        )

        if not self.is_intentional_close and not self._reconnect_suppressed:
            self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        pending = self._reconnect_task
        if pending is not None and not pending.done() and pending is not asyncio.current_task():
            return

        max_attempts = self._reconnection.max_attempts
        if self.reconnect_attempts >= max_attempts:
            self.state = ConnectionState.DISCONNECTED
            self._reconnect_task = None
            if not self._max_attempts_reported:
                self._max_attempts_reported = True
                self.error_logger.error(
                    "Maximum reconnection attempts reached", attempts=self.reconnect_attempts,
                    max_attempts=max_attempts,
                )
                if self._metrics:
                    self._metrics.record_max_reconnect_reached(self.variant.name)
                self._events.emit(
                    FeedEventName.MAX_RECONNECT_ATTEMPTS_REACHED,
                    MaxReconnectAttemptsEvent(
                        connection_id=self.connection_id, attempts=self.reconnect_attempts
                    ),
                )
            return

        self.reconnect_attempts += 1
        self.state = ConnectionState.RECONNECTING
        delay_ms = compute_backoff_delay(
            self.reconnect_attempts,
            self._reconnection.base_delay_ms,
            self._reconnection.max_delay_ms,
            jitter=self._reconnection.jitter_enabled,
            rng=self._rng,
        )
        if self._metrics:
            self._metrics.record_reconnect_attempt(self.variant.name, delay_ms / 1000)
        self.logger.info(
            f"Reconnection attempt {self.reconnect_attempts}/{max_attempts} in {delay_ms / 1000:.1f} seconds",
            delay_ms=delay_ms,
        )
        self._reconnect_task = asyncio.create_task(
            self._reconnect_after(delay_ms / 1000), name=f"feed-reconnect-{self.connection_key}"
        )

    async def _reconnect_after(self, delay: float) -> None:
        await self._sleep(delay)
        if self.is_intentional_close or self._reconnect_suppressed:
            return
        await self._detach_socket()
        try:
            await self._open()
        except FeedConnectionError:
            # Already reported; _open scheduled the next attempt
            return
        self.logger.info("Reconnection successful, replaying subscriptions",
                         groups=len(self.ledger), instruments=self.instrument_count)
        await self.replay_ledger()

    def penalize(self, extra_attempts: int) -> None:
        """Inflate the attempt counter so the next backoff is longer."""
        self.reconnect_attempts += extra_attempts
        self.logger.warning("Backing off harder after rate limiting",
                            extra_attempts=extra_attempts, attempts=self.reconnect_attempts)

    def halt(self, reason: str) -> None:
        """Tear the socket down without reconnecting (critical server errors)."""
        self.error_logger.error("Closing connection after critical error", reason=reason)
        self._reconnect_suppressed = True
        self._cancel_task(self._reconnect_task)
        self._reconnect_task = None
        self.state = ConnectionState.DISCONNECTED
        if self._metrics:
            self._metrics.set_connection_status(self.variant.name, self.connection_id, False)
        self._spawn(self._detach_socket(1008, reason))

    async def close(self, send_disconnect: bool = True) -> None:
        """Intentional close: no reconnect, timers cleared, socket closed."""
        self.is_intentional_close = True
        self._cancel_task(self._reconnect_task)
        self._reconnect_task = None

        socket = self.socket
        if send_disconnect and socket is not None and self.state == ConnectionState.CONNECTED:
            try:
                await socket.send(build_disconnect_message())
            except Exception as e:
                self.logger.debug("Disconnect request not delivered", error=e)

        await self._detach_socket(1000, "Client closed")
        self.state = ConnectionState.DISCONNECTED
        if self._metrics:
            self._metrics.set_connection_status(self.variant.name, self.connection_id, False)
        self.logger.info("Feed connection closed")

    async def _detach_socket(self, code: int = 1000, reason: str = "") -> None:
        """Forget the current socket; its reader exits without close handling."""
        self._generation += 1
        socket, self.socket = self.socket, None
        for task in (self._ping_task, self._reader_task):
            self._cancel_task(task)
        self._ping_task = None
        self._reader_task = None
        if socket is not None:
            await self._close_socket(socket, code, reason)

    async def _close_socket(self, socket: Any, code: int, reason: str) -> None:
        try:
            await asyncio.wait_for(socket.close(code, reason), timeout=self._reconnection.close_timeout)
        except (asyncio.TimeoutError, ConnectionClosed, OSError) as e:
            self.logger.debug("Stale socket did not close cleanly", error=e)

    # keep-alive

    async def _ping_loop(self, socket: Any, generation: int) -> None:
        interval = self._keepalive.ping_interval
        pong_timeout = self._keepalive.pong_timeout
        while generation == self._generation:
            await asyncio.sleep(interval)
            if generation != self._generation:
                return
            if pong_timeout is not None and time.monotonic() - self._last_pong > pong_timeout:
                self.logger.warning("No pong received, forcing reconnect", pong_timeout=pong_timeout)
                # Reader sees the close and schedules the reconnect
                await self._close_socket(socket, 4000, "Pong timeout")
                return
            try:
                waiter = await socket.ping()
            except (ConnectionClosed, OSError, RuntimeError) as e:
                self.logger.debug("Ping failed", error=e)
                continue
            asyncio.ensure_future(waiter).add_done_callback(self._on_pong)

    def _on_pong(self, waiter: asyncio.Future) -> None:
        if not waiter.cancelled() and waiter.exception() is None:
            self._last_pong = time.monotonic()

    # sending

    async def send_batches(self, request_code: int, batches: Sequence[Sequence[Instrument]]) -> int:
        """Send each batch as its own frame with the inter-batch delay. Returns frames sent."""
        sent = 0
        for index, batch in enumerate(batches):
            if index:
                await self._sleep(self._batch_delay)
            if await self._send_frame(request_code, batch):
                sent += 1
        return sent

    async def replay_ledger(self) -> None:
        groups = [(code, [list(b) for b in batches]) for code, batches in self.ledger.items()]
        for index, (code, batches) in enumerate(groups):
            if index:
                await self._sleep(self._group_delay)
            await self.send_batches(code, batches)

    async def _send_frame(self, request_code: int, batch: Sequence[Instrument]) -> bool:
        socket = self.socket
        if socket is None or self.state != ConnectionState.CONNECTED:
            self._report_send_failure(FeedSendError(
                "Connection is not open", connection_id=self.connection_id, request_code=request_code
            ))
            return False
        try:
            await socket.send(encode_subscription_message(request_code, batch))
        except (ConnectionClosed, OSError, RuntimeError) as e:
            self._report_send_failure(FeedSendError(
                f"Failed to send subscription frame: {e}",
                connection_id=self.connection_id, request_code=request_code,
            ))
            return False
        if self._metrics:
            self._metrics.record_subscription_frame(self.variant.name, request_code)
        self.logger.debug("Subscription frame sent", request_code=request_code, instruments=len(batch))
        return True

    def _report_send_failure(self, error: FeedSendError) -> None:
        if self._metrics:
            self._metrics.record_send_failure(self.variant.name)
        self.error_logger.error("Subscription frame not sent", error=error, request_code=error.request_code)
        self._emit_error(error)

    # helpers

    def _emit_error(self, error: BaseException) -> None:
        self._events.emit(FeedEventName.ERROR, ErrorEvent(connection_id=self.connection_id, error=error))

    def _publish_instrument_count(self) -> None:
        if self._metrics:
            self._metrics.set_subscribed_instruments(self.variant.name, self.connection_id, self.instrument_count)

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    @staticmethod
    def _cancel_task(task: Optional[asyncio.Task]) -> None:
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
