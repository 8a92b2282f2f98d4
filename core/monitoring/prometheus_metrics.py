"""
Prometheus metrics for the feed client
"""

from prometheus_client import Counter, Gauge, Histogram, CollectorRegistry, generate_latest
from typing import Any, Optional, Union

from core.config.settings import Settings


class PrometheusMetricsCollector:
    """Feed metrics exposed through a private registry"""

    def __init__(self, registry: Optional[CollectorRegistry] = None, settings: Optional[Settings] = None):
        self.registry = registry or CollectorRegistry()
        buckets = settings.monitoring.prometheus_buckets if settings else None

        # Throughput
        self.packets_decoded = Counter(
            'dhan_feed_packets_decoded_total',
            'Total packets decoded from the feed',
            ['variant', 'packet_type'],
            registry=self.registry
        )
        self.unknown_packets = Counter(
            'dhan_feed_unknown_packets_total',
            'Frames with an unrecognised response code',
            ['variant'],
            registry=self.registry
        )
        self.decode_errors = Counter(
            'dhan_feed_decode_errors_total',
            'Frames rejected as malformed',
            ['variant'],
            registry=self.registry
        )

        # Subscriptions
        self.subscription_frames = Counter(
            'dhan_feed_subscription_frames_total',
            'Subscription frames written to sockets',
            ['variant', 'request_code'],
            registry=self.registry
        )
        self.send_failures = Counter(
            'dhan_feed_send_failures_total',
            'Subscription frames that could not be sent',
            ['variant'],
            registry=self.registry
        )
        self.subscribed_instruments = Gauge(
            'dhan_feed_subscribed_instruments',
            'Instruments recorded per connection',
            ['variant', 'connection_id'],
            registry=self.registry
        )

        # Connection health
        self.connection_status = Gauge(
            'dhan_feed_connection_status',
            'Connection status (1=connected, 0=not connected)',
            ['variant', 'connection_id'],
            registry=self.registry
        )
        self.reconnect_attempts = Counter(
            'dhan_feed_reconnect_attempts_total',
            'Scheduled reconnect attempts',
            ['variant'],
            registry=self.registry
        )
        self.reconnect_delay = Histogram(
            'dhan_feed_reconnect_delay_seconds',
            'Backoff delay before reconnect attempts',
            ['variant'],
            buckets=(buckets.reconnect_delay_seconds if buckets else [
                1.0, 2.0, 4.0, 8.0, 16.0, 32.0, 60.0, 90.0
            ]),
            registry=self.registry
        )
        self.max_reconnect_reached = Counter(
            'dhan_feed_max_reconnect_reached_total',
            'Connections that exhausted their reconnect attempts',
            ['variant'],
            registry=self.registry
        )

        # Errors
        self.api_errors = Counter(
            'dhan_feed_api_errors_total',
            'Server reported API errors',
            ['variant', 'error_type', 'code'],
            registry=self.registry
        )

    def record_packet(self, variant: str, packet_type: str):
        self.packets_decoded.labels(variant=variant, packet_type=packet_type).inc()

    def record_unknown_packet(self, variant: str):
        self.unknown_packets.labels(variant=variant).inc()

    def record_decode_error(self, variant: str):
        self.decode_errors.labels(variant=variant).inc()

    def record_subscription_frame(self, variant: str, request_code: int):
        self.subscription_frames.labels(variant=variant, request_code=str(request_code)).inc()

    def record_send_failure(self, variant: str):
        self.send_failures.labels(variant=variant).inc()

    def set_subscribed_instruments(self, variant: str, connection_id: int, count: int):
        self.subscribed_instruments.labels(variant=variant, connection_id=str(connection_id)).set(count)

    def set_connection_status(self, variant: str, connection_id: int, connected: bool):
        """Set connection status"""
        self.connection_status.labels(variant=variant, connection_id=str(connection_id)).set(1 if connected else 0)

    def record_reconnect_attempt(self, variant: str, delay_seconds: float):
        self.reconnect_attempts.labels(variant=variant).inc()
        self.reconnect_delay.labels(variant=variant).observe(delay_seconds)

    def record_max_reconnect_reached(self, variant: str):
        self.max_reconnect_reached.labels(variant=variant).inc()

    def record_api_error(self, variant: str, error_type: str, code: Union[int, str]):
        self.api_errors.labels(variant=variant, error_type=error_type, code=str(code)).inc()

    def remove_connection(self, variant: str, connection_id: int):
        """Drop per-connection series after the pool is emptied"""
        for gauge in (self.connection_status, self.subscribed_instruments):
            try:
                gauge.remove(variant, str(connection_id))
            except KeyError:
                continue

    def export(self) -> bytes:
        """Render the registry in the Prometheus text format"""
        return generate_latest(self.registry)

    def sample(self, name: str, labels: Optional[dict] = None) -> Any:
        return self.registry.get_sample_value(name, labels or {})
