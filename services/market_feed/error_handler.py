# Server and transport error routing for feed connections
from typing import Any, Dict, Optional, Union

from core.logging import get_error_logger_safe
from core.monitoring.prometheus_metrics import PrometheusMetricsCollector
from core.schemas.events import ErrorEvent, FeedEventName
from core.utils.exceptions import FeedApiError, create_error_context

from .connection import FeedConnection
from .error_codes import build_api_error, classify_transport_error, rate_limit_penalty
from .events import FeedEventEmitter


class FeedErrorHandler:
    """
    Applies the API error policy to one feed instance.

    Critical errors (expired or invalid token, failed auth, data APIs not
    subscribed) close the affected connection without reconnecting. Rate-limit
    errors inflate the connection's attempt counter so the next backoff is
    longer. Everything else is reported and left to the normal reconnect path.
    """

    def __init__(self, variant_name: str, events: FeedEventEmitter,
                 metrics: Optional[PrometheusMetricsCollector] = None):
        self.variant_name = variant_name
        self.events = events
        self.metrics = metrics
        self.error_logger = get_error_logger_safe("market_feed_errors").bind(variant=variant_name)

    def handle_api_code(self, connection: Optional[FeedConnection], code: Union[int, str],
                        details: Optional[Dict[str, Any]] = None) -> FeedApiError:
        """Build the error for a Data API / Trading API code and apply the policy."""
        return self.handle(connection, build_api_error(code, details))

    def handle(self, connection: Optional[FeedConnection], error: FeedApiError) -> FeedApiError:
        connection_id = connection.connection_id if connection is not None else -1
        context = create_error_context(error, "feed_api_error", {"connection_id": connection_id})
        self.error_logger.error(str(error), **context)

        if self.metrics:
            self.metrics.record_api_error(self.variant_name, error.error_type, error.code)

        if connection is not None:
            if error.critical:
                connection.halt(str(error))
            else:
                penalty = rate_limit_penalty(error.code)
                if penalty:
                    connection.penalize(penalty)

        self.events.emit(FeedEventName.ERROR, ErrorEvent(connection_id=connection_id, error=error))
        return error

    def handle_transport_error(self, connection: FeedConnection, error: BaseException) -> Optional[FeedApiError]:
        """Classify a failed handshake or socket error; unrecognised errors are left alone."""
        api_error = classify_transport_error(error)
        if api_error is None:
            return None
        return self.handle(connection, api_error)
