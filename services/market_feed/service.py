# services/market_feed/service.py

from typing import List, Dict, Any, Optional
import asyncio
import random
from datetime import datetime, timezone

from core.config.settings import Settings, DhanSettings
from core.logging import get_market_data_logger_safe, get_error_logger_safe
from core.monitoring.prometheus_metrics import PrometheusMetricsCollector
from core.schemas.events import FeedEventName, MarketTick

from .connection import Connector
from .feed import MarketDepthFeed, MultiConnectionLiveFeed, PooledLiveFeed
from .formatter import TickFormatter
from .live_feed import LiveFeed
from .models import ConnectionState


class DhanFeed:
    """
    Entry point for the Dhan market data feeds.

    Holds the credentials and builds each feed flavour on first use: the
    legacy single-socket ``live_feed``, the pooled ``multi_connection_live_feed``
    and one ``market_depth_feed`` per depth type. All feeds share settings,
    the metrics collector and the socket connector.
    """

    def __init__(
        self,
        credentials: Optional[DhanSettings] = None,
        settings: Optional[Settings] = None,
        *,
        connector: Optional[Connector] = None,
        prometheus_metrics: Optional[PrometheusMetricsCollector] = None,
        sleep=asyncio.sleep,
        rng: Optional[random.Random] = None,
    ):
        self.settings = settings or Settings()
        self.credentials = credentials or self.settings.dhan
        self.formatter = TickFormatter()
        self.prom_metrics = prometheus_metrics
        if self.prom_metrics is None and self.settings.monitoring.metrics_enabled:
            self.prom_metrics = PrometheusMetricsCollector(settings=self.settings)

        self._feed_kwargs = {
            "connector": connector,
            "metrics": self.prom_metrics,
            "sleep": sleep,
            "rng": rng,
        }
        self._live_feed: Optional[LiveFeed] = None
        self._multi_connection_feed: Optional[MultiConnectionLiveFeed] = None
        self._depth_feeds: Dict[int, MarketDepthFeed] = {}

        self.ticks_received = 0
        self._start_time = datetime.now(timezone.utc)

        self.logger = get_market_data_logger_safe("market_feed")
        self.error_logger = get_error_logger_safe("market_feed_errors")

    def set_prometheus(self, prom: PrometheusMetricsCollector):
        """Attach a collector; only feeds built afterwards pick it up."""
        self.prom_metrics = prom
        self._feed_kwargs["metrics"] = prom

    @property
    def live_feed(self) -> LiveFeed:
        if self._live_feed is None:
            self._live_feed = self._track(LiveFeed(self.credentials, self.settings, **self._feed_kwargs))
        return self._live_feed

    @property
    def multi_connection_live_feed(self) -> MultiConnectionLiveFeed:
        if self._multi_connection_feed is None:
            self._multi_connection_feed = self._track(
                MultiConnectionLiveFeed(self.credentials, self.settings, **self._feed_kwargs)
            )
        return self._multi_connection_feed

    def market_depth_feed(self, depth_type: int = 20) -> MarketDepthFeed:
        if depth_type not in self._depth_feeds:
            self._depth_feeds[depth_type] = self._track(
                MarketDepthFeed(self.credentials, self.settings, depth_type=depth_type, **self._feed_kwargs)
            )
        return self._depth_feeds[depth_type]

    def _track(self, feed: PooledLiveFeed) -> PooledLiveFeed:
        feed.on(FeedEventName.DATA, self._count_tick)
        self.logger.info("Feed created", variant=feed.variant.name, instance_id=feed.instance_id)
        return feed

    def _count_tick(self, event) -> None:
        self.ticks_received += 1

    def to_market_tick(self, packet) -> Optional[MarketTick]:
        """Normalise a decoded packet; None for packets without an instrument."""
        formatted = self.formatter.format_packet(packet)
        return MarketTick(**formatted) if formatted is not None else None

    @property
    def feeds(self) -> List[PooledLiveFeed]:
        built = [self._live_feed, self._multi_connection_feed, *self._depth_feeds.values()]
        return [feed for feed in built if feed is not None]

    async def close(self):
        """Close every feed built so far."""
        for feed in self.feeds:
            try:
                await feed.close()
            except Exception as e:
                self.error_logger.error(f"Failed to close {feed.variant.name} feed: {e}", exc_info=True)
        self.logger.info("All feeds closed", feeds=len(self.feeds))

    async def get_metrics(self) -> Dict[str, Any]:
        """Connection and throughput summary across all feeds."""
        feeds: Dict[str, Any] = {}
        for feed in self.feeds:
            statuses = feed.get_connection_status()
            feeds[feed.variant.name] = {
                "connections": len(statuses),
                "connected": sum(1 for s in statuses if s.state == ConnectionState.CONNECTED),
                "reconnecting": sum(1 for s in statuses if s.state == ConnectionState.RECONNECTING),
                "instruments": sum(s.instrument_count for s in statuses),
                "capacity": feed.variant.pool_capacity,
                "reconnect_attempts": max((s.reconnect_attempts for s in statuses), default=0),
                "status": [s.model_dump(mode="json") for s in statuses],
            }

        return {
            "ticks_received": self.ticks_received,
            "processing_rate": self._calculate_processing_rate(),
            "feeds": feeds,
        }

    def _calculate_processing_rate(self) -> float:
        """Ticks per second since this instance was created."""
        if self.ticks_received == 0:
            return 0.0
        elapsed = (datetime.now(timezone.utc) - self._start_time).total_seconds()
        return self.ticks_received / elapsed if elapsed > 0 else 0.0

    async def health_check(self) -> Dict[str, Any]:
        """Health summary for monitoring systems."""
        metrics = await self.get_metrics()
        issues = self._identify_health_issues(metrics)

        return {
            "status": "healthy" if not issues else "unhealthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "metrics": metrics,
            "issues": issues,
        }

    def _identify_health_issues(self, metrics: Dict[str, Any]) -> List[str]:
        """Identify specific health issues."""
        issues = []
        unhealthy = set(self.settings.monitoring.unhealthy_states)
        max_attempts = self.settings.reconnection.max_attempts

        for name, summary in metrics["feeds"].items():
            for status in summary["status"]:
                cid = status["connection_id"]
                if status["state"] in unhealthy:
                    issues.append(f"{name} connection {cid} is {status['state']}")
                if status["reconnect_attempts"] >= max_attempts:
                    issues.append(f"{name} connection {cid} exhausted reconnect attempts")
            if summary["capacity"] and summary["instruments"] > 0.9 * summary["capacity"]:
                issues.append(f"{name} feed near instrument capacity")

        return issues
