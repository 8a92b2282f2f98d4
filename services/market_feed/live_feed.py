# Legacy single-socket live feed
from typing import Optional

from core.config.settings import DhanSettings, Settings

from .connection import FeedConnection
from .feed import PooledLiveFeed
from .models import KeepAlivePolicy, legacy_variant


class LiveFeed(PooledLiveFeed):
    """
    Single-connection feed using the legacy wire layout.

    Always one socket (connection id 0) without a ``connId`` parameter. Pings
    every 10 seconds and forces a reconnect when no pong has been seen for 40
    seconds. ``subscribe`` opens the socket when needed.
    """

    def __init__(self, credentials: DhanSettings, settings: Optional[Settings] = None, **kwargs):
        settings = settings or Settings()
        ka = settings.keepalive
        super().__init__(
            credentials,
            legacy_variant(settings),
            settings,
            KeepAlivePolicy(ping_interval=ka.legacy_ping_interval_seconds,
                            pong_timeout=ka.legacy_pong_timeout_seconds),
            **kwargs,
        )

    @property
    def connection(self) -> Optional[FeedConnection]:
        return self.pool.get(0)

    @property
    def is_connected(self) -> bool:
        connection = self.connection
        return connection is not None and connection.is_connected

    async def disconnect(self) -> None:
        """Alias of close() kept for single-socket callers."""
        await self.close()
