"""
Pytest configuration and shared fixtures for the feed tests.
"""
import random

import pytest
from prometheus_client import CollectorRegistry

from core.config.settings import (
    DhanSettings,
    KeepAliveSettings,
    LoggingSettings,
    MonitoringSettings,
    ReconnectionSettings,
    Settings,
)
from core.monitoring.prometheus_metrics import PrometheusMetricsCollector
from tests.mocks.fake_websocket import FakeConnector, RecordingSleep


@pytest.fixture
def credentials():
    return DhanSettings(client_id="1000000001", access_token="test-access-token")


@pytest.fixture
def test_settings(credentials):
    """Test settings configuration."""
    return Settings(
        environment="testing",
        dhan=credentials,
        reconnection=ReconnectionSettings(
            max_attempts=3,
            base_delay_ms=2000,
            max_delay_ms=60000,
            jitter_enabled=False,
            connect_timeout_seconds=1.0,
            close_timeout_seconds=0.5,
        ),
        keepalive=KeepAliveSettings(),
        logging=LoggingSettings(console_enabled=False, file_enabled=False),
        monitoring=MonitoringSettings(metrics_enabled=False),
    )


@pytest.fixture
def connector():
    return FakeConnector()


@pytest.fixture
def fast_sleep():
    return RecordingSleep()


@pytest.fixture
def metrics():
    return PrometheusMetricsCollector(registry=CollectorRegistry())


@pytest.fixture
def feed_kwargs(connector, fast_sleep, metrics):
    """Injection points shared by every feed under test."""
    return {
        "connector": connector,
        "sleep": fast_sleep,
        "metrics": metrics,
        "rng": random.Random(7),
    }


@pytest.fixture
def event_collector():
    """Collect emitted feed events by name."""
    collected_events = {}

    def attach(feed, *names):
        for name in names:
            bucket = collected_events.setdefault(name, [])
            feed.on(name, bucket.append)
        return collected_events

    return collected_events, attach
