from core.config.settings import MonitoringSettings, Settings
from core.monitoring.prometheus_metrics import PrometheusMetricsCollector
from prometheus_client import CollectorRegistry, generate_latest


def test_prometheus_collector_accepts_bucket_overrides():
    reg = CollectorRegistry()
    monitoring = MonitoringSettings(
        prometheus_buckets=MonitoringSettings.PrometheusBuckets(reconnect_delay_seconds=[0.5, 5.0])
    )
    c = PrometheusMetricsCollector(registry=reg, settings=Settings(monitoring=monitoring, _env_file=None))

    c.record_reconnect_attempt("multi_connection", 4.0)
    c.record_packet("multi_connection", "ticker")
    c.record_subscription_frame("multi_connection", 15)

    out = generate_latest(reg).decode()
    assert c.sample("dhan_feed_reconnect_delay_seconds_bucket", {"variant": "multi_connection", "le": "5.0"}) == 1
    assert c.sample("dhan_feed_reconnect_delay_seconds_bucket", {"variant": "multi_connection", "le": "0.5"}) == 0
    assert "dhan_feed_packets_decoded_total" in out
    assert c.sample("dhan_feed_subscription_frames_total",
                    {"variant": "multi_connection", "request_code": "15"}) == 1


def test_connection_series_removed():
    c = PrometheusMetricsCollector(registry=CollectorRegistry())
    c.set_connection_status("depth_20", 0, True)
    c.set_subscribed_instruments("depth_20", 0, 50)
    assert c.sample("dhan_feed_connection_status", {"variant": "depth_20", "connection_id": "0"}) == 1

    c.remove_connection("depth_20", 0)
    c.remove_connection("depth_20", 0)

    assert c.sample("dhan_feed_connection_status", {"variant": "depth_20", "connection_id": "0"}) is None
    assert b"dhan_feed_subscribed_instruments" in c.export()


def test_private_registries_do_not_collide():
    a = PrometheusMetricsCollector(registry=CollectorRegistry())
    b = PrometheusMetricsCollector(registry=CollectorRegistry())
    a.record_api_error("live", "DataApi", 807)
    assert a.sample("dhan_feed_api_errors_total", {"variant": "live", "error_type": "DataApi", "code": "807"}) == 1
    assert b.sample("dhan_feed_api_errors_total", {"variant": "live", "error_type": "DataApi", "code": "807"}) is None
