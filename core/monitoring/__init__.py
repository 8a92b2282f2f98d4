"""
Monitoring components for the feed client
"""

from .prometheus_metrics import PrometheusMetricsCollector

__all__ = [
    "PrometheusMetricsCollector",
]
