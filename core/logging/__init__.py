# Structured logging with multi-channel support
import structlog
from typing import Optional, Dict, Any

from core.config.settings import Settings

from .enhanced_logging import (
    configure_enhanced_logging,
    reset_logging,
    get_enhanced_logger,
    get_channel_logger,
    get_logging_statistics,
    get_market_data_logger,
    get_performance_logger,
    get_monitoring_logger,
    get_error_logger,
    redact_url_secrets,
)
from .channels import LogChannel


def configure_logging(settings: Settings) -> None:
    """Configure logging system; repeated calls are no-ops."""
    configure_enhanced_logging(settings)


def get_logger(name: str, component: Optional[str] = None) -> structlog.BoundLogger:
    """Get a structured logger instance."""
    return get_enhanced_logger(name, component)


def get_statistics() -> Dict[str, Any]:
    """Get logging system statistics."""
    return get_logging_statistics()


def bind_connection_context(logger: structlog.BoundLogger, connection_id: int,
                            connection_key: Optional[str] = None) -> structlog.BoundLogger:
    """Bind feed connection context consistently to a logger."""
    ctx: Dict[str, Any] = {"connection_id": connection_id}
    if connection_key:
        ctx["connection_key"] = connection_key
    return logger.bind(**ctx)


def get_market_data_logger_safe(name: str) -> structlog.BoundLogger:
    """Get a market data logger safely."""
    return get_market_data_logger(name)


def get_performance_logger_safe(name: str) -> structlog.BoundLogger:
    """Get a performance logger safely."""
    return get_performance_logger(name)


def get_monitoring_logger_safe(name: str) -> structlog.BoundLogger:
    """Get a monitoring logger safely."""
    return get_monitoring_logger(name)


def get_error_logger_safe(name: str) -> structlog.BoundLogger:
    """Get an error logger safely."""
    return get_error_logger(name)


__all__ = [
    "LogChannel",
    "configure_logging",
    "reset_logging",
    "get_logger",
    "get_statistics",
    "get_channel_logger",
    "bind_connection_context",
    "redact_url_secrets",
    "get_market_data_logger_safe",
    "get_performance_logger_safe",
    "get_monitoring_logger_safe",
    "get_error_logger_safe",
]
