# Structured logging with multi-channel support
import sys
import logging
import logging.handlers
import re
from pathlib import Path
from typing import Dict, Optional, Any
import structlog

from core.config.settings import Settings
from .channels import (
    LogChannel,
    get_channel_for_component,
    get_channel_config,
    create_log_directory_structure,
    get_channel_statistics
)

# Global logger manager instance
_logger_manager: Optional['EnhancedLoggerManager'] = None

# Query-string credentials embedded in feed URLs
_URL_SECRET_RE = re.compile(r"(?i)(token|accessToken|access_token)=([^&\s]+)")


class ChannelFilter(logging.Filter):
    """Route records to a handler only if they carry the matching `channel`."""

    def __init__(self, expected_channel: str):
        super().__init__()
        self.expected_channel = expected_channel

    def filter(self, record: logging.LogRecord) -> bool:
        ch = getattr(record, "channel", None)
        if ch is None and isinstance(record.msg, dict):
            ch = record.msg.get("channel")
        return ch is not None and str(ch) == self.expected_channel


def redact_url_secrets(value: str) -> str:
    """Mask token query parameters inside a URL or message."""
    return _URL_SECRET_RE.sub(lambda m: f"{m.group(1)}=[REDACTED]", value)


class EnhancedLoggerManager:
    """Logging manager with multi-channel support and configurable formats."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.channel_handlers: Dict[LogChannel, logging.Handler] = {}
        self.configured_loggers: Dict[str, structlog.BoundLogger] = {}

        self._setup_logging()

    def _setup_logging(self) -> None:
        if self.settings.logging.file_enabled:
            create_log_directory_structure(self.settings.logs_dir)

        self._setup_console_logging()

        if self.settings.logging.file_enabled:
            self._setup_file_logging()

        if self.settings.logging.multi_channel_enabled:
            self._setup_multi_channel_logging()

        self._configure_structlog()

    def _foreign_pre_chain(self) -> list:
        return [
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
        ]

    def _file_processor(self):
        if self.settings.logging.json_format:
            return structlog.processors.JSONRenderer()
        return structlog.processors.KeyValueRenderer(key_order=["event", "level", "timestamp"])

    def _setup_console_logging(self) -> None:
        """Setup console logging with configurable format."""
        root_logger = logging.getLogger()
        level = getattr(logging, self.settings.logging.level.upper())
        root_logger.setLevel(level)

        if not self.settings.logging.console_enabled:
            return

        # Reuse an existing stdout handler instead of stacking another one
        for handler in root_logger.handlers:
            if isinstance(handler, logging.StreamHandler) and getattr(handler, "stream", None) == sys.stdout:
                console_handler = handler
                break
        else:
            console_handler = logging.StreamHandler(sys.stdout)
            root_logger.addHandler(console_handler)

        console_handler.setLevel(level)
        console_processor = (
            structlog.processors.JSONRenderer()
            if self.settings.logging.console_json_format
            else structlog.dev.ConsoleRenderer()
        )
        console_handler.setFormatter(
            structlog.stdlib.ProcessorFormatter(
                processor=console_processor,
                foreign_pre_chain=self._foreign_pre_chain(),
            )
        )

    def _setup_file_logging(self) -> None:
        """Setup the main rotating log file."""
        log_file = Path(self.settings.logs_dir) / "dhan_feed.log"
        root_logger = logging.getLogger()

        for handler in root_logger.handlers:
            if (isinstance(handler, logging.handlers.RotatingFileHandler) and
                    Path(handler.baseFilename) == log_file.resolve()):
                return

        file_handler = logging.handlers.RotatingFileHandler(
            filename=log_file,
            maxBytes=self._parse_size(self.settings.logging.file_max_size),
            backupCount=self.settings.logging.file_backup_count,
            encoding="utf-8"
        )
        file_handler.setLevel(getattr(logging, self.settings.logging.level.upper()))
        file_handler.setFormatter(
            structlog.stdlib.ProcessorFormatter(
                processor=self._file_processor(),
                foreign_pre_chain=self._foreign_pre_chain(),
            )
        )
        root_logger.addHandler(file_handler)

    def _setup_multi_channel_logging(self) -> None:
        """Setup multi-channel logging with dedicated files."""
        # Channel handlers are file-backed
        if not self.settings.logging.file_enabled:
            return

        for channel in LogChannel:
            config = get_channel_config(channel)
            self.channel_handlers[channel] = self._create_channel_handler(channel, config)

        # ERROR channel captures every ERROR+ record from root
        error_handler = self.channel_handlers.get(LogChannel.ERROR)
        if error_handler:
            root_logger = logging.getLogger()
            if error_handler not in root_logger.handlers:
                root_logger.addHandler(error_handler)

        # websockets library chatter goes to the market data channel
        feed_handler = self.channel_handlers.get(LogChannel.MARKET_DATA)
        if feed_handler:
            ws_logger = logging.getLogger("websockets")
            if ws_logger.level == logging.NOTSET:
                ws_logger.setLevel(logging.WARNING)

    def _create_channel_handler(self, channel: LogChannel, config) -> logging.Handler:
        """Create a file handler for a specific channel."""
        handler = logging.handlers.RotatingFileHandler(
            filename=config.get_file_path(self.settings.logs_dir),
            maxBytes=self._parse_size(config.max_bytes),
            backupCount=config.backup_count,
            encoding="utf-8"
        )
        handler.setLevel(getattr(logging, config.level))
        handler.setFormatter(
            structlog.stdlib.ProcessorFormatter(
                processor=self._file_processor(),
                foreign_pre_chain=self._foreign_pre_chain(),
            )
        )
        if channel != LogChannel.ERROR:
            handler.addFilter(ChannelFilter(expected_channel=channel.value))
        return handler

    def _parse_size(self, size_str: str) -> int:
        """Parse size string (e.g., '100MB') to bytes."""
        size_str = size_str.upper()

        if size_str.endswith("B"):
            size_str = size_str[:-1]

        multipliers = {
            "K": 1024,
            "M": 1024 * 1024,
            "G": 1024 * 1024 * 1024,
        }

        for suffix, multiplier in multipliers.items():
            if size_str.endswith(suffix):
                return int(float(size_str[:-1]) * multiplier)

        return int(size_str)

    def _configure_structlog(self) -> None:
        """Configure structlog with the shared processor chain."""
        settings = self.settings
        keys_to_redact = {k.lower() for k in settings.logging.redact_keys}

        def add_standard_context(logger, name, event_dict):
            """Bind standard context fields once from settings."""
            event_dict.setdefault("env", settings.environment.value)
            event_dict.setdefault("service", settings.app_name)
            event_dict.setdefault("version", settings.version)
            return event_dict

        def redact_sensitive(logger, name, event_dict):
            """Redact sensitive fields and URL tokens recursively."""

            def _redact(obj):
                if isinstance(obj, dict):
                    out = {}
                    for k, v in obj.items():
                        if isinstance(k, str) and k.lower() in keys_to_redact:
                            out[k] = "[REDACTED]"
                        else:
                            out[k] = _redact(v)
                    return out
                if isinstance(obj, list):
                    return [_redact(v) for v in obj]
                if isinstance(obj, str):
                    return redact_url_secrets(obj)
                return obj

            return _redact(event_dict)

        def normalize_error(logger, name, event_dict):
            """Add normalized error fields if an error is present."""
            if "error" in event_dict and not event_dict.get("error_message"):
                event_dict["error_message"] = str(event_dict["error"])
            error = event_dict.get("error")
            if isinstance(error, BaseException):
                event_dict.setdefault("error_type", type(error).__name__)
                event_dict["error"] = str(error)
            return event_dict

        processors = [
            add_standard_context,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            normalize_error,
            structlog.processors.UnicodeDecoder(),
            redact_sensitive,
            # Defer final rendering to handlers via ProcessorFormatter
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ]

        structlog.configure(
            processors=processors,
            logger_factory=structlog.stdlib.LoggerFactory(),
            wrapper_class=structlog.stdlib.BoundLogger,
            cache_logger_on_first_use=True,
        )

    def get_logger(self, name: str, component: Optional[str] = None) -> structlog.BoundLogger:
        """Get a structured logger for a component."""
        cache_key = f"{name}:{component or ''}"
        if cache_key in self.configured_loggers:
            return self.configured_loggers[cache_key]

        logger = structlog.get_logger(name)

        if component:
            logger = logger.bind(component=component)
            channel = get_channel_for_component(component)
            self._attach_channel_handler(name, channel)

        self.configured_loggers[cache_key] = logger
        return logger

    def get_channel_logger(self, name: str, channel: LogChannel) -> structlog.BoundLogger:
        """Get a logger bound to a specific channel."""
        logger = self.get_logger(name).bind(channel=channel.value)
        self._attach_channel_handler(name, channel)
        return logger

    def _attach_channel_handler(self, name: str, channel: LogChannel) -> None:
        handler = self.channel_handlers.get(channel)
        if handler is None:
            return
        stdlib_logger = logging.getLogger(name)
        if handler not in stdlib_logger.handlers:
            stdlib_logger.addHandler(handler)

    def get_statistics(self) -> Dict[str, Any]:
        """Get logging statistics."""
        stats: Dict[str, Any] = {
            "total_loggers": len(self.configured_loggers),
            "multi_channel_enabled": self.settings.logging.multi_channel_enabled,
            "file_logging_enabled": self.settings.logging.file_enabled,
            "console_logging_enabled": self.settings.logging.console_enabled,
            "json_format": self.settings.logging.json_format,
            "console_json_format": self.settings.logging.console_json_format,
            "logs_directory": self.settings.logs_dir,
        }

        if self.settings.logging.multi_channel_enabled:
            stats.update(get_channel_statistics())

        stats["channel_handlers"] = {
            ch.value: {
                "filename": get_channel_config(ch).filename,
                "attached": ch in self.channel_handlers,
            }
            for ch in LogChannel
        }
        return stats


def configure_enhanced_logging(settings: Settings) -> None:
    """Configure the logging system once per process."""
    global _logger_manager

    if _logger_manager is not None:
        return

    _logger_manager = EnhancedLoggerManager(settings)


def reset_logging() -> None:
    """Forget the configured manager so the next call reconfigures logging."""
    global _logger_manager
    _logger_manager = None
    structlog.reset_defaults()


def get_enhanced_logger(name: str, component: Optional[str] = None) -> structlog.BoundLogger:
    """Get a structured logger instance."""
    if _logger_manager is None:
        # Unconfigured library use: stay on structlog defaults
        logger = structlog.get_logger(name)
        if component:
            logger = logger.bind(component=component)
        return logger

    return _logger_manager.get_logger(name, component)


def get_channel_logger(name: str, channel: LogChannel) -> structlog.BoundLogger:
    """Get a logger for a specific channel."""
    if _logger_manager is None:
        return get_enhanced_logger(name).bind(channel=channel.value)

    return _logger_manager.get_channel_logger(name, channel)


def get_logging_statistics() -> Dict[str, Any]:
    """Get logging system statistics."""
    if _logger_manager is None:
        return {"error": "Logger manager not initialized"}

    return _logger_manager.get_statistics()


def get_market_data_logger(name: str) -> structlog.BoundLogger:
    """Get a market data logger."""
    return get_channel_logger(name, LogChannel.MARKET_DATA)


def get_performance_logger(name: str) -> structlog.BoundLogger:
    """Get a performance logger."""
    return get_channel_logger(name, LogChannel.PERFORMANCE)


def get_monitoring_logger(name: str) -> structlog.BoundLogger:
    """Get a monitoring logger."""
    return get_channel_logger(name, LogChannel.MONITORING)


def get_error_logger(name: str) -> structlog.BoundLogger:
    """Get an error logger."""
    return get_channel_logger(name, LogChannel.ERROR)
