# Complete settings for the Dhan live feed client
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import BaseModel, Field, field_validator
from enum import Enum
from typing import Optional
from pathlib import Path


class Environment(str, Enum):
    DEVELOPMENT = "development"
    PRODUCTION = "production"
    TESTING = "testing"


class DhanEnvironment(str, Enum):
    """Upstream venue environment used to pick feed hosts"""
    PROD = "prod"
    SANDBOX = "sandbox"


class DhanSettings(BaseModel):
    """Credentials supplied by the caller; token acquisition happens elsewhere"""
    client_id: str = ""
    access_token: str = ""
    env: DhanEnvironment = DhanEnvironment.PROD

    @field_validator("client_id", "access_token")
    @classmethod
    def strip_credentials(cls, v: str) -> str:
        return v.strip()


class FeedEndpointSettings(BaseModel):
    """Feed hosts per environment"""
    live_feed_url: str = "wss://api-feed.dhan.co"
    depth_20_url: str = "wss://depth-api-feed.dhan.co/twentydepth"
    depth_200_url: str = "wss://full-depth-api.dhan.co/twohundreddepth"
    # Sandbox shares the production hosts unless overridden
    sandbox_live_feed_url: Optional[str] = None
    sandbox_depth_20_url: Optional[str] = None
    sandbox_depth_200_url: Optional[str] = None
    api_version: int = 2
    auth_type: int = 2


class MarketFeedSettings(BaseModel):
    """Runtime settings for the feed connection pool"""
    max_connections: int = Field(default=5, ge=1)
    max_instruments_per_connection: int = Field(default=5000, ge=1)
    max_instruments_per_message: int = Field(default=100, ge=1)
    depth_20_instruments_per_connection: int = Field(default=50, ge=1)
    depth_20_instruments_per_message: int = Field(default=50, ge=1)
    depth_200_instruments_per_connection: int = Field(default=1, ge=1)
    depth_200_instruments_per_message: int = Field(default=1, ge=1)
    # Delay between subscription frames of one call
    batch_send_delay_ms: int = Field(default=100, ge=0)
    # Extra delay between request-code groups during resubscription
    resubscribe_group_delay_ms: int = Field(default=200, ge=0)
    connection_id_prefix: str = "mlf"
    max_message_size_bytes: int = 2 ** 20


class ReconnectionSettings(BaseModel):
    """Feed reconnection configuration"""
    max_attempts: int = Field(default=10, ge=0)
    base_delay_ms: int = Field(default=2000, ge=0)
    max_delay_ms: int = Field(default=60000, ge=0)
    jitter_enabled: bool = True
    connect_timeout_seconds: float = Field(default=10.0, gt=0)
    close_timeout_seconds: float = Field(default=5.0, gt=0)

    @field_validator("max_delay_ms")
    @classmethod
    def validate_max_delay(cls, v, info):
        base = info.data.get("base_delay_ms")
        if base is not None and v < base:
            raise ValueError("max_delay_ms must be greater than or equal to base_delay_ms")
        return v


class KeepAliveSettings(BaseModel):
    """Ping cadence per feed family"""
    pooled_ping_interval_seconds: float = Field(default=30.0, gt=0)
    # None disables pong enforcement for pooled connections
    pooled_pong_timeout_seconds: Optional[float] = None
    legacy_ping_interval_seconds: float = Field(default=10.0, gt=0)
    legacy_pong_timeout_seconds: Optional[float] = 40.0


class LoggingSettings(BaseModel):
    # Core logging settings
    level: str = "INFO"
    json_format: bool = True

    # Console logging
    console_enabled: bool = True
    console_json_format: bool = False  # Plain text for console by default

    # File logging
    file_enabled: bool = False
    logs_dir: str = "logs"
    file_max_size: str = "100MB"
    file_backup_count: int = 5

    # Multi-channel logging (file backed)
    multi_channel_enabled: bool = False

    # Redaction
    redact_keys: list[str] = [
        "authorization", "access_token", "token", "client_secret", "password", "secret",
    ]

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unsupported log level: {v}")
        return level


class MonitoringSettings(BaseModel):
    # Metrics collection
    metrics_enabled: bool = True
    # Connections stuck in these states count against health
    unhealthy_states: list[str] = ["disconnected"]

    class PrometheusBuckets(BaseModel):
        reconnect_delay_seconds: list[float] = [
            1.0, 2.0, 4.0, 8.0, 16.0, 32.0, 60.0, 90.0
        ]

    prometheus_buckets: PrometheusBuckets = PrometheusBuckets()


class Settings(BaseSettings):
    """Main feed settings, loaded from environment variables"""
    model_config = SettingsConfigDict(
        env_file=".env",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore"
    )

    app_name: str = "Dhan Feed"
    version: str = "0.3.0"
    environment: Environment = Environment.DEVELOPMENT

    dhan: DhanSettings = DhanSettings()
    feed_endpoints: FeedEndpointSettings = FeedEndpointSettings()
    market_feed: MarketFeedSettings = MarketFeedSettings()
    reconnection: ReconnectionSettings = ReconnectionSettings()
    keepalive: KeepAliveSettings = KeepAliveSettings()
    logging: LoggingSettings = LoggingSettings()
    monitoring: MonitoringSettings = MonitoringSettings()

    @property
    def logs_dir(self) -> str:
        """Get path to logs directory"""
        return self.logging.logs_dir

    @property
    def base_dir(self) -> str:
        """Get base application directory dynamically"""
        # Go up 2 levels from core/config/settings.py to reach project root
        return str(Path(__file__).resolve().parents[2])


# No global settings instance - pass Settings explicitly
