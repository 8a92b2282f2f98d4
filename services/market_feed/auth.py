# Feed endpoint construction from caller supplied credentials

from typing import Optional
from urllib.parse import urlencode

from core.config.settings import DhanEnvironment, DhanSettings, Settings
from core.logging import get_market_data_logger_safe, redact_url_secrets
from core.utils.exceptions import ConfigurationError


class FeedUrlBuilder:
    """
    Builds WebSocket URLs for the live and depth feeds.
    Credentials come from DhanSettings; token acquisition is the caller's concern.
    """

    def __init__(self, credentials: DhanSettings, settings: Settings):
        self._credentials = credentials
        self._endpoints = settings.feed_endpoints
        self.logger = get_market_data_logger_safe("market_feed_auth")
        self._validate()

    def _validate(self) -> None:
        if not self._credentials.access_token:
            raise ConfigurationError(
                "Dhan access token is missing", config_field="dhan.access_token"
            )
        if not self._credentials.client_id:
            raise ConfigurationError(
                "Dhan client id is missing", config_field="dhan.client_id"
            )

    def _host(self, kind: str) -> str:
        prod = getattr(self._endpoints, kind)
        if self._credentials.env == DhanEnvironment.SANDBOX:
            return getattr(self._endpoints, f"sandbox_{kind}") or prod
        return prod

    def _auth_params(self) -> dict:
        return {
            "token": self._credentials.access_token,
            "clientId": self._credentials.client_id,
            "authType": self._endpoints.auth_type,
        }

    def live_feed_url(self, connection_key: Optional[str] = None) -> str:
        params = {"version": self._endpoints.api_version, **self._auth_params()}
        if connection_key:
            params["connId"] = connection_key
        return f"{self._host('live_feed_url')}?{urlencode(params)}"

    def depth_feed_url(self, depth_type: int) -> str:
        if depth_type == 20:
            host = self._host("depth_20_url")
        elif depth_type == 200:
            host = self._host("depth_200_url")
        else:
            raise ConfigurationError(
                f"Unsupported depth type {depth_type}", config_field="depth_type", config_value=depth_type
            )
        return f"{host}?{urlencode(self._auth_params())}"

    def url_for(self, layout: str, connection_key: Optional[str] = None) -> str:
        if layout == "depth20":
            url = self.depth_feed_url(20)
        elif layout == "depth200":
            url = self.depth_feed_url(200)
        else:
            # Only pooled connections need server-side disambiguation
            url = self.live_feed_url(connection_key if layout == "pooled" else None)
        self.logger.debug("Resolved feed endpoint", layout=layout, url=redact_url_secrets(url), env=self._credentials.env.value)
        return url
