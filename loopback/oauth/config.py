"""
Listener and exchange configuration.

Both are plain dataclasses that can be built in code or loaded from
environment variables. A listener configuration is frozen: it is a snapshot
taken when the flow is constructed and never changes afterwards.
"""

import logging
import os
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any

from loopback.core.exceptions import ConfigError


logger = logging.getLogger(__name__)


DEFAULT_HOST = "localhost"
DEFAULT_PORT = 14565
DEFAULT_CALLBACK_PATH = "/oauth/callback"
DEFAULT_AUTH_TIMEOUT = 60.0
DEFAULT_SHUTDOWN_TIMEOUT = 5.0

DEFAULT_SUCCESS_PAGE = """
<div style="height:100px; width:100%; display:flex; flex-direction:column; justify-content:center; align-items:center; background-color:#2ecc71; color:white; font-size:22px"><div>Success!</div></div>
<p style="margin-top:20px; font-size:18px; text-align:center">You are authenticated, you can now return to the program. This will auto-close</p>
<script>window.onload=function(){setTimeout(window.close, 4000)}</script>
"""


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class ListenerConfig:
    """
    Settings for the local redirect listener.

    ``auth_timeout`` is advisory: it is what the CLI passes as the wait
    timeout. Library callers enforce their own deadline via cancellation.
    """

    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    callback_path: str = DEFAULT_CALLBACK_PATH
    auth_timeout: float = DEFAULT_AUTH_TIMEOUT
    shutdown_timeout: float = DEFAULT_SHUTDOWN_TIMEOUT
    success_page: str = DEFAULT_SUCCESS_PAGE

    def __post_init__(self):
        if not self.callback_path.startswith("/"):
            raise ConfigError(
                f"callback_path must start with '/': {self.callback_path!r}"
            )
        if not 1 <= self.port <= 65535:
            raise ConfigError(f"port out of range: {self.port}")
        if self.shutdown_timeout <= 0:
            raise ConfigError("shutdown_timeout must be positive")

    @classmethod
    def from_env(cls) -> "ListenerConfig":
        """Load configuration from environment variables."""
        try:
            return cls(
                host=os.getenv("LOOPBACK_HOST", DEFAULT_HOST),
                port=int(os.getenv("LOOPBACK_PORT", DEFAULT_PORT)),
                callback_path=os.getenv("LOOPBACK_CALLBACK_PATH", DEFAULT_CALLBACK_PATH),
                auth_timeout=float(
                    os.getenv("LOOPBACK_AUTH_TIMEOUT", DEFAULT_AUTH_TIMEOUT)
                ),
                shutdown_timeout=float(
                    os.getenv("LOOPBACK_SHUTDOWN_TIMEOUT", DEFAULT_SHUTDOWN_TIMEOUT)
                ),
            )
        except ConfigError:
            raise
        except ValueError as e:
            raise ConfigError(f"Invalid listener setting in environment: {e}") from e

    @property
    def redirect_uri(self) -> str:
        """Redirect URI; must match the one registered with the provider."""
        return f"http://{self.host}:{self.port}{self.callback_path}"


@dataclass
class ExchangeConfig:
    """
    Client registration used to build authorization URLs and redeem codes.

    ``verify_tls`` defaults to False so that self-signed certificates on
    local or development token endpoints are accepted. Set it to True (or
    OAUTH_VERIFY_TLS=true) to require certificate validation.
    """

    client_id: str | None
    client_secret: str | None
    authorize_url: str | None
    token_url: str | None
    scopes: list[str] = field(default_factory=list)
    verify_tls: bool = False
    # Extra httpx client arguments (timeout, transport, proxy, ...)
    client_kwargs: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_env(cls) -> "ExchangeConfig":
        """Load configuration from environment variables."""
        return cls(
            client_id=os.getenv("OAUTH_CLIENT_ID"),
            client_secret=os.getenv("OAUTH_CLIENT_SECRET"),
            authorize_url=os.getenv("OAUTH_AUTHORIZE_URL"),
            token_url=os.getenv("OAUTH_TOKEN_URL"),
            scopes=os.getenv("OAUTH_SCOPES", "").split(),
            verify_tls=_env_bool("OAUTH_VERIFY_TLS", False),
        )

    def validate(self) -> None:
        """Validate required settings. Call before starting a flow to fail fast."""
        missing = [
            name
            for name in ("client_id", "authorize_url", "token_url")
            if not getattr(self, name)
        ]
        if missing:
            raise ConfigError(f"Missing exchange configuration: {', '.join(missing)}")
        if not self.verify_tls:
            logger.debug("TLS certificate verification disabled for token exchange")


@lru_cache()
def get_listener_config() -> ListenerConfig:
    """Get listener configuration singleton."""
    return ListenerConfig.from_env()


@lru_cache()
def get_exchange_config() -> ExchangeConfig:
    """Get exchange configuration singleton."""
    return ExchangeConfig.from_env()
