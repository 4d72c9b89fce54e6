"""
OAuth 2.0 exchanger implementations.
"""

import logging
from typing import Any

import httpx
from authlib.integrations.base_client import OAuthError
from authlib.integrations.httpx_client import AsyncOAuth2Client
from authlib.oauth2.rfc6749.parameters import prepare_grant_uri

from loopback.core.exceptions import ExchangeError
from loopback.core.ports import TokenExchanger
from loopback.oauth.config import ExchangeConfig


logger = logging.getLogger(__name__)


class AuthlibExchanger(TokenExchanger):
    """
    Authorization code exchanger backed by authlib's httpx client.

    A fresh AsyncOAuth2Client is opened per exchange, so the exchanger holds
    no network resources between flows.
    """

    def __init__(self, config: ExchangeConfig):
        config.validate()
        self._config = config

    @property
    def config(self) -> ExchangeConfig:
        return self._config

    def authorization_url(self, state: str, redirect_uri: str) -> str:
        return prepare_grant_uri(
            self._config.authorize_url,
            client_id=self._config.client_id,
            response_type="code",
            redirect_uri=redirect_uri,
            scope=self._config.scopes or None,
            state=state,
            access_type="offline",
        )

    async def exchange(self, code: str, redirect_uri: str) -> dict[str, Any]:
        """
        Redeem an authorization code at the token endpoint.

        Raises:
            ExchangeError: If the provider rejects the code or is unreachable
        """
        try:
            async with AsyncOAuth2Client(
                client_id=self._config.client_id,
                client_secret=self._config.client_secret,
                scope=self._config.scopes or None,
                redirect_uri=redirect_uri,
                verify=self._config.verify_tls,
                **self._config.client_kwargs,
            ) as client:
                token = await client.fetch_token(self._config.token_url, code=code)
        except OAuthError as e:
            raise ExchangeError(
                f"Token endpoint rejected the code: {e.error}"
                + (f" ({e.description})" if e.description else "")
            ) from e
        except httpx.HTTPStatusError as e:
            raise ExchangeError(
                f"Token request failed: {e.response.status_code} {e.response.text}"
            ) from e
        except httpx.RequestError as e:
            raise ExchangeError(f"Network error during token exchange: {e}") from e
        except ValueError as e:
            raise ExchangeError(f"Invalid token endpoint response: {e}") from e

        logger.info(
            "Authorization code exchanged for token",
            extra={"token_url": self._config.token_url},
        )
        return dict(token)
