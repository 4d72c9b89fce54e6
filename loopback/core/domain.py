"""
Core domain models for the loopback authorization flow.

These models are independent of the HTTP listener and of the
provider-specific exchange implementation.
"""

import secrets
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from loopback.core.exceptions import LoopbackOAuthError

# Number of random bytes behind a flow state; token_urlsafe yields ~1.3 chars per byte
FLOW_STATE_BYTES = 16
MIN_FLOW_STATE_LENGTH = 8


def generate_flow_state(nbytes: int = FLOW_STATE_BYTES) -> str:
    """
    Generate an unpredictable per-flow state value.

    Args:
        nbytes: Number of random bytes (at least 6, giving 8+ characters)

    Returns:
        URL-safe random string
    """
    if nbytes < 6:
        raise ValueError("flow state needs at least 6 random bytes")
    return secrets.token_urlsafe(nbytes)


class OAuthToken(BaseModel):
    """
    OAuth2 token returned by the provider's token endpoint.

    Unknown fields (id_token, provider-specific extras) are kept.
    """

    access_token: str = Field(description="OAuth2 access token")
    token_type: str = Field(default="Bearer", description="Token type")
    refresh_token: str | None = Field(
        default=None, description="OAuth2 refresh token for token renewal"
    )
    expires_in: int | None = Field(
        default=None, description="Lifetime of the access token in seconds"
    )
    expires_at: int | None = Field(
        default=None, description="Token expiration timestamp (Unix epoch)"
    )
    scope: str | None = Field(default=None, description="Space-separated OAuth scopes")

    model_config = ConfigDict(extra="allow")

    @classmethod
    def from_oauth_response(cls, token_data: dict[str, Any]) -> "OAuthToken":
        """
        Create OAuthToken from a token endpoint response.

        Args:
            token_data: Raw token dict (authlib OAuth2Token or plain dict)

        Returns:
            OAuthToken instance
        """
        return cls.model_validate(dict(token_data))

    def is_expired(self) -> bool:
        """Check if the access token is expired."""
        if self.expires_at is None:
            return False
        return datetime.now(UTC).timestamp() >= self.expires_at


@dataclass(frozen=True)
class Outcome:
    """
    Terminal result of a flow: exactly one of a token or an error.

    Use ``Outcome.success`` / ``Outcome.failure`` rather than the constructor.
    """

    token: OAuthToken | None = None
    error: LoopbackOAuthError | None = None

    def __post_init__(self):
        if (self.token is None) == (self.error is None):
            raise ValueError("Outcome holds exactly one of token or error")

    @classmethod
    def success(cls, token: OAuthToken) -> "Outcome":
        return cls(token=token)

    @classmethod
    def failure(cls, error: LoopbackOAuthError) -> "Outcome":
        return cls(error=error)

    @property
    def ok(self) -> bool:
        return self.token is not None

    def unwrap(self) -> OAuthToken:
        """Return the token, or raise the carried error."""
        if self.error is not None:
            raise self.error
        return self.token
