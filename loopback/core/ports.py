"""
Port definitions (interfaces) for the core domain.

The flow depends on these contracts, not on a concrete OAuth client.
Infrastructure adapters implement them.
"""

from typing import Any, Mapping, Protocol


class TokenExchanger(Protocol):
    """
    Port (interface) for the provider side of an authorization code flow.

    Implemented by infrastructure adapters (e.g., AuthlibExchanger) and by
    test stubs.
    """

    def authorization_url(self, state: str, redirect_uri: str) -> str:
        """
        Build the provider authorization URL.

        Must be pure: the same arguments always produce the same URL. The URL
        embeds ``state`` and requests offline (refresh-capable) access.
        """
        ...

    async def exchange(self, code: str, redirect_uri: str) -> Mapping[str, Any]:
        """
        Exchange an authorization code for a token.

        Args:
            code: Authorization code from the redirect
            redirect_uri: Redirect URI used for the authorization request

        Returns:
            Token endpoint response (must contain ``access_token``)

        Raises:
            Any exception on failure; the caller wraps it in ExchangeError.
        """
        ...
