"""
Shared test configuration and fixtures.
"""

import asyncio
import socket
from urllib.parse import parse_qs, urlencode, urlparse

import httpx
import pytest

from loopback.core.rendezvous import OutcomeCell


class StubExchanger:
    """
    In-memory stand-in for the provider.

    Records every exchange call. Returns ``token`` or raises ``error``.
    ``delay`` holds each exchange open to widen race windows.
    """

    AUTHORIZE_URL = "https://provider.test/authorize"

    def __init__(self, token=None, error=None, delay=0.0):
        self.token = token if token is not None else {"access_token": "tok1"}
        self.error = error
        self.delay = delay
        self.calls = []

    def authorization_url(self, state, redirect_uri):
        query = urlencode(
            {
                "client_id": "test-client",
                "response_type": "code",
                "redirect_uri": redirect_uri,
                "state": state,
                "access_type": "offline",
            }
        )
        return f"{self.AUTHORIZE_URL}?{query}"

    async def exchange(self, code, redirect_uri):
        self.calls.append((code, redirect_uri))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return dict(self.token)


def state_from_url(url: str) -> str:
    """Extract the state query parameter from an authorization URL."""
    return parse_qs(urlparse(url).query)["state"][0]


async def send_callback(redirect_uri: str, attempts: int = 100, **params) -> httpx.Response:
    """
    GET the redirect URI like a browser would after authorization.

    Retries connection errors while the listener is still starting.
    """
    async with httpx.AsyncClient(follow_redirects=False, trust_env=False) as client:
        for _ in range(attempts):
            try:
                return await client.get(redirect_uri, params=params)
            except httpx.ConnectError:
                await asyncio.sleep(0.05)
    raise AssertionError(f"Listener at {redirect_uri} never accepted a connection")


def can_bind(host: str, port: int) -> bool:
    """Check whether host:port is free again."""
    try:
        with socket.create_server((host, port)):
            return True
    except OSError:
        return False


@pytest.fixture
def free_port():
    """An unused TCP port on 127.0.0.1."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


@pytest.fixture
def stub_exchanger():
    """Provider stub that returns {"access_token": "tok1"}."""
    return StubExchanger()


@pytest.fixture
def outcome_cell():
    """Fresh one-shot outcome cell."""
    return OutcomeCell()
