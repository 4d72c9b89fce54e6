"""
End-to-end tests for the loopback flow against a real listener socket.
"""

import asyncio
import socket
import time
from unittest.mock import patch

import pytest

from loopback.core.exceptions import (
    BindError,
    ConfigError,
    ExchangeError,
    FlowCanceledError,
    FlowError,
    ShutdownError,
    StateMismatchError,
)
from loopback.infrastructure.listener import ListenerState, RedirectListener
from loopback.oauth.config import ListenerConfig
from loopback.oauth.flow import FlowStatus, LoopbackFlow
from tests.conftest import StubExchanger, can_bind, send_callback, state_from_url


@pytest.fixture
def listener_config(free_port):
    return ListenerConfig(host="127.0.0.1", port=free_port, shutdown_timeout=1.0)


@pytest.fixture
def flow(stub_exchanger, listener_config):
    return LoopbackFlow(stub_exchanger, listener_config)


# ============================================================================
# Construction and authorization URL
# ============================================================================


class TestConstruction:
    def test_missing_exchanger_fails_fast(self):
        with pytest.raises(ConfigError):
            LoopbackFlow(None)

    def test_initial_status(self, flow):
        assert flow.status is FlowStatus.IDLE
        assert flow.listener is None

    @pytest.mark.parametrize("state", ["", "short", "1234567"])
    def test_short_state_rejected(self, stub_exchanger, listener_config, state):
        with pytest.raises(ConfigError, match="state"):
            LoopbackFlow(stub_exchanger, listener_config, state=state)

    def test_default_listener_config(self, stub_exchanger):
        flow = LoopbackFlow(stub_exchanger)

        assert flow.redirect_uri == "http://localhost:14565/oauth/callback"


class TestAuthorizationUrl:
    def test_embeds_flow_state(self, stub_exchanger, listener_config):
        flow = LoopbackFlow(stub_exchanger, listener_config, state="fixed-state-value")

        assert state_from_url(flow.authorization_url()) == "fixed-state-value"

    def test_is_idempotent(self, flow):
        assert flow.authorization_url() == flow.authorization_url()

    def test_carries_redirect_uri(self, flow):
        assert "redirect_uri=http%3A%2F%2F127.0.0.1" in flow.authorization_url()

    def test_each_flow_draws_new_state(self, stub_exchanger, listener_config):
        first = LoopbackFlow(stub_exchanger, listener_config)
        second = LoopbackFlow(stub_exchanger, listener_config)

        assert state_from_url(first.authorization_url()) != state_from_url(
            second.authorization_url()
        )


# ============================================================================
# start_and_wait_for_token
# ============================================================================


class TestSuccess:
    @pytest.mark.asyncio
    async def test_returns_token_and_releases_port(self, flow, listener_config):
        state = state_from_url(flow.authorization_url())
        waiter = asyncio.create_task(flow.start_and_wait_for_token(timeout=10))

        response = await send_callback(flow.redirect_uri, state=state, code="abc123")
        token = await waiter

        assert response.status_code == 200
        assert "Success!" in response.text
        assert token.access_token == "tok1"
        assert flow.status is FlowStatus.SUCCEEDED
        assert flow.listener.state is ListenerState.STOPPED
        assert can_bind(listener_config.host, listener_config.port)

    @pytest.mark.asyncio
    async def test_default_port_scenario(self):
        """Test the documented localhost:14565 scenario end to end."""
        exchanger = StubExchanger(token={"access_token": "tok1"})
        flow = LoopbackFlow(
            exchanger,
            ListenerConfig(host="localhost", port=14565, callback_path="/oauth/callback"),
        )
        state = state_from_url(flow.authorization_url())
        waiter = asyncio.create_task(flow.start_and_wait_for_token(timeout=10))

        await send_callback(
            "http://localhost:14565/oauth/callback", state=state, code="abc123"
        )
        token = await waiter

        assert token.model_dump(exclude_none=True, exclude_defaults=True) == {
            "access_token": "tok1"
        }
        assert exchanger.calls == [("abc123", "http://localhost:14565/oauth/callback")]
        assert can_bind("localhost", 14565)

    @pytest.mark.asyncio
    async def test_flow_runs_only_once(self, flow):
        state = state_from_url(flow.authorization_url())
        waiter = asyncio.create_task(flow.start_and_wait_for_token(timeout=10))
        await send_callback(flow.redirect_uri, state=state, code="abc123")
        await waiter

        with pytest.raises(FlowError):
            await flow.start_and_wait_for_token()


class TestFailure:
    @pytest.mark.asyncio
    async def test_state_mismatch(self, flow, stub_exchanger, listener_config):
        waiter = asyncio.create_task(flow.start_and_wait_for_token(timeout=10))

        response = await send_callback(flow.redirect_uri, state="forged", code="abc123")

        with pytest.raises(StateMismatchError):
            await waiter
        assert response.status_code == 307
        assert response.headers["location"] == "/"
        assert stub_exchanger.calls == []
        assert flow.status is FlowStatus.FAILED
        assert can_bind(listener_config.host, listener_config.port)

    @pytest.mark.asyncio
    async def test_exchange_failure(self, flow, stub_exchanger):
        stub_exchanger.error = ExchangeError("invalid_grant")
        state = state_from_url(flow.authorization_url())
        waiter = asyncio.create_task(flow.start_and_wait_for_token(timeout=10))

        response = await send_callback(flow.redirect_uri, state=state, code="abc123")

        with pytest.raises(ExchangeError, match="invalid_grant"):
            await waiter
        assert response.status_code == 307
        assert flow.status is FlowStatus.FAILED

    @pytest.mark.asyncio
    async def test_bind_error(self, flow, listener_config):
        with socket.create_server((listener_config.host, listener_config.port)):
            with pytest.raises(BindError):
                await flow.start_and_wait_for_token(timeout=1)

        assert flow.status is FlowStatus.FAILED

    @pytest.mark.asyncio
    async def test_shutdown_error_becomes_flow_error(self, flow):
        """Test a failing shutdown replaces the token with ShutdownError."""
        original_stop = RedirectListener.stop

        async def failing_stop(self, deadline=None):
            await original_stop(self, deadline)
            raise ShutdownError("listener did not stop in time")

        state = state_from_url(flow.authorization_url())
        with patch.object(RedirectListener, "stop", failing_stop):
            waiter = asyncio.create_task(flow.start_and_wait_for_token(timeout=10))
            await send_callback(flow.redirect_uri, state=state, code="abc123")

            with pytest.raises(ShutdownError):
                await waiter

        assert flow.status is FlowStatus.FAILED
        assert flow.listener.state is ListenerState.STOPPED


class TestCancellation:
    @pytest.fixture
    def listener_config(self, free_port):
        return ListenerConfig(host="127.0.0.1", port=free_port, shutdown_timeout=0.2)

    @pytest.mark.asyncio
    async def test_cancel_event_before_callback(self, flow, listener_config):
        cancel = asyncio.Event()
        waiter = asyncio.create_task(flow.start_and_wait_for_token(cancel=cancel))

        await asyncio.sleep(0.2)
        fired_at = time.monotonic()
        cancel.set()

        with pytest.raises(FlowCanceledError):
            await waiter
        assert time.monotonic() - fired_at < 0.5
        assert flow.status is FlowStatus.CANCELED
        assert can_bind(listener_config.host, listener_config.port)

    @pytest.mark.asyncio
    async def test_timeout_before_callback(self, flow, listener_config):
        started = time.monotonic()

        with pytest.raises(FlowCanceledError, match="0.2s"):
            await flow.start_and_wait_for_token(timeout=0.2)

        assert time.monotonic() - started < 0.2 + 0.5
        assert flow.status is FlowStatus.CANCELED
        assert flow.listener.state is ListenerState.STOPPED
        assert can_bind(listener_config.host, listener_config.port)

    @pytest.mark.asyncio
    async def test_calling_task_cancelled(self, flow, listener_config):
        """Test cancelling the caller still tears the listener down."""
        waiter = asyncio.create_task(flow.start_and_wait_for_token())
        await asyncio.sleep(0.2)

        waiter.cancel()

        with pytest.raises(asyncio.CancelledError):
            await waiter
        assert flow.listener.state is ListenerState.STOPPED
        assert can_bind(listener_config.host, listener_config.port)


class TestCancelDuringExchange:
    @pytest.fixture
    def listener_config(self, free_port):
        return ListenerConfig(host="127.0.0.1", port=free_port, shutdown_timeout=0.5)

    @pytest.mark.asyncio
    async def test_browser_is_redirected_and_shutdown_is_clean(self, listener_config):
        """Test cancelling while the exchange hangs still answers the browser with 307."""
        exchanger = StubExchanger(delay=30)
        flow = LoopbackFlow(exchanger, listener_config)
        state = state_from_url(flow.authorization_url())
        cancel = asyncio.Event()
        waiter = asyncio.create_task(flow.start_and_wait_for_token(cancel=cancel))
        callback = asyncio.create_task(
            send_callback(flow.redirect_uri, state=state, code="abc123")
        )

        for _ in range(200):
            if exchanger.calls:
                break
            await asyncio.sleep(0.01)
        assert exchanger.calls == [("abc123", flow.redirect_uri)]

        fired_at = time.monotonic()
        cancel.set()

        with pytest.raises(FlowCanceledError, match="canceled by caller"):
            await waiter
        response = await callback

        assert time.monotonic() - fired_at < listener_config.shutdown_timeout + 0.5
        assert response.status_code == 307
        assert response.headers["location"] == "/"
        assert flow.status is FlowStatus.CANCELED
        assert flow.listener.state is ListenerState.STOPPED
        assert can_bind(listener_config.host, listener_config.port)


class TestDuplicateCallbacks:
    @pytest.mark.asyncio
    async def test_concurrent_callbacks_yield_one_outcome(self, listener_config):
        """Test two racing redirects produce one exchange, one token, one shutdown."""
        exchanger = StubExchanger(delay=0.3)
        flow = LoopbackFlow(exchanger, listener_config)
        state = state_from_url(flow.authorization_url())
        waiter = asyncio.create_task(flow.start_and_wait_for_token(timeout=10))

        responses = await asyncio.gather(
            send_callback(flow.redirect_uri, state=state, code="abc123"),
            send_callback(flow.redirect_uri, state=state, code="abc123"),
        )
        token = await waiter

        assert sorted(r.status_code for r in responses) == [200, 307]
        assert len(exchanger.calls) == 1
        assert token.access_token == "tok1"
        assert flow.listener.state is ListenerState.STOPPED

        # A second shutdown attempt is a no-op
        await flow.listener.stop()
        assert flow.listener.state is ListenerState.STOPPED


class TestBlockingWrapper:
    def test_wait_for_token_times_out(self, flow, listener_config):
        with pytest.raises(FlowCanceledError):
            flow.wait_for_token(timeout=0.1)

        assert can_bind(listener_config.host, listener_config.port)
