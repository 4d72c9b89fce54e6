"""
Loopback authorization code flow.

Ties together the redirect listener, the callback endpoint and the outcome
cell behind a two-call contract:

    flow = LoopbackFlow(exchanger)
    webbrowser.open(flow.authorization_url())
    token = await flow.start_and_wait_for_token(timeout=60)

The listener is always stopped before start_and_wait_for_token returns or
raises, whatever ended the flow.
"""

import asyncio
import enum
import logging

from loopback.core.domain import (
    MIN_FLOW_STATE_LENGTH,
    OAuthToken,
    Outcome,
    generate_flow_state,
)
from loopback.core.exceptions import (
    ConfigError,
    FlowCanceledError,
    FlowError,
    ListenerError,
    LoopbackOAuthError,
    ShutdownError,
)
from loopback.core.ports import TokenExchanger
from loopback.core.rendezvous import OutcomeCell
from loopback.infrastructure.listener import RedirectListener
from loopback.oauth.config import ListenerConfig
from loopback.oauth.router import create_callback_app


logger = logging.getLogger(__name__)


class FlowStatus(enum.Enum):
    IDLE = "idle"
    AWAITING_CALLBACK = "awaiting_callback"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"


class LoopbackFlow:
    """
    One authorization code flow against a local redirect listener.

    A flow instance runs at most once. Retrying means building a new flow,
    which also draws a fresh state value.
    """

    def __init__(
        self,
        exchanger: TokenExchanger,
        listener_config: ListenerConfig | None = None,
        *,
        state: str | None = None,
    ):
        if exchanger is None:
            raise ConfigError("exchanger can't be None")
        if state is not None and len(state) < MIN_FLOW_STATE_LENGTH:
            raise ConfigError(
                f"state must be at least {MIN_FLOW_STATE_LENGTH} characters"
            )

        self._exchanger = exchanger
        self._config = listener_config or ListenerConfig()
        self._state = state or generate_flow_state()
        self._status = FlowStatus.IDLE
        self._listener: RedirectListener | None = None

    @property
    def status(self) -> FlowStatus:
        return self._status

    @property
    def config(self) -> ListenerConfig:
        return self._config

    @property
    def redirect_uri(self) -> str:
        return self._config.redirect_uri

    @property
    def listener(self) -> RedirectListener | None:
        """Listener of the running (or finished) flow."""
        return self._listener

    def authorization_url(self) -> str:
        """URL the user must visit; embeds this flow's state."""
        return self._exchanger.authorization_url(self._state, self.redirect_uri)

    async def start_and_wait_for_token(
        self,
        cancel: asyncio.Event | None = None,
        timeout: float | None = None,
    ) -> OAuthToken:
        """
        Start the listener and wait for the provider redirect.

        Args:
            cancel: Event that aborts the flow when set
            timeout: Seconds to wait for the callback before aborting

        Returns:
            Token obtained from the code exchange

        Raises:
            BindError: The listener address could not be acquired
            StateMismatchError: The redirect carried a foreign state
            ExchangeError: The provider refused or the exchange failed
            FlowCanceledError: ``cancel`` was set or ``timeout`` elapsed first
            ShutdownError: The listener could not be stopped cleanly
            ListenerError: The listener exited before any callback arrived
        """
        if self._status is not FlowStatus.IDLE:
            raise FlowError(f"Flow already started (status: {self._status.value})")
        self._status = FlowStatus.AWAITING_CALLBACK

        cell = OutcomeCell()
        # Set once the flow is decided; releases a callback still inside the exchange
        abort = asyncio.Event()
        app = create_callback_app(
            callback_path=self._config.callback_path,
            expected_state=self._state,
            redirect_uri=self.redirect_uri,
            exchanger=self._exchanger,
            cell=cell,
            success_page=self._config.success_page,
            abort=abort,
        )
        self._listener = RedirectListener(
            app,
            host=self._config.host,
            port=self._config.port,
            shutdown_timeout=self._config.shutdown_timeout,
        )

        try:
            await self._listener.start()
        except LoopbackOAuthError:
            self._status = FlowStatus.FAILED
            raise

        logger.info(
            f"Waiting for OAuth callback on {self.redirect_uri}",
            extra={"redirect_uri": self.redirect_uri},
        )

        outcome: Outcome | None = None
        try:
            outcome = await self._await_outcome(cell, cancel, timeout)
        finally:
            # Runs on every path, including cancellation of the calling task
            self._status = FlowStatus.FAILED
            abort.set()
            try:
                await self._listener.stop(self._config.shutdown_timeout)
            except ShutdownError as e:
                logger.error(f"Redirect listener shutdown failed: {e}")
                if outcome is not None:
                    outcome = Outcome.failure(e)

        self._status = self._terminal_status(outcome)
        if outcome.ok:
            logger.info("OAuth flow succeeded")
        else:
            logger.warning(f"OAuth flow ended without token: {outcome.error}")
        return outcome.unwrap()

    def wait_for_token(self, timeout: float | None = None) -> OAuthToken:
        """Blocking variant of start_and_wait_for_token for synchronous callers."""
        return asyncio.run(self.start_and_wait_for_token(timeout=timeout))

    async def _await_outcome(
        self,
        cell: OutcomeCell,
        cancel: asyncio.Event | None,
        timeout: float | None,
    ) -> Outcome:
        """Wait for the first of: outcome, cancel event, timeout, listener exit."""
        outcome_waiter = asyncio.create_task(cell.wait())
        cancel_waiter = asyncio.create_task(cancel.wait()) if cancel is not None else None
        serving = self._listener.serving

        waiters = {outcome_waiter, serving}
        if cancel_waiter is not None:
            waiters.add(cancel_waiter)

        try:
            await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in (outcome_waiter, cancel_waiter):
                if waiter is not None and not waiter.done():
                    waiter.cancel()

        # A delivered outcome wins over a cancellation that fired at the same time
        if cell.outcome is not None:
            return cell.outcome
        if cancel is not None and cancel.is_set():
            return Outcome.failure(FlowCanceledError("OAuth flow canceled by caller"))
        if serving.done():
            cause = None if serving.cancelled() else serving.exception()
            message = "Redirect listener exited before a callback arrived"
            if cause is not None:
                message += f": {cause!r}"
            return Outcome.failure(ListenerError(message))
        return Outcome.failure(
            FlowCanceledError(f"No OAuth callback received within {timeout}s")
        )

    @staticmethod
    def _terminal_status(outcome: Outcome) -> FlowStatus:
        if outcome.ok:
            return FlowStatus.SUCCEEDED
        if isinstance(outcome.error, FlowCanceledError):
            return FlowStatus.CANCELED
        return FlowStatus.FAILED
