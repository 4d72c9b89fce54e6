"""
One-shot handoff of a flow outcome from the callback handler to the caller.

The cell is written at most once. A second write is discarded and reported
as such; it never blocks and never replaces a delivered value. Writers may
run on any thread or event loop, the waiter is woken on its own loop.
"""

import asyncio
import logging
import threading

from loopback.core.domain import Outcome

logger = logging.getLogger(__name__)


class OutcomeCell:
    """Single-assignment outcome slot with a first-come claim."""

    def __init__(self):
        self._lock = threading.Lock()
        self._claimed = False
        self._outcome: Outcome | None = None
        self._waiters: list[tuple[asyncio.AbstractEventLoop, asyncio.Future]] = []

    @property
    def claimed(self) -> bool:
        return self._claimed

    @property
    def outcome(self) -> Outcome | None:
        """Delivered outcome, or None while still pending."""
        return self._outcome

    @property
    def done(self) -> bool:
        return self._outcome is not None

    def claim(self) -> bool:
        """
        Claim the right to produce the outcome.

        Returns:
            True for the first caller only
        """
        with self._lock:
            if self._claimed:
                return False
            self._claimed = True
            return True

    def deliver(self, outcome: Outcome) -> bool:
        """
        Store the outcome and wake all waiters.

        Args:
            outcome: Token or error outcome

        Returns:
            True if this write was accepted, False if an outcome was already set
        """
        with self._lock:
            if self._outcome is not None:
                logger.warning("Discarding duplicate flow outcome")
                return False
            self._claimed = True
            self._outcome = outcome
            waiters, self._waiters = self._waiters, []

        for loop, future in waiters:
            # Loop may already be gone if the waiter gave up
            if not loop.is_closed():
                loop.call_soon_threadsafe(_resolve, future, outcome)
        return True

    async def wait(self) -> Outcome:
        """Suspend until an outcome is delivered and return it."""
        loop = asyncio.get_running_loop()
        with self._lock:
            if self._outcome is not None:
                return self._outcome
            future = loop.create_future()
            self._waiters.append((loop, future))

        try:
            return await future
        finally:
            with self._lock:
                if (loop, future) in self._waiters:
                    self._waiters.remove((loop, future))


def _resolve(future: asyncio.Future, outcome: Outcome) -> None:
    if not future.done():
        future.set_result(outcome)
