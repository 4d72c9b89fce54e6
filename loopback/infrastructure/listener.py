"""
Ephemeral HTTP listener that receives the provider redirect.

The listener binds its own socket (so bind failures surface as BindError
instead of a uvicorn process exit) and runs a uvicorn server task on the
caller's event loop. Stopping is graceful up to a deadline, then forced.
"""

import asyncio
import enum
import logging
import socket

import uvicorn
from fastapi import FastAPI

from loopback.core.exceptions import BindError, ShutdownError


logger = logging.getLogger(__name__)

# How long start() waits for uvicorn to report it is serving
STARTUP_TIMEOUT = 5.0
# uvicorn checks should_exit and open connections every 0.1s
SHUTDOWN_POLL_SLACK = 0.25


class ListenerState(enum.Enum):
    UNSTARTED = "unstarted"
    RUNNING = "running"
    SHUTTING_DOWN = "shutting_down"
    STOPPED = "stopped"


def bind_socket(host: str, port: int) -> socket.socket:
    """
    Bind and listen on host:port.

    Raises:
        BindError: Address in use, permission denied or host not resolvable
    """
    try:
        return socket.create_server((host, port), reuse_port=False)
    except OSError as e:
        raise BindError(f"Could not bind redirect listener to {host}:{port}: {e}") from e


class RedirectListener:
    """
    Lifecycle handle for the local redirect server.

    UNSTARTED -> RUNNING -> SHUTTING_DOWN -> STOPPED. ``stop`` is idempotent
    and concurrent callers share one shutdown.
    """

    def __init__(self, app: FastAPI, host: str, port: int, shutdown_timeout: float):
        self._app = app
        self._host = host
        self._port = port
        self._shutdown_timeout = shutdown_timeout
        self._state = ListenerState.UNSTARTED
        self._socket: socket.socket | None = None
        self._bound_port: int | None = None
        self._server: uvicorn.Server | None = None
        self._task: asyncio.Task | None = None
        self._stopping: asyncio.Task | None = None

    @property
    def state(self) -> ListenerState:
        return self._state

    @property
    def serving(self) -> asyncio.Task | None:
        """The uvicorn server task while running."""
        return self._task

    @property
    def port(self) -> int:
        """Bound port (differs from the requested one when it was 0)."""
        return self._bound_port if self._bound_port is not None else self._port

    async def start(self) -> None:
        """
        Bind the socket and start serving.

        Returns once uvicorn accepts connections.

        Raises:
            BindError: If the address cannot be acquired
        """
        if self._state is not ListenerState.UNSTARTED:
            raise RuntimeError(f"Listener cannot be started from state {self._state.value}")

        self._socket = bind_socket(self._host, self._port)
        self._bound_port = self._socket.getsockname()[1]
        config = uvicorn.Config(
            self._app,
            lifespan="off",
            log_config=None,
            access_log=False,
        )
        self._server = uvicorn.Server(config)
        self._task = asyncio.create_task(
            self._server.serve(sockets=[self._socket]),
            name=f"redirect-listener-{self._host}:{self.port}",
        )
        self._state = ListenerState.RUNNING

        loop = asyncio.get_running_loop()
        started_by = loop.time() + STARTUP_TIMEOUT
        while not self._server.started:
            if self._task.done() or loop.time() > started_by:
                cause = None
                if self._task.done() and not self._task.cancelled():
                    cause = self._task.exception()
                await self.stop()
                raise BindError(
                    f"Redirect listener on {self._host}:{self.port} failed to start"
                ) from cause
            await asyncio.sleep(0.01)

        logger.info(
            f"Redirect listener started on {self._host}:{self.port}",
            extra={"host": self._host, "port": self.port},
        )

    async def stop(self, deadline: float | None = None) -> None:
        """
        Stop accepting connections and shut down.

        In-flight requests get ``deadline`` seconds to finish, after which the
        server task is cancelled and the socket closed.

        Args:
            deadline: Graceful shutdown budget (defaults to shutdown_timeout)

        Raises:
            ShutdownError: If the graceful phase overran and a forced close was needed
        """
        if self._state in (ListenerState.UNSTARTED, ListenerState.STOPPED):
            if self._state is ListenerState.UNSTARTED:
                self._state = ListenerState.STOPPED
            return

        if self._stopping is None:
            self._state = ListenerState.SHUTTING_DOWN
            self._stopping = asyncio.create_task(
                self._shutdown(deadline if deadline is not None else self._shutdown_timeout)
            )
        await asyncio.shield(self._stopping)

    async def _shutdown(self, deadline: float) -> None:
        server, task = self._server, self._task
        try:
            if task.done():
                return
            server.should_exit = True
            try:
                await asyncio.wait_for(asyncio.shield(task), timeout=deadline + SHUTDOWN_POLL_SLACK)
            except asyncio.TimeoutError:
                logger.error(
                    f"Redirect listener did not stop within {deadline}s, forcing close"
                )
                server.force_exit = True
                for request_task in list(server.server_state.tasks):
                    request_task.cancel()
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
                raise ShutdownError(
                    f"Redirect listener did not shut down within {deadline}s"
                )
            except Exception as e:
                raise ShutdownError(f"Redirect listener failed during shutdown: {e}") from e
        finally:
            self._socket.close()
            self._state = ListenerState.STOPPED
            logger.info(f"Redirect listener on {self._host}:{self.port} stopped")
