"""Server runtime: binding, serving and graceful shutdown."""

import logging
import signal
import socket
import threading
from types import FrameType
from typing import Any, Callable, Optional

import uvicorn
from fastapi import FastAPI

from common.errors import BindError
from common.models import ServerState
from config import ServerConfig

from .middleware import RequestTracker

logger = logging.getLogger(__name__)

EXIT_CLEAN = 0
EXIT_FORCED = 1
EXIT_STARTUP_FAILURE = 2

HANDLED_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class _Server(uvicorn.Server):
    """uvicorn server reporting startup and exit signals to the runtime."""

    def __init__(
        self,
        config: uvicorn.Config,
        on_started: Callable[[], None],
        on_exit: Callable[[int], None],
    ):
        super().__init__(config)
        self._on_started = on_started
        self._on_exit = on_exit

    async def startup(self, sockets: Optional[list[socket.socket]] = None) -> None:
        await super().startup(sockets=sockets)
        if self.started:
            self._on_started()

    def handle_exit(self, sig: int, frame: Optional[FrameType]) -> None:
        self._on_exit(sig)
        super().handle_exit(sig, frame)


class ServerRuntime:
    """Runs the app through ``starting → listening → draining → stopped``.

    Args:
        config: Process configuration
        app: Application built by ``create_app``
    """

    def __init__(self, config: ServerConfig, app: FastAPI):
        self.config = config
        self.app = app
        self.tracker: RequestTracker = app.state.tracker
        self.state = ServerState.STARTING
        self.bound_address: Optional[tuple[str, int]] = None
        self.ready = threading.Event()
        self._server: Optional[_Server] = None

    def _transition(self, state: ServerState) -> None:
        if self.state == state:
            return
        logger.info(f"Server state: {self.state.value} → {state.value}")
        self.state = state
        if state == ServerState.LISTENING:
            self.ready.set()

    def bind(self) -> socket.socket:
        """Bind the configured address.

        Raises:
            BindError: If the address cannot be resolved or is unavailable
        """
        host, port = self.config.host, self.config.port
        sock: Optional[socket.socket] = None
        try:
            family, _, _, _, address = socket.getaddrinfo(
                host or None, port, type=socket.SOCK_STREAM, flags=socket.AI_PASSIVE
            )[0]
            sock = socket.socket(family, socket.SOCK_STREAM)
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind(address)
        except OSError as e:
            if sock is not None:
                sock.close()
            raise BindError(self.config.server_addr, str(e)) from e

        sock.set_inheritable(True)
        self.bound_address = sock.getsockname()[:2]
        return sock

    def stop(self) -> None:
        """Begin draining without a signal (tests, embedding)."""
        self._begin_drain(None)
        if self._server is not None:
            self._server.should_exit = True

    def _begin_drain(self, sig: Optional[int]) -> None:
        if self.state in (ServerState.DRAINING, ServerState.STOPPED):
            return
        reason = signal.Signals(sig).name if sig is not None else "stop requested"
        logger.info(f"Shutdown signal received ({reason}). Draining in-flight requests...")
        self._transition(ServerState.DRAINING)

    def _late_signal(self, sig: int, frame: Any) -> None:
        # uvicorn re-raises the signals it captured once serving ends
        logger.debug(f"Ignoring {signal.Signals(sig).name}: shutdown already handled")

    def run(self) -> int:
        """Serve until shutdown and return the process exit code."""
        self._transition(ServerState.STARTING)
        try:
            sock = self.bind()
        except BindError as e:
            logger.error(f"❌ {e}")
            self._transition(ServerState.STOPPED)
            return EXIT_STARTUP_FAILURE

        host, port = self.bound_address or (self.config.host, self.config.port)
        logger.info(f"Listening on http://{host}:{port}")

        uv_config = uvicorn.Config(
            self.app,
            lifespan="on",
            log_config=None,
            log_level=self.config.logging_level,
            timeout_graceful_shutdown=self.config.grace_period,  # type: ignore[arg-type]
        )
        server = _Server(
            uv_config,
            on_started=lambda: self._transition(ServerState.LISTENING),
            on_exit=self._begin_drain,
        )
        self._server = server

        if threading.current_thread() is threading.main_thread():
            for sig in HANDLED_SIGNALS:
                signal.signal(sig, self._late_signal)

        try:
            server.run(sockets=[sock])
        finally:
            sock.close()
            self._transition(ServerState.STOPPED)

        if not server.started:
            logger.error("❌ Server failed to start")
            return EXIT_STARTUP_FAILURE
        if server.force_exit or self.tracker.cancelled:
            logger.warning(
                f"⚠️ Forced shutdown: {self.tracker.cancelled} request(s) cut off "
                f"after {self.config.grace_period}s grace period"
            )
            return EXIT_FORCED
        logger.info("✅ Clean shutdown")
        return EXIT_CLEAN
