"""TCP listener that accepts receivers and runs one session per connection."""
from __future__ import annotations

import socket
import socketserver
import threading
from typing import Callable, Optional, Tuple

from gnss_server.broadcaster import Broadcaster
from gnss_server.client_session import ClientSession
from gnss_server.registry import SessionRegistry
from gnss_shared.lifecycle import LifecycleTracker
from gnss_shared.logging_utils import get_logger
from gnss_shared.timings import DEFAULT_PORT, DEFAULT_TIMINGS, LinkTimings

_LOGGER = get_logger("Server.Listener")

SessionHandler = Callable[[socket.socket, Tuple[str, int]], None]


class ListenerStartError(RuntimeError):
    """Raised when the listening socket cannot be bound."""


class _LinkTCPServer(socketserver.ThreadingMixIn, socketserver.TCPServer):
    allow_reuse_address = True
    daemon_threads = True
    block_on_close = False

    def __init__(self, server_address, RequestHandlerClass) -> None:  # type: ignore[override]
        super().__init__(server_address, RequestHandlerClass)
        self.session_handler: Optional[SessionHandler] = None
        self.closing = False

    def get_request(self):  # type: ignore[override]
        try:
            return super().get_request()
        except OSError as exc:
            if not self.closing:
                _LOGGER.error("Error accepting client connection: %s", exc)
            raise

    def handle_error(self, request, client_address) -> None:  # type: ignore[override]
        _LOGGER.error("Unhandled error in session for %s", client_address, exc_info=True)


class _LinkRequestHandler(socketserver.BaseRequestHandler):
    def handle(self) -> None:  # type: ignore[override]
        handler = getattr(self.server, "session_handler", None)
        if handler is None:
            return
        handler(self.request, self.client_address)


class LinkListener:
    """Accept loop on its own thread; each accepted socket gets a session worker."""

    def __init__(
        self,
        registry: SessionRegistry,
        broadcaster: Broadcaster,
        *,
        host: str = "0.0.0.0",
        port: int = DEFAULT_PORT,
        timings: LinkTimings = DEFAULT_TIMINGS,
        lifecycle: Optional[LifecycleTracker] = None,
    ) -> None:
        self._registry = registry
        self._broadcaster = broadcaster
        self._host = host
        self._port = port
        self._timings = timings
        self._lifecycle = lifecycle or LifecycleTracker(_LOGGER)
        self._server: Optional[_LinkTCPServer] = None
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._server is not None

    @property
    def port(self) -> int:
        """Bound port; differs from the configured one when that was 0."""
        server = self._server
        if server is None:
            return self._port
        return server.server_address[1]

    def start(self) -> None:
        if self._server is not None:
            return
        try:
            server = _LinkTCPServer((self._host, self._port), _LinkRequestHandler)
        except OSError as exc:
            _LOGGER.error("Could not start server on %s:%d: %s", self._host, self._port, exc)
            raise ListenerStartError(f"Could not listen on {self._host}:{self._port}: {exc}") from exc
        server.session_handler = self._run_session
        thread = threading.Thread(target=server.serve_forever, name="GNSSShare-Listener", daemon=True)
        self._server = server
        self._thread = thread
        self._lifecycle.track_thread(thread, "listener")
        thread.start()
        _LOGGER.info("Server started on port %d", self.port)

    def stop(self) -> None:
        server = self._server
        if server is None:
            return
        server.closing = True
        server.shutdown()
        server.server_close()
        self._registry.close_all()
        self._lifecycle.join_thread(self._thread, timeout=2.0)
        self._lifecycle.join_all(timeout=2.0)
        self._server = None
        self._thread = None
        _LOGGER.info("Server stopped")

    def _run_session(self, sock: socket.socket, client_address: Tuple[str, int]) -> None:
        address = f"{client_address[0]}:{client_address[1]}"
        server = self._server
        if server is None or server.closing:
            _LOGGER.debug("Rejecting %s, server is stopping", address)
            return
        session = ClientSession(
            sock,
            address,
            responses=self._broadcaster.latest,
            on_closed=self._registry.remove,
            timings=self._timings,
        )
        worker = threading.current_thread()
        self._lifecycle.track_thread(worker, f"session {address}")
        try:
            self._registry.add(session)
            session.run()
        finally:
            self._lifecycle.untrack_thread(worker)
