"""Composes the server-side link stack and owns its start/stop ordering."""
from __future__ import annotations

from typing import Optional

from gnss_server.broadcaster import Broadcaster
from gnss_server.listener import LinkListener
from gnss_server.position_bridge import PositionBridge, PositionSource, ServerSnapshot, StatusListener
from gnss_server.registry import SessionRegistry
from gnss_shared.executor import SerialExecutor
from gnss_shared.lifecycle import LifecycleTracker
from gnss_shared.logging_utils import get_logger
from gnss_shared.timings import DEFAULT_PORT, DEFAULT_TIMINGS, LinkTimings

_LOGGER = get_logger("Server.Runtime")


class ServerRuntime:
    """One source process: listener, sessions, broadcaster and position bridge.

    ``running`` belongs to this instance; two runtimes in one process do not
    share it.
    """

    def __init__(
        self,
        source: PositionSource,
        *,
        host: str = "0.0.0.0",
        port: int = DEFAULT_PORT,
        timings: LinkTimings = DEFAULT_TIMINGS,
        status_listener: Optional[StatusListener] = None,
    ) -> None:
        self.lifecycle = LifecycleTracker(_LOGGER)
        self.executor = SerialExecutor("GNSSShare-ServerState", logger=_LOGGER)
        self._registry: Optional[SessionRegistry] = None
        self.broadcaster = Broadcaster(lambda: self.registry.snapshot())
        self.bridge = PositionBridge(
            self.broadcaster,
            source,
            client_count=lambda: self.registry.count,
            status_listener=status_listener,
        )
        self._registry = SessionRegistry(
            self.bridge,
            executor=self.executor,
            grace=timings.ingestion_grace,
            on_change=self.bridge.on_membership_changed,
        )
        self.listener = LinkListener(
            self.registry,
            self.broadcaster,
            host=host,
            port=port,
            timings=timings,
            lifecycle=self.lifecycle,
        )
        self._running = False

    @property
    def registry(self) -> SessionRegistry:
        assert self._registry is not None
        return self._registry

    @property
    def running(self) -> bool:
        return self._running

    @property
    def port(self) -> int:
        return self.listener.port

    def snapshot(self) -> ServerSnapshot:
        return self.bridge.snapshot("Status requested")

    def start(self) -> None:
        """Start accepting receivers; raises ListenerStartError if the port is unavailable."""
        if self._running:
            return
        # Bind first: a port in use must leave no threads behind.
        self.listener.start()
        self.executor.start()
        self._running = True

    def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        self.listener.stop()
        try:
            self.executor.run_sync(self.registry.shutdown, timeout=2.0)
        except (RuntimeError, TimeoutError) as exc:
            _LOGGER.warning("Could not stop ingestion cleanly: %s", exc)
        self.executor.shutdown(timeout=2.0)
        self.broadcaster.close()
        self.lifecycle.log_state("after stop")
        _LOGGER.info("Link server stopped")

