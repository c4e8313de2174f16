"""Wires the connection manager and the event bridge from saved preferences."""
from __future__ import annotations

from typing import Optional

from gnss_client.connection_manager import ConnectFn, ConnectionManager
from gnss_client.gateway import GatewayResolver
from gnss_client.link_bridge import LinkBridge, LinkEventSink
from gnss_shared.logging_utils import get_logger
from gnss_shared.models import ConnectionState
from gnss_shared.preferences import Preferences
from gnss_shared.timings import DEFAULT_TIMINGS, LinkTimings

_LOGGER = get_logger("Client.Runtime")


class ClientRuntime:
    """One receiver process: a connection manager plus the bridge that feeds the consumer."""

    def __init__(
        self,
        preferences: Preferences,
        sink: LinkEventSink,
        *,
        timings: LinkTimings = DEFAULT_TIMINGS,
        gateway_resolver: Optional[GatewayResolver] = None,
        connect: Optional[ConnectFn] = None,
    ) -> None:
        self._preferences = preferences
        self.bridge = LinkBridge(sink)
        self.manager = ConnectionManager(
            self.bridge,
            port=preferences.port,
            use_gateway_ip=preferences.use_gateway_ip,
            server_address=preferences.server_address,
            gateway_resolver=gateway_resolver,
            timings=timings,
            connect=connect,
        )
        self.bridge.attach(self.manager)
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    @property
    def state(self) -> ConnectionState:
        return self.manager.state

    def start(self, *, network_available: bool = True) -> None:
        """Begin connecting; without a network signal the first connect waits for one."""
        if self._running:
            return
        self._running = True
        target = "gateway" if self._preferences.use_gateway_ip else self._preferences.server_address
        _LOGGER.info("Starting link client (server=%s port=%d)", target, self._preferences.port)
        if network_available:
            self.manager.on_network_available()

    def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        self.manager.shutdown()
        reader = self.bridge.reader_thread
        if reader is not None:
            reader.join(timeout=2.0)
        _LOGGER.info("Link client stopped")
