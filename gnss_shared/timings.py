"""Link constants and timing knobs shared by both ends of the link."""
from __future__ import annotations

from dataclasses import dataclass

DEFAULT_PORT = 8887
DEFAULT_SERVER_ADDRESS = "192.168.43.1"


@dataclass(frozen=True)
class LinkTimings:
    """All link intervals and timeouts, in seconds."""

    # Client side
    connect_timeout: float = 0.5
    read_timeout: float = 2.0
    heartbeat_interval: float = 1.0
    health_check_interval: float = 1.0
    gateway_poll_interval: float = 1.0
    reconnect_delay: float = 0.5

    # Server side
    session_read_timeout: float = 1.0
    heartbeat_timeout: float = 3.0
    response_spacing: float = 1.0
    ingestion_grace: float = 15.0

    def scaled(self, factor: float) -> "LinkTimings":
        """Return a copy with every interval multiplied by ``factor``."""
        return LinkTimings(
            connect_timeout=self.connect_timeout * factor,
            read_timeout=self.read_timeout * factor,
            heartbeat_interval=self.heartbeat_interval * factor,
            health_check_interval=self.health_check_interval * factor,
            gateway_poll_interval=self.gateway_poll_interval * factor,
            reconnect_delay=self.reconnect_delay * factor,
            session_read_timeout=self.session_read_timeout * factor,
            heartbeat_timeout=self.heartbeat_timeout * factor,
            response_spacing=self.response_spacing * factor,
            ingestion_grace=self.ingestion_grace * factor,
        )


DEFAULT_TIMINGS = LinkTimings()
