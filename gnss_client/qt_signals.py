"""Qt adapter that re-emits link events as signals for UI consumers."""
from __future__ import annotations

from PyQt6.QtCore import QObject, pyqtSignal

from gnss_client.link_bridge import (
    Connected,
    Disconnected,
    LinkEvent,
    LocationReceived,
    StateChanged,
    StatusReceived,
)
from gnss_shared.logging_utils import get_logger

_LOGGER = get_logger("Client.QtSignals")


class QtLinkSignals(QObject):
    """Link event sink that forwards events to the Qt thread."""

    state_changed = pyqtSignal(str, str, str)
    connected = pyqtSignal(str)
    disconnected = pyqtSignal()
    status_received = pyqtSignal(str)
    location_received = pyqtSignal(object, int)

    def handle_event(self, event: LinkEvent) -> None:
        if isinstance(event, StateChanged):
            self.state_changed.emit(event.state.name, event.message, event.server_address or "")
        elif isinstance(event, Connected):
            self.connected.emit(event.server_address)
        elif isinstance(event, Disconnected):
            self.disconnected.emit()
        elif isinstance(event, StatusReceived):
            self.status_received.emit(event.text)
        elif isinstance(event, LocationReceived):
            self.location_received.emit(event.update, event.received_at_ms)
        else:
            _LOGGER.warning("Dropping unknown link event: %r", event)
