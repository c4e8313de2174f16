"""Turns inbound frames and connection changes into consumer events."""
from __future__ import annotations

import socket
import threading
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Optional, Union

from gnss_shared.logging_utils import get_logger
from gnss_shared.models import ConnectionState, LocationUpdate, ServerResponse
from gnss_shared.wire_codec import WireProtocolError, decode_response, read_frame

if TYPE_CHECKING:
    from gnss_client.connection_manager import ConnectionManager

_LOGGER = get_logger("Client.LinkBridge")


@dataclass(frozen=True)
class StateChanged:
    state: ConnectionState
    message: str
    server_address: Optional[str]


@dataclass(frozen=True)
class Connected:
    server_address: str


@dataclass(frozen=True)
class Disconnected:
    pass


@dataclass(frozen=True)
class StatusReceived:
    text: str


@dataclass(frozen=True)
class LocationReceived:
    update: LocationUpdate
    received_at_ms: int


LinkEvent = Union[StateChanged, Connected, Disconnected, StatusReceived, LocationReceived]
LinkEventSink = Callable[[LinkEvent], None]


class LinkBridge:
    """Connection listener that reads frames for the live socket and forwards link events.

    Every event reaches the consumer through the single ``sink`` callable.
    Connection events are delivered on the connection manager's executor
    thread; status and location events on the frame reader thread.
    """

    def __init__(
        self,
        sink: LinkEventSink,
        *,
        time_source: Callable[[], float] = time.time,
    ) -> None:
        self._sink = sink
        self._time = time_source
        self._manager: Optional["ConnectionManager"] = None
        self._lock = threading.Lock()
        self._generation = 0
        self._reader: Optional[threading.Thread] = None
        self._last_response: Optional[ServerResponse] = None
        self._last_location: Optional[LocationUpdate] = None
        self._last_update_ms: Optional[int] = None

    def attach(self, manager: "ConnectionManager") -> None:
        self._manager = manager

    @property
    def last_response(self) -> Optional[ServerResponse]:
        return self._last_response

    @property
    def last_location(self) -> Optional[LocationUpdate]:
        return self._last_location

    @property
    def last_update_ms(self) -> Optional[int]:
        return self._last_update_ms

    @property
    def reader_thread(self) -> Optional[threading.Thread]:
        return self._reader

    # ConnectionListener ------------------------------------------------------

    def on_connection_state_changed(
        self, state: ConnectionState, message: str, server_address: Optional[str]
    ) -> None:
        _LOGGER.debug("Connection state: %s - %s", state.name, message)
        self._emit(StateChanged(state, message, server_address))

    def on_connection_established(self, sock: socket.socket, server_address: str) -> None:
        _LOGGER.info("Connection established with %s, starting frame reader", server_address)
        with self._lock:
            self._generation += 1
            generation = self._generation
        self._emit(Connected(server_address))
        reader = threading.Thread(
            target=self._read_loop,
            args=(sock, generation),
            name="GNSSShare-FrameReader",
            daemon=True,
        )
        self._reader = reader
        reader.start()

    def on_disconnected(self) -> None:
        _LOGGER.info("Connection closed, stopping frame reader")
        with self._lock:
            self._generation += 1
        self._emit(Disconnected())

    # Frame reader -----------------------------------------------------------

    def _is_current(self, generation: int) -> bool:
        with self._lock:
            return generation == self._generation

    def _read_loop(self, sock: socket.socket, generation: int) -> None:
        reason = "Frame reader stopped"
        liveness = False
        try:
            while self._is_current(generation):
                response = decode_response(read_frame(sock))
                if not self._is_current(generation):
                    return
                self._dispatch(response)
        except socket.timeout:
            reason = "No data from server within read timeout"
            liveness = True
        except WireProtocolError as exc:
            reason = f"Protocol error: {exc}"
        except OSError as exc:
            reason = f"Error receiving location update: {exc}"
        if not self._is_current(generation):
            return
        _LOGGER.warning("Frame reader ended: %s", reason)
        manager = self._manager
        if manager is not None:
            manager.connection_lost(reason, sock=sock, liveness=liveness)

    def _dispatch(self, response: ServerResponse) -> None:
        self._last_response = response
        if response.status is not None:
            _LOGGER.info("Server status: %s", response.status)
            self._emit(StatusReceived(response.status))
        update = response.location_update
        if update is not None:
            received_at = int(self._time() * 1000)
            self._last_location = update
            self._last_update_ms = received_at
            _LOGGER.debug(
                "Location received: %.6f,%.6f sats=%d age=%.1fs",
                update.latitude,
                update.longitude,
                update.satellites,
                update.location_age,
            )
            self._emit(LocationReceived(update, received_at))

    def _emit(self, event: LinkEvent) -> None:
        try:
            self._sink(event)
        except Exception as exc:
            _LOGGER.error("Link event sink raised error for %s: %s", type(event).__name__, exc, exc_info=exc)
