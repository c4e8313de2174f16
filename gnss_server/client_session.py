"""Per-connection heartbeat tracking and frame delivery on the server."""
from __future__ import annotations

import socket
import threading
import time
from typing import Callable, Optional

from gnss_shared.logging_utils import get_logger
from gnss_shared.models import ServerResponse
from gnss_shared.timings import DEFAULT_TIMINGS, LinkTimings
from gnss_shared.wire_codec import WireProtocolError, encode_frame, encode_response, is_heartbeat

_LOGGER = get_logger("Server.ClientSession")

ResponseProvider = Callable[[], ServerResponse]
SessionClosedFn = Callable[["ClientSession"], None]


class ClientSession:
    """One connected receiver.

    ``run`` blocks on the session's worker thread reading heartbeat bytes.
    ``send``/``send_frame`` may be called from any thread; writes are
    serialised so frames never interleave on the wire.
    """

    def __init__(
        self,
        sock: socket.socket,
        address: str,
        *,
        responses: ResponseProvider,
        on_closed: SessionClosedFn,
        timings: LinkTimings = DEFAULT_TIMINGS,
        time_source: Callable[[], float] = time.monotonic,
    ) -> None:
        self._sock = sock
        self._address = address
        self._responses = responses
        self._on_closed = on_closed
        self._timings = timings
        self._time = time_source
        self._send_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._closed = False
        self._last_heartbeat = self._time()
        self._last_response_sent: Optional[float] = None
        self.close_reason: Optional[str] = None

    def __repr__(self) -> str:
        return f"<ClientSession {self._address}{' closed' if self._closed else ''}>"

    @property
    def address(self) -> str:
        return self._address

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def last_heartbeat(self) -> float:
        return self._last_heartbeat

    @property
    def last_response_sent(self) -> Optional[float]:
        return self._last_response_sent

    # Read side ---------------------------------------------------------------

    def run(self) -> None:
        """Serve the peer until it disconnects, goes silent or the session is closed."""
        reason = "Session closed"
        try:
            self._sock.settimeout(self._timings.session_read_timeout)
            while not self._closed:
                try:
                    data = self._sock.recv(1)
                except socket.timeout:
                    data = None
                except OSError as exc:
                    reason = f"I/O error: {exc}"
                    _LOGGER.info("Client disconnected: %s - %s", self._address, exc)
                    break
                else:
                    if not data:
                        reason = "Client closed connection"
                        _LOGGER.info("Client closed connection: %s", self._address)
                        break
                    if is_heartbeat(data):
                        self._on_heartbeat()
                        continue
                    _LOGGER.warning("Unknown packet received from client %s: 0x%02x", self._address, data[0])

                silence = self._time() - self._last_heartbeat
                if silence > self._timings.heartbeat_timeout:
                    reason = "Heartbeat timeout"
                    _LOGGER.warning(
                        "Heartbeat timeout for client: %s (last heartbeat %dms ago)",
                        self._address,
                        int(silence * 1000),
                    )
                    break
        except OSError as exc:
            reason = f"I/O error: {exc}"
            _LOGGER.error("Error in client session for %s: %s", self._address, exc)
        finally:
            self.close(reason)

    def _on_heartbeat(self) -> None:
        now = self._time()
        if now > self._last_heartbeat:
            self._last_heartbeat = now
        _LOGGER.debug("Heartbeat received from: %s", self._address)
        response = self._responses()
        last_sent = self._last_response_sent
        stale = last_sent is None or now - last_sent > self._timings.response_spacing
        if stale or not response.has_location_update:
            self.send(response)

    # Write side --------------------------------------------------------------

    def send(self, response: ServerResponse) -> bool:
        """Encode and write ``response``; an unencodable response is logged and skipped."""
        try:
            frame = encode_frame(encode_response(response))
        except (WireProtocolError, ValueError) as exc:
            _LOGGER.error("Cannot encode response for client %s: %s", self._address, exc)
            return False
        return self.send_frame(frame)

    def send_frame(self, frame: bytes) -> bool:
        """Write one encoded frame; a failure closes this session only."""
        if self._closed:
            return False
        try:
            with self._send_lock:
                self._sock.sendall(frame)
        except OSError as exc:
            _LOGGER.warning("Error sending to client %s: %s", self._address, exc)
            self.close(f"Write failed: {exc}")
            return False
        self._last_response_sent = self._time()
        return True

    # Teardown ----------------------------------------------------------------

    def close(self, reason: str = "Session closed") -> None:
        """Close the socket once and always report the session as gone."""
        with self._state_lock:
            first = not self._closed
            self._closed = True
            if first:
                self.close_reason = reason
        if first:
            try:
                self._sock.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
            try:
                self._sock.close()
            except OSError as exc:
                _LOGGER.error("Error closing client socket %s: %s", self._address, exc)
        self._on_closed(self)
