"""Holds the latest server response and fans telemetry out to every session."""
from __future__ import annotations

import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, List, Optional

from gnss_server.client_session import ClientSession
from gnss_shared.logging_utils import get_logger
from gnss_shared.models import ServerResponse, ServerStatus
from gnss_shared.wire_codec import WireProtocolError, encode_frame, encode_response

_LOGGER = get_logger("Server.Broadcaster")

Dispatch = Callable[[Callable[[], Any]], Any]
SessionSource = Callable[[], List[ClientSession]]


def _log_broadcast_failure(future: "Future[int]") -> None:
    if future.cancelled():
        return
    exc = future.exception()
    if exc is not None:
        _LOGGER.error("Broadcast failed: %s", exc, exc_info=exc)


class Broadcaster:
    """Last-known-response cache plus fan-out.

    ``latest`` is read by session threads when answering heartbeats;
    ``publish`` replaces it and queues a broadcast so the ingest path never
    blocks on a slow receiver.
    """

    def __init__(
        self,
        sessions: SessionSource,
        *,
        dispatch: Optional[Dispatch] = None,
    ) -> None:
        self._sessions = sessions
        self._lock = threading.Lock()
        self._latest = ServerResponse.from_status(ServerStatus.UNINITIALIZED)
        self._pool: Optional[ThreadPoolExecutor] = None
        if dispatch is None:
            self._pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="GNSSShare-Broadcast")
            dispatch = self._pool.submit
        self._dispatch = dispatch

    def latest(self) -> ServerResponse:
        with self._lock:
            return self._latest

    def publish_status(self, status: ServerStatus | str) -> None:
        """Replace the cached response with a status; sessions pick it up on their next heartbeat."""
        response = ServerResponse.from_status(status)
        with self._lock:
            self._latest = response
        _LOGGER.debug("Server status set to %s", response.status)

    def publish(self, response: ServerResponse) -> None:
        with self._lock:
            self._latest = response
        try:
            future = self._dispatch(lambda: self.broadcast(response))
        except RuntimeError as exc:
            _LOGGER.debug("Broadcast skipped, dispatcher unavailable: %s", exc)
            return
        if isinstance(future, Future):
            future.add_done_callback(_log_broadcast_failure)

    def broadcast(self, response: ServerResponse) -> int:
        """Send ``response`` to every current session; returns how many accepted it."""
        sessions = self._sessions()
        if not sessions:
            return 0
        try:
            frame = encode_frame(encode_response(response))
        except (WireProtocolError, ValueError) as exc:
            _LOGGER.error("Dropping broadcast, response cannot be encoded: %s", exc)
            return 0
        delivered = 0
        for session in sessions:
            try:
                if session.send_frame(frame):
                    delivered += 1
            except Exception as exc:
                _LOGGER.error("Unexpected error sending to %s: %s", session.address, exc, exc_info=exc)
                session.close(f"Send failed: {exc}")
        if delivered < len(sessions):
            _LOGGER.debug("Broadcast reached %d of %d clients", delivered, len(sessions))
        return delivered

    def close(self) -> None:
        pool = self._pool
        self._pool = None
        if pool is not None:
            pool.shutdown(wait=True, cancel_futures=True)
