"""Feeds position fixes into the broadcaster and reports server status."""
from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional, Protocol

from gnss_server.broadcaster import Broadcaster
from gnss_shared.logging_utils import get_logger
from gnss_shared.models import PositionFix, ServerResponse, ServerStatus

_LOGGER = get_logger("Server.PositionBridge")


class PositionSource(Protocol):
    """External producer of fixes; it calls back into the bridge while started."""

    def start(self, bridge: "PositionBridge") -> None: ...

    def stop(self) -> None: ...


@dataclass(frozen=True)
class ServerSnapshot:
    """What a status display shows about the running server."""

    clients: int
    satellites: int
    ingesting: bool
    status: str
    last_fix_age: Optional[float]
    reason: str


StatusListener = Callable[[ServerSnapshot], None]


def _now_ms() -> int:
    return int(time.time() * 1000)


class PositionBridge:
    """Ingestion control for the registry and the single writer of location updates."""

    def __init__(
        self,
        broadcaster: Broadcaster,
        source: PositionSource,
        *,
        client_count: Callable[[], int],
        status_listener: Optional[StatusListener] = None,
        clock_ms: Callable[[], int] = _now_ms,
    ) -> None:
        self._broadcaster = broadcaster
        self._source = source
        self._client_count = client_count
        self._status_listener = status_listener
        self._clock_ms = clock_ms
        self._lock = threading.Lock()
        self._ingesting = False
        self._started_once = False
        self._satellites = 0
        self._last_fix: Optional[PositionFix] = None

    @property
    def ingesting(self) -> bool:
        return self._ingesting

    @property
    def satellites(self) -> int:
        return self._satellites

    # IngestionControl --------------------------------------------------------

    def start_ingestion(self) -> None:
        with self._lock:
            if self._ingesting:
                return
            self._ingesting = True
            self._started_once = True
            self._last_fix = None
        self._broadcaster.publish_status(ServerStatus.AWAITING_LOCATION)
        try:
            self._source.start(self)
        except Exception as exc:
            _LOGGER.error("Position source failed to start: %s", exc, exc_info=exc)
        _LOGGER.info("Started position ingestion")
        self._notify("Started location updates")

    def stop_ingestion(self) -> None:
        with self._lock:
            if not self._ingesting:
                return
            self._ingesting = False
        try:
            self._source.stop()
        except Exception as exc:
            _LOGGER.error("Position source failed to stop: %s", exc, exc_info=exc)
        self._broadcaster.publish_status(ServerStatus.LOCATION_STOPPED)
        _LOGGER.info("Stopped position ingestion")
        self._notify("Stopped location updates")

    # Source callbacks --------------------------------------------------------

    def on_fix(self, fix: PositionFix) -> None:
        with self._lock:
            if not self._ingesting:
                _LOGGER.debug("Dropping fix received while ingestion is stopped")
                return
            self._last_fix = fix
            satellites = self._satellites
        update = fix.to_location_update(satellites=satellites, now_ms=self._clock_ms())
        _LOGGER.debug(
            "Fix %.6f,%.6f sats=%d age=%.1fs",
            update.latitude,
            update.longitude,
            update.satellites,
            update.location_age,
        )
        self._broadcaster.publish(ServerResponse.from_location(update))
        self._notify("Received location update")

    def on_satellite_count(self, count: int) -> None:
        with self._lock:
            previous = self._satellites
            self._satellites = max(0, int(count))
            waiting = self._last_fix is None
        if self._satellites != previous and waiting:
            self._notify("Satellite count changed")

    def on_membership_changed(self, count: int, reason: str) -> None:
        self._notify(reason)

    # Status ------------------------------------------------------------------

    def snapshot(self, reason: str = "") -> ServerSnapshot:
        with self._lock:
            ingesting = self._ingesting
            satellites = self._satellites
            fix = self._last_fix
        age = None
        if fix is not None:
            age = (self._clock_ms() - fix.timestamp) / 1000.0
        if not ingesting:
            status = ServerStatus.LOCATION_STOPPED.text if self._started_once else ServerStatus.UNINITIALIZED.text
        elif fix is None:
            status = ServerStatus.AWAITING_LOCATION.text
        else:
            status = ServerStatus.TRANSMITTING_LOCATION.text
        return ServerSnapshot(
            clients=self._client_count(),
            satellites=satellites,
            ingesting=ingesting,
            status=status,
            last_fix_age=age,
            reason=reason,
        )

    def _notify(self, reason: str) -> None:
        listener = self._status_listener
        if listener is None:
            return
        try:
            listener(self.snapshot(reason))
        except Exception as exc:
            _LOGGER.error("Status listener raised error: %s", exc, exc_info=exc)
