"""Tracks connected sessions and drives position ingestion from membership."""
from __future__ import annotations

import threading
from typing import Callable, List, Optional, Protocol

from gnss_server.client_session import ClientSession
from gnss_shared.executor import SerialExecutor, TimerHandle
from gnss_shared.logging_utils import get_logger

_LOGGER = get_logger("Server.Registry")

MembershipListener = Callable[[int, str], None]


class IngestionControl(Protocol):
    def start_ingestion(self) -> None: ...

    def stop_ingestion(self) -> None: ...


class SessionRegistry:
    """Thread-safe set of live sessions.

    Membership may change from any session thread. Ingestion decisions are
    made on ``executor`` by re-reading the current count, so a late stop can
    never follow a newer start. When the last session leaves, ingestion keeps
    running for ``grace`` seconds in case a receiver reconnects.
    """

    def __init__(
        self,
        ingestion: IngestionControl,
        *,
        executor: SerialExecutor,
        grace: float,
        on_change: Optional[MembershipListener] = None,
    ) -> None:
        self._ingestion = ingestion
        self._executor = executor
        self._grace = grace
        self._on_change = on_change
        self._lock = threading.Lock()
        self._sessions: List[ClientSession] = []
        self._active = False
        self._grace_timer: Optional[TimerHandle] = None

    @property
    def count(self) -> int:
        with self._lock:
            return len(self._sessions)

    @property
    def active(self) -> bool:
        return self._active

    @property
    def grace_timer(self) -> Optional[TimerHandle]:
        return self._grace_timer

    def snapshot(self) -> List[ClientSession]:
        """Copy of the current sessions, safe to iterate while membership changes."""
        with self._lock:
            return list(self._sessions)

    def add(self, session: ClientSession) -> None:
        with self._lock:
            self._sessions.append(session)
            count = len(self._sessions)
            self._executor.submit(lambda: self._reconcile(f"Client connected: {session.address}"))
        _LOGGER.info("New client connected: %s (total clients: %d)", session.address, count)

    def remove(self, session: ClientSession) -> None:
        with self._lock:
            if session not in self._sessions:
                _LOGGER.debug("Session %s already removed", session.address)
                return
            self._sessions.remove(session)
            count = len(self._sessions)
            self._executor.submit(lambda: self._reconcile(f"Client disconnected: {session.address}"))
        _LOGGER.info("Client disconnected: %s (remaining clients: %d)", session.address, count)

    def close_all(self) -> None:
        for session in self.snapshot():
            session.close("Server stopping")

    def shutdown(self) -> None:
        """Cancel the grace timer and stop ingestion now; called on the executor thread."""
        self._cancel_grace()
        if self._active:
            self._active = False
            self._ingestion.stop_ingestion()

    # Executor side -----------------------------------------------------------

    def _reconcile(self, reason: str) -> None:
        count = self.count
        if count > 0:
            if self._cancel_grace():
                _LOGGER.info("Client returned, cancelled pending ingestion stop")
            if not self._active:
                self._active = True
                _LOGGER.info("First client connected, starting position ingestion")
                self._ingestion.start_ingestion()
        elif self._active and self._grace_timer is None:
            _LOGGER.info("No clients left, stopping position ingestion in %.1fs", self._grace)
            self._grace_timer = self._executor.call_later(self._grace, self._grace_expired, name="ingestion-grace")
        if self._on_change is not None:
            try:
                self._on_change(count, reason)
            except Exception as exc:
                _LOGGER.error("Membership listener raised error: %s", exc, exc_info=exc)

    def _grace_expired(self) -> None:
        self._grace_timer = None
        if self.count == 0 and self._active:
            self._active = False
            _LOGGER.info("Grace period elapsed with no clients, stopping position ingestion")
            self._ingestion.stop_ingestion()

    def _cancel_grace(self) -> bool:
        timer = self._grace_timer
        self._grace_timer = None
        if timer is None or not timer.pending:
            return False
        timer.cancel()
        return True
