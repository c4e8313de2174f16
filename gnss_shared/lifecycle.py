"""Bookkeeping for the worker threads a link server owns, so ``stop()`` can join them."""
from __future__ import annotations

import logging
import threading
import time
from typing import Dict, List, Optional


class LifecycleTracker:
    """Labelled set of live worker threads (accept loop, one per client session).

    Labels show up in shutdown warnings so a stuck receiver can be identified.
    Threads that do not exit in time stay tracked until they do.
    """

    def __init__(self, logger: logging.Logger) -> None:
        self._logger = logger
        self._lock = threading.Lock()
        self._threads: Dict[threading.Thread, str] = {}

    @property
    def threads(self) -> List[threading.Thread]:
        with self._lock:
            return list(self._threads)

    def label_of(self, thread: threading.Thread) -> Optional[str]:
        with self._lock:
            return self._threads.get(thread)

    def track_thread(self, thread: Optional[threading.Thread], label: Optional[str] = None) -> None:
        if thread is None:
            return
        with self._lock:
            self._threads[thread] = label or thread.name

    def untrack_thread(self, thread: Optional[threading.Thread]) -> None:
        if thread is None:
            return
        with self._lock:
            self._threads.pop(thread, None)

    def _join(self, thread: threading.Thread, timeout: float) -> bool:
        if thread is threading.current_thread():
            return True
        thread.join(timeout=timeout)
        if thread.is_alive():
            return False
        self.untrack_thread(thread)
        return True

    def join_thread(self, thread: Optional[threading.Thread], *, timeout: float = 2.0) -> bool:
        if thread is None:
            return True
        label = self.label_of(thread) or thread.name
        if self._join(thread, timeout):
            return True
        self._logger.warning("%s did not exit cleanly within %.1fs", label, timeout)
        return False

    def join_all(self, *, timeout: float = 2.0) -> List[str]:
        """Join every tracked thread within one shared deadline; returns the labels still running."""
        deadline = time.monotonic() + timeout
        stragglers: List[str] = []
        for thread in self.threads:
            label = self.label_of(thread) or thread.name
            if not self._join(thread, max(0.0, deadline - time.monotonic())):
                stragglers.append(label)
        if stragglers:
            self._logger.warning("Workers still running after %.1fs: %s", timeout, ", ".join(stragglers))
        return stragglers

    def log_state(self, label: str) -> None:
        with self._lock:
            live = [name for thread, name in self._threads.items() if thread.is_alive()]
        if live:
            self._logger.debug("Tracked workers %s: %s", label, live)
