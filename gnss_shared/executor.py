"""Single-thread task runner with cancellable timers.

Every state-machine mutation on either end of the link runs on one of these so
transitions never overlap. Timers are returned as ``TimerHandle`` objects and
cancelled through the handle.
"""
from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from collections import deque
from typing import Any, Callable, Deque, List, Optional, Tuple

from gnss_shared.logging_utils import get_logger

_LOGGER = get_logger("Executor")


class TimerHandle:
    """A scheduled callback that can be cancelled until it has started running."""

    __slots__ = ("name", "deadline", "_callback", "_cancelled", "_fired")

    def __init__(self, name: str, deadline: float, callback: Callable[[], None]) -> None:
        self.name = name
        self.deadline = deadline
        self._callback = callback
        self._cancelled = False
        self._fired = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def pending(self) -> bool:
        return not self._cancelled and not self._fired

    def _run(self) -> None:
        if self._cancelled:
            return
        self._fired = True
        self._callback()

    def __repr__(self) -> str:
        state = "cancelled" if self._cancelled else ("fired" if self._fired else "pending")
        return f"<TimerHandle {self.name or '?'} {state}>"


class SerialExecutor:
    """Runs submitted callables and due timers one at a time on a worker thread."""

    def __init__(
        self,
        name: str = "GNSSShare-Serial",
        *,
        logger: Optional[logging.Logger] = None,
        time_source: Callable[[], float] = time.monotonic,
    ) -> None:
        self._name = name
        self._logger = logger or _LOGGER
        self._time = time_source
        self._cond = threading.Condition()
        self._tasks: Deque[Callable[[], Any]] = deque()
        self._timers: List[Tuple[float, int, TimerHandle]] = []
        self._sequence = itertools.count()
        self._stopped = False
        self._worker: Optional[threading.Thread] = None

    @property
    def thread(self) -> Optional[threading.Thread]:
        return self._worker

    @property
    def stopped(self) -> bool:
        return self._stopped

    def start(self) -> None:
        with self._cond:
            if self._stopped or (self._worker and self._worker.is_alive()):
                return
            worker = threading.Thread(target=self._loop, name=self._name, daemon=True)
            self._worker = worker
        worker.start()

    def in_executor_thread(self) -> bool:
        return self._worker is not None and threading.current_thread() is self._worker

    def submit(self, func: Callable[[], Any]) -> bool:
        """Queue ``func``; returns False once the executor has been shut down."""
        self.start()
        with self._cond:
            if self._stopped:
                return False
            self._tasks.append(func)
            self._cond.notify()
        return True

    def call_later(self, delay: float, func: Callable[[], None], *, name: str = "") -> TimerHandle:
        self.start()
        handle = TimerHandle(name, self._time() + max(0.0, delay), func)
        with self._cond:
            if self._stopped:
                handle.cancel()
                return handle
            heapq.heappush(self._timers, (handle.deadline, next(self._sequence), handle))
            self._cond.notify()
        return handle

    def run_sync(self, func: Callable[[], Any], *, timeout: Optional[float] = 5.0) -> Any:
        """Run ``func`` on the executor thread and wait for its result."""
        if self.in_executor_thread():
            return func()
        done = threading.Event()
        outcome: dict[str, Any] = {}

        def _wrapper() -> None:
            try:
                outcome["value"] = func()
            except Exception as exc:
                outcome["error"] = exc
            finally:
                done.set()

        if not self.submit(_wrapper):
            raise RuntimeError(f"{self._name} has been shut down")
        if not done.wait(timeout):
            raise TimeoutError(f"{self._name} did not run task within {timeout}s")
        if "error" in outcome:
            raise outcome["error"]
        return outcome.get("value")

    def shutdown(self, *, wait: bool = True, timeout: float = 2.0) -> None:
        """Drop queued work and pending timers, then stop the worker."""
        with self._cond:
            self._stopped = True
            self._tasks.clear()
            for _deadline, _seq, handle in self._timers:
                handle.cancel()
            self._timers.clear()
            self._cond.notify_all()
        worker = self._worker
        if wait and worker is not None and worker is not threading.current_thread():
            worker.join(timeout=timeout)
            if worker.is_alive():
                self._logger.warning("Thread %s did not exit cleanly within %.1fs", worker.name, timeout)

    # Internal helpers -----------------------------------------------------

    def _next_item(self) -> Optional[Callable[[], Any]]:
        with self._cond:
            while not self._stopped:
                if self._tasks:
                    return self._tasks.popleft()
                if self._timers:
                    deadline, _seq, handle = self._timers[0]
                    if handle.cancelled:
                        heapq.heappop(self._timers)
                        continue
                    remaining = deadline - self._time()
                    if remaining <= 0:
                        heapq.heappop(self._timers)
                        return handle._run
                    self._cond.wait(timeout=remaining)
                else:
                    self._cond.wait()
        return None

    def _loop(self) -> None:
        while True:
            task = self._next_item()
            if task is None:
                break
            try:
                task()
            except Exception as exc:
                self._logger.error("Task on %s failed: %s", self._name, exc, exc_info=exc)
