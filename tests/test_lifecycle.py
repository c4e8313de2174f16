from __future__ import annotations

import logging
import threading

from gnss_shared.lifecycle import LifecycleTracker


class _ListHandler(logging.Handler):
    def __init__(self) -> None:
        super().__init__(level=logging.DEBUG)
        self.messages = []

    def emit(self, record: logging.LogRecord) -> None:
        self.messages.append(record.getMessage())


def _tracker():
    logger = logging.getLogger("test.lifecycle")
    logger.setLevel(logging.DEBUG)
    logger.propagate = False
    handler = _ListHandler()
    logger.handlers = [handler]
    return LifecycleTracker(logger), handler


def test_join_all_untracks_finished_workers():
    tracker, _handler = _tracker()
    worker = threading.Thread(target=lambda: None, name="worker")
    tracker.track_thread(worker, "session 10.0.0.2:5000")
    worker.start()

    assert tracker.join_all(timeout=1.0) == []
    assert tracker.threads == []


def test_join_all_reports_stuck_session_by_label():
    tracker, handler = _tracker()
    release = threading.Event()
    stuck = threading.Thread(target=release.wait, name="stuck", daemon=True)
    tracker.track_thread(stuck, "session 10.0.0.3:5001")
    stuck.start()
    try:
        assert tracker.join_all(timeout=0.05) == ["session 10.0.0.3:5001"]
        assert tracker.threads == [stuck]
        assert any("session 10.0.0.3:5001" in message for message in handler.messages)
    finally:
        release.set()
        stuck.join(timeout=1.0)

    assert tracker.join_thread(stuck, timeout=1.0)
    assert tracker.threads == []


def test_join_thread_skips_current_thread_and_none():
    tracker, _handler = _tracker()
    tracker.track_thread(None)
    assert tracker.join_thread(None)
    current = threading.current_thread()
    tracker.track_thread(current)
    assert tracker.label_of(current) == current.name
    assert tracker.join_thread(current, timeout=0.01)
    tracker.untrack_thread(current)
    assert tracker.threads == []
