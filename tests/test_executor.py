from __future__ import annotations

import logging
import threading
import time

import pytest

from gnss_shared.executor import SerialExecutor, TimerHandle


@pytest.fixture
def executor():
    runner = SerialExecutor("test-serial", logger=logging.getLogger("test-serial"))
    yield runner
    runner.shutdown(timeout=1.0)


def test_tasks_run_in_submission_order_on_one_thread(executor):
    seen = []
    threads = set()
    done = threading.Event()

    for index in range(20):
        def _task(value=index):
            seen.append(value)
            threads.add(threading.current_thread().name)

        executor.submit(_task)
    executor.submit(done.set)

    assert done.wait(timeout=1.0)
    assert seen == list(range(20))
    assert threads == {"test-serial"}


def test_run_sync_returns_value_and_propagates_errors(executor):
    assert executor.run_sync(lambda: 41 + 1) == 42

    def _boom():
        raise ValueError("nope")

    with pytest.raises(ValueError):
        executor.run_sync(_boom)


def test_run_sync_inline_when_already_on_executor(executor):
    def _outer():
        assert executor.in_executor_thread()
        return executor.run_sync(lambda: "nested")

    assert executor.run_sync(_outer) == "nested"


def test_timer_fires_after_delay(executor):
    fired = threading.Event()
    started = time.monotonic()
    handle = executor.call_later(0.05, fired.set, name="fire")

    assert isinstance(handle, TimerHandle)
    assert fired.wait(timeout=1.0)
    assert time.monotonic() - started >= 0.04
    assert not handle.pending


def test_cancelled_timer_never_fires(executor):
    fired = threading.Event()
    handle = executor.call_later(0.05, fired.set, name="cancel-me")
    handle.cancel()

    assert handle.cancelled
    assert not fired.wait(timeout=0.2)


def test_timers_fire_in_deadline_order(executor):
    order = []
    done = threading.Event()
    executor.call_later(0.06, lambda: (order.append("late"), done.set()), name="late")
    executor.call_later(0.02, lambda: order.append("early"), name="early")

    assert done.wait(timeout=1.0)
    assert order == ["early", "late"]


def test_failing_task_is_logged_and_worker_survives(executor):
    records = []

    class _Capture(logging.Handler):
        def emit(self, record):
            records.append(record)

    logger = logging.getLogger("test-serial")
    handler = _Capture()
    logger.addHandler(handler)
    try:
        executor.submit(lambda: 1 / 0)
        assert executor.run_sync(lambda: "still alive") == "still alive"
    finally:
        logger.removeHandler(handler)

    assert any(record.levelno == logging.ERROR for record in records)


def test_shutdown_rejects_new_work_and_cancels_timers():
    runner = SerialExecutor("test-shutdown")
    fired = threading.Event()
    handle = runner.call_later(0.5, fired.set, name="pending")

    runner.shutdown(timeout=1.0)

    assert runner.stopped
    assert handle.cancelled
    assert runner.submit(lambda: None) is False
    assert runner.call_later(0.0, fired.set).cancelled
    with pytest.raises(RuntimeError):
        runner.run_sync(lambda: None)
    assert not runner.thread.is_alive()
    assert not fired.is_set()


def test_double_shutdown_is_harmless():
    runner = SerialExecutor("test-double")
    runner.start()
    runner.shutdown(timeout=1.0)
    runner.shutdown(timeout=1.0)
    assert runner.stopped
