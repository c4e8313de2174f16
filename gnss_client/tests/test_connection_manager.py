from __future__ import annotations

import logging
import socket
from typing import Callable, List, Optional, Tuple

import pytest

from gnss_client.connection_manager import CONNECTING_MESSAGE, ConnectionManager, check_socket_health
from gnss_shared.models import ConnectionState
from gnss_shared.timings import LinkTimings
from gnss_shared.wire_codec import HEARTBEAT

TIMINGS = LinkTimings()


class StubHandle:
    def __init__(self, name: str, delay: float, callback: Callable[[], None]) -> None:
        self.name = name
        self.delay = delay
        self.callback = callback
        self.cancelled = False
        self.fired = False

    def cancel(self) -> None:
        self.cancelled = True

    @property
    def pending(self) -> bool:
        return not self.cancelled and not self.fired


class ManualExecutor:
    """Stand-in for SerialExecutor: work runs only when the test drains or fires it."""

    def __init__(self) -> None:
        self.tasks: List[Callable[[], None]] = []
        self.timers: List[StubHandle] = []
        self.stopped = False

    def submit(self, fn: Callable[[], None]) -> bool:
        if self.stopped:
            return False
        self.tasks.append(fn)
        return True

    def call_later(self, delay: float, fn: Callable[[], None], *, name: str = "") -> StubHandle:
        handle = StubHandle(name, delay, fn)
        if self.stopped:
            handle.cancel()
        self.timers.append(handle)
        return handle

    def run_sync(self, fn: Callable[[], object], *, timeout: Optional[float] = None) -> object:
        if self.stopped:
            raise RuntimeError("stopped")
        self.drain()
        return fn()

    def in_executor_thread(self) -> bool:
        return True

    def shutdown(self, *, wait: bool = True, timeout: float = 2.0) -> None:
        self.stopped = True
        self.tasks.clear()
        for handle in self.timers:
            handle.cancel()

    def drain(self) -> None:
        while self.tasks:
            self.tasks.pop(0)()

    def pending(self, name: str) -> List[StubHandle]:
        return [handle for handle in self.timers if handle.name == name and handle.pending]

    def fire(self, name: str) -> None:
        handles = self.pending(name)
        assert handles, f"no pending timer named {name}"
        handle = handles[0]
        handle.fired = True
        handle.callback()
        self.drain()


class DeferredPool:
    """I/O pool that holds blocking jobs until ``run_all``."""

    def __init__(self) -> None:
        self.jobs: List[Tuple[Callable[..., None], tuple]] = []
        self.shutdown_calls = 0
        self.closed = False

    def submit(self, fn: Callable[..., None], *args: object) -> None:
        if self.closed:
            raise RuntimeError("cannot schedule new futures after shutdown")
        self.jobs.append((fn, args))

    def run_all(self) -> None:
        while self.jobs:
            fn, args = self.jobs.pop(0)
            fn(*args)

    def shutdown(self, wait: bool = True, *, cancel_futures: bool = False) -> None:
        self.shutdown_calls += 1
        self.closed = True


class RecordingListener:
    def __init__(self) -> None:
        self.states: List[Tuple[ConnectionState, str, Optional[str]]] = []
        self.established: List[Tuple[socket.socket, str]] = []
        self.disconnects = 0

    def on_connection_state_changed(self, state, message, server_address) -> None:
        self.states.append((state, message, server_address))

    def on_connection_established(self, sock, server_address) -> None:
        self.established.append((sock, server_address))

    def on_disconnected(self) -> None:
        self.disconnects += 1

    @property
    def state_names(self) -> List[str]:
        return [state.name for state, _message, _address in self.states]


class PairConnector:
    """connect() stand-in handing out the near end of a socketpair."""

    def __init__(self) -> None:
        self.calls: List[Tuple[Tuple[str, int], float]] = []
        self.peers: List[socket.socket] = []
        self.created: List[socket.socket] = []
        self.error: Optional[OSError] = None

    def __call__(self, address: Tuple[str, int], timeout: float) -> socket.socket:
        self.calls.append((address, timeout))
        if self.error is not None:
            raise self.error
        near, far = socket.socketpair()
        far.settimeout(1.0)
        self.created.extend([near, far])
        self.peers.append(far)
        return near

    def close_all(self) -> None:
        for sock in self.created:
            try:
                sock.close()
            except OSError:
                pass


class Harness:
    def __init__(self, **kwargs) -> None:
        self.executor = ManualExecutor()
        self.pool = DeferredPool()
        self.listener = RecordingListener()
        self.connector = PairConnector()
        options = dict(port=8887, use_gateway_ip=False, server_address="10.0.0.2", network_available=True)
        options.update(kwargs)
        self.manager = ConnectionManager(
            self.listener,
            timings=TIMINGS,
            connect=self.connector,
            executor=self.executor,
            io_pool=self.pool,
            **options,
        )

    def step(self) -> None:
        """Drain the executor and the I/O pool until both are idle."""
        self.executor.drain()
        while self.pool.jobs:
            self.pool.run_all()
            self.executor.drain()

    def connect(self) -> socket.socket:
        self.manager.connect()
        self.step()
        assert self.manager.state is ConnectionState.CONNECTED
        return self.connector.peers[-1]


@pytest.fixture
def harness():
    created = []

    def _make(**kwargs) -> Harness:
        item = Harness(**kwargs)
        created.append(item)
        return item

    yield _make
    for item in created:
        item.connector.close_all()


def test_requires_address_when_gateway_disabled():
    with pytest.raises(ValueError):
        ConnectionManager(RecordingListener(), use_gateway_ip=False, server_address=None, executor=ManualExecutor(), io_pool=DeferredPool())


def test_connect_reports_connecting_then_connected(harness):
    h = harness()
    h.connect()

    assert h.listener.states[0] == (ConnectionState.CONNECTING, CONNECTING_MESSAGE, "10.0.0.2")
    assert h.listener.states[-1] == (ConnectionState.CONNECTED, "Connected to 10.0.0.2:8887", "10.0.0.2")
    assert h.connector.calls == [(("10.0.0.2", 8887), TIMINGS.connect_timeout)]
    assert len(h.listener.established) == 1
    assert h.manager.server_address == "10.0.0.2"
    assert h.manager.is_connected


def test_connected_socket_gets_read_timeout(harness):
    h = harness()
    h.connect()
    sock, _address = h.listener.established[0]
    assert sock.gettimeout() == TIMINGS.read_timeout


def test_heartbeat_sent_immediately_and_then_periodically(harness):
    h = harness()
    peer = h.connect()

    h.executor.fire("heartbeat")
    h.step()
    assert peer.recv(1) == HEARTBEAT

    [handle] = h.executor.pending("heartbeat")
    assert handle.delay == TIMINGS.heartbeat_interval
    h.executor.fire("heartbeat")
    h.step()
    assert peer.recv(1) == HEARTBEAT


def test_connect_while_connecting_or_connected_is_ignored(harness):
    h = harness()
    h.manager.connect()
    h.manager.connect()
    h.step()
    h.manager.connect()
    h.step()
    assert len(h.connector.calls) == 1
    assert h.listener.state_names == ["CONNECTING", "CONNECTED"]


def test_refused_connection_reports_failure_and_schedules_reconnect(harness):
    h = harness()
    h.connector.error = ConnectionRefusedError(111, "Connection refused")
    h.manager.connect()
    h.step()

    assert h.listener.state_names == ["CONNECTING", "DISCONNECTED"]
    assert h.listener.states[-1][1].startswith("Connection failed:")
    assert h.listener.states[-1][2] is None
    [reconnect] = h.executor.pending("reconnect")
    assert reconnect.delay == TIMINGS.reconnect_delay

    h.executor.fire("reconnect")
    h.step()
    assert len(h.connector.calls) == 2
    assert h.listener.state_names == ["CONNECTING", "DISCONNECTED", "CONNECTING", "DISCONNECTED"]


def test_no_reconnect_while_network_unavailable(harness):
    h = harness(network_available=False)
    h.connector.error = ConnectionRefusedError(111, "Connection refused")
    h.manager.connect()
    h.step()

    assert h.manager.state is ConnectionState.DISCONNECTED
    assert h.executor.pending("reconnect") == []

    h.connector.error = None
    h.manager.on_network_available()
    h.step()
    assert h.manager.state is ConnectionState.CONNECTED


def test_gateway_polled_until_available(harness):
    answers = [None, None, "192.168.43.1"]
    h = harness(use_gateway_ip=True, server_address=None, gateway_resolver=lambda: answers.pop(0))
    h.manager.connect()
    h.step()

    assert h.manager.state is ConnectionState.CONNECTING
    assert h.connector.calls == []
    h.executor.fire("gateway-poll")
    h.step()
    assert h.connector.calls == []
    h.executor.fire("gateway-poll")
    h.step()

    assert h.connector.calls[0][0] == ("192.168.43.1", 8887)
    assert h.manager.state is ConnectionState.CONNECTED
    assert h.manager.server_address == "192.168.43.1"


def test_connection_lost_tears_down_and_reconnects(harness):
    h = harness()
    h.connect()
    sock, _address = h.listener.established[0]

    h.manager.connection_lost("Server went away", sock=sock)
    h.step()

    assert h.manager.state is ConnectionState.DISCONNECTED
    assert h.listener.states[-1][1] == "Connection lost (Server went away) - attempting to reconnect..."
    assert h.listener.disconnects == 1
    assert sock.fileno() == -1
    assert h.executor.pending("heartbeat") == []
    assert h.executor.pending("health-check") == []
    assert len(h.executor.pending("reconnect")) == 1

    h.executor.fire("reconnect")
    h.step()
    assert h.manager.state is ConnectionState.CONNECTED
    assert len(h.listener.established) == 2


def test_loss_report_for_old_socket_is_ignored(harness):
    h = harness()
    h.connect()
    old_sock, _address = h.listener.established[0]
    h.manager.connection_lost("first", sock=old_sock)
    h.step()
    h.executor.fire("reconnect")
    h.step()

    h.manager.connection_lost("late report", sock=old_sock)
    h.step()

    assert h.manager.state is ConnectionState.CONNECTED
    assert h.listener.disconnects == 1


def test_health_check_detects_peer_close(harness):
    h = harness()
    peer = h.connect()
    peer.close()

    h.executor.fire("health-check")
    h.step()

    assert h.manager.state is ConnectionState.DISCONNECTED
    assert "Server closed the connection" in h.listener.states[-1][1]
    assert h.listener.disconnects == 1


def test_failed_heartbeat_write_is_connection_loss(harness):
    h = harness()
    peer = h.connect()
    peer.close()

    h.executor.fire("heartbeat")
    h.step()

    assert h.manager.state is ConnectionState.DISCONNECTED
    assert "Failed to send heartbeat" in h.listener.states[-1][1]


def test_superseded_connect_result_is_discarded(harness):
    h = harness()
    h.manager.connect()
    h.executor.drain()
    assert h.manager.state is ConnectionState.CONNECTING

    h.manager.disconnect("User disconnect")
    h.executor.drain()
    h.step()

    assert h.manager.state is ConnectionState.DISCONNECTED
    assert h.listener.established == []
    assert h.listener.disconnects == 0
    assert h.connector.created[0].fileno() == -1


def test_network_lost_tears_down_without_reconnect(harness):
    h = harness()
    h.connect()

    h.manager.on_network_lost()
    h.step()

    assert h.manager.state is ConnectionState.DISCONNECTED
    assert h.listener.states[-1][1] == "Network disconnected"
    assert h.executor.pending("reconnect") == []
    assert not h.manager.network_available

    h.manager.on_network_available()
    h.step()
    assert h.manager.state is ConnectionState.CONNECTED


def test_explicit_disconnect_from_connected(harness):
    h = harness()
    h.connect()
    sock, _address = h.listener.established[0]
    [heartbeat] = h.executor.pending("heartbeat")
    [health] = h.executor.pending("health-check")

    h.manager.disconnect("User disconnect")
    h.step()

    assert h.manager.state is ConnectionState.DISCONNECTED
    assert h.listener.states[-1] == (ConnectionState.DISCONNECTED, "User disconnect", None)
    assert heartbeat.cancelled and health.cancelled
    assert sock.fileno() == -1
    assert h.listener.disconnects == 1
    assert h.executor.pending("reconnect") == []

    h.manager.disconnect("User disconnect")
    h.step()
    assert h.listener.disconnects == 1
    assert len(h.connector.calls) == 1


def test_mixed_events_end_in_state_of_last_rule(harness):
    h = harness()
    steps = [
        (h.manager.connect, ConnectionState.CONNECTED, False),
        (h.manager.on_network_lost, ConnectionState.DISCONNECTED, False),
        (h.manager.on_network_available, ConnectionState.CONNECTED, False),
        (lambda: h.manager.disconnect("User disconnect"), ConnectionState.DISCONNECTED, False),
        (h.manager.connect, ConnectionState.CONNECTED, False),
        (lambda: h.manager.connection_lost("Server went away"), ConnectionState.DISCONNECTED, True),
        (h.manager.on_network_lost, ConnectionState.DISCONNECTED, False),
        (h.manager.on_network_available, ConnectionState.CONNECTED, False),
    ]
    for action, expected, reconnect_pending in steps:
        action()
        h.step()
        assert h.manager.state is expected
        assert bool(h.executor.pending("reconnect")) is reconnect_pending

    assert len(h.listener.established) == 4
    assert h.listener.disconnects == 3
    assert h.listener.state_names[-2:] == ["CONNECTING", "CONNECTED"]


def test_duplicate_transitions_are_not_reported(harness):
    h = harness()
    h.manager.disconnect()
    h.manager.disconnect()
    h.step()
    assert h.listener.states == []


def test_double_shutdown_same_as_single(harness):
    h = harness()
    h.connect()

    h.manager.shutdown()
    h.manager.shutdown()

    assert h.manager.is_shutdown
    assert h.manager.state is ConnectionState.DISCONNECTED
    assert h.listener.disconnects == 1
    assert h.pool.shutdown_calls == 1
    assert all(not handle.pending for handle in h.executor.timers)

    h.manager.connect()
    h.manager.on_network_available()
    assert h.executor.tasks == []


def test_listener_errors_are_logged_not_raised(harness):
    h = harness()

    def _boom(*_args):
        raise RuntimeError("ui gone")

    h.listener.on_connection_state_changed = _boom
    logger = logging.getLogger("GNSSShare.Client.ConnectionManager")
    records = []

    class _Capture(logging.Handler):
        def emit(self, record):
            records.append(record)

    handler = _Capture()
    logger.addHandler(handler)
    try:
        h.connect()
    finally:
        logger.removeHandler(handler)

    assert any("Connection listener raised error" in record.getMessage() for record in records)
    assert len(h.listener.established) == 1


def test_check_socket_health_states():
    near, far = socket.socketpair()
    try:
        assert check_socket_health(near) is None
        far.sendall(b"\x00")
        assert check_socket_health(near) is None
        assert near.recv(1) == b"\x00"
        far.close()
        assert check_socket_health(near) == "Server closed the connection"
    finally:
        near.close()
    assert check_socket_health(near) == "Socket closed"
    assert check_socket_health(None) == "Socket closed"
