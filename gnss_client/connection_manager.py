"""Client side of the link: connect, heartbeat, health-check and reconnect."""
from __future__ import annotations

import select
import socket
import threading
from concurrent.futures import Executor, ThreadPoolExecutor
from typing import Callable, Optional, Protocol, Tuple

from gnss_client.gateway import GatewayResolver, read_default_gateway
from gnss_shared.executor import SerialExecutor, TimerHandle
from gnss_shared.logging_utils import get_logger
from gnss_shared.models import ConnectionState
from gnss_shared.timings import DEFAULT_PORT, DEFAULT_TIMINGS, LinkTimings
from gnss_shared.wire_codec import HEARTBEAT

ConnectFn = Callable[[Tuple[str, int], float], socket.socket]

_LOGGER = get_logger("Client.ConnectionManager")

CONNECTING_MESSAGE = "Attempting to connect to server..."


class ConnectionListener(Protocol):
    def on_connection_state_changed(
        self, state: ConnectionState, message: str, server_address: Optional[str]
    ) -> None: ...

    def on_connection_established(self, sock: socket.socket, server_address: str) -> None: ...

    def on_disconnected(self) -> None: ...


def check_socket_health(sock: Optional[socket.socket]) -> Optional[str]:
    """Return a failure reason if ``sock`` is closed, detached or half-closed by the peer."""
    if sock is None or sock.fileno() == -1:
        return "Socket closed"
    try:
        sock.getpeername()
    except OSError:
        return "Socket no longer connected"
    try:
        readable, _, _ = select.select([sock], [], [], 0)
        if readable and not sock.recv(1, socket.MSG_PEEK):
            return "Server closed the connection"
    except socket.timeout:
        # The frame reader drained the buffer between select and peek.
        return None
    except (OSError, ValueError) as exc:
        return f"Health check failed: {exc}"
    return None


def _close_quietly(sock: Optional[socket.socket]) -> None:
    if sock is None:
        return
    try:
        sock.shutdown(socket.SHUT_RDWR)
    except OSError:
        pass
    try:
        sock.close()
    except OSError as exc:
        _LOGGER.warning("Error closing socket: %s", exc)


class ConnectionManager:
    """Owns one outbound TCP connection and its DISCONNECTED/CONNECTING/CONNECTED lifecycle.

    Public methods may be called from any thread; they hand the work to a
    serial executor, which is the only place state, timers and the socket
    field are touched. Blocking socket calls run on the I/O pool and post
    their outcome back to the executor.
    """

    def __init__(
        self,
        listener: ConnectionListener,
        *,
        port: int = DEFAULT_PORT,
        use_gateway_ip: bool = True,
        server_address: Optional[str] = None,
        gateway_resolver: Optional[GatewayResolver] = None,
        timings: LinkTimings = DEFAULT_TIMINGS,
        connect: Optional[ConnectFn] = None,
        executor: Optional[SerialExecutor] = None,
        io_pool: Optional[Executor] = None,
        network_available: bool = False,
    ) -> None:
        if not use_gateway_ip and not server_address:
            raise ValueError("A server address is required when the gateway address is not used")
        self._listener = listener
        self._port = port
        self._use_gateway_ip = use_gateway_ip
        self._static_address = server_address
        self._resolve_gateway = gateway_resolver or read_default_gateway
        self._timings = timings
        self._connect_fn: ConnectFn = connect or socket.create_connection
        self._executor = executor or SerialExecutor("GNSSShare-ConnectionManager")
        self._io_pool = io_pool or ThreadPoolExecutor(max_workers=4, thread_name_prefix="GNSSShare-ClientIO")

        self._shutdown = threading.Event()
        self._shutdown_lock = threading.Lock()

        # Executor-confined state.
        self._state = ConnectionState.DISCONNECTED
        self._server_address: Optional[str] = None
        self._gateway_address: Optional[str] = None
        self._socket: Optional[socket.socket] = None
        self._attempt = 0
        self._network_available = network_available
        self._heartbeat_timer: Optional[TimerHandle] = None
        self._health_timer: Optional[TimerHandle] = None
        self._gateway_timer: Optional[TimerHandle] = None
        self._reconnect_timer: Optional[TimerHandle] = None

    # Read-only views ------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def server_address(self) -> Optional[str]:
        return self._server_address

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    @property
    def network_available(self) -> bool:
        return self._network_available

    @property
    def is_shutdown(self) -> bool:
        return self._shutdown.is_set()

    @property
    def executor(self) -> SerialExecutor:
        return self._executor

    @property
    def io_pool(self) -> Executor:
        return self._io_pool

    # Public API -----------------------------------------------------------

    def connect(self) -> None:
        self._post(self._connect)

    def disconnect(self, message: str = "Disconnected") -> None:
        self._post(lambda: self._teardown(message))

    def connection_lost(self, reason: str, *, sock: Optional[socket.socket] = None, liveness: bool = False) -> None:
        """Report that the link died; ``sock`` lets stale reports from older connections be ignored."""
        self._post(lambda: self._handle_connection_loss(reason, sock=sock, liveness=liveness))

    def schedule_reconnect(self) -> None:
        self._post(self._schedule_reconnect)

    def on_network_available(self) -> None:
        self._post(self._network_up)

    def on_network_lost(self) -> None:
        self._post(self._network_down)

    def shutdown(self, *, timeout: float = 5.0) -> None:
        """Permanently stop the manager. Safe to call repeatedly and from any thread."""
        with self._shutdown_lock:
            if self._shutdown.is_set():
                return
            self._shutdown.set()
        _LOGGER.debug("Shutting down connection manager")
        try:
            self._executor.run_sync(lambda: self._teardown("Shutting down"), timeout=timeout)
        except (RuntimeError, TimeoutError) as exc:
            _LOGGER.warning("Connection manager teardown did not complete: %s", exc)
        self._executor.shutdown(wait=True, timeout=timeout)
        self._io_pool.shutdown(wait=False, cancel_futures=True)

    # State transitions (executor thread) -----------------------------------

    def _connect(self) -> None:
        if self._shutdown.is_set():
            return
        if self._state is not ConnectionState.DISCONNECTED:
            return
        self._cancel_timer("_reconnect_timer")
        address = self._gateway_address if self._use_gateway_ip else self._static_address
        self._set_state(ConnectionState.CONNECTING, CONNECTING_MESSAGE, address)
        if self._use_gateway_ip and address is None:
            self._poll_gateway()
        else:
            self._start_attempt(address)

    def _poll_gateway(self) -> None:
        self._gateway_timer = None
        if self._shutdown.is_set() or self._state is not ConnectionState.CONNECTING:
            return
        address = self._resolve_gateway()
        if address is None:
            _LOGGER.warning("Can't get gateway IP address; retrying in %.1fs", self._timings.gateway_poll_interval)
            self._gateway_timer = self._executor.call_later(
                self._timings.gateway_poll_interval, self._poll_gateway, name="gateway-poll"
            )
            return
        _LOGGER.debug("Gateway IP: %s", address)
        self._gateway_address = address
        self._set_state(ConnectionState.CONNECTING, CONNECTING_MESSAGE, address)
        self._start_attempt(address)

    def _start_attempt(self, address: Optional[str]) -> None:
        if address is None:
            return
        self._attempt += 1
        attempt = self._attempt
        _LOGGER.info("Connecting to %s:%s", address, self._port)
        if not self._spawn(self._open_socket, attempt, address):
            self._teardown("Connection manager is stopping")

    def _on_connected(self, attempt: int, address: str, sock: socket.socket) -> None:
        if self._shutdown.is_set() or attempt != self._attempt or self._state is not ConnectionState.CONNECTING:
            _LOGGER.debug("Discarding superseded connection to %s", address)
            _close_quietly(sock)
            return
        self._socket = sock
        self._set_state(ConnectionState.CONNECTED, f"Connected to {address}:{self._port}", address)
        self._heartbeat_timer = self._executor.call_later(0.0, self._heartbeat_tick, name="heartbeat")
        self._health_timer = self._executor.call_later(
            self._timings.health_check_interval, self._health_tick, name="health-check"
        )
        self._notify(lambda: self._listener.on_connection_established(sock, address))

    def _on_connect_failed(self, attempt: int, address: str, exc: BaseException) -> None:
        if self._shutdown.is_set() or attempt != self._attempt or self._state is not ConnectionState.CONNECTING:
            return
        _LOGGER.warning("Connection to %s:%s failed: %s", address, self._port, exc)
        self._set_state(ConnectionState.DISCONNECTED, f"Connection failed: {exc}", None)
        self._schedule_reconnect()

    def _handle_connection_loss(self, reason: str, *, sock: Optional[socket.socket], liveness: bool) -> None:
        if self._shutdown.is_set() or self._state is not ConnectionState.CONNECTED:
            return
        if sock is not None and sock is not self._socket:
            _LOGGER.debug("Ignoring loss report for a previous connection: %s", reason)
            return
        if liveness:
            _LOGGER.warning("Link liveness failure: %s", reason)
        else:
            _LOGGER.warning("Link I/O failure: %s", reason)
        self._teardown(f"Connection lost ({reason}) - attempting to reconnect...")
        self._schedule_reconnect()

    def _teardown(self, message: str) -> None:
        previous = self._state
        self._attempt += 1
        for name in ("_heartbeat_timer", "_health_timer", "_gateway_timer", "_reconnect_timer"):
            self._cancel_timer(name)
        self._set_state(ConnectionState.DISCONNECTED, message, None)
        sock, self._socket = self._socket, None
        _close_quietly(sock)
        if previous is ConnectionState.CONNECTED:
            self._notify(self._listener.on_disconnected)

    def _schedule_reconnect(self) -> None:
        if self._shutdown.is_set():
            return
        if not self._network_available:
            _LOGGER.debug("Network unavailable; reconnect deferred until it returns")
            return
        self._cancel_timer("_reconnect_timer")
        _LOGGER.info("Scheduling reconnection attempt in %dms", int(self._timings.reconnect_delay * 1000))
        self._reconnect_timer = self._executor.call_later(
            self._timings.reconnect_delay, self._reconnect_due, name="reconnect"
        )

    def _reconnect_due(self) -> None:
        self._reconnect_timer = None
        if not self._shutdown.is_set() and self._network_available:
            self._connect()

    def _network_up(self) -> None:
        _LOGGER.debug("Network available")
        self._network_available = True
        self._gateway_address = None
        if not self._shutdown.is_set() and self._state is ConnectionState.DISCONNECTED:
            self._connect()

    def _network_down(self) -> None:
        _LOGGER.debug("Network lost")
        self._network_available = False
        self._gateway_address = None
        self._cancel_timer("_reconnect_timer")
        if not self._shutdown.is_set() and self._state is not ConnectionState.DISCONNECTED:
            self._teardown("Network disconnected")

    def _set_state(self, state: ConnectionState, message: str, server_address: Optional[str]) -> None:
        if state is self._state and server_address == self._server_address:
            return
        _LOGGER.debug("State change: %s -> %s (%s)", self._state.name, state.name, message)
        self._state = state
        self._server_address = server_address
        self._notify(lambda: self._listener.on_connection_state_changed(state, message, server_address))

    # Timers (executor thread) ----------------------------------------------

    def _heartbeat_tick(self) -> None:
        self._heartbeat_timer = None
        sock = self._socket
        if self._state is not ConnectionState.CONNECTED or sock is None:
            return
        self._spawn(self._send_heartbeat, self._attempt, sock)
        self._heartbeat_timer = self._executor.call_later(
            self._timings.heartbeat_interval, self._heartbeat_tick, name="heartbeat"
        )

    def _health_tick(self) -> None:
        self._health_timer = None
        sock = self._socket
        if self._state is not ConnectionState.CONNECTED or sock is None:
            return
        self._spawn(self._check_health, self._attempt, sock)
        self._health_timer = self._executor.call_later(
            self._timings.health_check_interval, self._health_tick, name="health-check"
        )

    def _cancel_timer(self, attribute: str) -> None:
        handle: Optional[TimerHandle] = getattr(self, attribute)
        setattr(self, attribute, None)
        if handle is not None:
            handle.cancel()

    # Blocking work (I/O pool) ----------------------------------------------

    def _open_socket(self, attempt: int, address: str) -> None:
        try:
            sock = self._connect_fn((address, self._port), self._timings.connect_timeout)
            sock.settimeout(self._timings.read_timeout)
        except OSError as exc:
            self._post(lambda exc=exc: self._on_connect_failed(attempt, address, exc))
            return
        if not self._post(lambda: self._on_connected(attempt, address, sock)):
            _close_quietly(sock)

    def _send_heartbeat(self, attempt: int, sock: socket.socket) -> None:
        try:
            sock.sendall(HEARTBEAT)
        except OSError as exc:
            self._post(lambda exc=exc: self._on_timer_failure(attempt, f"Failed to send heartbeat: {exc}", liveness=False))
            return
        _LOGGER.debug("Heartbeat sent")

    def _check_health(self, attempt: int, sock: socket.socket) -> None:
        reason = check_socket_health(sock)
        if reason is not None:
            self._post(lambda: self._on_timer_failure(attempt, reason, liveness=True))

    def _on_timer_failure(self, attempt: int, reason: str, *, liveness: bool) -> None:
        if attempt != self._attempt:
            return
        self._handle_connection_loss(reason, sock=None, liveness=liveness)

    # Internal helpers -----------------------------------------------------

    def _post(self, func: Callable[[], None]) -> bool:
        return self._executor.submit(func)

    def _spawn(self, func: Callable[..., None], *args: object) -> bool:
        try:
            self._io_pool.submit(func, *args)
        except RuntimeError as exc:
            _LOGGER.debug("I/O pool rejected %s: %s", getattr(func, "__name__", func), exc)
            return False
        return True

    def _notify(self, callback: Callable[[], None]) -> None:
        try:
            callback()
        except Exception as exc:
            _LOGGER.error("Connection listener raised error: %s", exc, exc_info=exc)
