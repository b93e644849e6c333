"""Bidirectional TCP forwarding and a listening tunnel built on top of it."""

from __future__ import annotations

import errno
import socket
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from enum import Enum

__all__ = [
    "VERSION",
    "BUFFER_SIZE_DEFAULT",
    "BUFFER_SIZE_LARGE",
    "Mode",
    "ConfigError",
    "UnknownProtocolError",
    "Config",
    "Stats",
    "Forwarder",
    "Protocol",
    "Tunnel",
    "validate_config",
    "is_closed_error",
    "forward",
    "handle_pair",
    "listen",
    "dial",
    "new_forwarder",
    "optimize_tcp_conn",
    "server_preset",
    "client_preset",
    "high_throughput_preset",
]

VERSION = "1.1.0"

BUFFER_SIZE_DEFAULT = 64 * 1024
BUFFER_SIZE_LARGE = 256 * 1024

_MAX_BUFFER_SIZE = 10 * 1024 * 1024
_MAX_BACKPRESSURE_WATERMARK = 100 * 1024 * 1024
_MAX_CONNECTIONS = 1_000_000

_KEEPALIVE_PERIOD = 30
_ACCEPT_POLL_INTERVAL = 0.2

_CLOSED_ERRNOS = frozenset(
    code
    for code in (
        getattr(errno, "EBADF", None),
        getattr(errno, "ENOTCONN", None),
        getattr(errno, "EPIPE", None),
        getattr(errno, "ECONNRESET", None),
        getattr(errno, "ECONNABORTED", None),
        getattr(errno, "ESHUTDOWN", None),
    )
    if code is not None
)


class Mode(Enum):
    """Operation mode of a tunnel."""

    AUTO = 0
    SERVER = 1
    CLIENT = 2

    def __str__(self) -> str:
        return self.name.lower()


class ConfigError(ValueError):
    """Raised when a tunnel configuration holds an invalid value."""


class UnknownProtocolError(RuntimeError):
    """Raised when a tunnel is started without a protocol handler."""

    def __init__(self, message: str = "unknown protocol") -> None:
        super().__init__(message)


@dataclass
class Config:
    """Settings of a tunnel instance. Durations are in seconds."""

    protocol: str = ""
    listen_addr: str = ""
    target_addr: str = ""
    tls_context: object | None = None
    buffer_size: int = 0
    enable_backpressure: bool = False

    mode: Mode = Mode.AUTO

    max_connections: int = 0
    connection_timeout: float = 0.0
    accept_timeout: float = 0.0

    read_buffer_size: int = 0
    write_buffer_size: int = 0
    write_buffer_pool: bool = False

    backpressure_high_watermark: int = 0
    backpressure_low_watermark: int = 0
    backpressure_yield_min: float = 0.0
    backpressure_yield_max: float = 0.0

    tcp_no_delay: bool = False
    tcp_quick_ack: bool = False
    tcp_fast_open: bool = False
    send_buffer_size: int = 0
    recv_buffer_size: int = 0

    enable_metrics: bool = False
    metrics_prefix: str = ""


def _check_range(name: str, value: int, maximum: int) -> None:
    if value < 0:
        raise ConfigError(f"{name} must be non-negative, got {value}")
    if value > maximum:
        raise ConfigError(f"{name} too large: {value} (max {maximum})")


def validate_config(config: Config) -> Config:
    """Check ``config`` and return a copy with defaults filled in."""
    _check_range("BufferSize", config.buffer_size, _MAX_BUFFER_SIZE)
    cfg = replace(config)
    if cfg.buffer_size == 0:
        cfg.buffer_size = BUFFER_SIZE_DEFAULT
    if cfg.protocol == "":
        cfg.protocol = "tcp"

    _check_range("MaxConnections", cfg.max_connections, _MAX_CONNECTIONS)
    _check_range("ReadBufferSize", cfg.read_buffer_size, _MAX_BUFFER_SIZE)
    _check_range("WriteBufferSize", cfg.write_buffer_size, _MAX_BUFFER_SIZE)
    _check_range(
        "BackpressureHighWatermark", cfg.backpressure_high_watermark, _MAX_BACKPRESSURE_WATERMARK
    )
    _check_range(
        "BackpressureLowWatermark", cfg.backpressure_low_watermark, _MAX_BACKPRESSURE_WATERMARK
    )
    high = cfg.backpressure_high_watermark
    low = cfg.backpressure_low_watermark
    if high > 0 and low > 0 and low >= high:
        raise ConfigError(
            f"BackpressureLowWatermark ({low}) must be less than "
            f"BackpressureHighWatermark ({high})"
        )
    return cfg


class Stats:
    """Thread-safe runtime counters of a tunnel."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counters = {"connections": 0, "bytes_sent": 0, "bytes_received": 0, "errors": 0}
        self._started = time.monotonic()

    def _add(self, name: str, amount: int = 1) -> None:
        with self._lock:
            self._counters[name] += amount

    def _get(self, name: str) -> int:
        with self._lock:
            return self._counters[name]

    @property
    def connections(self) -> int:
        """Total number of connections handled."""
        return self._get("connections")

    @property
    def bytes_sent(self) -> int:
        """Total bytes sent from source to target."""
        return self._get("bytes_sent")

    @property
    def bytes_received(self) -> int:
        """Total bytes received from target to source."""
        return self._get("bytes_received")

    @property
    def errors(self) -> int:
        """Total number of errors encountered."""
        return self._get("errors")

    def uptime(self) -> float:
        """Seconds since the tunnel was created or the stats were reset."""
        with self._lock:
            return time.monotonic() - self._started

    def reset(self) -> None:
        """Zero all counters and restart the uptime clock."""
        with self._lock:
            for name in self._counters:
                self._counters[name] = 0
            self._started = time.monotonic()


def is_closed_error(error: BaseException | None) -> bool:
    """Tell whether ``error`` only signals that a connection was closed."""
    if error is None:
        return False
    if isinstance(
        error, (EOFError, ConnectionResetError, ConnectionAbortedError, BrokenPipeError)
    ):
        return True
    if isinstance(error, OSError) and error.errno in _CLOSED_ERRNOS:
        return True
    return False


class Forwarder:
    """Copies data from one connection to another."""

    def __init__(self, buffer_size: int = BUFFER_SIZE_DEFAULT) -> None:
        self.buffer_size = buffer_size

    def forward(self, src: socket.socket, dst: socket.socket) -> int:
        """Copy ``src`` into ``dst`` until end of stream; return the bytes copied.

        Socket errors are raised to the caller.
        """
        buffer = bytearray(self.buffer_size)
        view = memoryview(buffer)
        total = 0
        while True:
            count = src.recv_into(buffer)
            if count == 0:
                return total
            dst.sendall(view[:count])
            total += count


def new_forwarder() -> Forwarder:
    """Return a forwarder with the default buffer size."""
    return Forwarder()


class Protocol(ABC):
    """Protocol-specific listener, dialer and forwarder."""

    name = ""

    @abstractmethod
    def listen(self, addr: str) -> socket.socket:
        """Return a listening socket bound to ``addr``."""

    @abstractmethod
    def dial(self, addr: str) -> socket.socket:
        """Return a socket connected to ``addr``."""

    @abstractmethod
    def forwarder(self) -> Forwarder:
        """Return the forwarder used for this protocol."""


def _close(conn: socket.socket) -> None:
    try:
        conn.shutdown(socket.SHUT_RDWR)
    except OSError:
        pass
    conn.close()


def _split_host_port(addr: str) -> tuple[str, int]:
    if addr.startswith("["):
        host, sep, rest = addr[1:].partition("]")
        if not sep or not rest.startswith(":"):
            raise ValueError(f"invalid address: {addr!r}")
        port_text = rest[1:]
    else:
        host, sep, port_text = addr.rpartition(":")
        if not sep:
            raise ValueError(f"missing port in address: {addr!r}")
    try:
        port = int(port_text)
    except ValueError:
        raise ValueError(f"invalid port in address: {addr!r}") from None
    return host, port


def listen(addr: str) -> socket.socket:
    """Open a TCP listener on ``addr`` given as ``host:port``."""
    host, port = _split_host_port(addr)
    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    return socket.create_server((host, port), family=family)


def dial(addr: str, timeout: float | None = None) -> socket.socket:
    """Connect to ``addr`` given as ``host:port``; ``timeout`` bounds the connect."""
    host, port = _split_host_port(addr)
    sock = socket.create_connection((host or "localhost", port), timeout=timeout)
    sock.settimeout(None)
    return sock


def _run_both_ways(
    fwd: Forwarder, conn_a: socket.socket, conn_b: socket.socket
) -> list[BaseException | None]:
    results: list[BaseException | None] = [None, None]

    def pump(index: int, src: socket.socket, dst: socket.socket) -> None:
        try:
            fwd.forward(src, dst)
        except Exception as exc:  # noqa: BLE001 - reported to the caller
            results[index] = exc

    threads = [
        threading.Thread(target=pump, args=(0, conn_a, conn_b), daemon=True),
        threading.Thread(target=pump, args=(1, conn_b, conn_a), daemon=True),
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    return results


def forward(src: socket.socket, dst: socket.socket) -> None:
    """Forward in both directions until both end; raise the first real error."""
    for error in _run_both_ways(new_forwarder(), src, dst):
        if error is not None and not is_closed_error(error):
            raise error


def handle_pair(conn_a: socket.socket, conn_b: socket.socket) -> None:
    """Forward in both directions until both end, then close both connections."""
    _run_both_ways(new_forwarder(), conn_a, conn_b)
    _close(conn_a)
    _close(conn_b)


def optimize_tcp_conn(conn: socket.socket | None) -> None:
    """Enable TCP_NODELAY and a 30-second keep-alive on ``conn``."""
    if conn is None:
        return
    conn.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
    conn.setsockopt(socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1)
    idle_option = getattr(socket, "TCP_KEEPIDLE", None) or getattr(socket, "TCP_KEEPALIVE", None)
    if idle_option is not None:
        conn.setsockopt(socket.IPPROTO_TCP, idle_option, _KEEPALIVE_PERIOD)
    interval_option = getattr(socket, "TCP_KEEPINTVL", None)
    if interval_option is not None:
        conn.setsockopt(socket.IPPROTO_TCP, interval_option, _KEEPALIVE_PERIOD)


class Tunnel:
    """Accepts connections on a listener and forwards each to the target."""

    def __init__(self, config: Config | None = None, protocol: Protocol | None = None) -> None:
        self.config = validate_config(config if config is not None else Config())
        self.protocol = protocol
        self.stats = Stats()
        self._listener: socket.socket | None = None
        self._addr: tuple | None = None
        self._stopping = threading.Event()
        self._accept_thread: threading.Thread | None = None
        self._active_lock = threading.Lock()
        self._active: set[socket.socket] = set()

    @property
    def addr(self) -> tuple | None:
        """The listener address, or None before the tunnel is started."""
        return self._addr

    def start(self) -> None:
        """Open the listener and accept connections in the background."""
        if self.protocol is None:
            raise UnknownProtocolError()
        listener = self.protocol.listen(self.config.listen_addr)
        listener.settimeout(_ACCEPT_POLL_INTERVAL)
        self._listener = listener
        self._addr = listener.getsockname()
        self._stopping.clear()
        self._accept_thread = threading.Thread(target=self._accept_loop, daemon=True)
        self._accept_thread.start()

    def stop(self) -> None:
        """Stop accepting, close the listener and end active connections."""
        self._stopping.set()
        if self._listener is not None:
            self._listener.close()
        if self._accept_thread is not None:
            self._accept_thread.join()
            self._accept_thread = None
        with self._active_lock:
            active = list(self._active)
            self._active.clear()
        for conn in active:
            _close(conn)

    def __enter__(self) -> Tunnel:
        self.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.stop()

    def _accept_loop(self) -> None:
        listener = self._listener
        assert listener is not None
        while not self._stopping.is_set():
            try:
                src, _ = listener.accept()
            except socket.timeout:
                continue
            except OSError:
                if self._stopping.is_set():
                    return
                self.stats._add("errors")
                continue
            self.stats._add("connections")
            threading.Thread(target=self._handle_connection, args=(src,), daemon=True).start()

    def _track(self, *conns: socket.socket) -> bool:
        with self._active_lock:
            self._active.update(conns)
        return not self._stopping.is_set()

    def _untrack(self, *conns: socket.socket) -> None:
        with self._active_lock:
            self._active.difference_update(conns)

    def _handle_connection(self, src: socket.socket) -> None:
        timeout = self.config.connection_timeout
        if timeout > 0:
            src.settimeout(timeout)

        assert self.protocol is not None
        try:
            dst = self.protocol.dial(self.config.target_addr)
        except Exception:  # noqa: BLE001 - any dial failure counts as an error
            _close(src)
            self.stats._add("errors")
            return

        if timeout > 0:
            dst.settimeout(timeout)

        fwd = self.protocol.forwarder()
        done = threading.Event()

        def pump(a: socket.socket, b: socket.socket) -> None:
            try:
                fwd.forward(a, b)
            except OSError as exc:
                if not is_closed_error(exc):
                    self.stats._add("errors")
            finally:
                done.set()

        if self._track(src, dst):
            threading.Thread(target=pump, args=(src, dst), daemon=True).start()
            threading.Thread(target=pump, args=(dst, src), daemon=True).start()
            done.wait()
        self._untrack(src, dst)
        _close(src)
        _close(dst)


def server_preset() -> Config:
    """Configuration for servers handling many concurrent connections."""
    return Config(
        mode=Mode.SERVER,
        buffer_size=64 * 1024,
        max_connections=10000,
        connection_timeout=5 * 60.0,
        enable_backpressure=True,
        backpressure_high_watermark=2 * 1024 * 1024,
        backpressure_low_watermark=1 * 1024 * 1024,
        backpressure_yield_min=50e-6,
        backpressure_yield_max=10e-3,
        tcp_no_delay=True,
        send_buffer_size=256 * 1024,
        recv_buffer_size=256 * 1024,
    )


def client_preset() -> Config:
    """Configuration for clients with few high-throughput connections."""
    return Config(
        mode=Mode.CLIENT,
        buffer_size=32 * 1024,
        max_connections=0,
        connection_timeout=0.0,
        enable_backpressure=True,
        backpressure_high_watermark=512 * 1024,
        backpressure_low_watermark=256 * 1024,
        backpressure_yield_min=50e-6,
        backpressure_yield_max=5e-3,
        tcp_no_delay=True,
        tcp_quick_ack=True,
        tcp_fast_open=True,
        send_buffer_size=128 * 1024,
        recv_buffer_size=128 * 1024,
    )


def high_throughput_preset() -> Config:
    """Configuration for traffic where responses far outweigh requests."""
    return Config(
        mode=Mode.CLIENT,
        buffer_size=128 * 1024,
        write_buffer_size=256 * 1024,
        enable_backpressure=True,
        backpressure_high_watermark=4 * 1024 * 1024,
        backpressure_low_watermark=2 * 1024 * 1024,
        backpressure_yield_min=50e-6,
        backpressure_yield_max=10e-3,
        tcp_no_delay=True,
        send_buffer_size=512 * 1024,
        recv_buffer_size=512 * 1024,
    )