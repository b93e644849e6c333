import errno
import socket
import threading
import time

import pytest

from relaytunnel.tunnel import (
    BUFFER_SIZE_DEFAULT,
    BUFFER_SIZE_LARGE,
    Config,
    ConfigError,
    Forwarder,
    Mode,
    Protocol,
    Stats,
    Tunnel,
    UnknownProtocolError,
    client_preset,
    dial,
    forward,
    handle_pair,
    high_throughput_preset,
    is_closed_error,
    listen,
    new_forwarder,
    optimize_tcp_conn,
    server_preset,
    validate_config,
)


class TCPProtocol(Protocol):
    name = "tcp"

    def listen(self, addr):
        return listen(addr)

    def dial(self, addr):
        return dial(addr, timeout=5)

    def forwarder(self):
        return new_forwarder()


def _recv_exact(conn, size):
    data = b""
    while len(data) < size:
        chunk = conn.recv(size - len(data))
        if not chunk:
            break
        data += chunk
    return data


def _wait_for(condition, timeout=3.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if condition():
            return True
        time.sleep(0.01)
    return condition()


@pytest.fixture
def echo_server():
    server = socket.create_server(("127.0.0.1", 0))
    server.settimeout(0.1)
    stop = threading.Event()

    def serve(conn):
        with conn:
            while True:
                try:
                    data = conn.recv(4096)
                except OSError:
                    return
                if not data:
                    return
                conn.sendall(data)

    def accept_loop():
        while not stop.is_set():
            try:
                conn, _ = server.accept()
            except socket.timeout:
                continue
            except OSError:
                return
            threading.Thread(target=serve, args=(conn,), daemon=True).start()

    thread = threading.Thread(target=accept_loop, daemon=True)
    thread.start()
    host, port = server.getsockname()
    yield f"{host}:{port}"
    stop.set()
    thread.join()
    server.close()


def _closed_port():
    probe = socket.create_server(("127.0.0.1", 0))
    port = probe.getsockname()[1]
    probe.close()
    return port


def test_tunnel_tcp_forward(echo_server):
    cfg = Config(listen_addr="127.0.0.1:0", target_addr=echo_server)
    with Tunnel(cfg, TCPProtocol()) as tun:
        with socket.create_connection(tun.addr, timeout=5) as conn:
            conn.sendall(b"Hello, Tunnel!")
            assert _recv_exact(conn, 14) == b"Hello, Tunnel!"
        assert tun.stats.connections == 1


def test_tunnel_multiple_connections(echo_server):
    cfg = Config(listen_addr="127.0.0.1:0", target_addr=echo_server)
    results = []
    lock = threading.Lock()
    with Tunnel(cfg, TCPProtocol()) as tun:
        message = b"Test message from connection"

        def client():
            with socket.create_connection(tun.addr, timeout=5) as conn:
                conn.sendall(message)
                got = _recv_exact(conn, len(message))
            with lock:
                results.append(got)

        threads = [threading.Thread(target=client) for _ in range(10)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        assert results == [message] * 10
        assert tun.stats.connections == 10


def test_tunnel_stats_initial_and_reset():
    tun = Tunnel(Config(listen_addr="127.0.0.1:0", target_addr="127.0.0.1:12345"))
    stats = tun.stats
    assert (stats.connections, stats.bytes_sent, stats.bytes_received, stats.errors) == (0, 0, 0, 0)
    assert stats.uptime() >= 0
    time.sleep(0.05)
    assert stats.uptime() >= 0.05
    stats.reset()
    assert stats.connections == 0
    assert stats.uptime() < 0.05


def test_tunnel_counts_dial_errors_and_reset_clears_them():
    cfg = Config(listen_addr="127.0.0.1:0", target_addr=f"127.0.0.1:{_closed_port()}")
    with Tunnel(cfg, TCPProtocol()) as tun:
        with socket.create_connection(tun.addr, timeout=5) as conn:
            conn.settimeout(5)
            assert conn.recv(10) == b""
        assert _wait_for(lambda: tun.stats.errors >= 1)
        assert tun.stats.connections == 1
        tun.stats.reset()
        assert tun.stats.errors == 0
        assert tun.stats.connections == 0


def test_tunnel_stop_refuses_new_connections(echo_server):
    tun = Tunnel(Config(listen_addr="127.0.0.1:0", target_addr=echo_server), TCPProtocol())
    tun.start()
    addr = tun.addr
    tun.stop()
    with pytest.raises(OSError):
        socket.create_connection(addr, timeout=1)


def test_tunnel_stop_closes_active_connections(echo_server):
    tun = Tunnel(Config(listen_addr="127.0.0.1:0", target_addr=echo_server), TCPProtocol())
    tun.start()
    with socket.create_connection(tun.addr, timeout=5) as conn:
        conn.sendall(b"ping")
        assert _recv_exact(conn, 4) == b"ping"
        tun.stop()
        try:
            assert conn.recv(10) == b""
        except ConnectionResetError:
            pass


def test_tunnel_addr_none_before_start():
    tun = Tunnel(Config(listen_addr="127.0.0.1:0", target_addr="127.0.0.1:1"))
    assert tun.addr is None


def test_tunnel_start_without_protocol():
    tun = Tunnel(Config(listen_addr="127.0.0.1:0", target_addr="127.0.0.1:1"))
    with pytest.raises(UnknownProtocolError):
        tun.start()


def test_handle_pair():
    r1, w1 = socket.socketpair()
    r2, w2 = socket.socketpair()
    w1.sendall(b"Test HandlePair")
    w1.close()
    r2.shutdown(socket.SHUT_WR)
    handle_pair(r1, w2)
    assert _recv_exact(r2, 15) == b"Test HandlePair"
    assert r1.fileno() == -1 and w2.fileno() == -1
    r2.close()


def test_forward():
    r1, w1 = socket.socketpair()
    r2, w2 = socket.socketpair()
    w1.sendall(b"Test Forward")
    w1.close()
    r2.shutdown(socket.SHUT_WR)
    result = forward(r1, w2)
    assert result is None
    assert _recv_exact(r2, 12) == b"Test Forward"
    for s in (r1, r2, w2):
        s.close()


def test_forwarder_returns_bytes_copied():
    a, b = socket.socketpair()
    c, d = socket.socketpair()
    payload = b"x" * 100_000
    sender = threading.Thread(target=lambda: (a.sendall(payload), a.close()))
    sender.start()
    received = []
    reader = threading.Thread(target=lambda: received.append(_recv_exact(d, len(payload))))
    reader.start()
    copied = Forwarder(buffer_size=4096).forward(b, c)
    sender.join()
    reader.join()
    assert copied == len(payload)
    assert received == [payload]
    for s in (b, c, d):
        s.close()


def test_validate_config_defaults():
    cfg = validate_config(Config())
    assert cfg.buffer_size == BUFFER_SIZE_DEFAULT == 64 * 1024
    assert cfg.protocol == "tcp"


def test_validate_config_does_not_mutate_input():
    original = Config()
    validate_config(original)
    assert original.buffer_size == 0
    assert original.protocol == ""


@pytest.mark.parametrize(
    "field, value, message",
    [
        ("buffer_size", -1, "BufferSize must be non-negative, got -1"),
        ("buffer_size", 10 * 1024 * 1024 + 1, "BufferSize too large"),
        ("max_connections", -5, "MaxConnections must be non-negative"),
        ("max_connections", 1_000_001, "MaxConnections too large"),
        ("read_buffer_size", -1, "ReadBufferSize must be non-negative"),
        ("write_buffer_size", 10 * 1024 * 1024 + 1, "WriteBufferSize too large"),
        ("backpressure_high_watermark", -1, "BackpressureHighWatermark must be non-negative"),
        ("backpressure_low_watermark", 100 * 1024 * 1024 + 1, "BackpressureLowWatermark too large"),
    ],
)
def test_validate_config_rejects(field, value, message):
    with pytest.raises(ConfigError, match=message):
        validate_config(Config(**{field: value}))


def test_validate_config_low_watermark_must_be_below_high():
    with pytest.raises(ConfigError, match="must be less than"):
        validate_config(Config(backpressure_high_watermark=100, backpressure_low_watermark=100))


def test_tunnel_constructor_validates():
    with pytest.raises(ConfigError):
        Tunnel(Config(buffer_size=-1))


def test_validate_config_accepts_maximums():
    cfg = validate_config(Config(buffer_size=10 * 1024 * 1024, max_connections=1_000_000))
    assert cfg.buffer_size == 10 * 1024 * 1024
    assert cfg.max_connections == 1_000_000


def test_mode_strings():
    assert [m.__str__() for m in Mode] == ["auto", "server", "client"]
    assert server_preset().mode.__str__() == "server"
    assert client_preset().mode.__str__() == "client"


def test_presets():
    server = server_preset()
    assert server.mode is Mode.SERVER
    assert server.max_connections == 10000
    assert server.connection_timeout == 300.0
    assert server.backpressure_high_watermark == 2 * 1024 * 1024
    client = client_preset()
    assert client.mode is Mode.CLIENT
    assert client.buffer_size == 32 * 1024
    assert client.tcp_fast_open is True
    high = high_throughput_preset()
    assert high.write_buffer_size == BUFFER_SIZE_LARGE == 256 * 1024
    assert high.backpressure_low_watermark == 2 * 1024 * 1024
    for preset in (server, client, high):
        assert validate_config(preset).buffer_size == preset.buffer_size


@pytest.mark.parametrize(
    "error, expected",
    [
        (None, False),
        (EOFError(), True),
        (ConnectionResetError(), True),
        (BrokenPipeError(), True),
        (OSError(errno.EBADF, "bad fd"), True),
        (TimeoutError("timed out"), False),
        (ValueError("other"), False),
    ],
)
def test_is_closed_error(error, expected):
    assert is_closed_error(error) is expected


def test_listen_and_dial_roundtrip():
    server = listen("127.0.0.1:0")
    port = server.getsockname()[1]
    with dial(f"127.0.0.1:{port}", timeout=5) as client:
        conn, _ = server.accept()
        with conn:
            client.sendall(b"hi")
            assert _recv_exact(conn, 2) == b"hi"
        assert client.gettimeout() is None
    server.close()


def test_dial_bad_address():
    with pytest.raises(ValueError):
        dial("no-port-here")


def test_optimize_tcp_conn():
    server = listen("127.0.0.1:0")
    with dial(f"127.0.0.1:{server.getsockname()[1]}") as client:
        result = optimize_tcp_conn(client)
        assert result is None
        assert bool(client.getsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY)) is True
        assert bool(client.getsockopt(socket.SOL_SOCKET, socket.SO_KEEPALIVE)) is True
    server.close()


def test_optimize_tcp_conn_none():
    assert optimize_tcp_conn(None) is None


def test_stats_is_independent_per_tunnel():
    first = Tunnel(Config())
    second = Tunnel(Config())
    first.stats._add("connections")
    assert first.stats.connections == 1
    assert second.stats.connections == 0
    assert Stats().errors == 0