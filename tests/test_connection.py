"""Unit tests for BackoffPolicy, ConnectionSupervisor and transports."""

import random
import socket
import threading
from unittest import mock

import pytest

from botfleet import (
    BackoffPolicy, ConnectionLost, ConnectionStatus, ConnectionSupervisor, ExhaustedRetries,
    FatalConnectionError, LoopbackConnection, ReconnectAborted, TransientConnectionError,
    default_connection_factory,
)
from botfleet.transports import TcpConnection, parse_endpoint


def make_supervisor(device, fake_sleep, max_attempts=3, stop_event=None):
    policy = BackoffPolicy(base=1.0, cap=30.0, max_attempts=max_attempts, jitter=0.0)
    return ConnectionSupervisor('fake://device', device.factory, policy=policy,
                                stop_event=stop_event, sleep=fake_sleep)


class TestBackoffPolicy:
    def test_doubles_until_cap(self):
        policy = BackoffPolicy(base=1.0, cap=30.0, jitter=0.0)
        assert [policy.delay(n) for n in range(7)] == [1, 2, 4, 8, 16, 30, 30]

    def test_monotonic_then_constant(self):
        policy = BackoffPolicy(base=0.5, cap=10.0, jitter=0.0)
        delays = [policy.delay(n) for n in range(100)]

        assert all(a <= b for a, b in zip(delays, delays[1:]))
        assert delays[-1] == 10.0
        assert set(delays[delays.index(10.0):]) == {10.0}

    def test_jitter_is_bounded(self):
        policy = BackoffPolicy(base=1.0, cap=30.0, jitter=0.5, rng=random.Random(7))
        for n in range(10):
            assert policy.base_delay(n) <= policy.delay(n) <= policy.base_delay(n) + 0.5

    def test_invalid_bounds(self):
        with pytest.raises(ValueError):
            BackoffPolicy(base=0)
        with pytest.raises(ValueError):
            BackoffPolicy(base=5, cap=1)

    def test_from_options(self, options):
        policy = BackoffPolicy.from_options(options)
        assert policy.max_attempts == options.max_retries
        assert policy.jitter == 0.0


class TestSupervisor:
    def test_connect(self, device, fake_sleep):
        supervisor = make_supervisor(device, fake_sleep)
        supervisor.connect()

        assert supervisor.is_healthy()
        assert supervisor.request(b'PING') == b'PONG'
        assert fake_sleep.delays == []

    def test_connect_retries_transient_failures(self, device, fake_sleep):
        device.open_script = ['transient', 'transient', 'ok']
        supervisor = make_supervisor(device, fake_sleep)

        supervisor.connect()

        assert fake_sleep.delays == [1.0, 2.0]
        assert supervisor.snapshot().retry_count == 0
        assert supervisor.status == ConnectionStatus.CONNECTED

    def test_exhausted_after_max_attempts(self, device, fake_sleep):
        supervisor = make_supervisor(device, fake_sleep, max_attempts=3)
        supervisor.connect()
        device.receive_script = ['transient']
        device.open_script = ['transient'] * 3

        supervisor.send(b'PING')
        with pytest.raises(ConnectionLost):
            supervisor.receive()
        assert supervisor.status == ConnectionStatus.RECONNECTING

        with pytest.raises(ExhaustedRetries) as exc_info:
            supervisor.reconnect()

        assert fake_sleep.delays == [1.0, 2.0, 4.0]
        assert exc_info.value.attempts == 3
        assert supervisor.status == ConnectionStatus.FAILED
        assert supervisor.snapshot().last_error == 'device unreachable'

    def test_successful_reconnect_resets_retry_count(self, device, fake_sleep):
        supervisor = make_supervisor(device, fake_sleep, max_attempts=5)
        supervisor.connect()
        device.open_script = ['transient', 'ok']

        supervisor.reconnect()

        assert supervisor.snapshot().retry_count == 0
        assert supervisor.is_healthy()

        # The next outage starts again from the base delay
        device.open_script = ['transient', 'ok']
        supervisor.reconnect()
        assert fake_sleep.delays == [1.0, 2.0, 1.0, 2.0]

    def test_fatal_error_is_not_retried(self, device, fake_sleep):
        device.open_script = ['fatal']
        supervisor = make_supervisor(device, fake_sleep)

        with pytest.raises(FatalConnectionError):
            supervisor.connect()

        assert supervisor.status == ConnectionStatus.FAILED
        assert device.opens == 1
        assert fake_sleep.delays == []

    def test_fatal_during_reconnect_stops_loop(self, device, fake_sleep):
        supervisor = make_supervisor(device, fake_sleep, max_attempts=5)
        device.open_script = ['transient', 'fatal']

        with pytest.raises(FatalConnectionError):
            supervisor.connect()

        assert fake_sleep.delays == [1.0]
        assert supervisor.status == ConnectionStatus.FAILED

    def test_stop_event_aborts_wait(self, device):
        stop = threading.Event()
        stop.set()
        policy = BackoffPolicy(base=5.0, cap=30.0, max_attempts=3, jitter=0.0)
        supervisor = ConnectionSupervisor('fake://device', device.factory, policy=policy,
                                          stop_event=stop)

        with pytest.raises(ReconnectAborted):
            supervisor.reconnect()
        assert device.opens == 0

    def test_send_without_connection(self, device, fake_sleep):
        supervisor = make_supervisor(device, fake_sleep)
        with pytest.raises(ConnectionLost):
            supervisor.send(b'PING')

    def test_close_never_raises(self, device, fake_sleep):
        supervisor = make_supervisor(device, fake_sleep)
        supervisor.close()
        supervisor.connect()
        supervisor.close()
        assert supervisor.status == ConnectionStatus.DISCONNECTED

    def test_reset_restores_retry_budget(self, device, fake_sleep):
        supervisor = make_supervisor(device, fake_sleep, max_attempts=1)
        device.open_script = ['transient', 'transient']
        with pytest.raises(ExhaustedRetries):
            supervisor.connect()

        supervisor.reset()
        supervisor.connect()

        assert supervisor.is_healthy()
        assert supervisor.snapshot().retry_count == 0


class TestTransports:
    def test_parse_endpoint(self):
        assert parse_endpoint('tcp://10.0.0.5:7000') == ('10.0.0.5', 7000)
        assert parse_endpoint('device.local:22') == ('device.local', 22)
        with pytest.raises(FatalConnectionError):
            parse_endpoint('tcp://nohost')
        with pytest.raises(FatalConnectionError):
            parse_endpoint('tcp://host:port')

    def test_factory_selects_transport(self):
        assert isinstance(default_connection_factory('loopback://x'), LoopbackConnection)
        assert isinstance(default_connection_factory('tcp://h:1'), TcpConnection)
        assert isinstance(default_connection_factory('h:1'), TcpConnection)
        with pytest.raises(FatalConnectionError):
            default_connection_factory('serial:///dev/ttyUSB0')

    def test_loopback_ping(self):
        conn = LoopbackConnection()
        conn.open()
        conn.send(b'PING')
        conn.send(b'hello')
        assert conn.receive(timeout=1) == b'PONG'
        assert conn.receive(timeout=1) == b'hello'
        conn.close()


@pytest.fixture
def tcp_server():
    server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    server.bind(('127.0.0.1', 0))
    server.listen(1)
    server.settimeout(5)
    yield server
    server.close()


@pytest.fixture
def tcp_pair(tcp_server):
    """An open TcpConnection and the device-side socket"""
    port = tcp_server.getsockname()[1]
    conn = TcpConnection(f'tcp://127.0.0.1:{port}', connect_timeout=5, read_timeout=5)
    conn.open()
    peer, _ = tcp_server.accept()
    yield conn, peer
    conn.close()
    peer.close()


class TestTcpConnection:
    def test_send_appends_newline(self, tcp_pair):
        conn, peer = tcp_pair
        conn.send(b'PING')
        peer.settimeout(5)
        assert peer.recv(64) == b'PING\n'

    def test_reply_split_across_chunks(self, tcp_pair):
        conn, peer = tcp_pair
        peer.sendall(b'PO')
        timer = threading.Timer(0.1, peer.sendall, args=(b'NG\n',))
        timer.start()
        try:
            assert conn.receive(timeout=5) == b'PONG'
        finally:
            timer.join()

    def test_two_lines_in_one_chunk(self, tcp_pair):
        conn, peer = tcp_pair
        peer.sendall(b'first\nsecond\n')

        assert conn.receive(timeout=5) == b'first'
        peer.close()
        assert conn.receive(timeout=5) == b'second'

    def test_peer_closed_is_transient(self, tcp_pair):
        conn, peer = tcp_pair
        peer.close()
        with pytest.raises(TransientConnectionError):
            conn.receive(timeout=5)

    def test_receive_timeout_is_transient(self, tcp_pair):
        conn, _ = tcp_pair
        with pytest.raises(TransientConnectionError):
            conn.receive(timeout=0.05)

    def test_refused_is_transient(self):
        unused = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        unused.bind(('127.0.0.1', 0))
        port = unused.getsockname()[1]
        unused.close()

        with pytest.raises(TransientConnectionError):
            TcpConnection(f'tcp://127.0.0.1:{port}', connect_timeout=1).open()

    def test_unresolvable_host_is_fatal(self):
        error = socket.gaierror(-2, 'Name or service not known')
        with mock.patch('botfleet.transports.socket.create_connection', side_effect=error):
            with pytest.raises(FatalConnectionError):
                TcpConnection('tcp://no-such-device.invalid:7000').open()

    def test_io_without_open(self):
        conn = TcpConnection('tcp://127.0.0.1:1')
        with pytest.raises(TransientConnectionError):
            conn.send(b'PING')
        with pytest.raises(TransientConnectionError):
            conn.receive(timeout=1)
        conn.close()

    def test_supervisor_over_tcp(self, tcp_server):
        port = tcp_server.getsockname()[1]
        supervisor = ConnectionSupervisor(f'tcp://127.0.0.1:{port}', default_connection_factory)
        supervisor.connect()
        peer, _ = tcp_server.accept()
        try:
            peer.settimeout(5)
            supervisor.send(b'PING')
            assert peer.recv(64) == b'PING\n'
            peer.sendall(b'PONG\n')
            assert supervisor.receive(timeout=5) == b'PONG'
        finally:
            supervisor.close()
            peer.close()
