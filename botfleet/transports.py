#!/usr/bin/env python3
"""
Transports - Implementaciones de Connection

El formato de mensaje es una línea terminada en '\n'. Otros formatos se
enchufan implementando Connection.
"""

import logging
import queue
import socket
from typing import Callable, Dict, Optional

from .connection import Connection
from .errors import FatalConnectionError, TransientConnectionError

logger = logging.getLogger(__name__)


def parse_endpoint(endpoint: str):
    """'tcp://host:port' o 'host:port' -> (host, port)"""
    address = endpoint.split('://', 1)[-1]
    host, sep, port = address.rpartition(':')
    if not sep or not host:
        raise FatalConnectionError(f"Invalid endpoint: {endpoint}")
    try:
        return host, int(port)
    except ValueError:
        raise FatalConnectionError(f"Invalid port in endpoint: {endpoint}")


class TcpConnection(Connection):
    """Conexión TCP con mensajes delimitados por línea"""

    def __init__(self, endpoint: str, connect_timeout: float = 10.0,
                 read_timeout: float = 30.0):
        self.endpoint = endpoint
        self.connect_timeout = connect_timeout
        self.read_timeout = read_timeout
        self._sock: Optional[socket.socket] = None
        self._buffer = b''

    def open(self):
        host, port = parse_endpoint(self.endpoint)
        try:
            self._sock = socket.create_connection((host, port), timeout=self.connect_timeout)
        except socket.gaierror as e:
            raise FatalConnectionError(f"Cannot resolve {host}: {e}")
        except OSError as e:
            raise TransientConnectionError(f"Cannot connect to {self.endpoint}: {e}")
        self._buffer = b''

    def send(self, data: bytes):
        if self._sock is None:
            raise TransientConnectionError("Not connected")
        if not data.endswith(b'\n'):
            data += b'\n'
        try:
            self._sock.sendall(data)
        except OSError as e:
            raise TransientConnectionError(f"Send failed: {e}")

    def receive(self, timeout: float = None) -> bytes:
        if self._sock is None:
            raise TransientConnectionError("Not connected")

        self._sock.settimeout(timeout if timeout is not None else self.read_timeout)
        while b'\n' not in self._buffer:
            try:
                chunk = self._sock.recv(65536)
            except socket.timeout:
                raise TransientConnectionError(f"Receive timed out on {self.endpoint}")
            except OSError as e:
                raise TransientConnectionError(f"Receive failed: {e}")
            if not chunk:
                raise TransientConnectionError(f"Connection closed by {self.endpoint}")
            self._buffer += chunk

        line, _, self._buffer = self._buffer.partition(b'\n')
        return line

    def close(self):
        if self._sock is None:
            return
        try:
            self._sock.close()
        finally:
            self._sock = None


class LoopbackConnection(Connection):
    """
    Dispositivo simulado en memoria (dry-run y demos).
    Responde PING con PONG y hace eco del resto.
    """

    def __init__(self, endpoint: str = 'loopback://local',
                 handler: Callable[[bytes], bytes] = None):
        self.endpoint = endpoint
        self.handler = handler or self._default_handler
        self._replies: 'queue.Queue[bytes]' = queue.Queue()
        self._open = False

    @staticmethod
    def _default_handler(data: bytes) -> bytes:
        if data.strip().upper() == b'PING':
            return b'PONG'
        return data

    def open(self):
        self._open = True

    def send(self, data: bytes):
        if not self._open:
            raise TransientConnectionError("Loopback not open")
        self._replies.put(self.handler(data.rstrip(b'\n')))

    def receive(self, timeout: float = None) -> bytes:
        if not self._open:
            raise TransientConnectionError("Loopback not open")
        try:
            return self._replies.get(timeout=timeout if timeout is not None else 5)
        except queue.Empty:
            raise TransientConnectionError("Loopback receive timed out")

    def close(self):
        self._open = False


TRANSPORTS: Dict[str, Callable[[str], Connection]] = {
    'tcp': TcpConnection,
    'loopback': LoopbackConnection,
}


def default_connection_factory(endpoint: str) -> Connection:
    """Elegir transporte por el esquema del endpoint (tcp:// por defecto)"""
    scheme = endpoint.split('://', 1)[0] if '://' in endpoint else 'tcp'
    transport = TRANSPORTS.get(scheme)
    if transport is None:
        raise FatalConnectionError(f"Unsupported transport '{scheme}' for {endpoint}")
    return transport(endpoint)
