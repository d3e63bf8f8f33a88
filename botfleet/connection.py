#!/usr/bin/env python3
"""
Connection Supervisor - Conexión externa de un worker con reconexión automática

Implementa backoff exponencial acotado:
    delay = min(base * 2^retry_count, cap) + jitter
"""

import logging
import random
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, asdict
from enum import Enum
from typing import Callable, Dict, List, Optional

from .errors import (
    ConnectionLost, ExhaustedRetries, FatalConnectionError, ReconnectAborted,
    TransientConnectionError,
)

logger = logging.getLogger(__name__)


class Connection(ABC):
    """
    Conexión externa no fiable.
    Cada método lanza TransientConnectionError o FatalConnectionError.
    """

    endpoint: str = ''

    @abstractmethod
    def open(self):
        pass

    @abstractmethod
    def send(self, data: bytes):
        pass

    @abstractmethod
    def receive(self, timeout: float = None) -> bytes:
        pass

    @abstractmethod
    def close(self):
        pass


ConnectionFactory = Callable[[str], Connection]


class ConnectionStatus(Enum):
    DISCONNECTED = 'disconnected'
    CONNECTED = 'connected'
    RECONNECTING = 'reconnecting'
    FAILED = 'failed'


@dataclass
class ConnectionHandle:
    """Estado de la conexión. Propiedad exclusiva de un supervisor."""
    endpoint: str
    status: ConnectionStatus = ConnectionStatus.DISCONNECTED
    retry_count: int = 0
    last_attempt: float = None
    last_error: str = None

    def to_dict(self) -> Dict:
        data = asdict(self)
        data['status'] = self.status.value
        return data


class BackoffPolicy:
    """Backoff exponencial acotado con jitter"""

    def __init__(self, base: float = 1.0, cap: float = 30.0, max_attempts: int = 5,
                 jitter: float = 0.1, rng: random.Random = None):
        """
        Args:
            base: Delay base en segundos
            cap: Delay máximo (sin contar jitter)
            max_attempts: Reconexiones consecutivas antes de ExhaustedRetries
            jitter: Máximo jitter aleatorio añadido (segundos)
            rng: Fuente aleatoria (inyectable en tests)
        """
        if base <= 0 or cap < base:
            raise ValueError("backoff base must be > 0 and <= cap")
        self.base = base
        self.cap = cap
        self.max_attempts = max_attempts
        self.jitter = jitter
        self._rng = rng or random.Random()

    @classmethod
    def from_options(cls, options, rng: random.Random = None) -> 'BackoffPolicy':
        return cls(
            base=options.backoff_base,
            cap=options.backoff_cap,
            max_attempts=options.max_retries,
            jitter=options.backoff_jitter,
            rng=rng,
        )

    def base_delay(self, retry_count: int) -> float:
        # 2 ** retry_count crece sin límite; se corta antes de multiplicar
        if retry_count >= 64:
            return self.cap
        return min(self.base * (2 ** retry_count), self.cap)

    def delay(self, retry_count: int) -> float:
        jitter = self._rng.uniform(0, self.jitter) if self.jitter > 0 else 0.0
        return self.base_delay(retry_count) + jitter


class ConnectionSupervisor:
    """
    Supervisa una única conexión: connect/send/receive/close con
    recuperación automática. Nunca se comparte entre workers.
    """

    def __init__(self, endpoint: str, connection_factory: ConnectionFactory,
                 policy: BackoffPolicy = None, stop_event: threading.Event = None,
                 sleep: Callable[[float], None] = None,
                 clock: Callable[[], float] = time.time):
        """
        Args:
            endpoint: Identidad del endpoint
            connection_factory: Crea una Connection nueva para el endpoint
            policy: BackoffPolicy
            stop_event: Interrumpe las esperas de reconexión (abort del worker)
            sleep: Función de espera (inyectable en tests)
            clock: Fuente de tiempo
        """
        self.endpoint = endpoint
        self.connection_factory = connection_factory
        self.policy = policy or BackoffPolicy()
        self.stop_event = stop_event or threading.Event()
        self._sleep = sleep
        self._clock = clock

        self.handle = ConnectionHandle(endpoint=endpoint)
        self.delays: List[float] = []
        self._conn: Optional[Connection] = None
        self._lock = threading.Lock()

    # === CICLO DE VIDA ===

    def connect(self):
        """
        Abrir la conexión. Si falla de forma transitoria, entra en el bucle
        de reconexión.

        Raises:
            ExhaustedRetries, FatalConnectionError, ReconnectAborted
        """
        try:
            self._open()
            logger.info(f"Connected to {self.endpoint}")
        except TransientConnectionError as e:
            logger.warning(f"Connection to {self.endpoint} failed: {e}")
            self._mark_lost(e)
            self.reconnect()

    def reconnect(self):
        """
        Reintentar con backoff hasta reconectar o agotar el presupuesto.

        Raises:
            ExhaustedRetries: se alcanzó max_attempts
            FatalConnectionError: el endpoint devolvió un error no recuperable
            ReconnectAborted: stop solicitado durante la espera
        """
        self._set_status(ConnectionStatus.RECONNECTING)

        while True:
            if self.handle.retry_count >= self.policy.max_attempts:
                self._set_status(ConnectionStatus.FAILED)
                logger.error(f"Reconnect to {self.endpoint} exhausted after "
                             f"{self.handle.retry_count} attempt(s)")
                raise ExhaustedRetries(self.endpoint, self.handle.retry_count,
                                       self.handle.last_error)

            delay = self.policy.delay(self.handle.retry_count)
            with self._lock:
                self.handle.retry_count += 1
                attempt = self.handle.retry_count
            self.delays.append(delay)

            logger.info(f"Reconnecting to {self.endpoint} in {delay:.2f}s "
                        f"(attempt {attempt}/{self.policy.max_attempts})")
            self._wait(delay)

            try:
                self._open()
            except TransientConnectionError as e:
                with self._lock:
                    self.handle.last_error = str(e)
                logger.warning(f"Reconnect attempt {attempt} to {self.endpoint} failed: {e}")
                continue

            logger.info(f"Connection to {self.endpoint} restored after {attempt} attempt(s)")
            return

    def close(self):
        """Cerrar la conexión (no lanza)"""
        conn = self._conn
        self._conn = None
        self._set_status(ConnectionStatus.DISCONNECTED)
        if conn is None:
            return
        try:
            conn.close()
        except Exception as e:
            logger.debug(f"Error closing connection to {self.endpoint}: {e}")

    def reset(self):
        """Cerrar y devolver el presupuesto de reintentos a cero (reset administrativo)"""
        self.close()
        with self._lock:
            self.handle.retry_count = 0

    # === I/O ===

    def send(self, data: bytes):
        conn = self._require_connection()
        try:
            conn.send(data)
        except TransientConnectionError as e:
            self._mark_lost(e)
            raise ConnectionLost(f"send to {self.endpoint} failed: {e}") from e
        except FatalConnectionError as e:
            self._mark_failed(e)
            raise

    def receive(self, timeout: float = None) -> bytes:
        conn = self._require_connection()
        try:
            return conn.receive(timeout)
        except TransientConnectionError as e:
            self._mark_lost(e)
            raise ConnectionLost(f"receive from {self.endpoint} failed: {e}") from e
        except FatalConnectionError as e:
            self._mark_failed(e)
            raise

    def request(self, data: bytes, timeout: float = None) -> bytes:
        """send + receive"""
        self.send(data)
        return self.receive(timeout)

    # === ESTADO ===

    def is_healthy(self) -> bool:
        return self.handle.status == ConnectionStatus.CONNECTED

    @property
    def status(self) -> ConnectionStatus:
        return self.handle.status

    def snapshot(self) -> ConnectionHandle:
        with self._lock:
            return ConnectionHandle(**{
                k: getattr(self.handle, k) for k in self.handle.__dataclass_fields__
            })

    # === INTERNOS ===

    def _require_connection(self) -> Connection:
        if self._conn is None or self.handle.status != ConnectionStatus.CONNECTED:
            raise ConnectionLost(f"Connection to {self.endpoint} is {self.handle.status.value}")
        return self._conn

    def _open(self):
        old = self._conn
        self._conn = None
        if old is not None:
            try:
                old.close()
            except Exception as e:
                logger.debug(f"Error closing stale connection to {self.endpoint}: {e}")

        with self._lock:
            self.handle.last_attempt = self._clock()

        try:
            conn = self.connection_factory(self.endpoint)
            conn.open()
        except FatalConnectionError as e:
            self._mark_failed(e)
            raise

        self._conn = conn
        with self._lock:
            self.handle.status = ConnectionStatus.CONNECTED
            self.handle.retry_count = 0
            self.handle.last_error = None

    def _wait(self, delay: float):
        if self._sleep is not None:
            self._sleep(delay)
            if self.stop_event.is_set():
                raise ReconnectAborted(f"Reconnect to {self.endpoint} aborted")
            return
        if self.stop_event.wait(delay):
            raise ReconnectAborted(f"Reconnect to {self.endpoint} aborted")

    def _mark_lost(self, error: Exception):
        with self._lock:
            self.handle.status = ConnectionStatus.RECONNECTING
            self.handle.last_error = str(error)

    def _mark_failed(self, error: Exception):
        with self._lock:
            self.handle.status = ConnectionStatus.FAILED
            self.handle.last_error = str(error)
        logger.error(f"Fatal connection error on {self.endpoint}: {error}")

    def _set_status(self, status: ConnectionStatus):
        with self._lock:
            self.handle.status = status
