#!/usr/bin/env python3
"""
Bot State Machine - Ciclo de vida de un worker

    IDLE -> STARTING -> RUNNING -> IDLE
                        RUNNING -> RECONNECTING -> RUNNING | IDLE | ERROR
    *    -> STOPPING -> STOPPED
    ERROR -> IDLE (solo con reset administrativo)
"""

import logging
import threading
import time
from dataclasses import dataclass, asdict
from enum import Enum
from typing import Callable, Dict, List, Optional

from .errors import StateConflictError

logger = logging.getLogger(__name__)


class BotState(Enum):
    IDLE = 'idle'
    STARTING = 'starting'
    RUNNING = 'running'
    RECONNECTING = 'reconnecting'
    STOPPING = 'stopping'
    STOPPED = 'stopped'
    ERROR = 'error'


# Estados en los que puede haber un job asignado
JOB_STATES = frozenset({
    BotState.STARTING, BotState.RUNNING, BotState.RECONNECTING, BotState.STOPPING,
})

# (estado, trigger) -> estado destino
TRANSITIONS: Dict[tuple, BotState] = {
    (BotState.IDLE, 'start'): BotState.STARTING,
    (BotState.STARTING, 'ready'): BotState.RUNNING,
    (BotState.STARTING, 'abort'): BotState.IDLE,
    (BotState.STARTING, 'connection_lost'): BotState.RECONNECTING,
    (BotState.RUNNING, 'complete'): BotState.IDLE,
    (BotState.RUNNING, 'fail'): BotState.IDLE,
    (BotState.RUNNING, 'connection_lost'): BotState.RECONNECTING,
    (BotState.RECONNECTING, 'exhausted'): BotState.ERROR,
    (BotState.IDLE, 'error'): BotState.ERROR,
    (BotState.RUNNING, 'error'): BotState.ERROR,
    (BotState.STOPPING, 'stopped'): BotState.STOPPED,
    (BotState.ERROR, 'reset'): BotState.IDLE,
}

STOPPABLE = frozenset({
    BotState.IDLE, BotState.STARTING, BotState.RUNNING,
    BotState.RECONNECTING, BotState.ERROR,
})


@dataclass
class WorkerRecord:
    """Estado de un worker. Solo lo muta su BotStateMachine."""
    worker_id: str
    state: BotState = BotState.IDLE
    current_job: Optional[str] = None
    consecutive_failures: int = 0
    last_heartbeat: float = None
    last_error: str = None
    jobs_completed: int = 0
    jobs_failed: int = 0

    def to_dict(self) -> Dict:
        data = asdict(self)
        data['state'] = self.state.value
        return data


class BotStateMachine:
    """
    Estados y transiciones legales de un worker.

    Las transiciones las dispara solo el thread del worker; stop y reset llegan
    desde otros threads como flags (threading.Event) que el worker observa.
    """

    def __init__(self, worker_id: str, failure_threshold: int = 5,
                 clock: Callable[[], float] = time.time):
        """
        Args:
            worker_id: ID del worker
            failure_threshold: Fallos consecutivos que llevan a ERROR
            clock: Fuente de tiempo (inyectable en tests)
        """
        self.record = WorkerRecord(worker_id=worker_id)
        self.failure_threshold = failure_threshold
        self._clock = clock
        self._lock = threading.Lock()
        self._listeners: List[Callable[[BotState, BotState, str], None]] = []

        self.stop_event = threading.Event()
        self.reset_event = threading.Event()
        # Corta las esperas de reconexión: stop forzado, o stop sin job asignado
        self.abort_event = threading.Event()
        self._graceful = True

    @property
    def worker_id(self) -> str:
        return self.record.worker_id

    @property
    def state(self) -> BotState:
        return self.record.state

    @property
    def current_job(self) -> Optional[str]:
        return self.record.current_job

    def add_listener(self, listener: Callable[[BotState, BotState, str], None]):
        """listener(from_state, to_state, trigger)"""
        self._listeners.append(listener)

    def can(self, trigger: str) -> bool:
        state = self.record.state
        if trigger == 'stop':
            return state in STOPPABLE
        if trigger == 'restored':
            return state == BotState.RECONNECTING
        return (state, trigger) in TRANSITIONS

    def fire(self, trigger: str) -> BotState:
        """
        Aplicar una transición.

        Raises:
            StateConflictError: la transición no es legal desde el estado actual
        """
        with self._lock:
            current = self.record.state
            target = self._resolve(current, trigger)
            if target is None:
                raise StateConflictError(
                    f"Worker {self.worker_id}: illegal transition '{trigger}' from {current.value}"
                )
            self.record.state = target
            if target not in JOB_STATES:
                self.record.current_job = None

        logger.debug(f"Worker {self.worker_id}: {current.value} --{trigger}--> {target.value}")
        for listener in self._listeners:
            try:
                listener(current, target, trigger)
            except Exception as e:
                logger.error(f"State listener error on {self.worker_id}: {e}")
        return target

    def _resolve(self, current: BotState, trigger: str) -> Optional[BotState]:
        if trigger == 'start' and self.record.current_job is not None:
            return None
        if trigger == 'ready' and self.record.current_job is None:
            return None
        if trigger == 'stop':
            return BotState.STOPPING if current in STOPPABLE else None
        if trigger == 'restored':
            if current != BotState.RECONNECTING:
                return None
            return BotState.RUNNING if self.record.current_job else BotState.IDLE
        return TRANSITIONS.get((current, trigger))

    # === JOB BINDING ===

    def bind_job(self, job_id: str):
        """Asignar un job reclamado (solo en STARTING)"""
        with self._lock:
            if self.record.state != BotState.STARTING:
                raise StateConflictError(
                    f"Worker {self.worker_id}: cannot bind job in state {self.record.state.value}"
                )
            if self.record.current_job is not None:
                raise StateConflictError(
                    f"Worker {self.worker_id} already bound to job {self.record.current_job}"
                )
            self.record.current_job = job_id
            # Con stop ordenado el job asignado conserva su reconexión
            if self.stop_event.is_set() and self._graceful:
                self.abort_event.clear()

    def release_job(self) -> Optional[str]:
        """Soltar el job actual (p.ej. fallo inmediato de un job no reintentable)"""
        with self._lock:
            job_id = self.record.current_job
            self.record.current_job = None
            return job_id

    def record_success(self):
        with self._lock:
            self.record.consecutive_failures = 0
            self.record.jobs_completed += 1
            self.record.last_error = None

    def record_failure(self, error: str = None) -> bool:
        """
        Contar un fallo.

        Returns:
            True si se alcanzó el umbral de fallos consecutivos
        """
        with self._lock:
            self.record.consecutive_failures += 1
            self.record.jobs_failed += 1
            if error:
                self.record.last_error = error
            return self.record.consecutive_failures >= self.failure_threshold

    def heartbeat(self):
        with self._lock:
            self.record.last_heartbeat = self._clock()

    # === SEÑALES ADMINISTRATIVAS (cualquier thread) ===

    def request_stop(self, graceful: bool = True):
        """
        Stop administrativo.

        Ordenado: el job en curso termina (incluida su reconexión).
        Forzado: se cancela en el siguiente checkpoint y se corta el backoff.
        """
        with self._lock:
            # Un stop forzado no se rebaja a ordenado
            if self.stop_event.is_set():
                graceful = graceful and self._graceful
            self._graceful = graceful
            self.stop_event.set()
            if not graceful or self.record.current_job is None:
                self.abort_event.set()

    def request_reset(self):
        """Reset administrativo. Solo tiene efecto si el worker está en ERROR."""
        if self.record.state != BotState.ERROR:
            raise StateConflictError(
                f"Worker {self.worker_id} is {self.record.state.value}; only ERROR can be reset"
            )
        self.reset_event.set()

    @property
    def stop_requested(self) -> bool:
        return self.stop_event.is_set()

    @property
    def graceful_stop(self) -> bool:
        return self._graceful

    def apply_reset(self):
        """Consumir la señal de reset (thread del worker)"""
        self.reset_event.clear()
        self.fire('reset')
        with self._lock:
            self.record.consecutive_failures = 0
            self.record.last_error = None

    def snapshot(self) -> WorkerRecord:
        with self._lock:
            return WorkerRecord(**{
                k: getattr(self.record, k) for k in self.record.__dataclass_fields__
            })
