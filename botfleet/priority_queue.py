#!/usr/bin/env python3
"""
Priority Queue - Almacén ordenado de jobs pendientes

Orden: tier descendente, enqueued_at ascendente y, a igualdad de ambos,
número de secuencia de encolado (FIFO estable dentro de un tier).
"""

import bisect
import itertools
import logging
import threading
import time
from typing import Dict, List, Optional, Tuple

from .errors import JobNotFound, QueueShutdown
from .models import JobRequest

logger = logging.getLogger(__name__)

QueueKey = Tuple[int, float, int]


class PriorityQueue:
    """
    Cola de prioridad thread-safe.
    No sabe nada de owners, workers ni conexiones.
    """

    def __init__(self, lock: threading.RLock = None):
        """
        Args:
            lock: Lock compartido (opcional). QueueManager pasa el suyo para que
                  la comprobación de admisión y la mutación sean atómicas.
        """
        self._cond = threading.Condition(lock or threading.RLock())
        self._keys: List[QueueKey] = []
        self._entries: Dict[str, Tuple[QueueKey, JobRequest]] = {}
        self._by_key: Dict[QueueKey, str] = {}
        self._sequence = itertools.count(1)
        self._closed = False

    @staticmethod
    def _make_key(job: JobRequest, tier: int) -> QueueKey:
        return (-tier, job.enqueued_at, job.sequence)

    def enqueue(self, job: JobRequest, tier: int = None) -> int:
        """
        Insertar job respetando el orden tier/timestamp.

        Args:
            job: JobRequest a encolar
            tier: Tier efectivo (por defecto job.priority)

        Returns:
            Posición actual (1-indexed)
        """
        with self._cond:
            if self._closed:
                raise QueueShutdown("Queue is closed")
            if job.id in self._entries:
                raise ValueError(f"Job {job.id} already queued")

            if job.enqueued_at is None:
                job.enqueued_at = time.time()
            job.sequence = next(self._sequence)

            key = self._make_key(job, job.priority if tier is None else tier)
            index = bisect.bisect_left(self._keys, key)
            self._keys.insert(index, key)
            self._entries[job.id] = (key, job)
            self._by_key[key] = job.id

            self._cond.notify()
            return index + 1

    def dequeue(self, timeout: float = None) -> Optional[JobRequest]:
        """
        Sacar el job de mayor prioridad y más antiguo.
        Bloquea mientras la cola esté vacía.

        Args:
            timeout: Segundos máximos de espera (None = indefinido)

        Returns:
            JobRequest o None si venció el timeout

        Raises:
            QueueShutdown: si la cola se cerró
        """
        deadline = None if timeout is None else time.monotonic() + timeout

        with self._cond:
            while not self._keys:
                if self._closed:
                    raise QueueShutdown("Queue is closed")
                if deadline is None:
                    self._cond.wait()
                else:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        return None
                    self._cond.wait(remaining)

            if self._closed:
                raise QueueShutdown("Queue is closed")

            key = self._keys.pop(0)
            job_id = self._by_key.pop(key)
            _, job = self._entries.pop(job_id)
            return job

    def remove(self, job_id: str) -> bool:
        """Quitar un job pendiente. Si no está, no hace nada."""
        with self._cond:
            entry = self._entries.pop(job_id, None)
            if not entry:
                return False

            key, _ = entry
            index = bisect.bisect_left(self._keys, key)
            del self._keys[index]
            del self._by_key[key]
            return True

    def position_of(self, job_id: str) -> int:
        """Posición actual (1-indexed) o JobNotFound"""
        with self._cond:
            entry = self._entries.get(job_id)
            if not entry:
                raise JobNotFound(job_id)
            return bisect.bisect_left(self._keys, entry[0]) + 1

    def get(self, job_id: str) -> Optional[JobRequest]:
        with self._cond:
            entry = self._entries.get(job_id)
            return entry[1] if entry else None

    def peek(self) -> Optional[JobRequest]:
        with self._cond:
            if not self._keys:
                return None
            return self._entries[self._by_key[self._keys[0]]][1]

    def snapshot(self) -> List[Tuple[int, JobRequest]]:
        """Copia ordenada: [(tier, job), ...]"""
        with self._cond:
            return [
                (-key[0], self._entries[self._by_key[key]][1])
                for key in self._keys
            ]

    def drain(self) -> List[JobRequest]:
        """Vaciar la cola devolviendo los jobs en orden"""
        with self._cond:
            jobs = [self._entries[self._by_key[key]][1] for key in self._keys]
            self._keys.clear()
            self._entries.clear()
            self._by_key.clear()
            return jobs

    def close(self):
        """Cerrar la cola y despertar a todos los que esperan (idempotente)"""
        with self._cond:
            if self._closed:
                return
            self._closed = True
            self._cond.notify_all()
        logger.debug("Priority queue closed")

    @property
    def closed(self) -> bool:
        return self._closed

    def __len__(self) -> int:
        with self._cond:
            return len(self._keys)

    def __contains__(self, job_id: str) -> bool:
        with self._cond:
            return job_id in self._entries
