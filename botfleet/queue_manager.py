#!/usr/bin/env python3
"""
Queue Manager - Política de admisión sobre la cola de prioridad

- Límite de jobs activos por owner (pendientes + en curso)
- Cancelación de pendientes y cancelación cooperativa de jobs en curso
- Reclamo atómico de jobs por los workers
- Un único evento terminal por job
"""

import logging
import threading
import time
from collections import defaultdict, deque
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Set

from .errors import (
    DuplicateOwner, JobNotFound, NotCancellable, StateConflictError, ValidationError,
)
from .models import (
    EventKind, JobOutcome, JobRequest, JobStatus, JobSummary, NotificationEvent,
)
from .priority_queue import PriorityQueue

logger = logging.getLogger(__name__)

PriorityPolicy = Callable[[JobRequest], int]


def default_priority_policy(job: JobRequest) -> int:
    """El tier es el que trae el job"""
    return job.priority


def favored_owner_policy(favored: Iterable[str], boost: int = 1) -> PriorityPolicy:
    """
    Política de ejemplo: sube `boost` tiers a los owners favorecidos.

    Args:
        favored: IDs de owners favorecidos
        boost: Tiers extra
    """
    favored = frozenset(favored)

    def policy(job: JobRequest) -> int:
        return job.priority + (boost if job.owner_id in favored else 0)

    return policy


@dataclass
class Claim:
    """Job reclamado por un worker"""
    job: JobRequest
    worker_id: str
    claimed_at: float
    deadline: Optional[float] = None
    cancel_event: threading.Event = field(default_factory=threading.Event)
    done_event: threading.Event = field(default_factory=threading.Event)
    cancelled_by: str = None

    @property
    def cancel_requested(self) -> bool:
        return self.cancel_event.is_set()


class QueueManager:
    """Admisión, reclamo y reporte de jobs. Instancia única compartida por los workers."""

    ADMINS = frozenset({'admin'})

    def __init__(self, owner_cap: int = 1, dispatcher=None,
                 priority_policy: PriorityPolicy = None,
                 owner_caps: Dict[str, int] = None,
                 job_timeout: float = None,
                 admins: Iterable[str] = None,
                 history_size: int = 500):
        """
        Args:
            owner_cap: Jobs activos máximos por owner (default 1)
            dispatcher: NotificationDispatcher (opcional)
            priority_policy: Función job -> tier
            owner_caps: Overrides de límite por owner
            job_timeout: Deadline por defecto en segundos (None = sin límite)
            admins: Identidades que pueden cancelar jobs ajenos
            history_size: Jobs terminados que se guardan para consulta
        """
        if owner_cap < 1:
            raise ValueError("owner_cap must be >= 1")

        self.owner_cap = owner_cap
        self.owner_caps = dict(owner_caps or {})
        self.dispatcher = dispatcher
        self.priority_policy = priority_policy or default_priority_policy
        self.job_timeout = job_timeout
        self.admins = frozenset(admins) if admins is not None else self.ADMINS

        self._lock = threading.RLock()
        self._queue = PriorityQueue(lock=self._lock)
        self._tiers: Dict[str, int] = {}
        self._claims: Dict[str, Claim] = {}
        self._active_by_owner: Dict[str, Set[str]] = defaultdict(set)
        self._seen_ids: Set[str] = set()
        self._history = deque(maxlen=history_size)
        self._counters: Dict[str, int] = defaultdict(int)
        self._shutdown = False

    @classmethod
    def from_options(cls, options, dispatcher=None, **kwargs) -> 'QueueManager':
        return cls(
            owner_cap=options.owner_cap,
            dispatcher=dispatcher,
            job_timeout=options.job_timeout,
            **kwargs,
        )

    # === PRODUCTOR ===

    def submit(self, job: JobRequest) -> int:
        """
        Admitir un job en la cola.

        Returns:
            Posición (1-indexed)

        Raises:
            ValidationError: job mal formado o id repetido
            DuplicateOwner: el owner superaría su límite
            QueueShutdown: la cola está cerrada
        """
        job.validate()
        tier = self.priority_policy(job)
        if isinstance(tier, bool) or not isinstance(tier, int):
            raise ValidationError(f"Priority policy returned a non-integer tier for job {job.id}")

        with self._lock:
            if job.id in self._seen_ids:
                raise ValidationError(f"Job id {job.id} was already used")

            cap = self.owner_caps.get(job.owner_id, self.owner_cap)
            active = len(self._active_by_owner[job.owner_id])
            if active >= cap:
                self._counters['rejected'] += 1
                raise DuplicateOwner(job.owner_id, active, cap)

            if job.enqueued_at is None:
                job.enqueued_at = time.time()
            job.cancelled = False

            position = self._queue.enqueue(job, tier=tier)
            self._tiers[job.id] = tier
            self._seen_ids.add(job.id)
            self._active_by_owner[job.owner_id].add(job.id)
            self._counters['submitted'] += 1

            self._publish(NotificationEvent(
                job_id=job.id,
                kind=EventKind.ENQUEUED,
                owner_id=job.owner_id,
                data={'position': position, 'tier': tier, 'bot_type': job.bot_type},
            ))

        logger.info(f"Job submitted: {job.id} ({job.bot_type}) owner={job.owner_id} "
                    f"tier={tier} position={position}")
        return position

    def cancel(self, job_id: str, requested_by: str = None,
               wait: bool = False, timeout: float = None) -> JobStatus:
        """
        Cancelar un job.

        Pendiente: se quita de la cola y se emite CANCELLED.
        En curso: se señaliza al worker, que reporta el resultado.

        Args:
            job_id: ID del job
            requested_by: Owner (o admin) que pide la cancelación
            wait: Esperar a que el worker observe la señal
            timeout: Máximo de espera si wait=True

        Returns:
            JobStatus.CANCELLED si se quitó de la cola,
            JobStatus.RUNNING si se señalizó al worker

        Raises:
            NotCancellable, JobNotFound
        """
        with self._lock:
            job = self._queue.get(job_id)
            if job:
                self._check_requester(job, requested_by)
                self._queue.remove(job_id)
                job.cancelled = True
                self._finish(job, JobOutcome.cancelled(), worker_id=None, cancelled_by=requested_by)
                logger.info(f"Job {job_id} cancelled while pending")
                return JobStatus.CANCELLED

            claim = self._claims.get(job_id)
            if not claim:
                raise JobNotFound(job_id)

            self._check_requester(claim.job, requested_by)
            if not claim.job.cancellable:
                raise NotCancellable(f"Job {job_id} is in progress and not cancellable")

            claim.job.cancelled = True
            claim.cancelled_by = requested_by
            claim.cancel_event.set()
            logger.info(f"Cancellation requested for running job {job_id} (worker {claim.worker_id})")

        if wait:
            claim.done_event.wait(timeout)
        return JobStatus.RUNNING

    def _check_requester(self, job: JobRequest, requested_by: Optional[str]):
        if requested_by is None or requested_by == job.owner_id or requested_by in self.admins:
            return
        raise NotCancellable(f"Job {job.id} belongs to another owner")

    def query_position(self, job_id: str) -> int:
        """Posición actual (1-indexed) de un job pendiente"""
        return self._queue.position_of(job_id)

    # === WORKER ===

    def claim_next(self, worker_id: str, timeout: float = None) -> Optional[JobRequest]:
        """
        Reclamar el siguiente job. Bloquea hasta que haya uno.

        Args:
            worker_id: Worker que reclama
            timeout: Segundos máximos de espera (None = indefinido)

        Returns:
            JobRequest o None si venció el timeout

        Raises:
            QueueShutdown: la cola se cerró
        """
        with self._lock:
            job = self._queue.dequeue(timeout=timeout)
            if job is None:
                return None

            now = time.time()
            job_timeout = job.timeout if job.timeout is not None else self.job_timeout
            claim = Claim(
                job=job,
                worker_id=worker_id,
                claimed_at=now,
                deadline=now + job_timeout if job_timeout else None,
            )
            self._claims[job.id] = claim
            self._counters['claimed'] += 1

            self._publish(NotificationEvent(
                job_id=job.id,
                kind=EventKind.STARTED,
                owner_id=job.owner_id,
                worker_id=worker_id,
            ))

        logger.info(f"Job {job.id} claimed by {worker_id}")
        return job

    def get_claim(self, job_id: str) -> Optional[Claim]:
        with self._lock:
            return self._claims.get(job_id)

    def report_progress(self, job_id: str, progress: int, data: Dict = None):
        """Publicar progreso de un job en curso"""
        with self._lock:
            claim = self._claims.get(job_id)
            if not claim:
                raise JobNotFound(job_id)
            self._publish(NotificationEvent(
                job_id=job_id,
                kind=EventKind.PROGRESS,
                owner_id=claim.job.owner_id,
                worker_id=claim.worker_id,
                progress=progress,
                data=data,
            ))

    def report_outcome(self, job_id: str, outcome: JobOutcome, worker_id: str = None):
        """
        Reportar el resultado de un job reclamado. Emite el evento terminal.

        Raises:
            StateConflictError: el job no está en curso (ya reportado)
        """
        with self._lock:
            claim = self._claims.pop(job_id, None)
            if not claim:
                raise StateConflictError(f"Job {job_id} is not in progress; outcome already reported?")
            if worker_id is not None and worker_id != claim.worker_id:
                self._claims[job_id] = claim
                raise StateConflictError(
                    f"Job {job_id} is claimed by {claim.worker_id}, not {worker_id}"
                )
            self._finish(claim.job, outcome, worker_id=claim.worker_id,
                         cancelled_by=claim.cancelled_by)
            claim.done_event.set()

        level = logging.WARNING if outcome.status == JobStatus.FAILED else logging.INFO
        logger.log(level, f"Job {job_id} {outcome.status.value}"
                          + (f": {outcome.error}" if outcome.error else ""))

    def _finish(self, job: JobRequest, outcome: JobOutcome, worker_id: Optional[str],
                cancelled_by: str = None):
        """Liberar el slot del owner y emitir el evento terminal. Requiere el lock."""
        self._active_by_owner[job.owner_id].discard(job.id)
        if not self._active_by_owner[job.owner_id]:
            del self._active_by_owner[job.owner_id]
        tier = self._tiers.pop(job.id, job.priority)
        self._counters[outcome.status.value] += 1

        data = {'reason': outcome.reason} if outcome.reason else {}
        if cancelled_by:
            data['cancelled_by'] = cancelled_by

        self._history.append({
            'job_id': job.id,
            'owner_id': job.owner_id,
            'bot_type': job.bot_type,
            'tier': tier,
            'status': outcome.status.value,
            'worker_id': worker_id,
            'error': outcome.error,
            'reason': outcome.reason,
            'finished_at': time.time(),
        })

        self._publish(NotificationEvent(
            job_id=job.id,
            kind=outcome.event_kind,
            owner_id=job.owner_id,
            worker_id=worker_id,
            result=outcome.result,
            error=outcome.error,
            data=data or None,
        ))

    def _publish(self, event: NotificationEvent):
        if self.dispatcher is not None:
            self.dispatcher.publish(event)

    # === ADMIN ===

    def active_jobs(self, owner_id: str) -> List[str]:
        with self._lock:
            return sorted(self._active_by_owner.get(owner_id, ()))

    def list_queue(self) -> List[JobSummary]:
        """Jobs pendientes en orden, seguidos de los jobs en curso"""
        with self._lock:
            summaries = [
                JobSummary(
                    job_id=job.id,
                    owner_id=job.owner_id,
                    bot_type=job.bot_type,
                    tier=tier,
                    status=JobStatus.PENDING.value,
                    position=index,
                    enqueued_at=job.enqueued_at,
                )
                for index, (tier, job) in enumerate(self._queue.snapshot(), start=1)
            ]
            for claim in sorted(self._claims.values(), key=lambda c: c.claimed_at):
                summaries.append(JobSummary(
                    job_id=claim.job.id,
                    owner_id=claim.job.owner_id,
                    bot_type=claim.job.bot_type,
                    tier=self._tiers.get(claim.job.id, claim.job.priority),
                    status=JobStatus.RUNNING.value,
                    enqueued_at=claim.job.enqueued_at,
                    worker_id=claim.worker_id,
                ))
            return summaries

    def get_history(self, limit: int = 50) -> List[Dict]:
        """Últimos jobs terminados (más reciente primero)"""
        with self._lock:
            return list(self._history)[-limit:][::-1]

    def get_stats(self) -> Dict:
        with self._lock:
            stats = dict(self._counters)
            stats['pending'] = len(self._queue)
            stats['running'] = len(self._claims)
            stats['owners'] = len(self._active_by_owner)
            stats['shutdown'] = self._shutdown
            return stats

    def pending_count(self) -> int:
        return len(self._queue)

    @property
    def is_shutdown(self) -> bool:
        return self._shutdown

    def shutdown(self, cancel_pending: bool = True):
        """
        Cerrar la cola: despierta a los workers bloqueados en claim_next.
        Idempotente.

        Args:
            cancel_pending: Emitir CANCELLED para cada job pendiente
        """
        with self._lock:
            if self._shutdown:
                return
            self._shutdown = True
            self._queue.close()

            dropped = 0
            if cancel_pending:
                for job in self._queue.drain():
                    job.cancelled = True
                    self._finish(job, JobOutcome.cancelled(reason='shutdown'), worker_id=None)
                    dropped += 1

        logger.info(f"Queue manager shut down ({dropped} pending job(s) cancelled)")
