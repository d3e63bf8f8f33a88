#!/usr/bin/env python3
"""
Models - Jobs, eventos y resúmenes compartidos por la cola y los workers
"""

import time
import uuid
from dataclasses import dataclass, asdict, field
from enum import Enum
from typing import Dict, Any, Optional

from .errors import ValidationError


class JobPriority(Enum):
    LOW = 1         # Background tasks
    NORMAL = 2      # Normal
    HIGH = 3        # Alta prioridad
    HOT = 4         # Ejecutar ASAP


class JobStatus(Enum):
    PENDING = 'pending'
    RUNNING = 'running'
    COMPLETED = 'completed'
    FAILED = 'failed'
    CANCELLED = 'cancelled'


class EventKind(Enum):
    ENQUEUED = 'enqueued'
    STARTED = 'started'
    PROGRESS = 'progress'
    COMPLETED = 'completed'
    FAILED = 'failed'
    CANCELLED = 'cancelled'


TERMINAL_EVENTS = (EventKind.COMPLETED, EventKind.FAILED, EventKind.CANCELLED)


@dataclass
class JobRequest:
    """Representa un trabajo solicitado por un owner"""
    owner_id: str
    bot_type: str
    payload: Dict[str, Any] = field(default_factory=dict)
    priority: int = JobPriority.NORMAL.value
    id: str = None
    enqueued_at: float = None
    cancellable: bool = True
    retryable: bool = True
    timeout: Optional[float] = None
    source: str = 'manual'  # manual, api, cli, scheduled
    sequence: int = None
    cancelled: bool = False

    def __post_init__(self):
        if not self.id:
            self.id = uuid.uuid4().hex
        if isinstance(self.priority, JobPriority):
            self.priority = self.priority.value

    def validate(self):
        """Validar campos obligatorios. Lanza ValidationError."""
        if not self.id or not isinstance(self.id, str):
            raise ValidationError("Job id is required")
        if not self.owner_id or not isinstance(self.owner_id, str):
            raise ValidationError(f"Job {self.id}: owner_id is required")
        if not self.bot_type or not isinstance(self.bot_type, str):
            raise ValidationError(f"Job {self.id}: bot_type is required")
        if isinstance(self.priority, bool) or not isinstance(self.priority, int):
            raise ValidationError(f"Job {self.id}: priority must be an integer")
        if not isinstance(self.payload, dict):
            raise ValidationError(f"Job {self.id}: payload must be a dict")
        if self.timeout is not None and self.timeout <= 0:
            raise ValidationError(f"Job {self.id}: timeout must be positive")

    def to_dict(self) -> Dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict) -> 'JobRequest':
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)


@dataclass
class JobOutcome:
    """Resultado que un worker reporta al terminar un job"""
    status: JobStatus
    result: Dict[str, Any] = None
    error: str = None
    reason: str = None  # error, timeout, connection, cancelled, shutdown

    @classmethod
    def completed(cls, result: Dict = None) -> 'JobOutcome':
        return cls(JobStatus.COMPLETED, result=result or {})

    @classmethod
    def failed(cls, error: str, reason: str = 'error') -> 'JobOutcome':
        return cls(JobStatus.FAILED, error=error, reason=reason)

    @classmethod
    def cancelled(cls, reason: str = 'cancelled') -> 'JobOutcome':
        return cls(JobStatus.CANCELLED, reason=reason)

    @property
    def event_kind(self) -> EventKind:
        return {
            JobStatus.COMPLETED: EventKind.COMPLETED,
            JobStatus.FAILED: EventKind.FAILED,
            JobStatus.CANCELLED: EventKind.CANCELLED,
        }[self.status]


@dataclass
class NotificationEvent:
    """Evento del ciclo de vida de un job"""
    job_id: str
    kind: EventKind
    timestamp: float = None
    owner_id: str = None
    worker_id: str = None
    result: Dict[str, Any] = None
    error: str = None
    progress: int = None
    data: Dict[str, Any] = None

    def __post_init__(self):
        if self.timestamp is None:
            self.timestamp = time.time()

    @property
    def is_terminal(self) -> bool:
        return self.kind in TERMINAL_EVENTS

    def to_dict(self) -> Dict:
        data = asdict(self)
        data['kind'] = self.kind.value
        return data


@dataclass
class JobSummary:
    """Vista de un job para el admin (ListQueue)"""
    job_id: str
    owner_id: str
    bot_type: str
    tier: int
    status: str
    position: Optional[int] = None
    enqueued_at: float = None
    worker_id: str = None

    def to_dict(self) -> Dict:
        return asdict(self)


@dataclass
class WorkerSummary:
    """Vista de un worker para el admin (ListWorkers)"""
    worker_id: str
    bot_type: str
    state: str
    current_job: Optional[str] = None
    consecutive_failures: int = 0
    last_heartbeat: float = None
    last_error: str = None
    connection_status: str = None
    retry_count: int = 0
    jobs_completed: int = 0
    jobs_failed: int = 0

    def to_dict(self) -> Dict:
        return asdict(self)
