# Core modules for the device automation fleet
from .errors import (
    FleetError, ValidationError, DuplicateOwner, NotCancellable, JobNotFound, QueueShutdown,
    StateConflictError, FleetConnectionError, TransientConnectionError, FatalConnectionError,
    ConnectionLost, ExhaustedRetries, ReconnectAborted, JobTimeout, JobCancelled, WorkerNotFound,
)
from .models import (
    JobRequest, JobOutcome, JobStatus, JobPriority, EventKind, NotificationEvent,
    JobSummary, WorkerSummary,
)
from .options import FleetOptions
from .priority_queue import PriorityQueue
from .queue_manager import QueueManager, favored_owner_policy
from .state_machine import BotState, BotStateMachine, WorkerRecord
from .connection import (
    Connection, ConnectionStatus, ConnectionHandle, BackoffPolicy, ConnectionSupervisor,
)
from .transports import TcpConnection, LoopbackConnection, default_connection_factory
from .notifier import NotificationDispatcher, LogSubscriber, TelegramSubscriber, WebhookSubscriber
from .worker import BotWorker, JobContext, WorkerPool
from .health_monitor import HealthMonitor, HealthCheck
