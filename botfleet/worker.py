#!/usr/bin/env python3
"""
Worker Pool - Workers de larga vida, cada uno con su propia conexión

Cada BotWorker corre en su thread: reclama jobs del QueueManager compartido,
los ejecuta con su comportamiento de bot a través de su ConnectionSupervisor
y reporta exactamente un resultado por job.
"""

import logging
import threading
import time
from typing import Callable, Dict, Iterable, List, Optional

import bots as bot_registry

from .connection import BackoffPolicy, ConnectionFactory, ConnectionSupervisor
from .errors import (
    ConnectionLost, ExhaustedRetries, FatalConnectionError, JobCancelled, JobTimeout,
    QueueShutdown, ReconnectAborted, StateConflictError, ValidationError, WorkerNotFound,
)
from .models import JobOutcome, JobRequest, WorkerSummary
from .options import FleetOptions
from .queue_manager import Claim, QueueManager
from .state_machine import BotState, BotStateMachine

logger = logging.getLogger(__name__)


class JobContext:
    """
    Lo que un bot ve durante la ejecución de un job.
    Cada operación pasa por checkpoint(): cancelación, stop forzado y deadline.
    """

    def __init__(self, job: JobRequest, claim: Claim, worker: 'BotWorker'):
        self.job = job
        self.claim = claim
        self.worker = worker
        self.attempt = 1

    @property
    def deadline(self) -> Optional[float]:
        return self.claim.deadline if self.claim else None

    def remaining(self) -> Optional[float]:
        if self.deadline is None:
            return None
        return self.deadline - self.worker.clock()

    def checkpoint(self):
        """Punto de cancelación cooperativa"""
        self.worker.machine.heartbeat()

        if self.claim and self.claim.cancel_requested:
            raise JobCancelled(f"Job {self.job.id} cancelled", reason='cancelled')

        machine = self.worker.machine
        if machine.stop_requested and not machine.graceful_stop:
            raise JobCancelled(f"Job {self.job.id} cancelled by forced stop", reason='shutdown')

        remaining = self.remaining()
        if remaining is not None and remaining <= 0:
            raise JobTimeout(f"Job {self.job.id} exceeded its deadline")

    def send(self, data: bytes):
        self.checkpoint()
        self.worker.supervisor.send(data)

    def receive(self, timeout: float = None) -> bytes:
        self.checkpoint()
        remaining = self.remaining()
        if remaining is not None:
            timeout = remaining if timeout is None else min(timeout, remaining)
        try:
            return self.worker.supervisor.receive(timeout)
        except ConnectionLost:
            remaining = self.remaining()
            if remaining is not None and remaining <= 0:
                raise JobTimeout(f"Job {self.job.id} exceeded its deadline")
            raise

    def request(self, data: bytes, timeout: float = None) -> bytes:
        self.send(data)
        return self.receive(timeout)

    def progress(self, percent: int, data: Dict = None):
        self.worker.manager.report_progress(self.job.id, percent, data)


class BotWorker:
    """
    Worker de larga vida ligado a una conexión externa.
    """

    def __init__(self, worker_id: str, manager: QueueManager,
                 connection_factory: ConnectionFactory, endpoint: str,
                 options: FleetOptions = None, bots: Dict = None,
                 sleep: Callable[[float], None] = None,
                 clock: Callable[[], float] = time.time):
        """
        Args:
            worker_id: ID del worker
            manager: QueueManager compartido
            connection_factory: Crea la conexión del endpoint
            endpoint: Endpoint de este worker (no compartido)
            options: FleetOptions
            bots: bot_type -> BaseBot
            sleep: Espera entre reconexiones (inyectable en tests)
            clock: Fuente de tiempo
        """
        self.worker_id = worker_id
        self.manager = manager
        self.options = options or FleetOptions()
        self.bots = bots or {}
        self.clock = clock

        self.machine = BotStateMachine(worker_id, failure_threshold=self.options.failure_threshold,
                                       clock=clock)
        self.supervisor = ConnectionSupervisor(
            endpoint,
            connection_factory,
            policy=BackoffPolicy.from_options(self.options),
            stop_event=self.machine.abort_event,
            sleep=sleep,
            clock=clock,
        )

        self._thread: Optional[threading.Thread] = None
        self._current_job: Optional[JobRequest] = None

    # === CONTROL ===

    def start(self):
        """Iniciar worker en background thread"""
        if self._thread and self._thread.is_alive():
            logger.warning(f"Worker {self.worker_id} already running")
            return
        self._thread = threading.Thread(target=self._worker_loop,
                                        name=f"worker-{self.worker_id}", daemon=True)
        self._thread.start()
        logger.info(f"Worker {self.worker_id} started ({self.supervisor.endpoint})")

    def request_stop(self, graceful: bool = True):
        self.machine.request_stop(graceful)

    def request_reset(self):
        self.machine.request_reset()

    def join(self, timeout: float = None) -> bool:
        if self._thread is None:
            return True
        self._thread.join(timeout)
        return not self._thread.is_alive()

    def is_alive(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    @property
    def state(self) -> BotState:
        return self.machine.state

    def get_summary(self) -> WorkerSummary:
        record = self.machine.snapshot()
        handle = self.supervisor.snapshot()
        return WorkerSummary(
            worker_id=record.worker_id,
            bot_type=','.join(sorted(self.bots)),
            state=record.state.value,
            current_job=record.current_job,
            consecutive_failures=record.consecutive_failures,
            last_heartbeat=record.last_heartbeat,
            last_error=record.last_error,
            connection_status=handle.status.value,
            retry_count=handle.retry_count,
            jobs_completed=record.jobs_completed,
            jobs_failed=record.jobs_failed,
        )

    # === LOOP ===

    def _worker_loop(self):
        """Loop principal del worker"""
        logger.debug(f"Worker {self.worker_id} loop started")
        try:
            while not self.machine.stop_requested:
                self.machine.heartbeat()

                if self.machine.state == BotState.ERROR:
                    self._wait_for_reset()
                    continue

                if not self.supervisor.is_healthy() and not self._connect():
                    continue

                if not self._claim_and_run():
                    break
        except StateConflictError:
            logger.exception(f"Worker {self.worker_id}: state machine contract violated")
            raise
        finally:
            self._abandon_current_job()
            self._stop_machine()
            logger.info(f"Worker {self.worker_id} stopped")

    def _wait_for_reset(self):
        """En ERROR no se reclaman jobs hasta un reset administrativo"""
        while not self.machine.stop_requested:
            if self.machine.reset_event.wait(self.options.poll_interval):
                self.supervisor.reset()
                self.machine.apply_reset()
                logger.info(f"Worker {self.worker_id} reset to idle")
                return
            self.machine.heartbeat()

    def _connect(self) -> bool:
        try:
            self.supervisor.connect()
            return True
        except ReconnectAborted:
            return False
        except (ExhaustedRetries, FatalConnectionError) as e:
            logger.error(f"Worker {self.worker_id} cannot connect: {e}")
            self.machine.record_failure(str(e))
            self.machine.fire('error')
            return False

    def _claim_and_run(self) -> bool:
        """
        Reclamar y ejecutar un job.

        Returns:
            False si la cola se cerró
        """
        self.machine.fire('start')
        try:
            job = self.manager.claim_next(self.worker_id, timeout=self.options.poll_interval)
        except QueueShutdown:
            self.machine.fire('abort')
            return False

        if job is None:
            self.machine.fire('abort')
            return True

        self._current_job = job
        self.machine.bind_job(job.id)
        self._execute_job(job)

        record = self.machine.record
        if record.state == BotState.IDLE and record.consecutive_failures >= self.options.failure_threshold:
            logger.error(f"Worker {self.worker_id}: {record.consecutive_failures} consecutive "
                         f"failures, entering error state")
            self.machine.fire('error')
        return True

    def _execute_job(self, job: JobRequest):
        """Ejecutar un job"""
        logger.info(f"Worker {self.worker_id} executing job {job.id} ({job.bot_type})")
        ctx = JobContext(job, self.manager.get_claim(job.id), self)

        if self.supervisor.is_healthy():
            self.machine.fire('ready')
        else:
            self.machine.fire('connection_lost')
            if not self._recover(job, ConnectionLost("connection not ready")):
                return

        bot = self.bots.get(job.bot_type)

        while True:
            try:
                if bot is None:
                    raise ValidationError(f"No bot registered for {job.bot_type}")
                ctx.checkpoint()
                start_time = time.time()
                result = bot.run(job, ctx)
                duration = time.time() - start_time

            except ConnectionLost as e:
                logger.warning(f"Worker {self.worker_id} lost connection during job {job.id}: {e}")
                self.machine.fire('connection_lost')
                if self._recover(job, e):
                    ctx.attempt += 1
                    continue
                return

            except FatalConnectionError as e:
                self.machine.fire('connection_lost')
                self._enter_error(e)
                return

            except JobCancelled as e:
                self._finish(job, JobOutcome.cancelled(reason=e.reason), 'fail')
                return

            except JobTimeout as e:
                self._finish(job, JobOutcome.failed(str(e), reason='timeout'), 'fail', failure=True)
                return

            except StateConflictError:
                raise

            except Exception as e:
                logger.error(f"Job {job.id} failed: {e}", exc_info=logger.isEnabledFor(logging.DEBUG))
                self._finish(job, JobOutcome.failed(str(e)), 'fail', failure=True)
                return

            result = dict(result or {})
            result.setdefault('duration', round(duration, 3))
            self.machine.record_success()
            self._finish(job, JobOutcome.completed(result), 'complete')
            return

    def _recover(self, job: JobRequest, error: Exception) -> bool:
        """
        RECONNECTING: reconectar con backoff.

        Returns:
            True si el job sigue asignado y debe reanudarse
        """
        if not job.retryable and self.machine.current_job:
            self.machine.release_job()
            self._report(job, JobOutcome.failed(f"Connection lost: {error}", reason='connection'))
            self.machine.record_failure(str(error))

        try:
            self.supervisor.reconnect()
        except ReconnectAborted:
            if self.machine.current_job:
                self.machine.release_job()
                self._report(job, JobOutcome.cancelled(reason='shutdown'))
            return False
        except (ExhaustedRetries, FatalConnectionError) as e:
            self._enter_error(e)
            return False

        return self.machine.fire('restored') == BotState.RUNNING

    def _enter_error(self, error: Exception):
        """
        RECONNECTING -> ERROR; el job asignado se reporta FAILED antes.

        Un job no reintentable ya se contó como fallo en _recover: cada job
        suma un único fallo.
        """
        job = self._current_job
        if job is not None and self.machine.current_job == job.id:
            self.machine.release_job()
            self._report(job, JobOutcome.failed(str(error), reason='connection'))
            self.machine.record_failure(str(error))
        self.machine.fire('exhausted')
        logger.error(f"Worker {self.worker_id} entered error state: {error}")

    def _finish(self, job: JobRequest, outcome: JobOutcome, trigger: str, failure: bool = False):
        self._report(job, outcome)
        if failure:
            self.machine.record_failure(outcome.error)
        self.machine.fire(trigger)

    def _report(self, job: JobRequest, outcome: JobOutcome):
        self._current_job = None
        self.manager.report_outcome(job.id, outcome, worker_id=self.worker_id)

    def _abandon_current_job(self):
        """Un job asignado nunca se pierde: si el loop termina con uno, se reporta"""
        job = self._current_job
        if job is None:
            return
        self._current_job = None
        self.machine.release_job()
        try:
            self.manager.report_outcome(
                job.id, JobOutcome.failed("Worker stopped unexpectedly", reason='error'),
                worker_id=self.worker_id,
            )
        except StateConflictError as e:
            logger.error(f"Worker {self.worker_id}: {e}")

    def _stop_machine(self):
        if self.machine.state not in (BotState.STOPPING, BotState.STOPPED):
            self.machine.fire('stop')
        self.supervisor.close()
        if self.machine.state == BotState.STOPPING:
            self.machine.fire('stopped')


class WorkerPool:
    """
    Compone un ConnectionSupervisor + BotStateMachine por worker, todos
    compartiendo un QueueManager.
    """

    def __init__(self, manager: QueueManager, options: FleetOptions = None,
                 connection_factory: ConnectionFactory = None,
                 bot_config: Dict[str, Dict] = None,
                 sleep: Callable[[float], None] = None):
        """
        Args:
            manager: QueueManager compartido
            options: FleetOptions
            connection_factory: Factory de conexiones (por defecto según esquema)
            bot_config: Config por tipo de bot
            sleep: Espera de backoff (inyectable en tests)
        """
        if connection_factory is None:
            from .transports import default_connection_factory
            connection_factory = default_connection_factory

        self.manager = manager
        self.options = options or FleetOptions()
        self.connection_factory = connection_factory
        self.bot_config = bot_config or {}
        self._sleep = sleep

        self._workers: Dict[str, BotWorker] = {}
        self._lock = threading.Lock()
        self._running = False
        self._shutdown = False

    # === REGISTRO ===

    def register_worker(self, worker_id: str, endpoint: str = None,
                        bot_types: Iterable[str] = None) -> BotWorker:
        """
        Registrar worker. Los comportamientos se eligen aquí (factory).

        Args:
            worker_id: ID único del worker
            endpoint: Endpoint de su conexión (default loopback://<id>)
            bot_types: Tipos de job que maneja (default todos los registrados)
        """
        types = list(bot_types) if bot_types else bot_registry.available_bots()
        bots = {t: bot_registry.create_bot(t, self.bot_config.get(t)) for t in types}

        with self._lock:
            if self._shutdown:
                raise RuntimeError("Worker pool is shut down")
            if worker_id in self._workers:
                raise ValueError(f"Worker {worker_id} already registered")

            worker = BotWorker(
                worker_id,
                self.manager,
                self.connection_factory,
                endpoint or f"loopback://{worker_id}",
                options=self.options,
                bots=bots,
                sleep=self._sleep,
            )
            self._workers[worker_id] = worker
            running = self._running

        logger.info(f"Worker registered: {worker_id} bots={types}")
        if running:
            worker.start()
        return worker

    def deregister_worker(self, worker_id: str, graceful: bool = True,
                          timeout: float = None) -> bool:
        """Detener y eliminar un worker"""
        worker = self.get_worker(worker_id)
        worker.request_stop(graceful)
        stopped = worker.join(timeout if timeout is not None else self.options.shutdown_timeout)
        with self._lock:
            self._workers.pop(worker_id, None)
        logger.info(f"Worker deregistered: {worker_id}")
        return stopped

    def get_worker(self, worker_id: str) -> BotWorker:
        with self._lock:
            worker = self._workers.get(worker_id)
        if worker is None:
            raise WorkerNotFound(worker_id)
        return worker

    def workers(self) -> List[BotWorker]:
        with self._lock:
            return list(self._workers.values())

    # === CICLO DE VIDA ===

    def start(self):
        """Arrancar todos los workers registrados"""
        with self._lock:
            if self._running:
                logger.warning("Worker pool already running")
                return
            self._running = True
            workers = list(self._workers.values())
        for worker in workers:
            worker.start()
        logger.info(f"Worker pool started with {len(workers)} worker(s)")

    def shutdown(self, graceful: bool = None, timeout: float = None) -> bool:
        """
        Parar la flota. Idempotente.

        Args:
            graceful: True = dejar terminar los jobs en curso, False = cancelarlos
                      (None = options.drain_on_shutdown)
            timeout: Segundos de espera por worker

        Returns:
            True si todos los workers terminaron a tiempo
        """
        with self._lock:
            if self._shutdown:
                return True
            self._shutdown = True
            self._running = False
            workers = list(self._workers.values())

        if graceful is None:
            graceful = self.options.drain_on_shutdown
        timeout = timeout if timeout is not None else self.options.shutdown_timeout

        logger.info(f"Shutting down worker pool (graceful={graceful})...")
        for worker in workers:
            worker.request_stop(graceful)
        self.manager.shutdown(cancel_pending=True)

        pending = [w for w in workers if not w.join(timeout)]
        if pending and graceful:
            # Drenado agotado: se fuerza el stop (cancela jobs y corta backoffs)
            for worker in pending:
                logger.warning(f"Worker {worker.worker_id} did not drain within {timeout}s, "
                               f"forcing stop")
                worker.request_stop(graceful=False)
            pending = [w for w in pending if not w.join(timeout)]

        for worker in pending:
            logger.warning(f"Worker {worker.worker_id} did not stop within {timeout}s")
        return not pending

    @property
    def running(self) -> bool:
        return self._running

    # === ADMIN ===

    def list_workers(self) -> List[WorkerSummary]:
        return [w.get_summary() for w in self.workers()]

    def reset_worker(self, worker_id: str):
        """Sacar un worker de ERROR (única salida de ese estado)"""
        self.get_worker(worker_id).request_reset()
        logger.info(f"Reset requested for worker {worker_id}")

    def stop_worker(self, worker_id: str, graceful: bool = True):
        self.get_worker(worker_id).request_stop(graceful)
        logger.info(f"Stop requested for worker {worker_id} (graceful={graceful})")

    # === PRODUCTOR (delegado al QueueManager) ===

    def submit(self, job: JobRequest) -> int:
        return self.manager.submit(job)

    def cancel(self, job_id: str, requested_by: str = None, wait: bool = False,
               timeout: float = None):
        return self.manager.cancel(job_id, requested_by=requested_by, wait=wait, timeout=timeout)

    def query_position(self, job_id: str) -> int:
        return self.manager.query_position(job_id)

    def list_queue(self):
        return self.manager.list_queue()
