#!/usr/bin/env python3
"""
Health Monitor - Monitoreo de la flota

Solo observa y alerta: un worker en ERROR sale únicamente con un reset
administrativo (WorkerPool.reset_worker), nunca desde aquí.
"""

import logging
import threading
import time
from datetime import datetime
from typing import Callable, Dict, List, Optional

from .state_machine import BotState

logger = logging.getLogger(__name__)


class HealthCheck:
    """Resultado de health check"""

    def __init__(self, name: str, healthy: bool, message: str = '', details: Dict = None):
        self.name = name
        self.healthy = healthy
        self.message = message
        self.details = details or {}
        self.timestamp = datetime.now()

    def to_dict(self) -> Dict:
        return {
            'name': self.name,
            'healthy': self.healthy,
            'message': self.message,
            'details': self.details,
            'timestamp': self.timestamp.isoformat(),
        }


class HealthMonitor:
    """
    Monitor de salud de la flota.

    Checks:
    - Heartbeat de cada worker
    - Workers en estado ERROR
    - Estado de las conexiones
    - Fallos de los subscribers de notificaciones
    - Profundidad de la cola
    """

    def __init__(self, pool, manager, dispatcher=None, alert: Callable[[str], None] = None,
                 check_interval: float = 60, heartbeat_timeout: float = 120,
                 max_queue_depth: int = 100, clock: Callable[[], float] = time.time):
        """
        Args:
            pool: WorkerPool
            manager: QueueManager
            dispatcher: NotificationDispatcher (opcional)
            alert: Callback que recibe el texto de alerta (opcional)
            check_interval: Segundos entre checks
            heartbeat_timeout: Segundos sin heartbeat = worker colgado
            max_queue_depth: Jobs pendientes a partir de los cuales se alerta
            clock: Fuente de tiempo
        """
        self.pool = pool
        self.manager = manager
        self.dispatcher = dispatcher
        self.alert = alert
        self.check_interval = check_interval
        self.heartbeat_timeout = heartbeat_timeout
        self.max_queue_depth = max_queue_depth
        self._clock = clock

        self._running = False
        self._monitor_thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

        self._last_healthy = None
        self._last_issues: List[str] = []
        self._health_history: List[Dict] = []

        self._custom_checks: Dict[str, Callable[[], HealthCheck]] = {}

    def register_check(self, name: str, check_func: Callable[[], HealthCheck]):
        """
        Registrar health check personalizado.

        Args:
            name: Nombre del check
            check_func: Función que retorna HealthCheck
        """
        self._custom_checks[name] = check_func

    def start(self):
        """Iniciar monitor"""
        if self._running:
            logger.warning("Health monitor already running")
            return

        self._running = True
        self._stop_event.clear()

        self._monitor_thread = threading.Thread(target=self._monitor_loop,
                                                name='health-monitor', daemon=True)
        self._monitor_thread.start()

        logger.info("Health monitor started")

    def stop(self):
        """Detener monitor"""
        if not self._running:
            return

        self._running = False
        self._stop_event.set()

        if self._monitor_thread and self._monitor_thread.is_alive():
            self._monitor_thread.join(timeout=10)

        logger.info("Health monitor stopped")

    def _monitor_loop(self):
        """Loop principal de monitoreo"""
        while self._running:
            try:
                self._process_results(self.run_checks())
            except Exception as e:
                logger.error(f"Error in health monitor: {e}", exc_info=True)

            self._stop_event.wait(timeout=self.check_interval)

    def run_checks(self) -> List[HealthCheck]:
        """Ejecutar todos los health checks"""
        results = [
            self._check_heartbeats(),
            self._check_worker_errors(),
            self._check_connections(),
            self._check_queue(),
        ]
        if self.dispatcher is not None:
            results.append(self._check_dispatcher())

        for name, check_func in self._custom_checks.items():
            try:
                results.append(check_func())
            except Exception as e:
                results.append(HealthCheck(name, False, f"Check failed: {e}"))

        return results

    def _check_heartbeats(self) -> HealthCheck:
        """Workers vivos sin heartbeat reciente"""
        now = self._clock()
        stale = {}
        for summary in self.pool.list_workers():
            if summary.state == BotState.STOPPED.value:
                continue
            if summary.last_heartbeat is None:
                stale[summary.worker_id] = None
                continue
            age = now - summary.last_heartbeat
            if age >= self.heartbeat_timeout:
                stale[summary.worker_id] = int(age)

        if not stale:
            return HealthCheck('heartbeat', True, 'All workers alive')
        return HealthCheck(
            'heartbeat',
            False,
            f"{len(stale)} worker(s) without recent heartbeat (STALE)",
            {'stale': stale, 'timeout': self.heartbeat_timeout},
        )

    def _check_worker_errors(self) -> HealthCheck:
        """Workers en ERROR (requieren reset administrativo)"""
        errored = {
            s.worker_id: s.last_error
            for s in self.pool.list_workers()
            if s.state == BotState.ERROR.value
        }
        if not errored:
            return HealthCheck('worker_status', True, 'No workers in error state')
        return HealthCheck(
            'worker_status',
            False,
            f"Worker(s) in error state: {', '.join(sorted(errored))}",
            {'errored': errored},
        )

    def _check_connections(self) -> HealthCheck:
        statuses = {s.worker_id: s.connection_status for s in self.pool.list_workers()}
        failed = sorted(w for w, status in statuses.items() if status == 'failed')
        reconnecting = sorted(w for w, status in statuses.items() if status == 'reconnecting')

        healthy = not failed
        message = 'Connections OK'
        if failed:
            message = f"Failed connection(s): {', '.join(failed)}"
        elif reconnecting:
            message = f"Reconnecting: {', '.join(reconnecting)}"

        return HealthCheck('connections', healthy, message, {'statuses': statuses})

    def _check_queue(self) -> HealthCheck:
        stats = self.manager.get_stats()
        pending = stats.get('pending', 0)
        healthy = pending < self.max_queue_depth and not stats.get('shutdown')

        if stats.get('shutdown'):
            message = 'Queue is shut down'
        else:
            message = f"{pending} pending, {stats.get('running', 0)} running"
            if not healthy:
                message += f" (>= {self.max_queue_depth})"

        return HealthCheck('queue', healthy, message, stats)

    def _check_dispatcher(self) -> HealthCheck:
        stats = self.dispatcher.get_stats()
        failing = [s for s in self.dispatcher.subscribers() if s.get('failures')]

        healthy = not failing
        message = 'Notifications OK'
        if failing:
            message = '; '.join(f"{s['name']}: {s['failures']} failure(s)" for s in failing)

        return HealthCheck('notifications', healthy, message, stats)

    def _process_results(self, results: List[HealthCheck]):
        """Procesar resultados de health checks"""
        all_healthy = all(r.healthy for r in results)

        self._health_history.append({
            'timestamp': datetime.now().isoformat(),
            'healthy': all_healthy,
            'checks': [r.to_dict() for r in results],
        })

        # Mantener solo últimas 100 entradas
        if len(self._health_history) > 100:
            self._health_history = self._health_history[-100:]

        if all_healthy:
            self._last_healthy = datetime.now()
            self._last_issues = []
            logger.debug("Health check passed")
            return

        issues = [r for r in results if not r.healthy]
        names = sorted(i.name for i in issues)
        logger.warning(f"Health check failed: {names}")

        # Alertar solo cuando cambia el conjunto de problemas
        if names != self._last_issues:
            self._alert_unhealthy(issues)
        self._last_issues = names

    def _alert_unhealthy(self, issues: List[HealthCheck]):
        """Alertar sobre problemas de salud"""
        if not self.alert:
            return

        message = "\n".join(f"❌ {issue.name}: {issue.message}" for issue in issues)
        try:
            self.alert(message)
        except Exception as e:
            logger.error(f"Health alert failed: {e}")

    def get_health_status(self) -> Dict:
        """Obtener estado de salud actual"""
        results = self.run_checks()

        return {
            'healthy': all(r.healthy for r in results),
            'timestamp': datetime.now().isoformat(),
            'last_healthy': self._last_healthy.isoformat() if self._last_healthy else None,
            'checks': [r.to_dict() for r in results],
        }

    def get_health_history(self, limit: int = 20) -> List[Dict]:
        """Obtener historial de health checks"""
        return self._health_history[-limit:]
