#!/usr/bin/env python3
"""
Orchestrator - Orquestador principal de la flota de bots
"""

import logging
import signal
import sys
import time
from typing import Dict, List, Optional

from botfleet import (
    FleetOptions, HealthMonitor, JobRequest, LogSubscriber, NotificationDispatcher,
    QueueManager, TelegramSubscriber, WebhookSubscriber, WorkerPool,
)

logger = logging.getLogger(__name__)


class Orchestrator:
    """
    Orquestador principal que coordina todos los componentes:
    - NotificationDispatcher: Reparto de eventos a suscriptores
    - QueueManager: Admisión y reclamo de jobs
    - WorkerPool: Workers con su conexión y su máquina de estados
    - HealthMonitor: Monitoreo y alertas
    """

    def __init__(self, options: FleetOptions = None, workers: Dict[str, str] = None,
                 connection_factory=None, bot_config: Dict = None,
                 notifications: bool = True, sleep=None):
        """
        Args:
            options: FleetOptions (default: desde config.py)
            workers: {worker_id: endpoint} (default: FLEET_WORKERS)
            connection_factory: Factory de conexiones (default: por esquema)
            bot_config: Config por tipo de bot
            notifications: Registrar suscriptores Telegram/webhook según config
            sleep: Espera de backoff (inyectable en tests)
        """
        self.options = options
        self.workers = workers
        self.connection_factory = connection_factory
        self.bot_config = bot_config or {}
        self.notifications = notifications
        self._sleep = sleep

        self._components_initialized = False
        self._running = False

        # Componentes (se inicializan en setup())
        self.dispatcher: Optional[NotificationDispatcher] = None
        self.manager: Optional[QueueManager] = None
        self.pool: Optional[WorkerPool] = None
        self.health_monitor: Optional[HealthMonitor] = None
        self.telegram: Optional[TelegramSubscriber] = None

    def setup(self):
        """Inicializar todos los componentes"""
        if self._components_initialized:
            return

        import config

        logger.info("Setting up orchestrator components...")

        if self.options is None:
            self.options = FleetOptions.from_config()
        if self.workers is None:
            self.workers = config.parse_workers() or {'worker-1': 'loopback://worker-1'}

        # 1. Notificaciones
        self.dispatcher = NotificationDispatcher()
        self.dispatcher.subscribe(LogSubscriber(), name='log')
        if self.notifications:
            self.telegram = TelegramSubscriber()
            if self.telegram.enabled:
                self.dispatcher.subscribe(self.telegram, name='telegram', kinds=TelegramSubscriber.KINDS)
                logger.info("✓ Notifications initialized (Telegram enabled)")
            else:
                logger.info("✓ Notifications initialized (Telegram disabled)")
            if config.WEBHOOK_URL:
                self.dispatcher.subscribe(
                    WebhookSubscriber(config.WEBHOOK_URL, timeout=config.WEBHOOK_TIMEOUT),
                    name='webhook',
                )
                logger.info("✓ Webhook subscriber registered")

        # 2. Queue Manager
        self.manager = QueueManager.from_options(self.options, dispatcher=self.dispatcher)
        logger.info(f"✓ QueueManager initialized (owner_cap={self.options.owner_cap})")

        # 3. Worker Pool
        self.pool = WorkerPool(
            self.manager,
            options=self.options,
            connection_factory=self.connection_factory,
            bot_config=self.bot_config,
            sleep=self._sleep,
        )
        for worker_id, endpoint in self.workers.items():
            self.pool.register_worker(worker_id, endpoint)
        logger.info(f"✓ WorkerPool initialized with {len(self.workers)} worker(s)")

        # 4. Health Monitor
        self.health_monitor = HealthMonitor(
            self.pool,
            self.manager,
            dispatcher=self.dispatcher,
            alert=self._alert,
            check_interval=config.HEALTH_CHECK_INTERVAL,
            heartbeat_timeout=self.options.heartbeat_timeout,
        )
        logger.info("✓ HealthMonitor initialized")

        self._components_initialized = True
        logger.info("All components initialized successfully")

    def _alert(self, message: str):
        if self.telegram and self.telegram.enabled:
            self.telegram.send(f"⚠️ <b>Health Check</b>\n{message}")

    def start(self, install_signals: bool = True):
        """Iniciar el orquestador y todos los componentes"""
        if self._running:
            logger.warning("Orchestrator already running")
            return

        if not self._components_initialized:
            self.setup()

        logger.info("Starting orchestrator...")
        self._running = True

        if install_signals:
            self._setup_signals()

        try:
            self.pool.start()
            self.health_monitor.start()

            logger.info("=" * 50)
            logger.info("ORCHESTRATOR RUNNING")
            logger.info("=" * 50)

        except Exception as e:
            logger.error(f"Error starting orchestrator: {e}")
            self.stop()
            raise

    def stop(self, reason: str = "manual", graceful: bool = None):
        """Detener el orquestador y todos los componentes"""
        if not self._running:
            return

        logger.info(f"Stopping orchestrator (reason: {reason})...")
        self._running = False

        # Detener componentes en orden inverso
        if self.health_monitor:
            self.health_monitor.stop()

        if self.pool:
            if not self.pool.shutdown(graceful=graceful):
                logger.warning("Some workers did not stop in time")

        if self.dispatcher:
            self.dispatcher.flush(timeout=5)
            self.dispatcher.stop()

        logger.info("Orchestrator stopped successfully")

    def _setup_signals(self):
        """Configurar signal handlers para graceful shutdown"""
        def signal_handler(signum, frame):
            logger.info(f"Received signal {signum}")
            self.stop(reason=f"signal_{signum}")
            sys.exit(0)

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

    def run_forever(self):
        """Ejecutar el orquestador indefinidamente"""
        self.start()

        try:
            while self._running:
                time.sleep(1)
        except KeyboardInterrupt:
            logger.info("Keyboard interrupt received")
        finally:
            self.stop(reason="shutdown")

    @property
    def running(self) -> bool:
        return self._running

    # === API para dashboard ===

    def get_status(self) -> Dict:
        """Obtener estado completo del sistema"""
        return {
            'running': self._running,
            'options': self.options.to_dict() if self.options else None,
            'workers': [w.to_dict() for w in self.pool.list_workers()] if self.pool else [],
            'queue': self.manager.get_stats() if self.manager else None,
            'notifications': self.dispatcher.get_stats() if self.dispatcher else None,
        }

    def add_job(self, owner_id: str, bot_type: str, payload: Dict = None,
                priority: int = 2, **kwargs) -> JobRequest:
        """Añadir job manual a la cola. Devuelve el job con su id."""
        if not self.manager:
            raise RuntimeError("QueueManager not initialized")

        job = JobRequest(owner_id=owner_id, bot_type=bot_type, payload=payload or {},
                         priority=priority, **kwargs)
        self.manager.submit(job)
        return job

    def cancel_job(self, job_id: str, requested_by: str = None):
        return self.manager.cancel(job_id, requested_by=requested_by)

    def query_position(self, job_id: str) -> int:
        return self.manager.query_position(job_id)

    def get_job_history(self, limit: int = 50) -> List[Dict]:
        """Obtener historial de jobs"""
        if self.manager:
            return self.manager.get_history(limit)
        return []


def setup_logging(level: str = None, log_file: str = 'orchestrator.log'):
    """Logging a consola y a LOGS_DIR"""
    from config import LOG_LEVEL, LOGS_DIR

    logging.basicConfig(
        level=getattr(logging, level or LOG_LEVEL, logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.StreamHandler(),
            logging.FileHandler(LOGS_DIR / log_file)
        ]
    )


def main():
    """Entry point para ejecución directa"""
    import argparse

    setup_logging()

    parser = argparse.ArgumentParser(description='Bot Fleet Orchestrator')
    parser.add_argument('--test', '-t', action='store_true', help='Test configuration')
    args = parser.parse_args()

    orchestrator = Orchestrator()

    if args.test:
        print("Testing configuration...")
        orchestrator.setup()
        print("Configuration OK")

        if orchestrator.telegram and orchestrator.telegram.enabled:
            print("Testing Telegram connection...")
            if orchestrator.telegram.send("🔧 BotFleet test"):
                print("Telegram OK")
            else:
                print("Telegram FAILED")

        return

    orchestrator.run_forever()


if __name__ == '__main__':
    main()
