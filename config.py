#!/usr/bin/env python3
"""
Configuración centralizada para BotFleet
"""

import os
from pathlib import Path
from dotenv import load_dotenv

# Cargar .env
load_dotenv(override=True)

# Directorios
BASE_DIR = Path(__file__).parent
LOGS_DIR = Path(os.getenv('LOGS_DIR', BASE_DIR / 'logs'))

# Crear directorio de logs si no existe
LOGS_DIR.mkdir(parents=True, exist_ok=True)


def _optional_float(name: str):
    value = os.getenv(name, '').strip()
    return float(value) if value else None


def _bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ('1', 'true', 'yes', 'on')


# === COLA ===
FLEET_OWNER_CAP = int(os.getenv('FLEET_OWNER_CAP', '1'))
FLEET_JOB_TIMEOUT = _optional_float('FLEET_JOB_TIMEOUT')

# === RECONEXIÓN ===
FLEET_BACKOFF_BASE = float(os.getenv('FLEET_BACKOFF_BASE', '1.0'))
FLEET_BACKOFF_CAP = float(os.getenv('FLEET_BACKOFF_CAP', '30.0'))
FLEET_BACKOFF_JITTER = float(os.getenv('FLEET_BACKOFF_JITTER', '0.1'))
FLEET_MAX_RETRIES = int(os.getenv('FLEET_MAX_RETRIES', '5'))

# === WORKERS ===
# "worker-1=tcp://10.0.0.5:7000,worker-2=loopback://demo"
FLEET_WORKERS = os.getenv('FLEET_WORKERS', '')
FLEET_FAILURE_THRESHOLD = int(os.getenv('FLEET_FAILURE_THRESHOLD', '5'))
FLEET_POLL_INTERVAL = float(os.getenv('FLEET_POLL_INTERVAL', '1.0'))
FLEET_DRAIN_ON_SHUTDOWN = _bool('FLEET_DRAIN_ON_SHUTDOWN', 'true')
FLEET_SHUTDOWN_TIMEOUT = float(os.getenv('FLEET_SHUTDOWN_TIMEOUT', '30'))

# === HEALTH ===
FLEET_HEARTBEAT_TIMEOUT = float(os.getenv('FLEET_HEARTBEAT_TIMEOUT', '120'))
HEALTH_CHECK_INTERVAL = int(os.getenv('HEALTH_CHECK_INTERVAL', '60'))

# === TELEGRAM ===
TELEGRAM_BOT_TOKEN = os.getenv('TELEGRAM_BOT_TOKEN', os.getenv('TELEGRAM_TOKEN', ''))
TELEGRAM_CHAT_ID = os.getenv('TELEGRAM_CHAT_ID', '')

# === WEBHOOK ===
WEBHOOK_URL = os.getenv('WEBHOOK_URL', '').strip()
WEBHOOK_TIMEOUT = int(os.getenv('WEBHOOK_TIMEOUT', '10'))

# === ADMIN API ===
ADMIN_TOKEN = os.getenv('ADMIN_TOKEN', '')
WEB_HOST = os.getenv('WEB_HOST', '127.0.0.1')
WEB_PORT = int(os.getenv('WEB_PORT', '5000'))

# === LOGGING ===
LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO').upper()

# === BOT INFO ===
BOT_NAME = os.getenv('BOT_NAME', 'BotFleet')


def parse_workers(value: str = None) -> dict:
    """
    Parsear FLEET_WORKERS.

    Returns:
        {worker_id: endpoint}. Un item sin '=' usa loopback://<id>.
    """
    value = FLEET_WORKERS if value is None else value
    workers = {}
    for item in value.split(','):
        item = item.strip()
        if not item:
            continue
        worker_id, sep, endpoint = item.partition('=')
        worker_id = worker_id.strip()
        workers[worker_id] = endpoint.strip() if sep else f"loopback://{worker_id}"
    return workers


def validate_config() -> dict:
    """Valida la configuración y retorna errores si los hay"""
    errors = []
    warnings = []

    # Obligatorios
    if FLEET_OWNER_CAP < 1:
        errors.append("FLEET_OWNER_CAP debe ser >= 1")
    if FLEET_BACKOFF_BASE <= 0 or FLEET_BACKOFF_CAP < FLEET_BACKOFF_BASE:
        errors.append("FLEET_BACKOFF_BASE debe ser > 0 y <= FLEET_BACKOFF_CAP")
    if FLEET_MAX_RETRIES < 1:
        errors.append("FLEET_MAX_RETRIES debe ser >= 1")
    if FLEET_FAILURE_THRESHOLD < 1:
        errors.append("FLEET_FAILURE_THRESHOLD debe ser >= 1")
    if FLEET_JOB_TIMEOUT is not None and FLEET_JOB_TIMEOUT <= 0:
        errors.append("FLEET_JOB_TIMEOUT debe ser > 0")

    workers = parse_workers()
    if '' in workers:
        errors.append("FLEET_WORKERS contiene un worker sin ID")

    # Opcionales pero recomendados
    if not workers:
        warnings.append("FLEET_WORKERS no configurado (se usará un worker loopback)")
    if not TELEGRAM_BOT_TOKEN or not TELEGRAM_CHAT_ID:
        warnings.append("TELEGRAM_BOT_TOKEN/TELEGRAM_CHAT_ID no configurados (sin notificaciones)")
    if not ADMIN_TOKEN:
        warnings.append("ADMIN_TOKEN no configurado (API de administración sin autenticación)")

    return {
        'valid': len(errors) == 0,
        'errors': errors,
        'warnings': warnings
    }
