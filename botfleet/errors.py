#!/usr/bin/env python3
"""
Errors - Jerarquía de excepciones de la flota
"""


class FleetError(Exception):
    """Error base de botfleet"""


# === ADMISIÓN (síncronos, vuelven directamente al productor) ===

class ValidationError(FleetError):
    """Job mal formado o con campos obligatorios ausentes"""


class DuplicateOwner(FleetError):
    """El owner ya alcanzó su límite de jobs activos"""

    def __init__(self, owner_id: str, active: int, cap: int):
        self.owner_id = owner_id
        self.active = active
        self.cap = cap
        super().__init__(f"Owner {owner_id} already has {active} active job(s) (cap={cap})")


class NotCancellable(FleetError):
    """Cancelación rechazada (job en curso no cancelable u owner distinto)"""


class JobNotFound(FleetError):
    """El job no está pendiente ni en curso"""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job {job_id} not found")


class QueueShutdown(FleetError):
    """La cola se cerró; no se reclaman más jobs"""


class StateConflictError(FleetError):
    """Transición ilegal de la máquina de estados (violación de contrato)"""


# === CONEXIÓN ===

class FleetConnectionError(FleetError):
    """Error base de conexión"""

    fatal = False


class TransientConnectionError(FleetConnectionError):
    """Fallo recuperable: se reintenta con backoff"""


class FatalConnectionError(FleetConnectionError):
    """Fallo no recuperable: el worker pasa a ERROR"""

    fatal = True


class ConnectionLost(FleetConnectionError):
    """Se perdió la conexión en mitad de un send/receive"""


class ExhaustedRetries(FleetConnectionError):
    """Se agotó el presupuesto de reconexiones"""

    fatal = True

    def __init__(self, endpoint: str, attempts: int, last_error: str = None):
        self.endpoint = endpoint
        self.attempts = attempts
        self.last_error = last_error
        msg = f"Connection to {endpoint} failed after {attempts} reconnect attempt(s)"
        if last_error:
            msg += f": {last_error}"
        super().__init__(msg)


class ReconnectAborted(FleetConnectionError):
    """La espera de reconexión se interrumpió por un stop"""


# === EJECUCIÓN ===

class JobTimeout(FleetError):
    """El job superó su deadline"""


class JobCancelled(FleetError):
    """El job fue cancelado de forma cooperativa"""

    def __init__(self, message: str = 'Job cancelled', reason: str = 'cancelled'):
        self.reason = reason
        super().__init__(message)


# === ADMIN ===

class WorkerNotFound(FleetError):
    """No hay ningún worker registrado con ese ID"""

    def __init__(self, worker_id: str):
        self.worker_id = worker_id
        super().__init__(f"Worker {worker_id} not found")
