#!/usr/bin/env python3
"""
Options - Opciones con nombre que se pasan al construir la flota
"""

from dataclasses import dataclass, asdict
from typing import Dict, Optional


@dataclass
class FleetOptions:
    """Límites, backoff y timeouts de la flota"""
    owner_cap: int = 1
    backoff_base: float = 1.0
    backoff_cap: float = 30.0
    backoff_jitter: float = 0.1
    max_retries: int = 5
    job_timeout: Optional[float] = None
    failure_threshold: int = 5
    poll_interval: float = 1.0
    drain_on_shutdown: bool = True
    shutdown_timeout: float = 30.0
    heartbeat_timeout: float = 120.0

    def __post_init__(self):
        if self.owner_cap < 1:
            raise ValueError("owner_cap must be >= 1")
        if self.backoff_base <= 0 or self.backoff_cap < self.backoff_base:
            raise ValueError("backoff_base must be > 0 and <= backoff_cap")
        if self.max_retries < 1:
            raise ValueError("max_retries must be >= 1")

    def to_dict(self) -> Dict:
        return asdict(self)

    @classmethod
    def from_config(cls, **overrides) -> 'FleetOptions':
        """Construir desde config.py (.env) con overrides opcionales"""
        import config

        values = {
            'owner_cap': config.FLEET_OWNER_CAP,
            'backoff_base': config.FLEET_BACKOFF_BASE,
            'backoff_cap': config.FLEET_BACKOFF_CAP,
            'backoff_jitter': config.FLEET_BACKOFF_JITTER,
            'max_retries': config.FLEET_MAX_RETRIES,
            'job_timeout': config.FLEET_JOB_TIMEOUT,
            'failure_threshold': config.FLEET_FAILURE_THRESHOLD,
            'poll_interval': config.FLEET_POLL_INTERVAL,
            'drain_on_shutdown': config.FLEET_DRAIN_ON_SHUTDOWN,
            'shutdown_timeout': config.FLEET_SHUTDOWN_TIMEOUT,
            'heartbeat_timeout': config.FLEET_HEARTBEAT_TIMEOUT,
        }
        values.update(overrides)
        return cls(**values)
