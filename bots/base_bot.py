#!/usr/bin/env python3
"""
Base Bot - Clase base para todos los comportamientos de bot
"""

import logging
from abc import ABC, abstractmethod
from typing import Dict

logger = logging.getLogger(__name__)


class BaseBot(ABC):
    """
    Comportamiento de un tipo de job.

    Un worker crea una instancia por tipo de bot al registrarse y llama a
    execute() con cada job de ese tipo. Toda la E/S pasa por el contexto
    (ctx), que comprueba cancelación, deadline y stop en cada checkpoint.
    """

    bot_type: str = None

    def __init__(self, config: Dict = None):
        """
        Args:
            config: Configuración del bot (override de defaults)
        """
        self.config = config or {}

        # Estadísticas
        self.stats = {
            'runs': 0,
            'completed': 0,
            'errors': 0,
        }

    @abstractmethod
    def execute(self, job, ctx) -> Dict:
        """
        Ejecutar el job - implementar en subclases.

        Args:
            job: JobRequest
            ctx: JobContext del worker

        Returns:
            Resultado (dict serializable)
        """

    def run(self, job, ctx) -> Dict:
        """Ejecutar con contabilidad de estadísticas"""
        self.stats['runs'] += 1
        try:
            result = self.execute(job, ctx)
        except Exception:
            self.stats['errors'] += 1
            raise
        self.stats['completed'] += 1
        return result

    def get_stats(self) -> Dict:
        """Obtener estadísticas del bot"""
        return self.stats.copy()
