#!/usr/bin/env python3
"""
Command Bot - Envía una secuencia de comandos al dispositivo
"""

import logging
from typing import Dict, List

from botfleet.errors import ValidationError
from .base_bot import BaseBot

logger = logging.getLogger(__name__)


class CommandBot(BaseBot):
    """
    Ejecuta payload['commands'] en orden sobre la conexión del worker.

    Payload:
        commands: lista de comandos (str)
        expect: respuesta esperada común (opcional)
        reply_timeout: segundos por respuesta (opcional)
    """

    bot_type = 'command'

    def execute(self, job, ctx) -> Dict:
        commands: List[str] = job.payload.get('commands') or []
        if not commands or not all(isinstance(c, str) for c in commands):
            raise ValidationError(f"Job {job.id}: payload.commands must be a non-empty list of strings")

        expect = job.payload.get('expect')
        reply_timeout = job.payload.get('reply_timeout', self.config.get('reply_timeout', 30))

        replies = []
        for index, command in enumerate(commands, start=1):
            ctx.checkpoint()

            reply = ctx.request(command.encode('utf-8'), timeout=reply_timeout)
            text = reply.decode('utf-8', errors='replace')
            if expect is not None and text != expect:
                raise RuntimeError(f"Command '{command}' returned '{text}', expected '{expect}'")
            replies.append(text)

            ctx.progress(int(index * 100 / len(commands)), {'command': command})

        logger.debug(f"Job {job.id}: {len(commands)} command(s) executed")
        return {
            'commands': len(commands),
            'replies': replies,
            'attempt': ctx.attempt,
        }
