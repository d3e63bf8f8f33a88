#!/usr/bin/env python3
"""
Ping Bot - Comprueba que el dispositivo responde
"""

import time
from typing import Dict

from .base_bot import BaseBot


class PingBot(BaseBot):
    """Envía PING y espera PONG; mide la latencia"""

    bot_type = 'ping'

    def execute(self, job, ctx) -> Dict:
        count = int(job.payload.get('count', 1))
        timeout = job.payload.get('timeout', self.config.get('reply_timeout', 10))

        latencies = []
        for _ in range(max(1, count)):
            ctx.checkpoint()
            start = time.monotonic()
            reply = ctx.request(b'PING', timeout=timeout)
            if reply.strip().upper() != b'PONG':
                raise RuntimeError(f"Unexpected ping reply: {reply!r}")
            latencies.append(round((time.monotonic() - start) * 1000, 2))

        return {
            'pings': len(latencies),
            'latency_ms': latencies,
            'avg_ms': round(sum(latencies) / len(latencies), 2),
        }
