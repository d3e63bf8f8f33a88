#!/usr/bin/env python3
"""
Notifier - Reparto de eventos de jobs a suscriptores

Cada suscriptor tiene su propia cola y su propio thread de envío, así un
suscriptor lento o que falla no frena a los demás ni a la cola de jobs.
"""

import itertools
import logging
import queue
import threading
import time
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional

import requests
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from .models import EventKind, NotificationEvent, TERMINAL_EVENTS

logger = logging.getLogger(__name__)

Handler = Callable[[NotificationEvent], None]

_STOP = object()


class Subscription:
    """Suscriptor registrado con su cola de entrega"""

    def __init__(self, sub_id: str, handler: Handler, name: str = None,
                 kinds: Iterable[EventKind] = None):
        self.id = sub_id
        self.handler = handler
        self.name = name or getattr(handler, '__name__', handler.__class__.__name__)
        self.kinds = frozenset(kinds) if kinds else None
        self.delivered = 0
        self.failures = 0
        self.last_error: Optional[str] = None

        self._queue: queue.Queue = queue.Queue()
        self._pending = 0
        self._closed = False
        self._idle = threading.Condition()
        self._thread = threading.Thread(
            target=self._deliver_loop, name=f"notifier-{self.name}", daemon=True
        )

    def start(self):
        self._thread.start()

    def accepts(self, event: NotificationEvent) -> bool:
        return self.kinds is None or event.kind in self.kinds

    def put(self, item) -> bool:
        """Encolar evento. False si la suscripción ya está parada."""
        with self._idle:
            if self._closed:
                return False
            self._pending += 1
            self._queue.put(item)
        return True

    def _deliver_loop(self):
        """Loop de entrega de eventos"""
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                try:
                    self.handler(item)
                    self.delivered += 1
                except Exception as e:
                    self.failures += 1
                    self.last_error = str(e)
                    logger.error(f"Subscriber {self.name} failed on {item.kind.value} "
                                 f"for job {item.job_id}: {e}")
            finally:
                with self._idle:
                    self._pending -= 1
                    if self._pending == 0:
                        self._idle.notify_all()

    def wait_idle(self, timeout: float = None) -> bool:
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._idle:
            while self._pending:
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return False
                self._idle.wait(remaining)
            return True

    def stop(self, timeout: float = None):
        # _STOP es siempre el último elemento de la cola
        with self._idle:
            if not self._closed:
                self._closed = True
                self._pending += 1
                self._queue.put(_STOP)
        if self._thread.is_alive() and self._thread is not threading.current_thread():
            self._thread.join(timeout)

    @property
    def backlog(self) -> int:
        return self._pending

    def get_status(self) -> Dict:
        return {
            'id': self.id,
            'name': self.name,
            'kinds': sorted(k.value for k in self.kinds) if self.kinds else None,
            'delivered': self.delivered,
            'failures': self.failures,
            'backlog': self.backlog,
            'last_error': self.last_error,
        }


class NotificationDispatcher:
    """
    Publica eventos de ciclo de vida de jobs a 0..n suscriptores.

    - publish() nunca bloquea
    - Orden garantizado por job (FIFO por suscriptor)
    - Los fallos de un suscriptor se registran y no afectan al resto
    """

    def __init__(self):
        self._subscriptions: Dict[str, Subscription] = {}
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self._published = 0
        self._stopped = False

    def subscribe(self, handler: Handler, name: str = None,
                  kinds: Iterable[EventKind] = None) -> str:
        """
        Registrar suscriptor.

        Args:
            handler: Callable que recibe NotificationEvent
            name: Nombre para logs
            kinds: Filtrar por tipos de evento (None = todos)

        Returns:
            ID de suscripción
        """
        with self._lock:
            if self._stopped:
                raise RuntimeError("Dispatcher is stopped")
            sub_id = f"sub-{next(self._ids)}"
            subscription = Subscription(sub_id, handler, name=name, kinds=kinds)
            self._subscriptions[sub_id] = subscription
        subscription.start()
        logger.info(f"Subscriber registered: {subscription.name} ({sub_id})")
        return sub_id

    def unsubscribe(self, sub_id: str) -> bool:
        """Quitar suscriptor. Los eventos ya encolados se entregan antes de parar."""
        with self._lock:
            subscription = self._subscriptions.pop(sub_id, None)
        if not subscription:
            return False
        subscription.stop(timeout=5)
        logger.info(f"Subscriber removed: {subscription.name} ({sub_id})")
        return True

    def publish(self, event: NotificationEvent):
        """Encolar evento para todos los suscriptores (no bloqueante)"""
        with self._lock:
            if self._stopped:
                logger.debug(f"Dispatcher stopped, dropping {event.kind.value} for {event.job_id}")
                return
            self._published += 1
            targets = [s for s in self._subscriptions.values() if s.accepts(event)]
        for subscription in targets:
            subscription.put(event)

    def flush(self, timeout: float = 5.0) -> bool:
        """Esperar a que se entreguen los eventos pendientes"""
        deadline = time.monotonic() + timeout
        with self._lock:
            subscriptions = list(self._subscriptions.values())
        for subscription in subscriptions:
            if not subscription.wait_idle(max(0.0, deadline - time.monotonic())):
                return False
        return True

    def stop(self, timeout: float = 5.0):
        """Detener todos los threads de entrega (idempotente)"""
        with self._lock:
            if self._stopped:
                return
            self._stopped = True
            subscriptions = list(self._subscriptions.values())
            self._subscriptions.clear()
        for subscription in subscriptions:
            subscription.stop(timeout=timeout)
        logger.info("Notification dispatcher stopped")

    def subscribers(self) -> List[Dict]:
        with self._lock:
            return [s.get_status() for s in self._subscriptions.values()]

    def get_stats(self) -> Dict:
        subs = self.subscribers()
        return {
            'published': self._published,
            'subscribers': len(subs),
            'failures': sum(s['failures'] for s in subs),
            'backlog': sum(s['backlog'] for s in subs),
        }


# === SUSCRIPTORES INCLUIDOS ===

class LogSubscriber:
    """Escribe cada evento en el log"""

    def __init__(self, level: int = logging.INFO):
        self.level = level

    def __call__(self, event: NotificationEvent):
        extra = ''
        if event.worker_id:
            extra += f" worker={event.worker_id}"
        if event.progress is not None:
            extra += f" progress={event.progress}"
        if event.error:
            extra += f" error={event.error}"
        logger.log(self.level, f"[event] {event.kind.value} job={event.job_id}{extra}")


class TelegramSubscriber:
    """
    Notificaciones por Telegram.
    Por defecto solo eventos terminales; mínimo 1 segundo entre mensajes.
    """

    EMOJIS = {
        EventKind.ENQUEUED: '📥',
        EventKind.STARTED: '🚀',
        EventKind.PROGRESS: '⏳',
        EventKind.COMPLETED: '✅',
        EventKind.FAILED: '❌',
        EventKind.CANCELLED: '🛑',
    }

    KINDS = TERMINAL_EVENTS

    def __init__(self, bot_token: str = None, chat_id: str = None,
                 min_interval: float = 1.0, timeout: float = 10):
        """
        Args:
            bot_token: Token del bot de Telegram
            chat_id: ID del chat donde enviar mensajes
            min_interval: Segundos mínimos entre mensajes
            timeout: Timeout HTTP
        """
        if bot_token is None or chat_id is None:
            from config import TELEGRAM_BOT_TOKEN, TELEGRAM_CHAT_ID
            bot_token = bot_token or TELEGRAM_BOT_TOKEN
            chat_id = chat_id or TELEGRAM_CHAT_ID

        self.bot_token = bot_token
        self.chat_id = chat_id
        self.min_interval = min_interval
        self.timeout = timeout
        self._last_message_time = None

    @property
    def enabled(self) -> bool:
        return bool(self.bot_token and self.chat_id)

    def format_message(self, event: NotificationEvent) -> str:
        """Formatear mensaje con emoji y hora"""
        emoji_char = self.EMOJIS.get(event.kind, 'ℹ️')
        timestamp = datetime.fromtimestamp(event.timestamp).strftime('%H:%M')

        message = f"{emoji_char} <b>Job {event.job_id}</b> {event.kind.value} [{timestamp}]"
        lines = []
        if event.owner_id:
            lines.append(f"👤 {event.owner_id}")
        if event.worker_id:
            lines.append(f"🤖 {event.worker_id}")
        if event.error:
            lines.append(f"<code>{event.error[:500]}</code>")
        if lines:
            message += "\n\n" + "\n".join(lines)
        return message

    def __call__(self, event: NotificationEvent):
        if not self.enabled:
            return

        # Rate limiting
        if self._last_message_time:
            elapsed = time.monotonic() - self._last_message_time
            if elapsed < self.min_interval:
                time.sleep(self.min_interval - elapsed)

        self.send(self.format_message(event))
        self._last_message_time = time.monotonic()

    def send(self, message: str) -> bool:
        """
        Enviar mensaje a Telegram.

        Returns:
            True si se envió correctamente
        """
        url = f"https://api.telegram.org/bot{self.bot_token}/sendMessage"
        payload = {
            'chat_id': self.chat_id,
            'text': message,
            'parse_mode': 'HTML',
            'disable_web_page_preview': True,
        }
        response = requests.post(url, json=payload, timeout=self.timeout)
        if response.status_code != 200:
            logger.warning(f"Telegram API error: {response.status_code} - {response.text}")
            return False
        return True


class WebhookSubscriber:
    """POST JSON de cada evento a una URL (con reintentos)"""

    def __init__(self, url: str, timeout: float = 10, headers: Dict = None):
        self.url = url
        self.timeout = timeout
        self.headers = {'Content-Type': 'application/json', **(headers or {})}

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, max=5),
        retry=retry_if_exception_type(requests.RequestException),
        reraise=True,
    )
    def _post(self, payload: Dict):
        response = requests.post(self.url, json=payload, headers=self.headers,
                                 timeout=self.timeout)
        response.raise_for_status()
        return response

    def __call__(self, event: NotificationEvent):
        self._post(event.to_dict())
