"""Shared test fixtures for botfleet tests."""

import threading
import time
from typing import Callable, List

import pytest

from botfleet import (
    Connection, FatalConnectionError, FleetOptions, NotificationDispatcher, QueueManager,
    TransientConnectionError, WorkerPool,
)


class FakeDevice:
    """Scripted remote device shared by every connection a factory creates.

    open_script / receive_script hold actions consumed in order:
    'ok', 'transient' or 'fatal'. An empty script means 'ok'.
    """

    def __init__(self):
        self.open_script: List[str] = []
        self.receive_script: List[str] = []
        self.opens = 0
        self.sent: List[bytes] = []
        self.lock = threading.Lock()

    def factory(self, endpoint: str) -> 'FakeConnection':
        return FakeConnection(self, endpoint)

    def next_action(self, script: List[str]) -> str:
        with self.lock:
            return script.pop(0) if script else 'ok'


class FakeConnection(Connection):
    def __init__(self, device: FakeDevice, endpoint: str):
        self.device = device
        self.endpoint = endpoint
        self.replies: List[bytes] = []
        self.closed = False

    def open(self):
        with self.device.lock:
            self.device.opens += 1
        self._raise_for(self.device.next_action(self.device.open_script))

    def send(self, data: bytes):
        with self.device.lock:
            self.device.sent.append(data)
        self.replies.append(b'PONG' if data == b'PING' else data)

    def receive(self, timeout: float = None) -> bytes:
        self._raise_for(self.device.next_action(self.device.receive_script))
        if not self.replies:
            raise TransientConnectionError("nothing to receive")
        return self.replies.pop(0)

    def close(self):
        self.closed = True

    @staticmethod
    def _raise_for(action: str):
        if action == 'transient':
            raise TransientConnectionError("device unreachable")
        if action == 'fatal':
            raise FatalConnectionError("device rejected credentials")


class FakeSleep:
    """Records backoff delays instead of waiting."""

    def __init__(self):
        self.delays: List[float] = []

    def __call__(self, delay: float):
        self.delays.append(delay)


class EventRecorder:
    """Subscriber that keeps every event it receives."""

    def __init__(self):
        self.events = []
        self._cond = threading.Condition()

    def __call__(self, event):
        with self._cond:
            self.events.append(event)
            self._cond.notify_all()

    def for_job(self, job_id: str):
        with self._cond:
            return [e for e in self.events if e.job_id == job_id]

    def kinds(self, job_id: str) -> List[str]:
        return [e.kind.value for e in self.for_job(job_id)]

    def terminal(self, job_id: str):
        return [e for e in self.for_job(job_id) if e.is_terminal]

    def wait_for(self, predicate: Callable[[], bool], timeout: float = 5.0) -> bool:
        deadline = time.monotonic() + timeout
        with self._cond:
            while not predicate():
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._cond.wait(remaining)
            return True

    def wait_terminal(self, job_id: str, timeout: float = 5.0) -> bool:
        return self.wait_for(
            lambda: any(e.job_id == job_id and e.is_terminal for e in self.events), timeout
        )


def _wait_until(predicate: Callable[[], bool], timeout: float = 5.0, interval: float = 0.01) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture
def wait_until():
    """Poll a predicate until it holds or the timeout expires."""
    return _wait_until


@pytest.fixture
def options() -> FleetOptions:
    return FleetOptions(
        backoff_base=1.0,
        backoff_cap=30.0,
        backoff_jitter=0.0,
        max_retries=3,
        failure_threshold=3,
        poll_interval=0.05,
        shutdown_timeout=5.0,
    )


@pytest.fixture
def dispatcher():
    dispatcher = NotificationDispatcher()
    yield dispatcher
    dispatcher.stop()


@pytest.fixture
def recorder(dispatcher) -> EventRecorder:
    recorder = EventRecorder()
    dispatcher.subscribe(recorder, name='recorder')
    return recorder


@pytest.fixture
def manager(dispatcher, recorder) -> QueueManager:
    return QueueManager(owner_cap=1, dispatcher=dispatcher)


@pytest.fixture
def device() -> FakeDevice:
    return FakeDevice()


@pytest.fixture
def fake_sleep() -> FakeSleep:
    return FakeSleep()


@pytest.fixture
def pool(manager, options, device, fake_sleep):
    pool = WorkerPool(manager, options=options, connection_factory=device.factory,
                      sleep=fake_sleep)
    yield pool
    pool.shutdown(graceful=False, timeout=5)
