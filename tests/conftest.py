"""
Pytest configuration and shared fixtures for relayq tests.
"""

import threading

import pytest

from relayq.db import init_db
from relayq.errors import ExecutionError
from relayq.models import DELIVERY_KIND, TRIGGER_KIND
from relayq.repository import JobStore


class FakeExecutor:
    """Records payloads; fails the first `failures` calls (or forever with -1)."""

    def __init__(self, failures=0, receipt=None, error="backend unavailable"):
        self.failures = failures
        self.receipt = receipt
        self.error = error
        self.calls = []
        self.timeouts = []
        self.gate = None

    def execute(self, payload, timeout=None):
        self.calls.append(payload)
        self.timeouts.append(timeout)
        if self.gate is not None:
            self.gate.wait(5)
        if self.failures < 0 or len(self.calls) <= self.failures:
            raise ExecutionError(f"{self.error} (call {len(self.calls)})")
        return self.receipt


class FakeTimer:
    """threading.Timer stand-in that only fires when told to."""

    created = []

    def __init__(self, interval, function, args=None, kwargs=None):
        self.interval = interval
        self.function = function
        self.args = args or ()
        self.daemon = False
        self.started = False
        self.cancelled = False
        FakeTimer.created.append(self)

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    def fire(self):
        if not self.cancelled:
            self.function(*self.args)


class RecordingNotifier:
    def __init__(self):
        self.messages = []

    def emit(self, summary, success):
        self.messages.append((summary, success))


@pytest.fixture
def db_path(tmp_path):
    path = tmp_path / "relayq.db"
    init_db(path)
    return path


@pytest.fixture
def delivery_store(db_path):
    return JobStore(db_path, DELIVERY_KIND)


@pytest.fixture
def trigger_store(db_path):
    return JobStore(db_path, TRIGGER_KIND)


@pytest.fixture
def fake_timers():
    FakeTimer.created = []
    yield FakeTimer
    FakeTimer.created = []


@pytest.fixture
def gate():
    return threading.Event()
