"""Shared fakes and fixtures"""

import os
import tempfile
import threading
import time
from collections import defaultdict
from datetime import datetime, timedelta

import pytest

from runbookd.actions.backends import ActionBackend, BackendResult
from runbookd.alerts.alert_rule import AlertRule, Severity, SeverityTier
from runbookd.alerts.channels.base_channel import BaseChannel
from runbookd.config.settings import get_default_config
from runbookd.exceptions import MetricUnavailable
from runbookd.metrics.base import MetricSource
from runbookd.utils.helpers import to_label_set

T0 = datetime(2026, 1, 1, 12, 0, 0)


def at(seconds):
    """Tick time ``seconds`` after T0"""
    return T0 + timedelta(seconds=seconds)


class FakeSource(MetricSource):
    """Metric source fed directly by tests"""

    def __init__(self):
        self.values = {}
        self.queries = []

    def set(self, expression, value, labels=None):
        self.values.setdefault(expression, {})[to_label_set(labels)] = value

    def remove(self, expression, labels=None):
        self.values.get(expression, {}).pop(to_label_set(labels), None)

    def fail(self, expression):
        self.values.pop(expression, None)

    def query(self, expression, window, group_by=None):
        self.queries.append((expression, window))
        values = self.values.get(expression)
        if not values:
            raise MetricUnavailable(expression)
        return dict(values)


class FakeBackend(ActionBackend):
    """Records calls; returns queued results (BackendResult or exception)"""

    def __init__(self, results=None, precondition=True, delay=0.0):
        self.results = list(results or [])
        self.precondition = precondition
        self.delay = delay
        self.calls = []
        self.precondition_checks = []
        self.max_concurrent = defaultdict(int)
        self._active = defaultdict(int)
        self._lock = threading.Lock()

    def execute(self, action, timeout):
        with self._lock:
            self.calls.append((action.name, action.target, action.param_dict))
            self._active[action.target] += 1
            self.max_concurrent[action.target] = max(
                self.max_concurrent[action.target], self._active[action.target]
            )
            result = self.results.pop(0) if self.results else BackendResult(True, "ok")
        try:
            if self.delay:
                time.sleep(self.delay)
            if isinstance(result, Exception):
                raise result
            return result
        finally:
            with self._lock:
                self._active[action.target] -= 1

    def check_precondition(self, action, precondition):
        self.precondition_checks.append(precondition)
        return self.precondition


class FakeChannel(BaseChannel):
    """Channel that records what it was asked to send"""

    def __init__(self, ok=True):
        self.ok = ok
        self.sent = []

    def send(self, alert_key, severity, message, links=None):
        self.sent.append((alert_key, severity, message, links))
        if isinstance(self.ok, Exception):
            raise self.ok
        return self.ok


def make_rule(name="high_cpu", expression="cpu", operator=">", group_by=None, **tiers):
    """
    Build a rule from ``severity=(threshold, for_seconds, clear_seconds)`` tiers.

    Extra SeverityTier fields can be given as a dict in a fourth position.
    """
    built = []
    for severity_name, values in tiers.items():
        severity = Severity.parse(severity_name)
        threshold, for_seconds, clear_seconds = values[:3]
        extra = values[3] if len(values) > 3 else {}
        extra.setdefault('auto_remediate', severity.is_critical_class)
        built.append(SeverityTier(severity, threshold, for_seconds, clear_seconds, **extra))
    return AlertRule(
        name=name,
        expression=expression,
        operator=operator,
        tiers=built,
        group_by=list(group_by or []),
    )


@pytest.fixture
def source():
    return FakeSource()


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def temp_db():
    """Path to a temporary SQLite database"""
    temp = tempfile.NamedTemporaryFile(delete=False, suffix='.db')
    temp.close()
    yield temp.name
    for suffix in ('', '-wal', '-shm'):
        if os.path.exists(temp.name + suffix):
            os.unlink(temp.name + suffix)


@pytest.fixture
def config(temp_db):
    """Default configuration with fast retries and a temporary database"""
    config = get_default_config()
    config['storage']['sqlite_path'] = temp_db
    config['actions']['backoff_base'] = 0.0
    config['actions']['backoff_max'] = 0.0
    config['actions']['timeout'] = 5.0
    config['prometheus']['enabled'] = False
    config['notifications']['primary'] = 'primary'
    config['notifications']['fallback'] = 'fallback'
    config['escalation']['contact_tiers'] = [
        {'name': 'on-call', 'channels': ['primary']},
        {'name': 'team-lead', 'channels': ['primary']},
    ]
    return config
