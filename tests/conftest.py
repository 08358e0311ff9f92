"""
Shared fixtures: an app on in-memory SQLite, a registry with a scriptable
fake adapter, and a controllable clock.
"""
from datetime import datetime, timedelta

import pytest
import requests

from syncbridge import create_app
from syncbridge.adapters.base import SyncResult, TargetAdapter
from syncbridge.adapters.registry import ModuleRegistry
from syncbridge.models import db
from syncbridge.services.queue_repository import SyncQueueRepository


TEST_CONFIG = {
    "TESTING": True,
    "ENV": "testing",
    "SQLALCHEMY_DATABASE_URI": "sqlite:///:memory:",
    "SECRET_KEY": "test-secret-key",
    "SYNC_SCHEDULER_ENABLED": False,
    "ALERT_WEBHOOK_URL": None,
    "SYNC_MEMORY_LIMIT_MB": None,
    "LOG_LEVEL": "WARNING",
}


def http_error(status_code):
    """An HTTPError carrying a response with the given status."""
    response = requests.Response()
    response.status_code = status_code
    return requests.exceptions.HTTPError(f"{status_code} Error", response=response)


class FakeAdapter(TargetAdapter):
    """
    Records every call. ``error`` (exception or SyncResult) is raised or
    returned by push/pull; otherwise new records get ids from 1000 upward.
    """

    def __init__(self, error=None, batch_types=(), existing=None):
        self.error = error
        self.batch_types = set(batch_types)
        self.existing = existing
        self.pushed = []
        self.pulled = []
        self.batches = []
        self.batch_error = None
        self.batch_results = None
        self._next_remote_id = 1000

    def _new_remote_id(self):
        self._next_remote_id += 1
        return self._next_remote_id

    def _outcome(self, context):
        if isinstance(self.error, Exception):
            raise self.error
        if isinstance(self.error, SyncResult):
            return self.error
        remote_id = context.remote_id
        if remote_id is None and context.action != "delete":
            remote_id = self._new_remote_id()
        return SyncResult.ok(remote_id=remote_id, local_id=context.local_id)

    def push(self, job, context):
        self.pushed.append(context)
        return self._outcome(context)

    def pull(self, job, context):
        self.pulled.append(context)
        return self._outcome(context)

    def supports_batch_create(self, entity_type):
        return entity_type in self.batch_types

    def push_batch(self, jobs, contexts):
        self.batches.append(list(contexts))
        if self.batch_error is not None:
            raise self.batch_error
        if self.batch_results is not None:
            return self.batch_results
        return [SyncResult.ok(remote_id=self._new_remote_id(), local_id=c.local_id) for c in contexts]

    def exists(self, entity_type, remote_ids):
        if isinstance(self.existing, Exception):
            raise self.existing
        return {i for i in remote_ids if i in (self.existing or set())}


class FakeClock:
    """Naive-UTC clock that only moves when told to."""

    def __init__(self, start=None):
        self.now = start or datetime(2025, 1, 15, 12, 0, 0)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeSender:
    def __init__(self):
        self.sent = []

    def send(self, subject, message, context=None):
        self.sent.append({"subject": subject, "message": message, "context": context or {}})
        return True


@pytest.fixture
def fake_adapter():
    return FakeAdapter()


@pytest.fixture
def registry(fake_adapter):
    registry = ModuleRegistry()
    registry.register("crm", fake_adapter)
    return registry


@pytest.fixture
def app(registry):
    """Create Flask application for testing."""
    app = create_app(dict(TEST_CONFIG), registry=registry)

    with app.app_context():
        db.create_all()
        SyncQueueRepository.invalidate_stats_cache()
        yield app
        db.session.remove()
        db.drop_all()
        SyncQueueRepository.invalidate_stats_cache()


@pytest.fixture
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sender():
    return FakeSender()


@pytest.fixture
def repo(app):
    return SyncQueueRepository()


@pytest.fixture
def make_http_error():
    return http_error


@pytest.fixture
def make_adapter():
    return FakeAdapter


@pytest.fixture
def make_app(registry):
    """Build a separate app with config overrides, e.g. a file-backed database."""
    def factory(**overrides):
        return create_app(dict(TEST_CONFIG, **overrides), registry=registry)
    return factory
