import pytest
from fastapi.testclient import TestClient

from pulsemap.config import Settings
from pulsemap.db import init_db, make_engine
from pulsemap.errors import FetchError
from pulsemap.events import Event, EventType, Severity
from pulsemap.main import create_app
from pulsemap.sources.base import RefreshPolicy, SourceAdapter
from pulsemap.store import MemoryEventStore, SqlEventStore

HOUR_MS = 60 * 60 * 1000
NOW_MS = 1_700_000_000_000


def make_event(event_type=EventType.EARTHQUAKE, external_id='ev-1', time=NOW_MS, **overrides):
    fields = dict(
        type=event_type,
        external_id=external_id,
        title=f"{event_type.value} {external_id}",
        latitude=37.7,
        longitude=-122.4,
        time=time,
        severity=Severity.for_type(event_type, 3.0),
    )
    fields.update(overrides)
    return Event(**fields)


def batch(event_type, count, start=NOW_MS):
    return [make_event(event_type, external_id=f"{event_type.value}-{i}", time=start - i) for i in range(count)]


class StaticAdapter(SourceAdapter):
    """Serves a fixed list of events instead of downloading a feed."""

    def __init__(self, event_type, events=(), policy=RefreshPolicy.REPLACE, cap=100, error=None):
        super().__init__(cap=cap, session=object())
        self.name = event_type.value
        self.event_type = event_type
        self.refresh_policy = policy
        self.payload = list(events)
        self.error = error
        self.gate = None

    def download(self):
        if self.gate is not None:
            self.gate.wait(5)
        if self.error is not None:
            raise FetchError(self.name, self.error)
        return self.payload

    def records(self, payload):
        return payload

    def normalize(self, event):
        return event


@pytest.fixture
def engine():
    engine = make_engine('sqlite://')
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture(params=['memory', 'sql'])
def store(request):
    if request.param == 'memory':
        yield MemoryEventStore()
        return
    engine = make_engine('sqlite://')
    init_db(engine)
    yield SqlEventStore(engine)
    engine.dispose()


@pytest.fixture
def sql_store(engine):
    return SqlEventStore(engine)


@pytest.fixture
def settings():
    return Settings(
        database_url='sqlite://',
        session_secret='test-secret',
        bcrypt_rounds=4,
        refresh_on_startup=False,
    )


@pytest.fixture
def app(settings):
    return create_app(settings, adapters=[])


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def admin_client(client):
    resp = client.post('/admin/login', json={'username': 'admin', 'password': 'admin123'})
    assert resp.status_code == 200
    return client
