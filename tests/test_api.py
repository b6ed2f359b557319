import pytest
from fastapi.testclient import TestClient

from pulsemap.events import EventType, now_ms
from pulsemap.main import create_app

from conftest import HOUR_MS, StaticAdapter, batch, make_event


def new_event(client, **overrides):
    body = {'type': 'flood', 'title': 'Manual flood', 'latitude': 29.76, 'longitude': -95.37, 'magnitude': 2.5}
    body.update(overrides)
    resp = client.post('/admin/events', json=body)
    assert resp.status_code == 200, resp.text
    return resp.json()


# public API

def test_list_events_empty(client):
    resp = client.get('/api/events')
    assert resp.status_code == 200
    assert resp.json() == []


def test_list_events_by_type(app, client):
    store = app.state.store
    store.upsert_many(EventType.EARTHQUAKE, batch(EventType.EARTHQUAKE, 3))
    store.upsert_many(EventType.FLOOD, batch(EventType.FLOOD, 1))
    events = client.get('/api/events', params={'type': 'earthquake'}).json()
    assert [e['externalId'] for e in events] == ['earthquake-0', 'earthquake-1', 'earthquake-2']
    assert events[0]['severityKind'] == 'richter'
    assert len(client.get('/api/events').json()) == 4
    assert len(client.get('/api/events', params={'limit': 2}).json()) == 2


def test_unknown_type_is_bad_request(client):
    resp = client.get('/api/events', params={'type': 'hurricane'})
    assert resp.status_code == 400
    assert 'hurricane' in resp.json()['error']


def test_missing_event_is_not_found(client):
    resp = client.get('/api/events/12345')
    assert resp.status_code == 404
    assert resp.json()['error'] == 'Event 12345 not found'


def test_recent_and_stats(app, client):
    app.state.store.upsert_many(EventType.VOLCANO, batch(EventType.VOLCANO, 3))
    assert len(client.get('/api/events/recent', params={'limit': 2}).json()) == 2
    stats = client.get('/api/stats').json()
    assert stats['volcano'] == 3
    assert stats['total'] == 3


# auth

def test_admin_routes_require_session(client):
    assert client.get('/admin/events').status_code == 401
    assert client.post('/admin/refresh').status_code == 401
    assert client.get('/admin/user-info').status_code == 401


def test_login_rejects_bad_password(client):
    resp = client.post('/admin/login', json={'username': 'admin', 'password': 'wrong'})
    assert resp.status_code == 401
    assert resp.json()['error'] == 'Invalid credentials'


def test_login_with_form_and_logout(client):
    resp = client.post('/admin/login', data={'username': 'admin', 'password': 'admin123'})
    assert resp.status_code == 200
    assert client.get('/admin/user-info').json()['username'] == 'admin'
    client.post('/admin/logout')
    assert client.get('/admin/user-info').status_code == 401


def test_login_rejects_malformed_json(client):
    resp = client.post('/admin/login', content=b'{not json', headers={'content-type': 'application/json'})
    assert resp.status_code == 400
    assert resp.json()['error'] == 'Malformed JSON body'


@pytest.mark.parametrize('body', [[1, 2], {'username': 7, 'password': 'admin123'}])
def test_login_rejects_non_credential_bodies(client, body):
    resp = client.post('/admin/login', json=body)
    assert resp.status_code == 400
    assert 'error' in resp.json()


def test_change_password(admin_client):
    resp = admin_client.post('/admin/change-password',
                             json={'currentPassword': 'admin123', 'newPassword': 's3cret-pass'})
    assert resp.status_code == 200
    admin_client.post('/admin/logout')
    assert admin_client.post('/admin/login', json={'username': 'admin', 'password': 'admin123'}).status_code == 401
    assert admin_client.post('/admin/login', json={'username': 'admin', 'password': 's3cret-pass'}).status_code == 200


def test_change_password_needs_current_password(admin_client):
    resp = admin_client.post('/admin/change-password',
                             json={'currentPassword': 'nope', 'newPassword': 's3cret-pass'})
    assert resp.status_code == 401


def test_change_username_updates_session(admin_client):
    resp = admin_client.post('/admin/change-username',
                             json={'newUsername': 'operator', 'currentPassword': 'admin123'})
    assert resp.status_code == 200
    assert admin_client.get('/admin/user-info').json()['username'] == 'operator'


@pytest.mark.parametrize('name', ['a', 'x' * 21, 'admin'])
def test_change_username_validation(admin_client, name):
    resp = admin_client.post('/admin/change-username',
                             json={'newUsername': name, 'currentPassword': 'admin123'})
    assert resp.status_code == 400


# admin event management

def test_create_event_then_read_it_back(admin_client):
    created = new_event(admin_client, timestamp='2024-01-15T18:00:00Z')
    event = admin_client.get(f"/api/events/{created['id']}").json()
    assert event['title'] == 'Manual flood'
    assert event['magnitude'] == 2.5
    assert event['severityKind'] == 'flood_severity'
    assert event['externalId'].startswith('admin_')
    assert event['time'] == 1_705_341_600_000


@pytest.mark.parametrize('body', [
    {'type': 'flood', 'latitude': 1.0, 'longitude': 2.0},
    {'type': 'blizzard', 'title': 'x', 'latitude': 1.0, 'longitude': 2.0},
    {'type': 'flood', 'title': 'x', 'latitude': 100.0, 'longitude': 2.0},
])
def test_create_event_validation(admin_client, body):
    assert admin_client.post('/admin/events', json=body).status_code == 400


def test_update_event_coordinates(admin_client):
    created = new_event(admin_client)
    resp = admin_client.put(f"/admin/events/{created['id']}",
                            json={'latitude': 30.1, 'longitude': -94.1, 'title': 'Moved flood'})
    assert resp.status_code == 200
    event = admin_client.get(f"/api/events/{created['id']}").json()
    assert (event['latitude'], event['longitude']) == (30.1, -94.1)
    assert event['title'] == 'Moved flood'


def test_update_rejects_out_of_range(admin_client):
    created = new_event(admin_client)
    resp = admin_client.put(f"/admin/events/{created['id']}", json={'longitude': 181.0})
    assert resp.status_code == 400


def test_update_missing_event(admin_client):
    assert admin_client.put('/admin/events/999', json={'title': 'x'}).status_code == 404


def test_delete_event(admin_client):
    created = new_event(admin_client)
    assert admin_client.delete(f"/admin/events/{created['id']}").status_code == 200
    assert admin_client.get(f"/api/events/{created['id']}").status_code == 404
    assert admin_client.delete(f"/admin/events/{created['id']}").status_code == 404


def test_admin_list_includes_manual_events(admin_client):
    new_event(admin_client)
    events = admin_client.get('/admin/events', params={'type': 'flood'}).json()
    assert [e['title'] for e in events] == ['Manual flood']


def test_cleanup_with_hours(app, admin_client):
    now = now_ms()
    app.state.store.upsert_many(EventType.VOLCANO, [
        make_event(EventType.VOLCANO, 'old', time=now - 5 * HOUR_MS),
        make_event(EventType.VOLCANO, 'new', time=now),
    ])
    resp = admin_client.post('/admin/cleanup', params={'hours': 2})
    assert resp.status_code == 200
    assert resp.json()['deletedCount'] == 1
    assert resp.json()['removed']['volcano'] == 1


def test_cleanup_default_policy_keeps_volcanoes(app, admin_client):
    app.state.store.upsert_many(EventType.VOLCANO, [make_event(EventType.VOLCANO, 'ancient', time=0)])
    resp = admin_client.post('/admin/cleanup')
    assert resp.json()['deletedCount'] == 0
    assert app.state.store.counts_by_type()['volcano'] == 1


@pytest.mark.parametrize('hours', [0, -3])
def test_cleanup_rejects_non_positive_hours(admin_client, hours):
    resp = admin_client.post('/admin/cleanup', params={'hours': hours})
    assert resp.status_code == 400
    assert resp.json()['error'] == 'hours must be greater than 0'


def test_unparseable_query_params_use_the_error_shape(admin_client):
    resp = admin_client.post('/admin/cleanup', params={'hours': 'soon'})
    assert resp.status_code == 400
    assert resp.json()['error'].startswith('hours:')
    resp = admin_client.get('/api/events', params={'limit': 'many'})
    assert resp.status_code == 400
    assert resp.json()['error'].startswith('limit:')


# refresh

@pytest.fixture
def feed_client(settings):
    adapters = [
        StaticAdapter(EventType.EARTHQUAKE, batch(EventType.EARTHQUAKE, 2)),
        StaticAdapter(EventType.VOLCANO, error='connection refused'),
    ]
    client = TestClient(create_app(settings, adapters=adapters))
    client.post('/admin/login', json={'username': 'admin', 'password': 'admin123'})
    return client


def test_refresh_reports_per_source(feed_client):
    resp = feed_client.post('/admin/refresh')
    assert resp.status_code == 200
    body = resp.json()
    assert body['success'] is False
    assert 'volcano' in body['message']
    assert [s['source'] for s in body['report']['sources']] == ['earthquake', 'volcano']
    assert feed_client.get('/api/stats').json()['earthquake'] == 2


def test_refresh_conflicts_while_running(feed_client):
    ingestor = feed_client.app.state.ingestor
    ingestor._in_flight.acquire()
    try:
        resp = feed_client.post('/admin/refresh')
    finally:
        ingestor._in_flight.release()
    assert resp.status_code == 409
