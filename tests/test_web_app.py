import csv
import io

import pytest

import igr_web_app
from conftest import FakeBrowser
from igr_config import Config
from portal_health import PortalStatus
from session_registry import SessionRegistry

FULL = {'year': '2025', 'district': 'Pune', 'taluka': 'Haveli', 'village': 'Wagholi', 'propertyNo': '1234'}


class StubMonitor:
    def __init__(self, status=PortalStatus.HEALTHY):
        self.status = status

    def should_allow_session(self):
        return self.status not in (PortalStatus.DOWN, PortalStatus.RATE_LIMITED)

    def get_status(self):
        return self.status

    def get_backoff_seconds(self):
        return 0 if self.should_allow_session() else 8

    def get_metrics(self):
        return {'status': self.status.value, 'backoffSeconds': self.get_backoff_seconds()}


@pytest.fixture
def app_env(tmp_path, monkeypatch, make_session, history):
    monkeypatch.setattr(Config, 'DATA_DIR', tmp_path / 'igr_data')
    monkeypatch.setattr(Config, 'DOCUMENTS_DIR', tmp_path / 'igr_data' / 'documents')
    monkeypatch.setattr(Config, 'CAPTCHA_DIR', tmp_path / 'igr_data' / 'captcha')
    monkeypatch.setattr(Config, 'DIAGNOSTICS_DIR', tmp_path / 'igr_data' / 'diagnostics')

    browsers = []

    def factory(session_id):
        browser = FakeBrowser()
        browser.add_records('tab')
        browsers.append(browser)
        return make_session(session_id, browser=browser)

    def build(max_sessions=2, status=PortalStatus.HEALTHY):
        monitor = StubMonitor(status)
        registry = SessionRegistry(max_sessions=max_sessions, session_factory=factory,
                                   history=history, monitor=monitor)
        igr_web_app.init_globals(registry, history, monitor)
        return igr_web_app.app.test_client()

    build.browsers = browsers
    yield build
    if igr_web_app.registry is not None:
        igr_web_app.registry.cancel_all()


def test_full_search_flow(app_env):
    client = app_env()

    options = client.get('/api/options/taluka?district=Pune').get_json()
    assert options['success']
    assert [o['value'] for o in options['options']] == ['Haveli', 'Mulshi']

    search = client.post('/api/search', json=FULL).get_json()
    assert search['captchaRequired']
    assert search['message'] == 'Please enter the CAPTCHA to continue'
    session_id = search['session_id']
    assert len(app_env.browsers) == 1

    image = client.get('/api/captcha-image')
    assert image.status_code == 200
    assert image.mimetype == 'image/png'
    assert image.data == b'captcha-image-1'
    assert 'no-store' in image.headers['Cache-Control']
    assert image.headers['Pragma'] == 'no-cache'

    status = client.get(f'/api/captcha-status?session_id={session_id}').get_json()
    assert status['exists'] and status['captchaRequired']
    assert status['sequence'] == 1

    wrong = client.post('/api/submit-captcha', json={'captcha': 'WRONG', 'session_id': session_id})
    assert wrong.get_json()['captchaRequired']
    assert client.get('/api/captcha-image').data == b'captcha-image-2'

    done = client.post('/api/submit-captcha', json={'captcha': 'AB12C', 'session_id': session_id}).get_json()
    assert done['success']
    assert done['status'] == 'completed'
    assert [c['status'] for c in done['propertyData']['captures']] == ['saved']

    captures = client.get(f'/api/sessions/{session_id}/captures').get_json()
    assert captures['count'] == 1
    assert captures['session']['status'] == 'completed'

    sessions = client.get('/api/sessions').get_json()
    assert sessions['liveSessions'] == 0
    assert sessions['recent'][0]['session_id'] == session_id

    assert client.get('/api/captcha-image').status_code == 404


def test_empty_captcha_is_a_bad_request(app_env):
    client = app_env()
    client.post('/api/search', json=FULL)
    response = client.post('/api/submit-captcha', json={'captcha': '  '})
    assert response.status_code == 400
    assert response.get_json()['captchaRequired']


def test_unknown_session_and_level(app_env):
    client = app_env()
    assert client.post('/api/search', json={'session_id': 'nope'}).status_code == 404
    assert client.post('/api/submit-captcha', json={'captcha': 'X'}).status_code == 404
    assert client.get('/api/sessions/nope/captures').status_code == 404
    assert client.get('/api/options/county').status_code == 400


def test_new_search_without_id_replaces_the_previous_one(app_env):
    client = app_env(max_sessions=2)
    session_ids = []
    for _ in range(3):
        response = client.post('/api/search', json=FULL)
        assert response.status_code == 200
        assert response.get_json()['captchaRequired']
        session_ids.append(response.get_json()['session_id'])

    assert len(set(session_ids)) == 3
    assert [b.closed for b in app_env.browsers] == [True, True, False]
    assert igr_web_app.registry.live_count() == 1
    assert igr_web_app.registry.default().session_id == session_ids[-1]


def test_budget_exhaustion_is_429(app_env, monkeypatch):
    client = app_env(max_sessions=1)
    session_id = client.post('/api/search', json=FULL).get_json()['session_id']

    # held by a client that addresses it by id, so it is not the default to replace
    monkeypatch.setattr(igr_web_app.registry, 'default', lambda: None)
    response = client.post('/api/search', json=FULL)
    assert response.status_code == 429
    assert not response.get_json()['success']
    assert not app_env.browsers[0].closed
    assert igr_web_app.registry.get(session_id) is not None


def test_portal_down_is_503(app_env):
    client = app_env(status=PortalStatus.DOWN)
    response = client.post('/api/search', json=FULL)
    assert response.status_code == 503
    assert response.get_json()['backoffSeconds'] == 8


def test_cancel(app_env):
    client = app_env()
    assert client.post('/api/cancel').get_json()['message'] == 'No active session'

    session_id = client.post('/api/search', json=FULL).get_json()['session_id']
    result = client.post('/api/cancel', json={'session_id': session_id}).get_json()
    assert result['success']
    assert result['status'] == 'closed'
    assert app_env.browsers[0].closed


def test_health(app_env):
    body = app_env().get('/api/health').get_json()
    assert body['portal']['status'] == 'healthy'
    assert body['allowNewSessions']
    assert body['maxSessions'] == 2


def test_export_captures_as_csv(app_env):
    client = app_env()
    session_id = client.post('/api/search', json=FULL).get_json()['session_id']
    assert client.get(f'/api/sessions/{session_id}/export').status_code == 404

    client.post('/api/submit-captcha', json={'captcha': 'WRONG', 'session_id': session_id})
    client.post('/api/submit-captcha', json={'captcha': 'AB12C', 'session_id': session_id})

    response = client.get(f'/api/sessions/{session_id}/export?saved_only=true')
    assert response.status_code == 200
    assert response.mimetype == 'text/csv'
    assert f'igr_export_{session_id}_saved.csv' in response.headers['Content-Disposition']
    rows = list(csv.DictReader(io.StringIO(response.data.decode('utf-8'))))
    response.close()
    assert [(r['session_id'], r['record_index'], r['status']) for r in rows] == [(session_id, '0', 'saved')]

    assert client.get('/api/sessions/nope/export').status_code == 404
