"""
Pytest configuration and shared fixtures.
Every test gets a fresh in-memory database and an offline HTTP session.
"""
from datetime import datetime
from urllib.parse import urlparse

import pytest
import requests
from flask_jwt_extended import create_access_token
from requests.structures import CaseInsensitiveDict

from scriptguard import create_app
from scriptguard.models import Store, AuthorizedScript, MonitoringLog, ComplianceAlert
from scriptguard.models.compliance_alert import make_open_key
from scriptguard.utils.database import db


STORE_URL = 'https://shop.example.com'


class FakeSession:
    """Stands in for requests.Session; answers from a url -> response table."""

    def __init__(self):
        self.routes = {}
        self.calls = []
        self.headers = {}

    def add(self, url, body='', status_code=200, headers=None):
        self.routes[url] = (status_code, body, headers or {})

    def fail(self, url, exc=None):
        self.routes[url] = exc or requests.exceptions.ConnectionError('Connection refused')

    def get(self, url, timeout=None, allow_redirects=True):
        self.calls.append(url)
        route = self.routes.get(url)
        if route is None:
            raise requests.exceptions.ConnectionError(f'Connection refused: {url}')
        if isinstance(route, Exception):
            raise route

        status_code, body, headers = route
        response = requests.Response()
        response.status_code = status_code
        response._content = body.encode('utf-8') if isinstance(body, str) else body
        response.headers = CaseInsensitiveDict(headers)
        response.encoding = 'utf-8'
        response.url = url
        return response

    def calls_to(self, url):
        return self.calls.count(url)


class RecordingNotifier:
    """Records every email the engine asks for instead of sending it."""

    def __init__(self, result=True):
        self.result = result
        self.sent = []

    def _record(self, kind, email, payload, store_name):
        self.sent.append({'kind': kind, 'email': email, 'payload': payload, 'store_name': store_name})
        return self.result

    def send_unauthorized_script_alert(self, email, log, store_name):
        return self._record('unauthorized-script', email, log, store_name)

    def send_csp_violation_alert(self, email, details, store_name):
        return self._record('csp-violation', email, details, store_name)

    def send_script_change_alert(self, email, script_url, store_name):
        return self._record('script-change', email, script_url, store_name)

    def send_expired_scripts_alert(self, email, scripts, store_name):
        return self._record('expired-scripts', email, list(scripts), store_name)

    def of_kind(self, kind):
        return [message for message in self.sent if message['kind'] == kind]


@pytest.fixture
def http():
    return FakeSession()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def app(http, notifier):
    """Create application for testing."""
    test_config = {
        'TESTING': True,
        'RATELIMIT_ENABLED': False,
        'TRUSTED_CDN_HOSTS': ['cdnjs.cloudflare.com', 'cdn.jsdelivr.net'],
        'PAYMENT_GATEWAY_HOSTS': ['js.stripe.com'],
    }

    app = create_app('testing', test_config, session=http, notifier=notifier)

    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture
def runner(app):
    """Create test CLI runner."""
    return app.test_cli_runner()


@pytest.fixture
def guard(app):
    return app.extensions['scriptguard']


@pytest.fixture
def auth_headers(app):
    """Operator token; operators are provisioned outside this service."""
    token = create_access_token(identity='operator@example.com')
    return {'Authorization': f'Bearer {token}'}


class Factory:
    """Builds persisted test records."""

    def store(self, **kwargs):
        values = {
            'name': 'Example Shop',
            'url': STORE_URL,
            'is_enabled': True,
            'monitored_pages': '/checkout',
            'enable_sri_validation': False,
            'enable_email_alerts': True,
            'alert_email': 'security@example.com',
            'max_alert_frequency_hours': 24,
        }
        values.update(kwargs)
        store = Store(**values)
        db.session.add(store)
        db.session.commit()
        return store

    def script(self, store, script_url, **kwargs):
        values = {
            'store_id': store.id,
            'script_url': script_url,
            'domain': urlparse(script_url).hostname,
            'is_active': True,
            'risk_level': 1,
            'source': 'third-party',
            'authorized_by': 'admin@example.com',
            'authorized_at': datetime.utcnow(),
        }
        values.update(kwargs)
        script = AuthorizedScript(**values)
        db.session.add(script)
        db.session.commit()
        return script

    def log(self, store, **kwargs):
        values = {
            'store_id': store.id,
            'page_url': f'{STORE_URL}/checkout',
            'detected_scripts': [],
            'unauthorized_scripts': [],
            'http_headers': {},
            'sri_findings': [],
            'total_scripts_found': 0,
            'authorized_scripts_count': 0,
            'unauthorized_scripts_count': 0,
            'has_unauthorized_scripts': False,
            'check_type': 'scheduled',
            'checked_at': datetime.utcnow(),
        }
        values.update(kwargs)
        log = MonitoringLog(**values)
        db.session.add(log)
        db.session.commit()
        return log

    def alert(self, store, alert_type='unauthorized-script', script_url='https://evil.example.net/x.js', **kwargs):
        values = {
            'store_id': store.id,
            'alert_type': alert_type,
            'severity': 'critical',
            'message': f'Unauthorized script detected: {script_url}',
            'details': {},
            'script_url': script_url,
            'page_url': f'{STORE_URL}/checkout',
            'is_resolved': False,
            'created_at': datetime.utcnow(),
            'last_detected_at': datetime.utcnow(),
        }
        values.update(kwargs)
        if not values['is_resolved'] and 'open_key' not in kwargs:
            values['open_key'] = make_open_key(store.id, alert_type, script_url)
        alert = ComplianceAlert(**values)
        db.session.add(alert)
        db.session.commit()
        return alert


@pytest.fixture
def factory(app):
    """Test data factory."""
    return Factory()


def checkout_page(*scripts):
    """HTML for a checkout page; each item is a <script> tag body or src."""
    tags = []
    for item in scripts:
        if isinstance(item, tuple):
            src, integrity = item
            tags.append(f'<script src="{src}" integrity="{integrity}" crossorigin="anonymous"></script>')
        elif item.startswith(('http://', 'https://', '/')):
            tags.append(f'<script src="{item}"></script>')
        else:
            tags.append(f'<script>{item}</script>')
    return f"<html><head><title>Checkout</title>{''.join(tags)}</head><body><form></form></body></html>"
