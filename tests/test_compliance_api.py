"""
Operator API tests: checks, reports, alerts, logs, CSP policy and SRI issuance.
"""
from datetime import datetime, timedelta
from unittest.mock import patch

from scriptguard.models import ComplianceAlert, MonitoringLog

from conftest import STORE_URL, checkout_page
from test_hash_engine import expected_digest

PAGE_URL = f'{STORE_URL}/checkout'
SCRIPT_A = 'https://cdn.example.com/a.js'
SCRIPT_B = 'https://tracker.example.net/b.js'


class TestAuthentication:
    def test_token_required(self, client, factory):
        store = factory.store()

        response = client.get(f'/api/guard/stores/{store.id}/report')

        assert response.status_code == 401
        data = response.get_json()
        assert data['success'] is False
        assert data['error']['code'] == 'AUTH_002'

    def test_garbage_token_rejected(self, client, factory):
        store = factory.store()

        response = client.get(f'/api/guard/stores/{store.id}/report', headers={'Authorization': 'Bearer nope'})

        assert response.status_code == 401


class TestRunCheck:
    """Manual "run check now"."""

    def test_checks_every_monitored_page(self, client, auth_headers, factory, http):
        store = factory.store(monitored_pages='/checkout,/onepagecheckout')
        factory.script(store, SCRIPT_A)
        http.add(PAGE_URL, checkout_page(SCRIPT_A, SCRIPT_B))
        http.add(f'{STORE_URL}/onepagecheckout', checkout_page(SCRIPT_A))

        response = client.post(f'/api/guard/stores/{store.id}/checks', headers=auth_headers)

        assert response.status_code == 200
        data = response.get_json()['data']
        assert data['success'] is True
        assert len(data['checks']) == 2
        assert data['checks'][0]['log']['check_type'] == 'manual'
        assert data['summary'] == 'Checked 2 of 2 page(s): 3 script(s) found, 1 unauthorized.'
        assert MonitoringLog.query.count() == 2

    def test_single_page_and_check_type(self, client, auth_headers, factory, http):
        store = factory.store()
        http.add(f'{STORE_URL}/cart', checkout_page())

        response = client.post(f'/api/guard/stores/{store.id}/checks', headers=auth_headers,
                               json={'pageUrl': f'{STORE_URL}/cart', 'checkType': 'post-order'})

        data = response.get_json()['data']
        assert len(data['checks']) == 1
        assert data['checks'][0]['log']['check_type'] == 'post-order'

    def test_unreachable_page_is_reported_not_raised(self, client, auth_headers, factory, http):
        store = factory.store()
        http.fail(PAGE_URL)

        response = client.post(f'/api/guard/stores/{store.id}/checks', headers=auth_headers)

        assert response.status_code == 200
        data = response.get_json()['data']
        assert data['checks'][0]['log']['total_scripts_found'] == 0
        assert data['checks'][0]['log']['fetch_error'] == 'transient-fetch'
        assert 'could not be fetched' in data['summary']

    def test_unexpected_failure_becomes_summary(self, client, auth_headers, factory):
        store = factory.store()

        with patch('scriptguard.services.compliance_engine.ComplianceEngine.run_scan',
                   side_effect=RuntimeError('boom')):
            response = client.post(f'/api/guard/stores/{store.id}/checks', headers=auth_headers)

        assert response.status_code == 200
        data = response.get_json()['data']
        assert data['success'] is False
        assert data['checks'][0] == {'page_url': PAGE_URL, 'success': False, 'error': 'Check failed'}

    def test_disabled_store(self, client, auth_headers, factory):
        store = factory.store(is_enabled=False)

        response = client.post(f'/api/guard/stores/{store.id}/checks', headers=auth_headers)

        assert response.status_code == 409

    def test_no_monitored_pages(self, client, auth_headers, factory):
        store = factory.store(monitored_pages='')

        response = client.post(f'/api/guard/stores/{store.id}/checks', headers=auth_headers)

        assert response.status_code == 422

    def test_invalid_check_type(self, client, auth_headers, factory):
        store = factory.store()

        response = client.post(f'/api/guard/stores/{store.id}/checks', headers=auth_headers,
                               json={'checkType': 'hourly'})

        assert response.status_code == 422

    def test_unknown_store(self, client, auth_headers):
        response = client.post('/api/guard/stores/42/checks', headers=auth_headers)

        assert response.status_code == 404


class TestReports:
    def test_report(self, client, auth_headers, factory):
        store = factory.store()
        factory.log(store, total_scripts_found=100, authorized_scripts_count=80,
                    unauthorized_scripts_count=20, has_unauthorized_scripts=True, unauthorized_scripts=[SCRIPT_B])

        response = client.get(f'/api/guard/stores/{store.id}/report', headers=auth_headers)

        assert response.status_code == 200
        data = response.get_json()['data']
        assert data['compliance_score'] == 80.0
        assert data['total_checks_performed'] == 1

    def test_report_date_range(self, client, auth_headers, factory):
        store = factory.store()
        factory.log(store, total_scripts_found=10, authorized_scripts_count=10,
                    checked_at=datetime(2026, 9, 1, 12))
        factory.log(store, total_scripts_found=10, authorized_scripts_count=0, unauthorized_scripts_count=10,
                    has_unauthorized_scripts=True, checked_at=datetime(2026, 10, 1, 12))

        response = client.get(f'/api/guard/stores/{store.id}/report?from=2026-09-30T00:00:00Z',
                              headers=auth_headers)

        data = response.get_json()['data']
        assert data['total_checks_performed'] == 1
        assert data['compliance_score'] == 0.0

    def test_report_bad_date(self, client, auth_headers, factory):
        store = factory.store()

        response = client.get(f'/api/guard/stores/{store.id}/report?from=yesterday', headers=auth_headers)

        assert response.status_code == 400

    def test_empty_report(self, client, auth_headers, factory):
        store = factory.store()

        response = client.get(f'/api/guard/stores/{store.id}/report', headers=auth_headers)

        assert response.get_json()['data']['compliance_score'] == 100.0

    def test_dashboard(self, client, auth_headers, factory):
        store = factory.store()
        factory.log(store, total_scripts_found=4, authorized_scripts_count=4, scan_duration_ms=250)
        factory.alert(store)
        factory.script(store, SCRIPT_A, risk_level=3, last_verified_at=datetime.utcnow() - timedelta(days=45))

        response = client.get(f'/api/guard/stores/{store.id}/dashboard?days=7', headers=auth_headers)

        assert response.status_code == 200
        data = response.get_json()['data']
        assert data['days'] == 7
        assert data['open_alerts'] == 1
        assert data['average_scan_duration_ms'] == 250.0
        assert data['expired_scripts_count'] == 1
        assert data['risk_level_breakdown'] == [{'risk_level': 'High', 'count': 1, 'percentage': 100.0}]

    def test_dashboard_days_range(self, client, auth_headers, factory):
        store = factory.store()

        response = client.get(f'/api/guard/stores/{store.id}/dashboard?days=0', headers=auth_headers)

        assert response.status_code == 400


class TestAlerts:
    def test_list_alerts(self, client, auth_headers, factory):
        store = factory.store()
        factory.alert(store, script_url='https://evil.example.net/1.js')
        factory.alert(store, script_url='https://evil.example.net/2.js')
        factory.alert(store, alert_type='csp-violation', script_url=None)

        response = client.get(f'/api/guard/stores/{store.id}/alerts?type=unauthorized-script&perPage=1',
                              headers=auth_headers)

        data = response.get_json()['data']
        assert len(data['alerts']) == 1
        assert data['pagination'] == {'page': 1, 'per_page': 1, 'total': 2, 'pages': 2}

    def test_resolve_alert(self, client, auth_headers, factory):
        store = factory.store()
        alert = factory.alert(store)

        response = client.post(f'/api/guard/alerts/{alert.id}/resolve', headers=auth_headers)

        assert response.status_code == 200
        data = response.get_json()
        assert data['message'] == 'Alert resolved'
        assert data['data']['resolved_by'] == 'operator@example.com'
        assert ComplianceAlert.query.filter_by(is_resolved=True).count() == 1

    def test_resolve_twice(self, client, auth_headers, factory):
        store = factory.store()
        alert = factory.alert(store)

        client.post(f'/api/guard/alerts/{alert.id}/resolve', headers=auth_headers)
        response = client.post(f'/api/guard/alerts/{alert.id}/resolve', headers=auth_headers)

        assert response.status_code == 404


class TestLogs:
    def test_unauthorized_only_filter(self, client, auth_headers, factory):
        store = factory.store()
        factory.log(store, total_scripts_found=1, authorized_scripts_count=1)
        factory.log(store, total_scripts_found=1, unauthorized_scripts_count=1, has_unauthorized_scripts=True,
                    unauthorized_scripts=[SCRIPT_B])

        response = client.get(f'/api/guard/stores/{store.id}/logs?unauthorizedOnly=true', headers=auth_headers)

        data = response.get_json()['data']
        assert len(data['logs']) == 1
        assert data['logs'][0]['unauthorized_scripts'] == [SCRIPT_B]
        assert data['pagination']['total'] == 1


class TestCSPPolicy:
    def test_policy_includes_active_origins(self, client, auth_headers, factory):
        store = factory.store(csp_policy="default-src 'self'; script-src 'self';")
        factory.script(store, SCRIPT_A)
        factory.script(store, 'https://cdn.example.com/b.js')
        factory.script(store, 'https://old.example.org/c.js', is_active=False)

        response = client.get(f'/api/guard/stores/{store.id}/csp-policy', headers=auth_headers)

        data = response.get_json()['data']
        assert data['basePolicy'] == "default-src 'self'; script-src 'self';"
        assert data['policy'] == "default-src 'self'; script-src https://cdn.example.com 'self';"
        assert data['authorizedOrigins'] == 1


class TestSRIIssuance:
    """Integrity attributes issued to operators."""

    def test_trusted_cdn_script(self, client, auth_headers, factory, http):
        store = factory.store(enable_sri_validation=True)
        lib = 'https://cdn.jsdelivr.net/npm/lib.js'
        http.add(lib, 'lib()')

        response = client.get(f'/api/guard/stores/{store.id}/sri', headers=auth_headers,
                              query_string={'url': lib})

        assert response.status_code == 200
        assert response.get_json()['data'] == {
            'scriptUrl': lib,
            'integrity': f"sha384-{expected_digest('lib()')}",
            'crossorigin': 'anonymous',
            'issued': True,
            'reason': None
        }

    def test_payment_gateway_is_skipped(self, client, auth_headers, factory, http):
        store = factory.store(enable_sri_validation=True)

        response = client.get(f'/api/guard/stores/{store.id}/sri', headers=auth_headers,
                              query_string={'url': 'https://js.stripe.com/v3/'})

        data = response.get_json()['data']
        assert data['issued'] is False
        assert data['integrity'] is None
        assert 'Payment gateway' in data['reason']
        assert http.calls == []

    def test_force_pins_untrusted_host(self, client, auth_headers, factory, http):
        store = factory.store(enable_sri_validation=True)
        http.add(SCRIPT_A, 'a()')

        skipped = client.get(f'/api/guard/stores/{store.id}/sri', headers=auth_headers,
                             query_string={'url': SCRIPT_A})
        forced = client.get(f'/api/guard/stores/{store.id}/sri', headers=auth_headers,
                            query_string={'url': SCRIPT_A, 'force': 'true', 'algorithm': 'sha256'})

        assert skipped.get_json()['data']['issued'] is False
        assert forced.get_json()['data']['integrity'] == f"sha256-{expected_digest('a()', 'sha256')}"

    def test_local_script(self, client, auth_headers, factory, guard, tmp_path):
        store = factory.store(enable_sri_validation=True)
        (tmp_path / 'scriptguard.js').write_text('monitor()')
        guard.hash_engine.local_root = str(tmp_path)

        response = client.get(f'/api/guard/stores/{store.id}/sri', headers=auth_headers,
                              query_string={'url': '~/scriptguard.js'})

        data = response.get_json()['data']
        assert data['integrity'] == f"sha384-{expected_digest('monitor()')}"
        assert data['crossorigin'] is None

    def test_local_path_cannot_leave_static_root(self, client, auth_headers, factory, guard, tmp_path):
        store = factory.store(enable_sri_validation=True)
        root = tmp_path / 'static'
        root.mkdir()
        (tmp_path / 'secret.js').write_text('secret()')
        guard.hash_engine.local_root = str(root)

        response = client.get(f'/api/guard/stores/{store.id}/sri', headers=auth_headers,
                              query_string={'url': '/../secret.js', 'force': 'true'})

        data = response.get_json()['data']
        assert data['issued'] is False
        assert 'outside the static root' in data['reason']

    def test_unreachable_script(self, client, auth_headers, factory, http):
        store = factory.store(enable_sri_validation=True)
        lib = 'https://cdnjs.cloudflare.com/ajax/libs/gone.js'
        http.fail(lib)

        response = client.get(f'/api/guard/stores/{store.id}/sri', headers=auth_headers,
                              query_string={'url': lib})

        assert response.status_code == 200
        data = response.get_json()['data']
        assert data['issued'] is False
        assert data['reason'].startswith('connection error')

    def test_url_required(self, client, auth_headers, factory):
        store = factory.store(enable_sri_validation=True)

        response = client.get(f'/api/guard/stores/{store.id}/sri', headers=auth_headers)

        assert response.status_code == 400

    def test_unsupported_algorithm(self, client, auth_headers, factory):
        store = factory.store(enable_sri_validation=True)

        response = client.get(f'/api/guard/stores/{store.id}/sri', headers=auth_headers,
                              query_string={'url': SCRIPT_A, 'algorithm': 'md5'})

        assert response.status_code == 400

    def test_disabled_store(self, client, auth_headers, factory):
        store = factory.store(is_enabled=False)

        response = client.get(f'/api/guard/stores/{store.id}/sri', headers=auth_headers,
                              query_string={'url': SCRIPT_A})

        assert response.status_code == 409

    def test_token_required(self, client, factory):
        store = factory.store()

        response = client.get(f'/api/guard/stores/{store.id}/sri', query_string={'url': SCRIPT_A})

        assert response.status_code == 401
