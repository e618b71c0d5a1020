"""
Authorization registry tests.
"""
from datetime import datetime, timedelta

import pytest

from scriptguard.models.authorized_script import AuthorizedScript
from scriptguard.services.authorization import split_sri

from test_hash_engine import expected_digest

SCRIPT_URL = 'https://cdn.example.com/a.js'


class TestIsAuthorized:
    """Exact URL matching per store."""

    def test_exact_match_only(self, guard, factory):
        store = factory.store()
        factory.script(store, SCRIPT_URL)

        assert guard.registry.is_authorized(SCRIPT_URL, store.id) is True
        assert guard.registry.is_authorized('https://cdn.example.com/b.js', store.id) is False
        assert guard.registry.is_authorized('http://cdn.example.com/a.js', store.id) is False

    def test_scoped_to_store(self, guard, factory):
        store = factory.store()
        other = factory.store(name='Other Shop', url='https://other.example.com')
        factory.script(store, SCRIPT_URL)

        assert guard.registry.is_authorized(SCRIPT_URL, other.id) is False

    def test_inactive_entries_do_not_authorize(self, guard, factory):
        store = factory.store()
        factory.script(store, SCRIPT_URL, is_active=False)

        assert guard.registry.is_authorized(SCRIPT_URL, store.id) is False

    def test_empty_url(self, guard, factory):
        store = factory.store()
        assert guard.registry.is_authorized('', store.id) is False

    def test_get_by_url_returns_inactive_entries(self, guard, factory):
        store = factory.store()
        script = factory.script(store, SCRIPT_URL, is_active=False)

        assert guard.registry.get_by_url(SCRIPT_URL, store.id).id == script.id
        assert guard.registry.get_by_url('', store.id) is None


class TestLookups:
    """Domain and expiry lookups used by maintenance."""

    def test_find_by_domain(self, guard, factory):
        store = factory.store()
        factory.script(store, SCRIPT_URL)
        factory.script(store, 'https://cdn.example.com/b.js')
        factory.script(store, 'https://other.example.org/c.js')

        found = guard.registry.find_by_domain('CDN.example.com', store.id)

        assert [script.script_url for script in found] == [SCRIPT_URL, 'https://cdn.example.com/b.js']

    def test_find_expired(self, guard, factory):
        store = factory.store()
        now = datetime.utcnow()
        stale = factory.script(store, SCRIPT_URL, last_verified_at=now - timedelta(days=40))
        factory.script(store, 'https://cdn.example.com/fresh.js', last_verified_at=now - timedelta(days=1))
        never = factory.script(store, 'https://cdn.example.com/never.js',
                               authorized_at=now - timedelta(days=60), last_verified_at=None)
        factory.script(store, 'https://cdn.example.com/new.js', last_verified_at=None)
        factory.script(store, 'https://cdn.example.com/off.js', is_active=False,
                       last_verified_at=now - timedelta(days=90))

        expired = guard.registry.find_expired(30, store.id)

        assert [script.id for script in expired] == [stale.id, never.id]


class TestHashLifecycle:
    """Generating, validating and updating stored hashes."""

    def test_validate_integrity_accepts_bare_and_sri_forms(self, guard, http):
        http.add(SCRIPT_URL, 'a()')
        digest = expected_digest('a()')

        assert guard.registry.validate_integrity(SCRIPT_URL, digest) is True
        assert guard.registry.validate_integrity(SCRIPT_URL, f'sha384-{digest}') is True
        assert guard.registry.validate_integrity(SCRIPT_URL, 'sha384-stale') is False
        assert guard.registry.validate_integrity(SCRIPT_URL, '') is False

    def test_generate_hash_bypasses_cache(self, guard, http):
        http.add(SCRIPT_URL, 'a()')

        guard.registry.generate_hash(SCRIPT_URL)
        guard.registry.generate_hash(SCRIPT_URL)

        assert http.calls_to(SCRIPT_URL) == 2

    def test_update_hash_bumps_verification_and_invalidates_cache(self, guard, http, factory):
        store = factory.store()
        script = factory.script(store, SCRIPT_URL, script_hash='old', last_verified_at=None)
        http.add(SCRIPT_URL, 'a()')
        guard.hash_engine.fetch_and_hash(SCRIPT_URL)
        assert len(guard.hash_cache) == 1

        updated = guard.registry.update_hash(script.id, 'sha512-newdigest')

        assert updated.script_hash == 'newdigest'
        assert updated.hash_algorithm == 'sha512'
        assert updated.last_verified_at is not None
        assert len(guard.hash_cache) == 0

    def test_update_hash_unknown_script(self, guard):
        assert guard.registry.update_hash(999, 'sha384-x') is None

    def test_split_sri(self):
        assert split_sri('sha384-abc') == ('sha384', 'abc')
        assert split_sri('abc') == (None, 'abc')
        assert split_sri('md5-abc') == (None, 'md5-abc')


class TestAuthorizedScriptModel:
    """Allow-list entry creation rules."""

    def test_create_script_derives_domain(self, factory):
        store = factory.store()

        script = AuthorizedScript.create_script(store.id, ' https://CDN.example.com/a.js ', 'admin@example.com',
                                                purpose='checkout widget', risk_level=2)

        assert script.script_url == 'https://CDN.example.com/a.js'
        assert script.domain == 'cdn.example.com'
        assert script.risk_label == 'Medium'

    def test_duplicate_url_rejected(self, factory):
        store = factory.store()
        AuthorizedScript.create_script(store.id, SCRIPT_URL, 'admin@example.com')

        with pytest.raises(ValueError):
            AuthorizedScript.create_script(store.id, SCRIPT_URL, 'admin@example.com')

    def test_invalid_risk_level_rejected(self, factory):
        store = factory.store()

        with pytest.raises(ValueError):
            AuthorizedScript.create_script(store.id, SCRIPT_URL, 'admin@example.com', risk_level=7)

    def test_sri_value(self, factory):
        store = factory.store()
        script = factory.script(store, SCRIPT_URL, script_hash='abc', hash_algorithm='sha256')

        assert script.sri_value == 'sha256-abc'
