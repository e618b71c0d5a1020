"""
Hash engine and hash cache tests.
"""
import base64
import hashlib
import threading

from scriptguard.services.hash_engine import HashEngine, normalize_algorithm
from scriptguard.services.results import ErrorKind
from scriptguard.utils.cache import HashCache

from conftest import FakeSession

SCRIPT_URL = 'https://cdn.example.com/app.js'
SCRIPT_BODY = 'console.log("checkout");'


def expected_digest(content, algorithm='sha384'):
    return base64.b64encode(hashlib.new(algorithm, content.encode('utf-8')).digest()).decode('ascii')


class TestHashing:
    """Digest computation."""

    def test_hash_matches_sri_encoding(self):
        assert HashEngine.hash(b'alert(1)', 'sha384') == expected_digest('alert(1)')

    def test_hash_accepts_text(self):
        assert HashEngine.hash('alert(1)', 'sha256') == expected_digest('alert(1)', 'sha256')

    def test_unsupported_algorithm_falls_back_to_sha384(self):
        assert normalize_algorithm('md5') == 'sha384'
        assert normalize_algorithm(None) == 'sha384'
        assert normalize_algorithm('SHA512') == 'sha512'


class TestFetchAndHash:
    """Remote script hashing through the cache."""

    def test_success_returns_sri_value(self):
        session = FakeSession()
        session.add(SCRIPT_URL, SCRIPT_BODY)
        engine = HashEngine(HashCache(), session)

        outcome = engine.fetch_and_hash(SCRIPT_URL, 'sha384')

        assert outcome.ok
        assert outcome.sri == f"sha384-{expected_digest(SCRIPT_BODY)}"

    def test_result_is_cached(self):
        session = FakeSession()
        session.add(SCRIPT_URL, SCRIPT_BODY)
        engine = HashEngine(HashCache(), session)

        engine.fetch_and_hash(SCRIPT_URL)
        engine.fetch_and_hash(SCRIPT_URL)

        assert session.calls_to(SCRIPT_URL) == 1

    def test_algorithms_are_cached_separately(self):
        session = FakeSession()
        session.add(SCRIPT_URL, SCRIPT_BODY)
        engine = HashEngine(HashCache(), session)

        engine.fetch_and_hash(SCRIPT_URL, 'sha256')
        engine.fetch_and_hash(SCRIPT_URL, 'sha384')

        assert session.calls_to(SCRIPT_URL) == 2

    def test_failures_are_not_cached(self):
        session = FakeSession()
        session.fail(SCRIPT_URL)
        engine = HashEngine(HashCache(), session)

        first = engine.fetch_and_hash(SCRIPT_URL)
        assert not first.ok
        assert first.error_kind == ErrorKind.TRANSIENT_FETCH
        assert first.sri is None

        session.add(SCRIPT_URL, SCRIPT_BODY)
        second = engine.fetch_and_hash(SCRIPT_URL)

        assert second.ok
        assert session.calls_to(SCRIPT_URL) == 2

    def test_http_error_status_is_a_failure(self):
        session = FakeSession()
        session.add(SCRIPT_URL, 'not found', status_code=404)
        engine = HashEngine(HashCache(), session)

        outcome = engine.fetch_and_hash(SCRIPT_URL)

        assert not outcome.ok
        assert 'HTTP 404' in outcome.error

    def test_invalidate_forces_refetch(self):
        session = FakeSession()
        session.add(SCRIPT_URL, SCRIPT_BODY)
        engine = HashEngine(HashCache(), session)

        engine.fetch_and_hash(SCRIPT_URL)
        engine.invalidate(SCRIPT_URL)
        session.add(SCRIPT_URL, 'console.log("changed");')
        outcome = engine.fetch_and_hash(SCRIPT_URL)

        assert outcome.digest == expected_digest('console.log("changed");')
        assert session.calls_to(SCRIPT_URL) == 2

    def test_bypassing_cache(self):
        session = FakeSession()
        session.add(SCRIPT_URL, SCRIPT_BODY)
        engine = HashEngine(HashCache(), session)

        engine.fetch_and_hash(SCRIPT_URL)
        engine.fetch_and_hash(SCRIPT_URL, use_cache=False)

        assert session.calls_to(SCRIPT_URL) == 2

    def test_engines_do_not_share_caches(self):
        session = FakeSession()
        session.add(SCRIPT_URL, SCRIPT_BODY)

        HashEngine(HashCache(), session).fetch_and_hash(SCRIPT_URL)
        HashEngine(HashCache(), session).fetch_and_hash(SCRIPT_URL)

        assert session.calls_to(SCRIPT_URL) == 2


class TestLocalFiles:
    """Hashing files shipped with the service."""

    def test_hash_local_file_relative_to_root(self, tmp_path):
        (tmp_path / 'js').mkdir()
        (tmp_path / 'js' / 'monitor.js').write_text(SCRIPT_BODY)
        engine = HashEngine(HashCache(), FakeSession(), local_root=str(tmp_path))

        outcome = engine.hash_local_file('~/js/monitor.js', 'sha384')

        assert outcome.ok
        assert outcome.digest == expected_digest(SCRIPT_BODY)

    def test_missing_file_is_a_hash_compute_failure(self, tmp_path):
        engine = HashEngine(HashCache(), FakeSession(), local_root=str(tmp_path))

        outcome = engine.hash_local_file('js/missing.js')

        assert not outcome.ok
        assert outcome.error_kind == ErrorKind.HASH_COMPUTE

    def test_root_relative_web_path(self, tmp_path):
        (tmp_path / 'js').mkdir()
        (tmp_path / 'js' / 'monitor.js').write_text(SCRIPT_BODY)
        engine = HashEngine(HashCache(), FakeSession(), local_root=str(tmp_path))

        outcome = engine.hash_local_file('/js/monitor.js')

        assert outcome.digest == expected_digest(SCRIPT_BODY)

    def test_path_outside_root_is_rejected(self, tmp_path):
        root = tmp_path / 'static'
        root.mkdir()
        (tmp_path / 'secret.js').write_text(SCRIPT_BODY)
        engine = HashEngine(HashCache(), FakeSession(), local_root=str(root))

        outcome = engine.hash_local_file('~/../secret.js')

        assert not outcome.ok
        assert outcome.error_kind == ErrorKind.HASH_COMPUTE
        assert len(engine.cache) == 0


class TestHashCache:
    """Cache bookkeeping."""

    def test_ttl_expiry(self, monkeypatch):
        cache = HashCache(ttl_seconds=10)
        clock = [1000.0]
        monkeypatch.setattr('scriptguard.utils.cache.time.time', lambda: clock[0])

        cache.put('a.js', 'sha384', 'digest')
        assert cache.get('a.js', 'sha384') == 'digest'

        clock[0] += 11
        assert cache.get('a.js', 'sha384') is None

    def test_lru_eviction(self):
        cache = HashCache(max_size=2)
        cache.put('a.js', 'sha384', 1)
        cache.put('b.js', 'sha384', 2)
        cache.get('a.js', 'sha384')
        cache.put('c.js', 'sha384', 3)

        assert cache.get('b.js', 'sha384') is None
        assert cache.get('a.js', 'sha384') == 1
        assert len(cache) == 2

    def test_invalidate_drops_every_algorithm(self):
        cache = HashCache()
        cache.put('a.js', 'sha256', 1)
        cache.put('a.js', 'sha384', 2)
        cache.put('b.js', 'sha384', 3)

        assert cache.invalidate('a.js') == 2
        assert len(cache) == 1

    def test_concurrent_lookups_compute_once(self):
        cache = HashCache()
        calls = []
        started = threading.Event()

        def compute():
            calls.append(1)
            started.wait(0.2)
            return 'digest'

        threads = [
            threading.Thread(target=cache.get_or_compute, args=('a.js', 'sha384', compute))
            for _ in range(5)
        ]
        for thread in threads:
            thread.start()
        started.set()
        for thread in threads:
            thread.join()

        assert len(calls) == 1
        assert cache.get('a.js', 'sha384') == 'digest'

    def test_key_locks_do_not_outlive_their_callers(self):
        cache = HashCache(max_size=2)
        held = []

        def compute():
            held.append(len(cache._key_locks))
            return 'digest'

        for index in range(100):
            cache.get_or_compute(f'https://cdn.example.com/{index}.js', 'sha384', compute)

        assert held == [1] * 100
        assert len(cache) == 2
        assert len(cache._key_locks) == 0
