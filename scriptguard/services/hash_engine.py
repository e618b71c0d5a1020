"""
Content hashing for Subresource Integrity values.
"""
import base64
import hashlib
import os
from typing import Optional

import requests
import structlog

from scriptguard.services.http_client import DEFAULT_TIMEOUT, build_session, fetch
from scriptguard.services.results import ErrorKind, HashOutcome
from scriptguard.utils.cache import HashCache

logger = structlog.get_logger()

SUPPORTED_ALGORITHMS = ('sha256', 'sha384', 'sha512')
DEFAULT_ALGORITHM = 'sha384'


def normalize_algorithm(algorithm: Optional[str]) -> str:
    """Lower-case the name; anything unsupported becomes sha384."""
    algorithm = (algorithm or '').lower().strip()
    return algorithm if algorithm in SUPPORTED_ALGORITHMS else DEFAULT_ALGORITHM


def sri_string(algorithm: str, digest: str) -> str:
    return f"{algorithm}-{digest}"


class HashEngine:
    """
    Hashes local files and fetched script bodies.

    Results are cached per (source, algorithm) in the engine's own HashCache.
    Failed fetches are never cached, so the next scan retries them.
    """

    def __init__(self, cache: Optional[HashCache] = None, session: Optional[requests.Session] = None,
                 timeout: float = DEFAULT_TIMEOUT, local_root: Optional[str] = None):
        self.cache = cache if cache is not None else HashCache()
        self.session = session if session is not None else build_session()
        self.timeout = timeout
        self.local_root = local_root

    @staticmethod
    def hash(content: bytes, algorithm: str = DEFAULT_ALGORITHM) -> str:
        """Base64 digest of content."""
        if isinstance(content, str):
            content = content.encode('utf-8')
        digest = hashlib.new(normalize_algorithm(algorithm), content).digest()
        return base64.b64encode(digest).decode('ascii')

    @staticmethod
    def sri_string(algorithm: str, digest: str) -> str:
        return sri_string(algorithm, digest)

    def fetch_and_hash(self, url: str, algorithm: str = DEFAULT_ALGORITHM,
                       timeout: Optional[float] = None, use_cache: bool = True) -> HashOutcome:
        """Fetch a script and hash its body."""
        algorithm = normalize_algorithm(algorithm)
        if not url:
            return HashOutcome.failure(algorithm, "no script URL", ErrorKind.TRANSIENT_FETCH)

        def compute() -> HashOutcome:
            outcome = fetch(self.session, url, timeout or self.timeout)
            if not outcome.ok:
                return HashOutcome.failure(algorithm, outcome.error, outcome.error_kind)
            return self._hash_outcome(outcome.content, algorithm, url)

        if not use_cache:
            return compute()
        return self.cache.get_or_compute(url, algorithm, compute, should_cache=lambda result: result.ok)

    def hash_local_file(self, path: str, algorithm: str = DEFAULT_ALGORITHM) -> HashOutcome:
        """Hash a file shipped with the service, e.g. the browser monitor script."""
        algorithm = normalize_algorithm(algorithm)
        if not path:
            return HashOutcome.failure(algorithm, "no file path", ErrorKind.HASH_COMPUTE)

        try:
            physical_path = self._physical_path(path)
        except ValueError as e:
            logger.warning("Rejected local script path", path=path, error=str(e))
            return HashOutcome.failure(algorithm, str(e), ErrorKind.HASH_COMPUTE)

        def compute() -> HashOutcome:
            try:
                with open(physical_path, 'rb') as handle:
                    content = handle.read()
            except OSError as e:
                logger.warning("Could not read local script", path=physical_path, error=str(e))
                return HashOutcome.failure(algorithm, f"could not read {path}: {e}", ErrorKind.HASH_COMPUTE)
            return self._hash_outcome(content, algorithm, path)

        return self.cache.get_or_compute(path, algorithm, compute, should_cache=lambda result: result.ok)

    def invalidate(self, source: str) -> None:
        self.cache.invalidate(source)

    def clear_cache(self) -> None:
        self.cache.clear()

    def _physical_path(self, path: str) -> str:
        if path.startswith('~/'):
            path = path[2:]
        if not self.local_root:
            return path

        # Web paths ("/js/x.js") are relative to the static root and may not leave it
        root = os.path.abspath(self.local_root)
        physical = os.path.abspath(os.path.join(root, *path.lstrip('/').split('/')))
        if os.path.commonpath([root, physical]) != root:
            raise ValueError(f"{path} is outside the static root")
        return physical

    def _hash_outcome(self, content: bytes, algorithm: str, source: str) -> HashOutcome:
        try:
            return HashOutcome.success(algorithm, self.hash(content, algorithm))
        except (ValueError, TypeError) as e:
            logger.error("Hash computation failed", source=source, algorithm=algorithm, error=str(e))
            return HashOutcome.failure(algorithm, str(e), ErrorKind.HASH_COMPUTE)
