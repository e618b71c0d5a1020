"""
Authorization registry: answers allow-list questions for a store.
"""
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

import structlog
from sqlalchemy import and_, or_

from scriptguard.models.authorized_script import AuthorizedScript
from scriptguard.services.hash_engine import HashEngine, normalize_algorithm, SUPPORTED_ALGORITHMS
from scriptguard.services.results import HashOutcome
from scriptguard.utils.database import db, save_record

logger = structlog.get_logger()


def split_sri(value: str) -> Tuple[Optional[str], str]:
    """Split 'sha384-abc' into ('sha384', 'abc'); a bare digest has no algorithm."""
    value = (value or '').strip()
    prefix, sep, digest = value.partition('-')
    if sep and prefix.lower() in SUPPORTED_ALGORITHMS:
        return prefix.lower(), digest
    return None, value


class AuthorizationRegistry:
    """Allow-list lookups and hash lifecycle for authorized scripts."""

    def __init__(self, hash_engine: HashEngine):
        self.hash_engine = hash_engine

    def is_authorized(self, script_url: str, store_id: int) -> bool:
        """True only for an active entry with exactly this URL in this store."""
        script = self.get_by_url(script_url, store_id)
        return script is not None and bool(script.is_active)

    def get_by_url(self, script_url: str, store_id: int) -> Optional[AuthorizedScript]:
        if not script_url:
            return None
        return AuthorizedScript.query.filter_by(store_id=store_id, script_url=script_url).first()

    def active_scripts(self, store_id: int) -> List[AuthorizedScript]:
        return AuthorizedScript.query.filter_by(store_id=store_id, is_active=True) \
            .order_by(AuthorizedScript.id).all()

    def find_by_domain(self, domain: str, store_id: int) -> List[AuthorizedScript]:
        """Active entries served from domain. Not consulted by is_authorized."""
        if not domain:
            return []
        return AuthorizedScript.query.filter_by(
            store_id=store_id,
            domain=domain.lower().strip(),
            is_active=True
        ).order_by(AuthorizedScript.id).all()

    def find_expired(self, days_since_verified: int, store_id: Optional[int] = None) -> List[AuthorizedScript]:
        """
        Active entries not verified within the last days_since_verified days.

        Entries that were never verified count as expired once their
        authorization itself is older than the threshold.
        """
        cutoff = datetime.utcnow() - timedelta(days=days_since_verified)

        query = AuthorizedScript.query.filter(
            AuthorizedScript.is_active.is_(True),
            or_(
                AuthorizedScript.last_verified_at < cutoff,
                and_(AuthorizedScript.last_verified_at.is_(None), AuthorizedScript.authorized_at < cutoff)
            )
        )

        if store_id:
            query = query.filter(AuthorizedScript.store_id == store_id)

        return query.order_by(AuthorizedScript.id).all()

    def generate_hash(self, script_url: str, algorithm: str = 'sha384') -> HashOutcome:
        """Hash the live content, bypassing the cache."""
        return self.hash_engine.fetch_and_hash(script_url, algorithm, use_cache=False)

    def validate_integrity(self, script_url: str, expected_hash: str) -> bool:
        """Compare the live content hash with a stored expectation (bare or SRI form)."""
        if not expected_hash:
            return False

        algorithm, digest = split_sri(expected_hash)
        outcome = self.generate_hash(script_url, algorithm or 'sha384')
        return outcome.ok and outcome.digest == digest

    def update_hash(self, script_id: int, new_hash: str) -> Optional[AuthorizedScript]:
        """Persist a refreshed hash and bump last-verified-at."""
        script = db.session.get(AuthorizedScript, script_id)
        if script is None:
            return None

        algorithm, digest = split_sri(new_hash)
        script.script_hash = digest
        script.hash_algorithm = normalize_algorithm(algorithm or script.hash_algorithm)
        script.last_verified_at = datetime.utcnow()
        save_record(script, 'authorized_script')

        self.hash_engine.invalidate(script.script_url)

        logger.info(
            "Authorized script hash updated",
            script_id=script.id,
            store_id=script.store_id,
            script_url=script.script_url
        )
        return script

    def mark_verified(self, script: AuthorizedScript) -> AuthorizedScript:
        script.last_verified_at = datetime.utcnow()
        return save_record(script, 'authorized_script')
