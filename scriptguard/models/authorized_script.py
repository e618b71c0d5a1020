"""
Allow-list entries: scripts an administrator approved for a store's pages.
"""
from datetime import datetime
from typing import Dict, Any, Optional
from urllib.parse import urlparse

from sqlalchemy import Column, Integer, String, Boolean, DateTime, Text, ForeignKey, UniqueConstraint
import structlog

from scriptguard.utils.database import db

logger = structlog.get_logger()

RISK_LEVELS = {1: 'Low', 2: 'Medium', 3: 'High'}

SOURCE_CATEGORIES = ('internal', 'third-party', 'payment-gateway', 'analytics', 'marketing')


def extract_domain(url: str) -> str:
    """Host part of a script URL, empty for inline identifiers and junk."""
    try:
        return (urlparse(url).hostname or '').lower()
    except ValueError:
        return ''


class AuthorizedScript(db.Model):
    """One allow-listed script URL for one store."""

    __tablename__ = 'authorized_scripts'
    __table_args__ = (
        UniqueConstraint('store_id', 'script_url', name='uq_authorized_scripts_store_url'),
    )

    id = Column(Integer, primary_key=True)
    store_id = Column(Integer, ForeignKey('stores.id', ondelete='CASCADE'), nullable=False, index=True)
    script_url = Column(String(2000), nullable=False)
    domain = Column(String(255), index=True)

    # Declared content hash (raw base64 digest) and its algorithm
    script_hash = Column(String(200))
    hash_algorithm = Column(String(10), default='sha384', nullable=False)

    purpose = Column(Text)
    justification = Column(Text)
    risk_level = Column(Integer, default=1, nullable=False)
    source = Column(String(50), default='third-party', nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)

    authorized_by = Column(String(255))
    authorized_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    last_verified_at = Column(DateTime)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __repr__(self):
        return f'<AuthorizedScript {self.script_url}>'

    @property
    def risk_label(self) -> str:
        return RISK_LEVELS.get(self.risk_level, 'Unknown')

    @property
    def sri_value(self) -> Optional[str]:
        """The hash in integrity-attribute form, if one was recorded."""
        if not self.script_hash:
            return None
        return f"{self.hash_algorithm}-{self.script_hash}"

    def to_dict(self) -> Dict[str, Any]:
        """Convert authorized script to dictionary for API responses."""
        return {
            'id': self.id,
            'store_id': self.store_id,
            'script_url': self.script_url,
            'domain': self.domain,
            'script_hash': self.script_hash,
            'hash_algorithm': self.hash_algorithm,
            'sri': self.sri_value,
            'purpose': self.purpose,
            'justification': self.justification,
            'risk_level': self.risk_label,
            'source': self.source,
            'is_active': self.is_active,
            'authorized_by': self.authorized_by,
            'authorized_at': self.authorized_at.isoformat() if self.authorized_at else None,
            'last_verified_at': self.last_verified_at.isoformat() if self.last_verified_at else None
        }

    @classmethod
    def create_script(cls, store_id: int, script_url: str, authorized_by: str,
                      purpose: str = '', justification: str = '', risk_level: int = 1,
                      source: str = 'third-party', script_hash: Optional[str] = None,
                      hash_algorithm: str = 'sha384') -> 'AuthorizedScript':
        """Create a new allow-list entry with validation."""
        script_url = script_url.strip()

        if risk_level not in RISK_LEVELS:
            raise ValueError(f"Invalid risk level: {risk_level}")
        if source not in SOURCE_CATEGORIES:
            raise ValueError(f"Invalid source category: {source}")

        existing = cls.query.filter_by(store_id=store_id, script_url=script_url).first()
        if existing:
            raise ValueError("Script is already authorized for this store")

        script = cls(
            store_id=store_id,
            script_url=script_url,
            domain=extract_domain(script_url),
            purpose=purpose,
            justification=justification,
            risk_level=risk_level,
            source=source,
            script_hash=script_hash,
            hash_algorithm=hash_algorithm,
            is_active=True,
            authorized_by=authorized_by,
            authorized_at=datetime.utcnow(),
            last_verified_at=datetime.utcnow() if script_hash else None
        )

        try:
            db.session.add(script)
            db.session.commit()

            logger.info(
                "Script authorized",
                script_id=script.id,
                store_id=store_id,
                script_url=script_url,
                authorized_by=authorized_by
            )

            return script

        except Exception as e:
            db.session.rollback()
            logger.error("Failed to authorize script", store_id=store_id, script_url=script_url, error=str(e))
            raise

    def deactivate(self) -> None:
        """Take the script off the allow-list without deleting its history."""
        self.is_active = False
        self.updated_at = datetime.utcnow()

        logger.info("Script deactivated", script_id=self.id, store_id=self.store_id, script_url=self.script_url)
