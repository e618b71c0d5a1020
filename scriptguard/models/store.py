"""
Store model and the narrow settings view the monitoring engine consumes.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Any, List, Optional

from sqlalchemy import Column, Integer, String, Boolean, DateTime, Text
import structlog

from scriptguard.utils.database import db

logger = structlog.get_logger()

DEFAULT_MONITORED_PAGES = '/checkout,/onepagecheckout'


class Store(db.Model):
    """A storefront whose checkout pages are monitored."""

    __tablename__ = 'stores'

    id = Column(Integer, primary_key=True)
    name = Column(String(255), nullable=False)
    url = Column(String(500), nullable=False)

    # Monitoring settings
    is_enabled = Column(Boolean, default=True, nullable=False)
    monitored_pages = Column(Text, default=DEFAULT_MONITORED_PAGES)
    enable_sri_validation = Column(Boolean, default=True, nullable=False)

    # Alerting settings
    enable_email_alerts = Column(Boolean, default=True, nullable=False)
    alert_email = Column(String(255))
    max_alert_frequency_hours = Column(Integer, default=24, nullable=False)

    # Browser directive, read only by the CSP builder
    csp_policy = Column(Text, default="script-src 'self' 'unsafe-inline';")

    # Retention
    log_retention_days = Column(Integer, default=90, nullable=False)
    alert_retention_days = Column(Integer, default=30, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __repr__(self):
        return f'<Store {self.name}>'

    def to_dict(self) -> Dict[str, Any]:
        """Convert store to dictionary for API responses."""
        return {
            'id': self.id,
            'name': self.name,
            'url': self.url,
            'is_enabled': self.is_enabled,
            'monitored_pages': self.monitored_pages,
            'enable_sri_validation': self.enable_sri_validation,
            'enable_email_alerts': self.enable_email_alerts,
            'alert_email': self.alert_email,
            'max_alert_frequency_hours': self.max_alert_frequency_hours,
            'log_retention_days': self.log_retention_days,
            'alert_retention_days': self.alert_retention_days,
            'created_at': self.created_at.isoformat() if self.created_at else None
        }


@dataclass(frozen=True)
class GuardSettings:
    """Read-only settings for one store, as seen by the monitoring engine."""

    store_id: int
    store_name: str = ''
    store_url: str = ''
    is_enabled: bool = True
    monitored_pages: List[str] = field(default_factory=list)
    max_alert_frequency_hours: int = 24
    enable_email_alerts: bool = True
    alert_email: Optional[str] = None
    enable_sri_validation: bool = False
    log_retention_days: int = 90
    alert_retention_days: int = 30

    def page_urls(self) -> List[str]:
        """Absolute URLs of every monitored page."""
        base = self.store_url.rstrip('/')
        urls = []
        for page in self.monitored_pages:
            if page.startswith(('http://', 'https://')):
                urls.append(page)
            else:
                urls.append(f"{base}/{page.lstrip('/')}")
        return urls

    @property
    def can_email(self) -> bool:
        return bool(self.enable_email_alerts and self.alert_email)


def parse_page_list(raw: Optional[str]) -> List[str]:
    """Split the comma separated page setting, dropping blanks."""
    if not raw:
        return []
    return [page.strip() for page in raw.split(',') if page.strip()]


class SettingsStore:
    """Loads per-store settings; never writes them."""

    @staticmethod
    def load(store_id: int) -> Optional[GuardSettings]:
        store = db.session.get(Store, store_id)
        if store is None:
            logger.warning("Settings requested for unknown store", store_id=store_id)
            return None

        return GuardSettings(
            store_id=store.id,
            store_name=store.name,
            store_url=store.url,
            is_enabled=bool(store.is_enabled),
            monitored_pages=parse_page_list(store.monitored_pages),
            max_alert_frequency_hours=store.max_alert_frequency_hours or 0,
            enable_email_alerts=bool(store.enable_email_alerts),
            alert_email=store.alert_email or None,
            enable_sri_validation=bool(store.enable_sri_validation),
            log_retention_days=store.log_retention_days,
            alert_retention_days=store.alert_retention_days
        )

    @staticmethod
    def load_csp_policy(store_id: int) -> str:
        store = db.session.get(Store, store_id)
        if store is None:
            return ''
        return store.csp_policy or ''

    @staticmethod
    def store_ids() -> List[int]:
        rows = db.session.query(Store.id).order_by(Store.id).all()
        return [row.id for row in rows]
