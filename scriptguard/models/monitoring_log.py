"""
Per-scan monitoring records. Written once by the engine; only the alert-sent
marker changes afterwards.
"""
from datetime import datetime
from typing import Dict, Any

from sqlalchemy import Column, Integer, String, Boolean, DateTime, Text, ForeignKey, JSON

from scriptguard.utils.database import db

CHECK_TYPES = ('scheduled', 'manual', 'post-order')


class MonitoringLog(db.Model):
    """What one scan of one page found."""

    __tablename__ = 'monitoring_logs'

    id = Column(Integer, primary_key=True)
    store_id = Column(Integer, ForeignKey('stores.id', ondelete='CASCADE'), nullable=False, index=True)
    page_url = Column(String(2000), nullable=False)

    # Ordered script identifiers (external URLs or inline-script-<hash>)
    detected_scripts = Column(JSON, nullable=False, default=list)
    unauthorized_scripts = Column(JSON, nullable=False, default=list)
    # Header name -> value, empty string when absent
    http_headers = Column(JSON, nullable=False, default=dict)
    sri_findings = Column(JSON, nullable=False, default=list)

    total_scripts_found = Column(Integer, default=0, nullable=False)
    authorized_scripts_count = Column(Integer, default=0, nullable=False)
    unauthorized_scripts_count = Column(Integer, default=0, nullable=False)
    has_unauthorized_scripts = Column(Boolean, default=False, nullable=False)

    check_type = Column(String(20), default='scheduled', nullable=False)
    alert_sent = Column(Boolean, default=False, nullable=False)
    scan_duration_ms = Column(Integer)
    fetch_error = Column(String(50))
    error_message = Column(Text)

    checked_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)

    def __repr__(self):
        return f'<MonitoringLog {self.page_url} @ {self.checked_at}>'

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'store_id': self.store_id,
            'page_url': self.page_url,
            'detected_scripts': list(self.detected_scripts or []),
            'unauthorized_scripts': list(self.unauthorized_scripts or []),
            'http_headers': dict(self.http_headers or {}),
            'sri_findings': list(self.sri_findings or []),
            'total_scripts_found': self.total_scripts_found,
            'authorized_scripts_count': self.authorized_scripts_count,
            'unauthorized_scripts_count': self.unauthorized_scripts_count,
            'has_unauthorized_scripts': self.has_unauthorized_scripts,
            'check_type': self.check_type,
            'alert_sent': self.alert_sent,
            'scan_duration_ms': self.scan_duration_ms,
            'fetch_error': self.fetch_error,
            'checked_at': self.checked_at.isoformat() if self.checked_at else None
        }
