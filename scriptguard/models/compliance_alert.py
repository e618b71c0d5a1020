"""
Deduplicated compliance alerts.
"""
import hashlib
from datetime import datetime
from typing import Dict, Any, Optional

from sqlalchemy import Column, Integer, String, Boolean, DateTime, Text, ForeignKey, JSON

from scriptguard.utils.database import db

ALERT_UNAUTHORIZED_SCRIPT = 'unauthorized-script'
ALERT_CSP_VIOLATION = 'csp-violation'
ALERT_INTEGRITY_FAILURE = 'integrity-failure'

ALERT_TYPES = (ALERT_UNAUTHORIZED_SCRIPT, ALERT_CSP_VIOLATION, ALERT_INTEGRITY_FAILURE)

SEVERITY_INFO = 'info'
SEVERITY_WARNING = 'warning'
SEVERITY_CRITICAL = 'critical'

SEVERITIES = (SEVERITY_INFO, SEVERITY_WARNING, SEVERITY_CRITICAL)


def make_open_key(store_id: int, alert_type: str, script_url: Optional[str]) -> str:
    """Identity of an unresolved alert; hashed so arbitrary URLs fit the index."""
    raw = f"{store_id}\x1f{alert_type}\x1f{script_url or ''}"
    return hashlib.sha256(raw.encode('utf-8')).hexdigest()


class ComplianceAlert(db.Model):
    """One distinct compliance event for a store."""

    __tablename__ = 'compliance_alerts'

    id = Column(Integer, primary_key=True)
    store_id = Column(Integer, ForeignKey('stores.id', ondelete='CASCADE'), nullable=False, index=True)
    monitoring_log_id = Column(Integer, ForeignKey('monitoring_logs.id', ondelete='SET NULL'))

    alert_type = Column(String(50), nullable=False, index=True)
    severity = Column(String(20), default=SEVERITY_WARNING, nullable=False)
    message = Column(Text, nullable=False)
    details = Column(JSON, default=dict)
    script_url = Column(String(2000))
    page_url = Column(String(2000))

    # Set while unresolved, NULL afterwards; unique so only one open alert per key exists
    open_key = Column(String(64), unique=True)

    occurrence_count = Column(Integer, default=1, nullable=False)
    last_detected_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    is_resolved = Column(Boolean, default=False, nullable=False)
    resolved_by = Column(String(255))
    resolved_at = Column(DateTime)

    email_sent = Column(Boolean, default=False, nullable=False)
    email_sent_at = Column(DateTime)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)

    def __repr__(self):
        return f'<ComplianceAlert {self.alert_type} {self.script_url}>'

    def resolution_hours(self) -> Optional[float]:
        if not self.is_resolved or not self.resolved_at or not self.created_at:
            return None
        return (self.resolved_at - self.created_at).total_seconds() / 3600

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'store_id': self.store_id,
            'monitoring_log_id': self.monitoring_log_id,
            'alert_type': self.alert_type,
            'severity': self.severity,
            'message': self.message,
            'details': self.details or {},
            'script_url': self.script_url,
            'page_url': self.page_url,
            'occurrence_count': self.occurrence_count,
            'last_detected_at': self.last_detected_at.isoformat() if self.last_detected_at else None,
            'is_resolved': self.is_resolved,
            'resolved_by': self.resolved_by,
            'resolved_at': self.resolved_at.isoformat() if self.resolved_at else None,
            'email_sent': self.email_sent,
            'email_sent_at': self.email_sent_at.isoformat() if self.email_sent_at else None,
            'created_at': self.created_at.isoformat() if self.created_at else None
        }
