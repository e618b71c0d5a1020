"""
Alert manager: turns detections into a bounded stream of compliance alerts.

At most one unresolved alert exists per (store, alert type, script URL). The
unique ``open_key`` column is the source of truth for that rule; the lookup
before insert only saves a round trip. Email throttling is separate: an alert
is mailed only if no alert with the same type and script was mailed within
the store's max-alert-frequency window.
"""
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple

import structlog
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from scriptguard.models.compliance_alert import (
    ComplianceAlert, make_open_key,
    ALERT_UNAUTHORIZED_SCRIPT, ALERT_CSP_VIOLATION, ALERT_INTEGRITY_FAILURE,
    SEVERITY_CRITICAL, SEVERITY_WARNING, ALERT_TYPES, SEVERITIES
)
from scriptguard.models.store import GuardSettings
from scriptguard.utils.database import db, save_record, PersistenceError
from scriptguard.utils.logging_config import log_security_event

logger = structlog.get_logger()

# Sub-cases of integrity-failure carried in the details blob
INTEGRITY_HASH_MISMATCH = 'hash-mismatch'
INTEGRITY_MISSING_SRI = 'missing-sri'
INTEGRITY_INVALID_FORMAT = 'invalid-sri-format'


def default_severity(alert_type: str, details: Optional[Dict[str, Any]] = None) -> str:
    if alert_type == ALERT_UNAUTHORIZED_SCRIPT:
        return SEVERITY_CRITICAL
    if alert_type == ALERT_INTEGRITY_FAILURE:
        subtype = (details or {}).get('subtype')
        return SEVERITY_CRITICAL if subtype == INTEGRITY_HASH_MISMATCH else SEVERITY_WARNING
    return SEVERITY_WARNING


def default_message(alert_type: str, script_url: Optional[str], details: Optional[Dict[str, Any]] = None) -> str:
    target = script_url or 'page'
    if alert_type == ALERT_UNAUTHORIZED_SCRIPT:
        return f"Unauthorized script detected: {target}"
    if alert_type == ALERT_CSP_VIOLATION:
        directive = (details or {}).get('violatedDirective') or 'unknown directive'
        return f"Content-Security-Policy violation ({directive}): {target}"
    subtype = (details or {}).get('subtype')
    if subtype == INTEGRITY_MISSING_SRI:
        return f"Script is missing a Subresource Integrity hash: {target}"
    if subtype == INTEGRITY_INVALID_FORMAT:
        return f"Script has an invalid Subresource Integrity value: {target}"
    return f"Script integrity check failed: {target}"


class AlertManager:
    """Creates, refreshes, resolves and mails compliance alerts."""

    def __init__(self, notifier=None):
        self.notifier = notifier

    def find_open(self, store_id: int, alert_type: str, script_url: Optional[str]) -> Optional[ComplianceAlert]:
        return ComplianceAlert.query.filter_by(open_key=make_open_key(store_id, alert_type, script_url)).first()

    def raise_alert(self, store_id: int, alert_type: str, script_url: Optional[str], page_url: Optional[str],
                    details: Optional[Dict[str, Any]] = None, severity: Optional[str] = None,
                    message: Optional[str] = None,
                    monitoring_log_id: Optional[int] = None) -> Optional[ComplianceAlert]:
        """
        Create an alert, or return None when an unresolved one is already tracked.

        None means "already tracked", not failure; the open alert's
        occurrence count and last-detected time are refreshed instead.

        Raises:
            ValueError: unknown alert type or severity.
            PersistenceError: the alert could not be stored.
        """
        if alert_type not in ALERT_TYPES:
            raise ValueError(f"Unknown alert type: {alert_type}")

        details = dict(details or {})
        severity = severity or default_severity(alert_type, details)
        if severity not in SEVERITIES:
            raise ValueError(f"Unknown severity: {severity}")

        existing = self.find_open(store_id, alert_type, script_url)
        if existing is not None:
            self._refresh(existing)
            return None

        now = datetime.utcnow()
        alert = ComplianceAlert(
            store_id=store_id,
            monitoring_log_id=monitoring_log_id,
            alert_type=alert_type,
            severity=severity,
            message=message or default_message(alert_type, script_url, details),
            details=details,
            script_url=script_url,
            page_url=page_url,
            open_key=make_open_key(store_id, alert_type, script_url),
            occurrence_count=1,
            last_detected_at=now,
            is_resolved=False,
            email_sent=False,
            created_at=now
        )

        try:
            db.session.add(alert)
            db.session.commit()
        except IntegrityError:
            # A concurrent scan inserted the same open alert first
            db.session.rollback()
            existing = self.find_open(store_id, alert_type, script_url)
            if existing is None:
                raise PersistenceError("Could not persist compliance_alert: integrity error", 'compliance_alert')
            self._refresh(existing)
            logger.info(
                "Concurrent duplicate alert suppressed",
                store_id=store_id,
                alert_type=alert_type,
                script_url=script_url
            )
            return None
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error("Failed to persist alert", store_id=store_id, alert_type=alert_type, error=str(e))
            raise PersistenceError(f"Could not persist compliance_alert: {e}", 'compliance_alert') from e

        log_security_event(alert_type, {
            'alert_id': alert.id,
            'store_id': store_id,
            'severity': severity,
            'script_url': script_url,
            'page_url': page_url
        })
        return alert

    def _refresh(self, alert: ComplianceAlert) -> None:
        alert.occurrence_count = (alert.occurrence_count or 1) + 1
        alert.last_detected_at = datetime.utcnow()
        save_record(alert, 'compliance_alert')

        logger.debug(
            "Duplicate alert suppressed",
            alert_id=alert.id,
            store_id=alert.store_id,
            alert_type=alert.alert_type,
            occurrence_count=alert.occurrence_count
        )

    def should_notify(self, alert: ComplianceAlert, settings: GuardSettings) -> bool:
        """Email enabled, recipient set, and nothing equivalent mailed within the window."""
        if not settings.enable_email_alerts or not settings.alert_email:
            return False

        if settings.max_alert_frequency_hours <= 0:
            return True

        since = datetime.utcnow() - timedelta(hours=settings.max_alert_frequency_hours)

        query = ComplianceAlert.query.filter(
            ComplianceAlert.store_id == alert.store_id,
            ComplianceAlert.alert_type == alert.alert_type,
            ComplianceAlert.email_sent.is_(True),
            ComplianceAlert.email_sent_at >= since
        )
        if alert.script_url is None:
            query = query.filter(ComplianceAlert.script_url.is_(None))
        else:
            query = query.filter(ComplianceAlert.script_url == alert.script_url)
        if alert.id is not None:
            query = query.filter(ComplianceAlert.id != alert.id)

        return query.first() is None

    def mark_email_sent(self, alerts: Iterable[ComplianceAlert]) -> None:
        now = datetime.utcnow()
        alerts = list(alerts)
        if not alerts:
            return

        try:
            for alert in alerts:
                alert.email_sent = True
                alert.email_sent_at = now
                db.session.add(alert)
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            raise PersistenceError(f"Could not persist compliance_alert: {e}", 'compliance_alert') from e

    def notify_unauthorized(self, alerts: List[ComplianceAlert], log, settings: GuardSettings) -> bool:
        """Mail one summary for a scan's new unauthorized-script alerts, if allowed."""
        if self.notifier is None:
            return False

        notifiable = [alert for alert in alerts if self.should_notify(alert, settings)]
        if not notifiable:
            return False

        sent = self.notifier.send_unauthorized_script_alert(settings.alert_email, log, settings.store_name)
        if sent:
            self.mark_email_sent(notifiable)
        return sent

    def notify_csp_violation(self, alert: ComplianceAlert, settings: GuardSettings) -> bool:
        if self.notifier is None or not self.should_notify(alert, settings):
            return False

        details = dict(alert.details or {})
        details.setdefault('pageUrl', alert.page_url)
        sent = self.notifier.send_csp_violation_alert(settings.alert_email, details, settings.store_name)
        if sent:
            self.mark_email_sent([alert])
        return sent

    def notify_script_change(self, alert: ComplianceAlert, settings: GuardSettings) -> bool:
        if self.notifier is None or not self.should_notify(alert, settings):
            return False

        sent = self.notifier.send_script_change_alert(settings.alert_email, alert.script_url, settings.store_name)
        if sent:
            self.mark_email_sent([alert])
        return sent

    def resolve(self, alert_id: int, resolved_by: str) -> Optional[ComplianceAlert]:
        """None if the alert does not exist or is already resolved."""
        alert = db.session.get(ComplianceAlert, alert_id)
        if alert is None or alert.is_resolved:
            return None

        alert.is_resolved = True
        alert.resolved_by = resolved_by
        alert.resolved_at = datetime.utcnow()
        alert.open_key = None
        save_record(alert, 'compliance_alert')

        logger.info("Alert resolved", alert_id=alert.id, store_id=alert.store_id, resolved_by=resolved_by)
        return alert

    def list_alerts(self, store_id: int, resolved: Optional[bool] = None, alert_type: Optional[str] = None,
                    page: int = 1, per_page: int = 20) -> Tuple[List[ComplianceAlert], int]:
        query = ComplianceAlert.query.filter(ComplianceAlert.store_id == store_id)
        if resolved is not None:
            query = query.filter(ComplianceAlert.is_resolved.is_(resolved))
        if alert_type:
            query = query.filter(ComplianceAlert.alert_type == alert_type)

        total = query.count()
        alerts = query.order_by(ComplianceAlert.created_at.desc(), ComplianceAlert.id.desc()) \
            .offset((page - 1) * per_page).limit(per_page).all()
        return alerts, total
