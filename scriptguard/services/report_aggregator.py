"""
Read-side projections over monitoring logs and alerts.

Everything here is a pure function of the records passed in: no queries, no
writes, safe to call repeatedly and concurrently.
"""
from collections import Counter, OrderedDict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence

from scriptguard.models.authorized_script import RISK_LEVELS

TOP_N = 10

ALERT_TYPE_LABELS = {
    'unauthorized-script': 'Unauthorized Scripts',
    'csp-violation': 'CSP Violations',
    'integrity-failure': 'Integrity Failures',
}


def compliance_score(authorized: int, total: int) -> float:
    """Authorized share of detected scripts, 100 when nothing was detected."""
    if total <= 0:
        return 100.0
    return authorized / total * 100


@dataclass
class ComplianceReport:
    total_scripts_monitored: int = 0
    authorized_scripts_count: int = 0
    unauthorized_scripts_count: int = 0
    compliance_score: float = 100.0
    total_checks_performed: int = 0
    alerts_generated: int = 0
    last_check_date: datetime = datetime.min
    most_common_unauthorized_scripts: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'total_scripts_monitored': self.total_scripts_monitored,
            'authorized_scripts_count': self.authorized_scripts_count,
            'unauthorized_scripts_count': self.unauthorized_scripts_count,
            'compliance_score': round(self.compliance_score, 2),
            'total_checks_performed': self.total_checks_performed,
            'alerts_generated': self.alerts_generated,
            'last_check_date': self.last_check_date.isoformat(),
            'most_common_unauthorized_scripts': list(self.most_common_unauthorized_scripts)
        }


def most_common_unauthorized(logs: Iterable, top_n: int = TOP_N) -> List[str]:
    counts = Counter()
    for log in logs:
        if log.has_unauthorized_scripts:
            counts.update(log.unauthorized_scripts or [])
    return [f"{script} ({count} times)" for script, count in counts.most_common(top_n)]


def build_report(logs: Sequence, alerts: Optional[Sequence] = None, top_n: int = TOP_N) -> ComplianceReport:
    """
    Fold a window of monitoring logs into a ComplianceReport.

    When alerts are supplied, alerts_generated counts them; otherwise it counts
    logs that flagged unauthorized scripts.
    """
    logs = list(logs)
    if not logs:
        return ComplianceReport(alerts_generated=len(alerts) if alerts is not None else 0)

    total = sum(log.total_scripts_found or 0 for log in logs)
    authorized = sum(log.authorized_scripts_count or 0 for log in logs)
    unauthorized = sum(log.unauthorized_scripts_count or 0 for log in logs)

    return ComplianceReport(
        total_scripts_monitored=total,
        authorized_scripts_count=authorized,
        unauthorized_scripts_count=unauthorized,
        compliance_score=compliance_score(authorized, total),
        total_checks_performed=len(logs),
        alerts_generated=len(alerts) if alerts is not None else sum(1 for log in logs if log.has_unauthorized_scripts),
        last_check_date=max(log.checked_at for log in logs),
        most_common_unauthorized_scripts=most_common_unauthorized(logs, top_n)
    )


def daily_history(logs: Iterable) -> List[Dict[str, Any]]:
    """Per-day totals, score, checks, issues and mean scan time, oldest first."""
    days: Dict[Any, List] = OrderedDict()
    for log in sorted(logs, key=lambda item: item.checked_at):
        days.setdefault(log.checked_at.date(), []).append(log)

    history = []
    for day, group in days.items():
        total = sum(log.total_scripts_found or 0 for log in group)
        authorized = sum(log.authorized_scripts_count or 0 for log in group)
        history.append({
            'date': day.isoformat(),
            'total_scripts': total,
            'authorized_scripts': authorized,
            'unauthorized_scripts': sum(log.unauthorized_scripts_count or 0 for log in group),
            'compliance_score': round(compliance_score(authorized, total), 2),
            'checks_performed': len(group),
            'issues_found': sum(1 for log in group if log.has_unauthorized_scripts),
            'average_scan_duration_ms': average_scan_duration_ms(group)
        })
    return history


def alert_type_distribution(alerts: Iterable) -> List[Dict[str, Any]]:
    counts = Counter(alert.alert_type for alert in alerts)
    total = sum(counts.values())
    return [
        {
            'alert_type': alert_type,
            'label': ALERT_TYPE_LABELS.get(alert_type, alert_type or 'Unknown'),
            'count': count,
            'percentage': round(count / total * 100, 2) if total else 0.0
        }
        for alert_type, count in counts.most_common()
    ]


def risk_breakdown(scripts: Iterable) -> List[Dict[str, Any]]:
    """Active authorized scripts grouped by risk level."""
    counts = Counter(script.risk_level for script in scripts if script.is_active)
    total = sum(counts.values())
    return [
        {
            'risk_level': RISK_LEVELS.get(level, 'Unknown'),
            'count': counts[level],
            'percentage': round(counts[level] / total * 100, 2) if total else 0.0
        }
        for level in sorted(counts)
    ]


def top_violating_scripts(alerts: Iterable, scripts_by_url: Optional[Dict[str, Any]] = None,
                          top_n: int = TOP_N) -> List[Dict[str, Any]]:
    scripts_by_url = scripts_by_url or {}
    grouped: Dict[str, List] = {}
    for alert in alerts:
        if alert.script_url:
            grouped.setdefault(alert.script_url, []).append(alert)

    ranked = sorted(grouped.items(), key=lambda item: len(item[1]), reverse=True)[:top_n]

    result = []
    for script_url, group in ranked:
        authorized = scripts_by_url.get(script_url)
        result.append({
            'script_url': script_url,
            'violation_count': len(group),
            'occurrences': sum(alert.occurrence_count or 1 for alert in group),
            'last_violation': max(alert.last_detected_at or alert.created_at for alert in group).isoformat(),
            'risk_level': authorized.risk_label if authorized is not None else 'Unknown'
        })
    return result


def average_resolution_hours(alerts: Iterable) -> float:
    hours = [alert.resolution_hours() for alert in alerts]
    hours = [value for value in hours if value is not None]
    if not hours:
        return 0.0
    return round(sum(hours) / len(hours), 2)


def average_scan_duration_ms(logs: Iterable) -> Optional[float]:
    """Mean measured scan time; None when no log carries a timing."""
    durations = [log.scan_duration_ms for log in logs if log.scan_duration_ms is not None]
    if not durations:
        return None
    return round(sum(durations) / len(durations), 2)


class ReportAggregator:
    """Builds reports and dashboard payloads from already-loaded records."""

    top_n = TOP_N

    def report(self, logs: Sequence, alerts: Optional[Sequence] = None) -> ComplianceReport:
        return build_report(logs, alerts, self.top_n)

    def dashboard(self, logs: Sequence, alerts: Sequence, scripts: Sequence,
                  expired_scripts: Sequence, days: int) -> Dict[str, Any]:
        now = datetime.utcnow()
        report = self.report(logs, alerts)
        scripts_by_url = {script.script_url: script for script in scripts}

        data = report.to_dict()
        data.update({
            'days': days,
            'compliance_history': daily_history(logs),
            'alert_type_distribution': alert_type_distribution(alerts),
            'risk_level_breakdown': risk_breakdown(scripts),
            'top_violating_scripts': top_violating_scripts(alerts, scripts_by_url, self.top_n),
            'open_alerts': sum(1 for alert in alerts if not alert.is_resolved),
            'resolved_alerts': sum(1 for alert in alerts if alert.is_resolved),
            'average_resolution_hours': average_resolution_hours(alerts),
            'average_scan_duration_ms': average_scan_duration_ms(logs),
            'failed_fetches': sum(1 for log in logs if log.fetch_error),
            'expired_scripts_count': len(expired_scripts),
            'expired_scripts': [
                {
                    'script_url': script.script_url,
                    'last_verified_at': script.last_verified_at.isoformat() if script.last_verified_at else None,
                    'days_since_verified': (now - (script.last_verified_at or script.authorized_at)).days
                }
                for script in list(expired_scripts)[:5]
            ]
        })
        return data
