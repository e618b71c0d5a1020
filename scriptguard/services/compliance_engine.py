"""
Compliance engine: runs one monitoring scan of one page for one store.

Each scan walks Fetching -> Classifying -> (Verifying) -> Persisting ->
Alerting -> Done. Fetch and parse failures degrade to a zero-script log.
Verification and alerting failures are logged without losing the log record.
Only persistence failures reach the caller.
"""
import time
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple
from urllib.parse import urlparse

import structlog

from scriptguard.models.authorized_script import AuthorizedScript
from scriptguard.models.compliance_alert import (
    ComplianceAlert, ALERT_UNAUTHORIZED_SCRIPT, ALERT_INTEGRITY_FAILURE
)
from scriptguard.models.monitoring_log import MonitoringLog, CHECK_TYPES
from scriptguard.models.store import GuardSettings
from scriptguard.services.alert_manager import (
    AlertManager, INTEGRITY_HASH_MISMATCH, INTEGRITY_MISSING_SRI, INTEGRITY_INVALID_FORMAT
)
from scriptguard.services.authorization import AuthorizationRegistry
from scriptguard.services.integrity import IntegrityVerifier, REASON_MISMATCH, REASON_INVALID_FORMAT
from scriptguard.services.page_scanner import PageScanner, is_inline_id
from scriptguard.services.report_aggregator import ReportAggregator, ComplianceReport
from scriptguard.services.results import ScanResult, SRIIssue
from scriptguard.utils.database import save_record, PersistenceError
from scriptguard.utils.logging_config import log_scan_timing

logger = structlog.get_logger()

# Scripts served by this service carry its name in their path
OWN_SCRIPT_MARKER = 'scriptguard'


class ScanState(str, Enum):
    FETCHING = 'fetching'
    CLASSIFYING = 'classifying'
    VERIFYING = 'verifying'
    PERSISTING = 'persisting'
    ALERTING = 'alerting'
    DONE = 'done'


def host_matches(host: str, candidates: Iterable[str]) -> bool:
    """Exact host or any subdomain of a listed host."""
    host = (host or '').lower()
    return any(host == candidate or host.endswith('.' + candidate) for candidate in candidates)


class ComplianceEngine:
    """Scan orchestration and reporting for a single store."""

    def __init__(self, settings: GuardSettings, scanner: PageScanner, registry: AuthorizationRegistry,
                 verifier: IntegrityVerifier, alert_manager: AlertManager,
                 aggregator: Optional[ReportAggregator] = None,
                 trusted_cdn_hosts: Iterable[str] = (), payment_gateway_hosts: Iterable[str] = (),
                 expired_script_days: int = 30):
        self.settings = settings
        self.store_id = settings.store_id
        self.scanner = scanner
        self.registry = registry
        self.verifier = verifier
        self.alert_manager = alert_manager
        self.aggregator = aggregator or ReportAggregator()
        self.trusted_cdn_hosts = [host.lower() for host in trusted_cdn_hosts]
        self.payment_gateway_hosts = [host.lower() for host in payment_gateway_hosts]
        self.expired_script_days = expired_script_days
        self.state = None

    def run_scan(self, page_url: str, check_type: str = 'scheduled') -> MonitoringLog:
        """Scan a page, classify its scripts, persist the log and raise alerts."""
        return self._run(page_url, check_type, verify_sri=False)

    def run_scan_with_sri(self, page_url: str, check_type: str = 'scheduled') -> MonitoringLog:
        """run_scan plus integrity checks and missing-SRI findings."""
        return self._run(page_url, check_type, verify_sri=True)

    def _run(self, page_url: str, check_type: str, verify_sri: bool) -> MonitoringLog:
        if check_type not in CHECK_TYPES:
            raise ValueError(f"Unknown check type: {check_type}")

        started = time.monotonic()
        log_context = logger.bind(store_id=self.store_id, page_url=page_url, check_type=check_type)

        self.state = ScanState.FETCHING
        scan = self.scanner.scan(page_url)

        self.state = ScanState.CLASSIFYING
        authorized, unauthorized = self.classify(scan.scripts)

        findings: List[Dict[str, Any]] = []
        if verify_sri and scan.ok:
            self.state = ScanState.VERIFYING
            try:
                findings = self.verify_integrity(scan)
            except Exception as e:
                log_context.error("Integrity verification stage failed", error=str(e), exc_info=True)
                findings = []

        duration_ms = int((time.monotonic() - started) * 1000)

        self.state = ScanState.PERSISTING
        log = MonitoringLog(
            store_id=self.store_id,
            page_url=page_url,
            detected_scripts=list(scan.scripts),
            unauthorized_scripts=unauthorized,
            http_headers=dict(scan.headers),
            sri_findings=findings,
            total_scripts_found=len(scan.scripts),
            authorized_scripts_count=len(authorized),
            unauthorized_scripts_count=len(unauthorized),
            has_unauthorized_scripts=len(unauthorized) > 0,
            check_type=check_type,
            alert_sent=False,
            scan_duration_ms=duration_ms,
            fetch_error=scan.error_kind.value if scan.error_kind else None,
            error_message=scan.error,
            checked_at=datetime.utcnow()
        )
        save_record(log, 'monitoring_log')

        self.state = ScanState.ALERTING
        try:
            self.raise_alerts(log, findings)
        except PersistenceError:
            raise
        except Exception as e:
            log_context.error("Alerting stage failed", log_id=log.id, error=str(e), exc_info=True)

        self.state = ScanState.DONE
        log_scan_timing(self.store_id, page_url, check_type, duration_ms, scan.error_kind is not None)
        log_context.info(
            "Monitoring check completed",
            log_id=log.id,
            total_scripts=log.total_scripts_found,
            unauthorized_scripts=log.unauthorized_scripts_count,
            fetch_error=log.fetch_error
        )
        return log

    def classify(self, scripts: Iterable[str]) -> Tuple[List[str], List[str]]:
        """Split identifiers into (authorized, unauthorized), preserving page order."""
        authorized, unauthorized = [], []
        for identifier in scripts:
            if self.registry.is_authorized(identifier, self.store_id):
                authorized.append(identifier)
            else:
                unauthorized.append(identifier)
        return authorized, unauthorized

    def expects_sri(self, script_url: str) -> bool:
        """Trusted-CDN scripts should carry integrity; payment gateways never do."""
        try:
            host = urlparse(script_url).hostname or ''
        except ValueError:
            return False
        if host_matches(host, self.payment_gateway_hosts):
            return False
        return host_matches(host, self.trusted_cdn_hosts)

    def issue_sri(self, script_src: str, algorithm: str = 'sha384', force: bool = False) -> SRIIssue:
        """
        Integrity attribute for a script tag the store renders.

        Local paths ("/js/x.js", "~/js/x.js") are hashed from the static root,
        external URLs are fetched. The service's own scripts and trusted-CDN
        scripts are pinned automatically; anything else, payment gateways
        included, needs ``force``.
        """
        script_src = script_src.strip()
        if not self.settings.enable_sri_validation:
            return SRIIssue(script_src, reason="SRI validation is disabled for this store")

        if script_src.startswith('//'):
            fetch_url, local = f'https:{script_src}', False
        elif script_src.startswith(('/', '~/')):
            fetch_url, local = None, True
        elif script_src.lower().startswith(('http://', 'https://')):
            fetch_url, local = script_src, False
        else:
            return SRIIssue(script_src, reason="Not a local path or an http(s) URL")

        try:
            host = urlparse(fetch_url).hostname if fetch_url else None
        except ValueError:
            return SRIIssue(script_src, reason="Not a local path or an http(s) URL")

        if not force:
            if host and host_matches(host, self.payment_gateway_hosts):
                return SRIIssue(script_src, reason="Payment gateway scripts are not pinned")
            own_script = OWN_SCRIPT_MARKER in script_src.lower()
            if not own_script and (local or not self.expects_sri(fetch_url)):
                return SRIIssue(script_src, reason="Only service and trusted CDN scripts are pinned automatically")

        hash_engine = self.registry.hash_engine
        if local:
            if not hash_engine.local_root:
                return SRIIssue(script_src, reason="No static root is configured for local scripts")
            outcome = hash_engine.hash_local_file(script_src, algorithm)
        else:
            outcome = hash_engine.fetch_and_hash(fetch_url, algorithm)

        if not outcome.ok:
            logger.warning("SRI issuance failed", store_id=self.store_id, script_src=script_src,
                           error_kind=outcome.error_kind.value, error=outcome.error)
            return SRIIssue(script_src, reason=outcome.error)

        return SRIIssue(script_src, integrity=outcome.sri, crossorigin=None if local else 'anonymous')

    def verify_integrity(self, scan: ScanResult) -> List[Dict[str, Any]]:
        findings = []
        for identifier in scan.scripts:
            if is_inline_id(identifier):
                continue

            declared = scan.integrity.get(identifier)
            if declared:
                result = self.verifier.verify(identifier, declared)
                finding = result.to_dict()
                if result.is_valid:
                    finding['subtype'] = 'verified'
                elif result.error == REASON_MISMATCH:
                    finding['subtype'] = INTEGRITY_HASH_MISMATCH
                elif result.error == REASON_INVALID_FORMAT:
                    finding['subtype'] = INTEGRITY_INVALID_FORMAT
                else:
                    # No hash available is not a security failure
                    finding['subtype'] = 'unavailable'
                findings.append(finding)
            elif self.expects_sri(identifier):
                findings.append({
                    'script_url': identifier,
                    'is_valid': False,
                    'current_hash': None,
                    'expected_hash': None,
                    'error': 'no integrity attribute present',
                    'subtype': INTEGRITY_MISSING_SRI
                })
        return findings

    def raise_alerts(self, log: MonitoringLog, findings: List[Dict[str, Any]]) -> None:
        new_unauthorized: List[ComplianceAlert] = []
        for identifier in log.unauthorized_scripts or []:
            alert = self.alert_manager.raise_alert(
                self.store_id,
                ALERT_UNAUTHORIZED_SCRIPT,
                identifier,
                log.page_url,
                details={
                    'source': f"{log.check_type}-scan",
                    'inline': is_inline_id(identifier),
                    'monitoring_log_id': log.id
                },
                monitoring_log_id=log.id
            )
            if alert is not None:
                new_unauthorized.append(alert)

        if new_unauthorized and self.alert_manager.notify_unauthorized(new_unauthorized, log, self.settings):
            log.alert_sent = True
            save_record(log, 'monitoring_log')

        for finding in findings:
            subtype = finding.get('subtype')
            if subtype not in (INTEGRITY_HASH_MISMATCH, INTEGRITY_MISSING_SRI, INTEGRITY_INVALID_FORMAT):
                continue

            alert = self.alert_manager.raise_alert(
                self.store_id,
                ALERT_INTEGRITY_FAILURE,
                finding['script_url'],
                log.page_url,
                details={
                    'subtype': subtype,
                    'reason': finding.get('error'),
                    'expected_hash': finding.get('expected_hash'),
                    'current_hash': finding.get('current_hash'),
                    'monitoring_log_id': log.id
                },
                monitoring_log_id=log.id
            )
            if alert is not None and subtype == INTEGRITY_HASH_MISMATCH:
                self.alert_manager.notify_script_change(alert, self.settings)

    def _logs_between(self, from_date: Optional[datetime], to_date: Optional[datetime]) -> List[MonitoringLog]:
        query = MonitoringLog.query.filter(MonitoringLog.store_id == self.store_id)
        if from_date is not None:
            query = query.filter(MonitoringLog.checked_at >= from_date)
        if to_date is not None:
            query = query.filter(MonitoringLog.checked_at <= to_date)
        return query.order_by(MonitoringLog.checked_at).all()

    def _alerts_between(self, from_date: Optional[datetime], to_date: Optional[datetime]) -> List[ComplianceAlert]:
        query = ComplianceAlert.query.filter(ComplianceAlert.store_id == self.store_id)
        if from_date is not None:
            query = query.filter(ComplianceAlert.created_at >= from_date)
        if to_date is not None:
            query = query.filter(ComplianceAlert.created_at <= to_date)
        return query.order_by(ComplianceAlert.created_at).all()

    def generate_report(self, from_date: Optional[datetime] = None,
                        to_date: Optional[datetime] = None) -> ComplianceReport:
        """Aggregate persisted logs (and alerts) in the window; read-only."""
        return self.aggregator.report(
            self._logs_between(from_date, to_date),
            self._alerts_between(from_date, to_date)
        )

    def dashboard(self, days: int = 30) -> Dict[str, Any]:
        since = datetime.utcnow() - timedelta(days=days)
        scripts = AuthorizedScript.query.filter_by(store_id=self.store_id).all()
        return self.aggregator.dashboard(
            logs=self._logs_between(since, None),
            alerts=self._alerts_between(since, None),
            scripts=scripts,
            expired_scripts=self.registry.find_expired(self.expired_script_days, self.store_id),
            days=days
        )
