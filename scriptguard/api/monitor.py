"""
Endpoints called by the browser-side monitor embedded in store checkout pages.
Public, CORS-enabled and rate-limited; the store is identified by the URL.
"""
from typing import Any, Dict, Optional

from flask import Blueprint
import structlog

from scriptguard.guard import get_guard
from scriptguard.models.compliance_alert import (
    ALERT_UNAUTHORIZED_SCRIPT, ALERT_CSP_VIOLATION, ALERT_INTEGRITY_FAILURE
)
from scriptguard.models.store import GuardSettings, SettingsStore
from scriptguard.services.alert_manager import INTEGRITY_MISSING_SRI, INTEGRITY_INVALID_FORMAT
from scriptguard.utils.error_handlers import APIException, APIResponse, ErrorCodes
from scriptguard.utils.rate_limit import limiter, monitor_rate_limit
from scriptguard.utils.validators import (
    validate_json,
    ValidateScriptSchema, ValidateScriptWithSRISchema, ReportScriptsSchema,
    ReportViolationSchema, ReportCSPViolationSchema
)

logger = structlog.get_logger()

monitor_bp = Blueprint('monitor', __name__)
limiter.limit(monitor_rate_limit)(monitor_bp)

# violationType -> (alert type, integrity sub-case)
VIOLATION_ALERTS = {
    'unauthorized-script': (ALERT_UNAUTHORIZED_SCRIPT, None),
    'missing-sri-hash': (ALERT_INTEGRITY_FAILURE, INTEGRITY_MISSING_SRI),
    'invalid-sri-format': (ALERT_INTEGRITY_FAILURE, INTEGRITY_INVALID_FORMAT),
}


def _store_settings(store_id: int) -> GuardSettings:
    settings = SettingsStore.load(store_id)
    if settings is None:
        raise APIException(ErrorCodes.RESOURCE_NOT_FOUND, "Store not found", 404)
    if not settings.is_enabled:
        raise APIException(ErrorCodes.MONITORING_DISABLED, "Monitoring is disabled for this store", 409)
    return settings


def _client_details(data: Dict[str, Any], **extra) -> Dict[str, Any]:
    details = {
        'source': 'client-report',
        'userAgent': data.get('user_agent'),
        'clientTimestamp': str(data['timestamp']) if data.get('timestamp') is not None else None
    }
    details.update(extra)
    return details


def _alert_id(alert) -> Optional[int]:
    return alert.id if alert is not None else None


@monitor_bp.route('/<int:store_id>/ValidateScript', methods=['POST'])
@validate_json(ValidateScriptSchema)
def validate_script(data, store_id):
    """Is this script on the store's allow-list?"""
    _store_settings(store_id)
    guard = get_guard()

    is_authorized = guard.registry.is_authorized(data['script_url'], store_id)

    return APIResponse.success({'isAuthorized': is_authorized})


@monitor_bp.route('/<int:store_id>/ValidateScriptWithSRI', methods=['POST'])
@validate_json(ValidateScriptWithSRISchema)
def validate_script_with_sri(data, store_id):
    """Allow-list check plus integrity verification of the live content."""
    _store_settings(store_id)
    guard = get_guard()

    script_url = data['script_url']
    is_authorized = guard.registry.is_authorized(script_url, store_id)
    result = guard.verifier.verify(script_url, data.get('integrity'))

    payload = {
        'isAuthorized': is_authorized,
        'hasValidSRI': result.is_valid
    }
    if result.error:
        payload['sriError'] = result.error

    return APIResponse.success(payload)


@monitor_bp.route('/<int:store_id>/ReportScripts', methods=['POST'])
@validate_json(ReportScriptsSchema)
def report_scripts(data, store_id):
    """Scripts the browser saw on a page; unknown ones raise alerts."""
    _store_settings(store_id)
    guard = get_guard()

    unauthorized = []
    seen = set()
    for script_url in data['scripts']:
        script_url = script_url.strip()
        if script_url in seen:
            continue
        seen.add(script_url)
        if not guard.registry.is_authorized(script_url, store_id):
            unauthorized.append(script_url)

    for script_url in unauthorized:
        guard.alert_manager.raise_alert(
            store_id,
            ALERT_UNAUTHORIZED_SCRIPT,
            script_url,
            data['page_url'],
            details=_client_details(data)
        )

    logger.info(
        "Client script report processed",
        store_id=store_id,
        page_url=data['page_url'],
        reported=len(seen),
        unauthorized=len(unauthorized)
    )

    return APIResponse.success({
        'unauthorizedCount': len(unauthorized),
        'unauthorizedScripts': unauthorized
    })


@monitor_bp.route('/<int:store_id>/ReportViolation', methods=['POST'])
@validate_json(ReportViolationSchema)
def report_violation(data, store_id):
    """A script violation detected in the browser."""
    _store_settings(store_id)
    guard = get_guard()

    alert_type, subtype = VIOLATION_ALERTS[data['violation_type']]
    extra = {'violationType': data['violation_type']}
    if subtype:
        extra['subtype'] = subtype

    alert = guard.alert_manager.raise_alert(
        store_id,
        alert_type,
        data['script_url'],
        data['page_url'],
        details=_client_details(data, **extra)
    )

    return APIResponse.success({'alertId': _alert_id(alert), 'success': True})


@monitor_bp.route('/<int:store_id>/ReportCSPViolation', methods=['POST'])
@validate_json(ReportCSPViolationSchema)
def report_csp_violation(data, store_id):
    """A browser CSP violation report."""
    settings = _store_settings(store_id)
    guard = get_guard()

    violation = data['violation']
    blocked_uri = (violation.get('blocked_uri') or '').strip() or None

    details = _client_details(
        data,
        blockedURI=blocked_uri,
        violatedDirective=violation.get('violated_directive'),
        effectiveDirective=violation.get('effective_directive'),
        sourceFile=violation.get('source_file'),
        lineNumber=violation.get('line_number'),
        columnNumber=violation.get('column_number')
    )

    alert = guard.alert_manager.raise_alert(
        store_id,
        ALERT_CSP_VIOLATION,
        blocked_uri,
        data['page_url'],
        details=details
    )

    if alert is not None:
        guard.alert_manager.notify_csp_violation(alert, settings)

    return APIResponse.success({'alertId': _alert_id(alert), 'success': True})
