"""
Operator endpoints: run checks, read reports, logs and alerts, resolve alerts,
issue integrity attributes.
"""
from flask import Blueprint
from flask_jwt_extended import jwt_required, get_jwt_identity
import structlog

from scriptguard.guard import get_guard
from scriptguard.models.monitoring_log import MonitoringLog
from scriptguard.models.store import SettingsStore
from scriptguard.services.csp_policy import build_csp_policy
from scriptguard.utils.database import PersistenceError
from scriptguard.utils.error_handlers import APIException, APIResponse, ErrorCodes
from scriptguard.utils.validators import (
    validate_optional_json, validate_query_params,
    RunCheckSchema, ReportQuerySchema, DashboardQuerySchema,
    AlertListQuerySchema, LogListQuerySchema, SRIQuerySchema
)

logger = structlog.get_logger()

compliance_bp = Blueprint('compliance', __name__)


def _engine(store_id: int):
    engine = get_guard().engine_for(store_id)
    if engine is None:
        raise APIException(ErrorCodes.RESOURCE_NOT_FOUND, "Store not found", 404)
    return engine


def _pagination(page: int, per_page: int, total: int) -> dict:
    return {
        'page': page,
        'per_page': per_page,
        'total': total,
        'pages': (total + per_page - 1) // per_page
    }


def _summarize(results: list) -> str:
    checked = [result for result in results if result['success']]
    unreachable = [result for result in checked if result['log'].get('fetch_error')]
    scripts = sum(result['log']['total_scripts_found'] for result in checked)
    unauthorized = sum(result['log']['unauthorized_scripts_count'] for result in checked)

    summary = (
        f"Checked {len(checked)} of {len(results)} page(s): "
        f"{scripts} script(s) found, {unauthorized} unauthorized."
    )
    if unreachable:
        summary += f" {len(unreachable)} page(s) could not be fetched."
    return summary


@compliance_bp.route('/stores/<int:store_id>/checks', methods=['POST'])
@jwt_required()
@validate_optional_json(RunCheckSchema)
def run_check(data, store_id):
    """Run a monitoring check now for one page or every monitored page."""
    engine = _engine(store_id)
    settings = engine.settings

    if not settings.is_enabled:
        raise APIException(ErrorCodes.MONITORING_DISABLED, "Monitoring is disabled for this store", 409)

    page_urls = [data['page_url']] if data.get('page_url') else settings.page_urls()
    if not page_urls:
        raise APIException(ErrorCodes.VALIDATION_ERROR, "No monitored pages are configured for this store", 422)

    results = []
    for page_url in page_urls:
        try:
            if settings.enable_sri_validation:
                log = engine.run_scan_with_sri(page_url, data['check_type'])
            else:
                log = engine.run_scan(page_url, data['check_type'])
            results.append({'page_url': page_url, 'success': True, 'log': log.to_dict()})
        except PersistenceError:
            raise
        except Exception as e:
            logger.error("Manual check failed", store_id=store_id, page_url=page_url, error=str(e), exc_info=True)
            results.append({'page_url': page_url, 'success': False, 'error': 'Check failed'})

    logger.info("Manual check requested", store_id=store_id, pages=len(page_urls), operator=get_jwt_identity())

    return APIResponse.success({
        'summary': _summarize(results),
        'success': all(result['success'] for result in results),
        'checks': results
    })


@compliance_bp.route('/stores/<int:store_id>/report', methods=['GET'])
@jwt_required()
@validate_query_params(ReportQuerySchema)
def get_report(data, store_id):
    """Compliance report over an optional date range."""
    report = _engine(store_id).generate_report(data.get('from_date'), data.get('to_date'))
    return APIResponse.success(report.to_dict())


@compliance_bp.route('/stores/<int:store_id>/dashboard', methods=['GET'])
@jwt_required()
@validate_query_params(DashboardQuerySchema)
def get_dashboard(data, store_id):
    """Report plus trends, distributions and expired scripts for the last N days."""
    return APIResponse.success(_engine(store_id).dashboard(data['days']))


@compliance_bp.route('/stores/<int:store_id>/alerts', methods=['GET'])
@jwt_required()
@validate_query_params(AlertListQuerySchema)
def list_alerts(data, store_id):
    _engine(store_id)
    alerts, total = get_guard().alert_manager.list_alerts(
        store_id,
        resolved=data.get('resolved'),
        alert_type=data.get('alert_type'),
        page=data['page'],
        per_page=data['per_page']
    )

    return APIResponse.success({
        'alerts': [alert.to_dict() for alert in alerts],
        'pagination': _pagination(data['page'], data['per_page'], total)
    })


@compliance_bp.route('/alerts/<int:alert_id>/resolve', methods=['POST'])
@jwt_required()
def resolve_alert(alert_id):
    resolved_by = str(get_jwt_identity())
    alert = get_guard().alert_manager.resolve(alert_id, resolved_by)
    if alert is None:
        raise APIException(ErrorCodes.RESOURCE_NOT_FOUND, "Alert not found or already resolved", 404)

    return APIResponse.success(alert.to_dict(), message="Alert resolved")


@compliance_bp.route('/stores/<int:store_id>/logs', methods=['GET'])
@jwt_required()
@validate_query_params(LogListQuerySchema)
def list_logs(data, store_id):
    _engine(store_id)

    query = MonitoringLog.query.filter(MonitoringLog.store_id == store_id)
    if data['unauthorized_only']:
        query = query.filter(MonitoringLog.has_unauthorized_scripts.is_(True))

    total = query.count()
    logs = query.order_by(MonitoringLog.checked_at.desc(), MonitoringLog.id.desc()) \
        .offset((data['page'] - 1) * data['per_page']).limit(data['per_page']).all()

    return APIResponse.success({
        'logs': [log.to_dict() for log in logs],
        'pagination': _pagination(data['page'], data['per_page'], total)
    })


@compliance_bp.route('/stores/<int:store_id>/csp-policy', methods=['GET'])
@jwt_required()
def get_csp_policy(store_id):
    """Store CSP widened with the origins of every active authorized script."""
    _engine(store_id)
    guard = get_guard()

    base_policy = SettingsStore.load_csp_policy(store_id)
    scripts = guard.registry.active_scripts(store_id)
    policy = build_csp_policy(base_policy, [script.script_url for script in scripts])

    return APIResponse.success({
        'basePolicy': base_policy,
        'policy': policy,
        'authorizedOrigins': len({script.domain for script in scripts if script.domain})
    })


@compliance_bp.route('/stores/<int:store_id>/sri', methods=['GET'])
@jwt_required()
@validate_query_params(SRIQuerySchema)
def issue_sri(data, store_id):
    """Integrity attribute for a script tag, or the reason none is issued."""
    engine = _engine(store_id)
    if not engine.settings.is_enabled:
        raise APIException(ErrorCodes.MONITORING_DISABLED, "Monitoring is disabled for this store", 409)

    issue = engine.issue_sri(data['url'], data['algorithm'], data['force'])
    logger.info("SRI issuance requested", store_id=store_id, script_src=issue.script_url,
                issued=issue.issued, forced=data['force'], operator=get_jwt_identity())

    return APIResponse.success(issue.to_dict())
