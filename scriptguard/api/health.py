"""
Health check endpoints for monitoring and deployment.
"""
from datetime import datetime

from flask import Blueprint

from scriptguard.guard import get_guard
from scriptguard.utils.database import db_manager
from scriptguard.utils.error_handlers import APIResponse

health_bp = Blueprint('health', __name__)


@health_bp.route('/health', methods=['GET'])
def health_check():
    """Basic health check endpoint."""
    return APIResponse.success({
        'status': 'healthy',
        'timestamp': datetime.utcnow().isoformat(),
        'service': 'scriptguard-api'
    })


@health_bp.route('/health/detailed', methods=['GET'])
def detailed_health_check():
    """Detailed health check with dependency status."""
    health_status = {
        'status': 'healthy',
        'timestamp': datetime.utcnow().isoformat(),
        'service': 'scriptguard-api',
        'dependencies': {}
    }

    # Check database
    if db_manager.health_check():
        health_status['dependencies']['database'] = 'healthy'
    else:
        health_status['dependencies']['database'] = 'unhealthy'
        health_status['status'] = 'unhealthy'

    # Hash cache is in-process; report its size only
    health_status['dependencies']['hash_cache'] = {
        'status': 'healthy',
        'entries': len(get_guard().hash_cache)
    }

    status_code = 200 if health_status['status'] == 'healthy' else 503

    return APIResponse.success(health_status, status_code=status_code)
