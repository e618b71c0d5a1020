"""
Request rate limiting shared by the blueprints.
"""
from flask import current_app
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address

# Storage, defaults and the enabled flag come from RATELIMIT_* config at init_app
limiter = Limiter(key_func=get_remote_address)


def monitor_rate_limit() -> str:
    """Per-client limit for the browser-monitor endpoints."""
    return current_app.config.get('MONITOR_API_RATE_LIMIT', '1000 per hour')
