"""
Structured logging configuration for monitoring runs and API traffic.
"""
import logging
import sys
from typing import Any, Dict

import structlog
from flask import Flask, request, has_request_context
from flask_jwt_extended import get_jwt_identity

# Polled by load balancers; not logged
QUIET_ENDPOINTS = {'health.health_check', 'health.detailed_health_check', 'static'}


def configure_logging(app: Flask) -> None:
    """Configure structured logging for the application."""

    # Configure standard library logging
    logging.basicConfig(
        format=app.config.get('LOG_FORMAT', '%(asctime)s %(levelname)s %(name)s %(message)s'),
        level=getattr(logging, app.config.get('LOG_LEVEL', 'INFO')),
        stream=sys.stdout
    )

    # Configure structlog
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            add_request_context,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer() if app.config.get('ENV_NAME') == 'production'
            else structlog.dev.ConsoleRenderer()
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def add_request_context(logger, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add request context to log entries."""
    if has_request_context():
        event_dict.setdefault('endpoint', request.endpoint)
        event_dict.setdefault('method', request.method)
        event_dict.setdefault('path', request.path)
        event_dict.setdefault('remote_addr', request.remote_addr)
        event_dict.setdefault('user_agent', request.headers.get('User-Agent'))
        if request.view_args and 'store_id' in request.view_args:
            event_dict.setdefault('store_id', request.view_args['store_id'])

        # Operator endpoints carry a JWT, monitor endpoints do not
        try:
            operator = get_jwt_identity()
        except RuntimeError:
            operator = None
        if operator:
            event_dict['operator'] = operator

    return event_dict


class RequestLoggingMiddleware:
    """Logs each request and its response, skipping health checks."""

    def __init__(self, app: Flask):
        self.app = app
        self.logger = structlog.get_logger()

        app.before_request(self.log_request)
        app.after_request(self.log_response)

    def log_request(self):
        """Log incoming requests."""
        if request.endpoint in QUIET_ENDPOINTS:
            return

        self.logger.info(
            "Request started",
            method=request.method,
            path=request.path,
            content_length=request.content_length,
            content_type=request.content_type
        )

    def log_response(self, response):
        """Log outgoing responses."""
        if request.endpoint in QUIET_ENDPOINTS:
            return response

        self.logger.info(
            "Request completed",
            status_code=response.status_code,
            content_length=response.content_length,
            content_type=response.content_type
        )

        return response


def log_security_event(event_type: str, details: Dict[str, Any]) -> None:
    """Warning-level record of every alert the service raises."""
    logger = structlog.get_logger()
    logger.warning(
        "Security event",
        event_type=event_type,
        **details
    )


def log_scan_timing(store_id: int, page_url: str, check_type: str, duration_ms: int, fetch_failed: bool) -> None:
    """Measured wall time of one scan; the dashboard averages the stored value."""
    structlog.get_logger().info(
        "Scan timing",
        store_id=store_id,
        page_url=page_url,
        check_type=check_type,
        duration_ms=duration_ms,
        fetch_failed=fetch_failed
    )
