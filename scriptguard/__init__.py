"""
Application factory for the ScriptGuard service.
"""
import os
from typing import Any, Dict, Optional

import structlog
from flask import Flask
from flask_cors import CORS
from flask_jwt_extended import JWTManager

from config.settings import get_config
from .utils.database import db, init_db
from .utils.error_handlers import register_error_handlers, register_jwt_callbacks
from .utils.logging_config import configure_logging, RequestLoggingMiddleware
from .utils.rate_limit import limiter


def create_app(config_name: str = None, config_overrides: Optional[Dict[str, Any]] = None,
               session=None, notifier=None) -> Flask:
    """
    Create and configure Flask application.

    ``session`` and ``notifier`` replace the outbound HTTP session and the
    email gateway; tests use them to keep the process offline.
    """
    app = Flask(__name__)

    # Load configuration
    config_name = config_name or os.environ.get('FLASK_ENV', 'development')
    config = get_config(config_name)
    app.config.from_object(config)
    app.config['ENV_NAME'] = config_name
    if config_overrides:
        app.config.update(config_overrides)

    # Setup logging first
    configure_logging(app)
    logger = structlog.get_logger()
    logger.info("Starting ScriptGuard", environment=config_name)

    # Initialize extensions
    init_extensions(app)

    # Initialize database
    init_database_tables(app)

    # Register blueprints
    register_blueprints(app)

    # Register error handlers
    register_error_handlers(app)

    # Configure CORS
    configure_cors(app)

    RequestLoggingMiddleware(app)

    # Monitoring components and scheduled-task commands
    from .guard import init_guard
    from .tasks import register_cli
    init_guard(app, session=session, notifier=notifier)
    register_cli(app)

    logger.info("ScriptGuard initialized successfully")

    return app


def init_extensions(app: Flask) -> None:
    """Initialize Flask extensions."""

    # Initialize SQLAlchemy with app
    db.init_app(app)

    # JWT Manager; operators authenticate with tokens issued elsewhere
    jwt = JWTManager(app)
    register_jwt_callbacks(jwt)

    # Rate Limiter
    limiter.init_app(app)

    # Store extensions in app for access
    app.jwt = jwt
    app.limiter = limiter


def init_database_tables(app: Flask) -> None:
    """Initialize database tables."""
    # Register every model with the metadata before create_all
    from . import models  # noqa: F401

    with app.app_context():
        init_db()


def register_blueprints(app: Flask) -> None:
    """Register all application blueprints."""

    from .api.health import health_bp
    from .api.monitor import monitor_bp
    from .api.compliance import compliance_bp

    limiter.exempt(health_bp)

    app.register_blueprint(health_bp, url_prefix='/api/health')
    app.register_blueprint(monitor_bp, url_prefix='/api/monitor')
    app.register_blueprint(compliance_bp, url_prefix='/api/guard')


def configure_cors(app: Flask) -> None:
    """Configure CORS for the browser-monitor endpoints."""
    # The monitor script runs on storefront origins
    origins = app.config.get('CORS_ORIGINS') or '*'
    CORS(app,
         resources={r"/api/monitor/*": {"origins": origins}},
         methods=["POST", "OPTIONS"],
         allow_headers=["Content-Type"])
