"""
Configuration settings for the ScriptGuard service.
Implements environment-driven configuration with validation.
"""
import os
from datetime import timedelta
from typing import Optional


def _csv_env(name: str, default: str) -> list:
    """Read a comma separated environment variable into a list."""
    raw = os.environ.get(name, default)
    return [item.strip().lower() for item in raw.split(',') if item.strip()]


class Config:
    """Base configuration class with secure defaults."""

    # Security Configuration
    SECRET_KEY = os.environ.get('SECRET_KEY')
    JWT_SECRET_KEY = os.environ.get('JWT_SECRET_KEY')
    JWT_ACCESS_TOKEN_EXPIRES = timedelta(hours=1)

    # Database Configuration
    DATABASE_URL = os.environ.get('DATABASE_URL')
    SQLALCHEMY_DATABASE_URI = DATABASE_URL
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        'pool_size': 10,
        'pool_timeout': 20,
        'pool_recycle': -1,
        'pool_pre_ping': True,
        'max_overflow': 20
    }

    # Redis Configuration
    REDIS_URL = os.environ.get('REDIS_URL', 'redis://localhost:6379/0')

    # CORS Configuration (storefront origins that host the browser monitor)
    CORS_ORIGINS = [origin for origin in os.environ.get('CORS_ORIGINS', '').split(',') if origin]

    # Rate Limiting
    RATELIMIT_STORAGE_URI = os.environ.get('RATELIMIT_STORAGE_URI', 'memory://')
    RATELIMIT_DEFAULT = "1000 per day;100 per hour"
    MONITOR_API_RATE_LIMIT = os.environ.get('MONITOR_API_RATE_LIMIT', '1000 per hour')

    # Email Configuration
    MAIL_SERVER = os.environ.get('MAIL_SERVER', 'smtp.gmail.com')
    MAIL_PORT = int(os.environ.get('MAIL_PORT', '587'))
    MAIL_USE_TLS = os.environ.get('MAIL_USE_TLS', 'true').lower() == 'true'
    MAIL_USERNAME = os.environ.get('MAIL_USERNAME')
    MAIL_PASSWORD = os.environ.get('MAIL_PASSWORD')
    MAIL_DEFAULT_SENDER = os.environ.get('MAIL_DEFAULT_SENDER')

    # Scanning Configuration
    SCAN_FETCH_TIMEOUT = float(os.environ.get('SCAN_FETCH_TIMEOUT', '10'))
    SCAN_USER_AGENT = os.environ.get(
        'SCAN_USER_AGENT',
        'Mozilla/5.0 (compatible; ScriptGuard/1.0; +https://scriptguard.local/bot)'
    )
    HASH_CACHE_MAX_SIZE = int(os.environ.get('HASH_CACHE_MAX_SIZE', '2000'))
    HASH_CACHE_TTL_SECONDS = int(os.environ.get('HASH_CACHE_TTL_SECONDS', '3600'))
    # Directory the service's own scripts are served from; root-relative paths resolve here
    STATIC_ROOT = os.environ.get('STATIC_ROOT')

    # Hosts whose scripts are expected to carry an integrity attribute
    TRUSTED_CDN_HOSTS = _csv_env(
        'TRUSTED_CDN_HOSTS',
        'cdnjs.cloudflare.com,cdn.jsdelivr.net,unpkg.com,ajax.googleapis.com,'
        'code.jquery.com,stackpath.bootstrapcdn.com,maxcdn.bootstrapcdn.com,'
        'cdn.datatables.net,use.fontawesome.com,cdn.plot.ly,d3js.org'
    )
    # Payment gateways rotate their bundles and never get SRI expectations
    PAYMENT_GATEWAY_HOSTS = _csv_env(
        'PAYMENT_GATEWAY_HOSTS',
        'js.stripe.com,www.paypalobjects.com,js.braintreegateway.com,'
        'pay.google.com,applepay.cdn-apple.com,sdk.amazonaws.com'
    )

    # Maintenance Configuration
    EXPIRED_SCRIPT_DAYS = int(os.environ.get('EXPIRED_SCRIPT_DAYS', '30'))
    MAINTENANCE_BATCH_SIZE = int(os.environ.get('MAINTENANCE_BATCH_SIZE', '10'))

    # Application Configuration
    MAX_CONTENT_LENGTH = 1 * 1024 * 1024  # 1MB, reports are small JSON bodies

    # Logging Configuration
    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')
    LOG_FORMAT = '%(asctime)s %(levelname)s %(name)s %(message)s'

    @classmethod
    def validate_config(cls) -> None:
        """Validate that all required configuration is present."""
        required_vars = [
            'SECRET_KEY',
            'JWT_SECRET_KEY',
            'DATABASE_URL'
        ]

        missing_vars = []
        for var in required_vars:
            if not getattr(cls, var):
                missing_vars.append(var)

        if missing_vars:
            raise RuntimeError(
                f"Missing required environment variables: {', '.join(missing_vars)}"
            )


class DevelopmentConfig(Config):
    """Development configuration."""
    DEBUG = True
    TESTING = False

    # More verbose logging in development
    LOG_LEVEL = 'DEBUG'

    # Relaxed rate limiting for development
    RATELIMIT_DEFAULT = "10000 per day;1000 per hour"


class TestingConfig(Config):
    """Testing configuration."""
    TESTING = True
    DEBUG = True

    SECRET_KEY = 'test-secret-key'
    JWT_SECRET_KEY = 'test-jwt-secret-key-with-enough-length'

    # Use in-memory database for testing
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    SQLALCHEMY_ENGINE_OPTIONS = {}

    # Disable rate limiting for tests
    RATELIMIT_ENABLED = False
    RATELIMIT_STORAGE_URI = 'memory://'

    # Never talk to a real SMTP server from tests
    MAIL_USERNAME = None
    MAIL_PASSWORD = None

    SCAN_FETCH_TIMEOUT = 2.0

    @classmethod
    def validate_config(cls) -> None:
        """Testing configuration is self contained."""
        return None


class ProductionConfig(Config):
    """Production configuration."""
    DEBUG = False
    TESTING = False

    # Shared limiter storage across workers
    RATELIMIT_STORAGE_URI = os.environ.get('RATELIMIT_STORAGE_URI', Config.REDIS_URL)
    RATELIMIT_DEFAULT = "1000 per day;100 per hour"

    # Production logging
    LOG_LEVEL = 'WARNING'

    @classmethod
    def validate_config(cls) -> None:
        """Additional validation for production."""
        super().validate_config()

        # Alert emails are the point of the service in production
        production_vars = [
            'MAIL_USERNAME',
            'MAIL_PASSWORD'
        ]

        missing_vars = []
        for var in production_vars:
            if not getattr(cls, var):
                missing_vars.append(var)

        if missing_vars:
            raise RuntimeError(
                f"Missing required production environment variables: {', '.join(missing_vars)}"
            )


# Configuration mapping
config_map = {
    'development': DevelopmentConfig,
    'testing': TestingConfig,
    'production': ProductionConfig,
    'default': DevelopmentConfig
}


def get_config(config_name: Optional[str] = None) -> Config:
    """Get configuration class based on environment."""
    if config_name is None:
        config_name = os.environ.get('FLASK_ENV', 'default')

    config_class = config_map.get(config_name, DevelopmentConfig)
    config_class.validate_config()

    return config_class
