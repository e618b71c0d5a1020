"""
Wires the monitoring components together for one application instance.
"""
from typing import Optional

import requests
import structlog
from flask import Flask, current_app

from scriptguard.models.store import GuardSettings, SettingsStore
from scriptguard.services.alert_manager import AlertManager
from scriptguard.services.authorization import AuthorizationRegistry
from scriptguard.services.compliance_engine import ComplianceEngine
from scriptguard.services.hash_engine import HashEngine
from scriptguard.services.http_client import build_session
from scriptguard.services.integrity import IntegrityVerifier
from scriptguard.services.notifications import NotificationGateway
from scriptguard.services.page_scanner import PageScanner
from scriptguard.services.report_aggregator import ReportAggregator
from scriptguard.utils.cache import HashCache

logger = structlog.get_logger()

EXTENSION_KEY = 'scriptguard'


class ScriptGuard:
    """
    Process-lifetime owner of the shared pieces: HTTP session, hash cache,
    notifier. Per-store engines are built on demand from fresh settings.
    """

    def __init__(self, config, session: Optional[requests.Session] = None, notifier=None):
        self.config = config
        self.session = session if session is not None else build_session(config.get('SCAN_USER_AGENT'))
        timeout = config.get('SCAN_FETCH_TIMEOUT', 10.0)

        self.hash_cache = HashCache(
            max_size=config.get('HASH_CACHE_MAX_SIZE', 2000),
            ttl_seconds=config.get('HASH_CACHE_TTL_SECONDS', 3600)
        )
        self.hash_engine = HashEngine(self.hash_cache, self.session, timeout, config.get('STATIC_ROOT'))
        self.scanner = PageScanner(self.session, timeout)
        self.registry = AuthorizationRegistry(self.hash_engine)
        self.verifier = IntegrityVerifier(self.hash_engine)
        self.notifier = notifier if notifier is not None else NotificationGateway.from_config(config)
        self.alert_manager = AlertManager(self.notifier)
        self.aggregator = ReportAggregator()

    def engine_for(self, store_id: int) -> Optional[ComplianceEngine]:
        """Engine bound to the store's current settings; None for unknown stores."""
        settings = SettingsStore.load(store_id)
        if settings is None:
            return None
        return self.build_engine(settings)

    def build_engine(self, settings: GuardSettings) -> ComplianceEngine:
        return ComplianceEngine(
            settings,
            self.scanner,
            self.registry,
            self.verifier,
            self.alert_manager,
            self.aggregator,
            trusted_cdn_hosts=self.config.get('TRUSTED_CDN_HOSTS', ()),
            payment_gateway_hosts=self.config.get('PAYMENT_GATEWAY_HOSTS', ()),
            expired_script_days=self.config.get('EXPIRED_SCRIPT_DAYS', 30)
        )

    def run_scan(self, page_url: str, store_id: int, check_type: str = 'scheduled'):
        """Scan with or without SRI checks, as the store is configured."""
        engine = self.engine_for(store_id)
        if engine is None:
            return None
        if engine.settings.enable_sri_validation:
            return engine.run_scan_with_sri(page_url, check_type)
        return engine.run_scan(page_url, check_type)


def init_guard(app: Flask, session: Optional[requests.Session] = None, notifier=None) -> ScriptGuard:
    guard = ScriptGuard(app.config, session=session, notifier=notifier)
    app.extensions[EXTENSION_KEY] = guard
    logger.info("ScriptGuard initialized", trusted_cdn_hosts=len(guard.config.get('TRUSTED_CDN_HOSTS', ())))
    return guard


def get_guard() -> ScriptGuard:
    return current_app.extensions[EXTENSION_KEY]
