"""Database models for the ScriptGuard service."""

from .store import Store, GuardSettings, SettingsStore
from .authorized_script import AuthorizedScript
from .monitoring_log import MonitoringLog
from .compliance_alert import ComplianceAlert

__all__ = [
    'Store', 'GuardSettings', 'SettingsStore',
    'AuthorizedScript', 'MonitoringLog', 'ComplianceAlert'
]
