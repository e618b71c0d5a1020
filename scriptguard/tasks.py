"""
Units of scheduled work: monitoring cycle, post-order check, maintenance and
retention cleanup. An external scheduler calls these (or the ``flask guard``
commands); none of them loops on its own.
"""
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

import click
import structlog
from flask import current_app
from flask.cli import AppGroup

from scriptguard.guard import ScriptGuard, get_guard
from scriptguard.models.compliance_alert import ComplianceAlert, ALERT_INTEGRITY_FAILURE
from scriptguard.models.monitoring_log import MonitoringLog
from scriptguard.models.store import SettingsStore
from scriptguard.services.alert_manager import INTEGRITY_HASH_MISMATCH
from scriptguard.services.authorization import split_sri
from scriptguard.utils.database import db, db_manager, PersistenceError

logger = structlog.get_logger()

POST_ORDER_PAGE = '/checkout'


def run_monitoring_cycle(guard: Optional[ScriptGuard] = None) -> Dict[str, Any]:
    """
    Scan every monitored page of every enabled store once.

    A failing page is logged and skipped so the rest of the cycle still runs.
    Persistence failures are counted the same way but also logged as errors.
    """
    guard = guard or get_guard()
    summary = {'stores': 0, 'pages': 0, 'failed_pages': 0, 'unauthorized_pages': 0}

    logger.info("Monitoring cycle started")

    for store_id in SettingsStore.store_ids():
        settings = SettingsStore.load(store_id)
        if settings is None or not settings.is_enabled:
            continue

        page_urls = settings.page_urls()
        if not page_urls:
            continue

        summary['stores'] += 1
        engine = guard.build_engine(settings)

        for page_url in page_urls:
            try:
                if settings.enable_sri_validation:
                    log = engine.run_scan_with_sri(page_url, 'scheduled')
                else:
                    log = engine.run_scan(page_url, 'scheduled')
            except PersistenceError as e:
                summary['failed_pages'] += 1
                logger.error("Monitoring record lost", store_id=store_id, page_url=page_url, error=str(e))
                continue
            except Exception as e:
                summary['failed_pages'] += 1
                logger.error("Error monitoring page", store_id=store_id, page_url=page_url,
                             error=str(e), exc_info=True)
                continue

            summary['pages'] += 1
            if log.has_unauthorized_scripts:
                summary['unauthorized_pages'] += 1
                logger.warning(
                    "Unauthorized scripts detected",
                    store_id=store_id,
                    page_url=page_url,
                    unauthorized_scripts=log.unauthorized_scripts_count
                )

    logger.info("Monitoring cycle completed", **summary)
    return summary


def run_post_order_check(store_id: int, guard: Optional[ScriptGuard] = None) -> Optional[MonitoringLog]:
    """Scan the checkout page right after an order was placed."""
    guard = guard or get_guard()
    settings = SettingsStore.load(store_id)
    if settings is None or not settings.is_enabled:
        return None

    page_url = f"{settings.store_url.rstrip('/')}{POST_ORDER_PAGE}"
    engine = guard.build_engine(settings)

    try:
        if settings.enable_sri_validation:
            return engine.run_scan_with_sri(page_url, 'post-order')
        return engine.run_scan(page_url, 'post-order')
    except PersistenceError:
        raise
    except Exception as e:
        logger.error("Post-order check failed", store_id=store_id, error=str(e), exc_info=True)
        return None


def _reverify_script(guard: ScriptGuard, script, settings) -> str:
    """Re-hash one authorized script: 'unchanged', 'updated', 'unavailable'."""
    outcome = guard.registry.generate_hash(script.script_url, script.hash_algorithm or 'sha384')
    if not outcome.ok:
        logger.warning("Expired script could not be fetched", script_id=script.id,
                       script_url=script.script_url, error=outcome.error)
        return 'unavailable'

    _, stored_digest = split_sri(script.script_hash or '')
    if stored_digest and stored_digest == outcome.digest:
        guard.registry.mark_verified(script)
        return 'unchanged'

    had_hash = bool(stored_digest)
    previous_hash = script.sri_value
    guard.registry.update_hash(script.id, outcome.sri)

    if had_hash:
        alert = guard.alert_manager.raise_alert(
            settings.store_id,
            ALERT_INTEGRITY_FAILURE,
            script.script_url,
            None,
            details={
                'subtype': INTEGRITY_HASH_MISMATCH,
                'source': 'maintenance',
                'previous_hash': previous_hash,
                'current_hash': outcome.sri
            }
        )
        # Changed hashes are mailed without throttling
        if settings.can_email:
            sent = guard.notifier.send_script_change_alert(settings.alert_email, script.script_url,
                                                           settings.store_name)
            if sent and alert is not None:
                guard.alert_manager.mark_email_sent([alert])

    logger.info("Updated hash for script", script_id=script.id, script_url=script.script_url)
    return 'updated'


def run_maintenance(guard: Optional[ScriptGuard] = None) -> Dict[str, Any]:
    """Re-verify authorized scripts that have not been checked recently."""
    guard = guard or get_guard()
    days = current_app.config.get('EXPIRED_SCRIPT_DAYS', 30)
    batch_size = current_app.config.get('MAINTENANCE_BATCH_SIZE', 10)
    summary = {'expired': 0, 'unchanged': 0, 'updated': 0, 'unavailable': 0, 'failed': 0}

    logger.info("Maintenance started", expired_script_days=days)

    for store_id in SettingsStore.store_ids():
        settings = SettingsStore.load(store_id)
        if settings is None or not settings.is_enabled:
            continue

        expired = guard.registry.find_expired(days, store_id)
        if not expired:
            continue

        summary['expired'] += len(expired)
        logger.warning("Found expired scripts", store_id=store_id, count=len(expired))

        if settings.can_email:
            guard.notifier.send_expired_scripts_alert(settings.alert_email, expired, settings.store_name)

        for script in expired[:batch_size]:
            try:
                summary[_reverify_script(guard, script, settings)] += 1
            except Exception as e:
                summary['failed'] += 1
                db.session.rollback()
                logger.error("Error processing expired script", script_id=script.id,
                             script_url=script.script_url, error=str(e), exc_info=True)

    logger.info("Maintenance completed", **summary)
    return summary


def run_cleanup() -> Dict[str, int]:
    """Apply each store's log and resolved-alert retention windows."""
    summary = {'logs_deleted': 0, 'alerts_deleted': 0}
    now = datetime.utcnow()

    for store_id in SettingsStore.store_ids():
        settings = SettingsStore.load(store_id)
        if settings is None:
            continue

        log_cutoff = now - timedelta(days=settings.log_retention_days)
        alert_cutoff = now - timedelta(days=settings.alert_retention_days)

        try:
            with db_manager.get_session() as session:
                # Alerts first; they may reference logs being removed
                alerts_deleted = session.query(ComplianceAlert).filter(
                    ComplianceAlert.store_id == store_id,
                    ComplianceAlert.is_resolved.is_(True),
                    ComplianceAlert.resolved_at < alert_cutoff
                ).delete(synchronize_session=False)

                stale_log_ids = session.query(MonitoringLog.id).filter(
                    MonitoringLog.store_id == store_id,
                    MonitoringLog.checked_at < log_cutoff
                )
                session.query(ComplianceAlert).filter(ComplianceAlert.monitoring_log_id.in_(stale_log_ids)) \
                    .update({ComplianceAlert.monitoring_log_id: None}, synchronize_session=False)

                logs_deleted = session.query(MonitoringLog).filter(
                    MonitoringLog.store_id == store_id,
                    MonitoringLog.checked_at < log_cutoff
                ).delete(synchronize_session=False)
        except Exception as e:
            logger.error("Cleanup failed", store_id=store_id, error=str(e))
            raise PersistenceError(f"Cleanup failed for store {store_id}: {e}", 'cleanup') from e

        summary['logs_deleted'] += logs_deleted
        summary['alerts_deleted'] += alerts_deleted

    logger.info("Cleanup completed", **summary)
    return summary


guard_cli = AppGroup('guard', help='ScriptGuard scheduled tasks.')


@guard_cli.command('monitor')
def monitor_command():
    """Run one monitoring cycle across all stores."""
    summary = run_monitoring_cycle()
    click.echo(
        f"Scanned {summary['pages']} page(s) in {summary['stores']} store(s); "
        f"{summary['unauthorized_pages']} with unauthorized scripts, {summary['failed_pages']} failed."
    )


@guard_cli.command('post-order')
@click.argument('store_id', type=int)
def post_order_command(store_id):
    """Scan a store's checkout page after an order."""
    log = run_post_order_check(store_id)
    if log is None:
        click.echo(f"Store {store_id} skipped.")
        return
    click.echo(f"Checked {log.page_url}: {log.total_scripts_found} script(s), "
               f"{log.unauthorized_scripts_count} unauthorized.")


@guard_cli.command('maintain')
def maintain_command():
    """Re-verify expired authorized scripts."""
    summary = run_maintenance()
    click.echo(
        f"{summary['expired']} expired script(s): {summary['unchanged']} unchanged, "
        f"{summary['updated']} updated, {summary['unavailable']} unavailable, {summary['failed']} failed."
    )


@guard_cli.command('cleanup')
def cleanup_command():
    """Delete monitoring logs and resolved alerts past retention."""
    summary = run_cleanup()
    click.echo(f"Deleted {summary['logs_deleted']} log(s) and {summary['alerts_deleted']} alert(s).")


def register_cli(app) -> None:
    app.cli.add_command(guard_cli)
