"""
Email delivery for compliance alerts.

The engine decides whether and what to send; this gateway only delivers.
Delivery failures are logged and reported as False, never raised.
"""
import json
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Dict, Iterable, Mapping, Optional

import structlog

logger = structlog.get_logger()


class NotificationGateway:
    """SMTP sender for the four alert emails."""

    def __init__(self, server: str = 'smtp.gmail.com', port: int = 587, use_tls: bool = True,
                 username: Optional[str] = None, password: Optional[str] = None,
                 sender: Optional[str] = None):
        self.server = server
        self.port = port
        self.use_tls = use_tls
        self.username = username
        self.password = password
        self.sender = sender or username

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> 'NotificationGateway':
        return cls(
            server=config.get('MAIL_SERVER', 'smtp.gmail.com'),
            port=config.get('MAIL_PORT', 587),
            use_tls=config.get('MAIL_USE_TLS', True),
            username=config.get('MAIL_USERNAME'),
            password=config.get('MAIL_PASSWORD'),
            sender=config.get('MAIL_DEFAULT_SENDER')
        )

    def send_unauthorized_script_alert(self, email: str, log, store_name: str) -> bool:
        scripts = list(log.unauthorized_scripts or [])
        subject = f"[{store_name}] Unauthorized scripts detected on {log.page_url}"
        body = (
            f"ScriptGuard detected {len(scripts)} unauthorized script(s) on a monitored page.\n\n"
            f"Store: {store_name}\n"
            f"Page: {log.page_url}\n"
            f"Checked at: {log.checked_at.isoformat() if log.checked_at else 'unknown'} UTC\n"
            f"Check type: {log.check_type}\n"
            f"Scripts found: {log.total_scripts_found} "
            f"(authorized {log.authorized_scripts_count}, unauthorized {log.unauthorized_scripts_count})\n\n"
            "Unauthorized scripts:\n"
            + "\n".join(f"  - {script}" for script in scripts)
            + "\n\nReview these scripts and either authorize them or remove them from the page."
        )
        return self._send(email, subject, body, alert_kind='unauthorized-script')

    def send_csp_violation_alert(self, email: str, details: Dict[str, Any], store_name: str) -> bool:
        blocked = details.get('blockedURI') or details.get('blocked_uri') or 'unknown'
        subject = f"[{store_name}] Content-Security-Policy violation: {blocked}"
        body = (
            "A browser reported a Content-Security-Policy violation on a monitored page.\n\n"
            f"Store: {store_name}\n\n"
            "Violation details:\n"
            f"{json.dumps(details, indent=2, sort_keys=True, default=str)}\n"
        )
        return self._send(email, subject, body, alert_kind='csp-violation')

    def send_script_change_alert(self, email: str, script_url: str, store_name: str) -> bool:
        subject = f"[{store_name}] Authorized script content changed"
        body = (
            "The content of an authorized script no longer matches its recorded hash.\n\n"
            f"Store: {store_name}\n"
            f"Script: {script_url}\n\n"
            "The new hash has been recorded. Confirm the change is expected; "
            "if it is not, deactivate the script immediately."
        )
        return self._send(email, subject, body, alert_kind='script-change')

    def send_expired_scripts_alert(self, email: str, scripts: Iterable, store_name: str) -> bool:
        scripts = list(scripts)
        subject = f"[{store_name}] {len(scripts)} authorized script(s) need re-verification"
        lines = []
        for script in scripts:
            verified = script.last_verified_at.isoformat() if script.last_verified_at else 'never'
            lines.append(f"  - {script.script_url} (last verified: {verified})")
        body = (
            "The following authorized scripts have not been verified recently:\n\n"
            + "\n".join(lines)
            + "\n\nRe-verify them or deactivate the ones no longer in use."
        )
        return self._send(email, subject, body, alert_kind='expired-scripts')

    def _send(self, to_address: str, subject: str, body: str, alert_kind: str) -> bool:
        if not to_address:
            logger.warning("Alert email skipped, no recipient", alert_kind=alert_kind)
            return False

        if not self.username or not self.password:
            logger.warning("SMTP credentials not configured, email not sent", alert_kind=alert_kind)
            return False

        msg = MIMEMultipart()
        msg['From'] = self.sender
        msg['To'] = to_address
        msg['Subject'] = subject
        msg.attach(MIMEText(body, 'plain'))

        try:
            server = smtplib.SMTP(self.server, self.port, timeout=30)
            try:
                if self.use_tls:
                    server.starttls()
                server.login(self.username, self.password)
                server.sendmail(self.sender, [to_address], msg.as_string())
            finally:
                server.quit()
        except (smtplib.SMTPException, OSError) as e:
            logger.error("Failed to send alert email", alert_kind=alert_kind, recipient=to_address, error=str(e))
            return False

        logger.info("Alert email sent", alert_kind=alert_kind, recipient=to_address)
        return True
