# kwmon_cli/notifications.py
"""
Notification manager for sending keyword alerts by email.

Each finding produced by the scan engine arrives here as an AlertEvent and is
sent as a single multipart (plain text + HTML) message over SMTP.
"""

import html
import logging
import random
import smtplib
import socket
import time
from email.message import EmailMessage
from typing import Any, Dict, List, Optional

from colorama import Fore, Style

from .exceptions import NotificationError
from .models import AlertEvent

logger = logging.getLogger('kwmon-cli.notifications')

# Errors worth retrying; auth and recipient refusals are permanent
TRANSIENT_SMTP_ERRORS = (
    smtplib.SMTPServerDisconnected,
    smtplib.SMTPConnectError,
    socket.timeout,
    ConnectionError,
)


class NotificationManager:
    """Class for sending alert emails about keyword matches."""

    SERVICE_EMAIL = "Email"

    def __init__(self, config: Dict[str, Any], suppress_init_logging: bool = False) -> None:
        """Initialize from the ``alerting`` section of the configuration (as a dict)."""
        self.config = config or {}
        self.email_enabled = bool(self.config.get('enabled', True))
        self.from_address: str = self.config.get('from_address', '')
        recipients = self.config.get('to_address') or []
        self.to_addresses: List[str] = [recipients] if isinstance(recipients, str) else list(recipients)
        self.subject_prefix: str = self.config.get('subject_prefix', 'Keyword Alert')
        self.smtp: Dict[str, Any] = dict(self.config.get('smtp') or {})

        if self.email_enabled and not (self.from_address and self.to_addresses and self.smtp.get('host')):
            logger.warning("Email notifications enabled but missing from_address, to_address or smtp.host")
            self.email_enabled = False
        elif self.email_enabled and not suppress_init_logging:
            logger.info(f"🔔 Email notifications enabled for: {', '.join(self.to_addresses)}")

    # --- Formatting ---

    def _format_subject(self, event: AlertEvent) -> str:
        return f"{self.subject_prefix}: {event.repository_url} ({event.branch})"

    def _format_plain(self, event: AlertEvent) -> str:
        lines = [
            "Keywords found in recent commit",
            "",
            f"Repository: {event.repository_url}",
            f"Branch: {event.branch}",
            f"Commit: {event.commit_sha}",
            f"Author: {event.author_name}",
            f"Keywords found: {', '.join(event.all_keywords)}",
        ]
        if event.matched_in_message:
            lines.append(f"In message: {', '.join(event.matched_in_message)}")
        for entry in event.matched_in_files:
            lines.append(f"In {entry['filename']}: {', '.join(entry['matched_keywords'])}")
        lines += ["", "Message:", event.commit_message, "", f"View commit: {event.commit_url}"]
        return "\n".join(lines)

    def _format_html(self, event: AlertEvent) -> str:
        esc = html.escape
        parts = [
            "<h2>Keywords found in recent commit</h2>",
            f"<p><strong>Repository:</strong> {esc(event.repository_url)}</p>",
            f"<p><strong>Branch:</strong> {esc(event.branch)}</p>",
            f"<p><strong>Commit:</strong> {esc(event.commit_sha)}</p>",
            f"<p><strong>Author:</strong> {esc(event.author_name)}</p>",
            f"<p><strong>Keywords found:</strong> {esc(', '.join(event.all_keywords))}</p>",
        ]
        if event.matched_in_files:
            parts.append("<ul>")
            for entry in event.matched_in_files:
                parts.append(
                    f"<li><code>{esc(entry['filename'])}</code>: {esc(', '.join(entry['matched_keywords']))}</li>"
                )
            parts.append("</ul>")
        parts += [
            "<p><strong>Message:</strong></p>",
            f"<pre>{esc(event.commit_message)}</pre>",
            f'<p><a href="{esc(event.commit_url, quote=True)}">View commit on GitHub</a></p>',
        ]
        return "\n".join(parts)

    def build_message(self, subject: str, plain: str, html_body: Optional[str] = None) -> EmailMessage:
        msg = EmailMessage()
        msg['Subject'] = subject
        msg['From'] = self.from_address
        msg['To'] = ', '.join(self.to_addresses)
        msg.set_content(plain)
        if html_body:
            msg.add_alternative(html_body, subtype='html')
        return msg

    # --- Transport ---

    def _open_connection(self) -> smtplib.SMTP:
        host = self.smtp['host']
        port = int(self.smtp.get('port', 587))
        timeout = float(self.smtp.get('timeout', 30))
        if self.smtp.get('use_ssl'):
            conn: smtplib.SMTP = smtplib.SMTP_SSL(host, port, timeout=timeout)
        else:
            conn = smtplib.SMTP(host, port, timeout=timeout)
        try:
            if not self.smtp.get('use_ssl') and self.smtp.get('use_tls', True):
                conn.starttls()
            if self.smtp.get('username'):
                conn.login(self.smtp['username'], self.smtp.get('password') or '')
        except (smtplib.SMTPException, OSError):
            conn.close()
            raise
        return conn

    def _send_with_retries(
        self,
        msg: EmailMessage,
        max_retries: int = 2,
        initial_wait: float = 1.5,
        max_wait: float = 30.0,
    ) -> None:
        """Sends ``msg``, retrying transient connection failures. Raises NotificationError if all attempts fail."""
        wait_time = initial_wait
        last_exception: Optional[Exception] = None

        for attempt in range(max_retries + 1):
            try:
                conn = self._open_connection()
                try:
                    conn.send_message(msg)
                finally:
                    try:
                        conn.quit()
                    except smtplib.SMTPException:
                        pass
                return
            except TRANSIENT_SMTP_ERRORS as e:
                last_exception = e
                if attempt < max_retries:
                    sleep_time = wait_time + random.uniform(0.1, 0.5)
                    logger.warning(
                        f"⏳ SMTP connection problem ({type(e).__name__}). "
                        f"Retrying in {sleep_time:.1f}s (Attempt {attempt+1}/{max_retries+1})..."
                    )
                    time.sleep(sleep_time)
                    wait_time = min(wait_time * 2, max_wait)
                    continue
                break
            except smtplib.SMTPResponseException as e:
                last_exception = e
                logger.error(f"❌ SMTP error ({e.smtp_code}): {e.smtp_error!r}")
                raise NotificationError(
                    service=self.SERVICE_EMAIL,
                    message=f"SMTP server rejected message: {e.smtp_error!r}",
                    status_code=e.smtp_code,
                    original_error=e,
                )
            except (smtplib.SMTPException, OSError) as e:
                last_exception = e
                logger.error(f"❌ Error sending email: {e}")
                break

        error_message = f"Failed to send {self.SERVICE_EMAIL} message after {attempt+1} attempts."
        if last_exception:
            error_message += f" Last error: {type(last_exception).__name__}: {last_exception}"
        raise NotificationError(service=self.SERVICE_EMAIL, message=error_message, original_error=last_exception)

    # --- Public API ---

    def send_alert(self, event: AlertEvent) -> bool:
        """Sends one alert email. Raises NotificationError on failure; returns False when disabled."""
        if not self.email_enabled:
            logger.debug("Email disabled, skipping alert.")
            return False

        msg = self.build_message(self._format_subject(event), self._format_plain(event), self._format_html(event))
        self._send_with_retries(msg)
        logger.info(
            f"{Fore.GREEN}✅ Alert sent for {event.repository_url} ({event.branch}) "
            f"commit {event.commit_sha[:12]}{Style.RESET_ALL}"
        )
        return True

    def send_test_notification(self) -> bool:
        """Sends a fixed test email. Raises NotificationError on failure."""
        if not self.email_enabled:
            logger.warning("Email notifications are disabled; nothing to test.")
            return False

        from . import __version__ as kwmon_version
        msg = self.build_message(
            f"{self.subject_prefix}: test notification",
            f"This is a test notification from kwmon-cli {kwmon_version}.",
        )
        self._send_with_retries(msg)
        logger.info(f"✅ Test {self.SERVICE_EMAIL} notification sent.")
        return True
