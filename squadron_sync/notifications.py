"""
Run summaries and email notifications for Squadron Sync.

This module accumulates per-run outcome counts into a NotificationSummary
and delivers it, or a fatal-failure alert, by SMTP to a fixed list of
recipients. Delivery is best effort: failures are logged and never retried.
"""

import smtplib
import logging
from collections import Counter
from dataclasses import dataclass, field
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from typing import Dict, List, Any, Optional
from datetime import datetime

from squadron_sync.lifecycle import Action
from squadron_sync.retry import FailureCode

logger = logging.getLogger(__name__)

# Keep alert emails readable
MAX_LISTED_FAILURES = 25


@dataclass(frozen=True)
class FailureRecord:
    entity: str
    operation: str
    code: FailureCode
    error: str = ''


@dataclass
class NotificationSummary:
    """Outcome counts for one run."""

    reactivated: int = 0
    suspended: int = 0
    archived: int = 0
    deleted: int = 0
    members_processed: int = 0
    groups_created: int = 0
    groups_updated: int = 0
    group_members_added: int = 0
    group_members_removed: int = 0
    organizations_processed: int = 0
    failures: List[FailureRecord] = field(default_factory=list)
    lifecycle_complete: bool = True
    groups_complete: bool = True
    dry_run: bool = False
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def actions_taken(self) -> int:
        return (self.reactivated + self.suspended + self.archived + self.deleted
                + self.groups_created + self.groups_updated
                + self.group_members_added + self.group_members_removed)

    @property
    def error_count(self) -> int:
        return len(self.failures)

    def failure_codes(self) -> Dict[str, int]:
        return dict(Counter(f.code.name for f in self.failures))

    def merge(self, other: 'NotificationSummary') -> 'NotificationSummary':
        """Fold another phase's counts into this summary."""
        for name in ('reactivated', 'suspended', 'archived', 'deleted', 'members_processed',
                     'groups_created', 'groups_updated', 'group_members_added',
                     'group_members_removed', 'organizations_processed'):
            setattr(self, name, getattr(self, name) + getattr(other, name))
        self.failures.extend(other.failures)
        self.lifecycle_complete = self.lifecycle_complete and other.lifecycle_complete
        self.groups_complete = self.groups_complete and other.groups_complete
        self.dry_run = self.dry_run or other.dry_run
        return self


class NotificationReporter:
    """Accumulates outcomes from the lifecycle and group phases."""

    _ACTION_FIELDS = {
        Action.REACTIVATE: 'reactivated',
        Action.SUSPEND: 'suspended',
        Action.ARCHIVE: 'archived',
        Action.DELETE: 'deleted',
    }

    def __init__(self, dry_run: bool = False):
        self.summary = NotificationSummary(dry_run=dry_run)

    def record_action(self, action: Action) -> None:
        field_name = self._ACTION_FIELDS.get(action)
        if field_name:
            setattr(self.summary, field_name, getattr(self.summary, field_name) + 1)

    def record_member_processed(self) -> None:
        self.summary.members_processed += 1

    def record_organization_processed(self) -> None:
        self.summary.organizations_processed += 1

    def record_group_created(self) -> None:
        self.summary.groups_created += 1

    def record_group_updated(self) -> None:
        self.summary.groups_updated += 1

    def record_membership(self, added: int = 0, removed: int = 0) -> None:
        self.summary.group_members_added += added
        self.summary.group_members_removed += removed

    def record_failure(self, entity: str, operation: str, code: FailureCode, error: str = '') -> None:
        self.summary.failures.append(FailureRecord(entity, operation, code, error))

    def merge(self, other: NotificationSummary) -> None:
        self.summary.merge(other)


def send_email(subject: str, body: str, config: Dict[str, Any]) -> bool:
    """
    Send email notification using SMTP.

    Args:
        subject: Email subject line
        body: Email body content
        config: Notification configuration dictionary

    Returns:
        True if email sent successfully, False otherwise
    """
    if not config.get('enable_email', True):
        logger.debug("Email notifications disabled")
        return False

    try:
        smtp_server = config.get('smtp_server')
        smtp_port = config.get('smtp_port', 587)
        smtp_username = config.get('smtp_username')
        smtp_password = config.get('smtp_password')
        smtp_tls = config.get('smtp_tls', True)

        email_from = config.get('email_from', smtp_username)
        email_to = config.get('email_to', [])

        if not smtp_server:
            logger.error("SMTP server not configured")
            return False

        if not email_to:
            logger.error("No email recipients configured")
            return False

        email_to = [email_to] if isinstance(email_to, str) else list(email_to)

        logger.debug(f"Sending email to {len(email_to)} recipients via {smtp_server}:{smtp_port}")

        msg = MIMEMultipart()
        msg['From'] = email_from
        msg['To'] = ', '.join(email_to)
        msg['Subject'] = subject
        msg.attach(MIMEText(body, 'plain'))

        if smtp_port == 465:
            server = smtplib.SMTP_SSL(smtp_server, smtp_port, timeout=config.get('timeout', 30))
        else:
            server = smtplib.SMTP(smtp_server, smtp_port, timeout=config.get('timeout', 30))
            if smtp_tls:
                server.starttls()

        try:
            if smtp_username and smtp_password:
                server.login(smtp_username, smtp_password)
            server.sendmail(email_from, email_to, msg.as_string())
        finally:
            server.quit()

        logger.info(f"Email notification sent successfully: {subject}")
        return True

    except Exception as e:
        logger.error(f"Failed to send email notification: {e}")
        return False


def format_runtime(runtime_seconds: float) -> str:
    if runtime_seconds > 60:
        minutes = int(runtime_seconds // 60)
        seconds = runtime_seconds % 60
        return f"{minutes}m {seconds:.1f}s"
    return f"{runtime_seconds:.2f} seconds"


def format_run_summary(summary: NotificationSummary) -> str:
    """Render a summary as the plain-text report body."""
    timestamp = (summary.finished_at or datetime.now()).strftime('%Y-%m-%d %H:%M:%S')
    runtime = 0.0
    if summary.started_at and summary.finished_at:
        runtime = (summary.finished_at - summary.started_at).total_seconds()

    body_lines = [
        "Squadron Sync Run Report",
        f"Timestamp: {timestamp}",
        f"Runtime: {format_runtime(runtime)}",
    ]
    if summary.dry_run:
        body_lines.append("Mode: DRY RUN (no directory changes were made)")
    body_lines.extend([
        "",
        "Account Lifecycle:",
        f"  Members processed: {summary.members_processed}",
        f"  Reactivated: {summary.reactivated}",
        f"  Suspended: {summary.suspended}",
        f"  Archived: {summary.archived}",
        f"  Deleted: {summary.deleted}",
        f"  Status: {'complete' if summary.lifecycle_complete else 'stopped early, will resume next run'}",
        "",
        "Squadron Groups:",
        f"  Organizations processed: {summary.organizations_processed}",
        f"  Groups created: {summary.groups_created}",
        f"  Groups updated: {summary.groups_updated}",
        f"  Members added: {summary.group_members_added}",
        f"  Members removed: {summary.group_members_removed}",
        f"  Status: {'complete' if summary.groups_complete else 'stopped early, will resume next run'}",
        "",
        f"Errors: {summary.error_count}",
    ])

    if summary.failures:
        for code, count in sorted(summary.failure_codes().items()):
            body_lines.append(f"  {code}: {count}")
        body_lines.append("")
        body_lines.append("Error Details:")
        for i, failure in enumerate(summary.failures[:MAX_LISTED_FAILURES], 1):
            body_lines.append(f"  {i}. {failure.operation} {failure.entity}: "
                              f"{failure.code.name} {failure.error}".rstrip())
        if len(summary.failures) > MAX_LISTED_FAILURES:
            body_lines.append(f"  ... and {len(summary.failures) - MAX_LISTED_FAILURES} more errors")

    body_lines.extend([
        "",
        "This is an automated message from Squadron Sync."
    ])
    return '\n'.join(body_lines)


def send_run_summary(summary: NotificationSummary, config: Dict[str, Any]) -> bool:
    """
    Send the end-of-run summary.

    Runs with errors are reported when email_on_failure is set, clean runs
    when email_on_success is set.

    Returns:
        True if notification sent successfully
    """
    if summary.failures:
        if not config.get('email_on_failure', True):
            logger.debug("Failure email notifications disabled")
            return False
        subject = f"Squadron Sync: Completed with {summary.error_count} errors"
    else:
        if not config.get('email_on_success', False):
            logger.debug("Success email notifications disabled")
            return False
        subject = "Squadron Sync: Successful Completion"

    return send_email(subject, format_run_summary(summary), config)


def send_failure_notification(
    title: str,
    error_message: str,
    config: Dict[str, Any],
    additional_info: Optional[Dict[str, Any]] = None,
    changes_possible: bool = False
) -> bool:
    """
    Send notification for a run that aborted.

    Args:
        title: Failure title/type
        error_message: Error description
        config: Notification configuration
        additional_info: Optional additional context
        changes_possible: Whether the run had started changing the directory

    Returns:
        True if notification sent successfully
    """
    if not config.get('email_on_failure', True):
        logger.debug("Failure email notifications disabled")
        return False

    timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S')
    body_lines = [
        "Squadron Sync Failure Report",
        f"Timestamp: {timestamp}",
        "",
        f"Failure Type: {title}",
        f"Error Message: {error_message}",
        "",
    ]

    if additional_info:
        body_lines.append("Additional Information:")
        for key, value in additional_info.items():
            body_lines.append(f"  {key}: {value}")
        body_lines.append("")

    if changes_possible:
        body_lines.append("The run failed after reconciliation started; changes made before the "
                          "failure are kept and the checkpoint records completed phases.")
    else:
        body_lines.append("No directory changes were made by this run.")
    body_lines.extend([
        "Please check the application logs for more detailed information.",
        "",
        "This is an automated message from Squadron Sync."
    ])

    return send_email(f"Squadron Sync Alert: {title}", '\n'.join(body_lines), config)


def test_notification_config(config: Dict[str, Any]) -> bool:
    """
    Test email notification configuration by sending a test email.

    Args:
        config: Notification configuration to test

    Returns:
        True if test email sent successfully
    """
    recipients = config.get('email_to', [])
    if isinstance(recipients, str):
        recipients = [recipients]
    test_body = """This is a test email from Squadron Sync.

If you receive this message, your email notification configuration is working correctly.

Test details:
- SMTP Server: {}
- SMTP Port: {}
- From Address: {}
- Recipients: {}

This is an automated test message.""".format(
        config.get('smtp_server', 'not configured'),
        config.get('smtp_port', 'not configured'),
        config.get('email_from', 'not configured'),
        ', '.join(recipients)
    )

    result = send_email("Squadron Sync: Configuration Test", test_body, config)
    if result:
        logger.info("Test notification sent successfully")
    else:
        logger.error("Test notification failed")
    return result


# Keep pytest from collecting the helper above as a test
test_notification_config.__test__ = False
