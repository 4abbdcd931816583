"""
Email notification utilities for Roster Tag Sync.

Sends e-mail for failed sync jobs (including the warning that the remote
list may need a manual fix), LDAP connection failures and, optionally, a
summary after a successful run.
"""

import smtplib
import logging
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from typing import Dict, List, Any, Optional
from datetime import datetime

logger = logging.getLogger(__name__)

SUBJECT_PREFIX = "Roster Tag Sync"
FOOTER = "This is an automated message from Roster Tag Sync."
MAX_LISTED_EMAILS = 20


def send_email(subject: str, body: str, config: Dict[str, Any]) -> bool:
    """
    Send an email notification using SMTP.

    Args:
        subject: Email subject line
        body: Plain text body
        config: The `notifications` configuration section

    Returns:
        True if the email was sent, False if disabled or sending failed
    """
    if not config.get('enable_email', False):
        logger.debug("Email notifications disabled")
        return False

    smtp_server = config.get('smtp_server')
    smtp_port = config.get('smtp_port', 587)
    smtp_username = config.get('smtp_username')
    smtp_password = config.get('smtp_password')
    email_from = config.get('email_from', smtp_username)
    email_to = config.get('email_to', [])

    if not smtp_server:
        logger.error("SMTP server not configured")
        return False

    if isinstance(email_to, str):
        email_to = [email_to]
    if not email_to:
        logger.error("No email recipients configured")
        return False

    msg = MIMEMultipart()
    msg['From'] = email_from
    msg['To'] = ', '.join(email_to)
    msg['Subject'] = subject
    msg.attach(MIMEText(body, 'plain'))

    try:
        if smtp_port == 465:
            server = smtplib.SMTP_SSL(smtp_server, smtp_port)
        else:
            server = smtplib.SMTP(smtp_server, smtp_port)
            if config.get('smtp_tls', True):
                server.starttls()

        try:
            if smtp_username and smtp_password:
                server.login(smtp_username, smtp_password)
            server.sendmail(email_from, email_to, msg.as_string())
        finally:
            server.quit()

    except (smtplib.SMTPException, OSError) as e:
        logger.error(f"Failed to send email notification: {e}")
        return False

    logger.info(f"Email notification sent: {subject}")
    return True


def _timestamp() -> str:
    return datetime.now().strftime('%Y-%m-%d %H:%M:%S')


def _email_lines(label: str, emails: List[str]) -> List[str]:
    if not emails:
        return []
    lines = [f"{label} ({len(emails)}):"]
    lines.extend(f"  - {email}" for email in emails[:MAX_LISTED_EMAILS])
    if len(emails) > MAX_LISTED_EMAILS:
        lines.append(f"  ... and {len(emails) - MAX_LISTED_EMAILS} more")
    return lines


def send_failure_notification(
    title: str,
    error_message: str,
    config: Dict[str, Any],
    additional_info: Optional[Dict[str, Any]] = None
) -> bool:
    """
    Send a failure notification.

    Args:
        title: Failure title/type
        error_message: Error description
        config: Notification configuration
        additional_info: Optional key/value context

    Returns:
        True if notification sent successfully
    """
    if not config.get('email_on_failure', True):
        logger.debug("Failure email notifications disabled")
        return False

    body_lines = [
        f"{SUBJECT_PREFIX} Failure Report",
        f"Timestamp: {_timestamp()}",
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

    body_lines.extend([
        "Please check the application logs for more detailed information.",
        "",
        FOOTER,
    ])

    return send_email(f"{SUBJECT_PREFIX} Alert: {title}", '\n'.join(body_lines), config)


def send_sync_job_failure(
    job_name: str,
    list_name: str,
    tag_name: str,
    error_message: str,
    config: Dict[str, Any],
    remote_state_unknown: bool = True
) -> bool:
    """
    Send a notification for a failed sync job.

    Args:
        job_name: Configured name of the sync job
        list_name: Remote list the job targets
        tag_name: Tag the job reconciles
        error_message: Error description, including validation details
        config: Notification configuration
        remote_state_unknown: True when the job failed after changing the list
    """
    impact = ("Changes were sent before the failure. The list is in an unknown state "
              "and may need a manual correction." if remote_state_unknown
              else "No changes were made to the list.")

    return send_failure_notification(
        f"Sync Failed: {job_name}",
        error_message,
        config,
        {'List': list_name, 'Tag': tag_name, 'Impact': impact}
    )


def send_ldap_connection_failure(
    error_message: str,
    config: Dict[str, Any],
    retry_count: int = 0
) -> bool:
    """Send a notification for LDAP connection failures."""
    return send_failure_notification(
        "LDAP Connection Failed",
        error_message,
        config,
        {
            'Component': 'LDAP roster source',
            'Retry Attempts': retry_count,
            'Impact': 'Sync aborted before any list was changed',
        }
    )


def send_success_summary(sync_stats: Dict[str, Any], config: Dict[str, Any]) -> bool:
    """
    Send a summary after a successful run.

    Lists rejected and already-unsubscribed addresses per job so the roster
    owner can correct their records.
    """
    if not config.get('email_on_success', False):
        logger.debug("Success email notifications disabled")
        return False

    body_lines = [
        f"{SUBJECT_PREFIX} Summary Report",
        f"Timestamp: {_timestamp()}",
        "",
        "Overall Statistics:",
        f"  Total runtime: {format_runtime(sync_stats.get('runtime_seconds', 0))}",
        f"  Jobs processed: {sync_stats.get('jobs_processed', 0)}",
        f"  Jobs failed: {sync_stats.get('jobs_failed', 0)}",
        "",
    ]

    for job_name, job in sync_stats.get('job_details', {}).items():
        body_lines.extend([
            f"{job_name} ({job.get('list_name')} / {job.get('tag')}):",
            f"  Status: {job.get('status')}",
            f"  Tagged: {job.get('tagged_before', 0)} -> {job.get('tagged_after', 0)}",
            f"  Tags added: {job.get('tags_added', 0)}",
            f"  Tags removed: {job.get('tags_removed', 0)}",
            f"  Members updated: {job.get('members_updated', 0)}",
            f"  Members created: {job.get('members_created', 0)}",
        ])
        body_lines.extend(_email_lines("  Rejected as invalid", job.get('rejected_as_invalid', [])))
        body_lines.extend(_email_lines("  Rejected as permanently deleted",
                                       job.get('rejected_as_permanently_deleted', [])))
        body_lines.extend(_email_lines("  Already unsubscribed", job.get('already_unsubscribed', [])))
        body_lines.append("")

    body_lines.append(FOOTER)

    return send_email(f"{SUBJECT_PREFIX}: Successful Completion", '\n'.join(body_lines), config)


def format_runtime(runtime_seconds: float) -> str:
    if runtime_seconds > 60:
        minutes = int(runtime_seconds // 60)
        return f"{minutes}m {runtime_seconds % 60:.1f}s"
    return f"{runtime_seconds:.2f} seconds"


def test_notification_config(config: Dict[str, Any]) -> bool:
    """
    Send a test email with the given notification configuration.

    Returns:
        True if the test email was sent
    """
    recipients = config.get('email_to') or []
    if isinstance(recipients, str):
        recipients = [recipients]

    body = "\n".join([
        "This is a test email from Roster Tag Sync.",
        "",
        "If you receive this message, your email notification configuration is working correctly.",
        "",
        f"- SMTP Server: {config.get('smtp_server', 'not configured')}",
        f"- SMTP Port: {config.get('smtp_port', 'not configured')}",
        f"- From Address: {config.get('email_from', 'not configured')}",
        f"- Recipients: {', '.join(recipients)}",
    ])

    result = send_email(f"{SUBJECT_PREFIX}: Configuration Test", body, config)
    if result:
        logger.info("Test notification sent successfully")
    else:
        logger.error("Test notification failed")
    return result


# Not a unit test, despite the name
test_notification_config.__test__ = False
