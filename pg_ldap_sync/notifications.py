"""
Email notification utilities for PG LDAP Sync.

This module sends email reports for run failures, per-database errors
(including accounts that could not be dropped) and optional success summaries.
"""

import smtplib
import logging
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from typing import Dict, List, Any, Optional
from datetime import datetime

logger = logging.getLogger(__name__)

# Upper bound on listed errors per message
MAX_LISTED_ERRORS = 10


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
    if not config.get('enable_email', False):
        logger.debug("Email notifications disabled")
        return False

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

    if isinstance(email_to, str):
        email_to = [email_to]

    logger.debug(f"Sending email to {len(email_to)} recipients via {smtp_server}:{smtp_port}")

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

    except (smtplib.SMTPException, OSError) as e:
        logger.error(f"Failed to send email notification: {e}")
        return False


def _format_runtime(runtime_seconds: float) -> str:
    if runtime_seconds > 60:
        minutes = int(runtime_seconds // 60)
        seconds = runtime_seconds % 60
        return f"{minutes}m {seconds:.1f}s"
    return f"{runtime_seconds:.2f} seconds"


def send_failure_notification(
    title: str,
    error_message: str,
    config: Dict[str, Any],
    additional_info: Optional[Dict[str, Any]] = None
) -> bool:
    """
    Send notification for a failed run.

    Args:
        title: Failure title/type
        error_message: Error description
        config: Notification configuration
        additional_info: Optional additional context

    Returns:
        True if notification sent successfully
    """
    if not config.get('email_on_failure', True):
        logger.debug("Failure email notifications disabled")
        return False

    timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S')

    subject = f"PG LDAP Sync Alert: {title}"

    body_lines = [
        "PG LDAP Sync Failure Report",
        f"Timestamp: {timestamp}",
        "",
        f"Failure Type: {title}",
        f"Error Message: {error_message}",
        ""
    ]

    if additional_info:
        body_lines.append("Additional Information:")
        for key, value in additional_info.items():
            body_lines.append(f"  {key}: {value}")
        body_lines.append("")

    body_lines.extend([
        "The next scheduled run will retry automatically.",
        "Please check the application logs for more detailed information.",
        "",
        "This is an automated message from PG LDAP Sync."
    ])

    return send_email(subject, '\n'.join(body_lines), config)


def send_database_error_notification(
    database: str,
    errors: List[str],
    drop_failures: List[str],
    config: Dict[str, Any]
) -> bool:
    """
    Send the error report for one database.

    Args:
        database: Alias of the database
        errors: Phase and mapping errors encountered this pass
        drop_failures: Accounts that could not be dropped, with reasons
        config: Notification configuration

    Returns:
        True if notification sent successfully
    """
    if not config.get('email_on_failure', True):
        logger.debug("Failure email notifications disabled")
        return False

    timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S')

    subject = f"PG LDAP Sync Alert: {database} Sync Errors"

    body_lines = [
        "PG LDAP Sync Database Error Report",
        f"Timestamp: {timestamp}",
        "",
        f"Database: {database}",
        f"Error Count: {len(errors)}",
        ""
    ]

    if errors:
        body_lines.append("Error Details:")
        for i, error in enumerate(errors[:MAX_LISTED_ERRORS], 1):
            body_lines.append(f"  {i}. {error}")
        if len(errors) > MAX_LISTED_ERRORS:
            body_lines.append(f"  ... and {len(errors) - MAX_LISTED_ERRORS} more errors")
        body_lines.append("")

    if drop_failures:
        # Reported on every pass until the account can be dropped
        body_lines.append("Accounts that could not be dropped:")
        for failure in drop_failures[:MAX_LISTED_ERRORS]:
            body_lines.append(f"  - {failure}")
        if len(drop_failures) > MAX_LISTED_ERRORS:
            body_lines.append(f"  ... and {len(drop_failures) - MAX_LISTED_ERRORS} more accounts")
        body_lines.extend([
            "These accounts are no longer in any mapped LDAP group. They usually",
            "still own database objects; reassign or drop those objects manually.",
            ""
        ])

    body_lines.extend([
        "Check the application logs for complete error details.",
        "",
        "This is an automated message from PG LDAP Sync."
    ])

    return send_email(subject, '\n'.join(body_lines), config)


def send_success_summary(
    sync_stats: Dict[str, Any],
    config: Dict[str, Any]
) -> bool:
    """
    Send summary notification for a completed run.

    Args:
        sync_stats: Dictionary containing sync statistics
        config: Notification configuration

    Returns:
        True if notification sent successfully
    """
    if not config.get('email_on_success', False):
        logger.debug("Success email notifications disabled")
        return False

    timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S')
    runtime_str = _format_runtime(sync_stats.get('runtime_seconds', 0))

    subject = "PG LDAP Sync: Run Completed"

    body_lines = [
        "PG LDAP Sync Summary Report",
        f"Timestamp: {timestamp}",
        "",
        "Overall Statistics:",
        f"  Total runtime: {runtime_str}",
        f"  Databases processed: {sync_stats.get('databases_processed', 0)}",
        f"  Databases failed: {sync_stats.get('databases_failed', 0)}",
        f"  Accounts created: {sync_stats.get('total_accounts_created', 0)}",
        f"  Role grants: {sync_stats.get('total_grants', 0)}",
        f"  Role revokes: {sync_stats.get('total_revokes', 0)}",
        f"  Accounts dropped: {sync_stats.get('total_accounts_dropped', 0)}",
        f"  Drop failures: {sync_stats.get('total_drop_failures', 0)}",
        f"  Total errors: {sync_stats.get('total_errors', 0)}",
        ""
    ]

    database_details = sync_stats.get('database_details', {})
    if database_details:
        body_lines.append("Database Details:")
        for alias, db_stats in database_details.items():
            body_lines.extend([
                f"  {alias}:",
                f"    Runtime: {db_stats.get('runtime_seconds', 0):.2f}s",
                f"    Mappings resolved: {db_stats.get('mappings_resolved', 0)}",
                f"    Mappings failed: {db_stats.get('mappings_failed', 0)}",
                f"    Accounts created: {db_stats.get('accounts_created', 0)}",
                f"    Grants: {db_stats.get('grants', 0)}",
                f"    Revokes: {db_stats.get('revokes', 0)}",
                f"    Accounts dropped: {db_stats.get('accounts_dropped', 0)}",
                f"    Errors: {len(db_stats.get('errors', []))}",
                ""
            ])

    body_lines.append("This is an automated message from PG LDAP Sync.")

    return send_email(subject, '\n'.join(body_lines), config)


def send_ldap_connection_failure(
    error_message: str,
    config: Dict[str, Any],
    attempts: int = 1
) -> bool:
    """
    Send notification for LDAP connection failures.

    Args:
        error_message: LDAP error description
        config: Notification configuration
        attempts: Number of bind attempts made

    Returns:
        True if notification sent successfully
    """
    additional_info = {
        'Component': 'LDAP Connection',
        'Bind Attempts': attempts,
        'Impact': 'Sync run aborted - no databases processed'
    }

    return send_failure_notification(
        "LDAP Connection Failed",
        error_message,
        config,
        additional_info
    )


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

    test_subject = "PG LDAP Sync: Configuration Test"
    test_body = """This is a test email from PG LDAP Sync.

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

    result = send_email(test_subject, test_body, config)
    if result:
        logger.info("Test notification sent successfully")
    else:
        logger.error("Test notification failed")
    return result
