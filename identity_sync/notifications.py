"""
Email notification utilities for Identity Sync.

Operators are told by email when a run aborts and, optionally, when a run
finishes with the per-phase tally.
"""

import smtplib
import logging
from email.mime.text import MIMEText
from typing import Dict, List, Any, Optional
from datetime import datetime

logger = logging.getLogger(__name__)

MAX_LISTED_FAILURES = 20


def _format_runtime(runtime_seconds: float) -> str:
    if runtime_seconds > 60:
        minutes = int(runtime_seconds // 60)
        return f"{minutes}m {runtime_seconds % 60:.1f}s"
    return f"{runtime_seconds:.2f} seconds"


def send_email(subject: str, body: str, config: Dict[str, Any]) -> bool:
    """
    Send email notification using SMTP.

    Args:
        subject: Email subject line
        body: Email body content
        config: notifications configuration block

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

    email_from = config.get('email_from', smtp_username)
    email_to = config.get('email_to', [])
    if isinstance(email_to, str):
        email_to = [email_to]

    if not smtp_server:
        logger.error("SMTP server not configured")
        return False
    if not email_to:
        logger.error("No email recipients configured")
        return False

    message = MIMEText(body, 'plain')
    message['From'] = email_from
    message['To'] = ', '.join(email_to)
    message['Subject'] = subject

    try:
        if smtp_port == 465:
            server = smtplib.SMTP_SSL(smtp_server, smtp_port)
        else:
            server = smtplib.SMTP(smtp_server, smtp_port)
            if config.get('smtp_tls', True):
                server.starttls()

        with server:
            if smtp_username and smtp_password:
                server.login(smtp_username, smtp_password)
            server.sendmail(email_from, email_to, message.as_string())

    except (smtplib.SMTPException, OSError) as e:
        logger.error(f"Failed to send email notification: {e}")
        return False

    logger.info(f"Email notification sent to {len(email_to)} recipients: {subject}")
    return True


def send_failure_notification(
    title: str,
    error_message: str,
    config: Dict[str, Any],
    additional_info: Optional[Dict[str, Any]] = None
) -> bool:
    """
    Send notification for an aborted run.

    Args:
        title: Failure title/type
        error_message: Error description
        config: notifications configuration block
        additional_info: Optional additional context

    Returns:
        True if notification sent successfully
    """
    if not config.get('email_on_failure', True):
        logger.debug("Failure email notifications disabled")
        return False

    body_lines = [
        "Identity Sync Failure Report",
        f"Timestamp: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}",
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

    body_lines.append("Check the application logs for more detailed information.")

    return send_email(f"Identity Sync Alert: {title}", '\n'.join(body_lines), config)


def send_run_summary(mode: str, results: List[Any], runtime_seconds: float,
                     config: Dict[str, Any]) -> bool:
    """
    Send the per-phase tally of a completed run.

    Sent when email_on_success is set, or when email_on_failure is set and
    some person failed.

    Args:
        mode: Run mode (add, delete, clean)
        results: PhaseResult list from the engine
        runtime_seconds: Wall-clock duration of the run
        config: notifications configuration block

    Returns:
        True if notification sent successfully
    """
    failures = [failure for result in results for failure in result.failures]
    aborted = [result for result in results if result.aborted]
    had_problems = bool(failures or aborted)

    if had_problems and not config.get('email_on_failure', True):
        return False
    if not had_problems and not config.get('email_on_success', False):
        logger.debug("Success email notifications disabled")
        return False

    status = "completed with failures" if had_problems else "completed successfully"
    body_lines = [
        f"Identity Sync {mode} run {status}",
        f"Timestamp: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}",
        f"Total runtime: {_format_runtime(runtime_seconds)}",
        "",
        "Phases:",
    ]
    for result in results:
        line = f"  {result.name}: {result.succeeded}/{result.total} succeeded"
        if result.aborted:
            line += f" (aborted: {result.aborted})"
        body_lines.append(line)

    if failures:
        body_lines.extend(["", "Failures:"])
        for failure in failures[:MAX_LISTED_FAILURES]:
            body_lines.append(f"  {failure.person_id} - {failure.step} in {failure.system}: {failure.message}")
        if len(failures) > MAX_LISTED_FAILURES:
            body_lines.append(f"  ... and {len(failures) - MAX_LISTED_FAILURES} more failures")

    subject = f"Identity Sync: {mode} run {status}"
    return send_email(subject, '\n'.join(body_lines), config)
