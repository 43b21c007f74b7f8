"""Celery tasks for the e-mail notification channel."""
import logging
import smtplib
import ssl
from email.message import EmailMessage

from tasks.celery_app import celery_app
from bloodlink.config import get_settings

logger = logging.getLogger(__name__)


def _build_message(to: str, subject: str, body: str, sender: str) -> EmailMessage:
    msg = EmailMessage()
    msg["Subject"] = subject
    msg["From"] = sender
    msg["To"] = to
    msg.set_content(body)
    return msg


@celery_app.task(
    bind=True,
    name="tasks.notification_tasks.send_notification_email",
    max_retries=3,
    default_retry_delay=60,
)
def send_notification_email(self, to: str, subject: str, body: str) -> bool:
    """Send one notification e-mail over SMTP.

    Returns ``False`` without sending when no SMTP host is configured.
    Transient SMTP/network failures are retried.
    """
    settings = get_settings()
    if not settings.SMTP_HOST:
        logger.info("SMTP not configured, skipping e-mail to %s (%s)", to, subject)
        return False

    msg = _build_message(to, subject, body, settings.EMAIL_FROM)
    try:
        with smtplib.SMTP(settings.SMTP_HOST, settings.SMTP_PORT, timeout=30) as smtp:
            if settings.SMTP_USE_TLS:
                smtp.starttls(context=ssl.create_default_context())
            if settings.SMTP_USER:
                smtp.login(settings.SMTP_USER, settings.SMTP_PASSWORD)
            smtp.send_message(msg)
    except (smtplib.SMTPException, OSError) as exc:
        logger.warning("E-mail to %s failed: %s", to, exc)
        raise self.retry(exc=exc)

    logger.info("E-mail sent to %s: %s", to, subject)
    return True
