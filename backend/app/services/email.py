import logging
import smtplib
from email.message import EmailMessage

import anyio

from app.core.config import settings

logger = logging.getLogger(__name__)


def _build_message(to_email: str, subject: str, text_body: str) -> EmailMessage:
    msg = EmailMessage()
    msg["Subject"] = subject
    msg["From"] = settings.smtp_from_email or "no-reply@dfoods.local"
    msg["To"] = to_email
    msg.set_content(text_body)
    return msg


def _deliver(msg: EmailMessage) -> None:
    with smtplib.SMTP(settings.smtp_host, settings.smtp_port, timeout=10) as smtp:
        if settings.smtp_use_tls:
            smtp.starttls()
        if settings.smtp_username and settings.smtp_password:
            smtp.login(settings.smtp_username, settings.smtp_password)
        smtp.send_message(msg)


async def send_email(to_email: str, subject: str, text_body: str) -> bool:
    if not settings.smtp_enabled:
        logger.info("Email delivery disabled; dropping %r", subject)
        return False
    msg = _build_message(to_email, subject, text_body)
    try:
        await anyio.to_thread.run_sync(_deliver, msg)
        return True
    except (OSError, smtplib.SMTPException) as exc:
        logger.warning("Email send failed: %s", exc)
        return False
