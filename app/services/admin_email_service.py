from __future__ import annotations

"""Operator alert mail for the capacity sweep and other unattended jobs."""

import asyncio
import smtplib
from email.message import EmailMessage

from app.core.logging import logger
from core.settings import Settings, get_settings


def build_alert_message(settings: Settings, *, subject: str, body: str) -> EmailMessage:
    msg = EmailMessage()
    msg["Subject"] = f"[{settings.app_name}] {subject}"
    msg["From"] = settings.smtp_user or settings.admin_recipients[0]
    msg["To"] = ", ".join(settings.admin_recipients)
    msg.set_content(body)
    return msg


def _login(smtp: smtplib.SMTP, settings: Settings) -> None:
    if settings.smtp_user:
        smtp.login(settings.smtp_user, settings.smtp_password.get_secret_value())


def _send_email_sync(*, subject: str, body: str) -> bool:
    settings = get_settings()
    if not settings.smtp_host or not settings.admin_recipients:
        logger.warning(
            "Admin alert '%s' not mailed: SMTP_HOST or ADMIN_EMAIL not configured.",
            subject,
        )
        return False

    msg = build_alert_message(settings, subject=subject, body=body)
    port = int(settings.smtp_port)
    timeout = settings.smtp_timeout_seconds

    if port == 465:
        with smtplib.SMTP_SSL(settings.smtp_host, port, timeout=timeout) as smtp:
            _login(smtp, settings)
            smtp.send_message(msg)
        return True

    with smtplib.SMTP(settings.smtp_host, port, timeout=timeout) as smtp:
        smtp.ehlo()
        try:
            smtp.starttls()
            smtp.ehlo()
        except smtplib.SMTPException:
            logger.info("SMTP: STARTTLS not available; continuing without TLS")
        _login(smtp, settings)
        smtp.send_message(msg)
    return True


async def send_admin_alert_email(*, subject: str, body: str) -> bool:
    """Mail ``subject``/``body`` to every configured admin address.

    Returns:
        ``False`` when mail is not configured and nothing was sent.

    Raises:
        smtplib.SMTPException: On delivery failure; schedulers decide whether
            that is fatal.
    """

    return await asyncio.to_thread(_send_email_sync, subject=subject, body=body)
