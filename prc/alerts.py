from __future__ import annotations

import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from .db import log_event
from .settings import settings


def send_email(subject: str, body: str) -> bool:
    """Send an email if SMTP settings are configured.

    Environment variables:
      - PRC_ENABLE_EMAIL=true
      - PRC_SMTP_HOST / PRC_SMTP_PORT
      - PRC_SMTP_USER / PRC_SMTP_PASSWORD
      - PRC_EMAIL_FROM / PRC_EMAIL_TO
    """
    if not settings.enable_email:
        return False
    if not all(
        [
            settings.smtp_host,
            settings.smtp_port,
            settings.smtp_user,
            settings.smtp_password,
            settings.email_from,
            settings.email_to,
        ]
    ):
        return False

    try:
        msg = MIMEMultipart()
        msg["From"] = settings.email_from
        msg["To"] = settings.email_to
        msg["Subject"] = subject
        msg.attach(MIMEText(body, "plain"))

        server = smtplib.SMTP(settings.smtp_host, settings.smtp_port)
        server.starttls()
        server.login(settings.smtp_user, settings.smtp_password)
        server.sendmail(settings.email_from, [settings.email_to], msg.as_string())
        server.quit()
        return True
    except (smtplib.SMTPException, OSError) as e:
        log_event("WARN", f"Alert email not sent: {type(e).__name__}: {e}")
        return False


def manual_intervention_alert(service: str, operation: str, error: str) -> bool:
    """Raise the alarm for a failure the deployer cannot recover from by itself."""
    log_event("ERROR", f"MANUAL INTERVENTION REQUIRED: {operation} failed: {error}", service_name=service)
    subject = f"MANUAL INTERVENTION REQUIRED: {service} {operation} failed"
    body = f"Service: {service}\nOperation: {operation}\nError: {error}\n\nTraffic may be split across environments."
    return send_email(subject, body)
