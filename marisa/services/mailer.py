# services/mailer.py
import logging
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Iterable, Optional

from marisa.core.config import settings

logger = logging.getLogger(__name__)


def send_email(to_email: str, subject: str, text_body: str, html_body: Optional[str] = None) -> bool:
    """
    Sends an email over SMTP, or only logs it with the 'dummy' transport.
    Returns False instead of raising when delivery fails.
    """
    if settings.EMAIL_TRANSPORT == "dummy":
        logger.info(f"Dummy email to {to_email}: {subject}")
        logger.debug(text_body)
        return True

    msg = MIMEMultipart("alternative")
    msg["From"] = settings.SMTP_FROM
    msg["To"] = to_email
    msg["Subject"] = subject
    msg.attach(MIMEText(text_body or "", "plain", "utf-8"))
    if html_body:
        msg.attach(MIMEText(html_body, "html", "utf-8"))

    password = settings.SMTP_PASSWORD.get_secret_value() if settings.SMTP_PASSWORD else ""
    try:
        with smtplib.SMTP(settings.SMTP_HOST, settings.SMTP_PORT, timeout=30) as s:
            s.ehlo()
            if settings.SMTP_TLS:
                s.starttls(context=ssl.create_default_context())
                s.ehlo()
            if settings.SMTP_USER:
                s.login(settings.SMTP_USER, password)
            s.sendmail(settings.SMTP_FROM, [to_email], msg.as_string())
        return True
    except (smtplib.SMTPException, OSError) as e:
        logger.error(f"Failed to send email to {to_email}: {e}")
        return False


def send_bulk(recipients: Iterable[str], subject: str, text_body: str) -> int:
    sent = 0
    for email in recipients:
        if send_email(email, subject, text_body):
            sent += 1
    return sent


def render_otp_email(code: str):
    subject = "Your AI Marisa Playground login code"
    text = f"Your login code is {code}.\n\nIt expires in {settings.OTP_TTL_SECONDS // 60} minutes."
    return subject, text


def render_invite_email(full_name: Optional[str]):
    subject = "You're invited to AI Marisa Playground"
    greeting = f"Hi {full_name}," if full_name else "Hi,"
    text = (
        f"{greeting}\n\nYou have been invited to AI Marisa Playground.\n"
        f"Sign in with this email address at {settings.FRONTEND_URL}/login\n"
    )
    return subject, text
