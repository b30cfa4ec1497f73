from __future__ import annotations

import smtplib
import ssl
from email.message import EmailMessage

from everest.config import Settings
from everest.logging import get_logger

logger = get_logger(__name__)

RESET_TEXT = """Forgot your password? Submit a request with your new password at:

{reset_url}

This link expires in {ttl_minutes} minutes and can be used once.
If you didn't forget your password, please ignore this email.
"""


class EmailService:
    """Sends the password reset mail.

    Without ``SMTP_HOST`` and a sender address the message is only logged,
    so local setups can pick the reset link out of the log stream.
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self.sender = settings.email_from_address or settings.smtp_user

    @property
    def is_configured(self) -> bool:
        return bool(self.settings.smtp_host and self.sender)

    def reset_url(self, token: str) -> str:
        return f"{self.settings.app_base_url.rstrip('/')}/reset-password/{token}"

    def build_reset_message(self, to_email: str, token: str, ttl_minutes: int) -> EmailMessage:
        msg = EmailMessage()
        msg["Subject"] = f"Your password reset token (valid for {ttl_minutes} min)"
        msg["From"] = f"{self.settings.email_from_name} <{self.sender}>"
        msg["To"] = to_email
        msg.set_content(RESET_TEXT.format(reset_url=self.reset_url(token), ttl_minutes=ttl_minutes))
        return msg

    def _connect(self) -> smtplib.SMTP:
        settings = self.settings
        context = ssl.create_default_context()
        if settings.smtp_use_tls:
            server = smtplib.SMTP(settings.smtp_host, settings.smtp_port, timeout=30)
            server.starttls(context=context)
        else:
            server = smtplib.SMTP_SSL(
                settings.smtp_host, settings.smtp_port, context=context, timeout=30
            )
        if settings.smtp_user and settings.smtp_password:
            server.login(settings.smtp_user, settings.smtp_password)
        return server

    def send_password_reset(self, to_email: str, token: str, *, ttl_minutes: int = 10) -> bool:
        """Deliver the reset link for ``token``; False when SMTP fails."""
        msg = self.build_reset_message(to_email, token, ttl_minutes)
        domain = to_email.rpartition("@")[2] or "unknown"
        if not self.is_configured:
            logger.info(
                "password_reset_mail_logged", recipient_domain=domain, body=msg.get_content()
            )
            return True
        try:
            with self._connect() as server:
                server.send_message(msg)
        except (smtplib.SMTPException, OSError) as exc:
            logger.error(
                "password_reset_mail_failed",
                recipient_domain=domain,
                host=self.settings.smtp_host,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        logger.info("password_reset_mail_sent", recipient_domain=domain)
        return True
