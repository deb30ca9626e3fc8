from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from authgate.config import Settings
from authgate.logging import get_logger

logger = get_logger(__name__)


class EmailService:
    """Transactional mail over SMTP.

    When no SMTP host is configured the message is logged instead of sent,
    which keeps sign-up usable in development.
    """

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "AuthGate",
        base_url: Optional[str] = None,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:8000").rstrip("/")

    @classmethod
    def from_settings(cls, settings: Settings) -> "EmailService":
        return cls(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
            base_url=settings.app_base_url,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    @staticmethod
    def _redact_address(address: str) -> str:
        if "@" not in address:
            return "redacted"
        local, domain = address.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def _send(self, to_address: str, subject: str, text_body: str) -> bool:
        if not self.is_configured:
            logger.info(
                "mail_dev_mode",
                to=self._redact_address(to_address),
                subject=subject,
                body_preview=text_body[:200],
            )
            return True

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_address
        msg.attach(MIMEText(text_body, "plain"))
        context = ssl.create_default_context()
        try:
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_address, msg.as_string())
            else:
                with smtplib.SMTP_SSL(self.smtp_host, self.smtp_port, context=context, timeout=30) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_address, msg.as_string())
        except smtplib.SMTPAuthenticationError as exc:
            logger.error("mail_auth_failed", host=self.smtp_host, error=str(exc))
            return False
        except (smtplib.SMTPException, ssl.SSLError, OSError) as exc:
            logger.error(
                "mail_send_failed",
                to=self._redact_address(to_address),
                host=self.smtp_host,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        logger.info("mail_sent", to=self._redact_address(to_address), subject=subject)
        return True

    def send_email_verification(self, to_address: str, token: str) -> bool:
        verify_url = f"{self.base_url}/verify-email?token={token}"
        body = (
            "Verify your email address\n\n"
            "Thanks for signing up. Confirm your address by visiting:\n\n"
            f"{verify_url}\n\n"
            "This link expires in 24 hours.\n"
        )
        return self._send(to_address, "Verify your email address", body)

    def send_two_factor_notice(self, to_address: str, *, enabled: bool) -> bool:
        action = "enabled" if enabled else "disabled"
        body = (
            f"Two-factor authentication was {action} on your account.\n\n"
            "If you did not make this change, sign in and review your active sessions.\n"
        )
        return self._send(to_address, f"Two-factor authentication {action}", body)
